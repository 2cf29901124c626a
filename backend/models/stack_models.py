"""
Stack Models for Stackyard API Endpoints

Pydantic models for Kubernetes stack updates.
- Request models for validation (camelCase on the wire)
- Response models with sanitized output (no secrets)

Security:
    - Git passwords are accepted in requests but never returned; responses
      only carry a has_password flag
"""

import re
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from deployment.types import Stack
from utils.duration_parser import parse_duration

# Shortest auto-update interval accepted
MIN_AUTO_UPDATE_INTERVAL_SECONDS = 1.0


class CamelModel(BaseModel):
    """Accepts both camelCase (wire format) and snake_case field names."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# Shared Validation Helpers
# =============================================================================

def _validate_reference_name(v: str) -> str:
    """Validate a git reference such as main or refs/heads/main."""
    if not v or not v.strip():
        raise ValueError('Repository reference name cannot be empty')
    v = v.strip()
    if v.startswith('-') or v.startswith('.'):
        raise ValueError('Reference name cannot start with - or .')
    if '..' in v:
        raise ValueError('Reference name cannot contain ..')
    if v.endswith('.lock') or v.endswith('/'):
        raise ValueError('Reference name cannot end with .lock or /')
    if not re.match(r'^[a-zA-Z0-9/_.\-]+$', v):
        raise ValueError('Reference name contains invalid characters')
    return v


# =============================================================================
# Auto-update
# =============================================================================


class AutoUpdateSettingsModel(CamelModel):
    """Periodic git refresh settings. An empty interval disables auto-update."""
    interval: str = Field('', max_length=64)
    job_id: Optional[str] = Field(None, max_length=64)

    @field_validator('interval')
    @classmethod
    def validate_interval(cls, v: str) -> str:
        v = (v or '').strip()
        if v:
            _check_interval(v)
        return v


def _check_interval(interval: str) -> None:
    try:
        seconds = parse_duration(interval)
    except ValueError:
        raise ValueError(f"Invalid interval format '{interval}' (expected e.g. 30s, 5m, 1h30m)")
    if seconds < MIN_AUTO_UPDATE_INTERVAL_SECONDS:
        raise ValueError('Interval must be at least 1s')


def validate_auto_update_settings(settings: Optional[AutoUpdateSettingsModel]) -> None:
    """
    Check auto-update settings shared by every git stack payload.

    None and an empty interval are valid (auto-update disabled).

    Raises:
        ValueError: If the interval is not a duration of at least one second
    """
    if settings is None or not settings.interval:
        return
    _check_interval(settings.interval)


# =============================================================================
# Update payloads
# =============================================================================


class GitStackUpdatePayload(CamelModel):
    """Update payload for git-managed stacks."""
    repository_reference_name: str = Field(..., max_length=255)
    repository_authentication: bool = False
    repository_username: str = Field('', max_length=200)
    repository_password: str = Field('', max_length=1000)
    auto_update: Optional[AutoUpdateSettingsModel] = None
    tls_skip_verify: bool = False

    @field_validator('repository_reference_name')
    @classmethod
    def validate_reference_name(cls, v: str) -> str:
        return _validate_reference_name(v)


class FileStackUpdatePayload(CamelModel):
    """Update payload for file-managed stacks."""
    stack_file_content: str = Field(..., max_length=5 * 1024 * 1024)
    stack_name: str = Field('', max_length=255)

    @field_validator('stack_file_content')
    @classmethod
    def validate_content(cls, v: str) -> str:
        if len(v) == 0:
            raise ValueError('Invalid stack file content')
        return v

    @field_validator('stack_name')
    @classmethod
    def validate_stack_name(cls, v: str) -> str:
        v = v.strip()
        if re.search(r'[<>"\'/\\]', v):
            raise ValueError('Stack name contains invalid characters')
        return v


# =============================================================================
# Responses
# =============================================================================


class GitConfigResponse(CamelModel):
    """Git config without credentials."""
    url: str
    reference_name: str
    tls_skip_verify: bool = False
    authenticated: bool
    username: Optional[str] = None
    has_password: bool = False
    config_hash: Optional[str] = None


class StackResponse(CamelModel):
    """Stack as returned by the API."""
    id: int
    name: str
    entry_point: str
    namespace: str
    endpoint_id: int
    project_path: str
    created_by: str
    status: str
    git_config: Optional[GitConfigResponse] = None
    auto_update: Optional[AutoUpdateSettingsModel] = None
    updated_by: Optional[str] = None
    update_date: Optional[datetime] = None

    @classmethod
    def from_stack(cls, stack: Stack) -> 'StackResponse':
        git_config = None
        if stack.git_config is not None:
            auth = stack.git_config.authentication
            git_config = GitConfigResponse(
                url=stack.git_config.url,
                reference_name=stack.git_config.reference_name,
                tls_skip_verify=stack.git_config.tls_skip_verify,
                authenticated=auth is not None,
                username=auth.username if auth else None,
                has_password=bool(auth and auth.password),
                config_hash=stack.git_config.config_hash,
            )

        auto_update = None
        if stack.auto_update is not None:
            auto_update = AutoUpdateSettingsModel(
                interval=stack.auto_update.interval,
                job_id=stack.auto_update.job_id,
            )

        return cls(
            id=stack.id,
            name=stack.name,
            entry_point=stack.entry_point,
            namespace=stack.namespace,
            endpoint_id=stack.endpoint_id,
            project_path=stack.project_path,
            created_by=stack.created_by,
            status=stack.status,
            git_config=git_config,
            auto_update=auto_update,
            updated_by=stack.updated_by,
            update_date=stack.update_date,
        )
