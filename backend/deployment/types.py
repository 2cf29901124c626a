"""
Shared types for Kubernetes stacks.

A stack is either file-managed (the manifest was uploaded as content) or
git-managed (the manifest lives in a repository). The two modes are modelled
as the StackSource variant so callers dispatch on the type instead of
checking a nullable git config.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional, Union


@dataclass
class GitAuthentication:
    """Credentials used to reach a git repository."""
    username: str
    password: str = field(default='', repr=False)


@dataclass
class GitConfig:
    """Where a git-managed stack pulls its manifest from."""
    url: str
    reference_name: str = ''
    tls_skip_verify: bool = False
    authentication: Optional[GitAuthentication] = None
    config_hash: Optional[str] = None  # Commit sha of the last deployment


@dataclass
class AutoUpdateSettings:
    """
    Periodic git refresh settings.

    job_id is only set while a scheduler entry is live for the stack.
    """
    interval: str = ''
    job_id: Optional[str] = None


@dataclass(frozen=True)
class FileSource:
    """Stack whose manifest was uploaded as file content."""


@dataclass(frozen=True)
class GitSource:
    """Stack whose manifest comes from a git repository."""
    config: GitConfig


StackSource = Union[FileSource, GitSource]


@dataclass
class Stack:
    """A Kubernetes stack as seen by the update handlers."""
    id: int
    name: str
    entry_point: str
    namespace: str
    endpoint_id: int
    project_path: str
    created_by: str
    source: StackSource = field(default_factory=FileSource)
    auto_update: Optional[AutoUpdateSettings] = None
    status: str = 'active'
    updated_by: Optional[str] = None
    update_date: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def git_config(self) -> Optional[GitConfig]:
        """Git config for git-managed stacks, None for file-managed ones."""
        if isinstance(self.source, GitSource):
            return self.source.config
        return None

    @property
    def is_git_backed(self) -> bool:
        return isinstance(self.source, GitSource)


@dataclass
class KubeAppLabels:
    """Labels stamped on every object deployed for a stack."""
    stack_id: int
    stack_name: str
    owner: str
    kind: str  # "content" for uploaded manifests, "git" for repository manifests

    def to_labels(self) -> Dict[str, str]:
        return {
            'io.stackyard.kubernetes.application.stackid': str(self.stack_id),
            'io.stackyard.kubernetes.application.name': sanitize_label_value(self.stack_name),
            'io.stackyard.kubernetes.application.owner': sanitize_label_value(self.owner),
            'io.stackyard.kubernetes.application.kind': self.kind,
        }


_LABEL_INVALID_CHARS = re.compile(r'[^A-Za-z0-9._-]+')


def sanitize_label_value(value: str) -> str:
    """
    Make a string usable as a Kubernetes label value.

    Label values are limited to 63 characters of [A-Za-z0-9._-] and must
    begin and end with an alphanumeric character.
    """
    sanitized = _LABEL_INVALID_CHARS.sub('-', value or '')[:63]
    return sanitized.strip('-_.')
