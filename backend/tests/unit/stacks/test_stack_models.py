"""
Unit tests for stack update payloads and responses.

Tests verify:
- camelCase wire names
- Reference name, interval and stack name validation
- Responses never carry git passwords
"""

import pytest
from pydantic import ValidationError

from deployment.types import (
    AutoUpdateSettings,
    GitAuthentication,
    GitConfig,
    GitSource,
    Stack,
)
from models.stack_models import (
    AutoUpdateSettingsModel,
    FileStackUpdatePayload,
    GitStackUpdatePayload,
    StackResponse,
    validate_auto_update_settings,
)


class TestGitStackUpdatePayload:
    """Tests for GitStackUpdatePayload validation"""

    def test_accepts_camel_case(self):
        """Should accept the wire format"""
        payload = GitStackUpdatePayload.model_validate({
            "repositoryReferenceName": "refs/heads/main",
            "repositoryAuthentication": True,
            "repositoryUsername": "u",
            "repositoryPassword": "",
            "autoUpdate": {"interval": "5m"},
            "tlsSkipVerify": True,
        })

        assert payload.repository_reference_name == "refs/heads/main"
        assert payload.repository_authentication is True
        assert payload.auto_update.interval == "5m"
        assert payload.tls_skip_verify is True

    def test_defaults(self):
        """Only the reference name is required"""
        payload = GitStackUpdatePayload.model_validate({"repositoryReferenceName": "main"})

        assert payload.repository_authentication is False
        assert payload.repository_password == ""
        assert payload.auto_update is None

    def test_rejects_missing_reference(self):
        """Should reject a payload without a reference"""
        with pytest.raises(ValidationError):
            GitStackUpdatePayload.model_validate({"repositoryAuthentication": False})

    def test_rejects_empty_reference(self):
        """Should reject an empty reference"""
        with pytest.raises(ValidationError, match="cannot be empty"):
            GitStackUpdatePayload.model_validate({"repositoryReferenceName": "  "})

    def test_rejects_option_like_reference(self):
        """References can't be smuggled in as git options"""
        with pytest.raises(ValidationError, match="cannot start with"):
            GitStackUpdatePayload.model_validate({"repositoryReferenceName": "--upload-pack=evil"})

    def test_rejects_bad_interval(self):
        """Should reject intervals that are not durations"""
        with pytest.raises(ValidationError, match="Invalid interval format"):
            GitStackUpdatePayload.model_validate({
                "repositoryReferenceName": "main",
                "autoUpdate": {"interval": "*/5 * * * *"},
            })

    def test_rejects_sub_second_interval(self):
        """Should reject intervals shorter than one second"""
        with pytest.raises(ValidationError, match="at least 1s"):
            GitStackUpdatePayload.model_validate({
                "repositoryReferenceName": "main",
                "autoUpdate": {"interval": "500ms"},
            })

    def test_empty_interval_disables(self):
        """An empty interval is valid"""
        payload = GitStackUpdatePayload.model_validate({
            "repositoryReferenceName": "main",
            "autoUpdate": {"interval": ""},
        })
        assert payload.auto_update.interval == ""


class TestValidateAutoUpdateSettings:
    """Tests for the shared interval policy"""

    def test_none_is_valid(self):
        validate_auto_update_settings(None)

    def test_valid_interval(self):
        validate_auto_update_settings(AutoUpdateSettingsModel(interval="1h30m"))

    def test_invalid_interval(self):
        settings = AutoUpdateSettingsModel.model_construct(interval="soon", job_id=None)
        with pytest.raises(ValueError, match="Invalid interval format"):
            validate_auto_update_settings(settings)


class TestFileStackUpdatePayload:
    """Tests for FileStackUpdatePayload validation"""

    def test_accepts_content_and_name(self):
        payload = FileStackUpdatePayload.model_validate({
            "stackFileContent": "kind: Pod",
            "stackName": " renamed ",
        })
        assert payload.stack_file_content == "kind: Pod"
        assert payload.stack_name == "renamed"

    def test_rejects_empty_content(self):
        """Should reject empty manifests"""
        with pytest.raises(ValidationError, match="Invalid stack file content"):
            FileStackUpdatePayload.model_validate({"stackFileContent": ""})

    def test_rejects_missing_content(self):
        with pytest.raises(ValidationError):
            FileStackUpdatePayload.model_validate({"stackName": "x"})

    def test_rejects_unsafe_name(self):
        """Should reject names with path or markup characters"""
        with pytest.raises(ValidationError, match="invalid characters"):
            FileStackUpdatePayload.model_validate({"stackFileContent": "a", "stackName": "../x"})


class TestStackResponse:
    """Tests for StackResponse serialization"""

    def test_password_is_never_returned(self):
        """Responses expose has_password instead of the secret"""
        stack = Stack(
            id=1, name="api", entry_point="app.yml", namespace="apps", endpoint_id=1,
            project_path="/data/stacks/1", created_by="admin",
            source=GitSource(GitConfig(
                url="https://git.example.com/api.git",
                reference_name="refs/heads/main",
                authentication=GitAuthentication(username="u", password="s3cret"),
            )),
            auto_update=AutoUpdateSettings(interval="5m", job_id="j2"),
        )

        data = StackResponse.from_stack(stack).model_dump(by_alias=True)

        assert "s3cret" not in str(data)
        assert data["gitConfig"]["hasPassword"] is True
        assert data["gitConfig"]["username"] == "u"
        assert data["autoUpdate"] == {"interval": "5m", "jobId": "j2"}

    def test_file_stack_has_no_git_config(self):
        stack = Stack(
            id=2, name="web", entry_point="app.yml", namespace="default", endpoint_id=1,
            project_path="/data/stacks/2", created_by="admin",
        )

        response = StackResponse.from_stack(stack)

        assert response.git_config is None
        assert response.auto_update is None
