"""
Unit tests for KubeDeployer.

Tests verify:
- Multi-document manifest parsing (empty docs, List kinds, required fields)
- Stack labels are merged into every object
- Namespaced objects default to the stack namespace
- Existing objects are merge-patched instead of failing
"""

from unittest.mock import MagicMock

import pytest
from kubernetes.client.rest import ApiException
from kubernetes.dynamic.exceptions import DynamicApiError, ResourceNotFoundError
from urllib3.exceptions import MaxRetryError

from deployment.kube_deployer import (
    MERGE_PATCH,
    KubeDeployError,
    KubeDeployer,
    apply_labels,
    load_manifest_documents,
)
from deployment.types import KubeAppLabels, Stack, sanitize_label_value

MANIFEST = """
apiVersion: v1
kind: ConfigMap
metadata:
  name: settings
  labels:
    tier: web
data:
  key: value
---
---
apiVersion: v1
kind: Namespace
metadata:
  name: extra
"""


def _api_error(status):
    error = DynamicApiError.__new__(DynamicApiError)
    error.status = status
    error.reason = "Conflict" if status == 409 else "Forbidden"
    error.body = None
    error.headers = None
    error.summary = lambda: f"{status} {error.reason}"
    return error


class TestLoadManifestDocuments:
    """Tests for manifest parsing"""

    def test_skips_empty_documents(self):
        objects = load_manifest_documents(MANIFEST)
        assert [o['kind'] for o in objects] == ["ConfigMap", "Namespace"]

    def test_flattens_lists(self):
        content = """
apiVersion: v1
kind: List
items:
  - apiVersion: v1
    kind: Service
    metadata: {name: a}
  - apiVersion: v1
    kind: Service
    metadata: {name: b}
"""
        objects = load_manifest_documents(content)
        assert [o['metadata']['name'] for o in objects] == ["a", "b"]

    def test_rejects_invalid_yaml(self):
        with pytest.raises(KubeDeployError, match="Invalid manifest YAML"):
            load_manifest_documents("kind: [unclosed")

    def test_rejects_missing_kind(self):
        with pytest.raises(KubeDeployError, match="missing apiVersion or kind"):
            load_manifest_documents("apiVersion: v1\nmetadata: {name: x}\n")

    def test_rejects_missing_name(self):
        with pytest.raises(KubeDeployError, match="missing metadata.name"):
            load_manifest_documents("apiVersion: v1\nkind: Pod\nmetadata: {}\n")

    def test_rejects_empty_manifest(self):
        with pytest.raises(KubeDeployError, match="no objects"):
            load_manifest_documents("---\n")

    def test_rejects_scalars(self):
        with pytest.raises(KubeDeployError, match="must be mappings"):
            load_manifest_documents("just a string")


class TestLabels:
    """Tests for stack labels"""

    def test_label_set(self):
        labels = KubeAppLabels(stack_id=3, stack_name="my web", owner="admin", kind="content").to_labels()
        assert labels == {
            'io.stackyard.kubernetes.application.stackid': "3",
            'io.stackyard.kubernetes.application.name': "my-web",
            'io.stackyard.kubernetes.application.owner': "admin",
            'io.stackyard.kubernetes.application.kind': "content",
        }

    def test_sanitize_label_value(self):
        """Label values are trimmed to 63 valid characters"""
        assert sanitize_label_value("user@example.com") == "user-example.com"
        assert sanitize_label_value("-x-") == "x"
        assert len(sanitize_label_value("a" * 100)) == 63

    def test_apply_labels_keeps_existing(self):
        obj = {'metadata': {'name': 'x', 'labels': {'tier': 'web', 'kind': 'mine'}}}
        apply_labels(obj, {'kind': 'stack'})
        assert obj['metadata']['labels'] == {'tier': 'web', 'kind': 'stack'}


class TestDeploy:
    """Tests for applying objects through the dynamic client"""

    @pytest.fixture
    def stack(self, tmp_path):
        (tmp_path / "app.yml").write_text(MANIFEST)
        return Stack(
            id=1, name="web", entry_point="app.yml", namespace="apps", endpoint_id=1,
            project_path=str(tmp_path), created_by="admin",
        )

    @pytest.fixture
    def resources(self):
        return {
            "ConfigMap": MagicMock(namespaced=True),
            "Namespace": MagicMock(namespaced=False),
        }

    @pytest.fixture
    def kube(self, resources):
        kube = MagicMock()
        kube.dynamic.resources.get.side_effect = lambda api_version, kind: resources[kind]
        return kube

    @pytest.fixture
    def labels(self):
        return KubeAppLabels(stack_id=1, stack_name="web", owner="admin", kind="content")

    @pytest.mark.asyncio
    async def test_creates_objects(self, kube, resources, stack, labels):
        applied = await KubeDeployer(field_manager="test").deploy(kube, stack, labels)

        assert applied == ["ConfigMap/settings", "Namespace/extra"]
        configmap = resources["ConfigMap"].create.call_args.kwargs
        assert configmap['namespace'] == "apps"
        assert configmap['field_manager'] == "test"
        body_labels = configmap['body']['metadata']['labels']
        assert body_labels['tier'] == "web"
        assert body_labels['io.stackyard.kubernetes.application.stackid'] == "1"

        namespace = resources["Namespace"].create.call_args.kwargs
        assert namespace['namespace'] is None
        assert 'namespace' not in namespace['body']['metadata']

    @pytest.mark.asyncio
    async def test_patches_existing_objects(self, kube, resources, stack, labels):
        resources["ConfigMap"].create.side_effect = _api_error(409)

        await KubeDeployer(field_manager="test").deploy(kube, stack, labels)

        patch_kwargs = resources["ConfigMap"].patch.call_args.kwargs
        assert patch_kwargs['name'] == "settings"
        assert patch_kwargs['namespace'] == "apps"
        assert patch_kwargs['content_type'] == MERGE_PATCH

    @pytest.mark.asyncio
    async def test_api_error(self, kube, resources, stack, labels):
        resources["ConfigMap"].create.side_effect = _api_error(403)

        with pytest.raises(KubeDeployError, match="Failed to create ConfigMap/settings: 403 Forbidden"):
            await KubeDeployer(field_manager="test").deploy(kube, stack, labels)

    @pytest.mark.asyncio
    async def test_unknown_resource(self, kube, resources, stack, labels):
        kube.dynamic.resources.get.side_effect = ResourceNotFoundError("no ConfigMap")

        with pytest.raises(KubeDeployError, match="Unknown resource type v1/ConfigMap"):
            await KubeDeployer(field_manager="test").deploy(kube, stack, labels)

    @pytest.mark.asyncio
    async def test_unreachable_api_server(self, kube, resources, stack, labels):
        """Transport errors during discovery are deploy errors"""
        kube.dynamic.resources.get.side_effect = MaxRetryError(None, "/version", "Connection refused")

        with pytest.raises(KubeDeployError, match="Failed to apply ConfigMap/settings"):
            await KubeDeployer(field_manager="test").deploy(kube, stack, labels)

    @pytest.mark.asyncio
    async def test_plain_api_exception(self, kube, resources, stack, labels):
        """Errors raised outside the dynamic client's wrapper are deploy errors"""
        resources["ConfigMap"].create.side_effect = ApiException(status=0, reason="Handshake failed")

        with pytest.raises(KubeDeployError, match="Handshake failed"):
            await KubeDeployer(field_manager="test").deploy(kube, stack, labels)

    @pytest.mark.asyncio
    async def test_missing_manifest(self, kube, resources, stack, labels):
        stack.entry_point = "missing.yml"

        with pytest.raises(KubeDeployError, match="Unable to read manifest missing.yml"):
            await KubeDeployer(field_manager="test").deploy(kube, stack, labels)
