"""
Applies a stack's manifest to a Kubernetes endpoint.

The manifest at <project_path>/<entry_point> may hold several YAML documents
(and `kind: List` documents). Every object is stamped with the stack labels,
defaulted to the stack namespace when the resource is namespaced, then
created; objects that already exist are merge-patched instead, which makes
re-deploying the same manifest idempotent.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, List

import yaml
from kubernetes.client.rest import ApiException
from kubernetes.dynamic.exceptions import DynamicApiError, ResourceNotFoundError
from urllib3.exceptions import HTTPError

from config.settings import AppConfig
from deployment.kube_client import KubeClient
from deployment.types import KubeAppLabels, Stack

logger = logging.getLogger(__name__)

MERGE_PATCH = 'application/merge-patch+json'


class KubeDeployError(RuntimeError):
    """Raised when a manifest cannot be parsed or applied."""
    pass


def load_manifest_documents(content: str) -> List[Dict[str, Any]]:
    """
    Parse a multi-document manifest into Kubernetes objects.

    Empty documents are skipped and `kind: List` documents are flattened.

    Raises:
        KubeDeployError: If the YAML is invalid or an object lacks
            apiVersion, kind or metadata.name
    """
    try:
        documents = list(yaml.safe_load_all(content))
    except yaml.YAMLError as e:
        raise KubeDeployError(f"Invalid manifest YAML: {e}")

    objects: List[Dict[str, Any]] = []
    for doc in documents:
        if doc is None:
            continue
        if not isinstance(doc, dict):
            raise KubeDeployError("Manifest documents must be mappings")
        if str(doc.get('kind', '')).endswith('List') and 'items' in doc:
            objects.extend(item for item in doc.get('items') or [] if item)
        else:
            objects.append(doc)

    for obj in objects:
        if not obj.get('apiVersion') or not obj.get('kind'):
            raise KubeDeployError("Manifest object is missing apiVersion or kind")
        if not (obj.get('metadata') or {}).get('name'):
            raise KubeDeployError(f"{obj['kind']} object is missing metadata.name")

    if not objects:
        raise KubeDeployError("Manifest contains no objects")
    return objects


def apply_labels(obj: Dict[str, Any], labels: Dict[str, str]) -> Dict[str, Any]:
    """Merge the stack labels into an object's metadata.labels (stack labels win)."""
    metadata = obj.setdefault('metadata', {})
    existing = metadata.get('labels') or {}
    metadata['labels'] = {**existing, **labels}
    return obj


class KubeDeployer:
    """Applies stack manifests through the dynamic client."""

    def __init__(self, field_manager: str = None):
        self.field_manager = field_manager or AppConfig.KUBE_FIELD_MANAGER

    async def deploy(self, kube: KubeClient, stack: Stack, labels: KubeAppLabels) -> List[str]:
        """
        Deploy the manifest found under stack.project_path.

        Args:
            kube: Client of the stack's endpoint
            stack: Stack whose project_path and entry_point locate the manifest
            labels: Labels identifying the stack on every object

        Returns:
            "Kind/name" of every applied object

        Raises:
            KubeDeployError: On parse or API failure
        """
        manifest_path = Path(stack.project_path) / stack.entry_point
        try:
            content = await asyncio.to_thread(manifest_path.read_text, encoding='utf-8')
        except OSError as e:
            raise KubeDeployError(f"Unable to read manifest {stack.entry_point}: {e.strerror or e}")

        objects = load_manifest_documents(content)
        label_set = labels.to_labels()
        return await asyncio.to_thread(self._apply_all, kube, objects, stack.namespace, label_set)

    def _apply_all(self, kube: KubeClient, objects: List[Dict[str, Any]], namespace: str,
                   label_set: Dict[str, str]) -> List[str]:
        applied = []
        for obj in objects:
            apply_labels(obj, label_set)
            try:
                applied.append(self._apply_object(kube, obj, namespace))
            except (ApiException, HTTPError) as e:
                # Discovery and transport errors escape _apply_object's handlers
                ref = f"{obj['kind']}/{obj['metadata']['name']}"
                raise KubeDeployError(f"Failed to apply {ref}: {e}")
        logger.info(f"Applied {len(applied)} object(s) to namespace {namespace}")
        return applied

    def _apply_object(self, kube: KubeClient, obj: Dict[str, Any], namespace: str) -> str:
        kind = obj['kind']
        name = obj['metadata']['name']
        ref = f"{kind}/{name}"

        try:
            resource = kube.dynamic.resources.get(api_version=obj['apiVersion'], kind=kind)
        except ResourceNotFoundError:
            raise KubeDeployError(f"Unknown resource type {obj['apiVersion']}/{kind}")

        target_namespace = None
        if resource.namespaced:
            target_namespace = obj['metadata'].get('namespace') or namespace
            obj['metadata']['namespace'] = target_namespace

        try:
            resource.create(body=obj, namespace=target_namespace, field_manager=self.field_manager)
            logger.debug(f"Created {ref}")
        except DynamicApiError as e:
            if e.status != 409:
                raise KubeDeployError(f"Failed to create {ref}: {e.summary()}")
            try:
                resource.patch(
                    body=obj,
                    name=name,
                    namespace=target_namespace,
                    content_type=MERGE_PATCH,
                    field_manager=self.field_manager,
                )
                logger.debug(f"Patched {ref}")
            except DynamicApiError as patch_error:
                raise KubeDeployError(f"Failed to update {ref}: {patch_error.summary()}")
        return ref
