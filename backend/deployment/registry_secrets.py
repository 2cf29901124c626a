"""
Image-pull secret refresh for private registries.

ECR hands out authorization tokens that expire after 12 hours. Before a stack
is deployed, every ECR registry the stack namespace may pull from gets a fresh
token (when the stored one is missing or about to expire) and its
kubernetes.io/dockerconfigjson secret in the namespace is upserted.
"""

import asyncio
import base64
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from kubernetes.client.rest import ApiException

from database import DatabaseManager, Registry
from deployment.kube_client import KubeClient

logger = logging.getLogger(__name__)

REGISTRY_TYPE_ECR = 'ecr'

# Refresh tokens this long before they actually expire
TOKEN_EXPIRY_MARGIN = timedelta(minutes=5)


class RegistrySecretError(RuntimeError):
    """Raised when a registry token or secret cannot be refreshed."""
    pass


def registry_secret_name(registry_id: int) -> str:
    return f"registry-{registry_id}"


def _naive_utc(value: datetime) -> datetime:
    # SQLite stores naive datetimes; keep everything naive UTC
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def is_token_valid(registry: Registry, now: Optional[datetime] = None) -> bool:
    """True if the stored access token is still usable for a while."""
    if not registry.access_token or registry.access_token_expiry is None:
        return False
    now = _naive_utc(now or datetime.now(timezone.utc))
    return _naive_utc(registry.access_token_expiry) - TOKEN_EXPIRY_MARGIN > now


def fetch_ecr_token(registry: Registry) -> Tuple[str, datetime]:
    """
    Request a new ECR authorization token.

    Returns:
        (base64 "AWS:<password>" token, naive UTC expiry)

    Raises:
        RegistrySecretError: If AWS rejects the request
    """
    kwargs = {}
    if registry.region:
        kwargs['region_name'] = registry.region
    if registry.username:
        kwargs['aws_access_key_id'] = registry.username
        kwargs['aws_secret_access_key'] = registry.password

    try:
        ecr = boto3.client('ecr', **kwargs)
        response = ecr.get_authorization_token()
    except (BotoCoreError, ClientError) as e:
        raise RegistrySecretError(f"ECR token request failed for registry {registry.id}: {e}")

    data = (response.get('authorizationData') or [None])[0]
    if not data or not data.get('authorizationToken'):
        raise RegistrySecretError(f"ECR returned no authorization data for registry {registry.id}")

    expiry = data.get('expiresAt') or datetime.now(timezone.utc) + timedelta(hours=12)
    return data['authorizationToken'], _naive_utc(expiry)


def build_dockerconfigjson(registry_url: str, token: str) -> str:
    """Encode the .dockerconfigjson payload for a base64 "user:password" token."""
    username, _, password = base64.b64decode(token).decode('utf-8').partition(':')
    config = {
        'auths': {
            registry_url: {
                'username': username,
                'password': password,
                'auth': token,
            }
        }
    }
    return base64.b64encode(json.dumps(config).encode('utf-8')).decode('ascii')


def upsert_pull_secret(kube: KubeClient, namespace: str, registry: Registry, token: str) -> None:
    """Create or update the image-pull secret of a registry in a namespace."""
    name = registry_secret_name(registry.id)
    secret = {
        'apiVersion': 'v1',
        'kind': 'Secret',
        'type': 'kubernetes.io/dockerconfigjson',
        'metadata': {
            'name': name,
            'namespace': namespace,
            'labels': {'io.stackyard.kubernetes.registry.id': str(registry.id)},
        },
        'data': {'.dockerconfigjson': build_dockerconfigjson(registry.url, token)},
    }

    core_api = kube.core_v1
    try:
        core_api.create_namespaced_secret(namespace=namespace, body=secret)
        logger.info(f"Created pull secret {name} in {namespace}")
    except ApiException as e:
        if e.status != 409:
            raise RegistrySecretError(f"Failed to create pull secret {name}: {e.reason}")
        try:
            core_api.patch_namespaced_secret(name=name, namespace=namespace, body=secret)
        except ApiException as patch_error:
            raise RegistrySecretError(f"Failed to update pull secret {name}: {patch_error.reason}")
        logger.info(f"Updated pull secret {name} in {namespace}")


def _refresh_sync(db: DatabaseManager, kube: KubeClient, endpoint_id: int, namespace: str) -> List[int]:
    refreshed = []
    registries = [
        r for r in db.registries_for_namespace(endpoint_id, namespace)
        if r.type == REGISTRY_TYPE_ECR
    ]
    for registry in registries:
        if is_token_valid(registry):
            continue

        token, expiry = fetch_ecr_token(registry)
        db.update_registry_token(registry.id, token, expiry)
        upsert_pull_secret(kube, namespace, registry, token)
        refreshed.append(registry.id)
    return refreshed


async def refresh_ecr_secrets(db: DatabaseManager, kube: KubeClient, endpoint_id: int, namespace: str) -> List[int]:
    """
    Refresh expired ECR tokens and their pull secrets for a namespace.

    Args:
        db: DatabaseManager instance
        kube: Client of the endpoint
        endpoint_id: Endpoint the namespace belongs to
        namespace: Namespace the stack deploys into

    Returns:
        Ids of the registries that were refreshed

    Raises:
        RegistrySecretError: On the first registry that cannot be refreshed
    """
    refreshed = await asyncio.to_thread(_refresh_sync, db, kube, endpoint_id, namespace)
    if refreshed:
        logger.info(f"Refreshed ECR pull secrets in {namespace}: registries {refreshed}")
    return refreshed
