"""
Kubernetes client factory keyed by endpoint.

Each endpoint either carries an encrypted kubeconfig or runs in-cluster
(the service account of the pod running Stackyard). Clients are built once
per endpoint and cached; the kubeconfig is never loaded into the global
kubernetes.config state so endpoints don't leak into each other.
"""

import logging
import threading
from typing import Dict, Optional

import yaml
from kubernetes import client, config
from kubernetes.config.config_exception import ConfigException
from kubernetes.dynamic import DynamicClient

from database import DatabaseManager, Endpoint, ObjectNotFoundError

logger = logging.getLogger(__name__)


class KubeClientError(RuntimeError):
    """Raised when no client can be built for an endpoint."""
    pass


class KubeClient:
    """API client bound to a single endpoint."""

    def __init__(self, endpoint_id: int, api_client: client.ApiClient):
        self.endpoint_id = endpoint_id
        self.api_client = api_client
        self._dynamic: Optional[DynamicClient] = None

    @property
    def core_v1(self) -> client.CoreV1Api:
        return client.CoreV1Api(self.api_client)

    @property
    def dynamic(self) -> DynamicClient:
        """Discovery-backed client able to apply any resource kind."""
        # Discovery hits the API server; only do it when needed
        if self._dynamic is None:
            self._dynamic = DynamicClient(self.api_client)
        return self._dynamic

    def close(self) -> None:
        self.api_client.close()


def _build_api_client(endpoint: Endpoint) -> client.ApiClient:
    if endpoint.in_cluster:
        configuration = client.Configuration()
        config.load_incluster_config(client_configuration=configuration)
        return client.ApiClient(configuration=configuration)

    kubeconfig = endpoint.kubeconfig
    if not kubeconfig:
        raise KubeClientError(f"Endpoint {endpoint.id} has no kubeconfig")

    data = yaml.safe_load(kubeconfig)
    if not isinstance(data, dict):
        raise KubeClientError(f"Endpoint {endpoint.id} kubeconfig is not a mapping")
    return config.new_client_from_config_dict(data, context=data.get('current-context'))


class KubeClientFactory:
    """
    Builds and caches one KubeClient per endpoint.

    Thread-safe: clients are requested from worker threads by the deployer
    and from the event loop by the update handlers.
    """

    def __init__(self, db: DatabaseManager):
        self.db = db
        self._clients: Dict[int, KubeClient] = {}
        self._lock = threading.Lock()

    def get_client(self, endpoint_id: int) -> KubeClient:
        """
        Get the client for an endpoint.

        Raises:
            KubeClientError: If the endpoint doesn't exist or its
                configuration cannot be loaded
        """
        with self._lock:
            cached = self._clients.get(endpoint_id)
            if cached is not None:
                return cached

            try:
                endpoint = self.db.get_endpoint(endpoint_id)
            except ObjectNotFoundError as e:
                raise KubeClientError(str(e))

            try:
                api_client = _build_api_client(endpoint)
            except (ConfigException, yaml.YAMLError, ValueError) as e:
                raise KubeClientError(f"Unable to load configuration for endpoint {endpoint_id}: {e}")

            kube = KubeClient(endpoint_id, api_client)
            self._clients[endpoint_id] = kube
            logger.info(f"Created Kubernetes client for endpoint {endpoint_id} ({endpoint.name})")
            return kube

    def invalidate(self, endpoint_id: int) -> None:
        """Drop the cached client, e.g. after the endpoint's kubeconfig changed."""
        with self._lock:
            kube = self._clients.pop(endpoint_id, None)
        if kube is not None:
            kube.close()

    def close_all(self) -> None:
        with self._lock:
            clients = list(self._clients.values())
            self._clients.clear()
        for kube in clients:
            kube.close()


# Singleton instance with thread-safe initialization
_factory: Optional[KubeClientFactory] = None
_factory_lock = threading.Lock()


def get_kube_client_factory() -> KubeClientFactory:
    """
    Get or create the process-wide KubeClientFactory.

    Thread-safe using double-checked locking pattern.
    """
    global _factory

    if _factory is not None:
        return _factory

    with _factory_lock:
        if _factory is None:
            from database import get_database_manager
            _factory = KubeClientFactory(get_database_manager())
        return _factory
