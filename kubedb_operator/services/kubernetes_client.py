"""
Kubernetes API client construction.

The operator talks to a single cluster; all gateways share one
``KubernetesClientSet`` built at startup.
"""
from typing import Optional

from kubernetes_asyncio import client, config

from kubedb_operator.config.logging import get_logger
from kubedb_operator.config.settings import Settings

logger = get_logger(__name__)


class KubernetesClientSet:
    """Container for Kubernetes API clients."""

    def __init__(self, api_client: client.ApiClient):
        self.api_client = api_client
        self.custom_api = client.CustomObjectsApi(api_client)
        self.core_api = client.CoreV1Api(api_client)
        self.apps_api = client.AppsV1Api(api_client)
        self.batch_api = client.BatchV1Api(api_client)
        self.rbac_api = client.RbacAuthorizationV1Api(api_client)

    async def close(self):
        """Close all API clients."""
        if self.api_client:
            await self.api_client.close()


async def load_client_set(settings: Settings) -> KubernetesClientSet:
    """
    Load cluster credentials and build the client set.

    Uses the pod service account when running in-cluster, otherwise the
    configured kubeconfig path (or the default kubeconfig location).
    """
    if settings.k8s_in_cluster:
        config.load_incluster_config()
        logger.info("kubernetes_config_loaded", source="in_cluster")
    else:
        config_file: Optional[str] = settings.kubeconfig_path or None
        await config.load_kube_config(config_file=config_file)
        logger.info("kubernetes_config_loaded", source="kubeconfig", path=config_file or "default")

    return KubernetesClientSet(client.ApiClient())
