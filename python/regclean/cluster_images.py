"""
Images referenced by Kubernetes workloads.

An image counts as in use when any pod, replica set or controller revision
(statefulset and daemonset history) in any namespace of a context refers to
it, from either a regular or an init container. Replica sets and revisions
are included so images still reachable by a rollback are kept.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException

from regclean.error_utils import create_kubernetes_error
from regclean.image_ref import ImageRef, normalize_all

logger = logging.getLogger(__name__)


def _container_images(pod_spec) -> List[str]:
    """Images from a V1PodSpec, regular containers first"""
    if pod_spec is None:
        return []
    containers = list(pod_spec.containers or []) + list(pod_spec.init_containers or [])
    return [c.image for c in containers if c.image]


def _revision_images(data: Optional[Dict[str, Any]]) -> List[str]:
    """Images from the pod template stored in a controller revision's raw data"""
    if not isinstance(data, dict):
        return []
    pod_spec = ((data.get("spec") or {}).get("template") or {}).get("spec") or {}
    containers = list(pod_spec.get("containers") or []) + list(pod_spec.get("initContainers") or [])
    return [c["image"] for c in containers if c.get("image")]


class ClusterImageSource:
    """Lists raw image references from the contexts of one kubeconfig"""

    def __init__(self, kubeconfig: Optional[str] = None):
        self.kubeconfig = kubeconfig or None

    def _api_client(self, context: Optional[str]):
        try:
            return config.new_client_from_config(config_file=self.kubeconfig, context=context or None)
        except (ConfigException, OSError) as e:
            raise create_kubernetes_error(f"load kubeconfig context '{context or 'current'}'", e)

    def list_images(self, context: Optional[str] = None) -> List[str]:
        """Raw image strings used in a context, duplicates removed.

        Args:
            context: kubeconfig context name; None or "" uses the current context

        Raises:
            ActionableError: the context cannot be loaded or a listing fails
        """
        api_client = self._api_client(context)
        core_v1 = client.CoreV1Api(api_client=api_client)
        apps_v1 = client.AppsV1Api(api_client=api_client)
        label = context or "current"

        images: List[str] = []
        try:
            logger.debug(f"Fetching images from pods in context {label}")
            for pod in core_v1.list_pod_for_all_namespaces().items:
                images.extend(_container_images(pod.spec))

            logger.debug(f"Fetching images from statefulsets / daemonsets in context {label}")
            for revision in apps_v1.list_controller_revision_for_all_namespaces().items:
                images.extend(_revision_images(revision.data))

            logger.debug(f"Fetching images from replicasets in context {label}")
            for replica_set in apps_v1.list_replica_set_for_all_namespaces().items:
                template = replica_set.spec.template if replica_set.spec else None
                images.extend(_container_images(template.spec if template else None))
        except ApiException as e:
            raise create_kubernetes_error(f"list workloads in context '{label}'", e)

        return list(dict.fromkeys(images))


def collect_cluster_images(source: ClusterImageSource, contexts: Iterable[str]) -> List[ImageRef]:
    """Union of normalized images in use across contexts"""
    contexts = list(contexts) or [""]
    raw_images: List[str] = []
    for context in contexts:
        current = source.list_images(context)
        logger.debug(f"Found {len(current)} images in context {context or 'current'}")
        raw_images.extend(current)

    refs = normalize_all(raw_images)
    logger.info(f"Collected {len(refs)} unique images in {len(contexts)} contexts")
    return refs
