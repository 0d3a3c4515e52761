"""Pod spec mutation for managed workloads.

Pod specs are handled in their decoded JSON form (camelCase dicts) so that
fields unknown to the kubernetes client models survive a mutation untouched.
"""

import logging
from typing import Any, Dict, List, Optional

from kubernetes import client

from cert_manager_csi_operator.config import CsiDriverConfig

logger = logging.getLogger(__name__)

_serializer = client.ApiClient()


def to_dict(obj: Any) -> Dict[str, Any]:
    """Serialize a kubernetes client model into its JSON (camelCase) form."""
    return _serializer.sanitize_for_serialization(obj)


def _merge_by_name(dst: Optional[List[Dict[str, Any]]], *elements: Dict[str, Any]) -> List[Dict[str, Any]]:
    dst = dst if dst is not None else []
    for new in elements:
        for i, current in enumerate(dst):
            if current.get("name") == new["name"]:
                dst[i] = new
                break
        else:
            dst.append(new)
    return dst


def merge_volumes(dst: Optional[List[Dict[str, Any]]], *volumes: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Merge volumes into ``dst`` by name.

    A volume replaces the first existing entry with the same name, keeping
    its position; otherwise it is appended. Other entries are left alone,
    so merging the same volume twice changes nothing the second time.
    """
    return _merge_by_name(dst, *volumes)


def merge_mounts(dst: Optional[List[Dict[str, Any]]], *mounts: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Merge volume mounts into ``dst`` by name, like ``merge_volumes``."""
    return _merge_by_name(dst, *mounts)


def mutate(config: CsiDriverConfig, metadata: Optional[Dict[str, Any]], pod_spec: Dict[str, Any]) -> bool:
    """Ensure the cert-manager CSI volume and mount exist on a pod spec.

    The pod spec is modified in place. Nothing is touched when the object
    is not managed, or when the configuration fails validation (the
    ConfigError propagates to the caller).

    Args:
        config: Operator configuration
        metadata: Workload metadata (namespace, annotations)
        pod_spec: Pod template spec of the workload

    Returns:
        True if the workload is managed and the pod spec was ensured
    """
    if not config.is_managed(metadata):
        logger.info("object is not managed")
        return False
    logger.info("object is managed")

    volume, mount = config.get_volume_and_mount(config.get_attributes())
    volume_dict, mount_dict = to_dict(volume), to_dict(mount)

    pod_spec["volumes"] = merge_volumes(pod_spec.get("volumes"), volume_dict)
    for container in pod_spec.get("containers") or []:
        # one copy per container
        container["volumeMounts"] = merge_mounts(container.get("volumeMounts"), dict(mount_dict))

    logger.info("finished ensuring volume and mount exist")
    return True
