"""Last-resort move of a pod to a node other than the colocation server."""

import copy
import logging
from pathlib import Path

import yaml

from .constants import KUBE_CONFIG_PATH
from .kube_client import KubeApiError, KubeClient

log = logging.getLogger(__name__)

COLOCATION_NODE = "cxl-server"
HOSTNAME_LABEL = "kubernetes.io/hostname"


def with_node_anti_affinity(pod, hostname=COLOCATION_NODE):
    """Return a copy of the pod manifest that may not be scheduled on hostname."""
    result = copy.deepcopy(pod)
    spec = result.setdefault("spec", {})
    spec["affinity"] = {
        "nodeAffinity": {
            "requiredDuringSchedulingIgnoredDuringExecution": {
                "nodeSelectorTerms": [
                    {
                        "matchExpressions": [
                            {
                                "key": HOSTNAME_LABEL,
                                "operator": "NotIn",
                                "values": [hostname],
                            }
                        ]
                    }
                ]
            }
        }
    }
    return result


def prepare_pod(pod):
    """Return a copy of the manifest ready to be created again away from the colocation node."""
    result = with_node_anti_affinity(pod)
    metadata = result.setdefault("metadata", {})
    metadata.pop("resourceVersion", None)
    metadata.pop("uid", None)
    return result


def migrate_pod_to_another_node(yaml_path, client=None):
    """Recreate the pod described in yaml_path on a node other than the colocation node.

    An existing pod of that name is deleted first if it runs on the colocation node;
    if it runs elsewhere nothing is done and None is returned. Otherwise the created
    pod object is returned.
    """
    if client is None:
        client = KubeClient.from_kubeconfig(KUBE_CONFIG_PATH)

    pod = yaml.safe_load(Path(yaml_path).read_text()) or {}
    metadata = pod.get("metadata") or {}
    name = metadata.get("name", "")
    namespace = metadata.get("namespace") or "default"

    try:
        existing = client.get_pod(namespace, name)
    except KubeApiError:
        existing = None

    if existing is not None:
        if (existing.get("spec") or {}).get("nodeName") == COLOCATION_NODE:
            log.info("existing pod found on %s, deleting it", COLOCATION_NODE)
            client.delete_pod(namespace, name)
        else:
            log.info("existing pod found, not deleting")
            return None
    else:
        log.info("no existing pod found, creating a new one")

    created = client.create_pod(namespace, prepare_pod(pod))
    log.info(
        "pod %s created in namespace %s",
        (created.get("metadata") or {}).get("name", name), namespace,
    )
    return created