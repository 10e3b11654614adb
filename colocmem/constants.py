"""Fixed settings shared across the colocation memory device plugin."""

RESOURCE_NAME = "test.com/colocation-memory"
DEVICE_SOCKET = "colocation-memory.sock"
CONNECT_TIMEOUT = 5.0  # seconds

BLOCK_SIZE = 512 * 1024 * 1024  # 512 MiB per virtual memory block

# Fraction of free memory held back: other host processes need room, and
# the debounced block accounting can lag behind real usage.
SAFETY_WATERMARK = 0.1

CGROUP_ROOT = "/sys/fs/cgroup"
K8S_PODS_SLICE = "kubepods.slice"
BURSTABLE_MEMORY = "kubepods-burstable.slice/memory.current"
BEST_EFFORT_MEMORY = "kubepods-besteffort.slice/memory.current"
NUMA_ROOT = "/sys/devices/system/node"
PROC_ROOT = "/proc"

REFRESH_INTERVAL = 10.0  # seconds
DEVICE_NAME_PREFIX = "CM-"
KUBE_CONFIG_PATH = "/root/.kube/config"
COLOCATION_NAMESPACE = "colocation-memory"

DEBOUNCE_THRESHOLD = 1
MIN_ADJUSTMENT_INTERVAL = 60.0  # seconds
RECLAIM_CHECK_INTERVAL = 13.0  # seconds

DEVICE_PLUGIN_PATH = "/var/lib/kubelet/device-plugins/"
KUBELET_SOCKET = DEVICE_PLUGIN_PATH + "kubelet.sock"
DEVICE_PLUGIN_API_VERSION = "v1beta1"


def device_name(uid):
    """Return the device ID advertised for a block with the given unique id."""
    return f"{DEVICE_NAME_PREFIX}{uid}"