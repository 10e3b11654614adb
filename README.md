# colocmem

A Kubernetes device plugin. It advertises a node's spare memory as
schedulable "colocation memory" blocks, so that best-effort workloads can
use memory that online services leave free.

## How it works

- Free memory is read from NUMA nodes 0 and 1, using the files
  `/sys/devices/system/node/nodeN/meminfo` (`colocmem.meminfo`).
- Two amounts are subtracted from it:
  - the memory used by burstable pods, read from
    `/sys/fs/cgroup/kubepods.slice/kubepods-burstable.slice/memory.current`;
  - a 10% safety margin.

  `MemoryManager` in `colocmem.memory_manager` does this accounting.
- What remains is cut into 512 MiB blocks. Each block is reported to the
  kubelet as a device of the resource `test.com/colocation-memory`. Device
  IDs look like `CM-<uuid>`.
- Every 10 seconds, `DeviceMonitor` (`colocmem.device_monitor`) recomputes
  the block count.
  - When memory frees up, blocks are added.
  - When memory shrinks, unused blocks are withdrawn first.
  - If that is not enough, whole pods are chosen, those with the most blocks
    first. Their pages are moved to NUMA node 2 with `migratepages`, and
    their blocks are recorded as swapped out.
- Every 13 seconds, a periodic check looks for swapped-out pods. Once enough
  free blocks exist, it moves a pod back to nodes 0 and 1.
- `PodWatcher` (`colocmem.pods_monitor`) watches pods in the
  `colocation-memory` namespace. When such a pod is added, it waits until
  the pod is `Running`, then:
  - reads the device IDs given to the pod with `kubectl exec ... env`;
  - binds those blocks to the pod;
  - finds the container's PID with `crictl`;
  - writes the pod's block total to `memory.max` in the pod-level cgroup.

  When the pod is deleted, its blocks are released.
- The gRPC server is `ColocationMemoryDevicePlugin` in `colocmem.server`. It
  implements the kubelet device plugin API (v1beta1); `colocmem.protocol`
  builds the messages for that API at runtime. `Allocate` passes a
  container its block IDs in the environment variable
  `test.com/colocation-memory`.
- `colocmem.fswatcher` watches `kubelet.sock`. If the socket is created
  again, meaning the kubelet restarted, the command exits so that its
  DaemonSet can restart it.

## Requirements

- A Linux node with cgroup v2 and NUMA nodes 0, 1 and 2.
- These tools on `PATH`: `kubectl`, `crictl` and `migratepages`.
- A kubeconfig. The default location is `/root/.kube/config`.
- Write access to `/var/lib/kubelet/device-plugins/` and `/sys/fs/cgroup/`.
  The plugin normally runs privileged inside a DaemonSet.

## Installation

```
pip install .
```

## Running

```
colocmem
```

Options:

| Option | Default | Meaning |
| --- | --- | --- |
| `--kubeconfig PATH` | `/root/.kube/config` | kubeconfig used to watch pods and for `kubectl exec` |
| `--socket-dir DIR` | `/var/lib/kubelet/device-plugins/` | directory for the plugin socket `colocation-memory.sock` |
| `--kubelet-socket PATH` | `/var/lib/kubelet/device-plugins/kubelet.sock` | kubelet registration socket |
| `--connect-timeout SECONDS` | `5` | how long to wait for a socket to answer |
| `--log-level LEVEL` | `INFO` | one of `DEBUG`, `INFO`, `WARNING`, `ERROR` |

The command does the following, in order:

1. It starts the gRPC server.
2. It registers with the kubelet.
3. It runs until the kubelet socket is created again, or until it is
   interrupted.

It exits with status 1 if the server cannot start, if registration fails,
or if the kubelet socket's directory cannot be watched. If the kubeconfig
cannot be loaded, the plugin still runs, but it does not watch pods.

## Requesting memory in a pod

```yaml
apiVersion: v1
kind: Pod
metadata:
  name: batch-job
  namespace: colocation-memory
spec:
  containers:
    - name: worker
      image: busybox
      command: ["sleep", "3600"]
      resources:
        limits:
          test.com/colocation-memory: 4   # 4 x 512 MiB
```

## Moving a pod off the node

`colocmem.fallback.migrate_pod_to_another_node(yaml_path, client=None)`
reads a pod manifest and recreates the pod with a node anti-affinity for
`cxl-server`.

- If a pod of that name runs on `cxl-server`, it is deleted first.
- If the pod runs on another node, nothing is done.

The device monitor does not call this function. It is only available to
call directly.

## Limitations

- `KubeClient` (`colocmem.kube_client`) is a small client. It covers only
  the pod calls the plugin makes: list, watch, get, create and delete.
- From a kubeconfig it reads only the current context. Authentication is by
  bearer token, token file or client certificate. Exec and auth-provider
  credential plugins are not supported.
- NUMA nodes are fixed: nodes 0 and 1 are local memory and node 2 is the
  pooled memory.
- Block state is kept in memory only and is rebuilt at each start.

## Tests

```
pip install ".[test]"
pytest
```