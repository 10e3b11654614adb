import pytest
import yaml

from colocmem.fallback import (
    migrate_pod_to_another_node,
    prepare_pod,
    with_node_anti_affinity,
)
from colocmem.kube_client import KubeApiError


class FakeClient:
    def __init__(self, existing=None, delete_error=None):
        self.existing = existing
        self.delete_error = delete_error
        self.calls = []

    def get_pod(self, namespace, name):
        self.calls.append(("get", namespace, name))
        if self.existing is None:
            raise KubeApiError(404, "not found")
        return self.existing

    def delete_pod(self, namespace, name):
        self.calls.append(("delete", namespace, name))
        if self.delete_error:
            raise self.delete_error
        return {}

    def create_pod(self, namespace, pod):
        self.calls.append(("create", namespace, pod["metadata"]["name"]))
        return pod


POD = {
    "apiVersion": "v1",
    "kind": "Pod",
    "metadata": {"name": "worker", "uid": "abc", "resourceVersion": "42"},
    "spec": {"containers": [{"name": "main", "image": "busybox"}]},
}


@pytest.fixture
def pod_file(tmp_path):
    path = tmp_path / "worker.yaml"
    path.write_text(yaml.safe_dump(POD))
    return path


def expressions(pod):
    terms = pod["spec"]["affinity"]["nodeAffinity"][
        "requiredDuringSchedulingIgnoredDuringExecution"]["nodeSelectorTerms"]
    return terms[0]["matchExpressions"]


def test_anti_affinity_does_not_touch_input():
    result = with_node_anti_affinity(POD, "other-node")
    assert "affinity" not in POD["spec"]
    assert expressions(result) == [
        {"key": "kubernetes.io/hostname", "operator": "NotIn", "values": ["other-node"]}
    ]
    assert result["spec"]["containers"] == POD["spec"]["containers"]


def test_prepare_pod_clears_identity():
    result = prepare_pod(POD)
    assert "uid" not in result["metadata"]
    assert "resourceVersion" not in result["metadata"]
    assert result["metadata"]["name"] == "worker"
    assert expressions(result)[0]["values"] == ["cxl-server"]
    assert POD["metadata"]["uid"] == "abc"


def test_creates_when_absent(pod_file):
    client = FakeClient()
    created = migrate_pod_to_another_node(pod_file, client)
    assert client.calls == [("get", "default", "worker"), ("create", "default", "worker")]
    assert "uid" not in created["metadata"]
    assert expressions(created)[0]["values"] == ["cxl-server"]


def test_deletes_pod_on_colocation_node(pod_file):
    client = FakeClient(existing={"spec": {"nodeName": "cxl-server"}})
    created = migrate_pod_to_another_node(pod_file, client)
    assert [c[0] for c in client.calls] == ["get", "delete", "create"]
    assert created["metadata"]["name"] == "worker"


def test_leaves_pod_elsewhere(pod_file):
    client = FakeClient(existing={"spec": {"nodeName": "node-b"}})
    assert migrate_pod_to_another_node(pod_file, client) is None
    assert [c[0] for c in client.calls] == ["get"]


def test_delete_failure_raises(pod_file):
    client = FakeClient(
        existing={"spec": {"nodeName": "cxl-server"}},
        delete_error=KubeApiError(403, "forbidden"),
    )
    with pytest.raises(KubeApiError):
        migrate_pod_to_another_node(pod_file, client)
    assert "create" not in [c[0] for c in client.calls]


def test_uses_namespace_from_manifest(tmp_path):
    pod = dict(POD, metadata={"name": "worker", "namespace": "batch"})
    path = tmp_path / "pod.yaml"
    path.write_text(yaml.safe_dump(pod))
    client = FakeClient()
    migrate_pod_to_another_node(path, client)
    assert client.calls[-1] == ("create", "batch", "worker")


def test_missing_file_raises(tmp_path):
    with pytest.raises(OSError):
        migrate_pod_to_another_node(tmp_path / "absent.yaml", FakeClient())