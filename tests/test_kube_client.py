import base64
import json
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from urllib.parse import parse_qs, urlsplit

import pytest
import yaml

from colocmem.kube_client import KubeApiError, KubeClient


class _Handler(BaseHTTPRequestHandler):
    def _serve(self):
        length = int(self.headers.get("Content-Length") or 0)
        body = self.rfile.read(length) if length else b""
        self.server.requests.append(
            {
                "method": self.command,
                "path": self.path,
                "body": body,
                "auth": self.headers.get("Authorization"),
            }
        )
        key = (self.command, urlsplit(self.path).path)
        status, payload = self.server.routes.get(
            key, (404, b'{"message": "not found"}')
        )
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    do_GET = _serve
    do_POST = _serve
    do_DELETE = _serve

    def log_message(self, *args):
        pass


@pytest.fixture
def api_server():
    server = ThreadingHTTPServer(("127.0.0.1", 0), _Handler)
    server.requests = []
    server.routes = {}
    server.url = f"http://127.0.0.1:{server.server_address[1]}"
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server
    server.shutdown()
    server.server_close()


PODS = "/api/v1/namespaces/colocation-memory/pods"


def test_list_pods_returns_body_and_sends_token(api_server):
    pod_list = {"metadata": {"resourceVersion": "42"}, "items": []}
    api_server.routes[("GET", PODS)] = (200, json.dumps(pod_list).encode())
    client = KubeClient(api_server.url, token="token")
    assert client.list_pods("colocation-memory") == pod_list
    assert api_server.requests[0]["auth"] == "Bearer token"


def test_get_pod_not_found_raises(api_server):
    client = KubeClient(api_server.url)
    with pytest.raises(KubeApiError) as info:
        client.get_pod("colocation-memory", "missing")
    assert info.value.status == 404
    assert info.value.message == "not found"


def test_get_pod_returns_object(api_server):
    pod = {"metadata": {"name": "web"}, "status": {"phase": "Running"}}
    api_server.routes[("GET", PODS + "/web")] = (200, json.dumps(pod).encode())
    client = KubeClient(api_server.url)
    assert client.get_pod("colocation-memory", "web") == pod


def test_delete_pod_uses_delete_on_pod_path(api_server):
    api_server.routes[("DELETE", PODS + "/web")] = (200, b'{"kind": "Pod"}')
    client = KubeClient(api_server.url)
    assert client.delete_pod("colocation-memory", "web") == {"kind": "Pod"}
    assert api_server.requests[0]["method"] == "DELETE"
    assert api_server.requests[0]["path"] == PODS + "/web"


def test_create_pod_posts_manifest(api_server):
    pod = {"metadata": {"name": "web"}, "spec": {"containers": []}}
    api_server.routes[("POST", PODS)] = (201, json.dumps(pod).encode())
    client = KubeClient(api_server.url)
    assert client.create_pod("colocation-memory", pod) == pod
    assert json.loads(api_server.requests[0]["body"]) == pod


def test_watch_pods_yields_events_in_order(api_server):
    events = [
        {"type": "ADDED", "object": {"metadata": {"name": "a"}}},
        {"type": "DELETED", "object": {"metadata": {"name": "b"}}},
    ]
    payload = b"\n".join(json.dumps(e).encode() for e in events) + b"\n"
    api_server.routes[("GET", PODS)] = (200, payload)
    client = KubeClient(api_server.url)
    got = list(client.watch_pods("colocation-memory", "42"))
    assert got == [(e["type"], e["object"]) for e in events]
    query = parse_qs(urlsplit(api_server.requests[0]["path"]).query)
    assert query["watch"] == ["true"]
    assert query["resourceVersion"] == ["42"]


def test_watch_pods_error_status_raises(api_server):
    api_server.routes[("GET", PODS)] = (403, b'{"message": "forbidden"}')
    client = KubeClient(api_server.url)
    with pytest.raises(KubeApiError) as info:
        list(client.watch_pods("colocation-memory", ""))
    assert info.value.status == 403


def _write_kubeconfig(path, cluster, user):
    config = {
        "current-context": "main",
        "contexts": [{"name": "main", "context": {"cluster": "c", "user": "u"}}],
        "clusters": [{"name": "c", "cluster": cluster}],
        "users": [{"name": "u", "user": user}],
    }
    path.write_text(yaml.safe_dump(config))
    return path


def test_from_kubeconfig_token_reaches_server(tmp_path, api_server):
    api_server.routes[("GET", PODS)] = (200, b'{"items": []}')
    config = _write_kubeconfig(
        tmp_path / "config", {"server": api_server.url}, {"token": "token"}
    )
    client = KubeClient.from_kubeconfig(config)
    assert client.list_pods("colocation-memory") == {"items": []}
    assert api_server.requests[0]["auth"] == "Bearer token"


def test_from_kubeconfig_materializes_ca_data(tmp_path):
    config = _write_kubeconfig(
        tmp_path / "config",
        {
            "server": "https://127.0.0.1:6443",
            "certificate-authority-data": base64.b64encode(b"ca-bytes").decode(),
        },
        {},
    )
    client = KubeClient.from_kubeconfig(config)
    assert Path(client.session.verify).read_bytes() == b"ca-bytes"


def test_from_kubeconfig_resolves_relative_ca_path(tmp_path):
    config = _write_kubeconfig(
        tmp_path / "config",
        {"server": "https://127.0.0.1:6443", "certificate-authority": "ca.crt"},
        {},
    )
    client = KubeClient.from_kubeconfig(config)
    assert client.session.verify == str(tmp_path / "ca.crt")


def test_from_kubeconfig_insecure_skip_verify(tmp_path):
    config = _write_kubeconfig(
        tmp_path / "config",
        {"server": "https://127.0.0.1:6443", "insecure-skip-tls-verify": True},
        {},
    )
    assert KubeClient.from_kubeconfig(config).session.verify is False


def test_from_kubeconfig_unknown_context_raises(tmp_path):
    path = tmp_path / "config"
    path.write_text(yaml.safe_dump({"current-context": "nowhere", "contexts": []}))
    with pytest.raises(ValueError):
        KubeClient.from_kubeconfig(path)