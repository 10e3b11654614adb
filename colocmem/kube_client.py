"""A small Kubernetes API client covering the pod calls the plugin needs."""

import base64
import json
import logging
import tempfile
from pathlib import Path

import requests
import yaml

from .constants import CONNECT_TIMEOUT

log = logging.getLogger(__name__)

_REQUEST_TIMEOUT = 30.0


class KubeApiError(Exception):
    """The Kubernetes API server rejected a request or could not be reached."""

    def __init__(self, status, message):
        super().__init__(f"kubernetes API error ({status}): {message}")
        self.status = status
        self.message = message


def _materialize(data, suffix):
    """Write base64-encoded kubeconfig data to a private file and return its path."""
    with tempfile.NamedTemporaryFile(
        prefix="colocmem-", suffix=suffix, delete=False
    ) as handle:
        handle.write(base64.b64decode(data))
        return handle.name


def _resolve(base, value):
    path = Path(value).expanduser()
    return str(path if path.is_absolute() else base / path)


def _named(entries, key, name):
    for entry in entries or []:
        if entry.get("name") == name:
            return entry.get(key) or {}
    return None


class KubeClient:
    """Talks to the Kubernetes API server about pods over HTTPS."""

    def __init__(
        self,
        server,
        token=None,
        ca_file=None,
        cert_file=None,
        key_file=None,
        verify=True,
    ):
        self.server = server.rstrip("/")
        self.session = requests.Session()
        self.session.headers["Accept"] = "application/json"
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"
        if verify and ca_file:
            self.session.verify = str(ca_file)
        else:
            self.session.verify = bool(verify)
        if cert_file:
            self.session.cert = (
                (str(cert_file), str(key_file)) if key_file else str(cert_file)
            )

    @classmethod
    def from_kubeconfig(cls, path):
        """Build a client from the current context of a kubeconfig file."""
        config_path = Path(path)
        config = yaml.safe_load(config_path.read_text()) or {}
        base = config_path.parent

        context_name = config.get("current-context")
        if not context_name:
            raise ValueError(f"{path}: no current-context set")
        context = _named(config.get("contexts"), "context", context_name)
        if context is None:
            raise ValueError(f"{path}: context {context_name!r} not found")

        cluster = _named(config.get("clusters"), "cluster", context.get("cluster"))
        if cluster is None:
            raise ValueError(f"{path}: cluster {context.get('cluster')!r} not found")
        server = cluster.get("server")
        if not server:
            raise ValueError(f"{path}: cluster has no server")
        user = _named(config.get("users"), "user", context.get("user")) or {}

        ca_file = None
        if cluster.get("certificate-authority-data"):
            ca_file = _materialize(cluster["certificate-authority-data"], ".crt")
        elif cluster.get("certificate-authority"):
            ca_file = _resolve(base, cluster["certificate-authority"])
        verify = not cluster.get("insecure-skip-tls-verify", False)

        cert_file = None
        if user.get("client-certificate-data"):
            cert_file = _materialize(user["client-certificate-data"], ".crt")
        elif user.get("client-certificate"):
            cert_file = _resolve(base, user["client-certificate"])
        key_file = None
        if user.get("client-key-data"):
            key_file = _materialize(user["client-key-data"], ".key")
        elif user.get("client-key"):
            key_file = _resolve(base, user["client-key"])

        token = user.get("token")
        if not token and user.get("tokenFile"):
            token = Path(_resolve(base, user["tokenFile"])).read_text().strip()

        return cls(
            server,
            token=token,
            ca_file=ca_file,
            cert_file=cert_file,
            key_file=key_file,
            verify=verify,
        )

    @staticmethod
    def _pods_path(namespace, name=None):
        path = f"/api/v1/namespaces/{namespace}/pods"
        return f"{path}/{name}" if name else path

    @staticmethod
    def _check(response):
        if response.ok:
            return
        try:
            message = response.json().get("message", response.text)
        except ValueError:
            message = response.text
        raise KubeApiError(response.status_code, message)

    def _request(self, method, path, **kwargs):
        kwargs.setdefault("timeout", _REQUEST_TIMEOUT)
        try:
            response = self.session.request(method, self.server + path, **kwargs)
        except requests.RequestException as exc:
            raise KubeApiError(None, str(exc)) from exc
        self._check(response)
        return response.json()

    def list_pods(self, namespace):
        """Return the pod list of a namespace as the API server sends it."""
        return self._request("GET", self._pods_path(namespace))

    def watch_pods(self, namespace, resource_version=""):
        """Yield (event type, pod object) pairs from a watch on the namespace's pods."""
        params = {"watch": "true"}
        if resource_version:
            params["resourceVersion"] = resource_version
        try:
            response = self.session.get(
                self.server + self._pods_path(namespace),
                params=params,
                stream=True,
                timeout=(CONNECT_TIMEOUT, None),
            )
        except requests.RequestException as exc:
            raise KubeApiError(None, str(exc)) from exc
        with response:
            self._check(response)
            for line in response.iter_lines():
                if not line:
                    continue
                event = json.loads(line)
                yield event.get("type"), event.get("object")

    def get_pod(self, namespace, name):
        """Return one pod."""
        return self._request("GET", self._pods_path(namespace, name))

    def delete_pod(self, namespace, name):
        """Delete one pod and return the API server's reply."""
        return self._request("DELETE", self._pods_path(namespace, name))

    def create_pod(self, namespace, pod):
        """Create a pod from its manifest and return the created object."""
        return self._request("POST", self._pods_path(namespace), json=pod)