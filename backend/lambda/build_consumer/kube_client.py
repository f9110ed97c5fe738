"""kube_client.py — Minimal Kubernetes core/v1 pod client over HTTPS.

Only the pod verbs the EKS executor needs: create, get, list by label,
delete. Authenticates with a bearer token and trusts the cluster CA.
"""
from __future__ import annotations

import json
import ssl
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Dict, List, Optional

__all__ = ["KubernetesClient", "KubernetesError"]

_DEFAULT_TIMEOUT_SECONDS = 30


class KubernetesError(RuntimeError):
    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(f"Kubernetes API error {status_code}: {message}")


def _ssl_context(ca_data: bytes) -> ssl.SSLContext:
    return ssl.create_default_context(cadata=ca_data.decode("ascii"))


class KubernetesClient:
    def __init__(self, host: str, token: str, ca_data: bytes, *, timeout: float = _DEFAULT_TIMEOUT_SECONDS):
        self.host = host.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._context = _ssl_context(ca_data) if ca_data else None

    def _pods_path(self, namespace: str, name: str = "") -> str:
        path = f"/api/v1/namespaces/{urllib.parse.quote(namespace, safe='')}/pods"
        if name:
            path += f"/{urllib.parse.quote(name, safe='')}"
        return path

    def _request(
        self,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]] = None,
        query: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        url = f"{self.host}{path}"
        if query:
            url += "?" + urllib.parse.urlencode(query)
        data = json.dumps(body).encode("utf-8") if body is not None else None
        req = urllib.request.Request(
            url,
            data=data,
            method=method,
            headers={
                "Authorization": f"Bearer {self.token}",
                "Accept": "application/json",
                "Content-Type": "application/json",
            },
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout, context=self._context) as resp:
                raw = resp.read()
        except urllib.error.HTTPError as exc:
            text = exc.read().decode("utf-8", errors="replace")
            try:
                message = json.loads(text).get("message") or text
            except (json.JSONDecodeError, AttributeError):
                message = text
            raise KubernetesError(exc.code, message) from exc
        except urllib.error.URLError as exc:
            raise KubernetesError(0, str(exc.reason)) from exc
        return json.loads(raw) if raw else {}

    def create_pod(self, namespace: str, pod: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", self._pods_path(namespace), body=pod)

    def get_pod(self, namespace: str, name: str) -> Dict[str, Any]:
        return self._request("GET", self._pods_path(namespace, name))

    def list_pods(self, namespace: str, label_selector: str = "") -> List[Dict[str, Any]]:
        query = {"labelSelector": label_selector} if label_selector else None
        return list(self._request("GET", self._pods_path(namespace), query=query).get("items") or [])

    def delete_pod(self, namespace: str, name: str) -> Dict[str, Any]:
        return self._request("DELETE", self._pods_path(namespace, name))
