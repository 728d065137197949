"""
Client for the Outline-style VPN management API.

Each remote server exposes a REST API behind a self-signed certificate. The
certificate is trusted by pinning its SHA-256 fingerprint instead of using a
CA bundle.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter

from app.core.config import settings

logger = logging.getLogger(__name__)


class OutlineApiError(Exception):
    """Raised when a remote management API call fails or cannot be reached."""

    def __init__(self, message: str, status_code: int = 0, response_body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


@dataclass
class RemoteAccessKey:
    """Key as reported by the remote server."""
    id: str
    name: str
    access_url: Optional[str] = None
    method: Optional[str] = None
    port: Optional[int] = None
    data_limit_bytes: Optional[int] = None

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "RemoteAccessKey":
        limit = payload.get("dataLimit") or {}
        return cls(
            id=str(payload["id"]),
            name=payload.get("name") or "",
            access_url=payload.get("accessUrl"),
            method=payload.get("method"),
            port=payload.get("port"),
            data_limit_bytes=limit.get("bytes"),
        )


@dataclass
class RemoteServerInfo:
    """Subset of the remote server description used locally."""
    server_id: Optional[str]
    name: Optional[str]
    version: Optional[str]
    metrics_enabled: bool


class FingerprintAdapter(HTTPAdapter):
    """HTTPAdapter that accepts a connection only if the peer certificate matches a SHA-256 fingerprint."""

    def __init__(self, fingerprint: str, **kwargs):
        self._fingerprint = fingerprint
        super().__init__(**kwargs)

    def init_poolmanager(self, connections, maxsize, block=False, **pool_kwargs):
        pool_kwargs["assert_fingerprint"] = self._fingerprint
        super().init_poolmanager(connections, maxsize, block=block, **pool_kwargs)


class OutlineClient:
    """Thin wrapper over the remote management REST API."""

    def __init__(
        self,
        api_url: str,
        cert_sha256: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout if timeout is not None else settings.REMOTE_REQUEST_TIMEOUT_SECONDS

        if session is None:
            session = requests.Session()
            if cert_sha256:
                # Chain validation is replaced by the fingerprint check
                session.verify = False
                session.mount("https://", FingerprintAdapter(cert_sha256.replace(":", "").lower()))
        self.session = session

    def _request(
        self,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
        allow_not_found: bool = False,
    ) -> Optional[Any]:
        url = f"{self.api_url}{path}"
        try:
            response = self.session.request(method, url, json=payload, timeout=self.timeout)
        except requests.Timeout as e:
            raise OutlineApiError(f"Connection timeout: {method} {path}") from e
        except requests.RequestException as e:
            raise OutlineApiError(f"Failed to connect to remote server: {e}") from e

        if response.status_code == 404 and allow_not_found:
            return None

        if response.status_code < 200 or response.status_code >= 300:
            raise OutlineApiError(
                f"Remote API error: {method} {path} -> {response.status_code}",
                status_code=response.status_code,
                response_body=response.text[:500],
            )

        if response.status_code == 204 or not response.content:
            return None

        try:
            return response.json()
        except ValueError as e:
            raise OutlineApiError("Failed to parse response", response.status_code, response.text[:500]) from e

    # Server information

    def get_server_info(self) -> RemoteServerInfo:
        data = self._request("GET", "/server") or {}
        return RemoteServerInfo(
            server_id=data.get("serverId"),
            name=data.get("name"),
            version=data.get("version"),
            metrics_enabled=bool(data.get("metricsEnabled")),
        )

    def test_connection(self) -> bool:
        try:
            self.get_server_info()
            return True
        except OutlineApiError as e:
            logger.info(f"Connection test to {self.api_url} failed: {e}")
            return False

    # Access keys

    def list_keys(self) -> List[RemoteAccessKey]:
        data = self._request("GET", "/access-keys") or {}
        return [RemoteAccessKey.from_api(item) for item in data.get("accessKeys", [])]

    def create_key(self, name: str, method: Optional[str] = None) -> RemoteAccessKey:
        payload: Dict[str, Any] = {"name": name}
        if method:
            payload["method"] = method
        data = self._request("POST", "/access-keys", payload)
        if not data:
            raise OutlineApiError("Remote server returned an empty key")
        return RemoteAccessKey.from_api(data)

    def delete_key(self, key_id: str) -> None:
        """Delete a key. A key that is already gone counts as deleted."""
        self._request("DELETE", f"/access-keys/{key_id}", allow_not_found=True)

    def rename_key(self, key_id: str, name: str) -> None:
        self._request("PUT", f"/access-keys/{key_id}/name", {"name": name})

    def set_data_limit(self, key_id: str, limit_bytes: int) -> None:
        self._request("PUT", f"/access-keys/{key_id}/data-limit", {"limit": {"bytes": int(limit_bytes)}})

    def remove_data_limit(self, key_id: str) -> None:
        self._request("DELETE", f"/access-keys/{key_id}/data-limit", allow_not_found=True)

    # Metrics

    def get_metrics(self) -> Optional[Dict[str, int]]:
        """
        Cumulative transferred bytes per remote key id.

        Returns None when the server does not expose metrics.
        """
        data = self._request("GET", "/metrics/transfer", allow_not_found=True)
        if data is None:
            return None
        by_key = data.get("bytesTransferredByUserId")
        if by_key is None:
            return None
        return {str(key_id): int(value) for key_id, value in by_key.items()}


def create_outline_client(server) -> OutlineClient:
    """Build a client for a Server record."""
    return OutlineClient(server.api_url, server.api_cert_sha256)


def get_client_factory():
    """Dependency returning the callable used to build remote clients."""
    return create_outline_client
