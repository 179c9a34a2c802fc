"""
HTTP implementation of the storage backend.

Talks to the NAS REST API under ``<base_url>/api`` with httpx.
"""

from __future__ import annotations

from typing import Any

import httpx

from poolforge.backend.base import StorageBackend
from poolforge.core.config import BackendConfig
from poolforge.core.errors import BackendError, SessionError
from poolforge.core.logging import get_logger
from poolforge.core.models import (
    BlockDevice,
    DiskRole,
    DiskSelection,
    SyncJob,
    SystemStats,
)

logger = get_logger(__name__)


class HttpBackend(StorageBackend):
    """Storage backend reached over HTTP/JSON."""

    def __init__(
        self,
        config: BackendConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__()
        self.config = config
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.api_base,
                timeout=self.config.timeout_seconds,
                verify=self.config.verify_tls,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.session_id:
            headers["X-Session-Id"] = self.config.session_id
        if self.config.csrf_token:
            headers["X-CSRF-Token"] = self.config.csrf_token
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        payload: dict[str, Any] | None = None,
    ) -> Any:
        try:
            response = await self.client.request(
                method,
                path,
                json=payload,
                headers=self._headers(),
            )
        except httpx.HTTPError as exc:
            raise BackendError(f"{method} {path} failed: {exc}") from exc

        try:
            data = response.json() if response.content else {}
        except ValueError:
            data = {}

        if response.status_code == 401:
            self._session_expired(SessionError("Session expired"))
        if response.status_code == 403 and _is_csrf_error(data):
            self._session_expired(SessionError("CSRF token expired"))

        if response.is_error:
            message = data.get("error") if isinstance(data, dict) else None
            raise BackendError(
                message or f"{method} {path} returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return data

    def _session_expired(self, error: SessionError) -> None:
        logger.warning("Backend session invalid", reason=error.reason)
        self._notify_session_error(error)
        raise error

    # ==================== Inventory ====================

    async def list_devices(self) -> list[BlockDevice]:
        data = await self._request("GET", "/system/disks")
        return [BlockDevice.from_dict(d) for d in data or []]

    async def _detect(self) -> dict[str, Any]:
        data = await self._request("GET", "/storage/disks/detect")
        return data if isinstance(data, dict) else {}

    async def list_unconfigured(self) -> list[BlockDevice]:
        data = await self._detect()
        return [BlockDevice.from_dict(d) for d in data.get("unconfigured") or []]

    async def list_configured(self) -> list[BlockDevice]:
        data = await self._detect()
        return [BlockDevice.from_dict(d) for d in data.get("configured") or []]

    async def list_ignored(self) -> list[str]:
        data = await self._request("GET", "/storage/disks/ignored")
        return [str(d) for d in data.get("ignored") or []]

    async def ignore_device(self, device_id: str) -> str:
        data = await self._request("POST", "/storage/disks/ignore", payload={"diskId": device_id})
        return data.get("message") or f"Disk {device_id} ignored"

    async def unignore_device(self, device_id: str) -> str:
        data = await self._request("POST", "/storage/disks/unignore", payload={"diskId": device_id})
        return data.get("message") or f"Disk {device_id} restored"

    # ==================== Provisioning ====================

    async def add_to_pool(self, device_id: str, format: bool, role: DiskRole) -> str:
        data = await self._request(
            "POST",
            "/storage/disks/add-to-pool",
            payload={"diskId": device_id, "format": format, "role": role.value},
        )
        return _message_or_raise(data, f"Disk {device_id} added to pool")

    async def mount_standalone(self, device_id: str, format: bool, name: str) -> str:
        data = await self._request(
            "POST",
            "/storage/disks/mount-standalone",
            payload={"diskId": device_id, "format": format, "name": name},
        )
        return _message_or_raise(data, f"Disk {device_id} mounted")

    async def remove_from_pool(self, device_id: str) -> str:
        data = await self._request(
            "POST",
            "/storage/disks/remove-from-pool",
            payload={"diskId": device_id},
        )
        return _message_or_raise(data, f"Disk {device_id} removed from pool")

    async def configure_pool(self, selections: list[DiskSelection]) -> dict[str, Any]:
        data = await self._request(
            "POST",
            "/storage/pool/configure",
            payload={"disks": [s.to_payload() for s in selections]},
        )
        _message_or_raise(data, "")
        return data

    # ==================== Parity sync ====================

    async def start_parity_sync(self) -> dict[str, Any]:
        try:
            return await self._request("POST", "/storage/snapraid/sync")
        except BackendError as exc:
            if exc.status_code != 409:
                raise
            # a sync is already running; watching it is equivalent to a fresh start
            logger.info("Parity sync already running", error=exc.message)
            return {"success": True, "alreadyRunning": True}

    async def get_sync_progress(self) -> SyncJob:
        data = await self._request("GET", "/storage/snapraid/sync/progress")
        return SyncJob(
            running=bool(data.get("running")),
            percent=int(data.get("progress") or 0),
            status_text=str(data.get("status") or ""),
            error=data.get("error") or None,
        )

    # ==================== Host ====================

    async def get_system_stats(self) -> SystemStats:
        data = await self._request("GET", "/system/stats")
        return SystemStats.from_dict(data)

    async def get_public_ip(self) -> str:
        data = await self._request("GET", "/ddns/public-ip")
        return str(data.get("ip") or "N/A")


def _is_csrf_error(data: Any) -> bool:
    if not isinstance(data, dict):
        return False
    if data.get("code") == "CSRF_INVALID":
        return True
    error = data.get("error")
    return isinstance(error, str) and "CSRF" in error


def _message_or_raise(data: Any, default: str) -> str:
    """Some endpoints report failure as ``{error}`` in a 2xx body."""
    if isinstance(data, dict):
        if data.get("error") and not data.get("success"):
            raise BackendError(str(data["error"]))
        return str(data.get("message") or default)
    return default
