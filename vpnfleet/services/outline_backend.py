# vpnfleet/services/outline_backend.py
"""
Outline backend driven through the Outline server management REST API.

Every call goes to ``{scheme}://{host}:{port}/{admin_access_key}/<path>``:
plain http for loopback hosts, https otherwise. Outline servers ship a
self-signed certificate, so TLS verification is off.
"""

import asyncio
import ipaddress
import logging
import socket
import time
from typing import Any, Dict, Iterator, List, Optional, Set, Union

import httpx

from vpnfleet.models.vpn import (
    Device,
    InitializationResult,
    LimitChange,
    LimitMode,
    PeerConfigPatch,
    PeerUsage,
    ProvisionRequest,
    ProvisionedPeer,
    ServerTelemetry,
    VpnServer,
)
from vpnfleet.services.vpn_backend import (
    AbstractVpnBackend,
    BackendConnectivityError,
    BackendError,
    BackendProtocolError,
    PeerNotFoundError,
    create_http_client,
    resolve_limit,
)
from vpnfleet.settings import settings

logger = logging.getLogger(__name__)

DNS_FAILURE_MARKERS = (
    "name or service not known",
    "nodename nor servname",
    "temporary failure in name resolution",
    "no address associated with hostname",
    "getaddrinfo failed",
)


def is_loopback(host: str) -> bool:
    if host.lower() == "localhost":
        return True
    try:
        return ipaddress.ip_address(host.strip("[]")).is_loopback
    except ValueError:
        return False


def build_api_url(host: str, port: int, admin_access_key: str) -> str:
    """Base URL of the management API, with a trailing slash."""
    scheme = "http" if is_loopback(host) else "https"
    bare = host.strip("[]")
    netloc = f"[{bare}]" if ":" in bare else bare
    return f"{scheme}://{netloc}:{port}/{admin_access_key}/"


def _exception_chain(exc: BaseException) -> Iterator[BaseException]:
    seen = set()
    while exc is not None and id(exc) not in seen:
        seen.add(id(exc))
        yield exc
        exc = exc.__cause__ or exc.__context__


def _is_dns_failure(exc: BaseException) -> bool:
    for e in _exception_chain(exc):
        if isinstance(e, socket.gaierror):
            return True
        message = str(e).lower()
        if any(marker in message for marker in DNS_FAILURE_MARKERS):
            return True
    return False


def _is_connection_refused(exc: BaseException) -> bool:
    for e in _exception_chain(exc):
        if isinstance(e, ConnectionRefusedError):
            return True
        if "connection refused" in str(e).lower():
            return True
    return False


class OutlineBackend(AbstractVpnBackend):
    """
    Backend for Outline servers.

    Access keys are the Outline analogue of peers. Their ids come back as
    strings or numbers depending on the server version and are always
    handled as strings here.
    """

    # Follow-up limit calls outlive the backend that scheduled them
    follow_up_tasks: Set[asyncio.Task] = set()

    def __init__(self, server: VpnServer, client: Optional[httpx.AsyncClient] = None):
        super().__init__(server)
        if server.outline is None:
            raise ValueError(f"Server {server.label} has no Outline settings")

        self.outline = server.outline
        self.api_host = self.outline.api_host or server.host
        self.api_port = self.outline.api_port
        self.target = f"{self.api_host}:{self.api_port}"
        self.base_url = build_api_url(
            self.api_host, self.api_port, self.outline.admin_access_key.get_secret_value()
        )

        self._owns_client = client is None
        self._client = client or create_http_client(base_url=self.base_url, verify=False)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        key_id: Optional[str] = None,
    ) -> Any:
        """
        Call the management API and return the decoded JSON body (None if empty).

        ``key_id`` marks a keyed path, where a 404 means the access key is gone.

        Raises:
            BackendConnectivityError: On timeout, DNS failure or refused connection.
            PeerNotFoundError: On a 404 for a keyed path.
            BackendProtocolError: On any other non-2xx answer or an undecodable body.
        """
        try:
            response = await self._client.request(method, path, json=json)
        except httpx.TimeoutException as e:
            raise BackendConnectivityError(
                f"Connection timeout: Outline server at {self.target} is not responding "
                f"within {settings.http_timeout:g}s",
                reason="timeout",
            ) from e
        except httpx.ConnectError as e:
            if _is_dns_failure(e):
                raise BackendConnectivityError(
                    f"Host not found: {self.api_host}. Check the hostname or IP address.",
                    reason="dns",
                ) from e
            if _is_connection_refused(e):
                raise BackendConnectivityError(
                    f"Cannot connect to Outline server at {self.target}: connection refused. "
                    f"Check the host and port configuration.",
                    reason="refused",
                ) from e
            raise BackendConnectivityError(
                f"Cannot connect to Outline server at {self.target}: {e}"
            ) from e
        except httpx.RequestError as e:
            raise BackendConnectivityError(
                f"Request to Outline server at {self.target} failed: {e}"
            ) from e

        if response.status_code == 404 and key_id is not None:
            raise PeerNotFoundError(f"Access key {key_id} not found on {self.server.label}")

        if not response.is_success:
            logger.error(
                f"Outline API error on {self.target}: {method} {path} -> "
                f"{response.status_code} {response.text}"
            )
            raise BackendProtocolError(
                f"Outline API error ({response.status_code}) on {method} {path}: "
                f"{response.text or 'no response body'}"
            )

        if not response.content:
            return None

        try:
            return response.json()
        except ValueError as e:
            raise BackendProtocolError(
                f"Failed to parse Outline API response for {method} {path}: {e}"
            ) from e

    # ---------- Server ----------

    async def _get_server_info(self) -> Dict[str, Any]:
        return await self._request("GET", "server") or {}

    async def initialize(self) -> InitializationResult:
        info = await self._get_server_info()
        logger.info(f"Outline server {self.server.label} ready (version {info.get('version')})")
        return InitializationResult(
            success=True,
            message="Outline server connected successfully",
            server_id=info.get("serverId"),
            version=info.get("version"),
            port_for_new_access_keys=info.get("portForNewAccessKeys"),
        )

    async def check_health(self) -> bool:
        try:
            await self._get_server_info()
            return True
        except Exception as e:
            logger.warning(f"Outline health check failed for {self.server.label}: {e}")
            return False

    async def get_server_stats(self) -> ServerTelemetry:
        info = await self._get_server_info()
        keys = await self._list_access_keys()
        transfer = await self._get_transfer_metrics()

        total = sum(transfer.get(str(key.get("id")), 0) for key in keys)
        return ServerTelemetry(
            is_healthy=True,
            total_users=len(keys),
            total_data_transferred=total,
            server_id=info.get("serverId"),
            version=info.get("version"),
            port_for_new_access_keys=info.get("portForNewAccessKeys"),
        )

    # ---------- Access keys ----------

    async def _list_access_keys(self) -> List[Dict[str, Any]]:
        data = await self._request("GET", "access-keys") or {}
        return data.get("accessKeys", [])

    async def _get_transfer_metrics(self) -> Dict[str, int]:
        data = await self._request("GET", "metrics/transfer") or {}
        by_user = data.get("bytesTransferredByUserId", {})
        return {str(key_id): int(value) for key_id, value in by_user.items()}

    async def _find_access_key(self, key_id: str) -> Dict[str, Any]:
        for key in await self._list_access_keys():
            if str(key.get("id")) == str(key_id):
                return key
        raise PeerNotFoundError(f"Access key {key_id} not found on {self.server.label}")

    async def add_peer(self, subject: Union[Device, ProvisionRequest]) -> ProvisionedPeer:
        if isinstance(subject, ProvisionRequest):
            limit = subject.data_limit
        else:
            limit = subject.effective_limit()

        name = subject.name or f"User-{int(time.time() * 1000)}"
        body: Dict[str, Any] = {"name": name}
        if limit and limit > 0:
            body["limit"] = {"bytes": limit}

        created = await self._request("POST", "access-keys", json=body)
        if not created or "id" not in created:
            raise BackendProtocolError(
                f"Outline server {self.server.label} returned no access key id"
            )

        key_id = str(created["id"])
        applied = (created.get("dataLimit") or {}).get("bytes")
        logger.info(f"Created Outline access key {key_id} on {self.server.label}")

        # Older servers ignore the limit in the create call
        if limit and limit > 0 and applied is None:
            self._schedule_limit_follow_up(key_id, limit)

        return ProvisionedPeer(
            peer_id=key_id,
            name=created.get("name") or name,
            access_url=created.get("accessUrl"),
            data_limit=applied if applied is not None else (limit if limit and limit > 0 else None),
        )

    def _schedule_limit_follow_up(self, key_id: str, limit: int) -> None:
        task = asyncio.create_task(self._apply_limit_follow_up(key_id, limit))
        OutlineBackend.follow_up_tasks.add(task)
        task.add_done_callback(OutlineBackend.follow_up_tasks.discard)

    async def _apply_limit_follow_up(self, key_id: str, limit: int) -> None:
        """Runs on its own client, so closing the scheduling backend does not wait for it."""
        try:
            async with OutlineBackend(self.server) as backend:
                await backend.set_data_limit(key_id, limit)
        except BackendError as e:
            logger.warning(f"Could not apply data limit to new access key {key_id}: {e}")

    async def remove_peer(self, peer_id: str) -> None:
        await self._request("DELETE", f"access-keys/{peer_id}", key_id=peer_id)
        logger.info(f"Deleted Outline access key {peer_id} on {self.server.label}")

    async def get_all_peer_stats(self) -> Dict[str, PeerUsage]:
        keys = await self._list_access_keys()
        transfer = await self._get_transfer_metrics()

        stats = {}
        for key in keys:
            key_id = str(key.get("id"))
            # Outline reports one total per key
            stats[key_id] = PeerUsage(
                peer_id=key_id,
                bytes_received=transfer.get(key_id, 0),
                bytes_sent=0,
                name=key.get("name"),
                data_limit=(key.get("dataLimit") or {}).get("bytes"),
            )
        return stats

    async def get_peer_stats(self, peer_id: str) -> PeerUsage:
        stats = await self.get_all_peer_stats()
        if str(peer_id) not in stats:
            raise PeerNotFoundError(f"Access key {peer_id} not found on {self.server.label}")
        return stats[str(peer_id)]

    async def update_peer_config(self, peer_id: str, patch: PeerConfigPatch) -> None:
        body: Dict[str, Any] = {}
        if "name" in patch.model_fields_set and patch.name:
            body["name"] = patch.name
        if "data_limit" in patch.model_fields_set:
            change = resolve_limit(patch.data_limit)
            body["limit"] = {"bytes": change.bytes} if change.bytes is not None else None

        if not body:
            return
        await self._request("PUT", f"access-keys/{peer_id}", json=body, key_id=peer_id)

    async def set_data_limit(self, peer_id: str, limit_bytes: Optional[int]) -> LimitChange:
        """
        Apply a cap through the dedicated data-limit endpoint, falling back to
        an access-key update on servers that do not offer it.

        Raises:
            PeerNotFoundError: If the listing does not contain the key.
        """
        change = resolve_limit(limit_bytes)
        key_id = str((await self._find_access_key(peer_id))["id"])

        try:
            if change.mode == LimitMode.UNLIMITED:
                await self._request("DELETE", f"access-keys/{key_id}/data-limit", key_id=key_id)
            else:
                await self._request(
                    "PUT",
                    f"access-keys/{key_id}/data-limit",
                    json={"limit": {"bytes": change.bytes}},
                    key_id=key_id,
                )
        except (BackendProtocolError, PeerNotFoundError) as e:
            logger.warning(
                f"Data-limit endpoint failed for access key {key_id} on {self.server.label}, "
                f"retrying through the key update: {e}"
            )
            limit = {"bytes": change.bytes} if change.bytes is not None else None
            await self._request(
                "PUT", f"access-keys/{key_id}", json={"limit": limit}, key_id=key_id
            )

        logger.info(f"Access key {key_id} on {self.server.label}: limit {change.mode.value}")
        return change

    async def get_access_config(self, peer: Device) -> str:
        key_id = peer.backend_id
        if key_id is None:
            raise PeerNotFoundError(f"Device {peer.name} has no Outline access key")
        key = await self._find_access_key(key_id)
        access_url = key.get("accessUrl")
        if not access_url:
            raise BackendProtocolError(f"Access key {key_id} has no access URL")
        return access_url

    async def rename_peer(self, peer_id: str, name: str) -> None:
        await self._request("PUT", f"access-keys/{peer_id}", json={"name": name}, key_id=peer_id)
