# vpnfleet/services/vpn_backend.py
"""Backend error taxonomy, HTTP client factory and the VPN backend abstraction."""

from abc import ABC, abstractmethod
from typing import Dict, Optional, Union

import httpx
import logging

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
from vpnfleet.settings import settings

logger = logging.getLogger(__name__)


class BackendError(Exception):
    """Base exception for VPN backend errors."""

    pass


class BackendConnectivityError(BackendError):
    """Backend unreachable: DNS failure, connection refused or timeout."""

    def __init__(self, message: str, reason: str = "unreachable"):
        super().__init__(message)
        self.reason = reason


class BackendAuthenticationError(BackendError):
    """Missing or rejected SSH / API credentials."""

    pass


class SSHAuthenticationNotProvided(BackendAuthenticationError):
    """Neither an SSH password nor a private key is configured."""

    pass


class BackendProtocolError(BackendError):
    """Unexpected command output, non-2xx API response or malformed data."""

    pass


class CommandExecutionError(BackendProtocolError):
    """A shell command failed locally or on the remote host."""

    def __init__(
        self,
        message: str,
        command: Optional[str] = None,
        exit_status: Optional[int] = None,
        stderr: str = "",
        stdout: str = "",
    ):
        super().__init__(message)
        self.command = command
        self.exit_status = exit_status
        self.stderr = stderr
        self.stdout = stdout


class AddressAllocationError(BackendError):
    """The VPN range cannot be allocated from."""

    pass


class AddressPoolExhausted(AddressAllocationError):
    """Every assignable address of the range is taken."""

    pass


class PeerNotFoundError(BackendError):
    """Peer or access key known locally is absent on the backend, or vice versa."""

    pass


class InvalidTransitionError(BackendError):
    """Requested peer status change is not allowed."""

    pass


def create_http_client(base_url: str = "", verify: bool = True) -> httpx.AsyncClient:
    """
    Create an HTTP client for one backend instance.

    Each backend owns its client, so per-server credentials and TLS settings
    never leak between servers.
    """
    return httpx.AsyncClient(
        base_url=base_url,
        timeout=httpx.Timeout(
            connect=settings.http_connect_timeout,
            read=settings.http_timeout,
            write=settings.http_timeout,
            pool=settings.http_connect_timeout,
        ),
        verify=verify,
        follow_redirects=False,
        headers={
            "User-Agent": f"{settings.app_name}/{settings.app_version}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        },
    )


def resolve_limit(limit_bytes: Optional[int]) -> LimitChange:
    """
    Map a requested byte limit onto a limit mode.

    - ``> 0``: explicit cap of that many bytes
    - ``== 0``: near-zero cap acting as a suspend
    - ``None`` or negative: no cap
    """
    if limit_bytes is None or limit_bytes < 0:
        return LimitChange(mode=LimitMode.UNLIMITED, bytes=None)
    if limit_bytes == 0:
        return LimitChange(mode=LimitMode.SUSPENDED, bytes=settings.outline_suspend_limit_bytes)
    return LimitChange(mode=LimitMode.CAPPED, bytes=limit_bytes)


class AbstractVpnBackend(ABC):
    """
    Abstract base class for VPN backend implementations.

    One instance is bound to one server and is self-contained: it owns its
    executor or HTTP client. Use it as an async context manager so resources
    are released once the operation is done.
    """

    def __init__(self, server: VpnServer):
        self.server = server

    async def __aenter__(self) -> "AbstractVpnBackend":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Release backend resources. Nothing to do by default."""
        return None

    @abstractmethod
    async def initialize(self) -> InitializationResult:
        """
        Confirm the backend is reachable and ready for provisioning.

        Raises:
            BackendConnectivityError: If the server cannot be reached.
        """
        pass

    @abstractmethod
    async def add_peer(self, subject: Union[Device, ProvisionRequest]) -> ProvisionedPeer:
        """
        Provision network access for one subject.

        Returns:
            ProvisionedPeer whose ``peer_id`` is the id the backend knows it by.
        """
        pass

    @abstractmethod
    async def remove_peer(self, peer_id: str) -> None:
        """Revoke network access for one peer."""
        pass

    @abstractmethod
    async def get_peer_stats(self, peer_id: str) -> PeerUsage:
        """
        Usage and connectivity of a single peer.

        Raises:
            PeerNotFoundError: If the backend does not know the peer.
        """
        pass

    @abstractmethod
    async def get_all_peer_stats(self) -> Dict[str, PeerUsage]:
        """Usage of every peer in a single round trip, keyed by peer id."""
        pass

    @abstractmethod
    async def get_server_stats(self) -> ServerTelemetry:
        """Peer count and transferred bytes for the whole server."""
        pass

    @abstractmethod
    async def update_peer_config(self, peer_id: str, patch: PeerConfigPatch) -> None:
        """Apply name and data-limit changes present in ``patch``."""
        pass

    @abstractmethod
    async def set_data_limit(self, peer_id: str, limit_bytes: Optional[int]) -> LimitChange:
        """Cap, suspend or uncap a peer, see resolve_limit()."""
        pass

    @abstractmethod
    async def check_health(self) -> bool:
        """Real round trip to the server; never raises."""
        pass

    @abstractmethod
    async def get_access_config(self, peer: Device) -> str:
        """Client-importable representation: config text or connection URL."""
        pass

    @abstractmethod
    async def rename_peer(self, peer_id: str, name: str) -> None:
        pass
