# vpnfleet/services/wireguard_backend.py
"""
WireGuard backend driven through the wg(8) command line.

Every operation is a shell command run by the server's executor (local or
SSH). Peer usage comes from ``wg show <iface> dump``.
"""

import ipaddress
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Union

from aiocache import cached

from vpnfleet.models.vpn import (
    Device,
    InitializationResult,
    Keypair,
    LimitChange,
    LimitMode,
    PeerConfigPatch,
    PeerUsage,
    ProvisionRequest,
    ProvisionedPeer,
    ServerTelemetry,
    VpnServer,
    WireGuardConfig,
)
from vpnfleet.services.config_generator import generate_config
from vpnfleet.services.executor import AbstractCommandExecutor, create_executor
from vpnfleet.services.vpn_backend import (
    AbstractVpnBackend,
    AddressAllocationError,
    AddressPoolExhausted,
    BackendConnectivityError,
    BackendProtocolError,
    PeerNotFoundError,
    resolve_limit,
)
from vpnfleet.settings import settings

logger = logging.getLogger(__name__)

# Offset 0 is the network address, offset 1 the server's own address
FIRST_PEER_OFFSET = 2

# 32 bytes, base64 encoded
WG_KEY_PATTERN = re.compile(r"^[A-Za-z0-9+/]{42}[AEIMQUYcgkosw480]=$")
INTERFACE_PATTERN = re.compile(r"^[A-Za-z0-9_=+.-]{1,15}$")

DUMP_PEER_FIELDS = 8


@dataclass
class PeerStats:
    """One peer line of ``wg show <iface> dump``."""

    public_key: str
    endpoint: Optional[str]
    allowed_ips: List[str] = field(default_factory=list)
    last_handshake: Optional[datetime] = None  # None if never
    transfer_rx: int = 0
    transfer_tx: int = 0
    persistent_keepalive: Optional[int] = None  # None if off

    def is_connected(self, now: Optional[datetime] = None, window: Optional[int] = None) -> bool:
        """A peer is connected if it completed a handshake within the window."""
        if self.last_handshake is None:
            return False
        now = now or datetime.now(timezone.utc)
        window = settings.handshake_window if window is None else window
        return now - self.last_handshake < timedelta(seconds=window)

    def to_usage(self, now: Optional[datetime] = None) -> PeerUsage:
        return PeerUsage(
            peer_id=self.public_key,
            bytes_received=self.transfer_rx,
            bytes_sent=self.transfer_tx,
            last_handshake=self.last_handshake,
            is_connected=self.is_connected(now),
        )


def assign_address(cidr: str, existing_ips: Iterable[str]) -> str:
    """
    Return the first free peer address of ``cidr``.

    Walks host offsets from 2 up to the one before broadcast, so the network
    address, the server address (offset 1) and broadcast are never handed out.

    Raises:
        AddressAllocationError: If ``cidr`` is not a valid IPv4 range.
        AddressPoolExhausted: If every assignable address is in ``existing_ips``.
    """
    try:
        network = ipaddress.ip_network(cidr, strict=False)
    except ValueError as e:
        raise AddressAllocationError(f"Invalid VPN IP range: {cidr}") from e

    if network.version != 4:
        raise AddressAllocationError(f"Only IPv4 ranges are supported, got {cidr}")

    taken = {ip.split("/")[0].strip() for ip in existing_ips if ip}
    base = int(network.network_address)

    for offset in range(FIRST_PEER_OFFSET, network.num_addresses - 1):
        candidate = str(ipaddress.IPv4Address(base + offset))
        if candidate not in taken:
            return candidate

    raise AddressPoolExhausted(f"Address pool exhausted: no available IP addresses in {cidr}")


def parse_dump(output: str) -> List[PeerStats]:
    """
    Parse ``wg show <iface> dump``.

    The first line describes the interface and is skipped. Peer lines are
    tab separated: public key, preshared key, endpoint, allowed ips, latest
    handshake (epoch seconds, 0 = never), rx bytes, tx bytes, keepalive.

    Raises:
        BackendProtocolError: On a malformed peer line.
    """
    peers = []
    lines = output.strip().splitlines()

    for line in lines[1:]:
        if not line.strip():
            continue

        parts = line.strip().split("\t")
        if len(parts) < DUMP_PEER_FIELDS:
            raise BackendProtocolError(
                f"Malformed wg dump line: expected {DUMP_PEER_FIELDS} fields, got {len(parts)}"
            )

        public_key, _preshared, endpoint, allowed_ips, handshake, rx, tx, keepalive = parts[
            :DUMP_PEER_FIELDS
        ]

        try:
            handshake_ts = int(handshake)
            transfer_rx = int(rx)
            transfer_tx = int(tx)
            persistent_keepalive = None if keepalive == "off" else int(keepalive)
        except ValueError as e:
            raise BackendProtocolError(
                f"Malformed wg dump line for peer {public_key}: {e}"
            ) from e

        peers.append(
            PeerStats(
                public_key=public_key,
                endpoint=None if endpoint == "(none)" else endpoint,
                allowed_ips=[] if allowed_ips == "(none)" else allowed_ips.split(","),
                last_handshake=(
                    None
                    if handshake_ts == 0
                    else datetime.fromtimestamp(handshake_ts, tz=timezone.utc)
                ),
                transfer_rx=transfer_rx,
                transfer_tx=transfer_tx,
                persistent_keepalive=persistent_keepalive,
            )
        )

    return peers


def _check_key(key: Optional[str]) -> str:
    if not key or not WG_KEY_PATTERN.match(key):
        raise BackendProtocolError(f"Invalid WireGuard key: {key!r}")
    return key


class WireGuardBackend(AbstractVpnBackend):
    """
    Backend for servers running a WireGuard interface.

    The backend never stores peer private keys; they only travel through
    the executor's stdin and the freshly provisioned Device.
    """

    def __init__(self, server: VpnServer, executor: Optional[AbstractCommandExecutor] = None):
        super().__init__(server)
        self.wg = server.wireguard or WireGuardConfig()
        self.interface_name = self.wg.interface_name
        if not INTERFACE_PATTERN.match(self.interface_name):
            raise ValueError(f"Invalid WireGuard interface name: {self.interface_name!r}")
        self.executor = executor or create_executor(server)

    async def _run(self, command: str, stdin: Optional[str] = None) -> str:
        return await self.executor.execute(command, stdin=stdin)

    # ---------- Keys ----------

    async def generate_keypair(self) -> Keypair:
        """``wg genkey`` then ``wg pubkey`` with the private key piped on stdin."""
        private_key = (await self._run("wg genkey")).strip()
        if not WG_KEY_PATTERN.match(private_key):
            raise BackendProtocolError("wg genkey returned unexpected output")

        public_key = (await self._run("wg pubkey", stdin=private_key + "\n")).strip()
        _check_key(public_key)

        return Keypair(private_key=private_key, public_key=public_key)

    @cached(
        ttl=settings.cache_ttl,
        alias="default",
        skip_cache_func=lambda result: result is None,
        key_builder=lambda f, self, *args, **kwargs: (
            f"{f.__name__}:{self.server.host}:{self.interface_name}"
        ),
    )
    async def get_server_public_key(self) -> Optional[str]:
        """Public key of the interface, None if it has no key yet."""
        output = (await self._run(f"wg show {self.interface_name} public-key")).strip()
        if not output or output == "(none)":
            return None
        return output

    async def initialize(self) -> InitializationResult:
        if not await self._interface_present():
            raise BackendConnectivityError(
                f"WireGuard interface {self.interface_name} is not available on {self.server.host}"
            )

        public_key = self.wg.server_public_key or await self.get_server_public_key()
        if public_key:
            logger.info(f"WireGuard server {self.server.label} ready ({self.interface_name})")
            return InitializationResult(
                success=True,
                message="WireGuard server initialized successfully",
                public_key=public_key,
            )

        logger.info(f"Generating server keys for {self.server.label}")
        keypair = await self.generate_keypair()
        await self._run(
            f"wg set {self.interface_name} private-key /dev/stdin",
            stdin=keypair.private_key.get_secret_value() + "\n",
        )
        return InitializationResult(
            success=True,
            message="WireGuard server keys generated",
            public_key=keypair.public_key,
            generated_private_key=keypair.private_key,
        )

    # ---------- Peers ----------

    def assign_address(self, existing_ips: Iterable[str]) -> str:
        return assign_address(self.wg.ip_range, existing_ips)

    async def add_peer(self, subject: Union[Device, ProvisionRequest]) -> ProvisionedPeer:
        """Add or update the peer entry; applying it twice updates the same entry."""
        if not isinstance(subject, Device) or not subject.vpn_ip:
            raise TypeError("WireGuard peers are added from a Device with keys and a VPN address")

        public_key = _check_key(subject.public_key)
        address = ipaddress.IPv4Address(subject.vpn_ip.split("/")[0])

        await self._run(
            f"wg set {self.interface_name} peer {public_key} allowed-ips {address}/32"
        )
        logger.info(f"Added WireGuard peer {public_key} ({address}) on {self.server.label}")
        return ProvisionedPeer(peer_id=public_key, name=subject.name)

    async def remove_peer(self, peer_id: str) -> None:
        public_key = _check_key(peer_id)
        await self._run(f"wg set {self.interface_name} peer {public_key} remove")
        logger.info(f"Removed WireGuard peer {public_key} from {self.server.label}")

    async def get_all_peer_stats(self) -> Dict[str, PeerUsage]:
        output = await self._run(f"wg show {self.interface_name} dump")
        now = datetime.now(timezone.utc)
        return {stats.public_key: stats.to_usage(now) for stats in parse_dump(output)}

    async def get_peer_stats(self, peer_id: str) -> PeerUsage:
        all_stats = await self.get_all_peer_stats()
        if peer_id not in all_stats:
            raise PeerNotFoundError(
                f"Peer {peer_id} not found on {self.interface_name} ({self.server.label})"
            )
        return all_stats[peer_id]

    async def get_server_stats(self) -> ServerTelemetry:
        is_running = await self._interface_present()
        peers = parse_dump(await self._run(f"wg show {self.interface_name} dump"))
        return ServerTelemetry(
            is_healthy=is_running,
            total_users=len(peers),
            total_data_transferred=sum(p.transfer_rx + p.transfer_tx for p in peers),
            interface_name=self.interface_name,
        )

    async def update_peer_config(self, peer_id: str, patch: PeerConfigPatch) -> None:
        # Names live only in the local record for WireGuard
        if "data_limit" in patch.model_fields_set:
            await self.set_data_limit(peer_id, patch.data_limit)

    async def set_data_limit(self, peer_id: str, limit_bytes: Optional[int]) -> LimitChange:
        """
        WireGuard has no byte quota. A suspend clears the peer's allowed-ips so
        traffic stops while the peer entry stays; caps are enforced by the
        limit enforcement job from synced usage. The address is only known to
        the Device, so lifting a suspend goes through add_peer().
        """
        change = resolve_limit(limit_bytes)
        if change.mode == LimitMode.SUSPENDED:
            public_key = _check_key(peer_id)
            await self._run(f'wg set {self.interface_name} peer {public_key} allowed-ips ""')
            logger.info(f"Blocked WireGuard peer {public_key} on {self.server.label}")
        return change

    async def check_health(self) -> bool:
        try:
            return await self._interface_present()
        except Exception as e:
            logger.warning(f"WireGuard health check failed for {self.server.label}: {e}")
            return False

    async def get_access_config(self, peer: Device) -> str:
        if peer.config_file:
            return peer.config_file
        server_public_key = self.wg.server_public_key or await self.get_server_public_key()
        return generate_config(peer, self.server, server_public_key=server_public_key)

    async def rename_peer(self, peer_id: str, name: str) -> None:
        logger.debug(f"WireGuard peer {peer_id} renamed to {name} (local only)")

    async def _interface_present(self) -> bool:
        output = await self._run(f"wg show {self.interface_name}")
        return self.interface_name in output
