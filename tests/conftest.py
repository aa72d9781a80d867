"""Pytest configuration and shared fixtures."""

import asyncio
import itertools
from typing import Dict, List, Optional

import httpx
import pytest
from aiocache import caches

from vpnfleet.main import app, lifespan
from vpnfleet.models.vpn import (
    Device,
    InitializationResult,
    Keypair,
    OutlineConfig,
    PeerUsage,
    ProvisionedPeer,
    ServerTelemetry,
    VpnServer,
    VpnType,
    WireGuardConfig,
)
from vpnfleet.services.executor import AbstractCommandExecutor
from vpnfleet.services.store import InMemoryFleetStore
from vpnfleet.services.vpn_backend import AbstractVpnBackend, resolve_limit
from vpnfleet.services.wireguard_backend import assign_address

OUTLINE_HOST = "outline.example.com"
OUTLINE_ADMIN_KEY = "s3cr3tAdminKey"
OUTLINE_BASE_URL = f"https://{OUTLINE_HOST}:8081/{OUTLINE_ADMIN_KEY}"

_key_counter = itertools.count(1)


def wg_key(n: Optional[int] = None) -> str:
    """A syntactically valid WireGuard key, distinct per ``n``."""
    n = next(_key_counter) if n is None else n
    return "K" * 38 + f"{n:04d}" + "E="


@pytest.fixture(autouse=True)
async def clear_cache():
    """Clear aiocache between tests to prevent stale cached results."""
    cache = caches.get("default")
    await cache.clear()
    yield
    await cache.clear()


class FakeExecutor(AbstractCommandExecutor):
    """
    Scripted executor: ``responses`` maps an exact command to its stdout, or
    to an exception instance to raise. Unknown commands return "".
    """

    def __init__(self, responses: Optional[Dict[str, object]] = None):
        self.responses = dict(responses or {})
        self.calls: List[tuple] = []

    async def execute(self, command: str, stdin: Optional[str] = None) -> str:
        self.calls.append((command, stdin))
        response = self.responses.get(command, "")
        if isinstance(response, Exception):
            raise response
        return response

    @property
    def commands(self) -> List[str]:
        return [command for command, _ in self.calls]


class FakeBackend(AbstractVpnBackend):
    """In-memory backend recording every call, for provisioning and scheduler tests."""

    def __init__(
        self,
        server: VpnServer,
        healthy: bool = True,
        delay: float = 0.0,
        error: Optional[Exception] = None,
        peer_stats: Optional[Dict[str, PeerUsage]] = None,
    ):
        super().__init__(server)
        self.healthy = healthy
        self.delay = delay
        self.error = error
        self.peer_stats = peer_stats or {}
        self.calls: List[tuple] = []
        self.closed = False

    async def _step(self, name: str, *args) -> None:
        self.calls.append((name,) + args)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error

    async def aclose(self) -> None:
        self.closed = True

    async def generate_keypair(self) -> Keypair:
        await self._step("generate_keypair")
        return Keypair(private_key=wg_key(), public_key=wg_key())

    def assign_address(self, existing_ips) -> str:
        return assign_address(self.server.wireguard.ip_range, existing_ips)

    async def initialize(self) -> InitializationResult:
        await self._step("initialize")
        return InitializationResult(success=True, message="ok")

    async def add_peer(self, subject) -> ProvisionedPeer:
        await self._step("add_peer", subject.name)
        if isinstance(subject, Device):
            peer_id, limit = subject.backend_id, None
        else:
            peer_id, limit = str(len(self.calls)), subject.data_limit
        return ProvisionedPeer(
            peer_id=peer_id,
            name=subject.name,
            access_url=f"ss://key-{peer_id}@{self.server.host}:443",
            data_limit=limit,
        )

    async def remove_peer(self, peer_id: str) -> None:
        await self._step("remove_peer", peer_id)

    async def get_peer_stats(self, peer_id: str) -> PeerUsage:
        return (await self.get_all_peer_stats())[peer_id]

    async def get_all_peer_stats(self) -> Dict[str, PeerUsage]:
        await self._step("get_all_peer_stats")
        return dict(self.peer_stats)

    async def get_server_stats(self) -> ServerTelemetry:
        await self._step("get_server_stats")
        return ServerTelemetry(is_healthy=True, total_users=len(self.peer_stats))

    async def update_peer_config(self, peer_id: str, patch) -> None:
        await self._step("update_peer_config", peer_id, patch.model_dump(exclude_unset=True))

    async def set_data_limit(self, peer_id: str, limit_bytes):
        await self._step("set_data_limit", peer_id, limit_bytes)
        return resolve_limit(limit_bytes)

    async def check_health(self) -> bool:
        self.calls.append(("check_health",))
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.healthy

    async def get_access_config(self, peer: Device) -> str:
        await self._step("get_access_config", peer.name)
        return peer.config_file or f"[Interface]\nAddress = {peer.vpn_ip}/32\n"

    async def rename_peer(self, peer_id: str, name: str) -> None:
        await self._step("rename_peer", peer_id, name)


class FakeBackendFactory:
    """Backend factory handing out FakeBackends configured per server id."""

    def __init__(self):
        self.behaviour: Dict[str, dict] = {}
        self.instances: List[FakeBackend] = []
        self.broken: Dict[str, Exception] = {}

    def configure(self, server_id: str, **kwargs) -> None:
        self.behaviour[server_id] = kwargs

    def break_server(self, server_id: str, error: Exception) -> None:
        """Make backend construction itself fail for a server."""
        self.broken[server_id] = error

    def __call__(self, server: VpnServer) -> FakeBackend:
        if server.id in self.broken:
            raise self.broken[server.id]
        backend = FakeBackend(server, **self.behaviour.get(server.id, {}))
        self.instances.append(backend)
        return backend

    def calls(self, server_id: str) -> List[tuple]:
        return [c for b in self.instances if b.server.id == server_id for c in b.calls]

    def call_names(self, server_id: str) -> List[str]:
        return [c[0] for c in self.calls(server_id)]


@pytest.fixture
async def test_client():
    """Client for the FastAPI app, with the lifespan (store and scheduler) running."""
    async with lifespan(app):
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            yield client


@pytest.fixture
def wg_server():
    return VpnServer(
        name="wg-fra",
        vpn_type=VpnType.WIREGUARD,
        host="203.0.113.10",
        wireguard=WireGuardConfig(ip_range="10.0.0.0/29", server_public_key=wg_key(9000)),
    )


@pytest.fixture
def second_wg_server():
    return VpnServer(
        name="wg-ams",
        vpn_type=VpnType.WIREGUARD,
        host="203.0.113.20",
        wireguard=WireGuardConfig(ip_range="10.1.0.0/24"),
    )


@pytest.fixture
def outline_server():
    return VpnServer(
        name="outline-sg",
        vpn_type=VpnType.OUTLINE,
        host=OUTLINE_HOST,
        port=443,
        outline=OutlineConfig(admin_access_key=OUTLINE_ADMIN_KEY),
    )


@pytest.fixture
def backends():
    return FakeBackendFactory()


@pytest.fixture
def store(wg_server, second_wg_server, outline_server):
    return InMemoryFleetStore(servers=[wg_server, second_wg_server, outline_server])
