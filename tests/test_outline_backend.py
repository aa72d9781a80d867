"""Tests for the Outline management API backend."""

import asyncio
import json

import httpx
import pytest
import respx

from vpnfleet.models.vpn import (
    AccessKey,
    Device,
    LimitMode,
    OutlineConfig,
    PeerConfigPatch,
    ProvisionRequest,
    VpnServer,
    VpnType,
)
from vpnfleet.services.outline_backend import OutlineBackend, build_api_url, is_loopback
from vpnfleet.services.provisioning import FleetProvisioner
from vpnfleet.services.store import InMemoryFleetStore
from vpnfleet.services.vpn_backend import (
    BackendConnectivityError,
    BackendProtocolError,
    PeerNotFoundError,
)
from vpnfleet.settings import settings
from tests.conftest import OUTLINE_BASE_URL as BASE


def access_keys(*keys):
    return httpx.Response(200, json={"accessKeys": list(keys)})


def key_entry(key_id, name="user", **extra):
    return {
        "id": key_id,
        "name": name,
        "password": "pw",
        "port": 443,
        "method": "chacha20-ietf-poly1305",
        "accessUrl": f"ss://Y2hhY2hh@outline.example.com:443/?outline=1#{key_id}",
        **extra,
    }


def body(route):
    return json.loads(route.calls.last.request.content)


# --- URL construction ---


@pytest.mark.parametrize(
    "host,expected",
    [
        ("localhost", True),
        ("127.0.0.1", True),
        ("::1", True),
        ("outline.example.com", False),
        ("203.0.113.5", False),
    ],
)
def test_is_loopback(host, expected):
    assert is_loopback(host) is expected


def test_build_api_url_schemes():
    assert build_api_url("localhost", 8081, "k") == "http://localhost:8081/k/"
    assert build_api_url("::1", 8081, "k") == "http://[::1]:8081/k/"
    assert build_api_url("203.0.113.5", 9443, "k") == "https://203.0.113.5:9443/k/"


@respx.mock
async def test_loopback_server_uses_plain_http():
    server = VpnServer(
        name="local-outline",
        vpn_type=VpnType.OUTLINE,
        host="127.0.0.1",
        outline=OutlineConfig(admin_access_key="abc"),
    )
    route = respx.get("http://127.0.0.1:8081/abc/server").mock(
        return_value=httpx.Response(200, json={"serverId": "s1"})
    )

    async with OutlineBackend(server) as backend:
        assert await backend.check_health() is True

    assert route.called


@respx.mock
async def test_api_host_overrides_server_host():
    server = VpnServer(
        name="split",
        vpn_type=VpnType.OUTLINE,
        host="vpn.example.com",
        outline=OutlineConfig(api_host="mgmt.example.com", api_port=9999, admin_access_key="k"),
    )
    route = respx.get("https://mgmt.example.com:9999/k/server").mock(
        return_value=httpx.Response(200, json={})
    )

    async with OutlineBackend(server) as backend:
        await backend.initialize()

    assert route.called


# --- Server ---


@respx.mock
async def test_initialize_reports_server_info(outline_server):
    respx.get(f"{BASE}/server").mock(
        return_value=httpx.Response(
            200, json={"serverId": "abc-123", "version": "1.9.2", "portForNewAccessKeys": 443}
        )
    )

    async with OutlineBackend(outline_server) as backend:
        result = await backend.initialize()

    assert result.success is True
    assert result.server_id == "abc-123"
    assert result.version == "1.9.2"
    assert result.port_for_new_access_keys == 443


@respx.mock
async def test_get_server_stats_sums_listed_keys_only(outline_server):
    respx.get(f"{BASE}/server").mock(return_value=httpx.Response(200, json={"serverId": "s"}))
    respx.get(f"{BASE}/access-keys").mock(return_value=access_keys(key_entry("1"), key_entry(2)))
    respx.get(f"{BASE}/metrics/transfer").mock(
        return_value=httpx.Response(
            200, json={"bytesTransferredByUserId": {"1": 100, "2": 200, "99": 5000}}
        )
    )

    async with OutlineBackend(outline_server) as backend:
        telemetry = await backend.get_server_stats()

    assert telemetry.total_users == 2
    assert telemetry.total_data_transferred == 300


@respx.mock
async def test_check_health_false_on_error(outline_server):
    respx.get(f"{BASE}/server").mock(return_value=httpx.Response(500, text="boom"))

    async with OutlineBackend(outline_server) as backend:
        assert await backend.check_health() is False


# --- Access keys ---


@respx.mock
async def test_add_peer_with_limit_applied_on_create(outline_server):
    create = respx.post(f"{BASE}/access-keys").mock(
        return_value=httpx.Response(
            201, json={**key_entry(7, name="alice"), "dataLimit": {"bytes": 5000}}
        )
    )
    async with OutlineBackend(outline_server) as backend:
        created = await backend.add_peer(ProvisionRequest(name="alice", data_limit=5000))

    assert created.peer_id == "7"
    assert created.data_limit == 5000
    assert created.access_url.startswith("ss://")
    assert body(create) == {"name": "alice", "limit": {"bytes": 5000}}
    assert len(respx.calls) == 1


@respx.mock
async def test_add_peer_without_limit(outline_server):
    create = respx.post(f"{BASE}/access-keys").mock(
        return_value=httpx.Response(201, json=key_entry("3", name="bob"))
    )

    async with OutlineBackend(outline_server) as backend:
        created = await backend.add_peer(ProvisionRequest(name="bob"))

    assert body(create) == {"name": "bob"}
    assert created.data_limit is None


@respx.mock
async def test_add_peer_follow_up_limit_when_create_ignores_it(outline_server):
    respx.post(f"{BASE}/access-keys").mock(
        return_value=httpx.Response(201, json=key_entry("5", name="carol"))
    )
    respx.get(f"{BASE}/access-keys").mock(return_value=access_keys(key_entry("5")))
    follow_up = respx.put(f"{BASE}/access-keys/5/data-limit").mock(
        return_value=httpx.Response(204)
    )

    async with OutlineBackend(outline_server) as backend:
        created = await backend.add_peer(ProvisionRequest(name="carol", data_limit=1_000_000))
        assert created.peer_id == "5"

    await asyncio.gather(*OutlineBackend.follow_up_tasks)
    assert follow_up.called
    assert body(follow_up) == {"limit": {"bytes": 1_000_000}}


@respx.mock
async def test_add_peer_follow_up_failure_is_not_raised(outline_server):
    respx.post(f"{BASE}/access-keys").mock(
        return_value=httpx.Response(201, json=key_entry("5", name="carol"))
    )
    respx.get(f"{BASE}/access-keys").mock(return_value=access_keys(key_entry("5")))
    respx.put(f"{BASE}/access-keys/5/data-limit").mock(return_value=httpx.Response(500))
    fallback = respx.put(f"{BASE}/access-keys/5").mock(return_value=httpx.Response(500))

    async with OutlineBackend(outline_server) as backend:
        created = await backend.add_peer(ProvisionRequest(name="carol", data_limit=1_000_000))

    await asyncio.gather(*OutlineBackend.follow_up_tasks)

    assert created.peer_id == "5"
    assert fallback.called


@respx.mock
async def test_provision_does_not_wait_for_follow_up_limit(outline_server, monkeypatch):
    respx.get(f"{BASE}/server").mock(return_value=httpx.Response(200, json={"serverId": "s"}))
    respx.post(f"{BASE}/access-keys").mock(
        return_value=httpx.Response(201, json=key_entry("5", name="carol"))
    )
    release = asyncio.Event()
    applied = []

    async def slow_set_data_limit(self, peer_id, limit_bytes):
        await release.wait()
        applied.append((peer_id, limit_bytes))

    monkeypatch.setattr(OutlineBackend, "set_data_limit", slow_set_data_limit)
    provisioner = FleetProvisioner(InMemoryFleetStore(servers=[outline_server]))

    device = await asyncio.wait_for(
        provisioner.provision_peer(outline_server, ProvisionRequest(name="carol", data_limit=1000)),
        timeout=1.0,
    )

    assert device.access_key.key_id == "5"
    assert applied == []

    release.set()
    await asyncio.gather(*OutlineBackend.follow_up_tasks)
    assert applied == [("5", 1000)]


@respx.mock
async def test_remove_peer_missing_key(outline_server):
    respx.delete(f"{BASE}/access-keys/42").mock(return_value=httpx.Response(404))

    async with OutlineBackend(outline_server) as backend:
        with pytest.raises(PeerNotFoundError):
            await backend.remove_peer("42")


@respx.mock
async def test_get_all_peer_stats_counts_total_as_received(outline_server):
    respx.get(f"{BASE}/access-keys").mock(
        return_value=access_keys(key_entry(1, dataLimit={"bytes": 10}), key_entry("2"))
    )
    respx.get(f"{BASE}/metrics/transfer").mock(
        return_value=httpx.Response(200, json={"bytesTransferredByUserId": {"1": 4096}})
    )

    async with OutlineBackend(outline_server) as backend:
        stats = await backend.get_all_peer_stats()

    assert set(stats) == {"1", "2"}
    assert stats["1"].bytes_received == 4096
    assert stats["1"].bytes_sent == 0
    assert stats["1"].data_limit == 10
    assert stats["2"].bytes_received == 0


# --- Data limits ---


@respx.mock
async def test_set_data_limit_modes(outline_server):
    respx.get(f"{BASE}/access-keys").mock(return_value=access_keys(key_entry("4")))
    put = respx.put(f"{BASE}/access-keys/4/data-limit").mock(return_value=httpx.Response(204))
    delete = respx.delete(f"{BASE}/access-keys/4/data-limit").mock(
        return_value=httpx.Response(204)
    )

    async with OutlineBackend(outline_server) as backend:
        suspended = await backend.set_data_limit("4", 0)
        assert body(put) == {"limit": {"bytes": settings.outline_suspend_limit_bytes}}

        capped = await backend.set_data_limit("4", 5_000_000_000)
        assert body(put) == {"limit": {"bytes": 5_000_000_000}}

        unlimited = await backend.set_data_limit("4", None)
        negative = await backend.set_data_limit("4", -1)

    assert suspended.mode == LimitMode.SUSPENDED
    assert capped.mode == LimitMode.CAPPED
    assert unlimited.mode == LimitMode.UNLIMITED
    assert negative.mode == LimitMode.UNLIMITED
    assert len({suspended.mode, capped.mode, unlimited.mode}) == 3
    assert put.call_count == 2
    assert delete.call_count == 2


@respx.mock
async def test_set_then_clear_limit_leaves_key_unlimited(outline_server):
    respx.get(f"{BASE}/access-keys").mock(return_value=access_keys(key_entry("4")))
    respx.put(f"{BASE}/access-keys/4/data-limit").mock(return_value=httpx.Response(204))
    delete = respx.delete(f"{BASE}/access-keys/4/data-limit").mock(
        return_value=httpx.Response(204)
    )

    async with OutlineBackend(outline_server) as backend:
        await backend.set_data_limit("4", 10_000)
        cleared = await backend.set_data_limit("4", None)

    assert cleared.mode == LimitMode.UNLIMITED
    assert cleared.bytes is None
    assert delete.call_count == 1


@respx.mock
async def test_set_data_limit_tolerates_numeric_ids(outline_server):
    respx.get(f"{BASE}/access-keys").mock(return_value=access_keys(key_entry(12)))
    put = respx.put(f"{BASE}/access-keys/12/data-limit").mock(return_value=httpx.Response(204))

    async with OutlineBackend(outline_server) as backend:
        await backend.set_data_limit("12", 2048)

    assert put.called


@respx.mock
async def test_set_data_limit_unknown_key(outline_server):
    respx.get(f"{BASE}/access-keys").mock(return_value=access_keys(key_entry("1")))

    async with OutlineBackend(outline_server) as backend:
        with pytest.raises(PeerNotFoundError):
            await backend.set_data_limit("404", 2048)


@respx.mock
async def test_set_data_limit_falls_back_to_key_update(outline_server):
    respx.get(f"{BASE}/access-keys").mock(return_value=access_keys(key_entry("8")))
    respx.put(f"{BASE}/access-keys/8/data-limit").mock(return_value=httpx.Response(404))
    fallback = respx.put(f"{BASE}/access-keys/8").mock(return_value=httpx.Response(204))

    async with OutlineBackend(outline_server) as backend:
        change = await backend.set_data_limit("8", 3000)

    assert change.mode == LimitMode.CAPPED
    assert body(fallback) == {"limit": {"bytes": 3000}}


@respx.mock
async def test_set_data_limit_surfaces_error_when_fallback_fails(outline_server):
    respx.get(f"{BASE}/access-keys").mock(return_value=access_keys(key_entry("8")))
    respx.put(f"{BASE}/access-keys/8/data-limit").mock(return_value=httpx.Response(500))
    respx.put(f"{BASE}/access-keys/8").mock(return_value=httpx.Response(400, text="bad limit"))

    async with OutlineBackend(outline_server) as backend:
        with pytest.raises(BackendProtocolError) as exc_info:
            await backend.set_data_limit("8", 3000)

    assert "400" in str(exc_info.value)


@respx.mock
async def test_update_peer_config_sends_present_fields_only(outline_server):
    update = respx.put(f"{BASE}/access-keys/6").mock(return_value=httpx.Response(204))

    async with OutlineBackend(outline_server) as backend:
        await backend.update_peer_config("6", PeerConfigPatch(name="renamed"))
        assert body(update) == {"name": "renamed"}

        await backend.update_peer_config("6", PeerConfigPatch(data_limit=None))
        assert body(update) == {"limit": None}

        await backend.rename_peer("6", "again")
        assert body(update) == {"name": "again"}


@respx.mock
async def test_get_access_config_returns_access_url(outline_server):
    entry = key_entry(9)
    respx.get(f"{BASE}/access-keys").mock(return_value=access_keys(entry))
    device = Device(
        name="tablet",
        server_id=outline_server.id,
        access_key=AccessKey(key_id=9, access_url="stale", name="tablet"),
    )

    async with OutlineBackend(outline_server) as backend:
        assert await backend.get_access_config(device) == entry["accessUrl"]


# --- Transport errors ---


@respx.mock
async def test_timeout_is_reported_as_timeout(outline_server):
    respx.get(f"{BASE}/server").mock(side_effect=httpx.ConnectTimeout("timed out"))

    async with OutlineBackend(outline_server) as backend:
        with pytest.raises(BackendConnectivityError) as exc_info:
            await backend.initialize()

    assert exc_info.value.reason == "timeout"
    assert "timeout" in str(exc_info.value).lower()


@respx.mock
async def test_dns_failure_is_reported_as_dns(outline_server):
    respx.get(f"{BASE}/server").mock(
        side_effect=httpx.ConnectError("[Errno -2] Name or service not known")
    )

    async with OutlineBackend(outline_server) as backend:
        with pytest.raises(BackendConnectivityError) as exc_info:
            await backend.initialize()

    assert exc_info.value.reason == "dns"
    assert "Host not found" in str(exc_info.value)


@respx.mock
async def test_refused_connection_is_reported_as_refused(outline_server):
    respx.get(f"{BASE}/server").mock(
        side_effect=httpx.ConnectError("[Errno 111] Connection refused")
    )

    async with OutlineBackend(outline_server) as backend:
        with pytest.raises(BackendConnectivityError) as exc_info:
            await backend.initialize()

    assert exc_info.value.reason == "refused"
    assert "connection refused" in str(exc_info.value)


@respx.mock
async def test_error_messages_never_contain_admin_key(outline_server):
    respx.get(f"{BASE}/server").mock(return_value=httpx.Response(503, text="maintenance"))

    async with OutlineBackend(outline_server) as backend:
        with pytest.raises(BackendProtocolError) as exc_info:
            await backend.initialize()

    assert "503" in str(exc_info.value)
    assert outline_server.outline.admin_access_key.get_secret_value() not in str(exc_info.value)
