# vpnfleet/services/factory.py
from vpnfleet.models.vpn import VpnServer, VpnType
from vpnfleet.services.outline_backend import OutlineBackend
from vpnfleet.services.vpn_backend import AbstractVpnBackend
from vpnfleet.services.wireguard_backend import WireGuardBackend


def create_backend(server: VpnServer) -> AbstractVpnBackend:
    """
    Build a fresh backend bound to ``server``.

    Nothing is shared between calls: each instance owns its own executor or
    HTTP client.
    """
    if server.vpn_type == VpnType.OUTLINE:
        return OutlineBackend(server)
    if server.vpn_type == VpnType.WIREGUARD:
        return WireGuardBackend(server)
    raise ValueError(f"Unsupported VPN type: {server.vpn_type}")
