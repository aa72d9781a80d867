"""VPN fleet backends, provisioning and reconciliation."""

from vpnfleet.services.vpn_backend import AbstractVpnBackend
from vpnfleet.services.wireguard_backend import WireGuardBackend
from vpnfleet.services.outline_backend import OutlineBackend
from vpnfleet.services.factory import create_backend
from vpnfleet.services.provisioning import FleetProvisioner
from vpnfleet.services.scheduler import ReconciliationScheduler

__all__ = [
    "AbstractVpnBackend",
    "WireGuardBackend",
    "OutlineBackend",
    "create_backend",
    "FleetProvisioner",
    "ReconciliationScheduler",
]
