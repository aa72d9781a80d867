# vpnfleet/services/provisioning.py
"""
Provisioning entry points used by the admin layer.

Every call builds a fresh backend for the server, does its backend work,
then writes the outcome to the store. Backend errors surface to the caller
unchanged, except for the best-effort paths (revoke, suspend, disable)
which log and carry on.
"""

import logging
from typing import Callable, Dict, Optional, Set

from vpnfleet.models.vpn import (
    AccessArtifact,
    AccessKey,
    Connectivity,
    DataLimit,
    Device,
    LimitMode,
    PeerConfigPatch,
    PeerStatus,
    ProvisionRequest,
    RevocationResult,
    VpnServer,
    VpnType,
)
from vpnfleet.services.config_generator import config_filename, generate_qr_code
from vpnfleet.services.factory import create_backend
from vpnfleet.services.store import AbstractFleetStore
from vpnfleet.services.vpn_backend import (
    AbstractVpnBackend,
    BackendConnectivityError,
    BackendError,
    InvalidTransitionError,
    PeerNotFoundError,
    resolve_limit,
)

logger = logging.getLogger(__name__)

BackendFactory = Callable[[VpnServer], AbstractVpnBackend]

# EXPIRED is terminal
ALLOWED_TRANSITIONS: Dict[PeerStatus, Set[PeerStatus]] = {
    PeerStatus.ACTIVE: {PeerStatus.SUSPENDED, PeerStatus.DISABLED, PeerStatus.EXPIRED},
    PeerStatus.SUSPENDED: {PeerStatus.ACTIVE, PeerStatus.DISABLED, PeerStatus.EXPIRED},
    PeerStatus.DISABLED: {PeerStatus.ACTIVE, PeerStatus.EXPIRED},
    PeerStatus.EXPIRED: set(),
}


def check_transition(current: PeerStatus, target: PeerStatus) -> None:
    """
    Raises:
        InvalidTransitionError: If ``current`` cannot move to ``target``.
    """
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(
            f"Cannot change device status from {current.value} to {target.value}"
        )


def require_peer_id(device: Device) -> str:
    if device.backend_id is None:
        raise PeerNotFoundError(f"Device {device.name} has no peer on its server")
    return device.backend_id


async def block_peer(backend: AbstractVpnBackend, device: Device) -> None:
    """
    Stop a device's traffic without deleting its record: WireGuard peers are
    removed, Outline keys get the near-zero cap.
    """
    peer_id = require_peer_id(device)
    if device.access_key is not None:
        await backend.set_data_limit(peer_id, 0)
    else:
        await backend.remove_peer(peer_id)


async def restore_wireguard_peer(backend: AbstractVpnBackend, device: Device) -> None:
    """
    Re-apply the /32 of an active WireGuard device. A zero limit clears the
    peer's allowed-ips, so any other limit has to put the address back.
    """
    if device.access_key is not None or not device.vpn_ip:
        return
    if device.status == PeerStatus.ACTIVE and device.is_enabled:
        await backend.add_peer(device)


def limit_changes(limit_bytes: Optional[int]) -> dict:
    """Device fields recording a requested limit, see resolve_limit()."""
    change = resolve_limit(limit_bytes)
    if change.mode == LimitMode.UNLIMITED:
        return {"is_unlimited": True, "data_limit": None}
    return {"is_unlimited": False, "data_limit": DataLimit(bytes=limit_bytes, is_enabled=True)}


class FleetProvisioner:
    """Creates, changes and revokes peers on the fleet's servers."""

    def __init__(self, store: AbstractFleetStore, backend_factory: BackendFactory = create_backend):
        self.store = store
        self.backend_factory = backend_factory

    # ---------- Create / delete ----------

    async def provision_peer(self, server: VpnServer, request: ProvisionRequest) -> Device:
        """
        Create a peer on ``server`` and store the resulting device.

        Nothing is stored unless every backend step succeeded. If storing
        fails, the backend peer is removed again before the error is raised.

        Raises:
            BackendConnectivityError: If the server fails its health round trip.
            AddressPoolExhausted: If the WireGuard range has no free address.
        """
        async with self.backend_factory(server) as backend:
            if not await backend.check_health():
                raise BackendConnectivityError(
                    f"VPN server {server.label} is not reachable, cannot create device"
                )

            if server.vpn_type == VpnType.WIREGUARD:
                device = await self._provision_wireguard(server, backend, request)
            else:
                device = await self._provision_outline(server, backend, request)

            try:
                stored = await self.store.add_device(device)
            except Exception:
                logger.error(
                    f"Storing device {device.name} failed, removing it from {server.label}"
                )
                await self._rollback(backend, device.backend_id)
                raise

        logger.info(f"Provisioned device {stored.name} ({stored.backend_id}) on {server.label}")
        return stored

    async def _provision_wireguard(
        self, server: VpnServer, backend, request: ProvisionRequest
    ) -> Device:
        keypair = await backend.generate_keypair()
        devices = await self.store.list_devices(server_id=server.id)
        existing = [d.vpn_ip for d in devices if d.vpn_ip]
        vpn_ip = backend.assign_address(existing)

        device = Device(
            name=request.name,
            server_id=server.id,
            plan=request.plan,
            public_key=keypair.public_key,
            private_key=keypair.private_key,
            vpn_ip=vpn_ip,
            expires_at=request.expires_at,
            **self._initial_limit(request),
        )

        await backend.add_peer(device)
        try:
            config = await backend.get_access_config(device)
        except Exception:
            await self._rollback(backend, keypair.public_key)
            raise

        return device.model_copy(update={"config_file": config})

    async def _provision_outline(
        self, server: VpnServer, backend, request: ProvisionRequest
    ) -> Device:
        created = await backend.add_peer(request)
        limit = DataLimit(bytes=created.data_limit, is_enabled=created.data_limit is not None)

        access_key = AccessKey(
            key_id=created.peer_id,
            access_url=created.access_url or "",
            name=created.name or request.name,
            data_limit=limit,
        )
        return Device(
            name=request.name,
            server_id=server.id,
            plan=request.plan,
            expires_at=request.expires_at,
            config_file=created.access_url,
            access_key=access_key,
            **self._initial_limit(request),
        )

    @staticmethod
    def _initial_limit(request: ProvisionRequest) -> dict:
        if request.data_limit is not None:
            return limit_changes(request.data_limit)
        if request.plan is not None and request.plan.is_unlimited:
            return {"is_unlimited": True, "data_limit": None}
        return {"is_unlimited": request.plan is None or not request.plan.data_limit_bytes}

    async def _rollback(self, backend: AbstractVpnBackend, peer_id: Optional[str]) -> None:
        if peer_id is None:
            return
        try:
            await backend.remove_peer(peer_id)
        except BackendError as e:
            logger.error(f"Rollback of peer {peer_id} failed, it is orphaned on the server: {e}")

    async def revoke_peer(self, server: VpnServer, device: Device) -> RevocationResult:
        """
        Remove the peer from the server and delete the local record.

        Backend removal is best effort: a failure is logged and returned in
        the result, the local record is deleted regardless.
        """
        error = None
        peer_id = device.backend_id

        if peer_id is None:
            error = "Device has no backend peer"
        else:
            try:
                async with self.backend_factory(server) as backend:
                    await backend.remove_peer(peer_id)
            except (BackendError, ValueError) as e:
                error = str(e)
                logger.warning(
                    f"Removing peer of device {device.name} from {server.label} failed, "
                    f"deleting the local record anyway: {e}"
                )

        await self.store.delete_device(device.id)
        logger.info(f"Revoked device {device.name} on {server.label}")
        return RevocationResult(device_id=device.id, backend_removed=error is None, error=error)

    # ---------- Limits and config ----------

    async def set_limit(
        self, server: VpnServer, device: Device, limit_bytes: Optional[int]
    ) -> Device:
        """Set (bytes > 0), suspend-cap (0) or clear (None / negative) the data limit."""
        peer_id = require_peer_id(device)

        async with self.backend_factory(server) as backend:
            change = await backend.set_data_limit(peer_id, limit_bytes)
            if change.mode != LimitMode.SUSPENDED:
                await restore_wireguard_peer(backend, device)

        changes = limit_changes(limit_bytes)
        if device.access_key is not None:
            applied = DataLimit(bytes=change.bytes, is_enabled=change.bytes is not None)
            changes["access_key"] = device.access_key.model_copy(update={"data_limit": applied})

        logger.info(f"Device {device.name} data limit is now {change.mode.value}")
        return await self.store.update_device(device.id, **changes)

    async def update_peer(
        self, server: VpnServer, device: Device, patch: PeerConfigPatch
    ) -> Device:
        """Apply the name, data limit and expiry present in ``patch``."""
        fields = patch.model_fields_set
        changes = {}

        backend_fields = fields & {"name", "data_limit"}
        if backend_fields:
            peer_id = require_peer_id(device)
            async with self.backend_factory(server) as backend:
                await backend.update_peer_config(peer_id, patch)
                if (
                    "data_limit" in fields
                    and resolve_limit(patch.data_limit).mode != LimitMode.SUSPENDED
                ):
                    await restore_wireguard_peer(backend, device)

        if "name" in fields and patch.name:
            changes["name"] = patch.name
            if device.access_key is not None:
                changes["access_key"] = device.access_key.model_copy(update={"name": patch.name})
        if "data_limit" in fields:
            changes.update(limit_changes(patch.data_limit))
        if "expires_at" in fields:
            changes["expires_at"] = patch.expires_at

        if not changes:
            return device
        return await self.store.update_device(device.id, **changes)

    async def fetch_access_artifact(self, server: VpnServer, device: Device) -> AccessArtifact:
        """Config text (or access URL), its QR code and a download file name."""
        async with self.backend_factory(server) as backend:
            config = await backend.get_access_config(device)

        return AccessArtifact(
            config=config,
            qr_code=generate_qr_code(config),
            filename=config_filename(device, server.vpn_type),
        )

    # ---------- Status ----------

    async def suspend_peer(self, server: VpnServer, device: Device) -> Device:
        return await self._deactivate(server, device, PeerStatus.SUSPENDED)

    async def disable_peer(self, server: VpnServer, device: Device) -> Device:
        return await self._deactivate(server, device, PeerStatus.DISABLED)

    async def resume_peer(self, server: VpnServer, device: Device) -> Device:
        """SUSPENDED back to ACTIVE; re-adds the peer on the backend."""
        return await self._activate(server, device)

    async def enable_peer(self, server: VpnServer, device: Device) -> Device:
        """DISABLED back to ACTIVE; re-adds the peer on the backend."""
        return await self._activate(server, device)

    async def disconnect_peer(self, server: VpnServer, device: Device) -> Device:
        """Force a WireGuard client off by removing its peer entry."""
        if server.vpn_type != VpnType.WIREGUARD:
            raise InvalidTransitionError("Force disconnect is only available for WireGuard devices")
        if device.status != PeerStatus.DISABLED:
            check_transition(device.status, PeerStatus.DISABLED)

        peer_id = require_peer_id(device)
        async with self.backend_factory(server) as backend:
            await backend.remove_peer(peer_id)

        logger.info(f"Disconnected device {device.name} from {server.label}")
        return await self.store.update_device(
            device.id,
            status=PeerStatus.DISABLED,
            is_enabled=False,
            connectivity=Connectivity(last_handshake=device.connectivity.last_handshake),
        )

    async def _deactivate(self, server: VpnServer, device: Device, target: PeerStatus) -> Device:
        if device.status == target:
            return device
        check_transition(device.status, target)

        changes = {"status": target, "is_enabled": False}
        if device.access_key is not None:
            saved = device.access_key.limit_before_suspend
            if device.status == PeerStatus.ACTIVE:
                saved = device.effective_limit()
            changes["access_key"] = device.access_key.model_copy(
                update={"status": target, "limit_before_suspend": saved}
            )

        try:
            async with self.backend_factory(server) as backend:
                await block_peer(backend, device)
        except (BackendError, ValueError) as e:
            logger.warning(
                f"Blocking device {device.name} on {server.label} failed, "
                f"marking it {target.value} anyway: {e}"
            )

        logger.info(f"Device {device.name} is now {target.value}")
        return await self.store.update_device(device.id, **changes)

    async def _activate(self, server: VpnServer, device: Device) -> Device:
        if device.status == PeerStatus.ACTIVE:
            return device
        check_transition(device.status, PeerStatus.ACTIVE)

        changes = {"status": PeerStatus.ACTIVE, "is_enabled": True}
        async with self.backend_factory(server) as backend:
            if device.access_key is not None:
                restore = device.access_key.limit_before_suspend
                if restore is None:
                    restore = device.effective_limit()
                await backend.set_data_limit(device.access_key.key_id, restore)
                changes["access_key"] = device.access_key.model_copy(
                    update={"status": PeerStatus.ACTIVE, "limit_before_suspend": None}
                )
            else:
                await backend.add_peer(device)

        logger.info(f"Device {device.name} is ACTIVE again on {server.label}")
        return await self.store.update_device(device.id, **changes)
