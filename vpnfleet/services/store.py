# vpnfleet/services/store.py
"""Persistence boundary of the fleet core and its in-memory implementation."""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from vpnfleet.models.vpn import Device, PeerStatus, VpnServer

logger = logging.getLogger(__name__)


class AbstractFleetStore(ABC):
    """
    Where server and device records live.

    The core reads records, calls backends, then writes the outcome back.
    Each write replaces the whole record; the last write wins.
    """

    @abstractmethod
    async def list_active_servers(self) -> List[VpnServer]:
        pass

    @abstractmethod
    async def get_server(self, server_id: str) -> Optional[VpnServer]:
        pass

    @abstractmethod
    async def list_devices(
        self, server_id: Optional[str] = None, enabled: Optional[bool] = None
    ) -> List[Device]:
        pass

    @abstractmethod
    async def list_expired_devices(self, now: datetime) -> List[Device]:
        """Devices not yet EXPIRED whose ``expires_at`` is before ``now``."""
        pass

    @abstractmethod
    async def list_limited_devices(self) -> List[Device]:
        """Active, enabled devices that have an effective data limit."""
        pass

    @abstractmethod
    async def get_device(self, device_id: str) -> Optional[Device]:
        pass

    @abstractmethod
    async def add_device(self, device: Device) -> Device:
        pass

    @abstractmethod
    async def update_device(self, device_id: str, **changes) -> Device:
        """
        Raises:
            KeyError: If the device does not exist.
        """
        pass

    @abstractmethod
    async def update_server_stats(self, server_id: str, **changes) -> VpnServer:
        """
        Raises:
            KeyError: If the server does not exist.
        """
        pass

    @abstractmethod
    async def delete_device(self, device_id: str) -> bool:
        pass


class InMemoryFleetStore(AbstractFleetStore):
    """Dictionary-backed store for the service host and tests."""

    def __init__(
        self,
        servers: Optional[Iterable[VpnServer]] = None,
        devices: Optional[Iterable[Device]] = None,
    ):
        self._servers: Dict[str, VpnServer] = {s.id: s for s in servers or []}
        self._devices: Dict[str, Device] = {d.id: d for d in devices or []}
        self._lock = asyncio.Lock()

    async def add_server(self, server: VpnServer) -> VpnServer:
        async with self._lock:
            self._servers[server.id] = server
        return server

    async def list_active_servers(self) -> List[VpnServer]:
        return [s for s in self._servers.values() if s.is_active]

    async def get_server(self, server_id: str) -> Optional[VpnServer]:
        return self._servers.get(server_id)

    async def list_devices(
        self, server_id: Optional[str] = None, enabled: Optional[bool] = None
    ) -> List[Device]:
        devices = list(self._devices.values())
        if server_id is not None:
            devices = [d for d in devices if d.server_id == server_id]
        if enabled is not None:
            devices = [d for d in devices if d.is_enabled == enabled]
        return devices

    async def list_expired_devices(self, now: datetime) -> List[Device]:
        return [
            d
            for d in self._devices.values()
            if d.expires_at is not None
            and d.expires_at < now
            and d.status != PeerStatus.EXPIRED
        ]

    async def list_limited_devices(self) -> List[Device]:
        return [
            d
            for d in self._devices.values()
            if d.status == PeerStatus.ACTIVE and d.is_enabled and d.effective_limit() is not None
        ]

    async def get_device(self, device_id: str) -> Optional[Device]:
        return self._devices.get(device_id)

    async def add_device(self, device: Device) -> Device:
        async with self._lock:
            self._devices[device.id] = device
        logger.debug(f"Stored device {device.id} ({device.name})")
        return device

    async def update_device(self, device_id: str, **changes) -> Device:
        async with self._lock:
            device = self._devices[device_id]
            updated = device.model_copy(update=changes)
            self._devices[device_id] = updated
        return updated

    async def update_server_stats(self, server_id: str, **changes) -> VpnServer:
        async with self._lock:
            server = self._servers[server_id]
            stats = server.stats.model_copy(update=changes)
            updated = server.model_copy(update={"stats": stats})
            self._servers[server_id] = updated
        return updated

    async def delete_device(self, device_id: str) -> bool:
        async with self._lock:
            return self._devices.pop(device_id, None) is not None
