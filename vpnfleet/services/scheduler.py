# vpnfleet/services/scheduler.py
"""
Reconciliation jobs run on a timer against every active server.

Four jobs, each independent of the others:
- health_check: round trip per server, persists is_healthy / last_health_check
- usage_sync: one stats call per server, pushes usage and connectivity per device
- device_expiration: marks overdue devices EXPIRED, then cuts them off
- limit_enforcement: suspends devices at or over their limit, then cuts them off

Per-server work runs concurrently, each server bounded by its own timeout;
a failing or hanging server is logged and never stops the others.
"""

import asyncio
import logging
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from vpnfleet.models.vpn import Connectivity, Device, PeerStatus, Usage, VpnServer, VpnType
from vpnfleet.services.factory import create_backend
from vpnfleet.services.provisioning import BackendFactory, block_peer
from vpnfleet.services.store import AbstractFleetStore
from vpnfleet.services.vpn_backend import BackendError
from vpnfleet.settings import Settings, get_settings

logger = logging.getLogger(__name__)

HEALTH_CHECK = "health_check"
USAGE_SYNC = "usage_sync"
DEVICE_EXPIRATION = "device_expiration"
LIMIT_ENFORCEMENT = "limit_enforcement"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class JobReport:
    """
    Outcome of one job run.

    ``processed`` counts servers (health, usage) or device records
    (expiration, limits) handled; ``failed`` counts units with at least one
    failed step, keyed by id in ``errors``; ``skipped`` counts units with
    nothing to do.
    """

    job: str
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    errors: Dict[str, str] = field(default_factory=dict)
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    def record_failure(self, key: str, message: str) -> None:
        if key not in self.errors:
            self.failed += 1
        self.errors[key] = message


class PeriodicJob:
    """One scheduled job with its own trigger and running guard."""

    def __init__(self, name: str, func: Callable[[], Awaitable[JobReport]], trigger: BaseTrigger):
        self.name = name
        self.func = func
        self.trigger = trigger
        self.running = False
        self.skipped_ticks = 0
        self.last_report: Optional[JobReport] = None

    async def run(self) -> Optional[JobReport]:
        """Run once; returns None if the previous run has not finished yet."""
        if self.running:
            self.skipped_ticks += 1
            logger.warning(f"[{self.name}] Previous run still in progress, skipping this tick")
            return None

        self.running = True
        try:
            report = await self.func()
        except Exception as e:
            logger.exception(f"[{self.name}] Job run failed: {e}")
            report = JobReport(job=self.name)
            report.record_failure("job", str(e))
        finally:
            self.running = False

        report.finished_at = utcnow()
        self.last_report = report
        logger.info(
            f"[{self.name}] processed={report.processed} failed={report.failed} "
            f"skipped={report.skipped}"
        )
        return report


class ReconciliationScheduler:
    """
    Owns the APScheduler instance and the four reconciliation jobs.

    Jobs can also be run on demand with run_job(), which is what tests and
    admin actions use.
    """

    def __init__(
        self,
        store: AbstractFleetStore,
        backend_factory: BackendFactory = create_backend,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.backend_factory = backend_factory
        self.settings = settings or get_settings()
        self.scheduler = AsyncIOScheduler(timezone=self.settings.scheduler_timezone)

        tz = self.settings.scheduler_timezone
        self.jobs: Dict[str, PeriodicJob] = {
            HEALTH_CHECK: PeriodicJob(
                HEALTH_CHECK,
                self.check_server_health,
                IntervalTrigger(seconds=self.settings.health_check_interval, timezone=tz),
            ),
            USAGE_SYNC: PeriodicJob(
                USAGE_SYNC,
                self.sync_usage,
                IntervalTrigger(seconds=self.settings.usage_sync_interval, timezone=tz),
            ),
            DEVICE_EXPIRATION: PeriodicJob(
                DEVICE_EXPIRATION,
                self.expire_devices,
                CronTrigger.from_crontab(self.settings.expiration_cron, timezone=tz),
            ),
            LIMIT_ENFORCEMENT: PeriodicJob(
                LIMIT_ENFORCEMENT,
                self.enforce_limits,
                IntervalTrigger(seconds=self.settings.limit_enforcement_interval, timezone=tz),
            ),
        }

    # ---------- Lifecycle ----------

    def start(self) -> None:
        for job in self.jobs.values():
            self.scheduler.add_job(
                job.run,
                job.trigger,
                id=job.name,
                name=job.name,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
        self.scheduler.start()
        logger.info(f"Reconciliation scheduler started with {len(self.jobs)} jobs")

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Reconciliation scheduler stopped")

    async def run_job(self, name: str) -> Optional[JobReport]:
        if name not in self.jobs:
            raise ValueError(f"Unknown job: {name}")
        return await self.jobs[name].run()

    def jobs_status(self) -> List[Dict[str, Any]]:
        status = []
        for name, job in self.jobs.items():
            scheduled = self.scheduler.get_job(name) if self.scheduler.running else None
            next_run = getattr(scheduled, "next_run_time", None)
            status.append(
                {
                    "id": name,
                    "running": job.running,
                    "skipped_ticks": job.skipped_ticks,
                    "next_run_time": next_run.isoformat() if next_run else None,
                    "last_report": asdict(job.last_report) if job.last_report else None,
                }
            )
        return status

    # ---------- Per-server fan out ----------

    async def _gather_servers(
        self,
        servers: List[VpnServer],
        action: Callable[[VpnServer], Awaitable[Any]],
    ) -> List[Tuple[VpnServer, Any, Optional[str]]]:
        """
        Run ``action`` on every server concurrently.

        Returns (server, result, error) triples; ``error`` is None on success.
        """
        timeout = self.settings.server_operation_timeout

        async def guarded(server: VpnServer) -> Tuple[VpnServer, Any, Optional[str]]:
            try:
                result = await asyncio.wait_for(action(server), timeout=timeout)
                return server, result, None
            except asyncio.TimeoutError:
                return server, None, f"Timed out after {timeout:g}s"
            except Exception as e:
                return server, None, str(e) or type(e).__name__

        return await asyncio.gather(*(guarded(server) for server in servers))

    # ---------- Jobs ----------

    async def check_server_health(self) -> JobReport:
        report = JobReport(job=HEALTH_CHECK)
        servers = await self.store.list_active_servers()

        async def check(server: VpnServer) -> bool:
            async with self.backend_factory(server) as backend:
                return await backend.check_health()

        for server, healthy, error in await self._gather_servers(servers, check):
            if error is not None:
                logger.error(f"[{HEALTH_CHECK}] Error checking {server.label}: {error}")
                report.record_failure(server.id, error)
                healthy = False

            try:
                await self.store.update_server_stats(
                    server.id, is_healthy=bool(healthy), last_health_check=utcnow()
                )
            except Exception as e:
                logger.error(f"[{HEALTH_CHECK}] Cannot store health of {server.label}: {e}")
                report.record_failure(server.id, str(e))
                continue

            if error is None:
                report.processed += 1
                state = "healthy" if healthy else "unhealthy"
                logger.info(f"[{HEALTH_CHECK}] {server.label} ({server.vpn_type.value}): {state}")

        return report

    async def sync_usage(self) -> JobReport:
        report = JobReport(job=USAGE_SYNC)
        servers = await self.store.list_active_servers()

        async def sync(server: VpnServer) -> Optional[int]:
            devices = await self.store.list_devices(server_id=server.id, enabled=True)
            if not devices:
                return None

            async with self.backend_factory(server) as backend:
                stats = await backend.get_all_peer_stats()

            synced_at = utcnow()
            synced = 0
            for device in devices:
                peer = stats.get(device.backend_id) if device.backend_id else None
                if peer is None:
                    continue

                usage = Usage(
                    bytes_sent=peer.bytes_sent,
                    bytes_received=peer.bytes_received,
                    last_sync=synced_at,
                )
                changes: Dict[str, Any] = {"usage": usage}
                if server.vpn_type == VpnType.WIREGUARD:
                    changes["connectivity"] = Connectivity(
                        last_handshake=peer.last_handshake, is_connected=peer.is_connected
                    )
                if device.access_key is not None:
                    changes["access_key"] = device.access_key.model_copy(update={"usage": usage})

                await self.store.update_device(device.id, **changes)
                synced += 1

            logger.info(f"[{USAGE_SYNC}] Synced {synced} devices from {server.label}")
            return synced

        for server, synced, error in await self._gather_servers(servers, sync):
            if error is not None:
                logger.error(f"[{USAGE_SYNC}] Error syncing {server.label}: {error}")
                report.record_failure(server.id, error)
            elif synced is None:
                report.skipped += 1
            else:
                report.processed += 1

        return report

    async def expire_devices(self) -> JobReport:
        report = JobReport(job=DEVICE_EXPIRATION)
        devices = await self.store.list_expired_devices(utcnow())

        to_block = []
        for device in devices:
            changes: Dict[str, Any] = {"status": PeerStatus.EXPIRED, "is_enabled": False}
            if device.access_key is not None:
                changes["access_key"] = device.access_key.model_copy(
                    update={"status": PeerStatus.EXPIRED}
                )
            if await self._write_device(report, device, changes) and device.is_enabled:
                to_block.append(device)

        await self._block_devices(report, to_block)
        if devices:
            logger.info(f"[{DEVICE_EXPIRATION}] Expired {report.processed} devices")
        return report

    async def enforce_limits(self) -> JobReport:
        report = JobReport(job=LIMIT_ENFORCEMENT)
        devices = await self.store.list_limited_devices()

        to_block = []
        for device in devices:
            if not device.has_exceeded_limit():
                report.skipped += 1
                continue

            logger.info(
                f"[{LIMIT_ENFORCEMENT}] Device {device.name} used {device.usage.total} of "
                f"{device.effective_limit()} bytes, suspending"
            )
            changes: Dict[str, Any] = {"status": PeerStatus.SUSPENDED, "is_enabled": False}
            if device.access_key is not None:
                changes["access_key"] = device.access_key.model_copy(
                    update={
                        "status": PeerStatus.SUSPENDED,
                        "limit_before_suspend": device.effective_limit(),
                    }
                )
            if await self._write_device(report, device, changes):
                to_block.append(device)

        await self._block_devices(report, to_block)
        return report

    async def _write_device(
        self, report: JobReport, device: Device, changes: Dict[str, Any]
    ) -> bool:
        try:
            await self.store.update_device(device.id, **changes)
        except Exception as e:
            logger.error(f"[{report.job}] Cannot update device {device.name}: {e}")
            report.record_failure(device.id, str(e))
            return False
        report.processed += 1
        return True

    async def _block_devices(self, report: JobReport, devices: List[Device]) -> None:
        """
        Cut devices off on their servers after their records were written.

        Best effort: the record already holds the new status, a backend
        failure is only logged and reported.
        """
        if not devices:
            return

        by_server: Dict[str, List[Device]] = defaultdict(list)
        for device in devices:
            by_server[device.server_id].append(device)

        servers = []
        for server_id, grouped in by_server.items():
            server = await self.store.get_server(server_id)
            if server is None or not server.is_active:
                logger.warning(
                    f"[{report.job}] Server {server_id} missing or inactive, "
                    f"{len(grouped)} devices left untouched on the backend"
                )
                continue
            servers.append(server)

        async def block_all(server: VpnServer) -> None:
            async with self.backend_factory(server) as backend:
                for device in by_server[server.id]:
                    try:
                        await block_peer(backend, device)
                        logger.info(
                            f"[{report.job}] Blocked device {device.name} on {server.label}"
                        )
                    except BackendError as e:
                        logger.error(
                            f"[{report.job}] Device {device.name} updated in the store, "
                            f"but blocking it on {server.label} failed: {e}"
                        )
                        report.record_failure(device.id, str(e))

        for server, _, error in await self._gather_servers(servers, block_all):
            if error is not None:
                logger.error(f"[{report.job}] Cannot reach {server.label}: {error}")
                for device in by_server[server.id]:
                    report.record_failure(device.id, error)
