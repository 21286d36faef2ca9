"""Driver status checks and Windows Update driver installation."""
from __future__ import annotations

import logging
import time
from typing import Callable, Iterable, Sequence

from driverwatch_config.constants import IMMUTABLE_CONFIG, DriverCheckConfig, MatchingKeywords
from services.catalog_store import CatalogStore
from services.errors import CatalogParseError, CollaboratorError, InstallPipelineError
from services.inventory import DeviceInventory, WindowsDeviceInventory
from services.matching import TieredDeviceMatcher
from services.models import (
    CacheDiagnostics,
    CatalogEntry,
    DeviceCategory,
    DeviceDescriptor,
    DriverState,
    DriverStatus,
    InstallProgress,
    MatchCandidate,
    MatchReport,
)
from services.reconciliation import LateUpdateCallback, ReconciliationEngine, StatusMap
from services.sources import (
    CommandRunner,
    DriverCatalogSource,
    InstallPipeline,
    SubprocessRunner,
    UpdateSource,
    WindowsDriverCatalog,
    WindowsUpdateInstaller,
    WindowsUpdateSource,
)
from services.update_lookup import UpdateLookupCoordinator

logger = logging.getLogger(__name__)

INSTALL_ALL_ID = "all"
RESTART_HINT = "All drivers installed; restart the system for the changes to take effect"


class DriverService:
    def __init__(
        self,
        *,
        config: DriverCheckConfig | None = None,
        keywords: MatchingKeywords | None = None,
        command_runner: CommandRunner | None = None,
        inventory: DeviceInventory | None = None,
        catalog_source: DriverCatalogSource | None = None,
        update_source: UpdateSource | None = None,
        installer: InstallPipeline | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config or IMMUTABLE_CONFIG.drivers
        self._keywords = keywords or IMMUTABLE_CONFIG.matching
        runner = command_runner or SubprocessRunner(encoding=self._config.output_encoding)
        self._inventory = inventory or WindowsDeviceInventory(config=self._config, command_runner=runner)
        self._installer = installer or WindowsUpdateInstaller(config=self._config, command_runner=runner)
        self._matcher = TieredDeviceMatcher(self._keywords)
        self.catalog_store = CatalogStore(
            catalog_source or WindowsDriverCatalog(config=self._config, command_runner=runner),
            ttl_seconds=self._config.catalog_ttl_seconds,
            clock=clock,
        )
        self.update_lookup = UpdateLookupCoordinator(
            update_source or WindowsUpdateSource(config=self._config, command_runner=runner),
            ttl_seconds=self._config.update_ttl_seconds,
            timeout_seconds=self._config.update_timeout_seconds,
            clock=clock,
        )
        self.engine = ReconciliationEngine(
            self.catalog_store,
            self.update_lookup,
            matcher=self._matcher,
            keywords=self._keywords,
        )
        self._status_cache: dict[str, DriverStatus] = {}
        self.last_scan_warnings: list[str] = []

    async def list_devices(self) -> list[DeviceDescriptor]:
        self.last_scan_warnings = []
        try:
            return list(await self._inventory.enumerate_devices())
        except (CollaboratorError, CatalogParseError) as exc:
            logger.warning("Hardware inventory failed: %s", exc)
            self.last_scan_warnings.append(f"Hardware inventory failed: {exc}")
            return []

    def cached_status(self, device_id: str) -> DriverStatus:
        return self._status_cache.get(device_id) or DriverStatus.checking()

    async def get_reconciled_statuses(
        self,
        devices: Sequence[DeviceDescriptor] | None = None,
        on_later_update: LateUpdateCallback | None = None,
    ) -> StatusMap | None:
        """Fast bulk check; ``on_later_update`` receives the authoritative map later.

        Returns ``None`` when another bulk check is already running.
        """
        started = time.perf_counter()
        if devices is None:
            devices = await self.list_devices()
        self.update_lookup.start_background_fetch()

        def _later(statuses: StatusMap) -> None:
            self._remember(statuses)
            if on_later_update:
                on_later_update(statuses)

        statuses = await self.engine.reconcile_all(devices, _later)
        if statuses is None:
            return None
        self._remember(statuses)
        logger.info("Driver check for %d devices finished in %.0fms", len(devices), (time.perf_counter() - started) * 1000)
        return statuses

    async def get_reconciled_status(
        self, device_id: str, devices: Sequence[DeviceDescriptor] | None = None
    ) -> DriverStatus:
        if devices is None:
            devices = await self.list_devices()
        device = next((d for d in devices if d.id == device_id), None)
        if device is None:
            logger.warning("Device %s not found in inventory", device_id)
            return DriverStatus(installed=False, is_latest=False, update_available=False, status=DriverState.UNKNOWN)
        status = await self.engine.reconcile_one(device)
        self._status_cache[device_id] = status
        return status

    async def trigger_install_all(self, on_progress: Callable[[InstallProgress], None] | None = None) -> None:
        """Install every pending driver update; raises ``InstallPipelineError`` on failure.

        On success the catalog and update caches are dropped, so the next
        ``get_reconciled_statuses`` call sees the freshly installed drivers.
        """

        def _emit(stage: str, percent: int, message: str) -> None:
            if on_progress:
                on_progress(InstallProgress(device_id=INSTALL_ALL_ID, stage=stage, percent=percent, message=message))

        try:
            await self._installer.run_install_pipeline(lambda message, percent: _emit("installing", percent, message))
        except InstallPipelineError as exc:
            logger.error("Install all drivers failed: %s", exc)
            _emit("failed", 0, f"Installation failed: {exc}")
            raise
        except CollaboratorError as exc:
            logger.error("Install all drivers failed: %s", exc)
            _emit("failed", 0, f"Installation failed: {exc}")
            raise InstallPipelineError(str(exc)) from exc
        self.clear_caches()
        _emit("completed", 100, RESTART_HINT)

    def get_cache_diagnostics(self) -> CacheDiagnostics:
        return self.update_lookup.diagnostics()

    def clear_caches(self) -> None:
        self.catalog_store.clear()
        self.update_lookup.clear()

    async def list_display_catalog_entries(self) -> list[CatalogEntry]:
        markers = set(self._keywords.display_catalog) | {"intel", "nvidia", "amd"} | set(self._keywords.virtual_adapter)
        catalog = await self.catalog_store.get_catalog()
        return [entry for entry in catalog if any(marker in entry.device_name.lower() for marker in markers)]

    async def debug_match(
        self,
        devices: Iterable[DeviceDescriptor] | None = None,
        *,
        category: DeviceCategory | None = DeviceCategory.GPU,
        limit: int | None = None,
    ) -> list[MatchReport]:
        """Explain how devices pair with catalog rows; unmatched ones get ranked candidates."""
        if devices is None:
            devices = await self.list_devices()
        catalog = await self.catalog_store.get_catalog()
        top = limit or self._config.candidate_limit
        reports: list[MatchReport] = []
        for device in devices:
            if category is not None and device.category is not category:
                continue
            matched = self._matcher.match(device.name, device.manufacturer, catalog)
            candidates: tuple[MatchCandidate, ...] = ()
            if matched is None:
                candidates = tuple(self._matcher.rank_candidates(device.name, device.manufacturer, catalog, limit=top))
            reports.append(MatchReport(device=device, matched=matched, candidates=candidates))
        return reports

    def _remember(self, statuses: StatusMap) -> None:
        for device_id, status in statuses.items():
            self._status_cache[device_id] = status
