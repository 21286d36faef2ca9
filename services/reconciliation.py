"""Per-device driver status derived from catalog, problem list and update hints."""
from __future__ import annotations

import logging
from typing import Callable, Iterable, Sequence

from driverwatch_config.constants import IMMUTABLE_CONFIG, MatchingKeywords
from services.catalog_store import CatalogStore
from services.matching import DeviceMatcher, TieredDeviceMatcher, is_virtual_display_adapter
from services.models import CatalogEntry, DeviceDescriptor, DriverState, DriverStatus
from services.update_lookup import UpdateLookupCoordinator

logger = logging.getLogger(__name__)

StatusMap = dict[str, DriverStatus]
LateUpdateCallback = Callable[[StatusMap], None]


def has_problem(device: DeviceDescriptor, problem_names: Iterable[str]) -> bool:
    name_lower = device.name.lower()
    if not name_lower:
        return False
    return any(name_lower in problem.lower() for problem in problem_names)


def has_update_hint(device: DeviceDescriptor, update_titles: Iterable[str]) -> bool:
    needles = [value.lower() for value in (device.name.strip(), device.manufacturer.strip()) if value]
    if not needles:
        return False
    return any(needle in title.lower() for title in update_titles for needle in needles)


def derive_status(
    device: DeviceDescriptor,
    match: CatalogEntry | None,
    *,
    problem: bool,
    update_hint: bool,
    keywords: MatchingKeywords | None = None,
) -> DriverStatus:
    if is_virtual_display_adapter(device.name, keywords):
        return DriverStatus(installed=True, is_latest=True, update_available=False, status=DriverState.OK)
    if match is not None:
        needs_update = problem or update_hint
        return DriverStatus(
            installed=True,
            version=match.version or None,
            date=match.date or None,
            is_latest=not needs_update,
            update_available=needs_update,
            status=DriverState.OUTDATED if needs_update else DriverState.OK,
        )
    if update_hint:
        return DriverStatus(installed=False, is_latest=False, update_available=True, status=DriverState.MISSING)
    return DriverStatus(installed=False, is_latest=False, update_available=False, status=DriverState.UNKNOWN)


class ReconciliationEngine:
    def __init__(
        self,
        catalog_store: CatalogStore,
        update_lookup: UpdateLookupCoordinator,
        *,
        matcher: DeviceMatcher | None = None,
        keywords: MatchingKeywords | None = None,
    ) -> None:
        self._catalog_store = catalog_store
        self._update_lookup = update_lookup
        self._keywords = keywords or IMMUTABLE_CONFIG.matching
        self._matcher = matcher or TieredDeviceMatcher(self._keywords)
        self._in_progress = False

    @property
    def in_progress(self) -> bool:
        return self._in_progress

    def build_status_map(
        self,
        devices: Sequence[DeviceDescriptor],
        catalog: Sequence[CatalogEntry],
        problem_names: Iterable[str],
        update_titles: Iterable[str],
    ) -> StatusMap:
        problems = tuple(problem_names)
        titles = tuple(update_titles)
        result: StatusMap = {}
        for device in devices:
            result[device.id] = self._status_for(device, catalog, problems, titles)
        return result

    async def reconcile_all(
        self,
        devices: Sequence[DeviceDescriptor],
        on_later_update: LateUpdateCallback | None = None,
    ) -> StatusMap | None:
        """Return statuses from what is known right now; deliver a corrected map later.

        Returns ``None`` without doing any work when another bulk pass is running.
        When ``on_later_update`` is given and the update search is still in flight,
        the map is rebuilt with the final update titles once the search settles.
        """
        if self._in_progress:
            logger.info("Driver check already in progress, skipping")
            return None
        self._in_progress = True
        try:
            devices = tuple(devices)
            catalog, problems = await self._catalog_store.get_snapshot()
            titles = self._update_lookup.get_current_snapshot()
            logger.info("Using current update results: %d updates", len(titles))
            result = self.build_status_map(devices, catalog, problems, titles)

            if on_later_update is not None and self._update_lookup.is_fetching:

                def _rebuild(final_titles: tuple[str, ...]) -> None:
                    logger.info("Rebuilding driver statuses with final update results")
                    on_later_update(self.build_status_map(devices, catalog, problems, final_titles))

                self._update_lookup.register_completion_callback(_rebuild)

            logger.info("Initial driver check complete for %d devices", len(devices))
            return result
        finally:
            self._in_progress = False

    async def reconcile_one(self, device: DeviceDescriptor) -> DriverStatus:
        catalog, problems = await self._catalog_store.get_snapshot()
        self._update_lookup.start_background_fetch()
        await self._update_lookup.await_in_flight_fetch()
        titles = self._update_lookup.get_current_snapshot()
        return self._status_for(device, catalog, problems, titles)

    def _status_for(
        self,
        device: DeviceDescriptor,
        catalog: Sequence[CatalogEntry],
        problems: Sequence[str],
        titles: Sequence[str],
    ) -> DriverStatus:
        match = self._matcher.match(device.name, device.manufacturer, catalog)
        problem = has_problem(device, problems)
        update_hint = has_update_hint(device, titles)
        status = derive_status(device, match, problem=problem, update_hint=update_hint, keywords=self._keywords)
        if is_virtual_display_adapter(device.name, self._keywords):
            logger.debug("%s: virtual display adapter, no driver check needed", device.name)
        elif match is None:
            logger.debug(
                "%s: no catalog match (manufacturer %r), update hint=%s", device.name, device.manufacturer, update_hint
            )
        else:
            logger.debug(
                "%s: matched %r v%s, problem=%s, update hint=%s",
                device.name,
                match.device_name,
                match.version,
                problem,
                update_hint,
            )
        return status
