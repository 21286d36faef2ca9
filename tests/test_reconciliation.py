from __future__ import annotations

import asyncio

import pytest

from services.catalog_store import CatalogStore
from services.models import CatalogEntry, DeviceCategory, DeviceDescriptor, DriverState, DriverStatus
from services.reconciliation import ReconciliationEngine, derive_status, has_problem, has_update_hint
from services.update_lookup import UpdateLookupCoordinator


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeCatalogSource:
    def __init__(self, catalog: list[CatalogEntry] | None = None, problems: set[str] | None = None) -> None:
        self.catalog = catalog or []
        self.problems = problems or set()
        self.gate: asyncio.Event | None = None

    async def fetch_catalog(self) -> list[CatalogEntry]:
        if self.gate is not None:
            await self.gate.wait()
        return list(self.catalog)

    async def fetch_problem_device_names(self) -> set[str]:
        return set(self.problems)


class FakeUpdateSource:
    def __init__(self, titles: list[str] | None = None) -> None:
        self.titles = titles or []
        self.calls = 0
        self.gate: asyncio.Event | None = None

    async def fetch_pending_update_titles(self, timeout: float) -> list[str]:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        return list(self.titles)


def _device(name: str, manufacturer: str = "", device_id: str = "dev-0") -> DeviceDescriptor:
    return DeviceDescriptor(id=device_id, category=DeviceCategory.OTHER, name=name, manufacturer=manufacturer)


def _engine(
    catalog: list[CatalogEntry] | None = None,
    problems: set[str] | None = None,
    titles: list[str] | None = None,
) -> tuple[ReconciliationEngine, FakeCatalogSource, FakeUpdateSource]:
    clock = FakeClock()
    catalog_source = FakeCatalogSource(catalog, problems)
    update_source = FakeUpdateSource(titles)
    engine = ReconciliationEngine(
        CatalogStore(catalog_source, clock=clock),
        UpdateLookupCoordinator(update_source, clock=clock),
    )
    return engine, catalog_source, update_source


async def _reconcile_with_titles(engine: ReconciliationEngine, devices: list[DeviceDescriptor]):
    lookup = engine._update_lookup
    lookup.start_background_fetch()
    await lookup.await_in_flight_fetch()
    return await engine.reconcile_all(devices)


def test_exact_catalog_match_is_ok() -> None:
    engine, _, _ = _engine(catalog=[CatalogEntry("NVIDIA GeForce RTX 3080", version="1.2.3")])
    device = _device("NVIDIA GeForce RTX 3080", "NVIDIA")
    status = asyncio.run(engine.reconcile_all([device]))[device.id]
    assert status.installed is True
    assert status.version == "1.2.3"
    assert status.status is DriverState.OK
    assert status.is_latest is True
    assert status.update_available is False


def test_virtual_display_adapter_is_ok_without_catalog() -> None:
    engine, _, _ = _engine()
    device = _device("Oray Virtual Display Adapter")
    status = asyncio.run(engine.reconcile_all([device]))[device.id]
    assert status.installed is True
    assert status.is_latest is True
    assert status.status is DriverState.OK


def test_update_hint_without_match_is_missing() -> None:
    engine, _, _ = _engine(titles=["Realtek High Definition Audio Driver Update"])
    device = _device("Realtek Audio", "Realtek")
    status = asyncio.run(_reconcile_with_titles(engine, [device]))[device.id]
    assert status.installed is False
    assert status.update_available is True
    assert status.status is DriverState.MISSING


def test_keyword_match_reports_catalog_version() -> None:
    engine, _, _ = _engine(
        catalog=[CatalogEntry("Intel UHD Graphics Family", "Intel Corporation", version="31.0.101.2111", date="2022-08-10")]
    )
    device = _device("Intel(R) UHD Graphics 630", "Intel")
    status = asyncio.run(engine.reconcile_all([device]))[device.id]
    assert status.installed is True
    assert status.version == "31.0.101.2111"
    assert status.date == "2022-08-10"


@pytest.mark.parametrize(
    "catalog",
    [[], [CatalogEntry("Virtual Audio Cable", "Muzychenko")], [CatalogEntry("Anything Else", "Contoso")]],
)
def test_virtual_devices_are_ok_regardless_of_catalog(catalog: list[CatalogEntry]) -> None:
    engine, _, _ = _engine(catalog=catalog, problems={"VIRTUAL Audio Cable"})
    device = _device("VIRTUAL Audio Cable", "Muzychenko")
    status = asyncio.run(_reconcile_with_titles(engine, [device]))[device.id]
    assert status.status is DriverState.OK
    assert status.installed is True
    assert status.is_latest is True


def test_unmatched_device_without_hint_is_unknown() -> None:
    engine, _, _ = _engine(
        catalog=[CatalogEntry("Realtek Audio", "Realtek")],
        titles=["2023-01 Cumulative Update for Windows 11"],
    )
    devices = [_device("Mystery Sensor", "Contoso", "other-0"), _device("Widget", "", "other-1")]
    statuses = asyncio.run(_reconcile_with_titles(engine, devices))
    for status in statuses.values():
        assert status.status is DriverState.UNKNOWN
        assert status.installed is False
        assert status.update_available is False


def test_problem_device_is_outdated() -> None:
    engine, _, _ = _engine(
        catalog=[CatalogEntry("Intel Wi-Fi 6 AX201 160MHz", "Intel", version="22.150.0.3")],
        problems={"Intel Wi-Fi 6 AX201 160MHz (Code 10)"},
    )
    device = _device("Intel Wi-Fi 6 AX201 160MHz", "Intel")
    status = asyncio.run(engine.reconcile_all([device]))[device.id]
    assert status.status is DriverState.OUTDATED
    assert status.installed is True
    assert status.update_available is True
    assert status.is_latest is False


def test_repeated_bulk_checks_are_identical() -> None:
    engine, _, _ = _engine(
        catalog=[CatalogEntry("NVIDIA GeForce RTX 3080", "NVIDIA", version="1.2.3")],
        titles=["NVIDIA - Display - 31.0.15.3598"],
    )
    devices = [_device("NVIDIA GeForce RTX 3080", "NVIDIA", "gpu-0"), _device("Realtek Audio", "Realtek", "audio-0")]

    async def scenario():
        first = await _reconcile_with_titles(engine, devices)
        second = await engine.reconcile_all(devices)
        return first, second

    first, second = asyncio.run(scenario())
    assert first == second
    assert first["gpu-0"].status is DriverState.OUTDATED


def test_concurrent_bulk_check_is_dropped() -> None:
    engine, catalog_source, _ = _engine(catalog=[CatalogEntry("Realtek Audio", "Realtek")])
    device = _device("Realtek Audio", "Realtek")

    async def scenario():
        catalog_source.gate = asyncio.Event()
        first = asyncio.ensure_future(engine.reconcile_all([device]))
        await asyncio.sleep(0)
        second = await engine.reconcile_all([device])
        busy = engine.in_progress
        catalog_source.gate.set()
        return await first, second, busy, engine.in_progress

    first, second, busy, after = asyncio.run(scenario())
    assert second is None
    assert busy is True
    assert first[device.id].status is DriverState.OK
    assert after is False


def test_late_update_delivers_corrected_map() -> None:
    engine, _, update_source = _engine(titles=["Realtek High Definition Audio Driver Update"])
    device = _device("Realtek Audio", "Realtek")
    later: list[dict[str, DriverStatus]] = []

    async def scenario():
        update_source.gate = asyncio.Event()
        engine._update_lookup.start_background_fetch()
        initial = await engine.reconcile_all([device], later.append)
        update_source.gate.set()
        await engine._update_lookup.await_in_flight_fetch()
        return initial

    initial = asyncio.run(scenario())
    assert initial[device.id].status is DriverState.UNKNOWN
    assert len(later) == 1
    assert later[0][device.id].status is DriverState.MISSING


class UnreachableCatalogSource(FakeCatalogSource):
    async def fetch_catalog(self) -> list[CatalogEntry]:
        raise OSError("catalog query unreachable")


def test_unreachable_catalog_degrades_to_unknown() -> None:
    clock = FakeClock()
    engine = ReconciliationEngine(
        CatalogStore(UnreachableCatalogSource(), clock=clock),
        UpdateLookupCoordinator(FakeUpdateSource(), clock=clock),
    )
    device = _device("Realtek Audio", "Realtek")
    status = asyncio.run(engine.reconcile_all([device]))[device.id]
    assert status.status is DriverState.UNKNOWN
    assert status.installed is False


def test_no_late_update_without_fetch_in_flight() -> None:
    engine, _, _ = _engine()
    later: list[dict[str, DriverStatus]] = []
    asyncio.run(engine.reconcile_all([_device("Realtek Audio")], later.append))
    assert later == []


def test_reconcile_one_waits_for_update_search() -> None:
    engine, _, update_source = _engine(titles=["Realtek High Definition Audio Driver Update"])
    device = _device("Realtek Audio", "Realtek")
    status = asyncio.run(engine.reconcile_one(device))
    assert status.status is DriverState.MISSING
    assert update_source.calls == 1


def test_has_problem_uses_device_name_substring() -> None:
    device = _device("Unknown USB Device")
    assert has_problem(device, ["Unknown USB Device (Device Descriptor Request Failed)"])
    assert not has_problem(device, ["Realtek Audio"])
    assert not has_problem(_device(""), ["anything"])


def test_update_hint_ignores_blank_fields() -> None:
    assert has_update_hint(_device("Widget", "Realtek"), ["Realtek - Audio - 6.0.9"])
    assert not has_update_hint(_device("Widget", ""), ["Realtek - Audio - 6.0.9"])
    assert not has_update_hint(_device("", "  "), ["anything"])


def test_derive_status_uses_none_for_blank_version() -> None:
    status = derive_status(_device("Realtek Audio"), CatalogEntry("Realtek Audio"), problem=False, update_hint=False)
    assert status.version is None
    assert status.date is None
    assert status.status is DriverState.OK


def test_status_invariants_are_enforced() -> None:
    with pytest.raises(ValueError):
        DriverStatus(installed=True, is_latest=True, update_available=True, status=DriverState.OK)
    with pytest.raises(ValueError):
        DriverStatus(installed=False, is_latest=False, update_available=True, status=DriverState.OUTDATED)
    with pytest.raises(ValueError):
        DriverStatus(installed=True, is_latest=False, update_available=True, status=DriverState.MISSING)


def test_status_serializes_with_camel_case_keys() -> None:
    status = DriverStatus(installed=True, is_latest=True, update_available=False, status=DriverState.OK, version="1.0")
    assert status.to_dict() == {
        "installed": True,
        "version": "1.0",
        "date": None,
        "isLatest": True,
        "isLTS": False,
        "availableVersion": None,
        "updateAvailable": False,
        "status": "ok",
    }
    assert DriverStatus.checking().status is DriverState.CHECKING
