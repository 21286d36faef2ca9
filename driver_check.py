#!/usr/bin/env python3
"""Check driver status for local hardware and install pending driver updates."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Sequence

from driverwatch_config.constants import load_driver_config
from driverwatch_config.logs import configure_logging
from services.drivers import DriverService
from services.errors import DriverWatchError
from services.inventory import parse_inventory_json
from services.models import CatalogEntry, DeviceCategory, DeviceDescriptor, DriverStatus, InstallProgress
from services.sources import parse_catalog_json


class FileCatalogSource:
    """Serves a saved ``Win32_PnPSignedDriver`` JSON dump instead of querying CIM."""

    def __init__(self, path: Path) -> None:
        self._path = path

    async def fetch_catalog(self) -> list[CatalogEntry]:
        return parse_catalog_json(self._path.read_text(encoding="utf-8-sig"))

    async def fetch_problem_device_names(self) -> set[str]:
        return set()


def _build_service(args: argparse.Namespace) -> DriverService:
    config = load_driver_config()
    catalog_json = getattr(args, "catalog_json", None)
    if catalog_json:
        return DriverService(config=config, catalog_source=FileCatalogSource(Path(catalog_json)))
    return DriverService(config=config)


def _load_devices(args: argparse.Namespace) -> list[DeviceDescriptor] | None:
    inventory_json = getattr(args, "inventory_json", None)
    if not inventory_json:
        return None
    return parse_inventory_json(Path(inventory_json).read_text(encoding="utf-8-sig"))


def _format_status(status: DriverStatus) -> str:
    parts = [status.status.value]
    if status.version:
        parts.append(f"v{status.version}")
    if status.date:
        parts.append(status.date)
    if status.update_available:
        parts.append("update available")
    return " | ".join(parts)


def _print_statuses(devices: Sequence[DeviceDescriptor], statuses: dict[str, DriverStatus], *, as_json: bool) -> None:
    if as_json:
        payload = {device_id: status.to_dict() for device_id, status in statuses.items()}
        print(json.dumps(payload, indent=2))
        return
    for device in devices:
        status = statuses.get(device.id)
        if status is None:
            continue
        print(f"[{device.id}] {device.category.value} {device.name} ({device.manufacturer}) -> {_format_status(status)}")


async def _scan(service: DriverService, args: argparse.Namespace) -> int:
    devices = _load_devices(args)
    if devices is None:
        devices = await service.list_devices()
    for warning in service.last_scan_warnings:
        print(f"Warning: {warning}", file=sys.stderr)
    if not devices:
        print("No devices found")
        return 1

    later: dict[str, DriverStatus] = {}
    statuses = await service.get_reconciled_statuses(devices, later.update)
    if statuses is None:
        print("Error: a driver check is already running", file=sys.stderr)
        return 1
    _print_statuses(devices, statuses, as_json=args.json)

    if args.wait and service.update_lookup.is_fetching:
        print("Waiting for the update search to finish...", file=sys.stderr)
        await service.update_lookup.await_in_flight_fetch()
        changed = {device_id: status for device_id, status in later.items() if statuses.get(device_id) != status}
        if changed:
            print("Updated after the update search:")
            _print_statuses(devices, changed, as_json=args.json)
        else:
            print("No changes after the update search")
    return 0


async def _check(service: DriverService, args: argparse.Namespace) -> int:
    status = await service.get_reconciled_status(args.device_id, _load_devices(args))
    if args.json:
        print(json.dumps(status.to_dict(), indent=2))
    else:
        print(f"{args.device_id}: {_format_status(status)}")
    return 0


async def _install(service: DriverService, args: argparse.Namespace) -> int:
    def _progress(progress: InstallProgress) -> None:
        print(f"[{progress.percent:3d}%] {progress.stage}: {progress.message}")

    await service.trigger_install_all(_progress)
    print("Run 'scan' again to refresh driver statuses.")
    return 0


async def _diagnostics(service: DriverService, args: argparse.Namespace) -> int:
    service.update_lookup.start_background_fetch()
    await service.update_lookup.await_in_flight_fetch()
    info = service.get_cache_diagnostics()
    print(
        f"valid={info.is_valid} remaining={info.remaining_ttl_seconds}s "
        f"last_fetch={info.last_fetch_timestamp:.0f} updates={info.cached_update_count}"
    )
    for title in service.update_lookup.get_current_snapshot():
        print(f"  {title}")
    return 0


async def _debug_match(service: DriverService, args: argparse.Namespace) -> int:
    if args.list_catalog:
        for entry in await service.list_display_catalog_entries():
            print(f"{entry.device_name} | {entry.manufacturer} | {entry.version} | {entry.date} | {entry.status} | {entry.raw_device_id}")
        return 0
    category = None if args.category == "all" else DeviceCategory.parse(args.category)
    reports = await service.debug_match(_load_devices(args), category=category, limit=args.top)
    if not reports:
        print("No devices in the selected category")
        return 0
    for report in reports:
        device = report.device
        if report.matched is not None:
            print(f"[match] {device.name} ({device.manufacturer}) -> {report.matched.device_name} v{report.matched.version}")
            continue
        print(f"[no match] {device.name} ({device.manufacturer})")
        if not report.candidates:
            print("  no candidates found")
        for rank, candidate in enumerate(report.candidates, start=1):
            print(f"  {rank}. {candidate.entry.device_name} (score: {candidate.score})")
    return 0


COMMANDS = {
    "scan": _scan,
    "check": _check,
    "install": _install,
    "diagnostics": _diagnostics,
    "debug-match": _debug_match,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Check and update hardware drivers.")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    scan = subparsers.add_parser("scan", help="Check driver status for every detected device")
    scan.add_argument("--wait", action="store_true", help="Wait for the update search and print corrected statuses")
    scan.add_argument("--json", action="store_true", help="Print statuses as JSON")
    scan.add_argument("--inventory-json", help="Use a saved inventory JSON file instead of querying hardware")
    scan.add_argument("--catalog-json", help="Use a saved Win32_PnPSignedDriver JSON file as the catalog")

    check = subparsers.add_parser("check", help="Check one device, waiting for the update search")
    check.add_argument("device_id", help="Device id as printed by 'scan', e.g. gpu-0")
    check.add_argument("--json", action="store_true", help="Print the status as JSON")
    check.add_argument("--inventory-json", help="Use a saved inventory JSON file instead of querying hardware")
    check.add_argument("--catalog-json", help="Use a saved Win32_PnPSignedDriver JSON file as the catalog")

    subparsers.add_parser("install", help="Install all pending driver updates via Windows Update")
    subparsers.add_parser("diagnostics", help="Show the update search cache state")

    debug = subparsers.add_parser("debug-match", help="Explain device-to-driver matching")
    debug.add_argument("--category", default="GPU", help="Device category to inspect, or 'all' (default: GPU)")
    debug.add_argument("--top", type=int, default=None, help="Number of ranked candidates for unmatched devices")
    debug.add_argument("--list-catalog", action="store_true", help="List graphics-related catalog rows and exit")
    debug.add_argument("--inventory-json", help="Use a saved inventory JSON file instead of querying hardware")
    debug.add_argument("--catalog-json", help="Use a saved Win32_PnPSignedDriver JSON file as the catalog")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(level=logging.DEBUG if args.verbose else logging.WARNING, force=True)
    try:
        service = _build_service(args)
        return asyncio.run(COMMANDS[args.command](service, args))
    except (DriverWatchError, ValueError, OSError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
