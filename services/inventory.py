"""Hardware inventory via CIM queries."""
from __future__ import annotations

import json
import logging
from typing import Any, Protocol, Sequence

from services.errors import CatalogParseError
from services.models import DeviceCategory, DeviceDescriptor
from services.sources import PowerShellSource

logger = logging.getLogger(__name__)

INVENTORY_SCRIPT = """
$result = @{
    Cpu = @(Get-CimInstance Win32_Processor | Select-Object Name, Manufacturer, DeviceID)
    Gpu = @(Get-CimInstance Win32_VideoController | Select-Object Name, AdapterCompatibility, PNPDeviceID)
    Network = @(Get-CimInstance Win32_NetworkAdapter -Filter 'NetEnabled = TRUE' | Select-Object Name, Manufacturer, PNPDeviceID)
    Audio = @(Get-CimInstance Win32_SoundDevice | Select-Object Name, Manufacturer, DeviceID)
    Storage = @(Get-CimInstance Win32_DiskDrive | Select-Object Caption, Model, Manufacturer, PNPDeviceID)
    Usb = @(Get-CimInstance Win32_PnPEntity -Filter "DeviceID LIKE 'USB%'" | Select-Object Name, Manufacturer, DeviceID)
}
$result | ConvertTo-Json -Depth 3 -Compress
"""

USB_NOISE_MARKERS = ("Root Hub", "Composite", "Generic")


class DeviceInventory(Protocol):
    async def enumerate_devices(self) -> Sequence[DeviceDescriptor]:  # pragma: no cover - protocol
        ...


def _as_list(value: Any) -> list[dict[str, Any]]:
    if value is None:
        return []
    if isinstance(value, dict):
        return [value]
    return [item for item in value if isinstance(item, dict)]


def _first(item: dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = item.get(key)
        if value:
            return str(value).strip()
    return ""


def _vendor_id(pnp_device_id: str) -> str | None:
    upper = pnp_device_id.upper()
    for marker in ("VEN_", "VID_"):
        index = upper.find(marker)
        if index >= 0:
            return upper[index + 4 : index + 8] or None
    return None


def parse_inventory_json(output: str) -> list[DeviceDescriptor]:
    """Turn the inventory script output into descriptors with per-category ids."""
    if not output.strip():
        return []
    try:
        data = json.loads(output)
    except json.JSONDecodeError as exc:
        raise CatalogParseError(f"Malformed inventory output: {exc}") from exc
    if not isinstance(data, dict):
        raise CatalogParseError("Inventory output must be a JSON object")

    devices: list[DeviceDescriptor] = []
    for index, item in enumerate(_as_list(data.get("Cpu"))):
        name = _first(item, "Name") or "Unknown CPU"
        devices.append(
            DeviceDescriptor(
                id=f"cpu-{index}",
                category=DeviceCategory.CPU,
                name=name,
                manufacturer=_first(item, "Manufacturer") or "Unknown",
                model=name,
            )
        )
    for index, item in enumerate(_as_list(data.get("Gpu"))):
        name = _first(item, "Name") or "Unknown GPU"
        pnp_id = _first(item, "PNPDeviceID")
        devices.append(
            DeviceDescriptor(
                id=f"gpu-{index}",
                category=DeviceCategory.GPU,
                name=name,
                manufacturer=_first(item, "AdapterCompatibility") or "Unknown",
                model=name,
                pnp_device_id=pnp_id or None,
                vendor_id=_vendor_id(pnp_id),
            )
        )
    simple = (
        ("Network", DeviceCategory.NETWORK, "network", "Unknown Network Device"),
        ("Audio", DeviceCategory.AUDIO, "audio", "Unknown Audio Device"),
    )
    for key, category, prefix, fallback in simple:
        for index, item in enumerate(_as_list(data.get(key))):
            name = _first(item, "Name") or fallback
            pnp_id = _first(item, "PNPDeviceID", "DeviceID")
            devices.append(
                DeviceDescriptor(
                    id=f"{prefix}-{index}",
                    category=category,
                    name=name,
                    manufacturer=_first(item, "Manufacturer") or "Unknown",
                    model=name,
                    pnp_device_id=pnp_id or None,
                    vendor_id=_vendor_id(pnp_id),
                )
            )
    for index, item in enumerate(_as_list(data.get("Storage"))):
        name = _first(item, "Caption", "Model") or "Unknown Storage Device"
        pnp_id = _first(item, "PNPDeviceID")
        devices.append(
            DeviceDescriptor(
                id=f"storage-{index}",
                category=DeviceCategory.STORAGE,
                name=name,
                manufacturer=_first(item, "Manufacturer") or "Unknown",
                model=_first(item, "Model", "Caption") or None,
                pnp_device_id=pnp_id or None,
            )
        )
    # Ids keep the raw row index so they line up with the CIM listing.
    for index, item in enumerate(_as_list(data.get("Usb"))):
        name = _first(item, "Name") or "USB Device"
        if any(marker in name for marker in USB_NOISE_MARKERS):
            continue
        pnp_id = _first(item, "DeviceID")
        devices.append(
            DeviceDescriptor(
                id=f"usb-{index}",
                category=DeviceCategory.USB,
                name=name,
                manufacturer=_first(item, "Manufacturer") or "Unknown",
                model=name,
                pnp_device_id=pnp_id or None,
                vendor_id=_vendor_id(pnp_id),
            )
        )
    return devices


class WindowsDeviceInventory(PowerShellSource):
    async def enumerate_devices(self) -> list[DeviceDescriptor]:
        output = await self._run_script(
            INVENTORY_SCRIPT, timeout=self._config.catalog_timeout_seconds, step="Hardware inventory"
        )
        devices = parse_inventory_json(output)
        logger.info("Enumerated %d devices", len(devices))
        return devices
