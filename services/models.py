"""Records shared by the inventory, matching and reconciliation services."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class DeviceCategory(str, Enum):
    CPU = "CPU"
    GPU = "GPU"
    NETWORK = "Network"
    AUDIO = "Audio"
    USB = "USB"
    STORAGE = "Storage"
    OTHER = "Other"

    @classmethod
    def parse(cls, value: str | None) -> "DeviceCategory":
        if not value:
            return cls.OTHER
        for member in cls:
            if member.value.lower() == value.strip().lower():
                return member
        return cls.OTHER


class DriverState(str, Enum):
    OK = "ok"
    OUTDATED = "outdated"
    MISSING = "missing"
    UNKNOWN = "unknown"
    CHECKING = "checking"


@dataclass(frozen=True)
class DeviceDescriptor:
    id: str
    category: DeviceCategory
    name: str
    manufacturer: str
    model: str | None = None
    pnp_device_id: str | None = None
    vendor_id: str | None = None


@dataclass(frozen=True)
class CatalogEntry:
    device_name: str
    manufacturer: str = ""
    inf_name: str = ""
    raw_device_id: str = ""
    version: str = ""
    date: str = ""
    status: str = "Unknown"


@dataclass(frozen=True)
class MatchCandidate:
    entry: CatalogEntry
    score: int


@dataclass(frozen=True)
class DriverStatus:
    installed: bool
    is_latest: bool
    update_available: bool
    status: DriverState
    version: str | None = None
    date: str | None = None
    is_lts: bool = False
    available_version: str | None = None

    def __post_init__(self) -> None:
        if self.status is DriverState.OK and self.update_available:
            raise ValueError("an ok driver status cannot report an available update")
        if self.status is DriverState.OUTDATED and not self.installed:
            raise ValueError("an outdated driver status requires an installed driver")
        if self.status is DriverState.MISSING and self.installed:
            raise ValueError("a missing driver status cannot be installed")

    @classmethod
    def checking(cls) -> "DriverStatus":
        """Placeholder shown for a device before any reconciliation ran."""
        return cls(installed=False, is_latest=False, update_available=False, status=DriverState.CHECKING)

    def to_dict(self) -> dict[str, object]:
        return {
            "installed": self.installed,
            "version": self.version,
            "date": self.date,
            "isLatest": self.is_latest,
            "isLTS": self.is_lts,
            "availableVersion": self.available_version,
            "updateAvailable": self.update_available,
            "status": self.status.value,
        }


@dataclass(frozen=True)
class UpdateSnapshot:
    titles: tuple[str, ...]
    fetched_at: float

    def is_fresh(self, now: float, ttl_seconds: float) -> bool:
        return self.fetched_at > 0 and (now - self.fetched_at) < ttl_seconds


@dataclass(frozen=True)
class CacheDiagnostics:
    is_valid: bool
    remaining_ttl_seconds: int
    last_fetch_timestamp: float
    cached_update_count: int


@dataclass(frozen=True)
class InstallProgress:
    device_id: str
    stage: str
    percent: int
    message: str


@dataclass(frozen=True)
class MatchReport:
    device: DeviceDescriptor
    matched: CatalogEntry | None
    candidates: tuple[MatchCandidate, ...] = ()
