"""Immutable settings for driver checks, with environment overrides."""
from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Mapping, Tuple


@dataclass(frozen=True)
class MatchingKeywords:
    virtual_adapter: Tuple[str, ...]
    display_device: Tuple[str, ...]
    display_catalog: Tuple[str, ...]
    display_scoring: Tuple[str, ...]
    trademark_markers: Tuple[str, ...]


@dataclass(frozen=True)
class DriverCheckConfig:
    catalog_ttl_seconds: float
    update_ttl_seconds: float
    update_timeout_seconds: float
    catalog_timeout_seconds: float
    install_timeout_seconds: float
    powershell: str
    output_encoding: str
    candidate_limit: int


@dataclass(frozen=True)
class ImmutableConfig:
    drivers: DriverCheckConfig
    matching: MatchingKeywords


DRIVER_CHECK_CONFIG = DriverCheckConfig(
    catalog_ttl_seconds=60.0,
    update_ttl_seconds=60.0,
    update_timeout_seconds=15.0,
    catalog_timeout_seconds=60.0,
    install_timeout_seconds=30 * 60.0,
    powershell="powershell",
    output_encoding="utf-8",
    candidate_limit=5,
)

MATCHING_KEYWORDS = MatchingKeywords(
    virtual_adapter=("oray", "virtual", "indirect", "basic display", "basic render"),
    display_device=("graphics", "display", "video"),
    display_catalog=("graphics", "display", "video", "adapter"),
    display_scoring=("graphics", "display", "video", "adapter", "uhd", "hd"),
    trademark_markers=("(r)", "(tm)", "(c)", "®", "™", "©"),
)

IMMUTABLE_CONFIG = ImmutableConfig(
    drivers=DRIVER_CHECK_CONFIG,
    matching=MATCHING_KEYWORDS,
)

_FLOAT_OVERRIDES = {
    "DRIVERWATCH_CATALOG_TTL": "catalog_ttl_seconds",
    "DRIVERWATCH_UPDATE_TTL": "update_ttl_seconds",
    "DRIVERWATCH_UPDATE_TIMEOUT": "update_timeout_seconds",
    "DRIVERWATCH_CATALOG_TIMEOUT": "catalog_timeout_seconds",
    "DRIVERWATCH_INSTALL_TIMEOUT": "install_timeout_seconds",
}


def load_driver_config(environ: Mapping[str, str] | None = None) -> DriverCheckConfig:
    """Return the driver check settings with ``DRIVERWATCH_*`` overrides applied.

    Unparseable or non-positive numeric overrides raise ``ValueError`` naming the
    variable, so a typo in the environment fails loudly at startup.
    """
    env = os.environ if environ is None else environ
    changes: dict[str, object] = {}
    for variable, field_name in _FLOAT_OVERRIDES.items():
        raw = env.get(variable, "").strip()
        if not raw:
            continue
        try:
            value = float(raw)
        except ValueError as exc:
            raise ValueError(f"{variable} must be a number of seconds, got {raw!r}") from exc
        if value <= 0:
            raise ValueError(f"{variable} must be positive, got {raw!r}")
        changes[field_name] = value
    powershell = env.get("DRIVERWATCH_POWERSHELL", "").strip()
    if powershell:
        changes["powershell"] = powershell
    encoding = env.get("DRIVERWATCH_OUTPUT_ENCODING", "").strip()
    if encoding:
        changes["output_encoding"] = encoding
    limit = env.get("DRIVERWATCH_CANDIDATE_LIMIT", "").strip()
    if limit:
        try:
            changes["candidate_limit"] = max(1, int(limit))
        except ValueError as exc:
            raise ValueError(f"DRIVERWATCH_CANDIDATE_LIMIT must be an integer, got {limit!r}") from exc
    return replace(DRIVER_CHECK_CONFIG, **changes) if changes else DRIVER_CHECK_CONFIG
