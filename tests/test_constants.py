from __future__ import annotations

import pytest

from driverwatch_config.constants import DRIVER_CHECK_CONFIG, IMMUTABLE_CONFIG, load_driver_config


def test_defaults_without_overrides() -> None:
    config = load_driver_config({})
    assert config is DRIVER_CHECK_CONFIG
    assert config.update_timeout_seconds == 15.0
    assert config.catalog_ttl_seconds == 60.0
    assert config.install_timeout_seconds == 1800.0
    assert IMMUTABLE_CONFIG.drivers is DRIVER_CHECK_CONFIG


def test_environment_overrides() -> None:
    config = load_driver_config(
        {
            "DRIVERWATCH_UPDATE_TIMEOUT": "30",
            "DRIVERWATCH_CATALOG_TTL": "5.5",
            "DRIVERWATCH_POWERSHELL": "pwsh",
            "DRIVERWATCH_CANDIDATE_LIMIT": "0",
        }
    )
    assert config.update_timeout_seconds == 30.0
    assert config.catalog_ttl_seconds == 5.5
    assert config.powershell == "pwsh"
    assert config.candidate_limit == 1
    assert config.update_ttl_seconds == DRIVER_CHECK_CONFIG.update_ttl_seconds


@pytest.mark.parametrize(
    "environ",
    [
        {"DRIVERWATCH_UPDATE_TTL": "soon"},
        {"DRIVERWATCH_INSTALL_TIMEOUT": "-1"},
        {"DRIVERWATCH_CANDIDATE_LIMIT": "many"},
    ],
)
def test_invalid_overrides_raise(environ: dict[str, str]) -> None:
    with pytest.raises(ValueError):
        load_driver_config(environ)
