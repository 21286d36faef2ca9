"""PowerShell-backed driver catalog, Windows Update and installer collaborators."""
from __future__ import annotations

import asyncio
import json
import logging
import re
import shutil
import subprocess
from typing import Any, Callable, Protocol, Sequence

from driverwatch_config.constants import IMMUTABLE_CONFIG, DriverCheckConfig
from services.errors import CatalogParseError, CollaboratorError, InstallPipelineError
from services.models import CatalogEntry

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, int], None]

UTF8_OUTPUT_PREFIX = "[Console]::OutputEncoding = [System.Text.Encoding]::UTF8; "

CATALOG_SCRIPT = """
Get-CimInstance Win32_PnPSignedDriver -ErrorAction Stop |
    Where-Object { $_.DeviceName } |
    Select-Object DeviceName, DriverVersion,
        @{ Name = 'DriverDate'; Expression = { if ($_.DriverDate) { $_.DriverDate.ToString('yyyy-MM-dd') } } },
        Manufacturer, InfName, DeviceID, Status |
    ConvertTo-Json -Depth 2 -Compress
"""

PROBLEM_DEVICES_SCRIPT = """
Get-CimInstance Win32_PnPEntity -Filter 'ConfigManagerErrorCode <> 0' -ErrorAction Stop |
    Where-Object { $_.Name } |
    Select-Object -ExpandProperty Name |
    ConvertTo-Json -Compress
"""

UPDATE_SEARCH_SCRIPT = (
    "try { $s = New-Object -ComObject Microsoft.Update.Session; "
    "$r = $s.CreateUpdateSearcher().Search(\"IsInstalled=0 and Type='Driver'\"); "
    "$r.Updates | ForEach-Object { $_.Title } } catch { exit 1 }"
)

INSTALL_SCRIPT = """
try {
    $session = New-Object -ComObject Microsoft.Update.Session
    $searcher = $session.CreateUpdateSearcher()
    Write-Host "Searching"
    $result = $searcher.Search("IsInstalled=0 and Type='Driver'")
    if ($result.Updates.Count -eq 0) {
        Write-Host "NoUpdates"
        exit 0
    }
    Write-Host "Found:$($result.Updates.Count)"
    $toDownload = New-Object -ComObject Microsoft.Update.UpdateColl
    foreach ($update in $result.Updates) {
        if (!$update.IsDownloaded) { [void]$toDownload.Add($update) }
    }
    if ($toDownload.Count -gt 0) {
        Write-Host "Downloading"
        $downloader = $session.CreateUpdateDownloader()
        $downloader.Updates = $toDownload
        [void]$downloader.Download()
    }
    Write-Host "Installing"
    $toInstall = New-Object -ComObject Microsoft.Update.UpdateColl
    foreach ($update in $result.Updates) {
        if ($update.IsDownloaded) { [void]$toInstall.Add($update) }
    }
    if ($toInstall.Count -gt 0) {
        $installer = $session.CreateUpdateInstaller()
        $installer.Updates = $toInstall
        $installResult = $installer.Install()
        Write-Host "Completed:$($installResult.ResultCode)"
    }
} catch {
    Write-Host "Error:$_"
    exit 1
}
"""

_FOUND_RE = re.compile(r"Found:(\d+)")


class CommandRunner(Protocol):
    async def run(
        self, command: Sequence[str], *, timeout: float | None = None
    ) -> subprocess.CompletedProcess[str]:  # pragma: no cover - protocol
        ...

    async def stream(
        self, command: Sequence[str], on_line: Callable[[str], None], *, timeout: float | None = None
    ) -> int:  # pragma: no cover - protocol
        ...


class SubprocessRunner:
    """Runs commands with asyncio subprocesses; kills them on timeout or cancellation."""

    def __init__(self, *, encoding: str = "utf-8") -> None:
        self._encoding = encoding

    async def run(self, command: Sequence[str], *, timeout: float | None = None) -> subprocess.CompletedProcess[str]:
        process = await self._spawn(command)
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout)
        except asyncio.TimeoutError:
            await self._kill(process)
            raise subprocess.TimeoutExpired(list(command), timeout or 0) from None
        except asyncio.CancelledError:
            await self._kill(process)
            raise
        return subprocess.CompletedProcess(
            list(command),
            process.returncode if process.returncode is not None else -1,
            stdout.decode(self._encoding, errors="replace"),
            stderr.decode(self._encoding, errors="replace"),
        )

    async def stream(
        self, command: Sequence[str], on_line: Callable[[str], None], *, timeout: float | None = None
    ) -> int:
        process = await self._spawn(command, stderr=asyncio.subprocess.STDOUT)

        async def _pump() -> int:
            assert process.stdout is not None
            async for raw in process.stdout:
                line = raw.decode(self._encoding, errors="replace").strip()
                if line:
                    on_line(line)
            return await process.wait()

        try:
            return await asyncio.wait_for(_pump(), timeout)
        except asyncio.TimeoutError:
            await self._kill(process)
            raise subprocess.TimeoutExpired(list(command), timeout or 0) from None
        except asyncio.CancelledError:
            await self._kill(process)
            raise

    async def _spawn(
        self, command: Sequence[str], *, stderr: int = asyncio.subprocess.PIPE
    ) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=stderr,
            )
        except OSError as exc:
            raise CollaboratorError(f"Could not start {command[0]}: {exc}") from exc

    async def _kill(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            process.kill()
            await process.wait()


class DriverCatalogSource(Protocol):
    async def fetch_catalog(self) -> Sequence[CatalogEntry]:  # pragma: no cover - protocol
        ...

    async def fetch_problem_device_names(self) -> set[str]:  # pragma: no cover - protocol
        ...


class UpdateSource(Protocol):
    async def fetch_pending_update_titles(self, timeout: float) -> Sequence[str]:  # pragma: no cover - protocol
        ...


class InstallPipeline(Protocol):
    async def run_install_pipeline(self, on_progress: ProgressCallback | None = None) -> None:  # pragma: no cover - protocol
        ...


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def parse_catalog_json(output: str) -> list[CatalogEntry]:
    """Decode ``Win32_PnPSignedDriver`` rows emitted by ``ConvertTo-Json``.

    Rows without a device name are dropped; they can never be matched.
    """
    if not output.strip():
        return []
    try:
        data = json.loads(output)
    except json.JSONDecodeError as exc:
        raise CatalogParseError(f"Malformed driver catalog output: {exc}") from exc
    entries: list[CatalogEntry] = []
    for item in _as_list(data):
        if not isinstance(item, dict):
            continue
        device_name = _text(item.get("DeviceName"))
        if not device_name:
            continue
        entries.append(
            CatalogEntry(
                device_name=device_name,
                manufacturer=_text(item.get("Manufacturer")),
                inf_name=_text(item.get("InfName")),
                raw_device_id=_text(item.get("DeviceID")),
                version=_text(item.get("DriverVersion")),
                date=_text(item.get("DriverDate")),
                status=_text(item.get("Status")) or "Unknown",
            )
        )
    return entries


def parse_name_list_json(output: str) -> set[str]:
    if not output.strip():
        return set()
    try:
        data = json.loads(output)
    except json.JSONDecodeError as exc:
        raise CatalogParseError(f"Malformed device name output: {exc}") from exc
    return {_text(name) for name in _as_list(data) if _text(name)}


def parse_update_titles(output: str) -> list[str]:
    titles: list[str] = []
    seen: set[str] = set()
    for line in output.splitlines():
        title = line.strip()
        if title and title not in seen:
            seen.add(title)
            titles.append(title)
    return titles


def install_progress_for_line(line: str) -> tuple[str, int] | None:
    """Map one installer output line to a ``(message, percent)`` progress step."""
    if "NoUpdates" in line:
        return ("No driver updates available", 100)
    if "Found:" in line:
        match = _FOUND_RE.search(line)
        count = match.group(1) if match else "0"
        return (f"Found {count} driver update(s)", 30)
    if "Searching" in line:
        return ("Searching for driver updates...", 20)
    if "Downloading" in line:
        return ("Downloading drivers...", 50)
    if "Installing" in line:
        return ("Installing drivers...", 70)
    if "Completed" in line:
        return ("Driver installation complete", 100)
    return None


class PowerShellSource:
    """Shared plumbing for collaborators that shell out to PowerShell."""

    def __init__(
        self,
        *,
        config: DriverCheckConfig | None = None,
        command_runner: CommandRunner | None = None,
    ) -> None:
        self._config = config or IMMUTABLE_CONFIG.drivers
        self._runner = command_runner or SubprocessRunner(encoding=self._config.output_encoding)

    def is_available(self) -> bool:
        return shutil.which(self._config.powershell) is not None

    def _command(self, script: str, *extra_args: str) -> list[str]:
        return [
            self._config.powershell,
            "-NoProfile",
            "-NonInteractive",
            *extra_args,
            "-Command",
            UTF8_OUTPUT_PREFIX + script.strip(),
        ]

    async def _run_script(self, script: str, *, timeout: float, step: str) -> str:
        result = await self._runner.run(self._command(script), timeout=timeout)
        if result.returncode != 0:
            detail = (result.stderr or "").strip() or f"exit {result.returncode}"
            raise CollaboratorError(f"{step} failed: {detail}")
        return result.stdout or ""


class WindowsDriverCatalog(PowerShellSource):
    async def fetch_catalog(self) -> list[CatalogEntry]:
        output = await self._run_script(
            CATALOG_SCRIPT, timeout=self._config.catalog_timeout_seconds, step="Driver catalog query"
        )
        return parse_catalog_json(output)

    async def fetch_problem_device_names(self) -> set[str]:
        output = await self._run_script(
            PROBLEM_DEVICES_SCRIPT, timeout=self._config.catalog_timeout_seconds, step="Problem device query"
        )
        return parse_name_list_json(output)


class WindowsUpdateSource(PowerShellSource):
    async def fetch_pending_update_titles(self, timeout: float) -> list[str]:
        output = await self._run_script(UPDATE_SEARCH_SCRIPT, timeout=timeout, step="Windows Update search")
        return parse_update_titles(output)


class WindowsUpdateInstaller(PowerShellSource):
    async def run_install_pipeline(self, on_progress: ProgressCallback | None = None) -> None:
        def _emit(message: str, percent: int) -> None:
            if on_progress:
                on_progress(message, percent)

        def _on_line(line: str) -> None:
            logger.info("Update output: %s", line)
            step = install_progress_for_line(line)
            if step:
                _emit(*step)

        _emit("Searching for driver updates...", 10)
        command = self._command(INSTALL_SCRIPT, "-ExecutionPolicy", "Bypass")
        try:
            returncode = await self._runner.stream(command, _on_line, timeout=self._config.install_timeout_seconds)
        except subprocess.TimeoutExpired as exc:
            raise InstallPipelineError(f"Driver installation timed out after {exc.timeout:.0f}s") from exc
        if returncode != 0:
            raise InstallPipelineError(f"Installation failed with code {returncode}", returncode)
        _emit("Driver update finished", 100)

