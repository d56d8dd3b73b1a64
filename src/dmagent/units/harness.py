"""Execution of units: argument splatting and PowerShell function invocation."""

from __future__ import annotations

import locale
import logging
import os
import shutil
import signal
import subprocess
import tempfile
import time
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from .catalog import UnitCatalog
from .errors import UnitExecutionError, UnitTimeoutError

LOGGER = logging.getLogger(__name__)

DEFAULT_UNIT_TIMEOUT = 300.0
SCRIPT_PREFIX = "dmagent-unit-"
SCRIPT_SUFFIX = ".ps1"
KILL_DRAIN_TIMEOUT = 2.0


@dataclass(frozen=True, slots=True)
class NamedArg:
    name: str
    value: str = ""
    is_switch: bool = False


@dataclass(slots=True)
class SplatArguments:
    named: list[NamedArg] = field(default_factory=list)
    positional: list[str] = field(default_factory=list)


def looks_like_flag(token: str) -> bool:
    """Return true for ``-Name`` tokens; negative numbers stay values."""
    stripped = token.strip()
    if not stripped.startswith("-") or stripped == "-":
        return False
    return not (stripped[1].isdigit() or stripped[1] == ".")


def split_splat_args(tokens: Sequence[str]) -> SplatArguments:
    splat = SplatArguments()
    index = 0
    while index < len(tokens):
        current = tokens[index]
        name = current.strip().lstrip("-")
        if not looks_like_flag(current) or not name:
            splat.positional.append(current)
            index += 1
            continue
        if index + 1 < len(tokens) and not looks_like_flag(tokens[index + 1]):
            value = tokens[index + 1]
            lowered = value.strip().lower()
            index += 2
            # "false" means the switch is not set.
            if lowered == "false":
                continue
            if lowered == "true":
                splat.named.append(NamedArg(name=name, is_switch=True))
            else:
                splat.named.append(NamedArg(name=name, value=value))
            continue
        splat.named.append(NamedArg(name=name, is_switch=True))
        index += 1
    return splat


def unit_args_to_tokens(unit_args: Mapping[str, str]) -> list[str]:
    """Flatten a named argument map into ``-Name value`` tokens in key order.

    ``true`` and empty values become bare switches; ``false`` is omitted.
    Keys are compared without their leading dashes; the first spelling wins.
    """
    normalized: dict[str, str] = {}
    for name, value in unit_args.items():
        key = name.strip().lstrip("-")
        if key and key not in normalized:
            normalized[key] = value
    tokens: list[str] = []
    for key in sorted(normalized):
        value = normalized[key].strip()
        lowered = value.lower()
        if lowered == "false":
            continue
        tokens.append(f"-{key}")
        if value and lowered != "true":
            tokens.append(value)
    return tokens


def quote_powershell_arg(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def build_invocation_script(sources: Iterable[str], function_name: str, splat: SplatArguments) -> str:
    quoted_sources = ",".join(quote_powershell_arg(path) for path in sources)
    lines = [
        "[Console]::OutputEncoding=[System.Text.UTF8Encoding]::new()",
        "Set-StrictMode -Version Latest",
        "$ErrorActionPreference='Stop'",
        f"$dmSources=@({quoted_sources})",
        "$dmNamedArgs=@{}",
        "$dmPositionalArgs=@()",
    ]
    for arg in splat.named:
        value = "$true" if arg.is_switch else quote_powershell_arg(arg.value)
        lines.append(f"$dmNamedArgs[{quote_powershell_arg(arg.name)}]={value}")
    for value in splat.positional:
        lines.append(f"$dmPositionalArgs+={quote_powershell_arg(value)}")
    quoted_name = quote_powershell_arg(function_name)
    lines.extend(
        [
            "foreach($dmSource in $dmSources){ if(Test-Path -LiteralPath $dmSource){ . $dmSource } }",
            f"if(-not(Get-Command -Name {quoted_name} -CommandType Function -ErrorAction SilentlyContinue)){{",
            f"  throw \"Function '{function_name}' was not loaded from unit sources.\"",
            "}",
            f"& {quoted_name} @dmNamedArgs @dmPositionalArgs",
        ]
    )
    return "\n".join(lines) + "\n"


def default_powershell() -> str | None:
    for candidate in ("pwsh", "powershell"):
        if shutil.which(candidate):
            return candidate
    return None


class UnitRunner:
    """Runs catalog units as child processes and captures their combined output."""

    def __init__(
        self,
        catalog: UnitCatalog,
        *,
        timeout: float = DEFAULT_UNIT_TIMEOUT,
        powershell: str | None = None,
    ) -> None:
        self.catalog = catalog
        self.timeout = timeout
        self.powershell = powershell

    def run_unit(
        self,
        base_dir: str,
        name: str,
        named_args: Mapping[str, str] | None = None,
        positional_args: Sequence[str] = (),
    ) -> str:
        info = self.catalog.get_info(base_dir, name)
        tokens = unit_args_to_tokens(named_args or {}) + [str(arg) for arg in positional_args]
        LOGGER.info(
            "unit_exec_started",
            extra={"unit": name, "path": info.path, "function": info.is_function, "args": len(tokens)},
        )
        if info.is_function:
            return self._run_function(info.sources or (info.path,), name, tokens, cwd=base_dir)
        return self._execute(self._script_command(info.path, tokens), unit=name, cwd=base_dir)

    def _resolve_powershell(self) -> str:
        executable = self.powershell or default_powershell()
        if not executable:
            msg = "pwsh/powershell executable not found"
            raise UnitExecutionError(msg)
        return executable

    def _run_function(self, sources: Sequence[str], name: str, tokens: Sequence[str], *, cwd: str) -> str:
        executable = self._resolve_powershell()
        script = build_invocation_script(sources, name, split_splat_args(tokens))
        handle, script_path = tempfile.mkstemp(prefix=SCRIPT_PREFIX, suffix=SCRIPT_SUFFIX)
        try:
            with os.fdopen(handle, "w", encoding="utf-8") as stream:
                stream.write(script)
            os.chmod(script_path, 0o600)
            command = [executable, "-NoProfile", "-NonInteractive", "-File", script_path]
            return self._execute(command, unit=name, cwd=cwd)
        finally:
            try:
                os.remove(script_path)
            except FileNotFoundError:
                pass

    def _script_command(self, path: str, tokens: Sequence[str]) -> list[str]:
        suffix = Path(path).suffix.lower()
        if suffix == ".ps1":
            command = [self._resolve_powershell(), "-NoProfile", "-NonInteractive", "-File", path]
        elif suffix == ".sh":
            command = [shutil.which("sh") or shutil.which("bash") or "sh", path]
        elif suffix in {".cmd", ".bat"}:
            command = ["cmd", "/C", path]
        else:
            command = [path]
        return command + list(tokens)

    def _execute(self, command: Sequence[str], *, unit: str, cwd: str) -> str:
        started = time.monotonic()
        try:
            process = subprocess.Popen(
                list(command),
                cwd=cwd if cwd and os.path.isdir(cwd) else None,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                **_process_group_options(),
            )
        except OSError as exc:
            LOGGER.warning("unit_launch_failed", extra={"unit": unit, "error": str(exc)})
            msg = f"failed to launch unit {unit}: {exc}"
            raise UnitExecutionError(msg) from exc

        try:
            stdout, _ = process.communicate(timeout=self.timeout)
        except subprocess.TimeoutExpired:
            _kill_process_tree(process)
            # Grandchildren may still hold the pipe open; never wait on them.
            try:
                stdout, _ = process.communicate(timeout=KILL_DRAIN_TIMEOUT)
            except subprocess.TimeoutExpired as drain_exc:
                stdout = drain_exc.output
                if process.stdout is not None:
                    process.stdout.close()
            output = _normalize_output(stdout)
            LOGGER.warning("unit_timeout", extra={"unit": unit, "timeout": self.timeout})
            msg = f"unit execution timed out after {self.timeout:g}s"
            raise UnitTimeoutError(msg, output=output, timeout=self.timeout) from None

        output = _normalize_output(stdout)
        LOGGER.info(
            "unit_result",
            extra={
                "unit": unit,
                "returncode": process.returncode,
                "duration_seconds": round(time.monotonic() - started, 4),
                "output_length": len(output),
            },
        )
        if process.returncode != 0:
            msg = f"unit {unit} exited with status {process.returncode}"
            raise UnitExecutionError(msg, output=output, returncode=process.returncode)
        return output


def _process_group_options() -> dict[str, object]:
    if os.name == "nt":
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}
    return {"start_new_session": True}


def _kill_process_tree(process: subprocess.Popen) -> None:
    """Kill the unit together with every process it started."""
    try:
        if os.name == "nt":
            subprocess.run(
                ["taskkill", "/F", "/T", "/PID", str(process.pid)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                check=False,
            )
        else:
            os.killpg(process.pid, signal.SIGKILL)
    except OSError as exc:
        LOGGER.debug("unit_group_kill_failed", extra={"pid": process.pid, "error": str(exc)})
    process.kill()


def sweep_stale_scripts(tmp_dir: str | None = None) -> int:
    """Remove invocation scripts left behind by interrupted runs."""
    directory = Path(tmp_dir or tempfile.gettempdir())
    removed = 0
    for path in directory.glob(f"{SCRIPT_PREFIX}*{SCRIPT_SUFFIX}"):
        try:
            path.unlink()
            removed += 1
        except OSError as exc:
            LOGGER.debug("unit_script_sweep_failed", extra={"path": str(path), "error": str(exc)})
    return removed


def _normalize_output(payload: bytes | str | None) -> str:
    if payload is None:
        return ""
    if isinstance(payload, str):
        return payload

    for encoding in ("utf-8", "utf-8-sig", "utf-16", locale.getpreferredencoding(False), "cp1252"):
        try:
            return payload.decode(encoding)
        except (LookupError, UnicodeDecodeError):
            continue
    return payload.decode("utf-8", errors="replace")
