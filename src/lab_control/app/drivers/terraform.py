"""Async wrapper around the Terraform CLI.

Every command runs as a subprocess in the session's working directory
with ``-input=false -no-color``. A command that exceeds its timeout is
killed and reported as ``TerraformTimeout``.

Example::

    runner = TerraformRunner('terraform')
    await runner.init(workdir, timeout=60)
    await runner.apply(workdir, timeout=240)
    outputs = await runner.output_json(workdir, timeout=30)
"""

from __future__ import annotations

import asyncio
import json
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from lab_control.observability import get_logger

logger = get_logger(__name__)

_DESTROYED_COUNT = re.compile(r'Resources:\s*(\d+)\s+destroyed')
_NO_OBJECTS = 'No objects need to be destroyed'


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class TerraformError(Exception):
    """Base exception for Terraform CLI failures."""


class TerraformNotFoundError(TerraformError):
    """The terraform binary could not be executed."""


class TerraformCommandError(TerraformError):
    """A terraform command exited non-zero.

    Attributes:
        command: Subcommand that failed (``init``, ``apply`` ...).
        return_code: Process exit code.
        stderr: Captured standard error.
    """

    def __init__(self, command: str, return_code: int, stdout: str, stderr: str):
        self.command = command
        self.return_code = return_code
        self.stdout = stdout
        self.stderr = stderr
        detail = (stderr.strip()[-500:] if stderr.strip() else stdout.strip()[-500:]) or '(no output)'
        super().__init__(f'terraform {command} failed (exit {return_code}): {detail}')


class TerraformTimeout(TerraformError):
    """A terraform command exceeded its timeout and was killed."""

    def __init__(self, command: str, timeout: float):
        self.command = command
        self.timeout = timeout
        super().__init__(f'terraform {command} timed out after {timeout:.0f}s')


@dataclass(frozen=True, slots=True)
class CommandResult:
    return_code: int
    stdout: str
    stderr: str


def parse_destroyed_count(stdout: str) -> int | None:
    """Extract the destroyed-resource count from ``destroy`` output."""
    if _NO_OBJECTS in stdout:
        return 0
    match = _DESTROYED_COUNT.search(stdout)
    return int(match.group(1)) if match else None


def flatten_outputs(raw: dict[str, Any]) -> dict[str, Any]:
    """``output -json`` wraps each value as ``{"value": ..., "sensitive": ...}``."""
    flat: dict[str, Any] = {}
    for key, entry in raw.items():
        flat[key] = entry.get('value') if isinstance(entry, dict) and 'value' in entry else entry
    return flat


class TerraformRunner:
    """Run terraform subcommands with captured output and hard timeouts.

    Args:
        binary: Path or name of the terraform executable.
        env: Extra environment variables for every command.
    """

    def __init__(self, binary: str = 'terraform', env: dict[str, str] | None = None):
        self._binary = binary
        self._env = {**os.environ, 'TF_IN_AUTOMATION': '1', **(env or {})}

    @property
    def binary(self) -> str:
        return self._binary

    async def run(
        self, *args: str, cwd: Path, timeout: float,
    ) -> CommandResult:
        """Execute ``terraform <args>`` and return its result.

        Raises:
            TerraformNotFoundError: binary missing.
            TerraformCommandError: non-zero exit.
            TerraformTimeout: timeout exceeded (process killed).
        """
        command = args[0] if args else ''
        if timeout <= 0:
            raise TerraformTimeout(command, timeout)
        try:
            proc = await asyncio.create_subprocess_exec(
                self._binary,
                *args,
                cwd=str(cwd),
                env=self._env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise TerraformNotFoundError(
                f"terraform binary not found at '{self._binary}'"
            ) from exc

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                proc.communicate(), timeout=timeout,
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.warning('terraform_timeout', command=command, cwd=str(cwd), timeout=timeout)
            raise TerraformTimeout(command, timeout) from None
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
                # Reap before the next command can touch this workdir's state lock.
                await asyncio.shield(proc.wait())
            raise

        stdout = stdout_bytes.decode('utf-8', errors='replace')
        stderr = stderr_bytes.decode('utf-8', errors='replace')
        rc = proc.returncode or 0
        if rc != 0:
            raise TerraformCommandError(command, rc, stdout, stderr)
        return CommandResult(rc, stdout, stderr)

    async def init(self, cwd: Path, *, timeout: float) -> CommandResult:
        return await self.run('init', '-input=false', '-no-color', cwd=cwd, timeout=timeout)

    async def apply(self, cwd: Path, *, timeout: float) -> CommandResult:
        return await self.run(
            'apply', '-auto-approve', '-input=false', '-no-color', cwd=cwd, timeout=timeout,
        )

    async def destroy(self, cwd: Path, *, timeout: float) -> CommandResult:
        return await self.run(
            'destroy', '-auto-approve', '-input=false', '-no-color', cwd=cwd, timeout=timeout,
        )

    async def output_json(self, cwd: Path, *, timeout: float) -> dict[str, Any]:
        result = await self.run('output', '-json', '-no-color', cwd=cwd, timeout=timeout)
        try:
            raw = json.loads(result.stdout or '{}')
        except json.JSONDecodeError as exc:
            raise TerraformCommandError('output', 0, result.stdout, f'invalid JSON: {exc}') from exc
        if not isinstance(raw, dict):
            raise TerraformCommandError('output', 0, result.stdout, 'expected a JSON object')
        return flatten_outputs(raw)
