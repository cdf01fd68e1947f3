"""Probe the installed agent CLI for its version string."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from pathlib import Path

from .errors import CLIConnectionError, CLINotFoundError, ControlTimeoutError
from .transport.subprocess import DEFAULT_CLI_NAME

logger = logging.getLogger(__name__)

VERSION_CHECK_TIMEOUT = 2.0


async def check_cli_version(
    cli_path: str | Path | None = None, timeout: float = VERSION_CHECK_TIMEOUT
) -> str:
    """Run ``<cli> --version`` and return the last token of its first line.

    Returns ``"unknown"`` when the CLI prints nothing usable.
    """
    path = str(cli_path) if cli_path else DEFAULT_CLI_NAME
    try:
        process = await asyncio.create_subprocess_exec(
            path,
            "--version",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except FileNotFoundError as exc:
        raise CLINotFoundError("Agent CLI not found", cli_path=path) from exc
    except OSError as exc:
        raise CLIConnectionError(f"Failed to run CLI version check: {exc}") from exc

    try:
        stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        with suppress(ProcessLookupError):
            process.kill()
        await process.wait()
        raise ControlTimeoutError("CLI version check", timeout) from None

    lines = stdout.decode("utf-8", errors="replace").splitlines()
    tokens = lines[0].split() if lines else []
    version = tokens[-1] if tokens else "unknown"
    logger.debug("Agent CLI version: %s", version)
    return version
