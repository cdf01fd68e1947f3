from __future__ import annotations

import sys
from pathlib import Path

import pytest

from agentlink.errors import CLINotFoundError, ControlTimeoutError
from agentlink.version import check_cli_version


def _fake_cli(tmp_path: Path, body: str) -> Path:
    path = tmp_path / "fake-cli"
    path.write_text(f"#!{sys.executable}\n{body}\n", encoding="utf-8")
    path.chmod(0o755)
    return path


@pytest.mark.asyncio
async def test_reports_last_token_of_first_line(tmp_path: Path) -> None:
    cli = _fake_cli(tmp_path, "print('agent-cli version 2.0.14')\nprint('extra line 9.9.9')")

    assert await check_cli_version(cli) == "2.0.14"


@pytest.mark.asyncio
async def test_empty_output_is_unknown(tmp_path: Path) -> None:
    cli = _fake_cli(tmp_path, "pass")

    assert await check_cli_version(cli) == "unknown"


@pytest.mark.asyncio
async def test_missing_cli(tmp_path: Path) -> None:
    with pytest.raises(CLINotFoundError):
        await check_cli_version(tmp_path / "absent")


@pytest.mark.asyncio
async def test_hanging_cli_times_out(tmp_path: Path) -> None:
    cli = _fake_cli(tmp_path, "import time\ntime.sleep(30)")

    with pytest.raises(ControlTimeoutError, match="CLI version check"):
        await check_cli_version(cli, timeout=0.2)
