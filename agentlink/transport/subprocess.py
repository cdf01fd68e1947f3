"""Transport that runs the agent CLI as a child process over stdio pipes."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
from collections import deque
from collections.abc import AsyncIterator
from contextlib import suppress
from pathlib import Path
from typing import Any

from ..errors import CLIConnectionError, CLIJSONDecodeError, CLINotFoundError, ProcessError
from ..options import AgentOptions
from . import Transport

logger = logging.getLogger(__name__)

DEFAULT_CLI_NAME = "claude"
ENTRYPOINT = "sdk-py"
TERMINATE_GRACE_PERIOD = 5.0
STDERR_TAIL_LINES = 50


def find_cli(cli_path: str | Path | None = None) -> str:
    """Resolve the CLI executable: explicit path first, then ``PATH``."""
    if cli_path:
        return str(cli_path)
    found = shutil.which(DEFAULT_CLI_NAME)
    if found:
        return found
    raise CLINotFoundError(
        f"Agent CLI not found on PATH ({DEFAULT_CLI_NAME}). "
        "Install it or set AGENTLINK_CLI_PATH / AgentOptions.cli_path"
    )


def build_command(options: AgentOptions, cli_path: str) -> list[str]:
    """Translate options into the CLI's launch arguments."""
    cmd = [cli_path, "--output-format", "stream-json", "--verbose", "--input-format", "stream-json"]

    if options.system_prompt is not None:
        cmd.extend(["--system-prompt", options.system_prompt])
    if options.append_system_prompt is not None:
        cmd.extend(["--append-system-prompt", options.append_system_prompt])
    if options.allowed_tools:
        cmd.extend(["--allowedTools", ",".join(options.allowed_tools)])
    if options.disallowed_tools:
        cmd.extend(["--disallowedTools", ",".join(options.disallowed_tools)])
    if options.max_turns is not None:
        cmd.extend(["--max-turns", str(options.max_turns)])
    if options.max_budget_usd is not None:
        cmd.extend(["--max-budget-usd", str(options.max_budget_usd)])
    if options.model:
        cmd.extend(["--model", options.model])
    if options.fallback_model:
        cmd.extend(["--fallback-model", options.fallback_model])
    if options.permission_mode is not None:
        cmd.extend(["--permission-mode", str(options.permission_mode)])

    if options.can_use_tool is not None:
        cmd.extend(["--permission-prompt-tool", "stdio"])
    elif options.permission_prompt_tool_name:
        cmd.extend(["--permission-prompt-tool", options.permission_prompt_tool_name])

    if options.continue_conversation:
        cmd.append("--continue")
    if options.resume:
        cmd.extend(["--resume", options.resume])
    if options.fork_session:
        cmd.append("--fork-session")
    for directory in options.add_dirs:
        cmd.extend(["--add-dir", str(directory)])
    if options.settings:
        cmd.extend(["--settings", options.settings])
    if options.setting_sources is not None:
        cmd.extend(["--setting-sources", ",".join(options.setting_sources)])

    if isinstance(options.mcp_servers, dict):
        if options.mcp_servers:
            cmd.extend(["--mcp-config", json.dumps({"mcpServers": options.mcp_servers})])
    elif options.mcp_servers:
        cmd.extend(["--mcp-config", str(options.mcp_servers)])

    if options.include_partial_messages:
        cmd.append("--include-partial-messages")
    if options.max_thinking_tokens is not None:
        cmd.extend(["--max-thinking-tokens", str(options.max_thinking_tokens)])

    for flag, value in options.extra_args.items():
        if value is None:
            cmd.append(f"--{flag}")
        else:
            cmd.extend([f"--{flag}", str(value)])
    return cmd


def build_env(options: AgentOptions) -> dict[str, str]:
    env = {**os.environ, **options.env, "CLAUDE_CODE_ENTRYPOINT": ENTRYPOINT}
    if options.cwd:
        env["PWD"] = str(options.cwd)
    return env


class SubprocessTransport(Transport):
    """Run the CLI with ``asyncio.create_subprocess_exec`` and speak JSON lines.

    stdout is read with a stream limit of ``max_buffer_size`` bytes; a longer
    line is discarded and reported as a ``CLIJSONDecodeError`` item so one bad
    line never ends the session. stderr is drained on a background task, handed
    to ``options.stderr`` and kept as a short tail for ``ProcessError``.
    """

    def __init__(self, options: AgentOptions) -> None:
        self._options = options
        self._process: asyncio.subprocess.Process | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self._ready = False
        self._input_closed = False
        self._closing = False

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    async def connect(self) -> None:
        if self._process is not None:
            return

        cli = find_cli(self._options.cli_path)
        command = build_command(self._options, cli)
        cwd = str(self._options.cwd) if self._options.cwd else None
        if cwd is not None and not Path(cwd).is_dir():
            raise CLIConnectionError(f"Working directory does not exist: {cwd}")

        extra: dict[str, Any] = {}
        if self._options.user:
            extra["user"] = self._options.user

        logger.debug("Launching agent CLI: %s", " ".join(command))
        try:
            self._process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=build_env(self._options),
                limit=self._options.max_buffer_size,
                **extra,
            )
        except FileNotFoundError as exc:
            raise CLINotFoundError("Agent CLI not found", cli_path=cli) from exc
        except OSError as exc:
            raise CLIConnectionError(f"Failed to start agent CLI: {exc}") from exc

        self._input_closed = False
        self._closing = False
        self._stderr_tail.clear()
        self._stderr_task = asyncio.create_task(
            self._drain_stderr(self._process), name="agentlink-stderr"
        )
        self._ready = True
        logger.debug("Agent CLI started (pid=%s)", self._process.pid)

    async def write(self, data: str) -> None:
        process = self._process
        if not self._ready or process is None or process.stdin is None:
            raise CLIConnectionError("Transport is not ready for writing")
        if self._input_closed:
            raise CLIConnectionError("Input stream already closed")
        if process.returncode is not None:
            raise CLIConnectionError(
                f"Cannot write to terminated process (exit code: {process.returncode})"
            )
        try:
            process.stdin.write(data.encode("utf-8"))
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            self._ready = False
            raise CLIConnectionError(f"Failed to write to agent CLI: {exc}") from exc

    async def read_messages(self) -> AsyncIterator[Any | CLIJSONDecodeError]:
        process = self._process
        if process is None or process.stdout is None:
            raise CLIConnectionError("Not connected")
        stdout = process.stdout

        while True:
            try:
                raw = await stdout.readuntil(b"\n")
            except asyncio.IncompleteReadError as exc:
                # Final line without a trailing newline
                item = self._decode_line(exc.partial)
                if item is not None:
                    yield item
                break
            except asyncio.LimitOverrunError as exc:
                head = await self._discard_line(stdout, exc.consumed)
                yield CLIJSONDecodeError(
                    head.decode("utf-8", errors="replace"),
                    ValueError(
                        f"Line exceeded max_buffer_size of {self._options.max_buffer_size} bytes"
                    ),
                )
                continue

            item = self._decode_line(raw)
            if item is not None:
                yield item

        await self._check_exit(process)

    @staticmethod
    def _decode_line(raw: bytes) -> Any | CLIJSONDecodeError | None:
        line = raw.decode("utf-8", errors="replace").strip()
        if not line:
            return None
        try:
            return json.loads(line)
        except json.JSONDecodeError as exc:
            logger.debug("Undecodable line from agent CLI: %.200s", line)
            return CLIJSONDecodeError(line, exc)

    @staticmethod
    async def _discard_line(stream: asyncio.StreamReader, consumed: int) -> bytes:
        """Skip the rest of an oversized line and return its first chunk."""
        head = await stream.read(consumed)
        while True:
            try:
                await stream.readuntil(b"\n")
                return head
            except asyncio.LimitOverrunError as exc:
                await stream.read(exc.consumed)
            except asyncio.IncompleteReadError:
                return head

    async def _check_exit(self, process: asyncio.subprocess.Process) -> None:
        if self._closing:
            return
        try:
            returncode = await asyncio.wait_for(
                process.wait(), timeout=self._options.close_grace_period
            )
        except asyncio.TimeoutError:
            logger.debug("Agent CLI closed stdout but is still running")
            return
        if returncode != 0 and not self._closing:
            if self._stderr_task is not None:
                # Let the drain task collect the last stderr lines
                with suppress(asyncio.TimeoutError, asyncio.CancelledError):
                    await asyncio.wait_for(asyncio.shield(self._stderr_task), timeout=1.0)
            raise ProcessError(
                "Agent CLI exited with an error",
                exit_code=returncode,
                stderr="\n".join(self._stderr_tail) or None,
            )

    async def _drain_stderr(self, process: asyncio.subprocess.Process) -> None:
        stream = process.stderr
        if stream is None:
            return
        at_eof = False
        try:
            while not at_eof:
                try:
                    raw = await stream.readuntil(b"\n")
                except asyncio.IncompleteReadError as exc:
                    raw = exc.partial
                    at_eof = True
                except asyncio.LimitOverrunError as exc:
                    # Oversized lines are cut to their first chunk
                    raw = await self._discard_line(stream, exc.consumed)
                    logger.debug(
                        "Truncated agent CLI stderr line longer than %d bytes",
                        self._options.max_buffer_size,
                    )
                self._handle_stderr_line(raw.decode("utf-8", errors="replace").rstrip())
        except OSError as exc:
            logger.debug("Stopped reading agent CLI stderr: %s", exc)

    def _handle_stderr_line(self, line: str) -> None:
        if not line:
            return
        self._stderr_tail.append(line)
        logger.debug("agent cli stderr: %s", line)
        callback = self._options.stderr
        if callback is not None:
            try:
                callback(line)
            except Exception:
                logger.warning("stderr callback failed", exc_info=True)

    async def end_input(self) -> None:
        process = self._process
        if self._input_closed or process is None or process.stdin is None:
            return
        self._input_closed = True
        process.stdin.close()
        with suppress(BrokenPipeError, ConnectionResetError):
            await process.stdin.wait_closed()

    async def wait_for_exit(self, timeout: float) -> bool:
        process = self._process
        if process is None:
            return True
        try:
            await asyncio.wait_for(process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def close(self) -> None:
        self._ready = False
        process = self._process
        if process is None:
            return
        self._closing = True

        if self._stderr_task is not None:
            self._stderr_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._stderr_task
            self._stderr_task = None

        if not self._input_closed and process.stdin is not None:
            self._input_closed = True
            process.stdin.close()

        if process.returncode is None:
            with suppress(ProcessLookupError):
                process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=TERMINATE_GRACE_PERIOD)
            except asyncio.TimeoutError:
                logger.warning("Agent CLI (pid=%s) ignored SIGTERM; killing", process.pid)
                with suppress(ProcessLookupError):
                    process.kill()
                await process.wait()

        self._process = None
        logger.debug("Agent CLI transport closed (exit code: %s)", process.returncode)

    def is_ready(self) -> bool:
        return self._ready


__all__ = ["SubprocessTransport", "build_command", "build_env", "find_cli"]
