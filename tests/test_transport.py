from __future__ import annotations

import asyncio
import json
import sys
import textwrap
from pathlib import Path

import pytest

from agentlink import AgentClient, query
from agentlink.errors import CLIJSONDecodeError, CLINotFoundError, ProcessError
from agentlink.options import AgentOptions
from agentlink.transport.subprocess import SubprocessTransport, build_command, build_env, find_cli
from agentlink.types import AssistantMessage, PermissionMode, ResultMessage

from fakes import eventually

FAKE_CLI = """
import asyncio
import json
import sys

def emit(obj):
    sys.stdout.write(json.dumps(obj) + "\\n")
    sys.stdout.flush()

sys.stdout.write("\\n")
for line in sys.stdin:
    message = json.loads(line)
    if message["type"] == "control_request":
        emit({
            "type": "control_response",
            "response": {
                "subtype": "success",
                "request_id": message["request_id"],
                "response": {"argv": sys.argv[1:]},
            },
        })
    elif message["type"] == "user":
        text = message["message"]["content"]
        emit({"type": "assistant", "message": {"model": "fake", "content": [{"type": "text", "text": "echo: " + text}]}})
        emit({
            "type": "result", "subtype": "success", "duration_ms": 5, "duration_api_ms": 1,
            "is_error": False, "num_turns": 1, "session_id": message["session_id"],
        })
"""


def _write_script(tmp_path: Path, name: str, body: str) -> Path:
    path = tmp_path / name
    path.write_text(f"#!{sys.executable}\n{textwrap.dedent(body)}", encoding="utf-8")
    path.chmod(0o755)
    return path


def _options(cli: Path, **overrides: object) -> AgentOptions:
    overrides.setdefault("control_timeout", 10.0)
    overrides.setdefault("close_grace_period", 2.0)
    return AgentOptions(cli_path=str(cli), **overrides)


def test_build_command_flags(tmp_path: Path) -> None:
    async def allow(*_args: object) -> None:
        return None

    options = AgentOptions(
        model="claude-sonnet-4-5",
        system_prompt="Be brief",
        allowed_tools=["Read", "Grep"],
        disallowed_tools=["Bash"],
        max_turns=3,
        permission_mode=PermissionMode.ACCEPT_EDITS,
        can_use_tool=allow,
        resume="session-9",
        add_dirs=[tmp_path],
        setting_sources=["user", "project"],
        mcp_servers={"files": {"command": "mcp-files"}},
        include_partial_messages=True,
        extra_args={"debug-to-stderr": None, "betas": "x"},
    )

    cmd = build_command(options, "/usr/bin/claude")

    assert cmd[:6] == ["/usr/bin/claude", "--output-format", "stream-json", "--verbose", "--input-format", "stream-json"]
    pairs = {cmd[i]: cmd[i + 1] for i in range(6, len(cmd) - 1) if cmd[i].startswith("--")}
    assert pairs["--model"] == "claude-sonnet-4-5"
    assert pairs["--system-prompt"] == "Be brief"
    assert pairs["--allowedTools"] == "Read,Grep"
    assert pairs["--disallowedTools"] == "Bash"
    assert pairs["--max-turns"] == "3"
    assert pairs["--permission-mode"] == "acceptEdits"
    assert pairs["--permission-prompt-tool"] == "stdio"
    assert pairs["--resume"] == "session-9"
    assert pairs["--add-dir"] == str(tmp_path)
    assert pairs["--setting-sources"] == "user,project"
    assert json.loads(pairs["--mcp-config"]) == {"mcpServers": {"files": {"command": "mcp-files"}}}
    assert pairs["--betas"] == "x"
    assert "--include-partial-messages" in cmd
    assert "--debug-to-stderr" in cmd
    assert "--continue" not in cmd


def test_build_command_permission_tool_and_mcp_path() -> None:
    options = AgentOptions(permission_prompt_tool_name="mcp__perm__check", mcp_servers="/etc/mcp.json")

    cmd = build_command(options, "claude")

    assert cmd[cmd.index("--permission-prompt-tool") + 1] == "mcp__perm__check"
    assert cmd[cmd.index("--mcp-config") + 1] == "/etc/mcp.json"


def test_build_env_merges_and_marks_entrypoint(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("HOME_MARKER", "1")

    env = build_env(AgentOptions(env={"ANTHROPIC_LOG": "debug"}, cwd="/work"))

    assert env["HOME_MARKER"] == "1"
    assert env["ANTHROPIC_LOG"] == "debug"
    assert env["CLAUDE_CODE_ENTRYPOINT"] == "sdk-py"
    assert env["PWD"] == "/work"


def test_find_cli(monkeypatch: pytest.MonkeyPatch) -> None:
    assert find_cli("/opt/claude") == "/opt/claude"

    monkeypatch.setattr("agentlink.transport.subprocess.shutil.which", lambda name: f"/usr/local/bin/{name}")
    assert find_cli() == "/usr/local/bin/claude"

    monkeypatch.setattr("agentlink.transport.subprocess.shutil.which", lambda name: None)
    with pytest.raises(CLINotFoundError):
        find_cli()


@pytest.mark.asyncio
async def test_missing_executable_raises_not_found(tmp_path: Path) -> None:
    transport = SubprocessTransport(_options(tmp_path / "no-such-cli"))

    with pytest.raises(CLINotFoundError):
        await transport.connect()
    assert not transport.is_ready()


@pytest.mark.asyncio
async def test_session_against_fake_cli(tmp_path: Path) -> None:
    cli = _write_script(tmp_path, "fake-claude", FAKE_CLI)

    async with AgentClient(_options(cli, model="fake-model")) as client:
        info = client.get_server_info()
        assert info is not None
        assert "--model" in info["argv"]

        await client.query("ping")
        messages = [message async for message in client.receive_response()]

    assert isinstance(messages[0], AssistantMessage)
    assert messages[0].text() == "echo: ping"
    assert isinstance(messages[-1], ResultMessage)
    assert messages[-1].session_id == "default"


@pytest.mark.asyncio
async def test_one_shot_query_against_fake_cli(tmp_path: Path) -> None:
    cli = _write_script(tmp_path, "fake-claude", FAKE_CLI)

    messages = [message async for message in query("hello", _options(cli))]

    assert [type(message) for message in messages] == [AssistantMessage, ResultMessage]


@pytest.mark.asyncio
async def test_oversized_and_malformed_lines_become_decode_errors(tmp_path: Path) -> None:
    cli = _write_script(
        tmp_path,
        "noisy-cli",
        """
        import sys
        sys.stdout.write("x" * 5000 + "\\n")
        sys.stdout.write("{not json\\n")
        sys.stdout.write('{"type": "system", "subtype": "init"}')
        sys.stdout.flush()
        """,
    )
    transport = SubprocessTransport(_options(cli, max_buffer_size=1024))
    await transport.connect()
    try:
        items = [item async for item in transport.read_messages()]
    finally:
        await transport.close()

    assert len(items) == 3
    assert isinstance(items[0], CLIJSONDecodeError)
    assert "max_buffer_size" in str(items[0].original_error)
    assert isinstance(items[1], CLIJSONDecodeError)
    assert items[1].line == "{not json"
    assert items[2] == {"type": "system", "subtype": "init"}


@pytest.mark.asyncio
async def test_nonzero_exit_raises_process_error_with_stderr(tmp_path: Path) -> None:
    cli = _write_script(
        tmp_path,
        "failing-cli",
        """
        import sys
        sys.stderr.write("fatal: not logged in\\n")
        sys.stderr.flush()
        sys.exit(3)
        """,
    )
    stderr_lines: list[str] = []
    transport = SubprocessTransport(_options(cli, stderr=stderr_lines.append))
    await transport.connect()
    try:
        with pytest.raises(ProcessError) as exc_info:
            async for _item in transport.read_messages():
                pass
    finally:
        await transport.close()

    assert exc_info.value.exit_code == 3
    assert "fatal: not logged in" in (exc_info.value.stderr or "")
    assert stderr_lines == ["fatal: not logged in"]


@pytest.mark.asyncio
async def test_close_terminates_running_process(tmp_path: Path) -> None:
    cli = _write_script(
        tmp_path,
        "sleepy-cli",
        """
        import time
        time.sleep(60)
        """,
    )
    transport = SubprocessTransport(_options(cli))
    await transport.connect()
    assert transport.is_ready()
    assert not await transport.wait_for_exit(0.05)

    await transport.close()
    await transport.close()

    assert not transport.is_ready()
    assert transport.pid is None


NOISY_STDERR_CLI = """
import asyncio
import json
import sys

def emit(obj):
    sys.stdout.write(json.dumps(obj) + "\\n")
    sys.stdout.flush()

for line in sys.stdin:
    message = json.loads(line)
    if message["type"] == "control_request":
        emit({
            "type": "control_response",
            "response": {"subtype": "success", "request_id": message["request_id"], "response": {}},
        })
    elif message["type"] == "user":
        sys.stderr.write("E" * 4000 + "\\n")
        for i in range(20000):
            sys.stderr.write(f"stderr noise {i:05d}\\n")
        sys.stderr.flush()
        emit({
            "type": "result", "subtype": "success", "duration_ms": 5, "duration_api_ms": 1,
            "is_error": False, "num_turns": 1, "session_id": message["session_id"],
        })
"""


@pytest.mark.asyncio
async def test_long_stderr_line_does_not_stall_the_session(tmp_path: Path) -> None:
    cli = _write_script(tmp_path, "noisy-stderr-cli", NOISY_STDERR_CLI)
    stderr_lines: list[str] = []

    async def converse() -> list[object]:
        async with AgentClient(_options(cli, max_buffer_size=1024, stderr=stderr_lines.append)) as client:
            await client.query("ping")
            received = [message async for message in client.receive_response()]
            await eventually(lambda: len(stderr_lines) == 20001, timeout=10)
            return received

    messages = await asyncio.wait_for(converse(), timeout=30)

    assert isinstance(messages[-1], ResultMessage)
    assert set(stderr_lines[0]) == {"E"}
    assert stderr_lines[1] == "stderr noise 00000"
    assert stderr_lines[-1] == "stderr noise 19999"
