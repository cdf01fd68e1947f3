"""CLI commands: ``agentlink run`` and ``agentlink version``."""

import asyncio
import logging
import os
from typing import Annotated

import typer
import yaml
from dotenv import load_dotenv
from rich.logging import RichHandler

load_dotenv()

from ..errors import AgentLinkError, ConfigurationError
from ..options import AgentOptions
from ..types import PermissionMode
from ..version import check_cli_version
from .errors import ConfigLoadError, InvalidModeError
from .events import ApprovalHandler
from .formatting import _get_version, _markup
from .single import run_single
from .state import THEME, app, console


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(name)s: %(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )


def _load_options(config: str | None) -> AgentOptions:
    if not config:
        return AgentOptions()
    try:
        return AgentOptions.from_file(config)
    except (FileNotFoundError, yaml.YAMLError, ConfigurationError, TypeError) as exc:
        raise ConfigLoadError(str(exc)) from exc


@app.command()
def run(
    prompt: Annotated[str, typer.Argument(metavar="PROMPT", help="Prompt to send")],
    model: Annotated[
        str | None,
        typer.Option("--model", "-m", help="Model for the agent CLI to use"),
    ] = None,
    permission_mode: Annotated[
        str | None,
        typer.Option(
            "--permission-mode",
            help="Permission mode: default, acceptEdits, plan, bypassPermissions",
        ),
    ] = None,
    config: Annotated[
        str | None,
        typer.Option("--config", "-c", help="YAML file with AgentOptions fields"),
    ] = os.getenv("AGENTLINK_CONFIG"),
    cli_path: Annotated[
        str | None,
        typer.Option("--cli-path", help="Path to the agent CLI executable"),
    ] = None,
    max_turns: Annotated[
        int | None,
        typer.Option("--max-turns", help="Stop after this many agent turns"),
    ] = None,
    auto_approve: Annotated[
        bool,
        typer.Option("--auto-approve/--ask", "-y", help="Approve tool calls without prompting"),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Log protocol traffic"),
    ] = False,
) -> None:
    """Run one prompt through the agent CLI and print the conversation."""
    _configure_logging(verbose)

    try:
        options = _load_options(config)
    except ConfigLoadError as exc:
        console.print(_markup(str(exc), THEME.error))
        raise typer.Exit(1) from exc

    if model:
        options.model = model
    if cli_path:
        options.cli_path = cli_path
    if max_turns is not None:
        options.max_turns = max_turns
    if permission_mode:
        try:
            options.permission_mode = PermissionMode(permission_mode)
        except ValueError:
            allowed = ", ".join(mode.value for mode in PermissionMode)
            console.print(
                _markup(str(InvalidModeError("permission mode", permission_mode, allowed)), THEME.error)
            )
            raise typer.Exit(1)

    # A permission tool named in the config answers prompts inside the CLI instead
    if options.permission_prompt_tool_name is None:
        options.can_use_tool = ApprovalHandler(auto_approve=auto_approve).can_use_tool

    try:
        succeeded = asyncio.run(run_single(options, prompt))
    except AgentLinkError as exc:
        console.print(_markup(str(exc), THEME.error))
        raise typer.Exit(1) from exc
    if not succeeded:
        raise typer.Exit(1)


@app.command()
def version(
    cli_path: Annotated[
        str | None,
        typer.Option("--cli-path", help="Path to the agent CLI executable"),
    ] = os.getenv("AGENTLINK_CLI_PATH"),
) -> None:
    """Print the agentlink and agent CLI versions."""
    console.print(f"agentlink {_get_version()}")
    try:
        cli_version = asyncio.run(check_cli_version(cli_path))
    except AgentLinkError as exc:
        console.print(_markup(str(exc), THEME.error))
        raise typer.Exit(1) from exc
    console.print(f"agent cli {cli_version}")
