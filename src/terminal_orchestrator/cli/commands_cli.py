"""Flask CLI command for checking commands against the safety rules."""

import click
from flask import current_app
from flask.cli import AppGroup

commands_cli = AppGroup("commands", help="Command safety commands.")


@commands_cli.command("check", context_settings={"ignore_unknown_options": True})
@click.argument("command")
@click.argument("args", nargs=-1, type=click.UNPROCESSED)
def check_command(command: str, args: tuple[str, ...]) -> None:
    """Report whether COMMAND with ARGS would be allowed to run.

    Exits 1 if the command is rejected.
    """
    command_safety = current_app.extensions["command_safety"]
    check = command_safety.is_safe(command, list(args))
    display = command_safety.format_for_display(command, list(args))

    if check.safe:
        click.echo(f"SAFE: {display}")
        return

    click.echo(f"UNSAFE: {display}", err=True)
    click.echo(f"Reason: {check.reason}", err=True)
    raise SystemExit(1)
