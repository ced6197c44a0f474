"""Flask CLI commands for pane log files.

Provides ``flask logs analyze <path>...`` for a markdown error/warning
report and ``flask logs search <path> <pattern>`` for a case-insensitive
regex search.
"""

import os
import re

import click
from flask import current_app
from flask.cli import AppGroup

logs_cli = AppGroup("logs", help="Pane log analysis commands.")


@logs_cli.command("analyze")
@click.argument("paths", nargs=-1, required=True, type=click.Path())
def analyze_logs(paths: tuple[str, ...]) -> None:
    """Print a markdown summary of errors and warnings in one or more log files."""
    analyzer = current_app.extensions["log_analyzer"]
    missing = [p for p in paths if not os.path.isfile(p)]
    if len(missing) == len(paths):
        click.echo(f"Error: log file not found: {', '.join(missing)}", err=True)
        raise SystemExit(1)
    for path in missing:
        click.echo(f"Warning: skipping missing log file {path}", err=True)

    click.echo(analyzer.summary_report([p for p in paths if p not in missing]), nl=False)


@logs_cli.command("search")
@click.argument("path", type=click.Path())
@click.argument("pattern")
@click.option("--max-results", default=100, show_default=True, help="Stop after this many matches.")
def search_logs(path: str, pattern: str, max_results: int) -> None:
    """Print lines of PATH matching the regular expression PATTERN."""
    analyzer = current_app.extensions["log_analyzer"]
    try:
        matches = analyzer.search(path, pattern, max_results=max_results)
    except re.error as e:
        click.echo(f"Error: invalid pattern: {e}", err=True)
        raise SystemExit(2)

    for line in matches:
        click.echo(line)
    if not matches:
        click.echo("No matches", err=True)
        raise SystemExit(1)
