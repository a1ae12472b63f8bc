"""
Command line interface for LexFlow.

Commands are grouped into three help panels: capturing and curating text,
delivering it to the collection endpoint, and housekeeping.
"""

import logging
import sys

import typer
from rich.console import Console

from lexflow import __version__
from lexflow.cli import queue
from lexflow.core.config.env import load_layered_env
from lexflow.core.config.loader import load_config
from lexflow.core.errors import ConfigError

PANEL_CAPTURE = "Capture and Curate"
PANEL_DELIVERY = "Submit to the Collection"
PANEL_MAINTENANCE = "Maintain the Queue"

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

app = typer.Typer(
    name="lexflow",
    help="Capture, curate and submit legal text to a collection endpoint",
    no_args_is_help=True,
    add_completion=False,
    context_settings={"help_option_names": ["--help", "-h"]},
)

console = Console()


def configure_logging(debug: bool, level_name: str = "WARNING") -> None:
    """Send log records to stderr; ``--debug`` beats the configured level."""
    if debug:
        level = logging.DEBUG
    else:
        level = logging.getLevelName(level_name.upper())
        if not isinstance(level, int):
            level = logging.WARNING
    logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stderr)


@app.callback()
def main(
    ctx: typer.Context,
    debug: bool = typer.Option(
        False,
        "--debug",
        help="Log everything to stderr, including HTTP and storage details",
    ),
) -> None:
    """
    LexFlow - legal text capture queue.

    Typical session:
        lexflow capture "Art. 5º ..." --url https://...
        lexflow curate cap-a7x3m2q9 --title "Art 5"
        lexflow submit cap-a7x3m2q9

    Settings come from ~/.config/lexflow/config.json, ./.lexflow.json,
    .env files and LEXFLOW_* variables such as LEXFLOW_ENDPOINT_URL.
    """
    # .env values must be exported before the loader reads LEXFLOW_* vars
    load_layered_env()

    # Tests may hand in a prebuilt config or an httpx transport via ctx.obj
    state = dict(ctx.obj or {})
    try:
        config = state.get("config") or load_config()
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    configure_logging(debug, config.logging.level)
    state["debug"] = debug
    state["config"] = config
    ctx.obj = state


for name, command in (
    ("capture", queue.capture),
    ("list", queue.list_items),
    ("show", queue.show),
    ("edit", queue.edit),
    ("curate", queue.curate_item),
):
    app.command(name=name, rich_help_panel=PANEL_CAPTURE)(command)

for name, command in (
    ("submit", queue.submit),
    ("retry", queue.retry),
    ("errors", queue.errors),
):
    app.command(name=name, rich_help_panel=PANEL_DELIVERY)(command)

app.command(name="delete", rich_help_panel=PANEL_MAINTENANCE)(queue.delete)
app.command(name="clear", rich_help_panel=PANEL_MAINTENANCE)(queue.clear)
app.command(name="export", rich_help_panel=PANEL_MAINTENANCE)(queue.export_items)
app.command(name="import", rich_help_panel=PANEL_MAINTENANCE)(queue.import_items)


@app.command(rich_help_panel=PANEL_MAINTENANCE)
def version() -> None:
    """Print the installed lexflow version."""
    console.print(f"lexflow version {__version__}")


def cli_main() -> None:
    app()


__all__ = ["app", "cli_main", "configure_logging"]
