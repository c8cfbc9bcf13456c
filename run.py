"""Entry-point for the Sadhana Console application."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from enum import Enum
from pathlib import Path
from typing import Optional

import typer
import uvicorn

from sadhana_console.bootstrap import build_content_store, initialize_app
from sadhana_console.logging_utils import build_file_handler, configure_logging, DEFAULT_LOG_FORMAT
from sadhana_console.services.dashboard import DashboardAggregator
from sadhana_console.services.errors import CascadeDeleteError, ContentError, DeleteReport
from sadhana_console.services.identity import hash_password
from sadhana_console.services.results import CASCADE_WARNING
from sadhana_console.ui.console import ConsoleUI
from sadhana_console.ui.modern import ModernUI
from sadhana_console.web import create_app
from sadhana_console.web.server import get_max_upload_bytes


LOGGER = logging.getLogger("sadhana_console.cli")


cli = typer.Typer(add_completion=False, help="Sadhana Console management commands")


def _prepare_logging(log_file: Path) -> None:
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(logging.Formatter(DEFAULT_LOG_FORMAT))
    configure_logging(handlers=[build_file_handler(log_file), stream_handler])


DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000


class UIStyle(str, Enum):
    MODERN = "modern"
    CONSOLE = "console"

style_option = typer.Option(
    UIStyle.MODERN,
    "--style",
    "-s",
    help="Select the tree presentation style.",
    show_default=True,
)


@cli.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Launch the web server when no explicit command is provided."""

    if ctx.invoked_subcommand is None:
        ctx.invoke(serve, host=DEFAULT_HOST, port=DEFAULT_PORT, root_path=None)


def _normalize_root_path(root_path: Optional[str]) -> str:
    if root_path is None:
        return ""
    normalized = root_path.strip()
    if not normalized:
        return ""
    if not normalized.startswith("/"):
        normalized = f"/{normalized}"
    return normalized.rstrip("/")


def _print_report(report: DeleteReport) -> None:
    typer.echo(
        f"Removed {len(report.categories)} categories, {len(report.chapters)} chapters, "
        f"{len(report.items)} items."
    )
    for warning in report.warnings:
        typer.echo(f"  Warning: {warning}")


@cli.command()
def serve(
    host: str = typer.Option(DEFAULT_HOST, help="Host interface for the web server"),
    port: int = typer.Option(DEFAULT_PORT, help="Port for the web server"),
    root_path: Optional[str] = typer.Option(
        None,
        help="Prefix the application expects when mounted behind a proxy",
        envvar="SADHANA_CONSOLE_ROOT_PATH",
    ),
) -> None:
    """Run the admin API server."""

    app_config = initialize_app()
    _prepare_logging(app_config.log_file)

    store = build_content_store(app_config)
    normalized_root = _normalize_root_path(root_path)
    app = create_app(store, config=app_config, root_path=normalized_root)

    config_kwargs = {}
    max_upload_bytes = get_max_upload_bytes()
    if max_upload_bytes > 0:
        config_signature = inspect.signature(uvicorn.Config.__init__)
        if "limit_max_request_size" in config_signature.parameters:
            config_kwargs["limit_max_request_size"] = max_upload_bytes
        else:
            LOGGER.warning(
                "Ignoring max upload size limit; uvicorn.Config does not support "
                "'limit_max_request_size'.",
            )

    server_config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_config=None,
        root_path=normalized_root,
        **config_kwargs,
    )
    server = uvicorn.Server(server_config)
    app.state.server = server
    LOGGER.info("Serving Sadhana Console on http://%s:%s%s/", host, port, normalized_root)
    server.run()


@cli.command()
def tree(
    as_json: bool = typer.Option(False, "--json", help="Print the tree as JSON"),
    style: UIStyle = style_option,
) -> None:
    """Print every category with its chapters and items."""

    config = initialize_app()
    _prepare_logging(config.log_file)

    store = build_content_store(config)
    try:
        contents = asyncio.run(store.get_all_categories_with_content())
    except ContentError as error:
        typer.echo(f"Could not load the content tree: {error}")
        raise typer.Exit(code=1) from error

    if as_json:
        typer.echo(json.dumps([content.to_dict() for content in contents], indent=2, ensure_ascii=False))
        return
    if style is UIStyle.MODERN:
        ui = ModernUI(contents)
    else:
        ui = ConsoleUI(contents)
    ui.run()


@cli.command("delete-category")
def delete_category(
    category_id: str = typer.Argument(..., help="Identifier of the category to delete"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt"),
) -> None:
    """Delete a category together with all of its chapters and items."""

    config = initialize_app()
    _prepare_logging(config.log_file)

    store = build_content_store(config)
    try:
        content = asyncio.run(store.get_category_with_content(category_id))
    except ContentError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error

    if not yes:
        typer.confirm(
            f"Delete '{content.category.name}' with {content.chapter_count} chapters "
            f"and {content.item_count} items?",
            abort=True,
        )

    try:
        report = asyncio.run(store.delete_category(category_id))
    except CascadeDeleteError as error:
        typer.echo(f"Delete failed: {error}")
        _print_report(error.report)
        typer.echo(CASCADE_WARNING)
        raise typer.Exit(code=1) from error
    except ContentError as error:
        typer.echo(f"Delete failed: {error}")
        raise typer.Exit(code=1) from error
    _print_report(report)


@cli.command()
def sweep() -> None:
    """Remove chapters and items whose parent no longer exists."""

    config = initialize_app()
    _prepare_logging(config.log_file)

    store = build_content_store(config)
    try:
        report = asyncio.run(store.sweep_orphans())
    except ContentError as error:
        typer.echo(f"Sweep failed: {error}")
        raise typer.Exit(code=1) from error
    _print_report(report)


@cli.command()
def dashboard() -> None:
    """Print the headline content statistics."""

    config = initialize_app()
    _prepare_logging(config.log_file)

    store = build_content_store(config)
    try:
        stats = asyncio.run(DashboardAggregator(store.documents).collect())
    except ContentError as error:
        typer.echo(f"Could not collect statistics: {error}")
        raise typer.Exit(code=1) from error
    for key, value in stats.to_dict().items():
        typer.echo(f"{key}: {value}")


@cli.command("hash-password")
def hash_password_command(
    password: str = typer.Option(
        ..., prompt=True, hide_input=True, confirmation_prompt=True, help="Password to hash"
    ),
) -> None:
    """Print a password hash for the ``admins`` section of the config file."""

    typer.echo(hash_password(password))


if __name__ == "__main__":
    cli()
