import click


@click.group()
def main() -> None:
    """Graphsheet - execution and agent-graph backend for sheet playgrounds."""


@main.command()
@click.option("--host", default=None, help="Bind host (default: from GRAPHSHEET_HOST or 0.0.0.0).")
@click.option("--port", default=None, type=int, help="Bind port (default: from GRAPHSHEET_PORT or 3001).")
@click.option("--reload", is_flag=True, default=False, help="Enable auto-reload for development.")
def serve(host: str | None, port: int | None, reload: bool) -> None:
    """Start the execution runtime server."""
    import uvicorn

    from graphsheet.exec_runtime.settings import GraphsheetSettings

    settings = GraphsheetSettings()

    uvicorn.run(
        "graphsheet.exec_runtime.app:app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
        log_level="warning",  # uvicorn's own logging is intercepted by loguru
        # Running sheets get the drain timeout, plus time to kill stragglers.
        timeout_graceful_shutdown=settings.graceful_shutdown_timeout + 15,
    )


@main.command()
@click.argument("paths", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
@click.option("--indent", default=2, type=int, show_default=True, help="JSON indentation.")
def extract(paths: tuple[str, ...], indent: int) -> None:
    """Extract the agent graph from Python files and print it as JSON.

    The files are analysed statically, never executed.
    """
    from pathlib import Path

    from graphsheet.exec_runtime.execution.extraction import ExtractionError, StaticAgentExtractor
    from graphsheet.exec_runtime.models.sheet import SheetFile

    files = [SheetFile(filename=Path(p).name, code=Path(p).read_text(encoding="utf-8")) for p in paths]
    try:
        graph = StaticAgentExtractor().extract(files)
    except ExtractionError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(graph.model_dump_json(indent=indent, exclude_none=True))


# ---------------------------------------------------------------------------
# Database management
# ---------------------------------------------------------------------------


def _alembic_config():
    """Build an Alembic Config from the package's alembic.ini.

    Both alembic.ini and the alembic/ directory live inside the package,
    so this works whether running from source or from an installed package.
    """
    from pathlib import Path

    from alembic.config import Config

    ini_path = Path(__file__).parent / "exec_runtime" / "alembic.ini"
    return Config(str(ini_path))


@main.group()
def db() -> None:
    """Database migration and management commands."""


@db.command()
@click.option("--revision", default="head", help="Target revision (default: head).")
def upgrade(revision: str) -> None:
    """Run database migrations forward."""
    from alembic import command

    command.upgrade(_alembic_config(), revision)
    click.echo(f"Database upgraded to {revision}.")


@db.command()
@click.option("--revision", default="-1", help="Target revision (default: -1, one step back).")
def downgrade(revision: str) -> None:
    """Roll back database migrations."""
    from alembic import command

    command.downgrade(_alembic_config(), revision)
    click.echo(f"Database downgraded to {revision}.")


@db.command()
@click.argument("message")
def migrate(message: str) -> None:
    """Autogenerate a new migration from model changes."""
    from alembic import command

    command.revision(_alembic_config(), message=message, autogenerate=True)
    click.echo(f"Migration generated: {message}")


@db.command()
def current() -> None:
    """Show current database revision."""
    from alembic import command

    command.current(_alembic_config(), verbose=True)


@db.command()
def history() -> None:
    """Show migration history."""
    from alembic import command

    command.history(_alembic_config(), verbose=True)


if __name__ == "__main__":
    main()
