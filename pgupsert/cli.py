import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer

from pgupsert.core.common import DateTimeEncoder
from pgupsert.core.config import DatabaseConfig, load_config
from pgupsert.core.errors import UpsertError
from pgupsert.core.logger import setup_logger, set_package_log_level
from pgupsert.db.fetch import fetch_records
from pgupsert.db.pool import DatabasePool
from pgupsert.upsert.loader import CopyFormat
from pgupsert.upsert.merge import KeyConflictPolicy
from pgupsert.upsert.orchestrator import UpsertOptions, bulk_upsert
from pgupsert.upsert.values import CoercionPolicy

logger = setup_logger(__name__, include_location=True)

app = typer.Typer(help="Bulk upsert and query helper for PostgreSQL.", no_args_is_help=True)

ConfigOption = typer.Option(None, "--config", "-c", help="Database YAML config (defaults to the environment)")
VerboseOption = typer.Option(False, "--verbose", "-v", help="Log debug output")


def _setup(config_path: Optional[Path], verbose: bool) -> DatabaseConfig:
    set_package_log_level(logging.DEBUG if verbose else logging.WARNING)
    try:
        cfg = load_config(config_path)
    except (OSError, ValueError) as e:
        typer.echo(f"Invalid configuration: {e}", err=True)
        raise typer.Exit(code=2)
    logger.debug(f"Database config: {cfg.safe_dict()}")
    return cfg


def read_records(path: Path) -> List[Dict[str, Any]]:
    """Records from a JSON array file or a JSON lines file."""
    text = path.read_text(encoding="utf-8")
    stripped = text.lstrip()
    if not stripped:
        return []
    if stripped.startswith("["):
        records = json.loads(stripped)
    else:
        records = [json.loads(line) for line in text.splitlines() if line.strip()]
    for index, record in enumerate(records):
        if not isinstance(record, dict):
            raise ValueError(f"record {index} is not a JSON object")
    return records


@app.command("ping")
def ping(config: Optional[Path] = ConfigOption, verbose: bool = VerboseOption):
    """Check that the database answers through the pool."""
    cfg = _setup(config, verbose)

    async def _run() -> bool:
        async with DatabasePool(cfg, name="pgupsert-cli") as pool:
            return await pool.ping()

    try:
        ok = asyncio.run(_run())
    except UpsertError as e:
        typer.echo(f"Connection failed: {e}", err=True)
        raise typer.Exit(code=1)
    if not ok:
        typer.echo(f"Database {cfg.host}:{cfg.port}/{cfg.dbname} did not answer", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"OK {cfg.host}:{cfg.port}/{cfg.dbname}")


@app.command("fetch")
def fetch(
    query: str = typer.Argument(help="SQL query to run"),
    config: Optional[Path] = ConfigOption,
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Seconds before the query is cancelled"),
    verbose: bool = VerboseOption,
):
    """Run a query and print its rows as a JSON array."""
    cfg = _setup(config, verbose)

    async def _run() -> List[Dict[str, Any]]:
        async with DatabasePool(cfg, name="pgupsert-cli") as pool:
            return await fetch_records(pool, query, timeout=timeout)

    try:
        rows = asyncio.run(_run())
    except UpsertError as e:
        typer.echo(f"Query failed: {e}", err=True)
        raise typer.Exit(code=1)
    typer.echo(json.dumps(rows, cls=DateTimeEncoder, indent=2))


@app.command("load")
def load(
    records_file: Path = typer.Argument(help="JSON array or JSON lines file", exists=True, dir_okay=False),
    table: str = typer.Option(..., "--table", "-t", help="Target table (name or schema.name)"),
    key: List[str] = typer.Option(..., "--key", "-k", help="Primary key column, repeat for composite keys"),
    timeout: float = typer.Option(30.0, "--timeout", help="Seconds allowed for the whole upsert"),
    time_column: str = typer.Option("time", "--time-column", help="Column parsed as an RFC3339 timestamp"),
    on_error: CoercionPolicy = typer.Option(CoercionPolicy.NULL, "--on-coercion-error", help="null or raise"),
    duplicates: KeyConflictPolicy = typer.Option(
        KeyConflictPolicy.LAST, "--duplicates", help="Rows sharing a key: last, first or error"
    ),
    copy_format: CopyFormat = typer.Option(CopyFormat.AUTO, "--copy-format", help="auto, binary or text"),
    config: Optional[Path] = ConfigOption,
    verbose: bool = VerboseOption,
):
    """Upsert records from a file into a table."""
    cfg = _setup(config, verbose)
    try:
        records = read_records(records_file)
    except ValueError as e:
        typer.echo(f"Cannot read {records_file}: {e}", err=True)
        raise typer.Exit(code=2)

    options = UpsertOptions(
        time_column=time_column or None,
        coercion_policy=on_error,
        key_conflicts=duplicates,
        copy_format=copy_format,
    )

    async def _run():
        async with DatabasePool(cfg, name="pgupsert-cli") as pool:
            return await bulk_upsert(pool, records, table, key, timeout, options)

    try:
        result = asyncio.run(_run())
    except UpsertError as e:
        typer.echo(f"Upsert failed ({e.info.kind.value}): {e}", err=True)
        raise typer.Exit(code=1)
    typer.echo(json.dumps(result.to_dict(), cls=DateTimeEncoder, indent=2))


if __name__ == "__main__":
    app()
