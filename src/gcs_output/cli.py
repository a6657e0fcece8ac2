from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

import typer
from loguru import logger
from prometheus_client import start_http_server

from .errors import GcsOutputError, root_cause
from .plugin import GcsOutputPlugin
from .settings import get_settings

app = typer.Typer(help="gcs-output operational CLI")

# ---------------------------
# Common options
# ---------------------------


def config_opt() -> Path:
    return typer.Option(
        ...,
        "--config",
        "-c",
        envvar="GCS_OUTPUT_CONFIG",
        exists=True,
        dir_okay=False,
        help="JSON file with the output configuration",
    )


def log_level_opt() -> Optional[str]:
    return typer.Option(None, "--log-level", envvar="GCS_OUTPUT_LOG_LEVEL", help="loguru level (default: INFO)")


def _setup_logging(level: Optional[str]) -> None:
    logger.remove()
    logger.add(sys.stderr, level=(level or get_settings().log_level).upper())


def _load_config(path: Path) -> Dict[str, Any]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.error(f"Failed to read config {path}: {e}")
        raise typer.Exit(code=2)
    if not isinstance(data, dict):
        logger.error(f"Config {path} must hold a JSON object")
        raise typer.Exit(code=2)
    return data


def _read_buffers(path: Path, buffer_size: int) -> Iterator[bytes]:
    with open(path, "rb") as f:
        while True:
            buf = f.read(buffer_size)
            if not buf:
                return
            yield buf


# ---------------------------
# Commands
# ---------------------------


@app.command("check")
def check(config: Path = config_opt(), log_level: Optional[str] = log_level_opt()):
    """Validate the config, the credentials and access to the bucket."""
    _setup_logging(log_level)
    cfg = _load_config(config)
    try:
        with GcsOutputPlugin() as plugin:
            plugin.check(cfg)
    except GcsOutputError as e:
        logger.error(f"Check failed: {root_cause(e)}")
        typer.echo(json.dumps({"ok": False, "error": str(root_cause(e))}, indent=2))
        raise typer.Exit(code=1)
    typer.echo(json.dumps({"ok": True, "bucket": cfg.get("bucket")}, indent=2))


@app.command("upload")
def upload(
    paths: List[Path] = typer.Argument(..., exists=True, dir_okay=False, help="Local files, one partition each"),
    config: Path = config_opt(),
    buffer_size: int = typer.Option(1_048_576, "--buffer-size", min=1, help="Bytes per add() call"),
    metrics_port: Optional[int] = typer.Option(None, "--metrics-port", help="Expose Prometheus metrics on this port"),
    log_level: Optional[str] = log_level_opt(),
):
    """Upload each local file as one partition and print the commit reports."""
    _setup_logging(log_level)
    cfg = _load_config(config)

    port = metrics_port if metrics_port is not None else get_settings().metrics_port
    if port is not None:
        start_http_server(port)
        logger.info(f"Serving metrics on :{port}")

    partitions = [[_read_buffers(p, buffer_size)] for p in paths]
    try:
        with GcsOutputPlugin() as plugin:
            reports = plugin.run_partitions(cfg, partitions)
    except GcsOutputError as e:
        logger.error(f"Upload failed: {e}")
        raise typer.Exit(code=1)

    typer.echo(json.dumps([r.model_dump(mode="json") for r in reports], indent=2))


if __name__ == "__main__":
    app()
