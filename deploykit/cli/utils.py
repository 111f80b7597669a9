"""Shared helpers for the deploykit CLI."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any

import click
import typer
from rich.console import Console
from rich.logging import RichHandler

from deploykit.deployment.config_manager import ConfigManager, DeployConfig
from deploykit.errors import ConfigError

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_LOCKED = 3

console = Console()
err_console = Console(stderr=True)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(level: str = "INFO", log_file: Path | None = None) -> None:
    """Attach a rich console handler and an optional file handler.

    Calling again replaces the handlers installed by a previous call.
    """
    logger = logging.getLogger("deploykit")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    logger.addHandler(
        RichHandler(console=err_console, markup=False, show_path=False, rich_tracebacks=True)
    )
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(file_handler)


def deploy_log_path(config: DeployConfig) -> Path:
    return config.logs_dir / f"deploy_{datetime.now():%Y%m%d_%H%M%S}.log"


def load_config(
    environment: str | None = None,
    root: Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> DeployConfig:
    """Resolve configuration from global options and command flags.

    Exits with status 1 when the configuration is invalid.
    """
    ctx = click.get_current_context()
    obj = ctx.obj or {}
    project = root or obj.get("root") or Path(".")
    env_name = environment or obj.get("environment")
    try:
        config = ConfigManager().load_config(project, env_name, overrides)
    except ConfigError as exc:
        err_console.print(f"[red]Configuration error:[/red] {exc}")
        raise typer.Exit(EXIT_FAILED) from exc

    level = "DEBUG" if obj.get("verbose") else config.log_level
    setup_logging(level)
    return config
