"""Loguru sink configuration for the model runtime."""

from __future__ import annotations

from contextlib import suppress
from pathlib import Path
import sys

from loguru import logger


def configure_logging(
    log_file: str | None = None,
    *,
    no_log_file: bool = False,
    log_level: str = "INFO",
) -> None:
    """Set up loguru handlers used by the runtime.

    This helper replaces the default loguru handler with a console
    handler using a compact, colored format. When ``no_log_file`` is
    ``False`` a rotating file handler is also added using ``log_file``
    or a default path.

    Parameters
    ----------
    log_file : str, optional
        Optional filesystem path where logs should be written. When
        ``None`` and file logging is enabled ``logs/spark_runtime.log`` is
        used.
    no_log_file : bool, default False (keyword-only)
        When True, file logging is disabled and only console logs are
        emitted.
    log_level : str, default "INFO"
        Minimum log level to emit (e.g. "DEBUG", "INFO").
    """
    logger.remove()
    # Records not bound to a model still need the ``model`` extra for the format.
    logger.configure(extra={"model": "-"})

    # stderr avoids BrokenPipeError when stdout is closed by a parent process.
    logger.add(
        sys.stderr,
        level=log_level,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
        "{extra[model]} <level>{message}</level>",
        colorize=True,
        enqueue=True,
    )
    if not no_log_file:
        file_path = log_file if log_file else "logs/spark_runtime.log"
        with suppress(Exception):
            Path(file_path).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            file_path,
            rotation="1 MB",
            retention="10 days",
            level=log_level,
            format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {extra[model]} | {message}",
            enqueue=True,
        )
