"""Logging configuration for the ``finance_sync`` package.

Two helpers make up the public surface:

- ``configure_logging(...)`` attaches one ``StreamHandler`` to the package
  root logger (``"finance_sync"``). Entrypoints call it once: the Typer CLI
  callback at startup, again with ``force=True`` from ``serve --log-level``.
- ``get_logger(name)`` returns a module logger and makes sure the package
  root carries a ``NullHandler`` until an entrypoint configures output, so
  embedding the engine in another process stays silent by default.

Library modules never attach handlers themselves. Messages follow an
``area:event key=value`` shape, e.g. ``sync:batch_saved vendor=max inserted=3``.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import IO

_PKG_LOGGER_NAME = "finance_sync"
_LEVEL_ENV = "FINANCE_SYNC_LOG_LEVEL"
_DEFAULT_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"
_CONFIGURED = False


def _parse_level(level: int | str | None) -> int:
    if isinstance(level, int):
        return level
    if isinstance(level, str) and level.strip():
        name = level.strip().upper()
        if name.isdigit():
            return int(name)
        numeric = logging.getLevelName(name)
        if isinstance(numeric, int):
            return numeric
        return logging.INFO
    env_val = os.getenv(_LEVEL_ENV)
    if env_val:
        return _parse_level(env_val)
    return logging.INFO


def configure_logging(
    level: int | str | None = None,
    *,
    fmt: str | None = None,
    stream: IO[str] | None = None,
    force: bool = False,
) -> None:
    """Configure the package root logger.

    Parameters
    ----------
    level:
        ``int`` or level name. ``None`` falls back to ``FINANCE_SYNC_LOG_LEVEL``
        and then ``INFO``.
    fmt:
        Format string; defaults to ``"%(asctime)s %(name)s %(levelname)s %(message)s"``.
    stream:
        Destination of the single handler (``sys.stderr`` by default).
    force:
        Replace a previous configuration instead of keeping it. ``serve`` uses
        this when ``--log-level`` differs from the environment.
    """

    global _CONFIGURED
    if _CONFIGURED and not force:
        return

    logger = logging.getLogger(_PKG_LOGGER_NAME)
    for h in list(logger.handlers):
        if force or isinstance(h, logging.NullHandler):
            logger.removeHandler(h)

    resolved = _parse_level(level)
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setLevel(resolved)
    handler.setFormatter(logging.Formatter(fmt or _DEFAULT_FORMAT))

    logger.setLevel(resolved)
    logger.addHandler(handler)
    # Uvicorn configures the root logger; keep our lines single.
    logger.propagate = False

    _CONFIGURED = True


def get_logger(name: str) -> logging.Logger:
    """Return ``logging.getLogger(name)``, silencing the package root until configured."""

    pkg_logger = logging.getLogger(_PKG_LOGGER_NAME)
    if not _CONFIGURED and not pkg_logger.handlers:
        pkg_logger.addHandler(logging.NullHandler())
    return logging.getLogger(name)


__all__ = ["configure_logging", "get_logger"]
