"""
Logging helpers for the signaling service.

The server starts uvicorn with ``log_config=None`` so its access and error
loggers propagate to the root logger configured here, and the ``--log-level``
flag accepts level names as typed on the command line.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional, Union

DEFAULT_FORMAT = "[%(asctime)s] %(levelname)-8s %(name)s: %(message)s"


def parse_level(level: Union[int, str], default: int = logging.INFO) -> int:
    """
    Translate ``"debug"``/``"WARNING"``/``10`` style levels to an int.

    Unknown names fall back to ``default``.
    """

    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).strip().upper())
    return resolved if isinstance(resolved, int) else default


def configure_logging(level: Union[int, str] = logging.INFO, format: Optional[str] = None) -> None:
    """
    Ensure the root logger is configured exactly once.
    """

    if logging.getLogger().handlers:
        # Respect any user provided configuration.
        return

    logging.basicConfig(
        level=parse_level(level),
        format=format or DEFAULT_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )
