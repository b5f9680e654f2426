"""Process bootstrap shared by the ``amre`` entry points."""

from __future__ import annotations

import logging
import sys
from typing import TextIO

from dotenv import load_dotenv

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


def configure_cli(stream: TextIO | None = None) -> None:
    """Load ``.env`` files and configure root logging.

    Must run before the first :func:`amre.config.get_settings` call so the
    cached settings see the ``.env`` values.  One-shot commands pass
    ``sys.stderr`` (the default) to keep stdout free for their JSON report.
    """
    load_dotenv("config/.env")  # Primary (Docker + local)
    load_dotenv()               # Fallback (CWD/.env)

    from amre.config import get_settings

    try:
        level = get_settings().LOG_LEVEL
    except ValueError:
        # Invalid settings; the caller calls get_settings() again and reports it.
        level = "INFO"

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
        handlers=[logging.StreamHandler(stream or sys.stderr)],
    )
