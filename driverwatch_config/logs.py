"""Logging setup shared by the command line entry points."""
from __future__ import annotations

import logging


def configure_logging(*, level: int = logging.INFO, force: bool = False) -> None:
    """Initialise the root logger with a terse console format.

    Pass ``force=True`` to reconfigure an already configured root logger, e.g. when
    ``--verbose`` is parsed after an earlier default setup.
    """
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        datefmt="%H:%M:%S",
        force=force,
    )
