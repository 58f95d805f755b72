"""Logging helpers for the inference engine."""

from __future__ import annotations

import logging
from typing import Iterable


def configure_logging(level: int | str = logging.INFO, handlers: Iterable[logging.Handler] | None = None) -> None:
    """Configure root logging for command line sessions.

    Sequential processing runs for a long time over a whole season of games;
    a consistent format makes it easier to trace which game or team a
    retry, skipped season transition, or divergence warning belongs to.
    """

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=list(handlers) if handlers else None,
    )
