"""
Diagnostics — sinks for human-readable, non-fatal warnings.

Resolvers report per-mapping problems here instead of raising, so one
bad mapping never stops the others.  Messages are advisory text: match
them by pattern, not by exact wording.
"""
from __future__ import annotations

import logging
import re
from typing import List, Protocol

logger = logging.getLogger(__name__)


class DiagnosticSink(Protocol):
    """Anything that accepts warning strings.  Must never raise."""

    def warn(self, message: str) -> None:
        ...


class LoggingSink:
    """Forward diagnostics to a logger at WARNING level."""

    def __init__(self, log: logging.Logger | None = None):
        self._log = log or logger

    def warn(self, message: str) -> None:
        self._log.warning("%s", message)


class CollectingSink(LoggingSink):
    """Keep every diagnostic in order, and log it too."""

    def __init__(self, log: logging.Logger | None = None):
        super().__init__(log)
        self.messages: List[str] = []

    def warn(self, message: str) -> None:
        self.messages.append(message)
        super().warn(message)

    def count(self, pattern: str) -> int:
        """Number of collected messages matching regular expression *pattern*."""
        rx = re.compile(pattern)
        return sum(1 for m in self.messages if rx.search(m))
