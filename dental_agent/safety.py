"""Pre-LLM escalation check.

The gate looks at the raw patient message before any model call.  When it
matches, the agent skips the model entirely and hands the conversation to a
human.

The keyword list is data, not code: pass a different list to ``SafetyGate``
or extend the default through ``EXTRA_HANDOFF_KEYWORDS``.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

logger = logging.getLogger(__name__)

HANDOFF_KEYWORDS: tuple[str, ...] = (
    "emergencia",
    "dolor intenso",
    "hablar con humano",
    "agente humano",
    "persona real",
    "ayuda urgente",
    "sangrado",
    "accidente",
)


class SafetyGate:
    """Case-insensitive substring matcher over a configurable keyword list."""

    def __init__(self, keywords: Iterable[str] = HANDOFF_KEYWORDS):
        self._keywords = tuple(dict.fromkeys(k.strip().lower() for k in keywords if k.strip()))

    @property
    def keywords(self) -> tuple[str, ...]:
        return self._keywords

    def matched_keyword(self, message: str) -> str | None:
        """Return the first keyword found in ``message``, or ``None``."""
        lower = (message or "").lower()
        for keyword in self._keywords:
            if keyword in lower:
                return keyword
        return None

    def requires_handoff(self, message: str) -> bool:
        keyword = self.matched_keyword(message)
        if keyword:
            logger.info("Safety gate matched %r; forcing human handoff", keyword)
            return True
        return False


def default_gate() -> SafetyGate:
    """The gate used in production: built-in keywords plus env-configured extras."""
    from dental_agent.config import EXTRA_HANDOFF_KEYWORDS

    return SafetyGate((*HANDOFF_KEYWORDS, *EXTRA_HANDOFF_KEYWORDS))
