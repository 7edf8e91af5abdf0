"""Rolling summarisation of long conversations.

Once a contact has more than ``SUMMARY_THRESHOLD`` stored messages, everything
except the most recent ``SUMMARY_KEEP_RECENT`` is summarised by one LLM call,
the summary and key facts are appended to the contact's notes and tags, and
only then are the summarised messages deleted.

Compaction is all-or-nothing with respect to deletion: if the LLM call fails,
returns something that is not the expected JSON object, or the summary cannot
be saved, nothing is deleted and the next trigger simply tries again.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import UTC, datetime

from pydantic import AliasChoices, BaseModel, Field, ValidationError

from dental_agent.config import SUMMARY_KEEP_RECENT, SUMMARY_MODEL_NAME, SUMMARY_THRESHOLD
from dental_agent.models import Contact, ConversationSummary
from dental_agent.prompts import SUMMARY_SYSTEM_PROMPT, format_transcript
from dental_agent.services.locks import KeyedLocks
from dental_agent.services.metrics import metrics
from dental_agent.services.store import ClinicStore, StoreError

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


class SummaryPayload(BaseModel):
    """Shape the summariser must return."""

    summary: str
    key_facts: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("keyFacts", "key_facts"),
    )


def parse_summary(content: str | None) -> SummaryPayload | None:
    """Parse the model's JSON answer; ``None`` when it is unusable."""
    if not content:
        return None
    cleaned = _FENCE_RE.sub("", content.strip())
    try:
        payload = SummaryPayload.model_validate(json.loads(cleaned))
    except (ValueError, ValidationError):
        return None
    payload.summary = payload.summary.strip()
    payload.key_facts = [fact.strip() for fact in payload.key_facts if fact and fact.strip()]
    return payload if payload.summary else None


def format_notes_entry(summary: ConversationSummary) -> str:
    entry = f"[Resumen {summary.created_at.strftime('%Y-%m-%d')}]\n{summary.summary}"
    if summary.key_facts:
        entry += f"\n\nHechos clave: {', '.join(summary.key_facts)}"
    return entry


class ContextCompactor:
    def __init__(
        self,
        store: ClinicStore,
        gateway,
        *,
        threshold: int = SUMMARY_THRESHOLD,
        keep_recent: int = SUMMARY_KEEP_RECENT,
        model: str = SUMMARY_MODEL_NAME,
    ):
        self._store = store
        self._gateway = gateway
        self._threshold = threshold
        self._keep_recent = keep_recent
        self._model = model
        self._locks = KeyedLocks()

    def should_compact(self, contact: Contact) -> bool:
        return self._store.count_messages(contact) > self._threshold

    def summarize(self, messages) -> SummaryPayload | None:
        """One LLM call over ``messages``; ``None`` on any failure."""
        request = [
            {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
            {"role": "user", "content": f"Resume esta conversación:\n\n{format_transcript(messages)}"},
        ]
        try:
            response = self._gateway.complete(
                model=self._model,
                messages=request,
                temperature=0.3,
                max_tokens=500,
                response_format={"type": "json_object"},
            )
            content = response["choices"][0]["message"].get("content")
        except Exception:
            logger.exception("Summary generation failed")
            return None

        payload = parse_summary(content)
        if payload is None:
            logger.warning("Summariser returned unusable output: %r", (content or "")[:200])
        return payload

    def compact(self, contact: Contact) -> ConversationSummary | None:
        """Summarise and delete all but the recent tail; ``None`` if nothing was done.

        Runs for the same contact are serialised: a run that waited on another
        re-lists the messages and finds nothing left to do.
        """
        with self._locks.get((contact.tenant_id, contact.id)):
            return self._compact(contact)

    def _compact(self, contact: Contact) -> ConversationSummary | None:
        messages = self._store.list_messages(contact)
        if len(messages) <= self._threshold:
            return None

        to_summarize = messages[: len(messages) - self._keep_recent]
        payload = self.summarize(to_summarize)
        if payload is None:
            metrics.record_event("Compaction", outcome="aborted")
            return None

        summary = ConversationSummary(
            summary=payload.summary,
            key_facts=payload.key_facts,
            message_count=len(to_summarize),
            created_at=datetime.now(UTC),
        )
        try:
            self._store.append_contact_memory(contact, format_notes_entry(summary), summary.key_facts)
        except StoreError:
            logger.exception("Could not save summary for %s %s; keeping messages", contact.type, contact.id)
            metrics.record_event("Compaction", outcome="aborted")
            return None

        deleted = self._store.delete_messages(contact, [m.id for m in to_summarize])
        metrics.record_event("Compaction", outcome="success")
        logger.info(
            "Summarized %d messages (%d deleted) for %s %s",
            summary.message_count, deleted, contact.type, contact.id,
        )
        return summary

    def maybe_compact(self, contact: Contact) -> ConversationSummary | None:
        """Background entry point: compact if over threshold, never raise."""
        try:
            if not self.should_compact(contact):
                return None
            return self.compact(contact)
        except Exception:
            logger.exception("Compaction failed for %s %s", contact.type, contact.id)
            return None
