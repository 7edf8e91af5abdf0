"""Tests for rolling conversation summarisation."""

from __future__ import annotations

import json
import threading
import time
from unittest.mock import MagicMock, patch

import pytest

from dental_agent.compactor import ContextCompactor, format_notes_entry, parse_summary
from dental_agent.models import ConversationSummary, merge_tags
from dental_agent.services.llm_client import LLMAPIError
from dental_agent.services.store import StoreError


def _fill(store, contact, count: int) -> None:
    for i in range(count):
        store.append_message(contact, "user" if i % 2 == 0 else "assistant", f"mensaje {i}")


def _snapshot(store, contact) -> list[tuple[str, str, str]]:
    return [(m.id, m.role, m.content) for m in store.list_messages(contact)]


def _summary_response(mock_llm_response, summary="Paciente pregunta por limpieza.", facts=None):
    body = {"summary": summary, "keyFacts": facts if facts is not None else ["prefiere mañanas"]}
    return mock_llm_response(json.dumps(body, ensure_ascii=False))


@pytest.fixture
def gateway():
    return MagicMock()


@pytest.fixture
def compactor(store, gateway):
    return ContextCompactor(store, gateway, threshold=20, keep_recent=5)


# ── Parsing helpers ──────────────────────────────────────────────────


class TestParseSummary:
    def test_plain_json(self):
        payload = parse_summary('{"summary": "Hola", "keyFacts": ["a", " b "]}')
        assert payload.summary == "Hola"
        assert payload.key_facts == ["a", "b"]

    def test_code_fenced_json(self):
        payload = parse_summary('```json\n{"summary": "Resumen", "key_facts": []}\n```')
        assert payload.summary == "Resumen"

    @pytest.mark.parametrize("content", [None, "", "no es json", '{"keyFacts": []}', '{"summary": "  "}', "[1]"])
    def test_unusable_output(self, content):
        assert parse_summary(content) is None


class TestMergeTags:
    def test_deduplicates_preserving_order(self):
        assert merge_tags(["a", "b"], ["b", "c"]) == ["a", "b", "c"]

    def test_keeps_newest_ten(self):
        merged = merge_tags([f"old{i}" for i in range(8)], ["n1", "n2", "n3", "n4"])
        assert len(merged) == 10
        assert merged[-1] == "n4"
        assert "old0" not in merged


def test_format_notes_entry(fixed_now):
    summary = ConversationSummary(
        summary="Agendó limpieza.", key_facts=["alergia a penicilina"], message_count=16, created_at=fixed_now,
    )
    assert format_notes_entry(summary) == (
        "[Resumen 2026-10-19]\nAgendó limpieza.\n\nHechos clave: alergia a penicilina"
    )


# ── Compaction ───────────────────────────────────────────────────────


class TestCompact:
    def test_at_threshold_nothing_happens(self, compactor, store, patient, gateway):
        _fill(store, patient, 20)
        assert compactor.maybe_compact(patient) is None
        gateway.complete.assert_not_called()
        assert store.count_messages(patient) == 20

    def test_over_threshold_keeps_recent_five(self, compactor, store, patient, gateway, mock_llm_response):
        _fill(store, patient, 21)
        gateway.complete.return_value = _summary_response(mock_llm_response)

        summary = compactor.maybe_compact(patient)

        assert summary.message_count == 16
        remaining = store.list_messages(patient)
        assert [m.content for m in remaining] == [f"mensaje {i}" for i in range(16, 21)]
        stored = store.get_contact(patient.tenant_id, patient.phone)
        assert "Paciente pregunta por limpieza." in stored.notes
        assert stored.notes.startswith("[Resumen ")
        assert stored.tags == ["prefiere mañanas"]

    def test_request_uses_json_mode(self, compactor, store, patient, gateway, mock_llm_response):
        _fill(store, patient, 21)
        gateway.complete.return_value = _summary_response(mock_llm_response)
        compactor.compact(patient)

        kwargs = gateway.complete.call_args.kwargs
        assert kwargs["response_format"] == {"type": "json_object"}
        assert kwargs["temperature"] == 0.3
        assert kwargs["max_tokens"] == 500
        transcript = kwargs["messages"][-1]["content"]
        assert "Paciente: mensaje 0" in transcript
        assert "mensaje 16" not in transcript

    def test_notes_accumulate(self, compactor, store, patient, gateway, mock_llm_response):
        gateway.complete.side_effect = [
            _summary_response(mock_llm_response, summary="Primero."),
            _summary_response(mock_llm_response, summary="Segundo.", facts=["nuevo dato"]),
        ]
        _fill(store, patient, 21)
        compactor.compact(patient)
        current = store.get_contact(patient.tenant_id, patient.phone)
        _fill(store, current, 16)
        compactor.compact(current)

        stored = store.get_contact(patient.tenant_id, patient.phone)
        assert stored.notes.index("Primero.") < stored.notes.index("Segundo.")
        assert stored.tags == ["prefiere mañanas", "nuevo dato"]

    def test_invalid_json_deletes_nothing(self, compactor, store, patient, gateway, mock_llm_response):
        _fill(store, patient, 25)
        before = _snapshot(store, patient)
        gateway.complete.return_value = mock_llm_response("Claro, aquí está el resumen…")
        assert compactor.compact(patient) is None
        assert _snapshot(store, patient) == before
        assert store.get_contact(patient.tenant_id, patient.phone).notes is None

    def test_gateway_failure_deletes_nothing(self, compactor, store, patient, gateway):
        _fill(store, patient, 25)
        before = _snapshot(store, patient)
        gateway.complete.side_effect = LLMAPIError("down", status_code=503)
        assert compactor.maybe_compact(patient) is None
        assert _snapshot(store, patient) == before

    def test_memory_write_failure_deletes_nothing(self, compactor, store, patient, gateway, mock_llm_response):
        _fill(store, patient, 25)
        before = _snapshot(store, patient)
        gateway.complete.return_value = _summary_response(mock_llm_response)
        with patch.object(store, "append_contact_memory", side_effect=StoreError("db down")):
            assert compactor.compact(patient) is None
        assert _snapshot(store, patient) == before

    def test_maybe_compact_never_raises(self, patient, gateway):
        broken = MagicMock()
        broken.count_messages.side_effect = RuntimeError("boom")
        assert ContextCompactor(broken, gateway).maybe_compact(patient) is None


class TestConcurrentCompaction:
    def test_overlapping_runs_summarise_once(self, compactor, store, patient, gateway, mock_llm_response):
        _fill(store, patient, 21)
        entered = threading.Event()
        release = threading.Event()

        def slow_summary(**kwargs):
            entered.set()
            release.wait(timeout=5)
            return _summary_response(mock_llm_response)

        gateway.complete.side_effect = slow_summary
        first = threading.Thread(target=compactor.maybe_compact, args=(patient,))
        second = threading.Thread(target=compactor.maybe_compact, args=(patient,))
        first.start()
        assert entered.wait(timeout=5)
        second.start()
        time.sleep(0.05)
        release.set()
        first.join(timeout=5)
        second.join(timeout=5)

        assert gateway.complete.call_count == 1
        stored = store.get_contact(patient.tenant_id, patient.phone)
        assert stored.notes.count("[Resumen ") == 1
        assert [m.content for m in store.list_messages(patient)] == [f"mensaje {i}" for i in range(16, 21)]

    def test_different_contacts_do_not_block_each_other(
        self, compactor, store, patient, lead, gateway, mock_llm_response,
    ):
        _fill(store, patient, 21)
        _fill(store, lead, 21)
        gateway.complete.return_value = _summary_response(mock_llm_response)

        threads = [threading.Thread(target=compactor.maybe_compact, args=(c,)) for c in (patient, lead)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=5)

        assert gateway.complete.call_count == 2
        assert store.count_messages(patient) == 5
        assert store.count_messages(lead) == 5
