"""Tests for versioned cache and conversation snapshots."""

import json
import time

import pytest
from langchain_core.messages import AIMessage, HumanMessage, ToolMessage

from ehr_assistant.errors import SnapshotError
from ehr_assistant.queries import FetchOptions, options_key
from ehr_assistant.snapshots import (
    ConversationSnapshot,
    load_cache_snapshot,
    load_conversation_snapshot,
)


class TestCacheSnapshots:
    def test_current_version_round_trips(self) -> None:
        payload = {
            "version": 1,
            "entries": [
                {"kind": "VitalSigns", "options": "{}", "data": {"a": 1}, "stored_at": 1.0, "ttl": 300}
            ],
        }

        snapshot = load_cache_snapshot(json.dumps(payload))

        assert snapshot.entries[0].kind == "VitalSigns"
        assert snapshot.entries[0].data == {"a": 1}

    def test_legacy_payload_is_migrated(self) -> None:
        now_ms = time.time() * 1000
        legacy_key = "VitalSigns_" + json.dumps({"count": 5, "sort": "-date", "cacheTimeout": 60000})
        payload = {legacy_key: {"data": {"resourceType": "Bundle"}, "timestamp": now_ms}}

        snapshot = load_cache_snapshot(payload)

        entry = snapshot.entries[0]
        assert entry.kind == "VitalSigns"
        assert entry.options == options_key(FetchOptions(count=5, sort="-date"))
        assert entry.ttl == 60
        assert entry.stored_at == pytest.approx(now_ms / 1000)

    def test_legacy_payload_is_stamped_with_the_given_owner(self) -> None:
        payload = {"Encounters_{}": {"data": {}, "timestamp": 1000}}

        snapshot = load_cache_snapshot(payload, patient_id="123", server_url="https://ehr/fhir")

        assert (snapshot.patient_id, snapshot.server_url) == ("123", "https://ehr/fhir")

    def test_current_payload_keeps_its_own_owner(self) -> None:
        payload = {"version": 1, "patient_id": "123", "entries": []}

        snapshot = load_cache_snapshot(payload, patient_id="999")

        assert snapshot.patient_id == "123"

    def test_unreadable_legacy_entries_are_dropped(self) -> None:
        payload = {
            "VitalSigns_{not json": {"data": {}, "timestamp": 1},
            "Encounters_{}": {"data": {}, "timestamp": 1000},
        }

        snapshot = load_cache_snapshot(payload)

        assert [e.kind for e in snapshot.entries] == ["Encounters"]

    def test_unknown_version_is_rejected(self) -> None:
        with pytest.raises(SnapshotError, match="version"):
            load_cache_snapshot({"version": 7, "entries": []})

    def test_invalid_json_is_rejected(self) -> None:
        with pytest.raises(SnapshotError):
            load_cache_snapshot("{nope")


class TestConversationSnapshots:
    def test_messages_round_trip(self) -> None:
        messages = [
            HumanMessage(content="Latest BP?"),
            AIMessage(
                content="",
                tool_calls=[{"name": "search_vital_signs", "args": {}, "id": "call-1"}],
            ),
            ToolMessage(content="{}", tool_call_id="call-1"),
            AIMessage(content="120/80"),
        ]

        raw = ConversationSnapshot.from_messages(messages).model_dump_json()
        restored = load_conversation_snapshot(raw).to_messages()

        assert [type(m) for m in restored] == [type(m) for m in messages]
        assert restored[1].tool_calls[0]["id"] == "call-1"
        assert restored[2].tool_call_id == "call-1"

    def test_legacy_chat_list_is_migrated(self) -> None:
        legacy = [
            {"role": "system", "content": "You are a clinical assistant."},
            {"role": "user", "content": "Any allergies?"},
            {
                "role": "assistant",
                "content": None,
                "tool_calls": [
                    {
                        "id": "call-9",
                        "type": "function",
                        "function": {"name": "search_allergies", "arguments": "{\"count\": 3}"},
                    }
                ],
            },
            {"role": "tool", "tool_call_id": "call-9", "content": "{\"count\": 0}"},
        ]

        messages = load_conversation_snapshot(legacy).to_messages()

        assert messages[2].tool_calls[0]["args"] == {"count": 3}
        assert messages[3].tool_call_id == "call-9"

    def test_unknown_legacy_role_is_rejected(self) -> None:
        with pytest.raises(SnapshotError):
            load_conversation_snapshot([{"role": "robot", "content": "beep"}])
