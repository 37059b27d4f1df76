"""Versioned snapshots of cache and conversation state.

Whatever hosts the assistant may persist these between page loads or
process restarts. Every snapshot carries a version number so a stored
payload can be validated on load and migrated when the format changes.

Version history:
    0: unversioned legacy payloads. The cache was a flat mapping of
       "<Kind>_<options JSON>" to {"data", "timestamp" (ms)}, and the
       conversation was a bare list of role/content chat messages.
    1: the pydantic models below.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Literal

from langchain_core.messages import (
    AIMessage,
    BaseMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
    messages_from_dict,
    messages_to_dict,
)
from pydantic import BaseModel, ValidationError

from ehr_assistant.config import CACHE_TTL_SECONDS
from ehr_assistant.errors import SnapshotError
from ehr_assistant.queries import FetchOptions, options_key

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1


class CacheEntry(BaseModel):
    """One cached fetch result."""

    kind: str
    options: str  # Serialized FetchOptions, see queries.options_key()
    data: Any
    stored_at: float  # Unix timestamp (seconds)
    ttl: float

    def is_live(self, now: float) -> bool:
        """An entry older than its TTL is treated as absent."""
        return now - self.stored_at < self.ttl


class CacheSnapshot(BaseModel):
    """Cached results of one patient on one FHIR server."""

    version: Literal[1] = SNAPSHOT_VERSION
    patient_id: str | None = None
    server_url: str | None = None
    entries: list[CacheEntry] = []


class ConversationSnapshot(BaseModel):
    version: Literal[1] = SNAPSHOT_VERSION
    messages: list[dict[str, Any]] = []

    @classmethod
    def from_messages(cls, messages: list[BaseMessage]) -> ConversationSnapshot:
        return cls(messages=messages_to_dict(messages))

    def to_messages(self) -> list[BaseMessage]:
        return messages_from_dict(self.messages)


def _parse(raw: str | bytes | dict[str, Any] | list[Any]) -> Any:
    if isinstance(raw, (str, bytes)):
        try:
            return json.loads(raw)
        except ValueError as exc:
            raise SnapshotError(f"Snapshot is not valid JSON: {exc}") from exc
    return raw


def _check_version(payload: dict[str, Any]) -> None:
    version = payload.get("version")
    if version != SNAPSHOT_VERSION:
        raise SnapshotError(f"Unsupported snapshot version: {version!r}")


# ---------------------------------------------------------------------------
# Cache snapshots
# ---------------------------------------------------------------------------


def _migrate_cache_v0(
    payload: dict[str, Any],
    patient_id: str | None,
    server_url: str | None,
) -> dict[str, Any]:
    entries = []
    for key, value in payload.items():
        kind, _, raw_options = key.partition("_")
        try:
            legacy = json.loads(raw_options) if raw_options else {}
            date_range = legacy.get("dateRange") or {}
            options = FetchOptions(
                count=legacy.get("count"),
                sort=legacy.get("sort"),
                status=legacy.get("status"),
                date_start=date_range.get("start"),
                date_end=date_range.get("end"),
                params=tuple(
                    tuple(term.split("=", 1))
                    for term in legacy.get("additionalParams") or []
                    if "=" in term
                ),
            )
            entries.append(
                {
                    "kind": kind,
                    "options": options_key(options),
                    "data": value["data"],
                    "stored_at": value["timestamp"] / 1000,
                    "ttl": legacy.get("cacheTimeout", CACHE_TTL_SECONDS * 1000) / 1000,
                }
            )
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            logger.warning("Dropping unreadable legacy cache entry %r: %s", key, exc)
    return {
        "version": SNAPSHOT_VERSION,
        "patient_id": patient_id,
        "server_url": server_url,
        "entries": entries,
    }


def load_cache_snapshot(
    raw: str | bytes | dict[str, Any],
    patient_id: str | None = None,
    server_url: str | None = None,
) -> CacheSnapshot:
    """Validate (and if needed migrate) a persisted cache snapshot.

    Legacy payloads do not record whose data they hold. patient_id and
    server_url name the owner to stamp on a migrated snapshot; they are
    ignored for current payloads, which carry their own.

    Raises:
        SnapshotError: If the payload is malformed or from an unknown version.
    """
    payload = _parse(raw)
    if not isinstance(payload, dict):
        raise SnapshotError("Cache snapshot must be a JSON object")
    if "version" not in payload:
        payload = _migrate_cache_v0(payload, patient_id, server_url)
    _check_version(payload)
    try:
        return CacheSnapshot.model_validate(payload)
    except ValidationError as exc:
        raise SnapshotError(f"Invalid cache snapshot: {exc}") from exc


# ---------------------------------------------------------------------------
# Conversation snapshots
# ---------------------------------------------------------------------------


def _legacy_message(message: dict[str, Any]) -> BaseMessage:
    role = message.get("role")
    content = message.get("content") or ""
    if role == "user":
        return HumanMessage(content=content)
    if role == "system":
        return SystemMessage(content=content)
    if role == "tool":
        return ToolMessage(content=content, tool_call_id=message["tool_call_id"])
    if role == "assistant":
        tool_calls = []
        for call in message.get("tool_calls") or []:
            function = call["function"]
            arguments = function.get("arguments") or "{}"
            tool_calls.append(
                {
                    "name": function["name"],
                    "args": json.loads(arguments) if isinstance(arguments, str) else arguments,
                    "id": call["id"],
                }
            )
        return AIMessage(content=content, tool_calls=tool_calls)
    raise ValueError(f"unknown role {role!r}")


def load_conversation_snapshot(
    raw: str | bytes | dict[str, Any] | list[Any],
) -> ConversationSnapshot:
    """Validate (and if needed migrate) a persisted conversation snapshot.

    Raises:
        SnapshotError: If the payload is malformed or from an unknown version.
    """
    payload = _parse(raw)
    if isinstance(payload, list):
        try:
            messages = [_legacy_message(m) for m in payload]
        except (ValueError, KeyError, TypeError) as exc:
            raise SnapshotError(f"Invalid legacy conversation: {exc}") from exc
        return ConversationSnapshot.from_messages(messages)

    if not isinstance(payload, dict):
        raise SnapshotError("Conversation snapshot must be a JSON object or list")
    _check_version(payload)
    try:
        snapshot = ConversationSnapshot.model_validate(payload)
        snapshot.to_messages()
    except (ValidationError, KeyError, ValueError) as exc:
        raise SnapshotError(f"Invalid conversation snapshot: {exc}") from exc
    return snapshot
