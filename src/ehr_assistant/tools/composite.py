"""Hand-written tools that combine several fetches.

- get_patient_summary: demographics of the patient in context
- search_patient_record: one term searched across several kinds at once
- get_binary_content: a Binary resource decoded to text (or raw base64)
- search_clinical_notes: DocumentReference search plus each note's content

Failures inside a fan-out are isolated: one kind (or one document) that
cannot be loaded is reported in its own entry and the rest of the batch
still comes back.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import html
import logging
import re
from collections.abc import Awaitable, Callable
from typing import Any

from ehr_assistant.coordinator import FetchCoordinator
from ehr_assistant.errors import ConfigError, DecodeError
from ehr_assistant.formatters import binary_id_from_url, bundle_resources
from ehr_assistant.queries import FetchOptions
from ehr_assistant.tools.registry import (
    BINARY_CONTENT_TOOL,
    CLINICAL_NOTES_TOOL,
    PATIENT_SUMMARY_TOOL,
    RECORD_SEARCH_TOOL,
    parse_count,
)

logger = logging.getLogger(__name__)

# Longest text handed back to the model from a single document
MAX_CONTENT_CHARS = 8000

DEFAULT_MAX_DOCUMENTS = 5

_TEXT_TYPES = ("application/json", "application/xml", "application/xhtml+xml")

Handler = Callable[..., Awaitable[dict[str, Any]]]


def decode_base64(binary_id: str, data: Any) -> bytes:
    """Decode a base64 payload, tolerating what real servers send.

    Embedded whitespace, missing padding and the URL-safe alphabet are all
    accepted. Anything else raises DecodeError.
    """
    if not isinstance(data, str):
        raise DecodeError(binary_id, "content is not a string")
    cleaned = re.sub(r"\s+", "", data).replace("-", "+").replace("_", "/")
    cleaned += "=" * (-len(cleaned) % 4)
    try:
        return base64.b64decode(cleaned, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecodeError(binary_id, str(exc)) from exc


def strip_html(markup: str) -> str:
    """Reduce an HTML document to readable plain text."""
    text = re.sub(r"(?is)<(script|style)\b.*?</\1>", "", markup)
    text = re.sub(r"(?i)<br\s*/?>|</(p|div|li|tr|h[1-6])>", "\n", text)
    text = re.sub(r"<[^>]+>", "", text)
    text = html.unescape(text)
    text = re.sub(r"[ \t\r\f\v]+", " ", text)
    return re.sub(r"\s*\n\s*", "\n", text).strip()


def render_text(raw: bytes, content_type: str | None) -> dict[str, Any]:
    """Turn decoded bytes into model-sized text, or explain why it can't be."""
    content_type = (content_type or "text/plain").lower()
    if not (content_type.startswith("text/") or content_type.startswith(_TEXT_TYPES)):
        return {
            "size": len(raw),
            "message": f"Content of type {content_type} cannot be shown as text.",
        }

    text = raw.decode("utf-8", errors="replace")
    if "html" in content_type:
        text = strip_html(text)
    rendered: dict[str, Any] = {"text": text[:MAX_CONTENT_CHARS], "length": len(text)}
    if len(text) > MAX_CONTENT_CHARS:
        rendered["truncated"] = True
    return rendered


class CompositeTools:
    """Handlers for the composite tools, bound to one FetchCoordinator."""

    def __init__(self, coordinator: FetchCoordinator) -> None:
        self.coordinator = coordinator
        self.catalog = coordinator.catalog

    def handlers(self) -> dict[str, Handler]:
        return {
            PATIENT_SUMMARY_TOOL: self.get_patient_summary,
            RECORD_SEARCH_TOOL: self.search_patient_record,
            BINARY_CONTENT_TOOL: self.get_binary_content,
            CLINICAL_NOTES_TOOL: self.search_clinical_notes,
        }

    async def get_patient_summary(self, cancel: asyncio.Event | None = None) -> dict[str, Any]:
        payload = await self.coordinator.fetch("Patient", FetchOptions(use_cache=True), cancel)
        return self.catalog.get("Patient").format(payload)

    async def search_patient_record(
        self,
        resource_types: list[str],
        text: str | None = None,
        date_start: str | None = None,
        date_end: str | None = None,
        count: int | None = None,
        cancel: asyncio.Event | None = None,
    ) -> dict[str, Any]:
        """Search every requested kind concurrently.

        Kinds without a searchable date are fetched without the date range
        and carry a "note" saying so.

        Returns:
            {"searched": [...kinds], "results": {kind: {"success", "data"|"error"}}}
        """
        if isinstance(resource_types, str):
            resource_types = [resource_types]
        kinds = list(dict.fromkeys(resource_types or []))
        if not kinds:
            raise ValueError("resource_types must name at least one kind of record")

        options = FetchOptions(
            count=parse_count(count),
            text=text or None,
            date_start=date_start or None,
            date_end=date_end or None,
            use_cache=True,
        )
        outcomes = await asyncio.gather(*(self._search_kind(k, options, cancel) for k in kinds))
        return {"searched": kinds, "results": dict(zip(kinds, outcomes))}

    async def _search_kind(
        self,
        kind: str,
        options: FetchOptions,
        cancel: asyncio.Event | None,
    ) -> dict[str, Any]:
        try:
            spec = self.catalog.get(kind)
            if not spec.tool_name:
                raise ConfigError(f"{kind} cannot be searched")
            note = None
            if (options.date_start or options.date_end) and spec.date_param is None:
                options = options.model_copy(update={"date_start": None, "date_end": None})
                note = f"{spec.label.capitalize()} have no date to filter on; date range ignored"
            payload = await self.coordinator.fetch(kind, options, cancel)
            outcome: dict[str, Any] = {"success": True, "data": spec.format(payload)}
            if note:
                outcome["note"] = note
            return outcome
        except Exception as exc:
            logger.warning("Record search failed for %s: %s", kind, exc)
            return {"success": False, "error": str(exc)}

    async def get_binary_content(
        self,
        binary_id: str,
        format: str = "text",
        cancel: asyncio.Event | None = None,
    ) -> dict[str, Any]:
        """Fetch a Binary resource and decode its payload.

        Raises:
            DecodeError: If the payload is not valid base64.
        """
        if not binary_id:
            raise ValueError("binary_id is required")

        payload = await self.coordinator.fetch(
            "Binary", FetchOptions(resource_id=binary_id, use_cache=True), cancel
        )
        content_type = (payload or {}).get("contentType")
        result: dict[str, Any] = {"binaryId": binary_id, "contentType": content_type}
        data = (payload or {}).get("data")
        if not data:
            result["message"] = "Binary resource has no content."
            return result

        raw = decode_base64(binary_id, data)
        if format == "base64":
            result.update(format="base64", data=base64.b64encode(raw).decode("ascii"))
            return result
        result.update(format="text", **render_text(raw, content_type))
        return result

    async def search_clinical_notes(
        self,
        text: str | None = None,
        date_start: str | None = None,
        date_end: str | None = None,
        count: int | None = None,
        include_content: bool = True,
        max_documents: int | None = DEFAULT_MAX_DOCUMENTS,
        cancel: asyncio.Event | None = None,
    ) -> dict[str, Any]:
        """Search DocumentReferences, then resolve each note's content.

        Only the first max_documents notes have their content fetched; the
        rest are listed with metadata only. A note whose content cannot be
        loaded carries a "contentError" instead of "content".
        """
        spec = self.catalog.get("DocumentReferences")
        options = FetchOptions(
            count=parse_count(count),
            text=text or None,
            date_start=date_start or None,
            date_end=date_end or None,
            use_cache=True,
        )
        bundle = await self.coordinator.fetch(spec.kind, options, cancel)
        documents = bundle_resources(bundle)
        if not documents:
            return spec.format(bundle)

        notes = [spec.projection(doc) for doc in documents]
        if include_content:
            limit = max(1, int(max_documents or DEFAULT_MAX_DOCUMENTS))
            contents = await asyncio.gather(
                *(self._note_content(doc, cancel) for doc in documents[:limit])
            )
            for note, content in zip(notes, contents):
                note.update(content)
        return {"kind": spec.kind, "count": len(notes), "results": notes}

    async def _note_content(
        self,
        document: dict[str, Any],
        cancel: asyncio.Event | None,
    ) -> dict[str, Any]:
        doc_id = document.get("id") or "unknown"
        try:
            for item in document.get("content") or []:
                attachment = item.get("attachment") or {}
                if attachment.get("data"):
                    raw = decode_base64(doc_id, attachment["data"])
                    return {"content": render_text(raw, attachment.get("contentType"))}
                binary_id = binary_id_from_url(attachment.get("url"))
                if binary_id:
                    return {"content": await self.get_binary_content(binary_id, cancel=cancel)}
        except Exception as exc:
            logger.warning("Could not load content of document %s: %s", doc_id, exc)
            return {"contentError": str(exc)}
        return {"contentError": "Document has no readable attachment"}
