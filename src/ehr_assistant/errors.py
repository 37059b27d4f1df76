"""Error taxonomy for the EHR assistant.

Every failure the core can produce is a subclass of EHRAssistantError.
Errors that can surface as a tool result know how to render themselves
via to_result(), so the dispatcher can turn any of them into valid
tool-message content without special-casing each type.
"""

from __future__ import annotations

from typing import Any


class EHRAssistantError(Exception):
    """Base class for all errors raised by the EHR assistant core."""

    def to_result(self) -> dict[str, Any]:
        """Render this error as a JSON-serializable tool result."""
        return {"error": str(self)}


class ConfigError(EHRAssistantError):
    """Raised for unregistered resource kinds or missing binding context."""


class NetworkError(EHRAssistantError):
    """Raised when a single query attempt fails at the transport or HTTP level."""

    def __init__(self, status_code: int, detail: str) -> None:
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"HTTP {status_code}: {detail}" if status_code else detail)


class AllFallbacksExhaustedError(EHRAssistantError):
    """Raised when every query in a resource's fallback chain failed."""

    def __init__(self, kind: str, last_error: str) -> None:
        self.kind = kind
        self.last_error = last_error
        super().__init__(f"All fetch attempts failed for {kind}: {last_error}")

    def to_result(self) -> dict[str, Any]:
        return {"error": str(self), "kind": self.kind}


class DecodeError(EHRAssistantError):
    """Raised when binary content cannot be decoded."""

    def __init__(self, binary_id: str, reason: str = "") -> None:
        self.binary_id = binary_id
        self.reason = reason
        super().__init__("Failed to decode binary content")

    def to_result(self) -> dict[str, Any]:
        return {"error": str(self), "binaryId": self.binary_id}


class DispatchMissError(EHRAssistantError):
    """Raised when a tool name does not resolve to any handler."""

    def __init__(self, tool_name: str) -> None:
        self.tool_name = tool_name
        super().__init__(f"Unknown tool: {tool_name}")


class ProtocolError(EHRAssistantError):
    """Raised when tool calls from an assistant turn lack matching tool messages."""

    def __init__(self, missing_ids: list[str]) -> None:
        self.missing_ids = missing_ids
        super().__init__(
            "Tool calls without a matching tool message: " + ", ".join(missing_ids)
        )


class OperationCancelledError(EHRAssistantError):
    """Raised when a fetch chain or conversation turn is cancelled."""


class SnapshotError(EHRAssistantError):
    """Raised when a persisted snapshot cannot be validated or migrated."""
