"""Execute a tool call and always return a valid tool result.

The dispatcher is the error boundary between the data layer and the
conversation. Whatever happens underneath (an unknown tool, bad arguments,
every fallback failing, a formatter bug) comes back as a JSON-serializable
dict with an "error" key. Only task cancellation propagates.

Every execution is also recorded as a SearchHistoryEntry, first as
"pending" and then as "completed" or "error". Listeners registered with
add_listener() see each state change, which lets a UI show a live list of
the searches made on the clinician's behalf.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from collections.abc import Callable
from enum import Enum
from typing import Any

from pydantic import BaseModel

from ehr_assistant.coordinator import FetchCoordinator
from ehr_assistant.errors import DispatchMissError, EHRAssistantError
from ehr_assistant.tools.composite import CompositeTools
from ehr_assistant.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


class SearchStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    ERROR = "error"


class SearchHistoryEntry(BaseModel):
    """One tool execution as seen by history listeners."""

    id: str
    tool_name: str
    args: dict[str, Any]
    status: SearchStatus = SearchStatus.PENDING
    started_at: float
    finished_at: float | None = None
    result_count: int | None = None
    error: str | None = None


Listener = Callable[[SearchHistoryEntry], None]


def parse_arguments(args: dict[str, Any] | str | None) -> dict[str, Any]:
    """Accept arguments as a dict or as the JSON string some models emit."""
    if args is None or args == "":
        return {}
    if isinstance(args, str):
        try:
            args = json.loads(args)
        except ValueError as exc:
            raise ValueError(f"Tool arguments are not valid JSON: {exc}") from exc
    if not isinstance(args, dict):
        raise ValueError("Tool arguments must be a JSON object")
    return args


class ToolDispatcher:
    """Routes tool calls to generated searches or composite handlers."""

    def __init__(
        self,
        registry: ToolRegistry,
        coordinator: FetchCoordinator,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.registry = registry
        self.coordinator = coordinator
        self._composites = CompositeTools(coordinator).handlers()
        self._clock = clock
        self._history: list[SearchHistoryEntry] = []
        self._listeners: list[Listener] = []

    @property
    def history(self) -> list[SearchHistoryEntry]:
        return list(self._history)

    def clear_history(self) -> None:
        self._history.clear()

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Subscribe to history updates. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    async def execute(
        self,
        name: str,
        args: dict[str, Any] | str | None = None,
        cancel: asyncio.Event | None = None,
        call_id: str | None = None,
    ) -> dict[str, Any]:
        """Run one tool call.

        Args:
            name: Tool name as given by the model.
            args: Tool arguments, as a dict or a JSON string.
            cancel: Cancellation signal passed down to every fetch.
            call_id: The model's tool-call id, used as the history entry id.

        Returns:
            The tool result. Failures are returned as {"error": ...}, never raised.
        """
        entry = SearchHistoryEntry(
            id=call_id or uuid.uuid4().hex,
            tool_name=name,
            args=args if isinstance(args, dict) else {"raw": args},
            started_at=self._clock(),
        )
        self._record(entry)

        try:
            result = await self._run(name, parse_arguments(args), cancel)
        except EHRAssistantError as exc:
            logger.warning("Tool %s failed: %s", name, exc)
            result = exc.to_result()
        except Exception as exc:
            logger.exception("Tool %s raised unexpectedly", name)
            result = {"error": f"Failed to execute {name}: {exc}"}

        failed = "error" in result
        self._record(
            entry.model_copy(
                update={
                    "status": SearchStatus.ERROR if failed else SearchStatus.COMPLETED,
                    "finished_at": self._clock(),
                    "result_count": result.get("count"),
                    "error": result["error"] if failed else None,
                }
            )
        )
        return result

    async def _run(
        self,
        name: str,
        args: dict[str, Any],
        cancel: asyncio.Event | None,
    ) -> dict[str, Any]:
        kind = self.registry.kind_for(name)
        if kind is not None:
            options = self.registry.to_fetch_options(kind, args)
            payload = await self.coordinator.fetch(kind, options, cancel)
            return self.registry.catalog.get(kind).format(payload)

        handler = self._composites.get(name)
        definition = self.registry.definition(name)
        if handler is None or definition is None:
            raise DispatchMissError(name)

        # Models occasionally invent extra arguments; only declared ones are passed on.
        declared = definition.parameters.get("properties", {})
        kwargs = {key: value for key, value in args.items() if key in declared}
        return await handler(**kwargs, cancel=cancel)

    def _record(self, entry: SearchHistoryEntry) -> None:
        for i, existing in enumerate(self._history):
            if existing.id == entry.id and existing.status is SearchStatus.PENDING:
                self._history[i] = entry
                break
        else:
            self._history.append(entry)

        for listener in list(self._listeners):
            try:
                listener(entry)
            except Exception:
                logger.exception("Search history listener failed")
