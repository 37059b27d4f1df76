"""Tests for the conversation loop.

A scripted fake chat model stands in for Claude: it returns a fixed list of
replies in order and records the messages it was called with, so tests can
check exactly what the model saw before each call.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any
from unittest.mock import AsyncMock

import pytest
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage, ToolMessage

from ehr_assistant.catalog import default_catalog
from ehr_assistant.coordinator import FetchCoordinator
from ehr_assistant.errors import NetworkError, ProtocolError
from ehr_assistant.orchestrator import (
    ROUND_CAP_MESSAGE,
    ConversationOrchestrator,
    ConversationState,
    close_dangling_tool_calls,
    message_text,
    validate_tool_protocol,
)
from ehr_assistant.tools.dispatcher import ToolDispatcher
from ehr_assistant.tools.registry import ToolRegistry

EMPTY_BUNDLE = {"resourceType": "Bundle", "entry": []}

# --- Test helpers ---


class ScriptedModel:
    """Fake chat model that replays scripted replies (or raises scripted errors)."""

    def __init__(self, replies: list[BaseMessage | Exception]) -> None:
        self.replies = list(replies)
        self.seen: list[list[BaseMessage]] = []

    async def ainvoke(self, messages: list[BaseMessage], **kwargs: Any) -> BaseMessage:
        self.seen.append(list(messages))
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


def _calls(*specs: tuple[str, str]) -> AIMessage:
    """An assistant message requesting (call id, tool name) pairs."""
    return AIMessage(
        content="",
        tool_calls=[{"id": call_id, "name": name, "args": {}} for call_id, name in specs],
    )


def _transport(get_response: Any = None) -> AsyncMock:
    transport = AsyncMock()
    transport.get.return_value = get_response if get_response is not None else EMPTY_BUNDLE
    return transport


def _orchestrator(
    model: ScriptedModel,
    transport: AsyncMock | None = None,
    **kwargs: Any,
) -> ConversationOrchestrator:
    catalog = default_catalog()
    coordinator = FetchCoordinator(catalog, transport or _transport(), {"patient_id": "123"})
    dispatcher = ToolDispatcher(ToolRegistry(catalog), coordinator)
    kwargs.setdefault("include_patient_summary", False)
    return ConversationOrchestrator(model, dispatcher, system_prompt="You help clinicians.", **kwargs)


# --- Turns ---


class TestTurns:
    @pytest.mark.asyncio
    async def test_final_answer_without_tools(self) -> None:
        model = ScriptedModel([AIMessage(content="Hello, how can I help?")])
        orchestrator = _orchestrator(model)

        reply = await orchestrator.send("hi")

        assert reply.content == "Hello, how can I help?"
        assert reply.rounds == 0
        assert reply.error is None
        assert [type(m) for m in orchestrator.history] == [SystemMessage, HumanMessage, AIMessage]
        assert orchestrator.state is ConversationState.AWAITING_USER_INPUT

    @pytest.mark.asyncio
    async def test_every_tool_call_is_answered_before_the_next_model_call(self) -> None:
        model = ScriptedModel(
            [
                _calls(("call-1", "search_vital_signs"), ("call-2", "search_encounters")),
                AIMessage(content="No vitals or encounters on file."),
            ]
        )
        orchestrator = _orchestrator(model)

        reply = await orchestrator.send("Any recent visits?")

        second_call = model.seen[1]
        tool_messages = [m for m in second_call if isinstance(m, ToolMessage)]
        assert {m.tool_call_id for m in tool_messages} == {"call-1", "call-2"}
        assert isinstance(second_call[-3], AIMessage)
        assert reply.content == "No vitals or encounters on file."
        assert reply.rounds == 1
        assert [(c["id"], c["status"]) for c in reply.tool_calls] == [
            ("call-1", "completed"),
            ("call-2", "completed"),
        ]

    @pytest.mark.asyncio
    async def test_tool_results_are_json(self) -> None:
        model = ScriptedModel([_calls(("call-1", "search_allergies")), AIMessage(content="None.")])
        orchestrator = _orchestrator(model)

        await orchestrator.send("Allergies?")

        tool_message = next(m for m in orchestrator.history if isinstance(m, ToolMessage))
        assert json.loads(tool_message.content)["kind"] == "AllergyIntolerances"

    @pytest.mark.asyncio
    async def test_failed_tool_is_reported_to_the_model(self) -> None:
        transport = AsyncMock()
        transport.get.side_effect = NetworkError(500, "boom")
        model = ScriptedModel([_calls(("call-1", "search_conditions")), AIMessage(content="Sorry.")])
        orchestrator = _orchestrator(model, transport)

        reply = await orchestrator.send("Problems?")

        tool_message = model.seen[1][-1]
        assert isinstance(tool_message, ToolMessage)
        assert "All fetch attempts failed for Conditions" in tool_message.content
        assert reply.tool_calls[0]["status"] == "error"

    @pytest.mark.asyncio
    async def test_round_cap_closes_pending_calls(self) -> None:
        model = ScriptedModel(
            [
                _calls(("call-1", "search_encounters")),
                _calls(("call-2", "search_encounters")),
                _calls(("call-3", "search_encounters")),
            ]
        )
        orchestrator = _orchestrator(model, max_rounds=2)

        reply = await orchestrator.send("Everything, please")

        assert reply.content == ROUND_CAP_MESSAGE
        assert reply.rounds == 2
        assert len(model.seen) == 3
        assert orchestrator.unanswered_tool_calls() == []
        closing = orchestrator.history[-2]
        assert isinstance(closing, ToolMessage)
        assert closing.tool_call_id == "call-3"
        assert "error" in json.loads(closing.content)

    @pytest.mark.asyncio
    async def test_concurrent_turns_run_one_after_the_other(self) -> None:
        class SlowModel(ScriptedModel):
            async def ainvoke(self, messages: list[BaseMessage], **kwargs: Any) -> BaseMessage:
                await asyncio.sleep(0.05)
                return await super().ainvoke(messages, **kwargs)

        model = SlowModel([AIMessage(content="answer-1"), AIMessage(content="answer-2")])
        orchestrator = _orchestrator(model)

        first, second = await asyncio.gather(orchestrator.send("first"), orchestrator.send("second"))

        assert (first.content, second.content) == ("answer-1", "answer-2")
        assert [message_text(m) for m in orchestrator.history[1:]] == [
            "first",
            "answer-1",
            "second",
            "answer-2",
        ]
        # The second turn saw the whole first turn
        assert [message_text(m) for m in model.seen[1][1:]] == ["first", "answer-1", "second"]


# --- Failures ---


class TestFailures:
    """A failed turn ends with an error reply and a history that is still valid."""

    @pytest.mark.asyncio
    async def test_model_failure_mid_loop(self) -> None:
        model = ScriptedModel(
            [_calls(("call-1", "search_encounters")), RuntimeError("model unavailable")]
        )
        orchestrator = _orchestrator(model)

        reply = await orchestrator.send("Visits?")

        assert reply.error == "model unavailable"
        assert reply.content.startswith("**Error:**")
        assert orchestrator.unanswered_tool_calls() == []
        assert isinstance(orchestrator.history[-1], ToolMessage)
        assert orchestrator.state is ConversationState.AWAITING_USER_INPUT

        model.replies.append(AIMessage(content="Back again."))
        follow_up = await orchestrator.send("Try again")

        assert follow_up.content == "Back again."

    @pytest.mark.asyncio
    async def test_dangling_call_in_history_is_a_protocol_error(self) -> None:
        model = ScriptedModel([AIMessage(content="unused")])
        orchestrator = _orchestrator(model)
        orchestrator._messages = [
            SystemMessage(content="You help clinicians."),
            HumanMessage(content="Vitals?"),
            _calls(("call-9", "search_vital_signs")),
        ]

        reply = await orchestrator.send("Hello?")

        assert "call-9" in (reply.error or "")
        assert model.seen == []
        assert orchestrator.unanswered_tool_calls() == []

    @pytest.mark.asyncio
    async def test_cancelled_turn(self) -> None:
        model = ScriptedModel([AIMessage(content="unused")])
        orchestrator = _orchestrator(model)
        cancel = asyncio.Event()
        cancel.set()

        reply = await orchestrator.send("Vitals?", cancel=cancel)

        assert reply.error == "Turn was cancelled"
        assert model.seen == []


# --- Protocol helpers ---


class TestToolProtocol:
    def test_validate_reports_missing_ids(self) -> None:
        history = [
            _calls(("a", "search_encounters"), ("b", "search_allergies")),
            ToolMessage(content="{}", tool_call_id="a"),
        ]

        with pytest.raises(ProtocolError) as excinfo:
            validate_tool_protocol(history)

        assert excinfo.value.missing_ids == ["b"]

    def test_close_dangling_inserts_after_existing_answers(self) -> None:
        history = [
            _calls(("a", "search_encounters"), ("b", "search_allergies")),
            ToolMessage(content="{}", tool_call_id="a"),
            HumanMessage(content="next"),
        ]

        repaired = close_dangling_tool_calls(history, "interrupted")

        assert [type(m) for m in repaired] == [AIMessage, ToolMessage, ToolMessage, HumanMessage]
        assert repaired[2].tool_call_id == "b"
        validate_tool_protocol(repaired)


# --- Conversation state ---


class TestConversationState:
    @pytest.mark.asyncio
    async def test_patient_summary_in_first_system_prompt(self) -> None:
        transport = _transport(
            {"resourceType": "Patient", "id": "123", "name": [{"text": "Ada Lovelace"}]}
        )
        model = ScriptedModel([AIMessage(content="Hi")])
        orchestrator = _orchestrator(model, transport, include_patient_summary=True)

        await orchestrator.send("Who is this?")

        system = model.seen[0][0]
        assert isinstance(system, SystemMessage)
        assert "Ada Lovelace" in system.content

    @pytest.mark.asyncio
    async def test_patient_summary_failure_is_ignored(self) -> None:
        transport = AsyncMock()
        transport.get.side_effect = NetworkError(401, "expired token")
        model = ScriptedModel([AIMessage(content="Hi")])
        orchestrator = _orchestrator(model, transport, include_patient_summary=True)

        reply = await orchestrator.send("Hello")

        assert reply.content == "Hi"
        assert model.seen[0][0].content == "You help clinicians."

    @pytest.mark.asyncio
    async def test_snapshot_restore_and_clear(self) -> None:
        model = ScriptedModel([_calls(("call-1", "search_encounters")), AIMessage(content="None.")])
        orchestrator = _orchestrator(model)
        await orchestrator.send("Visits?")

        restored = _orchestrator(ScriptedModel([]))
        restored.restore(orchestrator.snapshot())

        assert len(restored.history) == len(orchestrator.history)
        assert restored.tool_call_summary() == orchestrator.tool_call_summary()

        restored.clear()
        assert restored.history == []
