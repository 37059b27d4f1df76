"""The multi-round conversation loop.

One user turn runs as a small LangGraph state machine:

    model ──(tool calls)──> tools ──> model ──> ... ──(final answer)──> END
      └──(tool calls after the round cap)──> halt ──> END

- "model" validates the history, then asks the chat model for a reply
- "tools" dispatches every tool call of the reply concurrently and appends
  one ToolMessage per call, each carrying the id of the call it answers
- "halt" closes the calls the model still wants once the round cap is hit

Concept — Tool protocol:
    Chat APIs reject a history in which an assistant message requested a
    tool call that no later tool message answers. The history is checked
    before every model call (ProtocolError), and when a turn fails midway
    the dangling calls are closed with error tool messages so the history
    the caller keeps is always one the API will accept.

The graph is built by hand rather than with create_react_agent: the round
cap, the protocol check and failed-turn recovery need the state between steps.
"""

from __future__ import annotations

import asyncio
import json
import logging
from enum import Enum
from typing import Annotated, Any, Literal, Protocol, TypedDict

from langchain_core.messages import (
    AIMessage,
    BaseMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
)
from langgraph.graph import END, START, StateGraph
from langgraph.graph.message import add_messages
from pydantic import BaseModel

from ehr_assistant.config import MAX_TOOL_ROUNDS
from ehr_assistant.errors import EHRAssistantError, OperationCancelledError, ProtocolError
from ehr_assistant.queries import FetchOptions
from ehr_assistant.snapshots import ConversationSnapshot
from ehr_assistant.tools.dispatcher import ToolDispatcher

logger = logging.getLogger(__name__)

ROUND_CAP_MESSAGE = (
    "I stopped looking things up because this question needed more lookups "
    "than I am allowed in one turn. Please narrow the question or ask about "
    "one part at a time."
)


class ChatModel(Protocol):
    """Anything with LangChain's async chat-model call signature."""

    async def ainvoke(self, input: list[BaseMessage], **kwargs: Any) -> BaseMessage: ...


class ConversationState(str, Enum):
    AWAITING_USER_INPUT = "awaiting_user_input"
    SENT_TO_MODEL = "sent_to_model"
    MODEL_RETURNED_TOOL_CALLS = "model_returned_tool_calls"
    EXECUTING_TOOLS = "executing_tools"
    MODEL_RETURNED_FINAL_ANSWER = "model_returned_final_answer"


class ChatReply(BaseModel):
    """What one user turn produced."""

    role: Literal["assistant"] = "assistant"
    content: str
    tool_calls: list[dict[str, Any]] = []
    rounds: int = 0
    error: str | None = None


class TurnState(TypedDict):
    messages: Annotated[list[BaseMessage], add_messages]
    rounds: int


# ---------------------------------------------------------------------------
# Tool-protocol helpers
# ---------------------------------------------------------------------------


def _tool_calls(message: BaseMessage) -> list[dict[str, Any]]:
    if isinstance(message, AIMessage):
        return list(message.tool_calls or [])
    return []


def unanswered_tool_calls(messages: list[BaseMessage]) -> list[str]:
    """Ids of tool calls not answered by the tool messages that follow them."""
    missing: list[str] = []
    for i, message in enumerate(messages):
        calls = _tool_calls(message)
        if not calls:
            continue
        answered = set()
        for later in messages[i + 1 :]:
            if not isinstance(later, ToolMessage):
                break
            answered.add(later.tool_call_id)
        missing.extend(call["id"] for call in calls if call["id"] not in answered)
    return missing


def validate_tool_protocol(messages: list[BaseMessage]) -> None:
    """Raises ProtocolError if any tool call lacks its tool message."""
    missing = unanswered_tool_calls(messages)
    if missing:
        raise ProtocolError(missing)


def error_tool_message(call: dict[str, Any], reason: str) -> ToolMessage:
    return ToolMessage(
        content=json.dumps({"error": reason}),
        tool_call_id=call["id"],
        name=call.get("name"),
        status="error",
    )


def close_dangling_tool_calls(messages: list[BaseMessage], reason: str) -> list[BaseMessage]:
    """Copy of messages with an error tool message for every unanswered call."""
    repaired: list[BaseMessage] = []
    i = 0
    while i < len(messages):
        message = messages[i]
        repaired.append(message)
        i += 1
        calls = _tool_calls(message)
        if not calls:
            continue
        answered = set()
        while i < len(messages) and isinstance(messages[i], ToolMessage):
            answered.add(messages[i].tool_call_id)
            repaired.append(messages[i])
            i += 1
        repaired.extend(error_tool_message(c, reason) for c in calls if c["id"] not in answered)
    return repaired


def message_text(message: BaseMessage) -> str:
    """Plain text of a message whose content may be a list of content blocks."""
    content = message.content
    if isinstance(content, str):
        return content
    parts = []
    for block in content:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)


def _is_error_result(content: str) -> bool:
    try:
        result = json.loads(content)
    except ValueError:
        return False
    return isinstance(result, dict) and "error" in result


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class ConversationOrchestrator:
    """Drives user turns through the model / tools graph.

    Args:
        model: Chat model with tools already bound (see agent.build_chat_model).
        dispatcher: Executes the model's tool calls.
        system_prompt: Instructions placed at the start of every conversation.
        max_rounds: Tool rounds allowed per user turn.
        include_patient_summary: Embed the patient's demographics in the
            system prompt of a new conversation.
    """

    def __init__(
        self,
        model: ChatModel,
        dispatcher: ToolDispatcher,
        system_prompt: str = "",
        max_rounds: int = MAX_TOOL_ROUNDS,
        include_patient_summary: bool = True,
    ) -> None:
        self.model = model
        self.dispatcher = dispatcher
        self.system_prompt = system_prompt
        self.max_rounds = max_rounds
        self.include_patient_summary = include_patient_summary
        self.state = ConversationState.AWAITING_USER_INPUT
        self._messages: list[BaseMessage] = []
        self._cancel: asyncio.Event | None = None
        self._turn_lock = asyncio.Lock()
        self._graph = self._build_graph()

    def _build_graph(self):  # type: ignore[no-untyped-def]
        graph = StateGraph(TurnState)
        graph.add_node("model", self._call_model)
        graph.add_node("tools", self._run_tools)
        graph.add_node("halt", self._halt)
        graph.add_edge(START, "model")
        graph.add_conditional_edges(
            "model", self._route, {"tools": "tools", "halt": "halt", END: END}
        )
        graph.add_edge("tools", "model")
        graph.add_edge("halt", END)
        return graph.compile()

    # --- graph nodes -------------------------------------------------------

    async def _call_model(self, state: TurnState) -> dict[str, Any]:
        self._check_cancelled()
        validate_tool_protocol(state["messages"])
        self.state = ConversationState.SENT_TO_MODEL
        response = await self.model.ainvoke(state["messages"])
        if _tool_calls(response):
            self.state = ConversationState.MODEL_RETURNED_TOOL_CALLS
        else:
            self.state = ConversationState.MODEL_RETURNED_FINAL_ANSWER
        return {"messages": [response]}

    def _route(self, state: TurnState) -> str:
        if not _tool_calls(state["messages"][-1]):
            return END
        if state["rounds"] >= self.max_rounds:
            return "halt"
        return "tools"

    async def _run_tools(self, state: TurnState) -> dict[str, Any]:
        self.state = ConversationState.EXECUTING_TOOLS
        calls = _tool_calls(state["messages"][-1])
        logger.info("Round %d: executing %d tool call(s)", state["rounds"] + 1, len(calls))
        results = await asyncio.gather(
            *(
                self.dispatcher.execute(call["name"], call["args"], self._cancel, call["id"])
                for call in calls
            )
        )
        replies = [
            ToolMessage(
                content=json.dumps(result, default=str),
                tool_call_id=call["id"],
                name=call["name"],
            )
            for call, result in zip(calls, results)
        ]
        return {"messages": replies, "rounds": state["rounds"] + 1}

    async def _halt(self, state: TurnState) -> dict[str, Any]:
        calls = _tool_calls(state["messages"][-1])
        logger.warning("Round cap of %d reached; closing %d call(s)", self.max_rounds, len(calls))
        closing = [error_tool_message(c, "Tool round limit reached") for c in calls]
        self.state = ConversationState.MODEL_RETURNED_FINAL_ANSWER
        return {"messages": [*closing, AIMessage(content=ROUND_CAP_MESSAGE)]}

    # --- public API --------------------------------------------------------

    async def send(self, user_text: str, cancel: asyncio.Event | None = None) -> ChatReply:
        """Run one user turn to completion.

        Never raises for model or protocol failures: those end the turn with
        an error reply and leave a history that is still valid. A turn sent
        while another is running waits for it to finish, so each turn starts
        from the history the previous one left behind.
        """
        async with self._turn_lock:
            return await self._run_turn(user_text, cancel)

    async def _run_turn(self, user_text: str, cancel: asyncio.Event | None) -> ChatReply:
        self._cancel = cancel or asyncio.Event()
        if not self._messages:
            self._messages = [SystemMessage(content=await self._system_prompt())]

        turn_start = len(self._messages)
        self._messages = [*self._messages, HumanMessage(content=user_text)]
        last: dict[str, Any] = {"messages": self._messages, "rounds": 0}

        try:
            async for values in self._graph.astream(
                {"messages": self._messages, "rounds": 0},
                config={"recursion_limit": 2 * self.max_rounds + 5},
                stream_mode="values",
            ):
                last = values
        except asyncio.CancelledError:
            self._recover(last, "Turn was cancelled")
            raise
        except Exception as exc:
            logger.warning("Turn failed: %s", exc)
            self._recover(last, str(exc))
            return ChatReply(
                content=f"**Error:** {exc}",
                tool_calls=self._summarize(self._messages[turn_start:]),
                rounds=last.get("rounds", 0),
                error=str(exc),
            )

        self._messages = list(last["messages"])
        self.state = ConversationState.AWAITING_USER_INPUT
        logger.info("Turn finished after %d tool round(s)", last["rounds"])
        return ChatReply(
            content=message_text(self._messages[-1]),
            tool_calls=self._summarize(self._messages[turn_start:]),
            rounds=last["rounds"],
        )

    def cancel(self) -> None:
        """Ask the running turn to stop at its next step."""
        if self._cancel is not None:
            self._cancel.set()

    @property
    def history(self) -> list[BaseMessage]:
        return list(self._messages)

    def clear(self) -> None:
        self._messages = []
        self.state = ConversationState.AWAITING_USER_INPUT

    def unanswered_tool_calls(self) -> list[str]:
        return unanswered_tool_calls(self._messages)

    def tool_call_summary(self) -> list[dict[str, Any]]:
        """Every tool call of the conversation with its outcome."""
        return self._summarize(self._messages)

    def snapshot(self) -> ConversationSnapshot:
        return ConversationSnapshot.from_messages(self._messages)

    def restore(self, snapshot: ConversationSnapshot) -> None:
        """Replace the history with a snapshot's, closing any dangling calls."""
        self._messages = close_dangling_tool_calls(
            snapshot.to_messages(), "Conversation was restored before this call finished"
        )
        self.state = ConversationState.AWAITING_USER_INPUT

    # --- internals ---------------------------------------------------------

    def _check_cancelled(self) -> None:
        if self._cancel is not None and self._cancel.is_set():
            raise OperationCancelledError("Turn was cancelled")

    def _recover(self, last: dict[str, Any], reason: str) -> None:
        self._messages = close_dangling_tool_calls(list(last["messages"]), reason)
        self.state = ConversationState.AWAITING_USER_INPUT

    async def _system_prompt(self) -> str:
        if not self.include_patient_summary:
            return self.system_prompt
        coordinator = self.dispatcher.coordinator
        try:
            payload = await coordinator.fetch("Patient", FetchOptions(use_cache=True))
        except EHRAssistantError as exc:
            logger.warning("Could not load patient summary: %s", exc)
            return self.system_prompt
        summary = coordinator.catalog.get("Patient").format(payload)
        if "message" in summary:
            return self.system_prompt
        return (
            f"{self.system_prompt}\n\nPATIENT IN CONTEXT:\n"
            f"{json.dumps(summary, indent=2)}"
        ).strip()

    @staticmethod
    def _summarize(messages: list[BaseMessage]) -> list[dict[str, Any]]:
        outcomes: dict[str, str] = {}
        for message in messages:
            if isinstance(message, ToolMessage):
                failed = message.status == "error" or _is_error_result(message_text(message))
                outcomes[message.tool_call_id] = "error" if failed else "completed"
        return [
            {
                "id": call["id"],
                "name": call["name"],
                "args": call["args"],
                "status": outcomes.get(call["id"], "pending"),
            }
            for message in messages
            for call in _tool_calls(message)
        ]
