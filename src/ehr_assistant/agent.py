"""Session wiring: one assistant per clinician conversation.

An AssistantSession owns the full stack for one launch context:

    FHIRClient → FetchCoordinator → ToolRegistry / ToolDispatcher
               → ConversationOrchestrator (with Claude via ChatAnthropic)

The cache, the in-flight registry and the conversation history all live
on the session, so two clinicians (or two patients) never share state.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any

from langchain_anthropic import ChatAnthropic
from pydantic import BaseModel, SecretStr

from ehr_assistant.catalog import default_catalog
from ehr_assistant.config import (
    ANTHROPIC_API_KEY,
    ANTHROPIC_MODEL,
    FHIR_ACCESS_TOKEN,
    FHIR_PATIENT_ID,
    FHIR_SERVER_URL,
    MAX_TOOL_ROUNDS,
    SESSION_IDLE_SECONDS,
)
from ehr_assistant.coordinator import FetchCoordinator
from ehr_assistant.fhir_client import FHIRClient, Transport
from ehr_assistant.orchestrator import ChatModel, ChatReply, ConversationOrchestrator
from ehr_assistant.tools.dispatcher import ToolDispatcher
from ehr_assistant.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# System prompt
# ---------------------------------------------------------------------------

SYSTEM_PROMPT = """\
You are a clinical assistant embedded in an electronic health record. You \
help clinicians answer questions about the patient in context by searching \
the patient's FHIR record with the tools available to you.

WORKFLOW:
1. Pick the most specific search tool for the question (e.g. \
search_vital_signs for blood pressure, search_lab_results for an A1c).
2. Use search_patient_record when a question spans several kinds of record.
3. Use search_clinical_notes to read what was written in notes; use \
get_binary_content only for an attachment you already have an id for.
4. Narrow searches with date ranges and codes instead of fetching everything.

RULES:
- Only report what the tools return. Never fabricate clinical data.
- A result with a "message" means nothing was recorded; a result with an \
"error" means the lookup failed. Say which one it was.
- Format answers in Markdown: bold headings, bullet lists, dates as YYYY-MM-DD.
- End every clinical response with: "This information is for reference only \
and does not replace clinical judgment."
"""


class LaunchContext(BaseModel):
    """What the external SMART/OAuth launch hands us."""

    access_token: str = FHIR_ACCESS_TOKEN
    server_url: str = FHIR_SERVER_URL
    patient_id: str = FHIR_PATIENT_ID


def build_chat_model(registry: ToolRegistry) -> Any:
    """Claude with every registry tool bound."""
    # mypy can't see Pydantic model fields as constructor kwargs
    model = ChatAnthropic(
        model_name=ANTHROPIC_MODEL,  # type: ignore[call-arg]
        anthropic_api_key=SecretStr(ANTHROPIC_API_KEY),  # type: ignore[call-arg]
    )
    return model.bind_tools(registry.definitions())


class AssistantSession:
    """Everything one conversation needs, built from a launch context.

    Args:
        session_id: Identifier the HTTP client uses to continue the conversation.
        context: Token, server and patient for this launch.
        model: Chat model to use; defaults to Claude with the tools bound.
        transport: Query transport; defaults to a FHIRClient for the context.
    """

    def __init__(
        self,
        session_id: str,
        context: LaunchContext,
        model: ChatModel | None = None,
        transport: Transport | None = None,
    ) -> None:
        self.session_id = session_id
        self.context = context
        self.last_active = time.monotonic()
        self.transport = transport or FHIRClient(
            server_url=context.server_url,
            access_token=context.access_token,
            patient_id=context.patient_id,
        )
        catalog = default_catalog()
        self.coordinator = FetchCoordinator(
            catalog,
            self.transport,
            {"patient_id": context.patient_id, "server_url": context.server_url},
        )
        self.registry = ToolRegistry(catalog)
        self.dispatcher = ToolDispatcher(self.registry, self.coordinator)
        self.orchestrator = ConversationOrchestrator(
            model or build_chat_model(self.registry),
            self.dispatcher,
            system_prompt=SYSTEM_PROMPT,
            max_rounds=MAX_TOOL_ROUNDS,
        )

    def touch(self) -> None:
        self.last_active = time.monotonic()

    async def aclose(self) -> None:
        if isinstance(self.transport, FHIRClient):
            await self.transport.close()


async def expire_idle_sessions(
    sessions: dict[str, AssistantSession],
    idle_seconds: float = SESSION_IDLE_SECONDS,
) -> list[str]:
    """Close and remove sessions that have been idle for too long.

    Returns:
        The ids of the sessions that were removed.
    """
    cutoff = time.monotonic() - idle_seconds
    expired = [sid for sid, session in sessions.items() if session.last_active < cutoff]
    for session_id in expired:
        await sessions.pop(session_id).aclose()
        logger.info("Expired idle session %s", session_id)
    return expired


def create_session(
    context: LaunchContext | None = None,
    model: ChatModel | None = None,
    transport: Transport | None = None,
) -> AssistantSession:
    """Start a session with a fresh id."""
    return AssistantSession(uuid.uuid4().hex, context or LaunchContext(), model, transport)


async def run_agent(
    message: str,
    session_id: str | None,
    sessions: dict[str, AssistantSession],
    context: LaunchContext | None = None,
) -> tuple[ChatReply, str]:
    """Send one message, creating the session on first use.

    When ANTHROPIC_API_KEY is not set (e.g., in CI), returns a placeholder
    reply so that the HTTP surface can be tested without credentials.

    Args:
        message: The clinician's question.
        session_id: Existing session to continue, or None for a new one.
        sessions: Live sessions keyed by id (owned by the caller).
        context: Launch context for a new session; ignored for an existing one.

    Returns:
        The reply and the id of the session that produced it.
    """
    if not ANTHROPIC_API_KEY:
        placeholder = f"[Agent placeholder: no API key configured] You asked: {message}"
        return ChatReply(content=placeholder), session_id or uuid.uuid4().hex

    await expire_idle_sessions(sessions)
    session = sessions.get(session_id) if session_id else None
    if session is None:
        session = create_session(context)
        if session_id:
            session.session_id = session_id
        sessions[session.session_id] = session
        logger.info("Started session %s", session.session_id)

    session.touch()
    reply = await session.orchestrator.send(message)
    session.touch()
    return reply, session.session_id
