"""FastAPI server, the HTTP entry point for the assistant.

Endpoints:

- GET    /agent/health                  Simple check that the server is running
- POST   /agent/chat                    Send a message, get back the assistant's reply
- GET    /agent/tools                   The tool definitions offered to the model
- GET    /agent/sessions/{id}/searches  Searches made during a session
- DELETE /agent/sessions/{id}           End a session and free its resources

Sessions live on app.state, so every app built by create_app() (one per
test, for instance) starts empty. A session idle for longer than
SESSION_IDLE_SECONDS is closed when the next chat request arrives.

Run locally with:
    uvicorn ehr_assistant.app:app --reload
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel

from ehr_assistant.agent import AssistantSession, LaunchContext, run_agent
from ehr_assistant.catalog import default_catalog
from ehr_assistant.config import LOG_LEVEL
from ehr_assistant.tools.registry import ToolRegistry

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


class ChatRequest(BaseModel):
    """What the client sends to the /agent/chat endpoint."""

    message: str  # The clinician's question in plain English
    session_id: str | None = None  # Optional: continue an existing conversation
    # Launch context for a new session; config defaults apply when omitted
    access_token: str | None = None
    server_url: str | None = None
    patient_id: str | None = None

    def launch_context(self) -> LaunchContext:
        overrides = {
            key: value
            for key, value in {
                "access_token": self.access_token,
                "server_url": self.server_url,
                "patient_id": self.patient_id,
            }.items()
            if value
        }
        return LaunchContext(**overrides)


class ChatResponse(BaseModel):
    """What the /agent/chat endpoint sends back."""

    response: str  # The assistant's answer (Markdown)
    session_id: str  # The session ID (new or existing) for follow-up messages
    tool_calls: list[dict[str, Any]] = []
    error: str | None = None


def _sessions(request: Request) -> dict[str, AssistantSession]:
    return request.app.state.sessions


def create_app() -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        for session in list(app.state.sessions.values()):
            await session.aclose()
        app.state.sessions.clear()

    app = FastAPI(
        title="EHR Clinical Assistant",
        description="Ask natural language questions about the patient in context",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.sessions = {}

    @app.get("/agent/health")
    async def health() -> dict[str, str]:
        """Health check endpoint. Returns 200 if the server is running."""
        return {"status": "ok"}

    @app.post("/agent/chat", response_model=ChatResponse)
    async def chat(body: ChatRequest, request: Request) -> ChatResponse:
        """Process a chat message through the assistant.

        Include a session_id to continue a previous conversation. If omitted,
        a new session is created and its ID is returned in the response.
        """
        reply, session_id = await run_agent(
            body.message,
            session_id=body.session_id,
            sessions=_sessions(request),
            context=body.launch_context(),
        )
        return ChatResponse(
            response=reply.content,
            session_id=session_id,
            tool_calls=reply.tool_calls,
            error=reply.error,
        )

    @app.get("/agent/tools")
    async def tools() -> list[dict[str, Any]]:
        return ToolRegistry(default_catalog()).definitions()

    @app.get("/agent/sessions/{session_id}/searches")
    async def searches(session_id: str, request: Request) -> list[dict[str, Any]]:
        session = _sessions(request).get(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail=f"Unknown session: {session_id}")
        return [entry.model_dump(mode="json") for entry in session.dispatcher.history]

    @app.delete("/agent/sessions/{session_id}")
    async def end_session(session_id: str, request: Request) -> dict[str, str]:
        session = _sessions(request).pop(session_id, None)
        if session is None:
            raise HTTPException(status_code=404, detail=f"Unknown session: {session_id}")
        await session.aclose()
        logger.info("Ended session %s", session_id)
        return {"status": "deleted", "session_id": session_id}

    return app


app = create_app()
