"""Configuration for the EHR assistant.

Loads settings from environment variables (via a .env file or the system
environment). Uses sensible defaults so the module can be imported even
when env vars are not set. CI imports it for type checking without
real credentials.

The OAuth launch itself happens outside this package. Whatever performs
it hands us three things: a bearer token, the target FHIR server URL and
the patient in context. They can be given here as defaults or passed per
session through the HTTP API.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env file if it exists (absent in CI and Docker)
_env_path = Path(__file__).resolve().parent.parent.parent / ".env"
load_dotenv(_env_path)

# --- FHIR backend proxy ---
# Every query goes to this proxy, which forwards it to the target server
# named in the targetFhirServer parameter.
FHIR_BACKEND_URL: str = os.getenv("FHIR_BACKEND_URL", "http://localhost:3000/fhir")

# The FHIR server the launch context points at
FHIR_SERVER_URL: str = os.getenv("FHIR_SERVER_URL", "")

# Bearer token obtained by the external SMART/OAuth launch
FHIR_ACCESS_TOKEN: str = os.getenv("FHIR_ACCESS_TOKEN", "")

# Patient in context for the launch
FHIR_PATIENT_ID: str = os.getenv("FHIR_PATIENT_ID", "")

# Self-signed certificates are common on sandbox servers
FHIR_SSL_VERIFY: bool = os.getenv("FHIR_SSL_VERIFY", "true").lower() != "false"

# Deadline (seconds) for a single query attempt in a fallback chain
FHIR_REQUEST_TIMEOUT: float = float(os.getenv("FHIR_REQUEST_TIMEOUT", "30"))

# --- Caching ---
# How long a successful fetch stays reusable (seconds). 5 minutes by default.
CACHE_TTL_SECONDS: float = float(os.getenv("CACHE_TTL_SECONDS", "300"))

# --- Conversation ---
# Upper bound on model <-> tool round trips within one user turn
MAX_TOOL_ROUNDS: int = int(os.getenv("MAX_TOOL_ROUNDS", "8"))

# Sessions idle for longer than this (seconds) are closed on the next request
SESSION_IDLE_SECONDS: float = float(os.getenv("SESSION_IDLE_SECONDS", "3600"))

# --- LLM (Large Language Model) ---
ANTHROPIC_API_KEY: str = os.getenv("ANTHROPIC_API_KEY", "")
ANTHROPIC_MODEL: str = os.getenv("ANTHROPIC_MODEL", "claude-sonnet-4-5")

# --- Observability ---
# LangSmith tracing is switched on purely through these env vars.
LANGCHAIN_API_KEY: str = os.getenv("LANGCHAIN_API_KEY", "")
LANGCHAIN_TRACING_V2: str = os.getenv("LANGCHAIN_TRACING_V2", "false")

LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
