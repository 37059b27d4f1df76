"""HTTP transport for the FHIR backend proxy.

This module provides the FHIRClient class, which handles:
1. Building the proxy URL for a resource query
2. Scoping every query to the patient in context
3. Telling the proxy which FHIR server to forward to
4. Authenticating every request with the launch's bearer token

Concept — Backend proxy:
    The browser-side launch obtains an access token for some FHIR server,
    but queries do not go to that server directly. They go to a proxy at
    FHIR_BACKEND_URL, which reads the targetFhirServer parameter and
    forwards the request (with our bearer token) to the real server.

    The client deliberately knows nothing about fallbacks or caching.
    A query either returns parsed JSON or raises NetworkError; deciding
    what to try next is the FetchCoordinator's job.

Usage:
    client = FHIRClient(access_token=token, server_url=url, patient_id=pid)
    bundle = await client.get("Observation?category=vital-signs&_count=20")
    await client.close()
"""

from __future__ import annotations

import logging
from typing import Any, Protocol
from urllib.parse import quote

import httpx

from ehr_assistant.config import (
    FHIR_ACCESS_TOKEN,
    FHIR_BACKEND_URL,
    FHIR_PATIENT_ID,
    FHIR_REQUEST_TIMEOUT,
    FHIR_SERVER_URL,
    FHIR_SSL_VERIFY,
)
from ehr_assistant.errors import ConfigError, NetworkError

logger = logging.getLogger(__name__)


class Transport(Protocol):
    """Anything that can resolve a resource query string to parsed JSON."""

    async def get(self, query: str) -> Any: ...


class FHIRClient:
    """Async HTTP client for the FHIR backend proxy.

    Attributes:
        backend_url: The proxy URL (e.g., "http://localhost:3000/fhir").
        server_url: The FHIR server the proxy should forward to.
        patient_id: The patient every query is scoped to.
    """

    def __init__(
        self,
        backend_url: str = FHIR_BACKEND_URL,
        server_url: str = FHIR_SERVER_URL,
        access_token: str = FHIR_ACCESS_TOKEN,
        patient_id: str = FHIR_PATIENT_ID,
        verify_ssl: bool = FHIR_SSL_VERIFY,
        timeout: float = FHIR_REQUEST_TIMEOUT,
    ) -> None:
        self.backend_url = backend_url.rstrip("/")
        self.server_url = server_url
        self.patient_id = patient_id
        self._access_token = access_token

        self._http = httpx.AsyncClient(
            verify=verify_ssl,
            timeout=httpx.Timeout(timeout),
        )

    async def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        await self._http.aclose()

    def resolve_url(self, query: str) -> str:
        """Turn a resource query into the full proxy URL.

        The patient parameter is only added when the query does not already
        scope the patient itself (e.g. "Condition?patient=Patient%2F123").
        The target server parameter is always present exactly once.

        Args:
            query: Resource query such as "Encounter?_sort=-date&_count=20".

        Returns:
            The absolute URL to send to the proxy.
        """
        url = f"{self.backend_url}/{query.lstrip('/')}"

        if "patient=" not in query:
            sep = "&" if "?" in url else "?"
            url += f"{sep}patient={quote(self.patient_id, safe='')}"

        if "targetFhirServer=" not in url:
            sep = "&" if "?" in url else "?"
            url += f"{sep}targetFhirServer={quote(self.server_url, safe='')}"

        return url

    async def get(self, query: str) -> Any:
        """Run one resource query against the backend.

        Args:
            query: Resource query relative to the FHIR base.

        Returns:
            The parsed JSON body (usually a Bundle or a single resource).

        Raises:
            ConfigError: If no bearer token or server URL is configured.
            NetworkError: If the request fails or returns a non-2xx status.
        """
        if not self._access_token or not self.server_url:
            raise ConfigError(
                "No valid launch context: a bearer token and target server URL are required"
            )

        url = self.resolve_url(query)
        headers = {
            "Authorization": f"Bearer {self._access_token}",
            "Accept": "application/fhir+json",
        }

        try:
            response = await self._http.get(url, headers=headers)
        except httpx.HTTPError as exc:
            raise NetworkError(
                status_code=0,
                detail=f"Request for {query} failed: {exc}",
            ) from exc

        if response.status_code >= 400:
            raise NetworkError(
                status_code=response.status_code,
                detail=f"FHIR {query} error: {response.text}",
            )

        try:
            return response.json()
        except ValueError as exc:
            raise NetworkError(
                status_code=response.status_code,
                detail=f"FHIR {query} returned a non-JSON body",
            ) from exc
