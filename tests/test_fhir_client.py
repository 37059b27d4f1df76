"""Tests for the FHIR backend-proxy client.

These tests use httpx's MockTransport to simulate the proxy. No real
server connection is needed; every response is faked.
"""

import httpx
import pytest

from ehr_assistant.errors import ConfigError, NetworkError
from ehr_assistant.fhir_client import FHIRClient

# --- Test helpers ---


def _make_client(**kwargs: object) -> FHIRClient:
    """Create a client with test defaults (no real server contact)."""
    defaults: dict[str, object] = {
        "backend_url": "http://proxy.test/fhir",
        "server_url": "https://ehr.example.org/R4",
        "access_token": "test-token",
        "patient_id": "123",
        "verify_ssl": False,
    }
    defaults.update(kwargs)
    return FHIRClient(**defaults)  # type: ignore[arg-type]


def _bundle(*resources: dict[str, object]) -> dict[str, object]:
    return {
        "resourceType": "Bundle",
        "type": "searchset",
        "entry": [{"resource": r} for r in resources],
    }


# --- URL resolution ---


class TestResolveUrl:
    """Tests for turning a resource query into the proxy URL."""

    def test_appends_patient_and_target_server(self) -> None:
        client = _make_client()

        url = client.resolve_url("Observation?category=vital-signs&_count=20")

        assert url == (
            "http://proxy.test/fhir/Observation?category=vital-signs&_count=20"
            "&patient=123&targetFhirServer=https%3A%2F%2Fehr.example.org%2FR4"
        )

    def test_query_without_terms_gets_question_mark(self) -> None:
        client = _make_client()

        url = client.resolve_url("Encounter")

        assert url.startswith("http://proxy.test/fhir/Encounter?patient=123&")

    def test_patient_scoped_query_is_not_rescoped(self) -> None:
        """A query that already names the patient keeps its own scoping."""
        client = _make_client()

        url = client.resolve_url("Condition?patient=Patient%2F123&_count=20")

        assert url.count("patient=") == 1
        assert "targetFhirServer=" in url

    def test_trailing_slash_on_backend_is_ignored(self) -> None:
        client = _make_client(backend_url="http://proxy.test/fhir/")

        assert client.resolve_url("Encounter").startswith("http://proxy.test/fhir/Encounter?")


# --- Requests ---


class TestGet:
    """Tests for executing a query against the proxy."""

    @pytest.mark.asyncio
    async def test_success_returns_parsed_json(self) -> None:
        seen: list[httpx.Request] = []

        async def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=_bundle({"resourceType": "Encounter"}))

        client = _make_client()
        client._http = httpx.AsyncClient(transport=httpx.MockTransport(handler))

        data = await client.get("Encounter?_count=20")

        assert data["entry"][0]["resource"]["resourceType"] == "Encounter"
        assert seen[0].headers["Authorization"] == "Bearer test-token"
        assert seen[0].headers["Accept"] == "application/fhir+json"
        assert seen[0].url.params["targetFhirServer"] == "https://ehr.example.org/R4"

        await client.close()

    @pytest.mark.asyncio
    async def test_http_error_raises_network_error(self) -> None:
        async def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, text="Unsupported search parameter _sort")

        client = _make_client()
        client._http = httpx.AsyncClient(transport=httpx.MockTransport(handler))

        with pytest.raises(NetworkError, match="400") as excinfo:
            await client.get("Encounter?_sort=-date")

        assert excinfo.value.status_code == 400
        assert "_sort" in excinfo.value.detail

        await client.close()

    @pytest.mark.asyncio
    async def test_transport_failure_raises_network_error_with_status_zero(self) -> None:
        async def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused")

        client = _make_client()
        client._http = httpx.AsyncClient(transport=httpx.MockTransport(handler))

        with pytest.raises(NetworkError) as excinfo:
            await client.get("Encounter")

        assert excinfo.value.status_code == 0
        assert "connection refused" in str(excinfo.value)

        await client.close()

    @pytest.mark.asyncio
    async def test_non_json_body_raises_network_error(self) -> None:
        async def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="<html>login</html>")

        client = _make_client()
        client._http = httpx.AsyncClient(transport=httpx.MockTransport(handler))

        with pytest.raises(NetworkError, match="non-JSON"):
            await client.get("Encounter")

        await client.close()

    @pytest.mark.asyncio
    async def test_missing_launch_context_raises_config_error(self) -> None:
        """Without a token there is nothing to authenticate with."""
        calls: list[httpx.Request] = []

        async def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, json={})

        client = _make_client(access_token="")
        client._http = httpx.AsyncClient(transport=httpx.MockTransport(handler))

        with pytest.raises(ConfigError):
            await client.get("Encounter")
        assert calls == []

        await client.close()
