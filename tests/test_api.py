"""
Tests for the HTTP API.
"""

from __future__ import annotations

from typing import Any, Generator

import orjson
import pytest
from fastapi.testclient import TestClient

from agentrun.api.server import create_app
from agentrun.config import Settings
from agentrun.exceptions import ConfigurationError


@pytest.fixture
def client(mock_settings: Settings) -> Generator[TestClient, None, None]:
    """A client with the app lifespan (database, service) running."""
    with TestClient(create_app(mock_settings)) as test_client:
        yield test_client


def ndjson(text: str) -> list[dict[str, Any]]:
    return [orjson.loads(line) for line in text.splitlines() if line.strip()]


def start_consensus(client: TestClient) -> int:
    response = client.post(
        "/workflows/consensus/start",
        json={"stockSymbol": "AAPL", "exchangeAcronym": "NASDAQ"},
    )
    assert response.status_code == 200
    return response.json()["runId"]


def follow(client: TestClient, run_id: int) -> list[dict[str, Any]]:
    response = client.get("/workflows/stream", params={"runId": run_id})
    assert response.status_code == 200
    return ndjson(response.text)


class TestRoot:
    def test_root(self, client: TestClient) -> None:
        body = client.get("/").json()

        assert body["status"] == "operational"
        assert body["activeRuns"] == 0

    def test_requires_services_without_dry_run(self, mock_settings: Settings) -> None:
        """Test that live mode needs explicit step services."""
        settings = mock_settings.model_copy(update={"DRY_RUN": False})

        with pytest.raises(ConfigurationError):
            create_app(settings)


class TestStart:
    """Tests for starting runs."""

    def test_start_consensus(self, client: TestClient) -> None:
        run_id = start_consensus(client)

        assert isinstance(run_id, int)
        assert run_id > 0

    def test_start_research_with_query(self, client: TestClient) -> None:
        response = client.post(
            "/workflows/research/start",
            json={"stockSymbol": "MSFT", "exchangeAcronym": "NASDAQ", "query": "Cloud?"},
        )
        run_id = response.json()["runId"]

        events = follow(client, run_id)

        assert events[-1]["type"] == "complete"
        assert events[-1]["result"]["query"] == "Cloud?"

    def test_missing_field(self, client: TestClient) -> None:
        response = client.post("/workflows/consensus/start", json={"exchangeAcronym": "NYSE"})

        assert response.status_code == 400
        assert response.json()["error"].startswith("Invalid stockSymbol")

    def test_malformed_body(self, client: TestClient) -> None:
        response = client.post(
            "/workflows/consensus/start",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert response.json() == {"error": "Request body must be valid JSON"}

    def test_body_must_be_object(self, client: TestClient) -> None:
        response = client.post("/workflows/consensus/start", json=["AAPL"])

        assert response.status_code == 400


class TestStream:
    """Tests for the live NDJSON stream."""

    def test_stream_until_complete(self, client: TestClient) -> None:
        run_id = start_consensus(client)

        response = client.get("/workflows/stream", params={"runId": run_id})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/x-ndjson")
        assert response.headers["cache-control"] == "no-cache, no-transform"
        assert response.headers["x-agent-run-id"] == str(run_id)

        events = ndjson(response.text)
        assert [e["sequence"] for e in events] == list(range(1, len(events) + 1))
        assert all(e["eventId"] for e in events)
        assert events[0]["stage"] == "consensus.request"
        assert events[-1]["type"] == "complete"

    def test_stream_from_cursor(self, client: TestClient) -> None:
        run_id = start_consensus(client)
        total = len(follow(client, run_id))

        response = client.get("/workflows/stream", params={"runId": run_id, "cursor": 5})

        assert [e["sequence"] for e in ndjson(response.text)] == list(range(6, total + 1))

    def test_missing_run_id(self, client: TestClient) -> None:
        response = client.get("/workflows/stream")

        assert response.status_code == 400
        assert response.json() == {"error": "runId is required"}

    def test_unknown_run(self, client: TestClient) -> None:
        response = client.get("/workflows/stream", params={"runId": 999})

        assert response.status_code == 404
        assert response.json() == {"error": "runId not found"}

    def test_negative_cursor(self, client: TestClient) -> None:
        run_id = start_consensus(client)

        response = client.get("/workflows/stream", params={"runId": run_id, "cursor": -1})

        assert response.status_code == 400


class TestReplay:
    """Tests for replaying finished runs."""

    def test_replay_matches_log(self, client: TestClient) -> None:
        run_id = start_consensus(client)
        live = follow(client, run_id)

        response = client.get(
            "/workflows/replay", params={"runId": run_id, "speed": 10, "maxDelayMs": 0}
        )

        assert response.status_code == 200
        assert response.headers["x-agent-run-id"] == str(run_id)
        assert ndjson(response.text) == live

    def test_invalid_speed(self, client: TestClient) -> None:
        run_id = start_consensus(client)

        response = client.get("/workflows/replay", params={"runId": run_id, "speed": "fast"})

        assert response.status_code == 400

    def test_unknown_run(self, client: TestClient) -> None:
        response = client.get("/workflows/replay", params={"runId": 999})

        assert response.status_code == 404


class TestRuns:
    """Tests for run inspection and cancellation."""

    def test_get_run(self, client: TestClient) -> None:
        run_id = start_consensus(client)
        events = follow(client, run_id)

        body = client.get(f"/runs/{run_id}").json()

        assert body["run"]["id"] == run_id
        assert body["run"]["status"] == "completed"
        assert body["run"]["agentType"] == "consensus"
        assert [s["stepName"] for s in body["steps"]] == [
            "fetch_data",
            "parallel_analysis",
            "synthesize_consensus",
        ]
        assert body["eventCount"] == len(events)
        assert body["active"] is False

    def test_get_unknown_run(self, client: TestClient) -> None:
        assert client.get("/runs/999").status_code == 404
        assert client.get("/runs/abc").status_code == 400

    def test_list_runs(self, client: TestClient) -> None:
        first = start_consensus(client)
        second = start_consensus(client)
        follow(client, first)
        follow(client, second)

        runs = client.get("/runs", params={"agentType": "consensus"}).json()["runs"]
        assert [r["id"] for r in runs] == [second, first]

        assert client.get("/runs", params={"agentType": "research"}).json()["runs"] == []
        assert len(client.get("/runs", params={"limit": 1}).json()["runs"]) == 1

    def test_list_runs_invalid_filters(self, client: TestClient) -> None:
        assert client.get("/runs", params={"agentType": "poetry"}).status_code == 400
        assert client.get("/runs", params={"agentType": "qa"}).status_code == 400
        assert client.get("/runs", params={"limit": "many"}).status_code == 400

    def test_cancel_finished_run(self, client: TestClient) -> None:
        """Test that cancelling a finished run leaves it unchanged."""
        run_id = start_consensus(client)
        follow(client, run_id)

        response = client.post(f"/runs/{run_id}/cancel")

        assert response.status_code == 200
        assert response.json()["run"]["status"] == "completed"

    def test_cancel_unknown_run(self, client: TestClient) -> None:
        assert client.post("/runs/999/cancel").status_code == 404
