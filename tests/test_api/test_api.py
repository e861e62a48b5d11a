"""
HTTP surface tests: routing, error mapping and the progress stream.
"""

import asyncio
import json

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from mailfin.config import settings
from mailfin.dependencies import get_checker, get_db, get_orchestrator, get_session_factory
from mailfin.main import create_app
from mailfin.pipeline.invoker import StubInvoker, StubQaChecker
from mailfin.schemas.extraction import FieldIssue, QaFinding


def _events(body: str) -> list[dict]:
    return [json.loads(line[len("data: "):]) for line in body.splitlines() if line.startswith("data: ")]


@pytest.fixture
def invoker(make_trade, make_document):
    return StubInvoker(default=make_document(make_trade()))


class FlagAmount(StubQaChecker):
    """Flags the amount of every transaction."""

    async def check(self, transaction, email, model_id, prompt_text):
        return QaFinding(
            has_issues=True,
            field_issues=[FieldIssue(field="amount", current_value="100.00", suggested_value="110.00")],
        )


@pytest.fixture
def checker():
    return FlagAmount()


@pytest_asyncio.fixture
async def client(session_factory, make_orchestrator, invoker, checker):
    app = create_app()
    orchestrator = make_orchestrator(invoker)

    async def override_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_checker] = lambda: checker
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http


async def _seed(client, *subjects):
    resp = await client.post("/api/v1/sets", json={"name": "inbox"})
    assert resp.status_code == 201
    set_id = resp.json()["id"]
    for index, subject in enumerate(subjects):
        resp = await client.post(
            f"/api/v1/sets/{set_id}/emails",
            json={"subject": subject, "sender": "alerts@broker.example", "body_text": f"Body {index}"},
        )
        assert resp.status_code == 201
    return set_id


async def _stream_run(client, set_id, prompt_text="Extract every transaction."):
    resp = await client.post(
        "/api/v1/runs/stream",
        json={"set_id": set_id, "model_id": "model-a", "prompt_text": prompt_text, "concurrency": 2},
    )
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    return _events(resp.text)


class TestEmailEndpoints:

    async def test_intake_dedup(self, client):
        set_id = await _seed(client, "Dividend")
        resp = await client.post(
            f"/api/v1/sets/{set_id}/emails",
            json={"subject": "Dividend", "sender": "alerts@broker.example", "body_text": "Body 0"},
        )
        assert resp.status_code == 201
        assert resp.json()["created"] is False

        resp = await client.get(f"/api/v1/sets/{set_id}")
        assert resp.json()["email_count"] == 1

    async def test_unknown_set_maps_to_404(self, client):
        resp = await client.post("/api/v1/sets/missing/emails", json={"subject": "x"})
        assert resp.status_code == 404
        assert resp.json()["error_code"] == "ERR_NOT_FOUND"

    async def test_reset_without_selector_is_422(self, client):
        resp = await client.post("/api/v1/emails/reset", json={})
        assert resp.status_code == 422
        assert resp.json()["error_code"] == "ERR_INVALID_REQUEST"

    async def test_overrides_for_unknown_email_is_404(self, client):
        resp = await client.put("/api/v1/emails/missing/overrides", json={"overrides": {"amount": "1"}})
        assert resp.status_code == 404


class TestRunEndpoints:

    async def test_stream_then_detail(self, client):
        set_id = await _seed(client, "a", "b", "c")

        events = await _stream_run(client, set_id)

        assert events[0]["stage"] == "extracting"
        assert events[-1]["stage"] == "complete"
        assert events[-1]["details"]["status"] == "completed"
        run_id = events[-1]["details"]["run_id"]

        resp = await client.get(f"/api/v1/runs/{run_id}")
        assert resp.status_code == 200
        detail = resp.json()
        assert detail["run"]["status"] == "completed"
        assert detail["run"]["transactions_created"] == 3
        assert detail["progress"]["processed"] == 3

        resp = await client.get(f"/api/v1/runs/{run_id}/progress")
        progress = _events(resp.text)
        assert len(progress) == 1
        assert progress[0]["stage"] == "complete"

        resp = await client.get("/api/v1/runs", params={"set_id": set_id})
        assert [r["id"] for r in resp.json()] == [run_id]

    async def test_duplicate_run_is_409(self, client):
        set_id = await _seed(client, "a")
        events = await _stream_run(client, set_id)
        run_id = events[-1]["details"]["run_id"]

        resp = await client.post(
            "/api/v1/runs/stream",
            json={"set_id": set_id, "model_id": "model-a", "prompt_text": "Extract every transaction."},
        )
        assert resp.status_code == 409
        body = resp.json()
        assert body["error_code"] == "ERR_DUPLICATE_RUN"
        assert body["existing_run_id"] == run_id

        resp = await client.get("/api/v1/runs/eligibility", params={"set_id": set_id, "model_id": "model-a"})
        assert resp.json()["eligible"] is False

    async def test_cancel_completed_run_is_409(self, client):
        set_id = await _seed(client, "a")
        events = await _stream_run(client, set_id)
        resp = await client.post(f"/api/v1/runs/{events[-1]['details']['run_id']}/cancel", json={"notes": "late"})
        assert resp.status_code == 409
        assert resp.json()["error_code"] == "ERR_INVALID_TRANSITION"

    async def test_comparison_of_one_run_with_itself_is_422(self, client):
        set_id = await _seed(client, "a")
        run_id = (await _stream_run(client, set_id))[-1]["details"]["run_id"]
        resp = await client.post(
            "/api/v1/runs/synthesize",
            json={"run_a_id": run_id, "run_b_id": run_id, "primary_run_id": run_id},
        )
        assert resp.status_code == 422

    async def test_unknown_run_is_404(self, client):
        resp = await client.get("/api/v1/runs/missing")
        assert resp.status_code == 404

    async def test_missing_prompt_is_422(self, client):
        set_id = await _seed(client, "a")
        resp = await client.post("/api/v1/runs/stream", json={"set_id": set_id, "model_id": "model-a"})
        assert resp.status_code == 422

    async def test_api_key_enforced(self, client, monkeypatch):
        monkeypatch.setattr(settings, "API_KEY", "secret")
        assert (await client.get("/api/v1/runs")).status_code == 401
        assert (await client.get("/api/v1/runs", headers={"X-API-Key": "secret"})).status_code == 200


class TestQaEndpoints:

    async def _wait_for(self, client, qa_run_id, status="completed"):
        for _ in range(100):
            summary = (await client.get(f"/api/v1/qa/{qa_run_id}")).json()
            if summary["qa_run"]["status"] == status:
                return summary
            await asyncio.sleep(0.02)
        raise AssertionError(f"QA run {qa_run_id} never reached {status}")

    async def test_review_and_synthesize(self, client):
        set_id = await _seed(client, "a", "b")
        events = await _stream_run(client, set_id)
        run_id = events[-1]["details"]["run_id"]
        resp = await client.post("/api/v1/qa", json={"source_run_id": run_id, "model_id": "qa-model"})
        assert resp.status_code == 201
        qa_run_id = resp.json()["id"]

        summary = await self._wait_for(client, qa_run_id)
        assert summary["fields"][0]["field"] == "amount"
        assert summary["fields"][0]["count"] == 2

        resp = await client.post(f"/api/v1/qa/{qa_run_id}/accept-field", json={"field": "amount"})
        assert resp.json() == {"updated": 2, "skipped": 0}

        results = (await client.get(f"/api/v1/qa/{qa_run_id}/results", params={"status": "accepted"})).json()
        assert len(results) == 2

        resp = await client.post(f"/api/v1/qa/{qa_run_id}/synthesize", json={"name": "Corrected"})
        assert resp.status_code == 201
        assert resp.json()["corrections_applied"] == 2

        resp = await client.post(f"/api/v1/qa/{qa_run_id}/synthesize")
        assert resp.status_code == 409
        assert resp.json()["error_code"] == "ERR_ALREADY_SYNTHESIZED"

    async def test_qa_of_unknown_run_is_404(self, client):
        resp = await client.post("/api/v1/qa", json={"source_run_id": "missing", "model_id": "qa-model"})
        assert resp.status_code == 404


class TestHealth:

    async def test_health_reports_database(self, client, session_factory, monkeypatch):
        monkeypatch.setattr("mailfin.api.health.async_session_factory", session_factory)
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["database"] == "connected"
        assert (await client.get("/health/ready")).json() == {"ready": True}
