"""End-to-end tests for the monitoring HTTP surface."""

import uuid
from datetime import UTC, datetime, timedelta

import pytest

from submission_monitor.db.models.submission import Submission

pytestmark = pytest.mark.integration

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


def _seed(client, events, pathway="direct"):
    """Create a submission and record ``(stage, status, minutes_after_t0)`` events in the client's loop."""
    engine = client.app.state.engine
    session_factory = client.app.state.session_factory
    sid = uuid.uuid4()

    async def _run():
        async with session_factory() as session:
            session.add(Submission(id=sid, project_id=uuid.uuid4(), pathway=pathway, created_at=T0))
            await session.commit()
        for stage, status, minutes in events:
            await engine.tracker.track_progress(sid, stage, status, occurred_at=T0 + timedelta(minutes=minutes))

    client.portal.call(_run)
    return sid


def test_health_liveness(api_client):
    response = api_client.get("/api/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "service": "submission-monitor"}
    assert "x-request-id" in response.headers


def test_health_returns_503_while_draining(api_client):
    api_client.app.state.shutting_down = True

    response = api_client.get("/api/health")

    assert response.status_code == 503
    assert response.json()["status"] == "shutting_down"


def test_readiness(api_client):
    response = api_client.get("/api/ready")

    assert response.status_code == 200
    assert response.json()["checks"] == {"database": True, "redis": True}


def test_system_health_after_probe_run(api_client):
    api_client.portal.call(api_client.app.state.engine.health.run_probes)

    response = api_client.get("/api/health/system")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert {c["component"] for c in body["components"]} == {"database", "redis", "event_store"}

    integrations = api_client.get("/api/health/integrations").json()
    assert integrations["components"] == []


def test_detailed_health(api_client):
    api_client.portal.call(api_client.app.state.engine.health.run_probes)

    response = api_client.get("/api/health/detailed", params={"component": "redis"})

    assert response.status_code == 200
    body = response.json()
    assert [h["component"] for h in body["history"]] == ["redis"]
    assert body["retry_statistics"]["total"] == 0
    assert api_client.get("/api/health/detailed", params={"limit": 0}).status_code == 422


def test_public_status(api_client):
    sid = _seed(
        api_client,
        [("submission_created", "completed", 0), ("document_generation", "in_progress", 5)],
    )

    response = api_client.get(f"/api/submissions/{sid}/status")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "in_progress"
    assert body["latest_stage_label"] == "Generating documents"
    assert [e["stage"] for e in body["timeline"]] == ["submission_created", "document_generation"]
    assert body["stale"] is False


def test_public_status_unknown_submission(api_client):
    response = api_client.get(f"/api/submissions/{uuid.uuid4()}/status")

    assert response.status_code == 404
    body = response.json()
    assert body["code"] == "not_found"
    uuid.UUID(body["debug_id"])


def test_public_status_is_rate_limited(api_client):
    sid = _seed(api_client, [("submission_created", "completed", 0)])
    api_client.app.state.engine.settings.trusted_proxy_hops = 1

    for _ in range(30):
        assert api_client.get(f"/api/submissions/{sid}/status").status_code == 200

    response = api_client.get(f"/api/submissions/{sid}/status")
    assert response.status_code == 429
    assert response.json()["code"] == "rate_limited"
    assert int(response.headers["retry-after"]) >= 1

    # Other clients behind the proxy keep their own quota
    other = api_client.get(f"/api/submissions/{sid}/status", headers={"X-Forwarded-For": "203.0.113.9"})
    assert other.status_code == 200


def test_forwarded_for_is_ignored_without_trusted_proxy(api_client):
    sid = _seed(api_client, [("submission_created", "completed", 0)])

    for i in range(30):
        headers = {"X-Forwarded-For": f"203.0.113.{i}"}
        assert api_client.get(f"/api/submissions/{sid}/status", headers=headers).status_code == 200

    spoofed = api_client.get(f"/api/submissions/{sid}/status", headers={"X-Forwarded-For": "198.51.100.1"})
    assert spoofed.status_code == 429


def test_overview_counts_in_progress_submission(api_client):
    _seed(
        api_client,
        [
            ("submission_created", "completed", 0),
            ("document_generation", "completed", 5),
            ("review_preparation", "in_progress", 10),
        ],
    )

    response = api_client.get("/api/submissions/overview")

    assert response.status_code == 200
    body = response.json()
    assert body["stats"]["total"] == 1
    assert body["stats"]["in_progress"] == 1
    assert body["exhausted_retries"] == []


def test_recent_failed_and_by_status(api_client):
    failed = _seed(api_client, [("council_delivery", "failed", 0)])
    done = _seed(api_client, [("council_delivery", "completed", 1)], pathway="review")

    recent = api_client.get("/api/submissions/recent").json()
    assert [item["submission_id"] for item in recent["items"]] == [str(done), str(failed)]

    only_failed = api_client.get("/api/submissions/failed").json()
    assert [item["submission_id"] for item in only_failed["items"]] == [str(failed)]

    completed = api_client.get("/api/submissions/by-status", params={"status": "completed", "pathway": "review"})
    assert [item["submission_id"] for item in completed.json()["items"]] == [str(done)]

    bad = api_client.get("/api/submissions/by-status", params={"status": "archived"})
    assert bad.status_code == 422
    assert bad.json()["code"] == "validation_error"

    assert api_client.get("/api/submissions/recent", params={"limit": 101}).status_code == 422


def test_admin_timeline_and_rebuild(api_client):
    sid = _seed(api_client, [("submission_created", "completed", 0), ("review", "pending", 3)])

    timeline = api_client.get(f"/api/admin/submissions/{sid}/timeline").json()
    assert [e["stage_label"] for e in timeline["timeline"]] == ["Submission received", "Awaiting review"]

    rebuilt = api_client.post(f"/api/admin/submissions/{sid}/rebuild").json()
    assert rebuilt["snapshot"]["latest_stage"] == "review"

    missing = api_client.get(f"/api/admin/submissions/{uuid.uuid4()}/timeline")
    assert missing.status_code == 404


def test_admin_analytics_endpoints(api_client):
    _seed(api_client, [("document_generation", "failed", 0)])

    stats = api_client.get("/api/admin/analytics/stats").json()
    assert stats["failed"] == 1
    pathways = api_client.get("/api/admin/analytics/pathways").json()
    assert pathways["pathways"][0]["pathway"] == "direct"
    assert api_client.get("/api/admin/analytics/errors").status_code == 200
    assert api_client.get("/api/admin/analytics/integrations").json()["integrations"] == []

    flushed = api_client.post("/api/admin/analytics/invalidate", params={"prefix": "stats"}).json()
    assert flushed == {"invalidated": 1}


def test_admin_retry_endpoints(api_client):
    stats = api_client.get("/api/admin/retry/statistics", params={"hours": 48})
    assert stats.status_code == 200
    assert stats.json()["window_hours"] == 48
    assert api_client.get("/api/admin/retry/statistics", params={"hours": 169}).status_code == 422

    assert api_client.get("/api/admin/retry/tasks").json() == []

    missing = api_client.post(f"/api/admin/retry/{uuid.uuid4()}")
    assert missing.status_code == 404
    assert missing.json()["code"] == "not_found"


def test_admin_routes_require_token(anon_client):
    response = anon_client.get("/api/submissions/overview")

    assert response.status_code == 401
    body = response.json()
    assert body["code"] == "http_error"
    assert "debug_id" in body


def test_custom_correlation_id_echoed(api_client):
    response = api_client.get("/api/health", headers={"X-Request-ID": "custom-id-123"})

    assert response.headers["x-request-id"] == "custom-id-123"
