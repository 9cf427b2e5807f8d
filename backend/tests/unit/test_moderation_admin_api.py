from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from modconsole.moderation.domain.models import Report, ReportStatus

ADMIN = {"X-Admin-Id": "admin-1", "X-Admin-Email": "admin@example.com"}


@pytest.mark.asyncio
async def test_requires_staff_header(api_client) -> None:
    missing = await api_client.get("/admin/configuration")
    assert missing.status_code == 422

    denied = await api_client.get("/admin/configuration", headers={"X-Admin-Id": "stranger"})
    assert denied.status_code == 403
    assert denied.json()["detail"] == "admin_required"


@pytest.mark.asyncio
async def test_configuration_read_update_and_logs(api_client) -> None:
    current = await api_client.get("/admin/configuration", headers=ADMIN)
    assert current.status_code == 200
    assert current.json()["report_thresholds"] == {"normal": 2, "warning": 5, "urgent": 10}

    updated = await api_client.patch(
        "/admin/configuration",
        json={"ban_threshold": 3, "report_thresholds": {"urgent": 15}},
        headers=ADMIN,
    )
    assert updated.status_code == 200
    body = updated.json()
    assert body["ban_threshold"] == 3
    assert body["report_thresholds"]["urgent"] == 15
    assert body["updated_by"] == "admin-1"

    logs = await api_client.get("/admin/configuration/logs", params={"limit": 5}, headers=ADMIN)
    assert logs.status_code == 200
    entries = logs.json()
    assert sorted(entry["field"] for entry in entries) == ["ban_threshold", "report_thresholds.urgent"]
    assert {entry["admin_email"] for entry in entries} == {"admin@example.com"}


@pytest.mark.asyncio
async def test_invalid_configuration_lists_errors(api_client) -> None:
    response = await api_client.patch(
        "/admin/configuration",
        json={"report_thresholds": {"normal": 5, "warning": 3}},
        headers=ADMIN,
    )
    assert response.status_code == 422
    detail = response.json()["detail"]
    assert detail["detail"] == "invalid_configuration"
    assert "report_thresholds.normal must be less than report_thresholds.warning" in detail["errors"]


@pytest.mark.asyncio
async def test_configuration_rejects_non_finite_numbers(api_client) -> None:
    for raw in ('{"emoji_pin_price": NaN}', '{"emoji_pin_price": Infinity}'):
        response = await api_client.patch(
            "/admin/configuration",
            content=raw,
            headers={**ADMIN, "Content-Type": "application/json"},
        )
        assert response.status_code == 422

    current = await api_client.get("/admin/configuration", headers=ADMIN)
    assert current.json()["emoji_pin_price"] == 10.0


@pytest.mark.asyncio
async def test_report_status_endpoint(api_client, runtime, make_user, make_post) -> None:
    await make_user("owner")
    await make_post("post-1", "owner")
    report = await runtime.orchestrator.submit_report(
        reporter_id="a", reported_user_id="owner", post_id="post-1", category="spam"
    )

    resolved = await api_client.patch(f"/admin/reports/{report.id}", json={"status": "resolved"}, headers=ADMIN)
    assert resolved.status_code == 200
    assert resolved.json()["status"] == "resolved"

    again = await api_client.patch(f"/admin/reports/{report.id}", json={"status": "dismissed"}, headers=ADMIN)
    assert again.status_code == 409

    missing = await api_client.patch("/admin/reports/nope", json={"status": "resolved"}, headers=ADMIN)
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_announcement_endpoints(api_client, runtime) -> None:
    now = datetime.now(timezone.utc)
    item = await runtime.announcements.submit(
        title="Career fair",
        start_date=now - timedelta(minutes=5),
        end_date=now + timedelta(days=1),
    )

    approved = await api_client.post(f"/admin/announcements/{item.id}/approve", headers=ADMIN)
    assert approved.status_code == 200
    assert approved.json()["status"] == "scheduled"

    evaluated = await api_client.post("/admin/announcements/evaluate", headers=ADMIN)
    assert evaluated.json() == {"expired": [], "activated": [item.id]}

    declined = await api_client.post(f"/admin/announcements/{item.id}/decline", headers=ADMIN)
    assert declined.status_code == 409

    removed = await api_client.post(f"/admin/announcements/{item.id}/remove", headers=ADMIN)
    assert removed.json()["status"] == "removed"


@pytest.mark.asyncio
async def test_post_endpoints(api_client, make_user, make_post) -> None:
    await make_user("owner")
    await make_post("post-1", "owner", report_count=6)

    info = await api_client.get("/admin/posts/post-1/moderation", headers=ADMIN)
    assert info.json() == {"severity_level": "warning", "requires_urgent_review": False, "should_notify_admin": True}

    removed = await api_client.post("/admin/posts/post-1/remove", json={"reason": "Off-topic"}, headers=ADMIN)
    assert removed.status_code == 200
    assert removed.json()["status"] == "removed"
    assert removed.json()["removed_reason"] == "Off-topic"


@pytest.mark.asyncio
async def test_sanction_endpoints(api_client, make_user) -> None:
    await make_user("owner")

    warned = await api_client.post("/admin/users/owner/warn", json={"message": "Please be kind"}, headers=ADMIN)
    assert warned.status_code == 200
    assert warned.json()["user"]["warning_count"] == 1
    assert warned.json()["ban_recommended"] is False

    suspended = await api_client.post(
        "/admin/users/owner/suspend",
        json={"reason": "spam", "duration_days": 7},
        headers=ADMIN,
    )
    assert suspended.json()["user"]["status"] == "suspended"

    banned = await api_client.post("/admin/users/owner/ban", json={"reason": "repeat"}, headers=ADMIN)
    assert banned.json()["action"] == "ban"
    assert banned.json()["user"]["ban_expires_at"] is None

    missing = await api_client.post("/admin/users/ghost/ban", json={"reason": "x"}, headers=ADMIN)
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_urgent_dashboard_and_ops(api_client, make_user, make_post) -> None:
    await make_user("owner")
    await make_post("hot", "owner", report_count=11)

    urgent = await api_client.get("/admin/urgent", headers=ADMIN)
    assert urgent.json()["total"] == 1
    assert urgent.json()["posts"][0]["id"] == "hot"

    assert (await api_client.get("/health/live")).json() == {"status": "ok"}
    ready = await api_client.get("/health/ready")
    assert ready.status_code == 200
    metrics = await api_client.get("/metrics")
    assert metrics.status_code == 200
    assert "mod_reports_total" in metrics.text


@pytest.mark.asyncio
async def test_sanction_notice_failure_returns_multi_status(
    api_client, store, make_user, make_post, monkeypatch
) -> None:
    await make_user("owner")
    await make_post("post-1", "owner")
    store.reports["r1"] = Report(id="r1", reporter_id="a", reported_user_id="owner", post_id="post-1", category="spam")

    async def _unavailable(notification):
        raise RuntimeError("notifications unavailable")

    monkeypatch.setattr(store, "create_notification", _unavailable)

    response = await api_client.post(
        "/admin/users/owner/suspend",
        json={"reason": "spam", "duration_days": 3},
        headers=ADMIN,
    )

    assert response.status_code == 207
    body = response.json()
    assert body["failed_step"] == "notify"
    assert body["notification_id"] is None
    assert body["resolved_report_ids"] == ["r1"]
    assert body["user"]["status"] == "suspended"
    assert store.reports["r1"].status is ReportStatus.RESOLVED


@pytest.mark.asyncio
async def test_report_statistics_endpoint(api_client, store) -> None:
    store.reports["r1"] = Report(id="r1", reporter_id="a", reported_user_id="u", post_id="p1", category="scam")
    store.reports["r2"] = Report(
        id="r2", reporter_id="b", reported_user_id="u", post_id="p1", category="spam", status=ReportStatus.DISMISSED
    )
    store.reports["r3"] = Report(
        id="r3", reporter_id="c", reported_user_id="u", post_id="p2", category="Spam", status=ReportStatus.RESOLVED
    )

    response = await api_client.get("/admin/reports/statistics", headers=ADMIN)

    assert response.status_code == 200
    assert response.json() == {
        "category_counts": {"scam": 1, "spam": 2},
        "severity_counts": {"high": 1, "medium": 0, "low": 2, "other": 0},
        "status_counts": {"pending": 1, "resolved": 1, "dismissed": 1},
        "total": 3,
    }


@pytest.mark.asyncio
async def test_reinstate_and_reset_warnings_endpoints(api_client, make_user) -> None:
    await make_user("owner")
    await api_client.post("/admin/users/owner/warn", json={}, headers=ADMIN)
    await api_client.post("/admin/users/owner/ban", json={"reason": "repeat", "duration_days": 5}, headers=ADMIN)

    reinstated = await api_client.post("/admin/users/owner/reinstate", headers=ADMIN)
    assert reinstated.status_code == 200
    body = reinstated.json()
    assert body["status"] == "active"
    assert body["banned_at"] is None
    assert body["ban_expires_at"] is None
    assert body["warning_count"] == 1

    reset = await api_client.post("/admin/users/owner/reset-warnings", headers=ADMIN)
    assert reset.status_code == 200
    assert reset.json()["warning_count"] == 0
    assert reset.json()["status"] == "active"

    assert (await api_client.post("/admin/users/ghost/reinstate", headers=ADMIN)).status_code == 404
    assert (await api_client.post("/admin/users/ghost/reset-warnings", headers=ADMIN)).status_code == 404
    denied = await api_client.post("/admin/users/owner/reinstate", headers={"X-Admin-Id": "stranger"})
    assert denied.status_code == 403
