from __future__ import annotations

import pytest

from supportiq.apps.api.deps import get_llm
from supportiq.tests.utils.auth import create_test_user, seed_tickets


CSV_BODY = (
    "subject,description,status,email\n"
    "Login,I cannot log in to my account,open,a@example.com\n"
    "Invoice,Please resend my invoice,closed,b@example.com\n"
    "Blank,,open,c@example.com\n"
)


@pytest.mark.asyncio
async def test_csv_upload_as_raw_body(client) -> None:
    _user, headers = await create_test_user(with_trial=True)
    response = await client.post(
        "/api/tickets/upload", content=CSV_BODY, headers={**headers, "Content-Type": "text/csv"}
    )
    assert response.status_code == 200
    body = response.json()
    assert body["imported"] == 2
    assert body["skipped"] == 1

    listing = await client.get("/api/tickets", headers=headers)
    assert listing.json()["total"] == 2
    assert {ticket["source"] for ticket in listing.json()["tickets"]} == {"csv"}


@pytest.mark.asyncio
async def test_csv_upload_as_multipart_form(client) -> None:
    _user, headers = await create_test_user()
    response = await client.post(
        "/api/tickets/upload",
        files={"file": ("tickets.csv", CSV_BODY.encode("utf-8"), "text/csv")},
        headers=headers,
    )
    assert response.status_code == 200
    assert response.json()["imported"] == 2


@pytest.mark.asyncio
async def test_csv_upload_rejections(client) -> None:
    _user, headers = await create_test_user()
    wrong_type = await client.post(
        "/api/tickets/upload", content=b"{}", headers={**headers, "Content-Type": "application/json"}
    )
    assert wrong_type.status_code == 415
    assert wrong_type.json()["code"] == "INVALID_FILE_TYPE"

    wrong_name = await client.post(
        "/api/tickets/upload", files={"file": ("tickets.xlsx", b"data", "application/octet-stream")}, headers=headers
    )
    assert wrong_name.status_code == 415

    missing_columns = await client.post(
        "/api/tickets/upload", content="name,email\nA,a@example.com\n", headers={**headers, "Content-Type": "text/csv"}
    )
    assert missing_columns.status_code == 400
    assert missing_columns.json()["code"] == "INVALID_CSV"

    no_rows = await client.post(
        "/api/tickets/upload", content="subject,description,status\n", headers={**headers, "Content-Type": "text/csv"}
    )
    assert no_rows.status_code == 400
    assert no_rows.json()["code"] == "NO_VALID_ROWS"


@pytest.mark.asyncio
async def test_csv_upload_blocked_when_trial_limit_reached(client) -> None:
    _user, headers = await create_test_user(with_trial=True, trial_usage={"tickets_processed": 1000})
    response = await client.post(
        "/api/tickets/upload", content=CSV_BODY, headers={**headers, "Content-Type": "text/csv"}
    )
    assert response.status_code == 402
    assert response.json()["code"] == "TRIAL_LIMIT_EXCEEDED"


@pytest.mark.asyncio
async def test_csv_upload_is_capped_at_remaining_trial_allowance(client) -> None:
    _user, headers = await create_test_user(with_trial=True, trial_usage={"tickets_processed": 999})
    response = await client.post(
        "/api/tickets/upload", content=CSV_BODY, headers={**headers, "Content-Type": "text/csv"}
    )
    assert response.status_code == 200
    body = response.json()
    assert body["imported"] == 1
    assert body["truncated"] == 1
    assert any("Trial ticket limit reached" in error for error in body["errors"])

    listed = await client.get("/api/tickets", headers=headers)
    assert listed.json()["total"] == 1
    status = await client.get("/api/trial/status", headers=headers)
    assert status.json()["trial"]["usage"]["tickets_processed"] == 1000
    assert status.json()["remaining"]["tickets_processed"] == 0


@pytest.mark.asyncio
async def test_ticket_listing_filters_and_tenant_scope(client) -> None:
    owner, headers = await create_test_user()
    other, other_headers = await create_test_user()
    ids = await seed_tickets(
        owner.id,
        [
            {"subject": "Password reset", "status": "open", "category": "Account"},
            {"subject": "Refund", "status": "closed", "category": "Billing"},
        ],
    )
    await seed_tickets(other.id, [{"subject": "Someone else"}])

    closed = await client.get("/api/tickets", params={"status": "closed"}, headers=headers)
    assert [ticket["subject"] for ticket in closed.json()["tickets"]] == ["Refund"]

    searched = await client.get("/api/tickets", params={"search": "password"}, headers=headers)
    assert searched.json()["total"] == 1

    bad_status = await client.get("/api/tickets", params={"status": "weird"}, headers=headers)
    assert bad_status.status_code == 422

    detail = await client.get(f"/api/tickets/{ids[0]}", headers=headers)
    assert detail.status_code == 200
    assert detail.json()["ticket"]["keywords"] == []

    foreign = await client.get(f"/api/tickets/{ids[0]}", headers=other_headers)
    assert foreign.status_code == 404
    assert foreign.json()["code"] == "TICKET_NOT_FOUND"


@pytest.mark.asyncio
async def test_analyze_classifies_unanalyzed_tickets(client, fake_llm) -> None:
    owner, headers = await create_test_user()
    ids = await seed_tickets(owner.id, [{"subject": "How do I export data?"}, {"subject": "Where is the API key?"}])

    response = await client.post("/api/analyze", json={}, headers=headers)
    assert response.status_code == 200
    body = response.json()
    assert body["analyzed"] == 2
    assert {ticket["category"] for ticket in body["tickets"]} == {"How-to"}
    assert body["metrics"]["total_tickets"] == 2
    assert len(fake_llm.calls) == 2

    again = await client.post("/api/analyze", json={"ticket_ids": ids}, headers=headers)
    assert again.json()["analyzed"] == 0
    assert again.json()["skipped"] == 2

    forced = await client.post("/api/analyze", json={"ticket_ids": ids[:1], "force_reanalysis": True}, headers=headers)
    assert forced.json()["analyzed"] == 1


@pytest.mark.asyncio
async def test_deflect_auto_resolves_with_confident_response(client) -> None:
    owner, headers = await create_test_user()
    [ticket_id] = await seed_tickets(owner.id, [{"subject": "Export question"}])

    response = await client.post(f"/api/tickets/{ticket_id}/deflect", headers=headers)
    assert response.status_code == 200
    body = response.json()
    assert body["should_respond"] is True
    assert body["ticket_status"] == "auto_resolved"
    assert body["response"]["type"] == "auto_resolve"
    assert body["sent_to_intercom"] is False

    missing = await client.post("/api/tickets/missing/deflect", headers=headers)
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_triage_drafts_replies_and_respects_dry_run(app, client) -> None:
    app.dependency_overrides[get_llm] = lambda: None
    owner, headers = await create_test_user()
    password_id, bug_id = await seed_tickets(
        owner.id,
        [
            {"subject": "Forgot password", "content": "I forgot my password and need to reset my login."},
            {"subject": "Crash", "content": "The export is broken and shows an error."},
        ],
    )

    preview = await client.post(
        "/api/tickets/deflect", json={"ticket_ids": [password_id], "dry_run": True}, headers=headers
    )
    assert preview.status_code == 200
    assert preview.json()["deflected_count"] == 0
    [drafted] = preview.json()["results"]
    assert drafted["deflection_response"]["can_deflect"] is True
    assert drafted["deflected"] is False
    assert (await client.get(f"/api/tickets/{password_id}", headers=headers)).json()["ticket"]["category"] is None

    applied = await client.post("/api/tickets/deflect", json={}, headers=headers)
    body = applied.json()
    assert body["analyzed_count"] == 2
    assert body["deflected_count"] == 1
    by_id = {item["ticket_id"]: item for item in body["results"]}
    assert by_id[bug_id]["deflection_response"]["can_deflect"] is False
    assert by_id[bug_id]["deflection_response"]["follow_up_required"] is True

    stored = (await client.get(f"/api/tickets/{password_id}", headers=headers)).json()["ticket"]
    assert stored["deflected"] is True
    assert stored["category"] == "Account"
    assert stored["deflection_response"]

    # Deflected tickets are not triaged again.
    repeat = await client.post("/api/tickets/deflect", json={"ticket_id": password_id}, headers=headers)
    assert repeat.json()["analyzed_count"] == 0
