"""HTTP surface: status codes and error bodies."""

from datetime import datetime, timedelta


def _when(days: int = 1) -> str:
    return (datetime.utcnow() + timedelta(days=days)).isoformat()


async def test_requires_authentication(client):
    r = await client.get("/v1/credits/balance")
    assert r.status_code == 401
    assert r.json()["error"]["code"] == "UNAUTHORIZED"


async def test_tampered_cookie_rejected(client):
    r = await client.get("/v1/credits/balance", headers={"Cookie": "skillswap_session=not-a-valid-cookie"})
    assert r.status_code == 401


async def test_balance_and_purchase(client, student, auth_headers):
    headers = auth_headers(student)
    r = await client.get("/v1/credits/balance", headers=headers)
    assert r.json() == {"balance": 10}

    r = await client.post(
        "/v1/credits/purchase",
        json={"amount": 5, "payment_method": "card"},
        headers={**headers, "Idempotency-Key": "order-1"},
    )
    assert r.status_code == 201
    body = r.json()
    assert body["balance"] == 15
    assert body["transaction"]["type"] == "credit_purchase"

    again = await client.post(
        "/v1/credits/purchase",
        json={"amount": 5, "payment_method": "card"},
        headers={**headers, "Idempotency-Key": "order-1"},
    )
    assert again.json()["transaction"]["id"] == body["transaction"]["id"]
    assert again.json()["balance"] == 15


async def test_purchase_validation(client, student, auth_headers):
    r = await client.post(
        "/v1/credits/purchase", json={"amount": 0, "payment_method": "card"}, headers=auth_headers(student)
    )
    assert r.status_code == 422
    assert r.json()["error"]["code"] == "VALIDATION_ERROR"


async def test_transfer_errors(client, student, teacher, auth_headers):
    headers = auth_headers(student)
    r = await client.post("/v1/credits/transfer", json={"to_user_id": str(student.id), "amount": 1}, headers=headers)
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "SELF_TRANSFER"

    r = await client.post("/v1/credits/transfer", json={"to_user_id": "nope", "amount": 1}, headers=headers)
    assert r.status_code == 404
    assert r.json()["error"]["code"] == "RECIPIENT_NOT_FOUND"

    r = await client.post("/v1/credits/transfer", json={"to_user_id": str(teacher.id), "amount": 50}, headers=headers)
    assert r.status_code == 400
    error = r.json()["error"]
    assert error["code"] == "INSUFFICIENT_CREDITS"
    assert error["details"] == {"required": 50, "available": 10, "shortfall": 40}

    r = await client.post("/v1/credits/transfer", json={"to_user_id": str(teacher.id), "amount": 3}, headers=headers)
    assert r.status_code == 201
    assert r.json()["balance"] == 7
    assert [t["amount"] for t in r.json()["transactions"]] == [-3]


async def test_history_and_stats(client, student, auth_headers):
    headers = auth_headers(student)
    r = await client.get("/v1/credits/history", params={"type": "bonus"}, headers=headers)
    assert r.status_code == 200
    body = r.json()
    assert [t["amount"] for t in body["transactions"]] == [10]
    assert body["pagination"] == {"page": 1, "limit": 20, "total": 1, "pages": 1}

    r = await client.get("/v1/credits/history", params={"type": "gift"}, headers=headers)
    assert r.status_code == 400

    r = await client.get("/v1/credits/stats", params={"period": "7d"}, headers=headers)
    assert r.json()["earned"] == 10


async def test_session_booking_flow(client, student, teacher, auth_headers):
    as_student = auth_headers(student)
    as_teacher = auth_headers(teacher)

    r = await client.post(
        "/v1/sessions",
        json={"teacher": str(teacher.id), "skill": "Mathematics", "scheduled_for": _when(), "duration": 90},
        headers=as_student,
    )
    assert r.status_code == 201
    session_id = r.json()["session"]["id"]
    assert r.json()["session"]["status"] == "pending"

    r = await client.patch(f"/v1/sessions/{session_id}/status", json={"status": "confirmed"}, headers=as_student)
    assert r.status_code == 403

    r = await client.patch(f"/v1/sessions/{session_id}/status", json={"status": "confirmed"}, headers=as_teacher)
    assert r.status_code == 200
    assert r.json()["session"]["status"] == "confirmed"
    r = await client.get("/v1/credits/balance", headers=as_student)
    assert r.json() == {"balance": 8}

    r = await client.patch(f"/v1/sessions/{session_id}/status", json={"status": "confirmed"}, headers=as_teacher)
    assert r.status_code == 409
    error = r.json()["error"]
    assert error["code"] == "INVALID_TRANSITION"
    assert error["details"] == {"current_status": "confirmed", "requested_status": "confirmed"}

    r = await client.patch(f"/v1/sessions/{session_id}/status", json={"status": "completed"}, headers=as_teacher)
    assert r.status_code == 200

    r = await client.post(f"/v1/sessions/{session_id}/rate", json={"rating": 5}, headers=as_student)
    assert r.status_code == 200
    assert r.json()["teacher_rating"] == 5.0
    assert r.json()["teacher_total_reviews"] == 1

    r = await client.post(f"/v1/sessions/{session_id}/rate", json={"rating": 4}, headers=as_student)
    assert r.status_code == 409
    assert r.json()["error"]["code"] == "ALREADY_RATED"

    r = await client.delete(f"/v1/sessions/{session_id}", headers=as_student)
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "NOT_DELETABLE"


async def test_session_create_errors(client, make_user, teacher, auth_headers):
    poor = await make_user(credits=1)
    headers = auth_headers(poor)
    r = await client.post(
        "/v1/sessions",
        json={"teacher": str(teacher.id), "skill": "Mathematics", "scheduled_for": _when(), "duration": 120},
        headers=headers,
    )
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "INSUFFICIENT_CREDITS"
    assert r.json()["error"]["details"]["required"] == 2

    r = await client.post(
        "/v1/sessions",
        json={"teacher": "not-an-id", "skill": "Mathematics", "scheduled_for": _when(), "duration": 60},
        headers=headers,
    )
    assert r.status_code == 404
    assert r.json()["error"]["code"] == "TEACHER_NOT_FOUND"

    r = await client.post(
        "/v1/sessions",
        json={"teacher": str(teacher.id), "skill": "Cooking", "scheduled_for": _when(), "duration": 60},
        headers=headers,
    )
    assert r.json()["error"]["code"] == "SKILL_NOT_OFFERED"

    r = await client.post(
        "/v1/sessions",
        json={"teacher": str(teacher.id), "skill": "Mathematics", "scheduled_for": _when(-1), "duration": 60},
        headers=headers,
    )
    assert r.json()["error"]["code"] == "PAST_SCHEDULE"

    r = await client.get("/v1/sessions", headers=headers)
    assert r.json()["pagination"]["total"] == 0


async def test_session_visibility(client, student, teacher, make_user, auth_headers):
    outsider = await make_user(credits=0)
    r = await client.post(
        "/v1/sessions",
        json={"teacher": str(teacher.id), "skill": "Guitar", "scheduled_for": _when(), "duration": 60},
        headers=auth_headers(student),
    )
    session_id = r.json()["session"]["id"]

    r = await client.get(f"/v1/sessions/{session_id}", headers=auth_headers(outsider))
    assert r.status_code == 403
    r = await client.get("/v1/sessions/000000000000000000000000", headers=auth_headers(teacher))
    assert r.status_code == 404
    r = await client.get("/v1/sessions", params={"role": "teacher"}, headers=auth_headers(teacher))
    assert [s["id"] for s in r.json()["sessions"]] == [session_id]

    r = await client.delete(f"/v1/sessions/{session_id}", headers=auth_headers(student))
    assert r.status_code == 204


async def test_reminder_routes_are_admin_only(client, student, teacher, make_user, auth_headers):
    admin = await make_user(credits=0, role="admin")
    r = await client.post(
        "/v1/sessions",
        json={"teacher": str(teacher.id), "skill": "Guitar", "scheduled_for": _when(), "duration": 60},
        headers=auth_headers(student),
    )
    session_id = r.json()["session"]["id"]
    await client.patch(f"/v1/sessions/{session_id}/status", json={"status": "confirmed"}, headers=auth_headers(teacher))

    r = await client.get("/v1/reminders/stats", headers=auth_headers(student))
    assert r.status_code == 403

    r = await client.post(f"/v1/reminders/send/{session_id}", json={"reminder_type": "1h"}, headers=auth_headers(admin))
    assert r.status_code == 200
    assert r.json()["reminders_sent"] == ["1h"]

    r = await client.get("/v1/reminders/stats", headers=auth_headers(admin))
    assert r.json()["stats"]["total_reminders"] == 1
