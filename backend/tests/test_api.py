from datetime import datetime, timedelta, timezone
from uuid import uuid4

from fellowship.auth import login_limiter


def test_health_ok(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_ready_reports_fallback_modes(client):
    response = client.get("/ready")
    assert response.status_code == 200
    payload = response.json()
    assert payload["llm_configured"] is False
    assert payload["llm_mode"] == "fallback"
    assert payload["push_enabled"] is False
    assert payload["email_enabled"] is False


def test_signup_requires_letters_and_digits(client):
    response = client.post(
        "/auth/signup-request",
        json={"email": f"weak_{uuid4().hex[:6]}@fellowship.test", "password": "onlyletters", "name": "Weak"},
    )
    assert response.status_code == 422


def test_signup_rejects_invalid_email(client):
    response = client.post(
        "/auth/signup-request",
        json={"email": "not-an-email", "password": "abc12345", "name": "Nobody"},
    )
    assert response.status_code == 422


def test_signup_then_pending_login_is_forbidden(client):
    email = f"pending_{uuid4().hex[:6]}@fellowship.test"
    signup = client.post(
        "/auth/signup-request",
        json={"email": email, "password": "abc12345", "name": "Pending Person"},
    )
    assert signup.status_code == 201
    assert signup.json()["requires_approval"] is True

    duplicate = client.post(
        "/auth/signup-request",
        json={"email": email, "password": "abc12345", "name": "Pending Person"},
    )
    assert duplicate.status_code == 409

    login = client.post("/auth/login", json={"email": email, "password": "abc12345"})
    assert login.status_code == 403
    assert "approval" in login.json()["detail"]


def test_login_me_status_and_logout(client, make_user):
    user, headers = make_user()
    me = client.get("/auth/me", headers=headers)
    assert me.status_code == 200
    assert me.json()["id"] == user.id

    status = client.get("/auth/status", headers=headers)
    assert status.status_code == 200
    assert status.json()["authenticated"] is True

    logout = client.post("/auth/logout", headers=headers)
    assert logout.status_code == 200

    after = client.get("/auth/me", headers=headers)
    assert after.status_code == 401


def test_status_without_token(client):
    response = client.get("/auth/status")
    assert response.status_code == 200
    assert response.json() == {"authenticated": False, "user": None}


def test_refresh_revokes_previous_token(client, make_user):
    _, headers = make_user()
    refreshed = client.post("/auth/refresh", headers=headers)
    assert refreshed.status_code == 200
    new_headers = {"Authorization": f"Bearer {refreshed.json()['access_token']}"}

    assert client.get("/auth/me", headers=headers).status_code == 401
    assert client.get("/auth/me", headers=new_headers).status_code == 200


def test_tampered_token_is_rejected(client, make_user):
    _, headers = make_user()
    token = headers["Authorization"].split(" ", 1)[1]
    payload, signature = token.split(".", 1)
    forged = f"{payload}.{signature[::-1]}"
    response = client.get("/auth/me", headers={"Authorization": f"Bearer {forged}"})
    assert response.status_code == 401


def test_failed_logins_report_remaining_then_block(client, make_user):
    user, _ = make_user()
    try:
        first = client.post("/auth/login", json={"email": user.email, "password": "wrong-pass-1"})
        assert first.status_code == 401
        assert first.json()["detail"]["remaining_attempts"] == login_limiter.max_attempts - 1

        for _ in range(login_limiter.max_attempts - 1):
            client.post("/auth/login", json={"email": user.email, "password": "wrong-pass-1"})

        blocked = client.post("/auth/login", json={"email": user.email, "password": "member-pass-123"})
        assert blocked.status_code == 429
        assert blocked.json()["detail"]["blocked_until"]
    finally:
        login_limiter.reset(user.email)


def test_successful_login_clears_failures(client, make_user):
    user, _ = make_user()
    client.post("/auth/login", json={"email": user.email, "password": "wrong-pass-1"})
    ok = client.post("/auth/login", json={"email": user.email, "password": "member-pass-123"})
    assert ok.status_code == 200
    retry = client.post("/auth/login", json={"email": user.email, "password": "wrong-pass-1"})
    assert retry.json()["detail"]["remaining_attempts"] == login_limiter.max_attempts - 1
    login_limiter.reset(user.email)


def test_search_requires_query(client):
    response = client.get("/search", params={"q": "  "})
    assert response.status_code == 400


def test_search_hides_users_from_members(client, make_user):
    marker = uuid4().hex[:8]
    make_user(name=f"Searchable {marker}")
    _, member_headers = make_user()
    _, leader_headers = make_user(role="leader")

    as_member = client.get("/search", params={"q": marker}, headers=member_headers)
    assert as_member.status_code == 200
    assert all(item["type"] != "user" for item in as_member.json()["results"])

    as_leader = client.get("/search", params={"q": marker, "type": "user"}, headers=leader_headers)
    assert as_leader.status_code == 200
    assert any(item["type"] == "user" for item in as_leader.json()["results"])


def test_search_category_only_narrows_its_own_type(client, make_user):
    marker = uuid4().hex[:8]
    _, leader_headers = make_user(role="leader")
    post = client.post(
        "/board/posts",
        json={"title": f"Notice {marker}", "content": "<p>Retreat signups open this week.</p>", "category": "notice"},
        headers=leader_headers,
    )
    assert post.status_code == 201
    start = datetime.now(timezone.utc) + timedelta(days=5)
    event = client.post(
        "/events",
        json={
            "title": f"Worship {marker}",
            "description": "Evening worship night.",
            "start_date": start.isoformat(),
            "end_date": (start + timedelta(hours=2)).isoformat(),
            "category": "worship",
        },
        headers=leader_headers,
    )
    assert event.status_code == 201

    def found(category):
        response = client.get("/search", params={"q": marker, "category": category})
        assert response.status_code == 200
        return {item["type"] for item in response.json()["results"]}

    assert found("notice") == {"post", "event"}
    assert found("worship") == {"post", "event"}
    assert found("free") == {"event"}
    assert found("meeting") == {"post"}
