from concurrent.futures import ThreadPoolExecutor
from uuid import uuid4

from fellowship.auth import create_access_token
from fellowship.services.board_store import ANONYMOUS_NAME, board_store


def _create_post(client, headers, **overrides):
    body = {
        "title": f"Board post {uuid4().hex[:6]}",
        "content": "<p>Sharing something with the group today.</p>",
        "category": "free",
    }
    body.update(overrides)
    response = client.post("/board/posts", json=body, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


def test_create_post_sanitizes_markup(client, make_user):
    _, headers = make_user()
    post = _create_post(
        client,
        headers,
        title="<b>Hello</b> there",
        content='<p onclick="x()">Praise report!</p><script>alert(1)</script>',
    )
    assert post["title"] == "Hello there"
    assert "<script>" not in post["content"]
    assert "onclick" not in post["content"]
    assert "Praise report!" in post["content"]


def test_escaped_title_markup_stays_escaped(client, make_user):
    _, headers = make_user()
    post = _create_post(client, headers, title="&lt;img src=x onerror=alert(1)&gt; hi")
    assert "<img" not in post["title"]
    assert post["title"] == "&lt;img src=x onerror=alert(1)&gt; hi"

    edited = client.patch(
        f"/board/posts/{post['id']}",
        json={"title": "&lt;script&gt;x&lt;/script&gt; edit"},
        headers=headers,
    ).json()
    assert "<script" not in edited["title"]


def test_post_validation_rejects_padding_and_short_content(client, make_user):
    _, headers = make_user()
    padded = client.post(
        "/board/posts",
        json={"title": " Padded title", "content": "Long enough content here."},
        headers=headers,
    )
    assert padded.status_code == 422
    short = client.post("/board/posts", json={"title": "Short", "content": "tiny"}, headers=headers)
    assert short.status_code == 422


def test_members_cannot_write_notices(client, make_user):
    _, member_headers = make_user()
    _, leader_headers = make_user(role="leader")
    body = {"title": "Retreat notice", "content": "Retreat sign-ups close Friday.", "category": "notice"}
    assert client.post("/board/posts", json=body, headers=member_headers).status_code == 403
    assert client.post("/board/posts", json=body, headers=leader_headers).status_code == 201


def test_notice_notifies_members(client, make_user):
    _, member_headers = make_user()
    _, leader_headers = make_user(role="leader")
    notice = _create_post(
        client,
        leader_headers,
        title=f"Notice {uuid4().hex[:6]}",
        content="Service starts earlier this week.",
        category="notice",
    )
    notifications = client.get("/notifications", headers=member_headers).json()
    assert any(item["related_id"] == notice["id"] and item["type"] == "post" for item in notifications)


def test_unapproved_user_cannot_post(client, make_user):
    user, _ = make_user(approved=False)
    token, _ = create_access_token(user.id)
    response = client.post(
        "/board/posts",
        json={"title": "Let me in", "content": "Trying to post before approval."},
        headers={"Authorization": f"Bearer {token}"},
    )
    assert response.status_code == 403


def test_anonymous_post_hides_author_name(client, make_user):
    _, headers = make_user(name="Visible Name")
    post = _create_post(client, headers, is_anonymous=True)
    assert post["author_name"] == ANONYMOUS_NAME
    fetched = client.get(f"/board/posts/{post['id']}").json()
    assert fetched["author_name"] == ANONYMOUS_NAME


def test_only_author_or_admin_can_edit(client, make_user, admin_headers):
    _, author_headers = make_user()
    _, other_headers = make_user()
    _, leader_headers = make_user(role="leader")
    post = _create_post(client, author_headers)

    update = {"title": "Edited title"}
    assert client.patch(f"/board/posts/{post['id']}", json=update, headers=other_headers).status_code == 403
    assert client.patch(f"/board/posts/{post['id']}", json=update, headers=leader_headers).status_code == 403
    edited = client.patch(f"/board/posts/{post['id']}", json=update, headers=author_headers)
    assert edited.status_code == 200
    assert edited.json()["title"] == "Edited title"
    by_admin = client.patch(f"/board/posts/{post['id']}", json={"title": "Admin edit"}, headers=admin_headers)
    assert by_admin.status_code == 200


def test_empty_update_is_rejected(client, make_user):
    _, headers = make_user()
    post = _create_post(client, headers)
    assert client.patch(f"/board/posts/{post['id']}", json={}, headers=headers).status_code == 400


def test_delete_post_owner_and_admin(client, make_user, admin_headers):
    _, author_headers = make_user()
    _, other_headers = make_user()
    first = _create_post(client, author_headers)
    second = _create_post(client, author_headers)

    assert client.delete(f"/board/posts/{first['id']}", headers=other_headers).status_code == 403
    assert client.delete(f"/board/posts/{first['id']}", headers=author_headers).status_code == 204
    assert client.get(f"/board/posts/{first['id']}").status_code == 404
    assert client.delete(f"/board/posts/{second['id']}", headers=admin_headers).status_code == 204


def test_list_posts_pagination_and_cursor(client, make_user):
    _, headers = make_user()
    marker = uuid4().hex[:8]
    created = [_create_post(client, headers, title=f"Paged {marker} {idx}") for idx in range(3)]

    first_page = client.get("/board/posts", params={"search": marker, "limit": 2})
    assert first_page.status_code == 200
    payload = first_page.json()
    assert payload["pagination"]["total_count"] == 3
    assert payload["pagination"]["total_pages"] == 2
    assert payload["pagination"]["has_next_page"] is True
    assert [item["id"] for item in payload["posts"]] == [created[2]["id"], created[1]["id"]]
    assert payload["next_cursor"]

    second_page = client.get(
        "/board/posts",
        params={"search": marker, "limit": 2, "cursor": payload["next_cursor"]},
    ).json()
    assert [item["id"] for item in second_page["posts"]] == [created[0]["id"]]
    assert second_page["next_cursor"] is None


def test_invalid_cursor_is_bad_request(client):
    response = client.get("/board/posts", params={"cursor": "%%%"})
    assert response.status_code == 400


def test_view_counted_once_per_viewer_window(client, make_user):
    _, headers = make_user()
    post = _create_post(client, headers)

    first = client.post(f"/board/posts/{post['id']}/view", headers=headers)
    assert first.status_code == 200
    assert first.json() == {"counted": True, "view_count": 1}
    repeat = client.post(f"/board/posts/{post['id']}/view", headers=headers)
    assert repeat.json() == {"counted": False, "view_count": 1}

    anonymous = client.post(f"/board/posts/{post['id']}/view", json={"viewer_key": "device-1"})
    assert anonymous.json()["counted"] is True
    assert anonymous.json()["view_count"] == 2


def test_view_dedup_window_expires(client, make_user):
    _, headers = make_user()
    post = _create_post(client, headers)
    key = f"key:{uuid4().hex[:6]}"
    assert board_store.record_view(post["id"], key) == (True, 1)
    assert board_store.record_view(post["id"], key) == (False, 1)
    assert board_store.record_view(post["id"], key, window_minutes=0) == (True, 2)


def test_concurrent_views_from_one_viewer_count_once(client, make_user):
    _, headers = make_user()
    post = _create_post(client, headers)
    key = f"key:{uuid4().hex[:6]}"

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: board_store.record_view(post["id"], key), range(16)))

    assert sum(1 for counted, _ in results if counted) == 1
    assert board_store.get_post(post["id"]).view_count == 1


def test_comments_thread_one_level(client, make_user):
    _, author_headers = make_user()
    _, commenter_headers = make_user()
    post = _create_post(client, author_headers)
    url = f"/board/posts/{post['id']}/comments"

    root = client.post(url, json={"content": "First!"}, headers=commenter_headers)
    assert root.status_code == 201
    other_root = client.post(url, json={"content": "Second root"}, headers=commenter_headers).json()
    reply = client.post(url, json={"content": "A reply", "parent_id": root.json()["id"]}, headers=author_headers)
    assert reply.status_code == 201
    nested = client.post(url, json={"content": "Too deep", "parent_id": reply.json()["id"]}, headers=author_headers)
    assert nested.status_code == 400

    listed = client.get(url).json()
    assert [item["id"] for item in listed["comments"]] == [root.json()["id"], reply.json()["id"], other_root["id"]]
    assert client.get(f"/board/posts/{post['id']}").json()["comment_count"] == 3


def test_comment_notifies_post_author(client, make_user):
    _, author_headers = make_user()
    _, commenter_headers = make_user()
    post = _create_post(client, author_headers)
    client.post(f"/board/posts/{post['id']}/comments", json={"content": "Amen to this"}, headers=commenter_headers)

    notifications = client.get("/notifications", headers=author_headers).json()
    assert any(item["related_id"] == post["id"] for item in notifications)


def test_comment_delete_by_owner_or_moderator(client, make_user):
    _, author_headers = make_user()
    _, other_headers = make_user()
    _, leader_headers = make_user(role="leader")
    post = _create_post(client, author_headers)
    url = f"/board/posts/{post['id']}/comments"
    mine = client.post(url, json={"content": "mine"}, headers=author_headers).json()
    moderated = client.post(url, json={"content": "to moderate"}, headers=author_headers).json()

    assert client.delete(f"{url}/{mine['id']}", headers=other_headers).status_code == 403
    assert client.delete(f"{url}/{mine['id']}", headers=author_headers).status_code == 204
    assert client.delete(f"{url}/{moderated['id']}", headers=leader_headers).status_code == 204
    assert client.get(url).json()["comments"] == []
    assert client.get(f"/board/posts/{post['id']}").json()["comment_count"] == 0


def test_comment_edit_is_owner_only(client, make_user):
    _, author_headers = make_user()
    _, other_headers = make_user()
    post = _create_post(client, author_headers)
    url = f"/board/posts/{post['id']}/comments"
    comment = client.post(url, json={"content": "original"}, headers=author_headers).json()

    assert client.patch(f"{url}/{comment['id']}", json={"content": "hijack"}, headers=other_headers).status_code == 403
    edited = client.patch(f"{url}/{comment['id']}", json={"content": "  updated  "}, headers=author_headers)
    assert edited.status_code == 200
    assert edited.json()["content"] == "updated"


def test_like_toggle_and_status(client, make_user):
    _, author_headers = make_user()
    _, fan_headers = make_user()
    post = _create_post(client, author_headers)

    liked = client.post("/likes/toggle", json={"target_type": "post", "target_id": post["id"]}, headers=fan_headers)
    assert liked.json() == {"liked": True, "count": 1}
    status = client.get("/likes/status", params={"target_type": "post", "target_id": post["id"]}, headers=fan_headers)
    assert status.json() == {"liked": True, "count": 1}
    unliked = client.post("/likes/toggle", json={"target_type": "post", "target_id": post["id"]}, headers=fan_headers)
    assert unliked.json() == {"liked": False, "count": 0}

    missing = client.post("/likes/toggle", json={"target_type": "post", "target_id": "p_missing"}, headers=fan_headers)
    assert missing.status_code == 404


def test_popular_posts_ordered_by_likes(client, make_user):
    _, headers = make_user()
    post = _create_post(client, headers)
    for _ in range(3):
        _, fan_headers = make_user()
        client.post("/likes/toggle", json={"target_type": "post", "target_id": post["id"]}, headers=fan_headers)
    popular = client.get("/board/posts/popular", params={"limit": 5}).json()
    assert popular[0]["like_count"] >= 3


def test_user_stats(client, make_user):
    _, headers = make_user()
    post = _create_post(client, headers)
    client.post(f"/board/posts/{post['id']}/comments", json={"content": "self reply"}, headers=headers)
    stats = client.get("/users/stats", headers=headers).json()
    assert stats["post_count"] == 1
    assert stats["comment_count"] == 1
    assert client.get("/users/stats").json()["post_count"] == 0


def test_reports_are_unique_per_reporter(client, make_user):
    _, author_headers = make_user()
    _, reporter_headers = make_user()
    post = _create_post(client, author_headers)
    body = {"target_type": "post", "target_id": post["id"], "reason": "spam"}

    assert client.post("/reports", json=body, headers=reporter_headers).status_code == 201
    assert client.post("/reports", json=body, headers=reporter_headers).status_code == 409
    missing = client.post("/reports", json={**body, "target_id": "p_missing"}, headers=reporter_headers)
    assert missing.status_code == 404
