from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from fellowship.models import EventCreateRequest
from fellowship.services.calendar_store import CalendarStoreValidationError, calendar_store
from fellowship.services.notification_store import notification_store


def _event_body(**overrides):
    start = datetime.now(timezone.utc) + timedelta(days=3)
    body = {
        "title": f"Youth night {uuid4().hex[:6]}",
        "description": "Games, worship and snacks.",
        "start_date": start.isoformat(),
        "end_date": (start + timedelta(hours=2)).isoformat(),
        "location": "Fellowship hall",
        "category": "event",
    }
    body.update(overrides)
    return body


def _event_model(**overrides):
    return EventCreateRequest(**_event_body(**overrides))


def test_members_cannot_create_events(client, make_user):
    _, member_headers = make_user()
    response = client.post("/events", json=_event_body(), headers=member_headers)
    assert response.status_code == 403


def test_create_event_normalizes_to_utc(client, make_user):
    _, leader_headers = make_user(role="leader")
    response = client.post(
        "/events",
        json=_event_body(start_date="2030-05-01T19:00:00+09:00", end_date="2030-05-01T21:00:00+09:00"),
        headers=leader_headers,
    )
    assert response.status_code == 201
    event = response.json()
    assert event["start_date"].startswith("2030-05-01T10:00:00")
    assert event["current_attendees"] == 0


def test_end_before_start_is_rejected(client, make_user):
    _, leader_headers = make_user(role="leader")
    body = _event_body(start_date="2030-05-01T19:00:00+00:00", end_date="2030-05-01T18:00:00+00:00")
    assert client.post("/events", json=body, headers=leader_headers).status_code == 422


def test_list_events_by_range_and_category(client, make_user):
    _, leader_headers = make_user(role="leader")
    inside = client.post(
        "/events",
        json=_event_body(
            start_date="2031-02-10T10:00:00+00:00",
            end_date="2031-02-10T12:00:00+00:00",
            category="worship",
        ),
        headers=leader_headers,
    ).json()
    client.post(
        "/events",
        json=_event_body(start_date="2031-06-10T10:00:00+00:00", end_date="2031-06-10T12:00:00+00:00"),
        headers=leader_headers,
    )

    listed = client.get(
        "/events",
        params={"start_date": "2031-02-01T00:00:00Z", "end_date": "2031-02-28T23:59:59Z", "category": "worship"},
    )
    assert listed.status_code == 200
    ids = [event["id"] for event in listed.json()["events"]]
    assert inside["id"] in ids
    assert listed.json()["total_count"] == len(ids)

    bad = client.get("/events", params={"start_date": "yesterday"})
    assert bad.status_code == 400


def test_attendance_toggle_and_capacity(client, make_user):
    _, leader_headers = make_user(role="leader")
    event = client.post("/events", json=_event_body(max_attendees=1), headers=leader_headers).json()
    _, first_headers = make_user()
    _, second_headers = make_user()

    joined = client.post(f"/events/{event['id']}/attendance", headers=first_headers)
    assert joined.json() == {"attending": True, "current_attendees": 1}

    full = client.post(f"/events/{event['id']}/attendance", headers=second_headers)
    assert full.status_code == 400
    assert full.json()["detail"] == "This event is already full"

    left = client.post(f"/events/{event['id']}/attendance", headers=first_headers)
    assert left.json() == {"attending": False, "current_attendees": 0}

    now_fits = client.post(f"/events/{event['id']}/attendance", headers=second_headers)
    assert now_fits.json()["attending"] is True
    status = client.get(f"/events/{event['id']}/attendance", headers=second_headers)
    assert status.json() == {"attending": True, "current_attendees": 1}


def test_concurrent_joins_never_exceed_capacity(make_user):
    leader, _ = make_user(role="leader")
    event = calendar_store.create_event(leader, _event_model(max_attendees=3))
    users = [make_user()[0] for _ in range(10)]

    def join(user):
        try:
            calendar_store.toggle_attendance(event.id, user.id)
            return True
        except CalendarStoreValidationError:
            return False

    with ThreadPoolExecutor(max_workers=10) as pool:
        outcomes = list(pool.map(join, users))

    assert outcomes.count(True) == 3
    assert calendar_store.get_event(event.id).current_attendees == 3
    assert len(calendar_store.list_attendee_ids(event.id)) == 3


def test_attendees_listing_is_leader_only(client, make_user):
    _, leader_headers = make_user(role="leader")
    attendee, attendee_headers = make_user()
    event = client.post("/events", json=_event_body(), headers=leader_headers).json()
    client.post(f"/events/{event['id']}/attendance", headers=attendee_headers)

    assert client.get(f"/events/{event['id']}/attendees", headers=attendee_headers).status_code == 403
    listed = client.get(f"/events/{event['id']}/attendees", headers=leader_headers)
    assert [user["id"] for user in listed.json()] == [attendee.id]


def test_update_and_delete_notify_attendees(client, make_user, admin_headers):
    _, leader_headers = make_user(role="leader")
    _, other_leader_headers = make_user(role="leader")
    _, attendee_headers = make_user()
    event = client.post("/events", json=_event_body(), headers=leader_headers).json()
    client.post(f"/events/{event['id']}/attendance", headers=attendee_headers)

    forbidden = client.patch(f"/events/{event['id']}", json={"title": "Taken over"}, headers=other_leader_headers)
    assert forbidden.status_code == 403

    updated = client.patch(f"/events/{event['id']}", json={"location": "Main sanctuary"}, headers=leader_headers)
    assert updated.status_code == 200
    assert updated.json()["location"] == "Main sanctuary"

    bad_range = client.patch(
        f"/events/{event['id']}",
        json={"end_date": "2000-01-01T00:00:00+00:00"},
        headers=leader_headers,
    )
    assert bad_range.status_code == 400

    assert client.delete(f"/events/{event['id']}", headers=admin_headers).status_code == 204
    assert client.get(f"/events/{event['id']}").status_code == 404

    titles = [item["title"] for item in client.get("/notifications", headers=attendee_headers).json()]
    assert any(title.startswith("Event updated") for title in titles)
    assert any(title.startswith("Event cancelled") for title in titles)


def test_max_attendees_cannot_drop_below_attendance(client, make_user):
    _, leader_headers = make_user(role="leader")
    event = client.post("/events", json=_event_body(max_attendees=5), headers=leader_headers).json()
    for _ in range(2):
        _, headers = make_user()
        client.post(f"/events/{event['id']}/attendance", headers=headers)
    response = client.patch(f"/events/{event['id']}", json={"max_attendees": 1}, headers=leader_headers)
    assert response.status_code == 400


def test_reminders_sent_once_within_lead_time(make_user):
    leader, _ = make_user(role="leader")
    attendee, _ = make_user()
    quiet, _ = make_user()
    now = datetime.now(timezone.utc)
    event = calendar_store.create_event(
        leader,
        _event_model(
            start_date=(now + timedelta(minutes=20)).isoformat(),
            end_date=(now + timedelta(minutes=80)).isoformat(),
        ),
    )
    calendar_store.toggle_attendance(event.id, attendee.id)
    calendar_store.toggle_attendance(event.id, quiet.id)
    settings = notification_store.get_settings(quiet.id).model_copy(update={"event_reminders": False})
    notification_store.update_settings(quiet.id, settings)

    due = calendar_store.dispatch_event_reminders(notification_store.reminder_minutes_for, now=now)
    mine = [item for item in due if item["event_id"] == event.id]
    assert [item["user_id"] for item in mine] == [attendee.id]
    assert mine[0]["minutes_until"] in {19, 20}

    again = calendar_store.dispatch_event_reminders(notification_store.reminder_minutes_for, now=now)
    assert all(item["event_id"] != event.id for item in again)


def test_reminder_waits_for_lead_time(make_user):
    leader, _ = make_user(role="leader")
    attendee, _ = make_user()
    now = datetime.now(timezone.utc)
    event = calendar_store.create_event(
        leader,
        _event_model(
            start_date=(now + timedelta(hours=3)).isoformat(),
            end_date=(now + timedelta(hours=4)).isoformat(),
        ),
    )
    calendar_store.toggle_attendance(event.id, attendee.id)
    due = calendar_store.dispatch_event_reminders(notification_store.reminder_minutes_for, now=now)
    assert all(item["event_id"] != event.id for item in due)

    later = now + timedelta(hours=2, minutes=40)
    due_later = calendar_store.dispatch_event_reminders(notification_store.reminder_minutes_for, now=later)
    assert any(item["event_id"] == event.id for item in due_later)


def test_event_count_in_user_stats(client, make_user):
    _, leader_headers = make_user(role="leader")
    attendee, attendee_headers = make_user()
    event = client.post("/events", json=_event_body(), headers=leader_headers).json()
    client.post(f"/events/{event['id']}/attendance", headers=attendee_headers)
    assert client.get("/users/stats", headers=attendee_headers).json()["event_count"] == 1


def test_new_events_reach_members_with_either_setting_on(client, make_user):
    _, leader_headers = make_user(role="leader")
    system_only, system_only_headers = make_user()
    muted, muted_headers = make_user()
    notification_store.update_settings(
        system_only.id,
        notification_store.get_settings(system_only.id).model_copy(update={"event_reminders": False}),
    )
    notification_store.update_settings(
        muted.id,
        notification_store.get_settings(muted.id).model_copy(
            update={"event_reminders": False, "system_notifications": False}
        ),
    )

    event = client.post("/events", json=_event_body(), headers=leader_headers).json()

    system_titles = [item["title"] for item in client.get("/notifications", headers=system_only_headers).json()]
    assert f"Event created: {event['title']}" in system_titles
    muted_titles = [item["title"] for item in client.get("/notifications", headers=muted_headers).json()]
    assert f"Event created: {event['title']}" not in muted_titles
