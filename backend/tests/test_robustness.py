import importlib
import sqlite3
import sys
from datetime import timedelta
from types import SimpleNamespace

from firebase_admin import messaging
from pwdlib import PasswordHash
from pwdlib.hashers.argon2 import Argon2Hasher

from fellowship.auth import LoginAttemptLimiter
from fellowship.config import normalize_env_value, parse_csv_env, read_bool_env, read_int_env
from fellowship.models import ReportCreateRequest
from fellowship.services import memory_store as memory_module
from fellowship.services import push_sender as push_module
from fellowship.services.board_store import BoardStore, decode_cursor, encode_cursor
from fellowship.services.memory_store import MemoryStore
from fellowship.services.push_sender import PushSender
from fellowship.services.report_store import ReportStore
from fellowship.services.sanitize import is_safe_image_url, is_safe_url, sanitize_comment, sanitize_title, strip_tags
from fellowship.services.user_store import UserStore, verify_password


def _reload_auth(monkeypatch):
    # The app keeps using the original module once the test restores it.
    monkeypatch.delitem(sys.modules, "fellowship.auth", raising=False)
    return importlib.import_module("fellowship.auth")


def test_auth_ttl_invalid_env_falls_back(monkeypatch):
    monkeypatch.setenv("AUTH_TOKEN_TTL_HOURS", "not-a-number")
    assert _reload_auth(monkeypatch).TOKEN_TTL_HOURS == 24


def test_auth_ttl_non_positive_env_falls_back(monkeypatch):
    monkeypatch.setenv("AUTH_TOKEN_TTL_HOURS", "0")
    assert _reload_auth(monkeypatch).TOKEN_TTL_HOURS == 24


def test_env_helpers(monkeypatch):
    assert normalize_env_value('  "quoted"  ') == "quoted"
    monkeypatch.setenv("SOME_INT", "'42'")
    assert read_int_env("SOME_INT", 7) == 42
    monkeypatch.setenv("SOME_INT", "-3")
    assert read_int_env("SOME_INT", 7, min_value=0) == 7
    monkeypatch.setenv("SOME_BOOL", "yes")
    assert read_bool_env("SOME_BOOL", False) is True
    monkeypatch.delenv("SOME_BOOL")
    assert read_bool_env("SOME_BOOL", True) is True
    monkeypatch.setenv("SOME_LIST", "a, b,,c ")
    assert parse_csv_env("SOME_LIST", "*") == ["a", "b", "c"]


def test_memory_store_keeps_recent_turns_in_order(tmp_path):
    store = MemoryStore(db_path=str(tmp_path / "memory.sqlite3"))
    for idx in range(5):
        store.append_turn("u1", "user", f"message {idx}")
    turns = store.load_recent_turns("u1", limit=3)
    assert [turn["content"] for turn in turns] == ["message 2", "message 3", "message 4"]
    assert store.load_recent_turns("someone-else") == []


def test_board_store_handles_corrupt_attachments(tmp_path):
    db_path = tmp_path / "board.sqlite3"
    store = BoardStore(db_path=str(db_path))
    with sqlite3.connect(str(db_path)) as conn:
        conn.execute(
            """
            INSERT INTO posts (id, title, content, category, author_id, author_name, attachments_json,
                               created_at, updated_at)
            VALUES ('p1', 'Title', 'Body text here', 'free', 'u1', 'User', '{bad', '2026-01-01', '2026-01-01')
            """
        )
        conn.commit()
    assert store.get_post("p1").attachments == []


def test_cursor_roundtrip():
    cursor = encode_cursor("2026-01-01T00:00:00+00:00", "p_abc")
    assert decode_cursor(cursor) == ("2026-01-01T00:00:00+00:00", "p_abc")


def test_sanitizers():
    assert sanitize_title("<i>Retreat</i>   &amp; camp") == "Retreat &amp; camp"
    assert sanitize_title("&lt;img src=x onerror=alert(1)&gt; hi") == "&lt;img src=x onerror=alert(1)&gt; hi"
    assert strip_tags("<p>&lt;b&gt;bold&lt;/b&gt;</p>") == "&lt;b&gt;bold&lt;/b&gt;"
    cleaned = sanitize_comment('<a href="javascript:alert(1)">x</a><img src="a.png">')
    assert "javascript" not in cleaned
    assert "<img" not in cleaned
    assert is_safe_url("https://church.example/page")
    assert not is_safe_url("javascript:alert(1)")
    assert is_safe_image_url("https://cdn.example/photo.JPG")
    assert not is_safe_image_url("https://cdn.example/script.js")


def test_memory_store_prunes_old_turns(tmp_path, monkeypatch):
    monkeypatch.setattr(memory_module, "MAX_STORED_TURNS", 4)
    store = MemoryStore(db_path=str(tmp_path / "memory.sqlite3"))
    for idx in range(3):
        store.append_exchange("u1", f"question {idx}", f"answer {idx}")
    turns = store.load_recent_turns("u1")
    assert [turn["content"] for turn in turns] == ["question 1", "answer 1", "question 2", "answer 2"]
    assert store.clear("u1") == 4


def test_push_sender_batches_and_reports_dead_tokens(monkeypatch):
    sender = PushSender()
    sender._ready = True
    monkeypatch.setattr(push_module, "MULTICAST_BATCH_SIZE", 2)
    batches = []

    def fake_send(message):
        batches.append(list(message.tokens))
        responses = [
            SimpleNamespace(
                success=token != "dead",
                exception=messaging.UnregisteredError("gone") if token == "dead" else None,
            )
            for token in message.tokens
        ]
        return SimpleNamespace(responses=responses, success_count=sum(1 for r in responses if r.success))

    monkeypatch.setattr(messaging, "send_each_for_multicast", fake_send)
    dead = sender.send_notification(["a", "dead", "a", "b", ""], "Title", "Body", {"related_id": None, "n": 1})
    assert batches == [["a", "dead"], ["b"]]
    assert dead == ["dead"]


def test_push_sender_disabled_without_credentials(monkeypatch):
    monkeypatch.delenv("FIREBASE_CREDENTIALS_PATH", raising=False)
    sender = PushSender()
    assert sender.enabled is False
    assert sender.send_notification(["a"], "Title", "Body") == []


def test_login_limiter_forgets_expired_emails():
    limiter = LoginAttemptLimiter(max_attempts=5, block_minutes=15)
    for idx in range(200):
        limiter.record_failure(f"user{idx}@example.com")
    aged = timedelta(minutes=16)
    limiter._failures = {key: (count, last - aged) for key, (count, last) in limiter._failures.items()}
    limiter._last_sweep -= aged

    assert limiter.record_failure("fresh@example.com") == 4
    assert list(limiter._failures) == ["fresh@example.com"]


def test_report_rate_window_forgets_quiet_reporters(tmp_path):
    store = ReportStore(db_path=str(tmp_path / "reports.sqlite3"))
    request = ReportCreateRequest(target_type="post", target_id="p1", reason="spam")
    for idx in range(50):
        store.create_report(f"reporter_{idx}", request)
    assert len(store._recent) == 50

    aged = timedelta(minutes=2)
    for window in store._recent.values():
        window[-1] -= aged
    store._last_sweep -= aged
    store.create_report("late_reporter", request)
    assert list(store._recent) == ["late_reporter"]


def test_passwords_are_argon2_and_rehashed_on_login(tmp_path):
    store = UserStore(db_path=str(tmp_path / "users.sqlite3"))
    user = store.create_user("Rehash@Example.com", "abc12345", "Rehash", is_approved=True)
    weak_hash = PasswordHash((Argon2Hasher(time_cost=1, memory_cost=8192),)).hash("abc12345")
    with sqlite3.connect(store.db_path) as conn:
        stored = conn.execute("SELECT password_hash FROM users WHERE id = ?", (user.id,)).fetchone()[0]
        assert stored.startswith("$argon2id$")
        conn.execute("UPDATE users SET password_hash = ? WHERE id = ?", (weak_hash, user.id))
        conn.commit()

    assert store.authenticate("rehash@example.com", "wrong-pass") is None
    assert store.authenticate("rehash@example.com", "abc12345").id == user.id
    with sqlite3.connect(store.db_path) as conn:
        upgraded = conn.execute("SELECT password_hash FROM users WHERE id = ?", (user.id,)).fetchone()[0]
    assert upgraded != weak_hash
    assert verify_password("abc12345", upgraded) == (True, None)
    assert verify_password("abc12345", "salt$deadbeef") == (False, None)
    assert store.authenticate("nobody@example.com", "abc12345") is None
