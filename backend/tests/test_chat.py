import json
from types import SimpleNamespace

from openai import OpenAIError

from fellowship.models import ChatMessage
from fellowship.routers import chat as chat_router
from fellowship.services.assistant import (
    ERROR_MESSAGE,
    GREETINGS,
    UNAVAILABLE_MESSAGE,
    AssistantService,
)
from fellowship.services.memory_store import MemoryStore


class _FakeResponses:
    def __init__(self, text="", error=None):
        self.text = text
        self.error = error
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error:
            raise self.error
        return SimpleNamespace(output_text=self.text)


def _assistant(tmp_path, text="", error=None, context=None):
    service = AssistantService(
        memory_store=MemoryStore(db_path=str(tmp_path / "memory.sqlite3")),
        context_provider=context,
    )
    responses = _FakeResponses(text=text, error=error)
    service.client = SimpleNamespace(responses=responses)
    service.llm_available = True
    return service, responses


def test_chat_without_llm_returns_unavailable_message(client):
    response = client.post("/chat", json={"message": "When is Friday worship?"})
    assert response.status_code == 200
    payload = response.json()
    assert payload["message"] == UNAVAILABLE_MESSAGE
    assert payload["llm_used"] is False


def test_chat_requires_messages(client):
    assert client.post("/chat", json={"messages": []}).status_code == 400
    assert client.post("/chat", json={"message": "   "}).status_code == 400


def test_whitespace_only_messages_are_rejected(client):
    blank = {"messages": [{"role": "user", "content": "   "}, {"role": "assistant", "content": "\n\t"}]}
    assert client.post("/chat", json=blank).status_code == 400
    assert client.post("/chat/stream", json=blank).status_code == 400


def test_greeting(client):
    response = client.get("/chat/greeting")
    assert response.json()["message"] in GREETINGS


def test_stream_emits_deltas_then_done(client):
    with client.stream("POST", "/chat/stream", json={"message": "hello"}) as response:
        assert response.status_code == 200
        lines = [line for line in response.iter_lines() if line.startswith("data: ")]
    assert lines[-1] == "data: [DONE]"
    events = [json.loads(line[len("data: ") :]) for line in lines[:-1]]
    assert events[-1]["type"] == "final"
    streamed = "".join(event["delta"] for event in events if event["type"] == "delta")
    assert streamed == events[-1]["response"]["message"]


def test_stream_falls_back_on_error(client, monkeypatch):
    def boom(*_args, **_kwargs):
        raise RuntimeError("backend down")

    monkeypatch.setattr(chat_router.assistant, "stream_messages", boom)
    response = client.post("/chat/stream", json={"message": "hello"})
    lines = [line for line in response.text.splitlines() if line.startswith("data: ")]
    fallback = json.loads(lines[0][len("data: ") :])
    assert fallback["response"]["message"] == ERROR_MESSAGE
    assert lines[-1] == "data: [DONE]"


def test_history_persists_for_signed_in_users(client, make_user):
    _, headers = make_user()
    client.post("/chat", json={"message": "Remember me"}, headers=headers)
    history = client.get("/chat/history", headers=headers).json()
    assert [turn["role"] for turn in history] == ["user", "assistant"]
    assert history[0]["content"] == "Remember me"

    assert client.delete("/chat/history", headers=headers).json()["deleted"] == 2
    assert client.get("/chat/history", headers=headers).json() == []
    assert client.get("/chat/history").status_code == 401


def test_llm_answer_includes_context_and_history(tmp_path):
    service, responses = _assistant(tmp_path, text="Worship is at 7pm.", context=lambda: "Upcoming events:\n- Worship")
    service.memory_store.append_turn("u1", "user", "Hi")
    service.memory_store.append_turn("u1", "assistant", "Hello!")

    reply = service.handle_messages(
        [ChatMessage(role="user", content="When is worship?")],
        user_id="u1",
    )
    assert reply.message == "Worship is at 7pm."
    assert reply.llm_used is True
    sent = responses.calls[0]["input"]
    assert sent[0]["role"] == "system"
    assert "Upcoming events" in sent[0]["content"]
    assert [turn["content"] for turn in sent[1:]] == ["Hi", "Hello!", "When is worship?"]


def test_llm_error_returns_friendly_message(tmp_path):
    service, _ = _assistant(tmp_path, error=OpenAIError("rate limited"))
    reply = service.handle_messages([ChatMessage(role="user", content="hello")])
    assert reply.message == ERROR_MESSAGE
    assert reply.llm_used is False


def test_empty_llm_output_is_not_counted_as_used(tmp_path):
    service, _ = _assistant(tmp_path, text="   ")
    reply = service.handle_messages([ChatMessage(role="user", content="hello")])
    assert reply.llm_used is False


def test_chat_attachment_upload(client, make_user):
    _, headers = make_user()
    uploaded = client.post(
        "/chat/upload",
        files={"file": ("notes.txt", b"prayer list", "text/plain")},
        headers=headers,
    )
    assert uploaded.status_code == 200
    assert uploaded.json()["bucket"] == "chat-attachments"
    assert uploaded.json()["path"].endswith(".txt")

    rejected = client.post(
        "/chat/upload",
        files={"file": ("tool.exe", b"MZ", "application/x-msdownload")},
        headers=headers,
    )
    assert rejected.status_code == 400
