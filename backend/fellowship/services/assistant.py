import json
import logging
import os
import random
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Generator, List, Optional

from openai import OpenAI, OpenAIError

from fellowship.config import DATA_DIR, normalize_env_value
from fellowship.models import ChatMessage, ChatResponse
from fellowship.services.memory_store import MemoryStore

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are the AI assistant of a church youth-group community.
Follow these guidelines:
1. Answer in a warm, friendly tone.
2. Help with questions about the church and the youth group.
3. Quote scripture or offer spiritual encouragement where it fits.
4. Explain notices, schedules and how to use the bulletin board.
5. For personal struggles or serious counselling needs, point the person to a pastor or counsellor.
6. Keep answers short and easy to follow.
7. Reply in the language the user writes in."""

GREETINGS = [
    "Hello! I'm the youth group assistant. How can I help you today?",
    "Welcome! Ask me anything about our community, any time.",
    "Peace be with you! The youth group assistant is here to help.",
    "Hi there! Ask me about notices, the schedule or how to use the board.",
]

UNAVAILABLE_MESSAGE = "Sorry, the assistant is not available right now. Please contact an admin."
ERROR_MESSAGE = "Sorry, something went wrong for a moment. Please try again shortly."
EMPTY_MESSAGE = "Sorry, I couldn't come up with a reply."

HISTORY_LIMIT = 20
MAX_CONTENT_LEN = 4000


class AssistantService:
    """Chatbot replies via the OpenAI Responses API, with fixed fallbacks when it is off or failing."""

    def __init__(
        self,
        memory_store: Optional[MemoryStore] = None,
        context_provider: Optional[Callable[[], str]] = None,
    ) -> None:
        self.model = os.getenv("OPENAI_MODEL", "gpt-4.1-mini")
        api_key = self._load_openai_api_key()
        self.client = OpenAI(api_key=api_key) if api_key else None
        self.llm_available = self.client is not None
        if not self.llm_available:
            logger.warning("LLM disabled: set OPENAI_API_KEY (or OPENAI_API_KEY_FILE).")

        default_db_path = str(DATA_DIR / "memory.sqlite3")
        self.memory_store = memory_store or MemoryStore(db_path=os.getenv("MEMORY_DB_PATH", default_db_path))
        self.context_provider = context_provider

    def _load_openai_api_key(self) -> str:
        api_key = normalize_env_value(os.getenv("OPENAI_API_KEY", ""))

        if not api_key:
            key_file = normalize_env_value(os.getenv("OPENAI_API_KEY_FILE", ""))
            if key_file:
                try:
                    api_key = normalize_env_value(Path(key_file).read_text(encoding="utf-8"))
                except OSError:
                    logger.warning("OPENAI_API_KEY_FILE is set but unreadable.")

        if api_key.lower() in {"replace-with-openai-key", "your-openai-api-key"}:
            return ""
        return api_key

    def greeting(self) -> str:
        return random.choice(GREETINGS)

    def handle_messages(self, messages: List[ChatMessage], user_id: Optional[str] = None) -> ChatResponse:
        conversation = [
            {"role": msg.role, "content": self._safe_text(msg.content)} for msg in messages if msg.content.strip()
        ]
        if user_id and len(conversation) == 1:
            # A single new message from a signed-in user continues their stored thread.
            conversation = [
                {"role": turn["role"], "content": turn["content"]}
                for turn in self.memory_store.load_recent_turns(user_id, limit=HISTORY_LIMIT)
            ] + conversation

        answer, llm_used = self._compose_answer(conversation)

        if user_id and conversation:
            self.memory_store.append_exchange(user_id, conversation[-1]["content"], self._safe_text(answer))

        logger.info(
            "chat_telemetry=%s",
            json.dumps(
                {
                    "user_id": user_id or "anonymous",
                    "turns": len(conversation),
                    "llm_used": llm_used,
                    "answer_chars": len(answer),
                }
            ),
        )
        return ChatResponse(
            message=answer,
            timestamp=datetime.now(timezone.utc).isoformat(),
            llm_used=llm_used,
        )

    def stream_messages(
        self,
        messages: List[ChatMessage],
        user_id: Optional[str] = None,
    ) -> Generator[Dict[str, Any], None, None]:
        """Server-side stream: emits answer deltas then the final response."""
        response = self.handle_messages(messages, user_id=user_id)
        answer = response.message or ""
        chunk_size = 20
        for index in range(0, len(answer), chunk_size):
            yield {"type": "delta", "delta": answer[index : index + chunk_size]}
            time.sleep(0.03)
        yield {"type": "final", "response": response.model_dump()}

    def history(self, user_id: str) -> List[Dict[str, str]]:
        return self.memory_store.load_recent_turns(user_id, limit=HISTORY_LIMIT)

    def clear_history(self, user_id: str) -> int:
        return self.memory_store.clear(user_id)

    def _compose_answer(self, conversation: List[Dict[str, str]]) -> tuple[str, bool]:
        if not self.client:
            return UNAVAILABLE_MESSAGE, False

        system_prompt = SYSTEM_PROMPT
        if self.context_provider:
            context = self.context_provider()
            if context:
                system_prompt = f"{SYSTEM_PROMPT}\n\nCommunity context:\n{context}"
        try:
            response = self.client.responses.create(
                model=self.model,
                input=[{"role": "system", "content": system_prompt}, *conversation],
                max_output_tokens=500,
                temperature=0.7,
            )
        except OpenAIError:
            logger.exception("LLM request failed")
            return ERROR_MESSAGE, False
        content = (getattr(response, "output_text", "") or "").strip()
        return (content or EMPTY_MESSAGE), bool(content)

    def _safe_text(self, value: Any, default: str = "", max_len: int = MAX_CONTENT_LEN) -> str:
        if value is None:
            return default
        text = str(value).strip()
        if not text:
            return default
        if len(text) > max_len:
            return text[:max_len]
        return text
