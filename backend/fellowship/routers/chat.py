import asyncio
import json
from typing import Optional

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from fastapi.responses import StreamingResponse

from fellowship.auth import get_optional_user, require_authenticated_user
from fellowship.models import ChatRequest, ChatResponse, StoredFile, UserProfile
from fellowship.services.assistant import ERROR_MESSAGE, AssistantService
from fellowship.services.board_store import board_store
from fellowship.services.calendar_store import calendar_store
from fellowship.services.file_store import FileStoreError, file_store

router = APIRouter(prefix="/chat", tags=["chat"])


def community_context() -> str:
    lines = []
    events = calendar_store.upcoming_events(days=14, limit=5)
    if events:
        lines.append("Upcoming events:")
        for event in events:
            where = f" @ {event.location}" if event.location else ""
            lines.append(f"- {event.start_date[:16].replace('T', ' ')} {event.title}{where}")
    notices, _, _ = board_store.list_posts(category="notice", limit=3)
    if notices:
        lines.append("Recent notices:")
        lines.extend(f"- {post.title}" for post in notices)
    return "\n".join(lines)


assistant = AssistantService(context_provider=community_context)


@router.post("", response_model=ChatResponse)
def chat(request: ChatRequest, user: Optional[UserProfile] = Depends(get_optional_user)):
    messages = request.conversation()
    if not messages:
        raise HTTPException(status_code=400, detail="messages are required")
    return assistant.handle_messages(messages, user_id=user.id if user else None)


@router.get("/greeting", response_model=dict)
def greeting():
    return {"message": assistant.greeting()}


@router.post("/stream")
def chat_stream(request: ChatRequest, user: Optional[UserProfile] = Depends(get_optional_user)):
    messages = request.conversation()
    if not messages:
        raise HTTPException(status_code=400, detail="messages are required")

    def event_generator():
        try:
            for event in assistant.stream_messages(messages, user_id=user.id if user else None):
                yield f"data: {json.dumps(event)}\n\n"
        except asyncio.CancelledError:
            # Client disconnected before stream completion.
            return
        except Exception:
            fallback = {"type": "final", "response": {"message": ERROR_MESSAGE, "llm_used": False}}
            yield f"data: {json.dumps(fallback)}\n\n"
        yield "data: [DONE]\n\n"

    return StreamingResponse(event_generator(), media_type="text/event-stream")


@router.get("/history", response_model=list[dict])
def chat_history(user: UserProfile = Depends(require_authenticated_user)):
    return assistant.history(user.id)


@router.delete("/history", response_model=dict)
def clear_chat_history(user: UserProfile = Depends(require_authenticated_user)):
    return {"deleted": assistant.clear_history(user.id)}


@router.post("/upload", response_model=StoredFile)
async def upload_attachment(
    file: UploadFile = File(...),
    user: UserProfile = Depends(require_authenticated_user),
):
    data = await file.read()
    try:
        return file_store.upload_chat_attachment(
            data,
            filename=file.filename or "attachment",
            content_type=file.content_type or "",
        )
    except FileStoreError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
