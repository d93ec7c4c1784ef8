from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.trustedhost import TrustedHostMiddleware

from fellowship.config import parse_csv_env
from fellowship.routers import admin, auth, board, chat, events, files, likes, notifications, reports, users
from fellowship.services.email_sender import email_sender
from fellowship.services.push_sender import push_sender

app = FastAPI(title="Fellowship API", version="0.1.0")

cors_origins = parse_csv_env("CORS_ORIGINS", "*")
allow_any_origin = len(cors_origins) == 1 and cors_origins[0] == "*"

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    # Browsers reject wildcard CORS with credentials enabled.
    allow_credentials=not allow_any_origin,
    allow_methods=["*"],
    allow_headers=["*"],
)

trusted_hosts = parse_csv_env("TRUSTED_HOSTS", "*")
if not (len(trusted_hosts) == 1 and trusted_hosts[0] == "*"):
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=trusted_hosts)

for module in (auth, board, likes, users, events, notifications, chat, files, reports, admin):
    app.include_router(module.router)


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/ready")
def ready():
    llm_configured = bool(chat.assistant.llm_available)
    return {
        "status": "ready",
        "llm_configured": llm_configured,
        "llm_mode": "openai" if llm_configured else "fallback",
        "push_enabled": push_sender.enabled,
        "email_enabled": email_sender.enabled,
    }
