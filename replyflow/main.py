import os

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from replyflow.config import settings
from replyflow.dependencies import dispatcher
from replyflow.logging_config import get_logger, setup_logging
from replyflow.redis_client import close_redis, get_redis, ping_redis
from replyflow.routers import admin, facebook_webhook, line_webhook

setup_logging(settings.log_level)

logger = get_logger("main")

app = FastAPI(
    title="Replyflow API",
    description="Conversation orchestration for LINE and Facebook Messenger chatbots",
    version="0.1.0",
)

cors_env = os.environ.get("CORS_ALLOW_ORIGINS", "*")
cors_origins = [origin.strip() for origin in cors_env.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(line_webhook.router)
app.include_router(facebook_webhook.router)
app.include_router(admin.router)

SHUTDOWN_DRAIN_SECONDS = 10.0


@app.on_event("shutdown")
async def shutdown() -> None:
    """Let background jobs (learning, CRM, usage) finish before the store goes away."""
    if dispatcher.pending:
        logger.info("Draining background tasks", extra={"context": {"pending": dispatcher.pending}})
    await dispatcher.drain(timeout=SHUTDOWN_DRAIN_SECONDS)
    await close_redis()


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/health/redis")
async def health_redis(redis_client=Depends(get_redis)):
    ok = await ping_redis(redis_client)
    return {"status": "ok" if ok else "degraded"}
