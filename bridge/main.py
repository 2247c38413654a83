"""Main FastAPI application."""
from fastapi import FastAPI
from contextlib import asynccontextmanager

from bridge.core.logging import setup_logging
from bridge.services.runtime import build_runtime
from bridge.api import conversations, session, sms, ws


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    setup_logging()
    factory = getattr(app.state, "runtime_factory", None) or build_runtime
    runtime = factory()
    app.state.runtime = runtime
    await runtime.startup()
    yield
    # Shutdown
    await runtime.shutdown()


app = FastAPI(
    title="Conversation Bridge",
    description="Realtime conversation bridge for text and voice channels",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(ws.router, tags=["websockets"])
app.include_router(conversations.router, tags=["conversations"])
app.include_router(session.router, tags=["session"])
app.include_router(sms.router, tags=["sms"])


@app.get("/")
async def root():
    """Service banner."""
    return {"message": "Conversation Bridge API", "version": "0.1.0"}


if __name__ == "__main__":
    import uvicorn
    from bridge.core.config import settings

    uvicorn.run("bridge.main:app", host=settings.host, port=settings.port)
