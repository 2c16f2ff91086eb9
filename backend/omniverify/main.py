from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from .config import settings
from .context import build_context
from .pipeline import Pipeline


@asynccontextmanager
async def lifespan(app: FastAPI):
    ctx = build_context()
    app.state.pipeline = Pipeline(ctx)
    try:
        yield
    finally:
        await ctx.close()


app = FastAPI(title=settings.APP_NAME, lifespan=lifespan)


# ---------------------------------------------------
# Health check
# ---------------------------------------------------
@app.get("/health", tags=["health"])
async def health():
    return {"status": "ok"}


@app.get("/health/pipeline", tags=["health"])
async def pipeline_health(request: Request):
    """Queue depth, rate-limit utilization, circuit state and dead-letter backlog."""
    return await request.app.state.pipeline.health()

# ---------------------------------------------------
# Note:
# Don't run uvicorn.run() here; the container starts uvicorn as its entrypoint.
# ---------------------------------------------------
