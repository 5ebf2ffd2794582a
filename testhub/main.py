import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Dict

from fastapi import FastAPI

from testhub.routes import api
from testhub.services.orchestrator import shutdown_orchestrator
from testhub.services.settings import get_settings


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    logging.getLogger("testhub").setLevel(get_settings().log_level.upper())
    yield
    await shutdown_orchestrator()


app = FastAPI(title="testhub Test Run Server", lifespan=lifespan)
app.include_router(api.router)


@app.get("/health")
async def health() -> Dict[str, str]:
    """Liveness check used by CI callers before triggering runs."""
    return {"status": "healthy", "timestamp": datetime.now(tz=timezone.utc).isoformat()}
