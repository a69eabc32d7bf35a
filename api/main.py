import sys, os, uvicorn, logging
from contextlib import asynccontextmanager
from typing import Optional, Protocol, cast

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from config.settings import settings
from orchestration.runtime import Runtime, build_runtime
from services.redis_client import get_redis_client
from api.routers import agents, quotes, sourcing_requests, stream

LOG_DIR = os.path.join(os.path.dirname(__file__), '..', 'logs')
os.makedirs(LOG_DIR, exist_ok=True)
logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
                    handlers=[logging.StreamHandler(), logging.FileHandler(os.path.join(LOG_DIR, "quotebridge.log"))])
logger = logging.getLogger(__name__)


class QuoteBridgeAppState(Protocol):
    runtime: Optional["Runtime"]


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("API starting up...")
    state = cast(QuoteBridgeAppState, app.state)
    try:
        runtime = build_runtime(settings, redis_client=get_redis_client())
        runtime.start()
        state.runtime = runtime
        logger.info("System initialized successfully.")
    except Exception as e:
        logger.critical(f"FATAL: System initialization failed: {e}", exc_info=True)
        state.runtime = None
    yield
    runtime = getattr(state, "runtime", None)
    if runtime is not None:
        try:
            runtime.stop()
        except Exception:  # pragma: no cover - shutdown best effort
            logger.exception("Failed to stop runtime during shutdown")
        state.runtime = None
    logger.info("API shutting down.")

app = FastAPI(title="QuoteBridge Match-and-Fulfill API", version="1.0", lifespan=lifespan)
app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_credentials=True, allow_methods=["*"], allow_headers=["*"])

app.include_router(agents.router)
app.include_router(quotes.router)
app.include_router(sourcing_requests.router)
app.include_router(stream.router)

@app.get("/", tags=["General"])
def read_root(): return {"message": "Welcome to the QuoteBridge Match-and-Fulfill API"}

@app.get("/health", tags=["General"])
def health():
    runtime = getattr(app.state, "runtime", None)
    if runtime is None:
        return {"status": "degraded", "runtime": False}
    return {"status": "ok", "runtime": True, "queues": runtime.queues.counts()}

if __name__ == "__main__":
    uvicorn.run("api.main:app", host="0.0.0.0", port=8000, reload=True)
