from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import logging
import os

from mathduel.app.api.games import router as games_router
from mathduel.app.api.tournament import router as tournament_router
from mathduel.app.api.websocket_manager import manager
from mathduel.app.core.events import engine_events
from mathduel.app.services.game_runner import tournament_runner

logger = logging.getLogger(__name__)

# --- LIFESPAN MANAGER (scheduler runs for the app's lifetime) ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    engine_events.subscribe(manager.on_engine_event)

    # Open games left over from a restart are resolved by the first tick
    tournament_runner.start()

    yield

    await tournament_runner.stop()
    engine_events.unsubscribe(manager.on_engine_event)
# -------------------------------------------------

app = FastAPI(title="MathDuel Tournaments", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "http://localhost:5173,http://localhost:3000").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register routers
app.include_router(tournament_router, prefix="/tournaments", tags=["Tournaments"])
app.include_router(games_router, prefix="/games", tags=["Games"])

@app.get("/health")
async def health():
    return {"status": "ok", "scheduler": tournament_runner.is_running()}
