"""
Tournament WebSocket Manager - live standings and game updates

Passive fan-out: clients subscribe to a tournament and receive every engine
event for it (game created / active / finished, AFK warnings, participant
updates). All player actions go through the HTTP routes.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import WebSocket, WebSocketDisconnect

from mathduel.app.core.database import get_session_maker
from mathduel.app.core.exceptions import NotFoundError
from mathduel.app.schemas.tournament_schema import ParticipantResponse, TournamentResponse
from mathduel.app.services.participant_service import participant_service
from mathduel.app.services.tournament_service import tournament_service

logger = logging.getLogger(__name__)


class ConnectionManager:
    def __init__(self):
        # Maps tournament_id -> List of connected WebSockets
        self.active_connections: Dict[int, List[WebSocket]] = {}

    async def connect(self, websocket: WebSocket, tournament_id: int):
        await websocket.accept()
        if tournament_id not in self.active_connections:
            self.active_connections[tournament_id] = []
        self.active_connections[tournament_id].append(websocket)

    def disconnect(self, websocket: WebSocket, tournament_id: int):
        if tournament_id in self.active_connections:
            if websocket in self.active_connections[tournament_id]:
                self.active_connections[tournament_id].remove(websocket)
            if not self.active_connections[tournament_id]:
                del self.active_connections[tournament_id]

    async def broadcast(self, tournament_id: int, message: dict):
        """Broadcast message to all connected clients for this tournament"""
        for connection in self.active_connections.get(tournament_id, [])[:]:
            try:
                await connection.send_json(message)
            except Exception:
                logger.debug("Dropping dead connection for tournament %s", tournament_id)
                self.disconnect(connection, tournament_id)

    async def on_engine_event(self, event_type: str, tournament_id: Optional[int], payload: Dict[str, Any]):
        """EngineEvents listener."""
        if tournament_id is None:
            return
        await self.broadcast(tournament_id, {"type": event_type, "data": payload})

    async def handle_session(self, websocket: WebSocket, tournament_id: int):
        env = websocket.query_params.get("env", "prod")
        await self.connect(websocket, tournament_id)
        SessionLocal = get_session_maker(env)

        try:
            async with SessionLocal() as db:
                try:
                    tournament = await tournament_service.get_tournament(db, tournament_id)
                    standings = await participant_service.standings(db, tournament_id)
                except NotFoundError:
                    await websocket.close(code=4004)
                    return
                await websocket.send_json({
                    "type": "snapshot",
                    "data": {
                        "tournament": TournamentResponse.model_validate(tournament).model_dump(mode="json"),
                        "standings": [
                            ParticipantResponse.model_validate(p).model_dump(mode="json") for p in standings
                        ],
                    },
                })

            # Nothing is accepted from clients; keep the socket open until they leave
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            self.disconnect(websocket, tournament_id)


# Singleton instance
manager = ConnectionManager()
