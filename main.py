import logging

import uvicorn
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from contextlib import asynccontextmanager
from pydantic import BaseModel

from broker import ConnectionRegistry, RoomRouter
from config import HOST, LOG_LEVEL, PORT, WS_PATH

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)

registry = ConnectionRegistry()
router = RoomRouter(registry)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("relay started, websocket path=%s", WS_PATH)
    yield
    logger.info("relay stopping, dropping %d memberships", len(registry))
    registry.clear()


app = FastAPI(lifespan=lifespan)


@app.websocket(WS_PATH)
async def ws_endpoint(websocket: WebSocket):
    await websocket.accept()
    logger.info("client connected id=%s", id(websocket))
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))
            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes") or b""
            await router.dispatch(websocket, raw)
    except WebSocketDisconnect:
        logger.info("client disconnected id=%s", id(websocket))
    except Exception:
        logger.exception("websocket error id=%s", id(websocket))
    finally:
        registry.leave(websocket)


class PublishRequest(BaseModel):
    username: str
    message: str


@app.post("/publish/{room_id}", status_code=202)
async def publish_to_room(room_id: str, body: PublishRequest):
    """Push a chat message to every WebSocket client in room_id."""
    delivered = await router.broadcast(room_id, body.username, body.message)
    return {
        "room_id": room_id,
        "clients": len(registry.members_of(room_id)),
        "delivered": delivered,
    }


@app.get("/rooms")
async def list_rooms():
    return {"rooms": registry.active_rooms()}


@app.get("/rooms/{room_id}")
async def room_detail(room_id: str):
    members = registry.members_of(room_id)
    if not members:
        raise HTTPException(status_code=404, detail="room is empty")
    return {
        "room_id": room_id,
        "clients": len(members),
        "members": sorted(m.display_name for m in members),
    }


@app.get("/health")
async def health():
    return {"status": "ok"}


if __name__ == "__main__":
    uvicorn.run(app, host=HOST, port=PORT)
