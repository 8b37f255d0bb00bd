"""WebSocket transport for call signaling plus an introspection endpoint."""
from __future__ import annotations

import itertools
import json
import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from ..core.config import settings
from ..schemas.signaling import ErrorMessage, SignalingStats
from ..services.registry import SignalingConnection
from ..services.signaling import CallSignalingEngine, get_engine

logger = logging.getLogger(__name__)

router = APIRouter()

_connection_ids = itertools.count(1)


def next_connection_id() -> str:
    return str(next(_connection_ids))


@router.get("/api/signaling/stats", response_model=SignalingStats, tags=["signaling"])
async def signaling_stats(engine: CallSignalingEngine = Depends(get_engine)) -> SignalingStats:
    """Return registry and candidate queue counters."""

    return await engine.stats()


@router.websocket(settings.signaling_path)
async def signaling_endpoint(websocket: WebSocket, engine: CallSignalingEngine = Depends(get_engine)) -> None:
    """Feed decoded frames from one browser into the signaling engine."""

    connection_id = next_connection_id()
    await websocket.accept()
    connection = SignalingConnection(connection_id, websocket.send_json)
    logger.info("Connection received with id %s", connection_id)

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                payload = json.loads(raw)
            except ValueError:
                logger.warning("Connection %s sent a frame that is not JSON", connection_id)
                await engine.reply(connection, ErrorMessage(message="Invalid message: not JSON"))
                continue
            logger.debug("Connection %s received message %s", connection_id, payload)
            await engine.handle(connection, payload)
    except WebSocketDisconnect:
        logger.info("Connection %s closed", connection_id)
    except Exception:
        logger.exception("Connection %s error", connection_id)
    finally:
        await engine.unregister_on_disconnect(connection_id)
        await connection.close()
