from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError
from routers.rooms import rooms_router
from routers.signaling import signaling_router
from connections import ClientConnection, connection_manager
from constants import CORS_ORIGINS, LOG_FILE, LOG_LEVEL
from events import CONNECTED
from schemas.signaling import Envelope
import uuid
import json
from logging_config import get_logger, setup_logging

# Setup logging
setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)
logger = get_logger(__name__)

app = FastAPI(title="Screen-share signaling")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(rooms_router)

logger.info("FastAPI application initialized")


def handle_frame(connection: ClientConnection, raw: str):
    """Decode one text frame and hand it to the signaling router."""
    try:
        envelope = Envelope.model_validate(json.loads(raw))
    except json.JSONDecodeError:
        logger.warning(f"Malformed JSON from {connection.connection_id}: {raw[:200]}")
        return
    except ValidationError as e:
        logger.warning(f"Invalid frame from {connection.connection_id}: {e.error_count()} error(s)")
        return

    logger.debug(f"Received {envelope.event} from {connection.connection_id}")
    try:
        result = signaling_router.dispatch(connection.connection_id, envelope.event, envelope.data)
    except Exception as e:
        logger.error(f"Error handling {envelope.event} from {connection.connection_id}: {e}", exc_info=True)
        return

    if envelope.ack is not None:
        connection.send_ack(envelope.ack, result)


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """Signaling socket. One connection is one room member identity."""
    await websocket.accept()
    connection_id = uuid.uuid4().hex
    connection = ClientConnection(websocket, connection_id)
    connection_manager.register(connection)
    connection.start()
    connection.send(CONNECTED, {"id": connection_id})
    logger.info(f"User connected: {connection_id}")

    try:
        while True:
            raw = await websocket.receive_text()
            handle_frame(connection, raw)
    except WebSocketDisconnect as e:
        logger.info(f"WebSocket disconnected for {connection_id} (code: {e.code})")
    except Exception as e:
        logger.error(f"WebSocket error for {connection_id}: {e}", exc_info=True)
    finally:
        connection_manager.unregister(connection_id)
        signaling_router.disconnect(connection_id)
        await connection.close()
