"""Real-time alert subscriptions over WebSocket."""

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from src.core.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["realtime"])


@router.websocket("/ws")
async def alerts_websocket(websocket: WebSocket) -> None:
    """Stream alert changes for the topics the client subscribes to.

    Topics are ``alerts`` for everything or ``alerts.<item_kind>`` for one
    kind of item. See ``src.services.fanout`` for the message format.
    """
    hub = websocket.app.state.runtime.hub
    await websocket.accept()
    connection_id = await hub.register(websocket)

    try:
        while websocket.application_state == WebSocketState.CONNECTED:
            raw = await websocket.receive_text()
            await hub.handle_message(connection_id, raw)
    except WebSocketDisconnect as e:
        logger.debug("WebSocket closed by client", connection_id=connection_id, code=e.code)
    finally:
        await hub.disconnect(connection_id)
