"""
WebSocket endpoint that streams session events (QR codes, messages, status).
"""

from starlette.websockets import WebSocket, WebSocketDisconnect

from warden.logger import get_logger

logger = get_logger(__name__)


async def events_websocket_endpoint(websocket: WebSocket):
    dispatcher = getattr(websocket.app.state, "dispatcher", None)
    if dispatcher is None:
        await websocket.close(code=1011, reason="Event system not initialized")
        return

    await websocket.accept()
    dispatcher.add_socket(websocket)
    logger.debug(f"Event socket connected ({dispatcher.socket_count} total)")
    try:
        # Clients only listen; incoming frames are ignored
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        dispatcher.remove_socket(websocket)
