import structlog
from fastapi import WebSocket, WebSocketDisconnect

from scenedesk.jobs.broadcast import SubscriberRegistry

logger = structlog.get_logger()


async def live_updates(websocket: WebSocket) -> None:
    """Push lifecycle events to one connected client until it goes away.

    The channel is one-directional; anything the client sends is read and ignored
    so disconnects are noticed.
    """
    registry: SubscriberRegistry = websocket.app.state.subscribers
    await websocket.accept()
    subscriber = registry.register(websocket.send_text, close=websocket.close)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect as e:
        logger.debug("websocket_closed", subscriber_id=subscriber.id, code=e.code)
    finally:
        await registry.unregister(subscriber.id)
