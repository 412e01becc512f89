import asyncio
import logging
from contextlib import suppress
from uuid import UUID
from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from app.events.broadcaster import broadcaster, Subscription

router = APIRouter()
log = logging.getLogger("uvicorn")


async def _relay(websocket: WebSocket, sub: Subscription):
    while True:
        message = await sub.get()
        await websocket.send_json(message)


@router.websocket("/ws/orders/{order_id}")
async def track_order(websocket: WebSocket, order_id: UUID):
    """
    Joins the order's channel and relays every location/status event to the
    client. Events published before the connection are not replayed.
    """
    await websocket.accept()
    async with broadcaster.subscribe(order_id) as sub:
        relay = asyncio.create_task(_relay(websocket, sub))
        try:
            # Clients only listen; reading is how the close frame is noticed.
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            log.info(f"Tracking client for order {order_id} disconnected.")
        finally:
            relay.cancel()
            # A send on a dropped socket fails the relay before it is cancelled.
            with suppress(asyncio.CancelledError, WebSocketDisconnect, RuntimeError):
                await relay
