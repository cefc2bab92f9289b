"""Host bridge: a host page serves remote-proxy calls over a WebSocket.

The server posts CALL envelopes down the socket; the host answers with
``{"id", "data"}`` or ``{"id", "error"}``, which are dispatched to the
correlation client.
"""

import asyncio
import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from companion_tavern.rpc import RemoteCallClient

logger = logging.getLogger(__name__)

router = APIRouter()


class WebSocketPort:
    """Reply-less outbound side of the bridge."""

    def __init__(self, websocket: WebSocket) -> None:
        self._websocket = websocket
        self._tasks: set[asyncio.Task] = set()

    def post(self, message: dict) -> None:
        task = asyncio.get_running_loop().create_task(self._websocket.send_json(message))
        self._tasks.add(task)
        task.add_done_callback(self._sent)

    def _sent(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("bridge send failed: %s", task.exception())


@router.websocket("/bridge")
async def bridge(websocket: WebSocket):
    registry = websocket.app.state.registry
    client = RemoteCallClient(WebSocketPort(websocket))
    registry.attach_remote(client)
    await websocket.accept()
    try:
        while True:
            text = await websocket.receive_text()
            try:
                message = json.loads(text)
            except ValueError:
                logger.warning("ignoring non-JSON bridge message")
                continue
            client.dispatch(message)
    except WebSocketDisconnect as e:
        logger.debug("host bridge closed with code %s", e.code)
    finally:
        registry.detach_remote(client)
        client.close()
