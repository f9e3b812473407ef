# web_interface/routes_ws.py

import asyncio
from typing import Dict

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from config.app_config import app_config
from common.data_models import ConnectivityStatus, WsSubscriptionCommand
from common.logger_setup import setup_logger
from ami_service.ami_events import ASTERISK_STATUS, ChannelGroup
from ami_service.channel_groups import GroupSubscription

logger = setup_logger(__name__, level_str=app_config.LOG_LEVEL)
router = APIRouter()


class _GroupRelay:
    """Forwards the messages of each joined channel group to one WebSocket."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self.hub = websocket.app.state.hub
        self._send_lock = asyncio.Lock()
        self._subscriptions: Dict[str, GroupSubscription] = {}
        self._forwarders: Dict[str, asyncio.Task] = {}

    async def send(self, message: dict):
        async with self._send_lock:
            await self.websocket.send_json(message)

    async def _forward(self, subscription: GroupSubscription):
        while True:
            message = await subscription.get()
            try:
                await self.send({"group": subscription.group, **message})
            except (WebSocketDisconnect, RuntimeError, OSError) as e:
                # Socket already closed; the receive loop tears the relay down
                logger.debug(f"Stopped forwarding group '{subscription.group}' to {self.websocket.client}: {e!r}")
                return

    async def join(self, group: str):
        if group in self._subscriptions:
            return
        subscription = self.hub.subscribe(group)
        self._subscriptions[group] = subscription
        self._forwarders[group] = asyncio.create_task(self._forward(subscription))
        await self.send({"event": "subscribed", "group": group})
        if group == ChannelGroup.SYSTEM.value:
            manager = getattr(self.websocket.app.state, "ami_manager", None)
            connected = manager.is_connected() if manager else False
            await self.send({"group": group, "event": ASTERISK_STATUS,
                             "payload": ConnectivityStatus(connected=connected).model_dump()})

    async def leave(self, group: str):
        task = self._forwarders.pop(group, None)
        subscription = self._subscriptions.pop(group, None)
        try:
            if task:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass # Expected when leaving a group
                except Exception as e:
                    logger.error(f"Forwarder for group '{group}' ended with an error: {e}", exc_info=True)
        finally:
            if subscription:
                subscription.close()

    async def close(self):
        for group in list(self._subscriptions):
            await self.leave(group)


@router.websocket("/ws")
async def channel_group_socket(websocket: WebSocket):
    await websocket.accept()
    relay = _GroupRelay(websocket)
    logger.info(f"WebSocket client connected: {websocket.client}")
    try:
        while True:
            text = await websocket.receive_text()
            try:
                command = WsSubscriptionCommand.model_validate_json(text)
            except ValidationError as e:
                await relay.send({"event": "error", "detail": e.errors(include_url=False, include_input=False)})
                continue
            if command.action == "subscribe":
                await relay.join(command.group)
            else:
                await relay.leave(command.group)
                await relay.send({"event": "unsubscribed", "group": command.group})
    except WebSocketDisconnect:
        logger.info(f"WebSocket client disconnected: {websocket.client}")
    finally:
        await relay.close()
