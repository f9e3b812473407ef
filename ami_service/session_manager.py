# ami_service/session_manager.py

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from config.app_config import app_config
from common.logger_setup import setup_logger
from common.data_models import ConnectivityStatus, OriginateRequest, HangupRequest, ModuleReloadRequest, RawCommandRequest
from ami_service.ami_events import ASTERISK_STATUS, ChannelGroup, classify_event
from ami_service.asterisk_ami_client import AmiAction
from ami_service.channel_groups import EventSink
from ami_service.errors import (
    ActionFailedError,
    ActionTimeoutError,
    AmiConnectionError,
    AmiError,
    ChannelNotFoundError,
    CommandFailedError,
    NotConnectedError,
    OriginateRejectedError,
    ProtocolError,
    ReloadFailedError,
)

logger = setup_logger(__name__, level_str=app_config.LOG_LEVEL)

# Asterisk's own dial timeout for Originate, in milliseconds
ORIGINATE_DIAL_TIMEOUT_MS = 30000


class AmiTransport(Protocol):
    def add_event_listener(self, callback) -> None: ...
    def add_response_listener(self, callback) -> None: ...
    def add_action_error_listener(self, callback) -> None: ...
    def add_disconnect_listener(self, callback) -> None: ...
    async def connect(self) -> None: ...
    def submit_action(self, action: AmiAction) -> None: ...
    async def close(self) -> None: ...


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass
class PendingAction:
    action: AmiAction
    future: asyncio.Future
    # Name of the event that ends a list action ('CoreShowChannelsComplete'); None for single replies
    complete_event: Optional[str] = None
    rows: List[Dict[str, Any]] = field(default_factory=list)
    response: Optional[Dict[str, Any]] = None
    timeout_handle: Optional[asyncio.TimerHandle] = None

    @property
    def action_id(self) -> str:
        return self.action.get_action_id()


class AmiSessionManager:
    """
    Owns the single AMI session of the process.

    Callers get one awaitable per action; replies are matched to requests by
    ActionID through the correlation table, and every entry is reaped after
    the action timeout. Unsolicited events are classified and pushed to the
    'calls' or 'system' channel group. When the session drops the manager
    reconnects after a fixed delay, up to max_reconnect_attempts times.
    """

    def __init__(self, transport: AmiTransport, sink: EventSink,
                 action_timeout_s: Optional[float] = None,
                 reconnect_delay_s: Optional[float] = None,
                 max_reconnect_attempts: Optional[int] = None):
        self.transport = transport
        self.sink = sink
        self.action_timeout_s = action_timeout_s if action_timeout_s is not None else app_config.AMI_ACTION_TIMEOUT_S
        self.reconnect_delay_s = reconnect_delay_s if reconnect_delay_s is not None else app_config.AMI_RECONNECT_DELAY_S
        self.max_reconnect_attempts = (max_reconnect_attempts if max_reconnect_attempts is not None
                                       else app_config.AMI_MAX_RECONNECT_ATTEMPTS)

        self.state = ConnectionState.DISCONNECTED
        self.reconnect_attempts = 0
        self.reconnect_exhausted = False

        self._pending: Dict[str, PendingAction] = {}
        self._reconnect_task: Optional[asyncio.Task] = None
        self._handlers_registered = False
        self._closed = False

    # --- Lifecycle ---

    async def initialize(self):
        """Register transport handlers and open the session. A failed first attempt raises AmiConnectionError."""
        if not self._handlers_registered:
            self.transport.add_event_listener(self._handle_event)
            self.transport.add_response_listener(self._handle_response)
            self.transport.add_action_error_listener(self._handle_action_error)
            self.transport.add_disconnect_listener(self._handle_disconnect)
            self._handlers_registered = True
        self._closed = False
        await self._connect_once()
        logger.info("AMI session manager initialized.")

    async def _connect_once(self):
        self.state = ConnectionState.CONNECTING
        try:
            await self.transport.connect()
        except asyncio.CancelledError:
            self.state = ConnectionState.DISCONNECTED
            raise
        except Exception as e:
            self.state = ConnectionState.DISCONNECTED
            logger.error(f"Failed to connect to Asterisk AMI: {e}")
            if isinstance(e, AmiConnectionError):
                raise
            raise AmiConnectionError(str(e)) from e
        self._on_connected()

    def _on_connected(self):
        self.state = ConnectionState.CONNECTED
        self.reconnect_attempts = 0
        self.reconnect_exhausted = False
        logger.info("Connected to Asterisk Manager Interface")
        self._publish(ChannelGroup.SYSTEM, ASTERISK_STATUS, ConnectivityStatus(connected=True).model_dump())

    def _handle_disconnect(self, error: Optional[Exception] = None):
        if self._closed or self.state != ConnectionState.CONNECTED:
            logger.debug(f"Ignoring disconnect notification in state {self.state.value}: {error}")
            return
        logger.warning(f"Disconnected from Asterisk Manager Interface: {error}")
        self.state = ConnectionState.DISCONNECTED
        self._fail_all_pending(NotConnectedError("AMI session lost"))
        self._publish(ChannelGroup.SYSTEM, ASTERISK_STATUS, ConnectivityStatus(connected=False).model_dump())
        self._schedule_reconnect()

    def _schedule_reconnect(self):
        if self._closed:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            logger.debug("Reconnection already in progress.")
            return
        self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect_loop(), name="ami-reconnect")

    async def _reconnect_loop(self):
        while self.reconnect_attempts < self.max_reconnect_attempts:
            await asyncio.sleep(self.reconnect_delay_s)
            if self._closed:
                return
            self.reconnect_attempts += 1
            logger.info(f"Attempting to reconnect to Asterisk AMI (attempt {self.reconnect_attempts}/{self.max_reconnect_attempts})")
            try:
                await self._connect_once()
                return
            except AmiConnectionError as e:
                logger.error(f"Reconnection attempt {self.reconnect_attempts} failed: {e}")
        self.reconnect_exhausted = True
        logger.error(f"Max reconnection attempts reached ({self.max_reconnect_attempts}). "
                     "AMI session stays down until the service is restarted.")

    async def close(self):
        logger.info("Shutting down AMI session manager.")
        self._closed = True
        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass # Expected on shutdown
        self._reconnect_task = None
        self._fail_all_pending(NotConnectedError("AMI session manager closed"))
        was_connected = self.state == ConnectionState.CONNECTED
        self.state = ConnectionState.DISCONNECTED
        try:
            await self.transport.close()
        except Exception as e:
            logger.error(f"Error closing AMI transport: {e}", exc_info=True)
        if was_connected:
            self._publish(ChannelGroup.SYSTEM, ASTERISK_STATUS, ConnectivityStatus(connected=False).model_dump())

    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    def status(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "connected": self.is_connected(),
            "reconnect_attempts": self.reconnect_attempts,
            "max_reconnect_attempts": self.max_reconnect_attempts,
            "reconnect_exhausted": self.reconnect_exhausted,
            "pending_actions": len(self._pending),
        }

    # --- Correlation ---

    def _send(self, action: AmiAction, complete_event: Optional[str] = None) -> asyncio.Future:
        if not self.is_connected():
            raise NotConnectedError()
        loop = asyncio.get_running_loop()
        pending = PendingAction(action=action, future=loop.create_future(), complete_event=complete_event)
        action_id = pending.action_id
        self._pending[action_id] = pending
        pending.timeout_handle = loop.call_later(self.action_timeout_s, self._expire, action_id)
        try:
            self.transport.submit_action(action)
        except Exception as e:
            self._settle(action_id, error=e if isinstance(e, AmiError) else ActionFailedError(f"Could not send {action.get_name()}: {e}"))
        return pending.future

    async def _invoke(self, action: AmiAction, complete_event: Optional[str] = None):
        future = self._send(action, complete_event)
        try:
            return await future
        finally:
            # Caller cancelled: drop the entry so a late reply is ignored
            if future.cancelled():
                self._settle(action.get_action_id(), discard=True)

    def _settle(self, action_id: str, result: Any = None, error: Optional[BaseException] = None,
                discard: bool = False) -> bool:
        pending = self._pending.pop(action_id, None)
        if pending is None:
            return False
        if pending.timeout_handle is not None:
            pending.timeout_handle.cancel()
        if discard or pending.future.done():
            return True
        if error is not None:
            pending.future.set_exception(error)
        else:
            pending.future.set_result(result)
        return True

    def _expire(self, action_id: str):
        pending = self._pending.get(action_id)
        if pending is None:
            return
        logger.warning(f"Timeout waiting for response to ActionID {action_id} ({pending.action.get_name()}).")
        self._settle(action_id, error=ActionTimeoutError(pending.action.get_name(), action_id, self.action_timeout_s))

    def _fail_all_pending(self, error: AmiError):
        for action_id in list(self._pending):
            self._settle(action_id, error=error)

    def _handle_response(self, action_id: str, response: Any):
        pending = self._pending.get(action_id)
        if pending is None:
            logger.debug(f"Dropping response for unknown or expired ActionID {action_id}.")
            return
        if not isinstance(response, dict) or not response.get("Response"):
            self._settle(action_id, error=ProtocolError(
                f"Malformed reply to {pending.action.get_name()}: missing Response header", response))
            return
        if pending.complete_event is None or str(response["Response"]).lower() == "error":
            self._settle(action_id, result=response)
            return
        # List action: rows follow as events, the '...Complete' event ends it
        pending.response = response

    def _handle_action_error(self, action_id: str, error: Exception):
        pending = self._pending.get(action_id)
        if pending is None:
            return
        logger.error(f"Transport error for {pending.action.get_name()} (ActionID {action_id}): {error}")
        self._settle(action_id, error=error if isinstance(error, AmiError)
                     else ActionFailedError(f"{pending.action.get_name()} failed: {error}"))

    def _collect_list_row(self, event: Dict[str, Any]) -> None:
        action_id = event.get("ActionID")
        pending = self._pending.get(action_id) if action_id else None
        if pending is None or pending.complete_event is None:
            return
        name = str(event.get("Event", ""))
        if name.lower() == pending.complete_event.lower():
            self._settle(action_id, result={"response": pending.response or {}, "events": pending.rows,
                                            "complete": event})
        else:
            pending.rows.append(event)

    # --- Event relay ---

    def _handle_event(self, event: Dict[str, Any]):
        try:
            self._collect_list_row(event)
            classified = classify_event(event)
            if classified is None:
                return
            logger.debug(f"Relaying AMI event {event.get('Event')} to group '{classified.group.value}' as {classified.type}")
            self._publish(classified.group, classified.emit_name, classified.envelope())
        except Exception as e:
            logger.error(f"Error handling AMI event {event.get('Event') if isinstance(event, dict) else event!r}: {e}",
                         exc_info=True)

    def _publish(self, group: ChannelGroup, event_name: str, payload: Dict[str, Any]):
        try:
            self.sink.publish(group, event_name, payload)
        except Exception as e:
            logger.error(f"Event sink failed for '{event_name}' on group '{group.value}': {e}", exc_info=True)

    # --- Operations ---

    @staticmethod
    def _is_error(response: Dict[str, Any]) -> bool:
        return str(response.get("Response", "")).lower() == "error"

    async def _list_action(self, name: str, complete_event: str) -> List[Dict[str, Any]]:
        result = await self._invoke(AmiAction(name), complete_event=complete_event)
        if isinstance(result, dict) and "events" in result:
            return result["events"]
        if isinstance(result, dict) and self._is_error(result):
            raise ProtocolError(f"{name} was rejected: {result.get('Message', 'unknown error')}", result)
        raise ProtocolError(f"Unexpected reply to {name}", result)

    async def list_active_channels(self) -> List[Dict[str, Any]]:
        return await self._list_action("CoreShowChannels", "CoreShowChannelsComplete")

    async def list_peers(self) -> List[Dict[str, Any]]:
        return await self._list_action("SIPpeers", "PeerlistComplete")

    async def originate_call(self, channel: str, context: str, extension: str, priority: int = 1,
                             caller_id: Optional[str] = None) -> Dict[str, Any]:
        request = OriginateRequest(channel=channel, context=context, extension=extension,
                                   priority=priority, caller_id=caller_id)
        response = await self._invoke(AmiAction(
            "Originate",
            Channel=request.channel,
            Context=request.context,
            Exten=request.extension,
            Priority=str(request.priority),
            CallerID=request.caller_id,
            Timeout=str(ORIGINATE_DIAL_TIMEOUT_MS),
        ))
        if self._is_error(response):
            raise OriginateRejectedError(f"Originate rejected: {response.get('Message', 'unknown error')}", response)
        logger.info(f"Originate accepted for {request.channel} -> {request.extension}@{request.context}")
        return response

    async def hangup_call(self, channel: str) -> Dict[str, Any]:
        request = HangupRequest(channel=channel)
        response = await self._invoke(AmiAction("Hangup", Channel=request.channel))
        if self._is_error(response):
            message = str(response.get("Message", ""))
            if "no such channel" in message.lower():
                raise ChannelNotFoundError(f"No such channel: {request.channel}", response)
            raise ActionFailedError(f"Hangup failed: {message or 'unknown error'}", response)
        return response

    async def get_core_status(self) -> Dict[str, Any]:
        response = await self._invoke(AmiAction("CoreStatus"))
        if self._is_error(response):
            raise ActionFailedError(f"CoreStatus failed: {response.get('Message', 'unknown error')}", response)
        return response

    async def reload_module(self, module_name: str) -> Dict[str, Any]:
        request = ModuleReloadRequest(module=module_name)
        response = await self._invoke(AmiAction("ModuleReload", Module=request.module))
        if self._is_error(response):
            raise ReloadFailedError(f"Reload of {request.module} failed: {response.get('Message', 'unknown error')}", response)
        return response

    async def execute_raw_command(self, command: str) -> str:
        request = RawCommandRequest(command=command)
        response = await self._invoke(AmiAction("Command", Command=request.command))
        if self._is_error(response):
            raise CommandFailedError(f"Command '{request.command}' failed: {response.get('Message', 'unknown error')}", response)
        # Asterisk < 14 answers 'Follows' with a text body, newer versions send Output headers
        output = response.get("Follows", response.get("Output"))
        if output is None:
            return ""
        if isinstance(output, list):
            return "\n".join(str(line) for line in output)
        return str(output)

    # --- Conference helpers (best effort) ---

    async def _best_effort_command(self, command: str) -> bool:
        try:
            await self.execute_raw_command(command)
            return True
        except AmiError as e:
            logger.warning(f"Best-effort AMI command '{command}' failed: {e}")
            return False

    async def kick_conference_participant(self, conference: str, channel: str) -> bool:
        return await self._best_effort_command(f"confbridge kick {conference} {channel}")

    async def set_conference_participant_mute(self, conference: str, channel: str, muted: bool) -> bool:
        verb = "mute" if muted else "unmute"
        return await self._best_effort_command(f"confbridge {verb} {conference} {channel}")
