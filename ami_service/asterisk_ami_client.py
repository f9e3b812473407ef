# ami_service/asterisk_ami_client.py

import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Dict, Any, Callable, Optional, List
import uuid
import threading
import queue as thread_safe_queue
import socket
import time

from asterisk import ami # Main module, provides ami.AMIClient
from asterisk.ami.action import SimpleAction
from asterisk.ami.response import Response as LibAmiResponse # Alias to avoid conflict with our response dicts
from asterisk.ami.event import Event as LibAmiEvent

from config.app_config import app_config
from common.logger_setup import setup_logger
from ami_service.errors import ActionFailedError, AmiConnectionError, NotConnectedError

logger = setup_logger(__name__, level_str=app_config.LOG_LEVEL)

EventCallback = Callable[[Dict[str, Any]], None]
ResponseCallback = Callable[[str, Dict[str, Any]], None]
ActionErrorCallback = Callable[[str, Exception], None]
DisconnectCallback = Callable[[Optional[Exception]], None]


class AmiAction: # Our internal helper
    def __init__(self, name: str, **kwargs):
        self.name = name
        self.headers = {k: v for k, v in kwargs.items() if v is not None}
        if 'ActionID' not in self.headers:
            self.headers['ActionID'] = f"{name.lower()}-{datetime.now().timestamp()}-{uuid.uuid4().hex[:8]}"

    def get_name(self) -> str:
        return self.name

    def get_headers(self) -> Dict[str, Any]:
        return self.headers

    def get_action_id(self) -> str:
        return self.headers['ActionID']

    def __repr__(self):
        return f"AmiAction({self.name!r}, ActionID={self.get_action_id()!r})"


def event_to_dict(lib_event_obj: Any) -> Dict[str, Any]:
    """Convert the library's Event object to the plain header dict used everywhere else."""
    event_dict: Dict[str, Any] = {}
    name = getattr(lib_event_obj, 'name', None)
    keys = getattr(lib_event_obj, 'keys', None)
    if isinstance(keys, dict):
        event_dict.update(keys)
    elif isinstance(lib_event_obj, dict):
        event_dict.update(lib_event_obj)
    else:
        logger.warning(f"Received event object of unexpected type: {type(lib_event_obj)}")
        event_dict['RawEventDetails'] = str(lib_event_obj)
    if name and 'Event' not in event_dict:
        event_dict['Event'] = name
    return event_dict


def response_to_dict(lib_response: LibAmiResponse) -> Dict[str, Any]:
    response_dict = {
        'Response': getattr(lib_response, 'status', 'Error'),
        **getattr(lib_response, 'keys', {})
    }
    follows = getattr(lib_response, 'follows', None)
    if follows:
        response_dict['Follows'] = '\n'.join(follows)
    return response_dict


class _StreamState:
    """Set from library threads when the AMI stream ends or a keepalive Ping fails."""

    def __init__(self):
        self.lost = threading.Event()
        self.error: Optional[BaseException] = None

    def mark_lost(self, error: BaseException):
        if not self.lost.is_set():
            self.error = error
            self.lost.set()


class AsteriskAmiClient:
    """
    Connection to the Asterisk Manager Interface.

    The asterisk-ami library is blocking, so the library client lives in a
    dedicated worker thread. Actions reach it through a thread-safe queue and
    everything coming back (login result, responses, events, loss of the
    stream) is handed to the asyncio loop with call_soon_threadsafe, where the
    registered listeners run in arrival order.
    """

    def __init__(self, host: Optional[str] = None, port: Optional[int] = None,
                 username: Optional[str] = None, secret: Optional[str] = None,
                 connect_timeout: Optional[float] = None, response_timeout: Optional[float] = None,
                 keepalive_interval: Optional[float] = None, queue_size: Optional[int] = None,
                 socket_timeout: Optional[float] = None):
        self.host = host or app_config.ASTERISK_HOST
        self.port = port or app_config.ASTERISK_PORT
        self.username = username or app_config.ASTERISK_AMI_USER
        self.secret = secret or app_config.ASTERISK_AMI_SECRET
        self.connect_timeout = connect_timeout or app_config.AMI_CONNECT_TIMEOUT_S
        # The library gives up on a response slightly after our own action timeout
        self.response_timeout = response_timeout or app_config.AMI_ACTION_TIMEOUT_S + 5
        self.keepalive_interval = keepalive_interval or app_config.AMI_KEEPALIVE_INTERVAL_S
        self.queue_size = queue_size or app_config.AMI_ACTION_QUEUE_SIZE
        # The library reader dies on a recv timeout, so an idle socket must outlive the keepalive gap
        self.socket_timeout = socket_timeout or max(self.response_timeout, self.keepalive_interval * 2)

        self._ami_thread: Optional[threading.Thread] = None
        self._stop_worker_event = threading.Event()
        self._action_queue: Optional[thread_safe_queue.Queue] = None
        self._response_pool: Optional[ThreadPoolExecutor] = None

        self._main_loop: Optional[asyncio.AbstractEventLoop] = None
        self._generation = 0
        self._session_up = False

        self._event_listeners: List[EventCallback] = []
        self._response_listeners: List[ResponseCallback] = []
        self._action_error_listeners: List[ActionErrorCallback] = []
        self._disconnect_listeners: List[DisconnectCallback] = []

    # --- Listener registration ---

    def add_event_listener(self, callback: EventCallback):
        self._event_listeners.append(callback)

    def add_response_listener(self, callback: ResponseCallback):
        self._response_listeners.append(callback)

    def add_action_error_listener(self, callback: ActionErrorCallback):
        self._action_error_listeners.append(callback)

    def add_disconnect_listener(self, callback: DisconnectCallback):
        self._disconnect_listeners.append(callback)

    @property
    def is_session_up(self) -> bool:
        return self._session_up

    # --- Loop-side dispatch (always runs on the asyncio loop) ---

    def _post(self, generation: int, fn, *args):
        loop = self._main_loop
        if loop is None or loop.is_closed():
            logger.warning(f"Main asyncio loop not available. Dropping {getattr(fn, '__name__', fn)} from AMI worker.")
            return
        loop.call_soon_threadsafe(self._run_if_current, generation, fn, *args)

    def _run_if_current(self, generation: int, fn, *args):
        if generation != self._generation:
            logger.debug(f"Ignoring {fn.__name__} from stale AMI worker generation {generation}.")
            return
        fn(*args)

    def _dispatch_event(self, event_dict: Dict[str, Any]):
        for callback in list(self._event_listeners):
            try:
                callback(event_dict)
            except Exception as e:
                logger.error(f"AMI event listener failed for '{event_dict.get('Event')}': {e}", exc_info=True)

    def _dispatch_response(self, action_id: str, response_dict: Dict[str, Any]):
        for callback in list(self._response_listeners):
            try:
                callback(action_id, response_dict)
            except Exception as e:
                logger.error(f"AMI response listener failed for ActionID {action_id}: {e}", exc_info=True)

    def _dispatch_action_error(self, action_id: str, error: Exception):
        for callback in list(self._action_error_listeners):
            try:
                callback(action_id, error)
            except Exception as e:
                logger.error(f"AMI action error listener failed for ActionID {action_id}: {e}", exc_info=True)

    def _resolve_login(self, login_future: asyncio.Future, error: Optional[Exception]):
        if login_future.done():
            return
        if error is None:
            login_future.set_result(True)
        else:
            login_future.set_exception(error)

    def _on_worker_exit(self, login_future: asyncio.Future, error: Optional[Exception]):
        if not login_future.done():
            login_future.set_exception(AmiConnectionError(f"AMI worker ended before login completed: {error}"))
            return
        if not self._session_up:
            return
        self._session_up = False
        logger.warning(f"AMI session lost. Error: {error}")
        for callback in list(self._disconnect_listeners):
            try:
                callback(error)
            except Exception as e:
                logger.error(f"AMI disconnect listener failed: {e}", exc_info=True)

    # --- Worker thread ---

    def _await_library_response(self, generation: int, action: AmiAction, lib_future):
        action_id = action.get_action_id()
        try:
            lib_response: Optional[LibAmiResponse] = lib_future.response # Blocks
        except Exception as e:
            logger.error(f"Worker: Error waiting for response to '{action.get_name()}' (ID: {action_id}): {e}", exc_info=True)
            self._post(generation, self._dispatch_action_error, action_id, e)
            return
        if lib_response is None:
            # The session layer's own timeout reports this to the caller
            logger.warning(f"Worker: Action '{action.get_name()}' (ID: {action_id}) - no response from library before its timeout.")
            return
        response_dict = response_to_dict(lib_response)
        logger.debug(f"Worker: Action '{action.get_name()}' (ID: {action_id}) received response: {response_dict.get('Response')}")
        self._post(generation, self._dispatch_response, action_id, response_dict)

    def _ami_worker_thread_main(self, generation: int, login_future: asyncio.Future,
                                stop_event: threading.Event, action_queue: thread_safe_queue.Queue,
                                response_pool: ThreadPoolExecutor):
        logger.info(f"AMI Worker Thread ({threading.get_ident()}): Started.")
        sync_client: Optional[ami.AMIClient] = None
        exit_error: Optional[Exception] = None

        try:
            sync_client = ami.AMIClient(address=self.host, port=self.port, timeout=self.socket_timeout)

            # The library calls listeners as listener(event=event, source=client)
            def internal_event_callback_for_library(event: LibAmiEvent, source=None):
                self._post(generation, self._dispatch_event, event_to_dict(event))

            sync_client.add_event_listener(internal_event_callback_for_library)

            # listen() reports recv errors only through on_disconnect, without setting finished
            stream = _StreamState()

            def internal_disconnect_callback_for_library(source=None, error=None):
                stream.mark_lost(error or ConnectionAbortedError("AMI stream closed by server"))

            sync_client.add_listener(on_disconnect=internal_disconnect_callback_for_library)

            logger.info(f"Worker: Connecting and logging into Asterisk at {self.host}:{self.port}...")
            login_response_obj: Optional[LibAmiResponse] = sync_client.login(
                username=self.username, secret=self.secret
            ).response

            if login_response_obj is None or login_response_obj.is_error():
                err_msg = "Worker: AMI Login Failed."
                if login_response_obj is not None:
                    err_msg += f" Message='{login_response_obj.keys.get('Message', 'Login failure')}'"
                else:
                    err_msg += " No response from server."
                raise ConnectionRefusedError(err_msg)

            logger.info(f"Worker: AMI Login Successful. Message: {login_response_obj.keys.get('Message', 'Authentication accepted')}")
            self._post(generation, self._resolve_login, login_future, None)

            last_activity = time.monotonic()
            while not stop_event.is_set():
                finished = getattr(sync_client, 'finished', None)
                if finished is not None and finished.is_set():
                    stream.mark_lost(ConnectionAbortedError("AMI stream closed by server"))
                if stream.lost.is_set():
                    if isinstance(stream.error, ConnectionAbortedError):
                        raise stream.error
                    raise ConnectionAbortedError(f"AMI stream lost: {stream.error!r}") from stream.error

                try:
                    action = action_queue.get(block=True, timeout=1.0)
                except thread_safe_queue.Empty:
                    if time.monotonic() - last_activity > self.keepalive_interval:
                        self._send_keepalive(sync_client, response_pool, stream)
                        last_activity = time.monotonic()
                    continue

                if action is None:
                    break

                action_id = action.get_action_id()
                action_for_lib = SimpleAction(action.get_name(), **action.get_headers())
                logger.debug(f"Worker: Sending Action='{action.get_name()}', ActionID='{action_id}'")
                try:
                    lib_future = sync_client.send_action(action_for_lib)
                except OSError as e_send:
                    logger.error(f"Worker: Error sending '{action.get_name()}' (ID: {action_id}): {e_send}")
                    self._post(generation, self._dispatch_action_error, action_id, e_send)
                    continue
                response_pool.submit(self._await_library_response, generation, action, lib_future)
                last_activity = time.monotonic()

        except (ConnectionRefusedError, socket.timeout, OSError, ConnectionAbortedError) as e:
            logger.error(f"AMI Worker Thread: Connection error: {e}")
            exit_error = e
        except Exception as e:
            logger.critical(f"AMI Worker Thread: Unhandled Exception: {e}", exc_info=True)
            exit_error = e
        finally:
            logger.info(f"AMI Worker Thread ({threading.get_ident()}): Shutting down...")
            if sync_client is not None:
                try:
                    if stop_event.is_set():
                        logger.info("Worker: Attempting Logoff.")
                        logoff_future = sync_client.logoff()
                        if logoff_future:
                            logoff_future.response # Block for logoff completion
                    sync_client.disconnect()
                except Exception as e_close:
                    logger.error(f"Worker: Error during client cleanup (logoff/disconnect): {e_close}")
            self._post(generation, self._on_worker_exit, login_future, exit_error)
            logger.info(f"AMI Worker Thread ({threading.get_ident()}): Finished.")

    def _send_keepalive(self, sync_client: ami.AMIClient, response_pool: ThreadPoolExecutor, stream: _StreamState):
        logger.debug("Worker: Sending keepalive Ping.")
        ping_action = AmiAction('Ping')
        lib_future = sync_client.send_action(SimpleAction('Ping', **ping_action.get_headers()))
        response_pool.submit(self._await_keepalive, lib_future, stream)

    def _await_keepalive(self, lib_future, stream: _StreamState):
        ping_response: Optional[LibAmiResponse] = lib_future.response # Blocks
        if ping_response is None or ping_response.is_error():
            logger.warning("Worker: Keepalive Ping got no valid response.")
            stream.mark_lost(ConnectionAbortedError("Ping failure implies connection loss"))

    # --- Async public API ---

    async def connect(self):
        """Start a worker, log in, and return once the session is up. Raises AmiConnectionError."""
        await self._stop_ami_worker()

        self._main_loop = asyncio.get_running_loop()
        self._generation += 1
        generation = self._generation
        login_future = self._main_loop.create_future()
        self._stop_worker_event = threading.Event()
        self._action_queue = thread_safe_queue.Queue(maxsize=self.queue_size)
        self._response_pool = ThreadPoolExecutor(max_workers=8, thread_name_prefix="AMIResponse")

        self._ami_thread = threading.Thread(
            target=self._ami_worker_thread_main,
            args=(generation, login_future, self._stop_worker_event, self._action_queue, self._response_pool),
            daemon=True,
            name="AMIWorkerThread",
        )
        self._ami_thread.start()
        logger.info("New AMI worker thread started. Waiting for login result.")

        try:
            await asyncio.wait_for(login_future, timeout=self.connect_timeout)
        except asyncio.TimeoutError:
            logger.error("Timeout waiting for AMI worker thread to connect/login.")
            await self._stop_ami_worker()
            raise AmiConnectionError(f"Timed out connecting to AMI at {self.host}:{self.port}")
        except AmiConnectionError:
            await self._stop_ami_worker()
            raise
        self._session_up = True

    def submit_action(self, action: AmiAction):
        """Hand an action to the worker without waiting. The response arrives via the response listeners."""
        if not self._session_up or self._action_queue is None:
            raise NotConnectedError()
        try:
            self._action_queue.put_nowait(action)
        except thread_safe_queue.Full:
            raise ActionFailedError(f"AMI action queue is full; cannot send {action.get_name()}")
        logger.debug(f"Queued action {action.get_name()} (ID: {action.get_action_id()}) for worker thread.")

    async def _stop_ami_worker(self):
        self._session_up = False
        if self._ami_thread and self._ami_thread.is_alive():
            logger.info(f"Stopping AMI worker thread ({self._ami_thread.name})...")
            self._stop_worker_event.set()
            if self._action_queue is not None:
                try:
                    self._action_queue.put_nowait(None)
                except thread_safe_queue.Full:
                    pass # Worker still sees the stop event within a second

            join_timeout = 5.0
            start_join_time = time.monotonic()
            while self._ami_thread.is_alive() and (time.monotonic() - start_join_time) < join_timeout:
                await asyncio.sleep(0.1)

            if self._ami_thread.is_alive():
                logger.warning(f"AMI worker thread ({self._ami_thread.name}) did not stop in {join_timeout}s.")
            else:
                logger.info(f"AMI worker thread ({self._ami_thread.name}) stopped.")
        self._ami_thread = None
        if self._response_pool is not None:
            self._response_pool.shutdown(wait=False, cancel_futures=True)
            self._response_pool = None

    async def close(self):
        logger.info("Closing AsteriskAmiClient connection.")
        # Bumping the generation silences anything the old worker still posts
        self._generation += 1
        await self._stop_ami_worker()
        logger.info("AsteriskAmiClient resources released and client closed.")
