"""
Tests for the threaded AMI transport, with the asterisk-ami library client
replaced by an in-memory stand-in, plus a few runs of the real library
against a minimal AMI server on localhost.
"""

import asyncio
import socket
import threading
import time

import pytest

from ami_service import asterisk_ami_client
from ami_service.asterisk_ami_client import AmiAction, AsteriskAmiClient, event_to_dict, response_to_dict
from ami_service.errors import AmiConnectionError, NotConnectedError


class _LibResponse:
    def __init__(self, status="Success", keys=None, follows=None):
        self.status = status
        self.keys = keys or {}
        self.follows = follows

    def is_error(self):
        return self.status.lower() == "error"


class _LibFuture:
    def __init__(self, response):
        self.response = response


class _LibEvent:
    def __init__(self, name, keys):
        self.name = name
        self.keys = keys


class _FakeLibClient:
    login_status = "Success"

    def __init__(self, address, port, timeout):
        self.address = address
        self.port = port
        self.finished = threading.Event()
        self.listeners = []
        self.client_listeners = []
        self.sent = []
        self.logged_off = False
        self.disconnected = False

    def add_event_listener(self, listener):
        self.listeners.append(listener)

    def add_listener(self, listener=None, **kwargs):
        self.client_listeners.append(kwargs)

    def lose_stream(self, error):
        for listener in self.client_listeners:
            listener["on_disconnect"](source=self, error=error)

    def login(self, username, secret):
        message = "Authentication accepted" if self.login_status == "Success" else "Authentication failed"
        return _LibFuture(_LibResponse(self.login_status, {"Message": message}))

    def send_action(self, action):
        name, headers = action
        self.sent.append((name, headers))
        return _LibFuture(_LibResponse("Success", {"ActionID": headers["ActionID"], "Ping": "Pong"}))

    def logoff(self):
        self.logged_off = True
        return _LibFuture(_LibResponse("Goodbye"))

    def disconnect(self):
        self.disconnected = True

    def fire(self, event):
        for listener in self.listeners:
            listener(event=event, source=self)


@pytest.fixture
def lib_clients(monkeypatch):
    created = []

    def factory(login_status="Success"):
        def make(address, port, timeout):
            client = _FakeLibClient(address, port, timeout)
            client.login_status = login_status
            created.append(client)
            return client
        monkeypatch.setattr(asterisk_ami_client.ami, "AMIClient", make)
        return created

    monkeypatch.setattr(asterisk_ami_client, "SimpleAction", lambda name, **headers: (name, headers))
    return factory


def _client():
    return AsteriskAmiClient(
        host="pbx.test", port=5038, username="admin", secret="secret",
        connect_timeout=2.0, response_timeout=2.0, keepalive_interval=60.0, queue_size=10,
    )


@pytest.mark.unit
def test_ami_action_drops_unset_headers_and_gets_an_action_id():
    action = AmiAction("Originate", Channel="SIP/1001", CallerID=None, Priority="1")

    assert action.get_name() == "Originate"
    assert "CallerID" not in action.get_headers()
    assert action.get_action_id().startswith("originate-")
    assert AmiAction("Ping").get_action_id() != AmiAction("Ping").get_action_id()
    assert AmiAction("Ping", ActionID="fixed").get_action_id() == "fixed"


@pytest.mark.unit
def test_response_and_event_conversion():
    response = _LibResponse("Follows", {"ActionID": "command-1"}, follows=["line one", "line two"])
    assert response_to_dict(response) == {
        "Response": "Follows", "ActionID": "command-1", "Follows": "line one\nline two",
    }

    event = _LibEvent("Hangup", {"Channel": "SIP/1001-00000001", "Cause": "16"})
    assert event_to_dict(event) == {"Channel": "SIP/1001-00000001", "Cause": "16", "Event": "Hangup"}
    assert event_to_dict({"Event": "PeerStatus"}) == {"Event": "PeerStatus"}


@pytest.mark.unit
def test_submit_action_before_connect_is_rejected():
    with pytest.raises(NotConnectedError):
        _client().submit_action(AmiAction("CoreStatus"))


@pytest.mark.unit
@pytest.mark.asyncio
async def test_connect_submit_and_receive_response(lib_clients):
    created = lib_clients()
    client = _client()
    loop = asyncio.get_running_loop()
    received = loop.create_future()
    client.add_response_listener(
        lambda action_id, response: received.done() or received.set_result((action_id, response)))

    await client.connect()
    assert client.is_session_up
    action = AmiAction("CoreStatus")
    client.submit_action(action)
    action_id, response = await asyncio.wait_for(received, timeout=2.0)
    await client.close()

    assert action_id == action.get_action_id()
    assert response["Response"] == "Success"
    assert created[0].sent[0][0] == "CoreStatus"
    assert created[0].logged_off and created[0].disconnected
    assert client.is_session_up is False


@pytest.mark.unit
@pytest.mark.asyncio
async def test_library_events_reach_event_listeners(lib_clients):
    created = lib_clients()
    client = _client()
    loop = asyncio.get_running_loop()
    received = loop.create_future()
    client.add_event_listener(lambda event: received.done() or received.set_result(event))

    await client.connect()
    created[0].fire(_LibEvent("PeerStatus", {"Peer": "SIP/1001", "PeerStatus": "Reachable"}))
    event = await asyncio.wait_for(received, timeout=2.0)
    await client.close()

    assert event == {"Peer": "SIP/1001", "PeerStatus": "Reachable", "Event": "PeerStatus"}


@pytest.mark.unit
@pytest.mark.asyncio
async def test_rejected_login_raises_connection_error(lib_clients):
    lib_clients(login_status="Error")
    client = _client()

    with pytest.raises(AmiConnectionError):
        await client.connect()
    assert client.is_session_up is False


@pytest.mark.unit
@pytest.mark.asyncio
async def test_closed_stream_notifies_disconnect_listeners(lib_clients):
    created = lib_clients()
    client = _client()
    loop = asyncio.get_running_loop()
    lost = loop.create_future()
    client.add_disconnect_listener(lambda error: lost.done() or lost.set_result(error))

    await client.connect()
    created[0].finished.set()
    error = await asyncio.wait_for(lost, timeout=3.0)

    assert isinstance(error, ConnectionAbortedError)
    assert client.is_session_up is False
    with pytest.raises(NotConnectedError):
        client.submit_action(AmiAction("Ping"))
    await client.close()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_close_does_not_report_a_disconnect(lib_clients):
    lib_clients()
    client = _client()
    disconnects = []
    client.add_disconnect_listener(disconnects.append)

    await client.connect()
    await client.close()
    await asyncio.sleep(0.05)

    assert disconnects == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_library_reader_failure_notifies_disconnect_listeners(lib_clients):
    created = lib_clients()
    client = _client()
    loop = asyncio.get_running_loop()
    lost = loop.create_future()
    client.add_disconnect_listener(lambda error: lost.done() or lost.set_result(error))

    await client.connect()
    # The library reader exits on recv errors without setting 'finished'
    created[0].lose_stream(TimeoutError("timed out"))
    error = await asyncio.wait_for(lost, timeout=3.0)

    assert isinstance(error, ConnectionAbortedError)
    assert "timed out" in str(error)
    assert not created[0].finished.is_set()
    assert client.is_session_up is False
    await client.close()


@pytest.mark.unit
def test_socket_timeout_outlives_keepalive_gap():
    client = AsteriskAmiClient(host="pbx.test", username="admin", secret="secret",
                               response_timeout=35.0, keepalive_interval=30.0)
    assert client.socket_timeout == 60.0
    assert _client().socket_timeout > _client().keepalive_interval


class _LocalAmiServer:
    """Minimal AMI server: banner, login, Ping/Logoff replies and scripted events."""

    def __init__(self, events=None, close_after=None):
        # events: (seconds after login, raw AMI event text)
        self.events = list(events or [])
        self.close_after = close_after
        self._listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._listener.bind(("127.0.0.1", 0))
        self._listener.listen(1)
        self._listener.settimeout(0.2)
        self.port = self._listener.getsockname()[1]
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._serve, daemon=True)

    def start(self):
        self._thread.start()
        return self

    def stop(self):
        self._stop.set()
        self._thread.join(2.0)
        self._listener.close()

    def _serve(self):
        while not self._stop.is_set():
            try:
                conn, _ = self._listener.accept()
            except OSError:
                continue
            with conn:
                self._handle(conn)

    def _handle(self, conn):
        conn.sendall(b"Asterisk Call Manager/5.0.1\r\n")
        conn.settimeout(0.05)
        buffer = b""
        logged_in_at = None
        while not self._stop.is_set():
            if logged_in_at is not None:
                elapsed = time.monotonic() - logged_in_at
                if self.close_after is not None and elapsed >= self.close_after:
                    return
                while self.events and elapsed >= self.events[0][0]:
                    conn.sendall(self.events.pop(0)[1].encode())
            try:
                data = conn.recv(4096)
            except socket.timeout:
                continue
            except OSError:
                return
            if not data:
                return
            buffer += data
            while b"\r\n\r\n" in buffer:
                pack, buffer = buffer.split(b"\r\n\r\n", 1)
                headers = dict(line.split(": ", 1) for line in pack.decode().split("\r\n") if ": " in line)
                action = headers.get("Action", "").lower()
                action_id = headers.get("ActionID", "")
                if action == "login":
                    conn.sendall(f"Response: Success\r\nActionID: {action_id}\r\n"
                                 f"Message: Authentication accepted\r\n\r\n".encode())
                    logged_in_at = time.monotonic()
                elif action == "logoff":
                    conn.sendall(f"Response: Goodbye\r\nActionID: {action_id}\r\n"
                                 f"Message: Thanks for all the fish.\r\n\r\n".encode())
                    return
                else:
                    conn.sendall(f"Response: Success\r\nActionID: {action_id}\r\nPing: Pong\r\n\r\n".encode())


@pytest.fixture
def ami_server():
    servers = []

    def factory(**kwargs):
        server = _LocalAmiServer(**kwargs).start()
        servers.append(server)
        return server

    yield factory
    for server in servers:
        server.stop()


def _local_client(port, **kwargs):
    return AsteriskAmiClient(host="127.0.0.1", port=port, username="admin", secret="secret",
                             connect_timeout=3.0, queue_size=10, **kwargs)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_idle_stream_longer_than_response_timeout_keeps_events(ami_server):
    server = ami_server(events=[(2.5, "Event: Newchannel\r\nChannel: SIP/1001-00000001\r\n\r\n")])
    client = _local_client(server.port, response_timeout=1.5, keepalive_interval=30.0)
    loop = asyncio.get_running_loop()
    received = loop.create_future()
    disconnects = []
    client.add_event_listener(lambda event: received.done() or received.set_result(event))
    client.add_disconnect_listener(disconnects.append)

    await client.connect()
    event = await asyncio.wait_for(received, timeout=5.0)

    assert event["Event"] == "Newchannel"
    assert event["Channel"] == "SIP/1001-00000001"
    assert client.is_session_up is True
    assert disconnects == []
    await client.close()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_idle_socket_timeout_is_reported_as_disconnect(ami_server):
    server = ami_server()
    client = _local_client(server.port, response_timeout=1.0, keepalive_interval=30.0, socket_timeout=0.5)
    loop = asyncio.get_running_loop()
    lost = loop.create_future()
    client.add_disconnect_listener(lambda error: lost.done() or lost.set_result(error))

    await client.connect()
    error = await asyncio.wait_for(lost, timeout=5.0)

    assert isinstance(error, ConnectionAbortedError)
    assert client.is_session_up is False
    await client.close()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_server_closing_the_stream_is_reported_as_disconnect(ami_server):
    server = ami_server(close_after=0.3)
    client = _local_client(server.port, response_timeout=2.0, keepalive_interval=30.0)
    loop = asyncio.get_running_loop()
    lost = loop.create_future()
    client.add_disconnect_listener(lambda error: lost.done() or lost.set_result(error))

    await client.connect()
    error = await asyncio.wait_for(lost, timeout=5.0)

    assert isinstance(error, ConnectionAbortedError)
    assert client.is_session_up is False
    await client.close()
