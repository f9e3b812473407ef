"""
Shared pytest fixtures for the AMI session tests.

Provides a fake AMI transport that records submitted actions and lets a test
play the part of Asterisk (replies, events, dropped stream), and a sink that
records what was published to each channel group.
"""

import asyncio
import os

# Keep test runs from writing rotating log files
os.environ.setdefault("LOG_TO_FILE", "false")
os.environ.setdefault("REDIS_EVENTS_ENABLED", "false")

import pytest

from ami_service.session_manager import AmiSessionManager


class FakeTransport:
    def __init__(self):
        self.event_listeners = []
        self.response_listeners = []
        self.action_error_listeners = []
        self.disconnect_listeners = []
        self.submitted = []
        # Outcomes for successive connect() calls: None succeeds, an exception is raised
        self.connect_outcomes = []
        self.connect_calls = 0
        # Action name -> exception raised from submit_action
        self.fail_actions = {}
        self.closed = False

    def add_event_listener(self, callback):
        self.event_listeners.append(callback)

    def add_response_listener(self, callback):
        self.response_listeners.append(callback)

    def add_action_error_listener(self, callback):
        self.action_error_listeners.append(callback)

    def add_disconnect_listener(self, callback):
        self.disconnect_listeners.append(callback)

    async def connect(self):
        self.connect_calls += 1
        outcome = self.connect_outcomes.pop(0) if self.connect_outcomes else None
        if isinstance(outcome, BaseException):
            raise outcome

    def submit_action(self, action):
        error = self.fail_actions.get(action.get_name())
        if error is not None:
            raise error
        self.submitted.append(action)

    async def close(self):
        self.closed = True

    # --- Asterisk side ---

    def reply(self, action_id, response):
        for callback in list(self.response_listeners):
            callback(action_id, response)

    def emit(self, event):
        for callback in list(self.event_listeners):
            callback(event)

    def drop(self, error=None):
        for callback in list(self.disconnect_listeners):
            callback(error or ConnectionAbortedError("AMI stream closed by server"))

    def actions_named(self, name):
        return [a for a in self.submitted if a.get_name() == name]


class RecordingSink:
    def __init__(self):
        self.messages = []

    def publish(self, group, event_name, payload):
        group_value = getattr(group, "value", group)
        self.messages.append((group_value, event_name, payload))

    def for_group(self, group):
        return [(name, payload) for g, name, payload in self.messages if g == group]


async def wait_for_submitted(transport, count=1, rounds=100):
    for _ in range(rounds):
        if len(transport.submitted) >= count:
            return transport.submitted[count - 1]
        await asyncio.sleep(0)
    raise AssertionError(f"expected {count} submitted action(s), got {len(transport.submitted)}")


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def manager(transport, sink):
    return AmiSessionManager(
        transport,
        sink,
        action_timeout_s=5.0,
        reconnect_delay_s=0.01,
        max_reconnect_attempts=3,
    )
