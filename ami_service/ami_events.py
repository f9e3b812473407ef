# ami_service/ami_events.py

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from common.data_models import EventEnvelope


class ChannelGroup(str, Enum):
    CALLS = "calls"
    SYSTEM = "system"


# Names of the messages emitted to channel group subscribers
CALL_EVENT = "call_event"
PEER_STATUS = "peer_status"
CONFERENCE_EVENT = "conference_event"
ASTERISK_STATUS = "asterisk_status"


class EventKind(str, Enum):
    CALL = "call"
    PEER = "peer"
    CONFERENCE = "conference"


@dataclass(frozen=True)
class EventRoute:
    kind: EventKind
    group: ChannelGroup
    emit_name: str
    type: str


@dataclass(frozen=True)
class ClassifiedEvent:
    kind: EventKind
    group: ChannelGroup
    emit_name: str
    type: str
    data: Dict[str, Any] = field(default_factory=dict)

    def envelope(self) -> Dict[str, Any]:
        return EventEnvelope(type=self.type, data=self.data).model_dump()


def _call(type_: str) -> EventRoute:
    return EventRoute(EventKind.CALL, ChannelGroup.CALLS, CALL_EVENT, type_)


def _peer(type_: str) -> EventRoute:
    return EventRoute(EventKind.PEER, ChannelGroup.SYSTEM, PEER_STATUS, type_)


def _conf(type_: str) -> EventRoute:
    return EventRoute(EventKind.CONFERENCE, ChannelGroup.CALLS, CONFERENCE_EVENT, type_)

# Keys are lower-cased AMI event names. DialBegin/BridgeEnter are the
# Asterisk 12+ names of the older Dial/Bridge events.
EVENT_ROUTES: Dict[str, EventRoute] = {
    "newchannel": _call("new_channel"),
    "newstate": _call("state_change"),
    "dial": _call("dial"),
    "dialbegin": _call("dial"),
    "bridge": _call("bridge"),
    "bridgeenter": _call("bridge"),
    "hangup": _call("hangup"),
    "peerentry": _peer("peer_entry"),
    "peerstatus": _peer("status_change"),
    "confbridgestart": _conf("started"),
    "confbridgeend": _conf("ended"),
    "confbridgejoin": _conf("join"),
    "confbridgeleave": _conf("leave"),
}


def event_name(event: Dict[str, Any]) -> Optional[str]:
    name = event.get("Event")
    return str(name) if name else None


def classify_event(event: Dict[str, Any]) -> Optional[ClassifiedEvent]:
    """Map a raw AMI event dict to its channel group route, or None if it is not relayed."""
    name = event_name(event)
    if not name:
        return None
    route = EVENT_ROUTES.get(name.lower())
    if route is None:
        return None
    return ClassifiedEvent(
        kind=route.kind,
        group=route.group,
        emit_name=route.emit_name,
        type=route.type,
        data=dict(event),
    )
