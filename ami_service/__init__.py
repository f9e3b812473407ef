# ami_service/__init__.py

from .ami_events import ChannelGroup, classify_event
from .asterisk_ami_client import AmiAction, AsteriskAmiClient
from .channel_groups import ChannelGroupHub, FanOutSink, RedisGroupPublisher
from .session_manager import AmiSessionManager, ConnectionState

__all__ = [
    "AmiAction",
    "AmiSessionManager",
    "AsteriskAmiClient",
    "ChannelGroup",
    "ChannelGroupHub",
    "ConnectionState",
    "FanOutSink",
    "RedisGroupPublisher",
    "classify_event",
]
