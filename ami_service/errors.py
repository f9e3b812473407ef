# ami_service/errors.py

from typing import Any, Dict, Optional


class AmiError(Exception):
    """Base class for everything the AMI session layer raises to callers."""


class AmiConnectionError(AmiError):
    """The session could not be established (refused, login rejected, timed out)."""


class NotConnectedError(AmiError):
    def __init__(self, message: str = "Not connected to Asterisk AMI"):
        super().__init__(message)


class ActionTimeoutError(AmiError):
    def __init__(self, action_name: str, action_id: str, timeout: float):
        super().__init__(f"No response to {action_name} (ActionID {action_id}) within {timeout}s")
        self.action_name = action_name
        self.action_id = action_id
        self.timeout = timeout


class ProtocolError(AmiError):
    """A reply arrived but did not have the shape the action expects."""

    def __init__(self, message: str, response: Any = None):
        super().__init__(message)
        self.response = response


class ActionFailedError(AmiError):
    """Asterisk answered the action with Response: Error."""

    def __init__(self, message: str, response: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.response = response or {}

    @property
    def ami_message(self) -> str:
        return str(self.response.get("Message", ""))


class OriginateRejectedError(ActionFailedError):
    pass


class ChannelNotFoundError(ActionFailedError):
    pass


class ReloadFailedError(ActionFailedError):
    pass


class CommandFailedError(ActionFailedError):
    pass
