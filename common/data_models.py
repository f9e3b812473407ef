# common/data_models.py

from typing import Optional, Dict, Any, List, Literal
from pydantic import BaseModel, Field, constr

NonEmptyStr = constr(strip_whitespace=True, min_length=1)

# --- Channel group envelopes ---

class EventEnvelope(BaseModel):
    """
    What subscribers of a channel group receive for every classified AMI event.
    """
    type: str = Field(..., description="Classified event type, e.g. 'new_channel', 'status_change', 'join'.")
    data: Dict[str, Any] = Field(default_factory=dict, description="The AMI event headers as received.")

class ConnectivityStatus(BaseModel):
    connected: bool


# --- Action inputs ---

class OriginateRequest(BaseModel):
    channel: NonEmptyStr = Field(..., description="Dial string of the leg to call first, e.g. 'SIP/1001'.")
    context: NonEmptyStr
    extension: NonEmptyStr
    priority: int = Field(1, gt=0)
    caller_id: Optional[str] = Field(None, description="Optional CallerID, e.g. 'Test <100>'.")

class HangupRequest(BaseModel):
    channel: NonEmptyStr

class ModuleReloadRequest(BaseModel):
    module: NonEmptyStr

class RawCommandRequest(BaseModel):
    command: NonEmptyStr

class ParticipantActionRequest(BaseModel):
    channel: NonEmptyStr
    muted: Optional[bool] = None


# --- API Response Models ---

class ApiResponse(BaseModel):
    """
    Generic API response model.
    """
    success: bool = Field(..., description="Indicates if the operation was successful.")
    message: Optional[str] = Field(None, description="A message providing more details, especially on failure.")
    data: Optional[Any] = Field(None, description="Optional data payload.")

class ActiveCallsData(BaseModel):
    active_calls: List[Dict[str, Any]]
    count: int


# --- WebSocket relay messages ---

class WsSubscriptionCommand(BaseModel):
    action: Literal["subscribe", "unsubscribe"]
    group: Literal["calls", "system"]
