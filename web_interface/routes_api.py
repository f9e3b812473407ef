# web_interface/routes_api.py

from datetime import datetime, timezone

from fastapi import APIRouter, HTTPException, Request

from config.app_config import app_config
from common.data_models import (
    ActiveCallsData,
    ApiResponse,
    ModuleReloadRequest,
    OriginateRequest,
    ParticipantActionRequest,
)
from common.logger_setup import setup_logger
from ami_service.errors import (
    ActionFailedError,
    ActionTimeoutError,
    AmiError,
    ChannelNotFoundError,
    NotConnectedError,
    ProtocolError,
)
from ami_service.session_manager import AmiSessionManager

logger = setup_logger(__name__, level_str=app_config.LOG_LEVEL)
router = APIRouter()


def get_ami_manager(request: Request) -> AmiSessionManager:
    manager = getattr(request.app.state, "ami_manager", None)
    if manager is None:
        raise HTTPException(status_code=503, detail="Asterisk manager not initialized")
    return manager


def _http_error(e: AmiError) -> HTTPException:
    if isinstance(e, NotConnectedError):
        return HTTPException(status_code=503, detail="Asterisk not connected")
    if isinstance(e, ActionTimeoutError):
        return HTTPException(status_code=504, detail=str(e))
    if isinstance(e, ChannelNotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, (ActionFailedError, ProtocolError)):
        return HTTPException(status_code=502, detail=str(e))
    return HTTPException(status_code=500, detail="Internal server error")


@router.get("/health")
async def health(request: Request):
    manager = getattr(request.app.state, "ami_manager", None)
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "asterisk": manager.status() if manager else None,
    }


@router.get("/asterisk/status", response_model=ApiResponse)
async def asterisk_status(request: Request):
    manager = get_ami_manager(request)
    try:
        core_status = await manager.get_core_status()
    except AmiError as e:
        logger.error(f"Get core status error: {e}")
        raise _http_error(e)
    return ApiResponse(success=True, data={"session": manager.status(), "core": core_status})


@router.get("/calls/active", response_model=ApiResponse)
async def active_calls(request: Request):
    manager = get_ami_manager(request)
    try:
        channels = await manager.list_active_channels()
    except AmiError as e:
        logger.error(f"Get active calls error: {e}")
        raise _http_error(e)
    return ApiResponse(success=True, data=ActiveCallsData(active_calls=channels, count=len(channels)))


@router.get("/peers", response_model=ApiResponse)
async def peers(request: Request):
    manager = get_ami_manager(request)
    try:
        peer_list = await manager.list_peers()
    except AmiError as e:
        logger.error(f"Get peers error: {e}")
        raise _http_error(e)
    return ApiResponse(success=True, data=peer_list)


@router.post("/calls/originate", response_model=ApiResponse)
async def originate(request_data: OriginateRequest, request: Request):
    manager = get_ami_manager(request)
    logger.info(f"Originate requested: {request_data.channel} -> {request_data.extension}@{request_data.context}")
    try:
        ack = await manager.originate_call(
            request_data.channel, request_data.context, request_data.extension,
            request_data.priority, request_data.caller_id,
        )
    except AmiError as e:
        logger.error(f"Originate call error: {e}")
        raise _http_error(e)
    return ApiResponse(success=True, message="Call originated", data=ack)


@router.post("/calls/{channel:path}/hangup", response_model=ApiResponse)
async def hangup(channel: str, request: Request):
    manager = get_ami_manager(request)
    try:
        ack = await manager.hangup_call(channel)
    except AmiError as e:
        logger.error(f"Hangup call error for {channel}: {e}")
        raise _http_error(e)
    return ApiResponse(success=True, message="Call hung up", data=ack)


@router.post("/system/reload", response_model=ApiResponse)
async def reload_module(request_data: ModuleReloadRequest, request: Request):
    manager = get_ami_manager(request)
    try:
        ack = await manager.reload_module(request_data.module)
    except AmiError as e:
        logger.error(f"Reload of {request_data.module} failed: {e}")
        raise _http_error(e)
    return ApiResponse(success=True, message=f"Module {request_data.module} reloaded", data=ack)


@router.post("/conferences/{conference}/participants/kick", response_model=ApiResponse)
async def kick_participant(conference: str, request_data: ParticipantActionRequest, request: Request):
    manager = get_ami_manager(request)
    applied = await manager.kick_conference_participant(conference, request_data.channel)
    return ApiResponse(
        success=True,
        message="Participant kicked" if applied else "Kick recorded; Asterisk command did not complete",
        data={"asterisk_applied": applied},
    )


@router.post("/conferences/{conference}/participants/mute", response_model=ApiResponse)
async def mute_participant(conference: str, request_data: ParticipantActionRequest, request: Request):
    manager = get_ami_manager(request)
    muted = True if request_data.muted is None else request_data.muted
    applied = await manager.set_conference_participant_mute(conference, request_data.channel, muted)
    return ApiResponse(
        success=True,
        message=f"Participant {'muted' if muted else 'unmuted'}",
        data={"muted": muted, "asterisk_applied": applied},
    )
