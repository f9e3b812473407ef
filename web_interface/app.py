# web_interface/app.py

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI

from config.app_config import app_config
from common.logger_setup import setup_logger
from common.redis_client import RedisClient
from ami_service.asterisk_ami_client import AsteriskAmiClient
from ami_service.channel_groups import ChannelGroupHub, FanOutSink, RedisGroupPublisher
from ami_service.errors import AmiConnectionError
from ami_service.session_manager import AmiSessionManager

from . import routes_api, routes_ws

logger = setup_logger(__name__, level_str=app_config.LOG_LEVEL)


@asynccontextmanager
async def lifespan(app_instance: FastAPI) -> AsyncGenerator[None, None]:
    logger.info("Lifespan: Application startup sequence initiated...")

    hub = ChannelGroupHub()
    sinks = [hub]
    redis_client: Optional[RedisClient] = None
    redis_publisher: Optional[RedisGroupPublisher] = None
    if app_config.REDIS_EVENTS_ENABLED:
        redis_client = RedisClient()
        redis_publisher = RedisGroupPublisher(redis_client)
        redis_publisher.start()
        sinks.append(redis_publisher)
        logger.info(f"Lifespan: Mirroring channel group events to Redis under '{redis_publisher.prefix}:*'.")

    ami_manager = AmiSessionManager(AsteriskAmiClient(), FanOutSink(sinks))
    app_instance.state.hub = hub
    app_instance.state.ami_manager = ami_manager

    try:
        await ami_manager.initialize()
        logger.info("Lifespan: Asterisk Manager initialized.")
    except AmiConnectionError as e:
        logger.critical(f"Lifespan: Asterisk AMI client failed initial connect, aborting startup: {e}")
        await _release(ami_manager, redis_publisher, redis_client)
        raise

    try:
        yield # Application runs here
    finally:
        logger.info("Lifespan: Application shutdown sequence initiated...")
        await _release(ami_manager, redis_publisher, redis_client)
        logger.info("Lifespan: Application shutdown sequence finished.")


async def _release(ami_manager: AmiSessionManager, redis_publisher: Optional[RedisGroupPublisher],
                   redis_client: Optional[RedisClient]):
    await ami_manager.close()
    if redis_publisher:
        await redis_publisher.stop()
    if redis_client:
        await redis_client.close_async_client()


def create_app(lifespan_handler=lifespan) -> FastAPI:
    app_instance = FastAPI(
        title="PBX Console AMI Relay",
        description="Asterisk Manager Interface session, call control and live event relay.",
        version="1.0.0",
        lifespan=lifespan_handler,
    )
    app_instance.include_router(routes_api.router, prefix="/api", tags=["API"])
    app_instance.include_router(routes_ws.router, tags=["WebSocket"])
    return app_instance


app = create_app()
