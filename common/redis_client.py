# common/redis_client.py

import json
from typing import Optional

import redis # Main redis module for exceptions
import redis.asyncio as aioredis

from config.app_config import app_config
from common.logger_setup import setup_logger

logger = setup_logger(__name__, level_str=app_config.LOG_LEVEL)


class RedisClient:
    def __init__(self, host: Optional[str] = None, port: Optional[int] = None,
                 db: Optional[int] = None, password: Optional[str] = None):
        self.host = host or app_config.REDIS_HOST
        self.port = port or app_config.REDIS_PORT
        self.db = app_config.REDIS_DB if db is None else db
        self.password = password if password is not None else app_config.REDIS_PASSWORD
        self.async_redis_client: Optional[aioredis.Redis] = None

    async def _get_async_redis_client(self) -> aioredis.Redis:
        if self.async_redis_client is None:
            client = aioredis.Redis(
                host=self.host,
                port=self.port,
                db=self.db,
                password=self.password,
                decode_responses=True
            )
            try:
                await client.ping() # Test connection on creation
            except redis.exceptions.RedisError as e:
                logger.error(f"Failed to connect asynchronous Redis client: {e}")
                await client.aclose()
                raise
            self.async_redis_client = client
            logger.info(f"Asynchronous Redis client connected to {self.host}:{self.port}")
        return self.async_redis_client

    async def publish_event(self, channel: str, event_data: dict) -> bool:
        if not isinstance(event_data, dict):
            logger.error(f"Event data must be a dictionary. Received: {type(event_data)}")
            return False
        try:
            client = await self._get_async_redis_client()
            message_json = json.dumps(event_data, default=str)
            await client.publish(channel, message_json)
            logger.debug(f"Published to {channel}: {message_json}")
            return True
        except redis.exceptions.ConnectionError:
            logger.error(f"Connection error publishing to Redis channel {channel}. Forcing client re-init on next call.")
            if self.async_redis_client:
                await self.async_redis_client.aclose()
            self.async_redis_client = None
            return False
        except redis.exceptions.RedisError as e:
            logger.error(f"Error publishing to Redis channel {channel}: {e}")
            return False

    async def close_async_client(self):
        if self.async_redis_client:
            try:
                await self.async_redis_client.aclose()
                logger.info("Asynchronous Redis client connection closed.")
            except redis.exceptions.RedisError as e:
                logger.error(f"Error closing async_redis_client: {e}")
            finally:
                self.async_redis_client = None
