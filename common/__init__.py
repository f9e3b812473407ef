# common/__init__.py

# This file makes the 'common' directory a Python package.

from . import logger_setup
from . import redis_client
from . import data_models

__all__ = [
    "logger_setup",
    "redis_client",
    "data_models"
]
