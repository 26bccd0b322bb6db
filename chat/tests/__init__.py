"""Test package for chat engine unit and integration tests."""

import logging

logging.getLogger("asyncio").setLevel(logging.ERROR)
