"""Retry policies for scraper-side network calls."""

import asyncio
import logging

import structlog
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log,
)


logger = structlog.get_logger(__name__)


# Retry for the Tor control-port command. Kept short: a failed rotation
# is only a warning and must not stall the queue.
control_retry = retry(
    stop=stop_after_attempt(2),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=2),
    retry=retry_if_exception_type((OSError, asyncio.TimeoutError)),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)
