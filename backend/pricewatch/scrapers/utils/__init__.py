"""Scraper utilities for proxy routing, pacing, retry, and data normalization."""

from .proxy_manager import CircuitManager, FetchedPage, TorController, send_page_request
from .rate_limiter import DomainPacer
from .user_agents import get_random_user_agent, build_page_headers, USER_AGENTS
from .normalizer import (
    PriceNormalizer,
    clean_title,
    resolve_image_url,
    is_http_url,
    normalize_url,
)
from .retry import control_retry


__all__ = [
    # Proxy routing
    "CircuitManager",
    "FetchedPage",
    "TorController",
    "send_page_request",
    # Pacing
    "DomainPacer",
    # User agents
    "get_random_user_agent",
    "build_page_headers",
    "USER_AGENTS",
    # Normalization
    "PriceNormalizer",
    "clean_title",
    "resolve_image_url",
    "is_http_url",
    "normalize_url",
    # Retry decorators
    "control_retry",
]
