"""Scraper system for fetching live product data.

This package provides:
- Extraction data structures and per-retailer selector tables
- The HTML extractor and the Tor-first page fetcher
- The scrape job queue and its APScheduler-based scheduler

The fetcher, queue and scheduler are imported from their own modules.
"""

from .base import ExtractedProduct, RuleSet, Selector
from .rules import GENERIC_RULES, RETAILER_RULES, rules_for_hostname

__all__ = [
    # Data structures
    "ExtractedProduct",
    "RuleSet",
    "Selector",
    # Rule tables
    "GENERIC_RULES",
    "RETAILER_RULES",
    "rules_for_hostname",
]
