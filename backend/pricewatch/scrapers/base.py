"""Shared data structures for page extraction.

A retailer rule set is a plain description of where each field lives on
the page: an ordered list of selector strategies per field, tried in
order until one yields a non-empty value.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Tuple


@dataclass
class ExtractedProduct:
    """Product fields read from a page. Any field may be missing."""

    title: Optional[str] = None
    price: Optional[Decimal] = None
    image_url: Optional[str] = None
    currency: str = "USD"

    @property
    def has_usable_data(self) -> bool:
        """A scrape counts as successful when it found a title or a price."""
        return self.title is not None or self.price is not None

    def to_log_dict(self) -> dict:
        return {
            "title": self.title,
            "price": str(self.price) if self.price is not None else None,
            "image_url": self.image_url,
            "currency": self.currency,
        }


@dataclass(frozen=True)
class Selector:
    """One extraction strategy: a CSS selector and where to read the value.

    attr=None reads the element's text; otherwise the named attribute.
    """

    css: str
    attr: Optional[str] = None


@dataclass(frozen=True)
class RuleSet:
    """Selector strategies for one retailer (or the generic fallback)."""

    name: str
    domains: Tuple[str, ...] = ()
    title: Tuple[Selector, ...] = ()
    price: Tuple[Selector, ...] = ()
    image: Tuple[Selector, ...] = ()
    currency: Tuple[Selector, ...] = ()

    def matches(self, hostname: str) -> bool:
        return any(domain in hostname for domain in self.domains)
