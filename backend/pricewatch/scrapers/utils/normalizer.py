"""Normalization helpers for scraped prices, titles and URLs."""

import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional
from urllib.parse import urljoin, urlparse, parse_qs, urlencode, urlunparse


MAX_TITLE_LENGTH = 500

# Common tracking parameters stripped from canonical URLs
TRACKING_PARAMS = frozenset({
    "utm_source",
    "utm_medium",
    "utm_campaign",
    "utm_content",
    "utm_term",
    "ref",
    "fbclid",
    "gclid",
    "mc_cid",
    "mc_eid",
})

_LEADING_NUMBER = re.compile(r"\d*\.?\d+")


class PriceNormalizer:
    """Price parsing utilities."""

    CENTS = Decimal("0.01")

    @classmethod
    def clean_price_string(cls, raw: Optional[str]) -> Optional[Decimal]:
        """Parse a scraped price string.

        Everything except digits and dots is stripped, then the leading
        number is parsed. Handles:
        - "$29.99" -> 29.99
        - "$1,234.56" -> 1234.56
        - "29." -> 29.00
        - "$29.99 - $39.99" -> 29.99 (leading number of "29.9939.99")

        Args:
            raw: Raw price text

        Returns:
            Positive Decimal rounded to cents, or None if not a usable price
        """
        if not raw:
            return None

        cleaned = re.sub(r"[^\d.]", "", raw)
        match = _LEADING_NUMBER.match(cleaned)
        if not match:
            return None

        try:
            price = Decimal(match.group(0)).quantize(cls.CENTS, rounding=ROUND_HALF_UP)
        except InvalidOperation:
            return None

        if price <= 0:
            return None
        return price


def clean_title(raw: Optional[str]) -> Optional[str]:
    """Trim and truncate a scraped title; empty means not found."""
    if not raw:
        return None
    title = raw.strip()[:MAX_TITLE_LENGTH].strip()
    return title or None


def resolve_image_url(image_url: Optional[str], page_url: str) -> Optional[str]:
    """Resolve a possibly-relative image URL against the page origin.

    Args:
        image_url: Image src as extracted from the page
        page_url: URL of the product page

    Returns:
        Absolute image URL, or None if nothing was extracted
    """
    if not image_url:
        return None
    image_url = image_url.strip()
    if not image_url:
        return None
    if image_url.startswith(("http://", "https://")):
        return image_url

    parsed = urlparse(page_url)
    origin = f"{parsed.scheme}://{parsed.netloc}"
    return urljoin(origin + "/", image_url)


def is_http_url(url: Optional[str]) -> bool:
    """True for absolute http/https URLs with a host."""
    if not url or not isinstance(url, str):
        return False
    parsed = urlparse(url)
    return parsed.scheme in ("http", "https") and bool(parsed.hostname)


def normalize_url(url: str) -> str:
    """Canonicalize a product URL.

    Lowercases scheme and host, removes tracking parameters and the
    fragment. Path and remaining query are kept as-is.

    Args:
        url: URL to normalize

    Returns:
        Normalized URL
    """
    if not url:
        return url

    parsed = urlparse(url.strip())
    query_params = parse_qs(parsed.query, keep_blank_values=True)

    filtered_params = {
        k: v for k, v in query_params.items() if k not in TRACKING_PARAMS
    }
    new_query = urlencode(filtered_params, doseq=True)

    return urlunparse(
        (parsed.scheme.lower(), parsed.netloc.lower(), parsed.path, parsed.params, new_query, "")
    )
