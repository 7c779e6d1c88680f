"""HTML -> ExtractedProduct using the retailer selector tables."""

import re
from typing import Optional, Sequence
from urllib.parse import urlparse

import structlog
from bs4 import BeautifulSoup

from pricewatch.core.exceptions import ExtractionError
from pricewatch.scrapers.base import ExtractedProduct, RuleSet, Selector
from pricewatch.scrapers.rules import rules_for_hostname
from pricewatch.scrapers.utils.normalizer import (
    PriceNormalizer,
    clean_title,
    is_http_url,
    resolve_image_url,
)

logger = structlog.get_logger(__name__)

DEFAULT_CURRENCY = "USD"
_CURRENCY_CODE = re.compile(r"^[A-Za-z]{3}$")


def _first_value(soup: BeautifulSoup, strategies: Sequence[Selector]) -> Optional[str]:
    """Return the first non-empty value produced by the strategies."""
    for strategy in strategies:
        element = soup.select_one(strategy.css)
        if element is None:
            continue
        if strategy.attr is None:
            value = element.get_text(" ", strip=True)
        else:
            value = element.get(strategy.attr)
            if isinstance(value, list):
                value = " ".join(value)
        if value and value.strip():
            return value.strip()
    return None


class ProductExtractor:
    """Extracts title, price, image and currency from product page HTML.

    Never raises for a page that simply lacks the data: fields that cannot
    be found are None, and callers check ExtractedProduct.has_usable_data.
    """

    def __init__(self, parser: str = "html.parser"):
        self.parser = parser
        self.logger = logger.bind(service="extractor")

    def extract(self, html: str, url: str) -> ExtractedProduct:
        """Extract product fields from a page.

        Args:
            html: Page body
            url: Final page URL (selects the rule set, resolves relative images)

        Returns:
            ExtractedProduct, possibly with every field missing

        Raises:
            ExtractionError: If html is not a string or url is not http(s)
        """
        if not isinstance(html, str):
            raise ExtractionError(f"Expected HTML text, got {type(html).__name__}")
        if not is_http_url(url):
            raise ExtractionError(f"Not an absolute http(s) URL: {url!r}")

        hostname = (urlparse(url).hostname or "").lower()
        rule_set = rules_for_hostname(hostname)
        soup = BeautifulSoup(html, self.parser)

        product = self._apply_rules(soup, rule_set, url)

        self.logger.debug(
            "product_extracted",
            url=url,
            rules=rule_set.name,
            has_title=product.title is not None,
            price=str(product.price) if product.price is not None else None,
        )
        return product

    def _apply_rules(self, soup: BeautifulSoup, rule_set: RuleSet, url: str) -> ExtractedProduct:
        title = clean_title(_first_value(soup, rule_set.title))
        price = PriceNormalizer.clean_price_string(_first_value(soup, rule_set.price))
        image_url = resolve_image_url(_first_value(soup, rule_set.image), url)

        currency = DEFAULT_CURRENCY
        raw_currency = _first_value(soup, rule_set.currency)
        if raw_currency and _CURRENCY_CODE.match(raw_currency):
            currency = raw_currency.upper()

        return ExtractedProduct(
            title=title,
            price=price,
            image_url=image_url,
            currency=currency,
        )
