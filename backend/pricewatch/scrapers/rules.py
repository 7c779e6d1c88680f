"""Retailer selector tables.

Rule sets are matched by substring of the page hostname, in table order.
Anything unmatched falls through to GENERIC_RULES. Adding a retailer means
adding a RuleSet here; the extractor itself never changes.
"""

from typing import List

from pricewatch.scrapers.base import RuleSet, Selector


AMAZON_RULES = RuleSet(
    name="amazon",
    domains=("amazon.",),
    title=(
        Selector("#productTitle"),
        Selector('[data-cy="title"]'),
        Selector(".product-title"),
    ),
    # .a-offscreen holds the full "$29.99" string; .a-price-whole drops the
    # cents, so it is only a last resort.
    price=(
        Selector(".a-price .a-offscreen"),
        Selector(".a-offscreen"),
        Selector(".a-price-whole"),
    ),
    image=(
        Selector("#landingImage", "src"),
        Selector(".a-dynamic-image", "src"),
        Selector("img[data-old-hires]", "data-old-hires"),
    ),
)

TARGET_RULES = RuleSet(
    name="target",
    domains=("target.com",),
    title=(
        Selector('[data-test="product-title"]'),
        Selector(".ProductTitle"),
    ),
    price=(
        Selector('[data-test="product-price"]'),
        Selector(".Price"),
    ),
    image=(
        Selector('[data-test="hero-image-zoom-in"] img', "src"),
        Selector(".ProductImages img", "src"),
    ),
)

WALMART_RULES = RuleSet(
    name="walmart",
    domains=("walmart.com",),
    title=(
        Selector('[data-automation-id="product-title"]'),
        Selector(".prod-ProductTitle"),
    ),
    price=(
        Selector('[data-automation-id="product-price"]'),
        Selector(".price-current"),
    ),
    image=(
        Selector('[data-automation-id="hero-image"]', "src"),
        Selector(".prod-hero-image img", "src"),
    ),
)

BESTBUY_RULES = RuleSet(
    name="bestbuy",
    domains=("bestbuy.com",),
    title=(
        Selector(".sku-title h1"),
        Selector(".sr-product-title"),
    ),
    price=(
        Selector(".pricing-price__range"),
        Selector(".sr-price"),
    ),
    image=(
        Selector(".primary-image", "src"),
        Selector(".hero-image img", "src"),
    ),
)

GENERIC_RULES = RuleSet(
    name="generic",
    title=(
        Selector("h1"),
        Selector(".product-title, .product-name, .item-title"),
        Selector('meta[property="og:title"]', "content"),
        Selector('[class*="title"], [class*="name"]'),
    ),
    price=(
        Selector('.price, .cost, .amount, [class*="price"], [class*="cost"]'),
        Selector("[data-price]", "data-price"),
        Selector("[data-cost]", "data-cost"),
        Selector('meta[property="product:price:amount"]', "content"),
    ),
    image=(
        Selector('meta[property="og:image"]', "content"),
        Selector(".product-image img, .item-image img", "src"),
        Selector('img[alt*="product"], img[alt*="item"]', "src"),
    ),
    currency=(
        Selector('meta[property="product:price:currency"]', "content"),
    ),
)

RETAILER_RULES: List[RuleSet] = [
    AMAZON_RULES,
    TARGET_RULES,
    WALMART_RULES,
    BESTBUY_RULES,
]


def rules_for_hostname(hostname: str) -> RuleSet:
    """Pick the rule set for a page hostname.

    Args:
        hostname: Lowercased page hostname

    Returns:
        Matching retailer RuleSet, or GENERIC_RULES
    """
    for rule_set in RETAILER_RULES:
        if rule_set.matches(hostname):
            return rule_set
    return GENERIC_RULES
