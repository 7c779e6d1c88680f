"""Custom exception classes for the scraper service."""

from typing import Optional


class PriceWatchException(Exception):
    """Base exception for all PriceWatch errors."""

    def __init__(self, message: str = "An unexpected error occurred"):
        self.message = message
        super().__init__(self.message)


class ProxyError(PriceWatchException):
    """Raised when the anonymizing proxy cannot carry a request.

    Callers treat this as a signal to fall back to a direct connection,
    not as a scrape failure.
    """

    def __init__(self, url: str, message: str):
        self.url = url
        super().__init__(f"Proxy error for {url}: {message}")


class FetchError(PriceWatchException):
    """Raised when a page cannot be fetched over either network path."""

    def __init__(self, url: str, message: str, status_code: Optional[int] = None):
        self.url = url
        self.status_code = status_code
        if status_code is not None:
            message = f"HTTP {status_code}: {message}"
        super().__init__(f"Fetch failed for {url}: {message}")


class ExtractionError(PriceWatchException):
    """Raised when the extractor receives malformed input."""


class PersistenceError(PriceWatchException):
    """Raised when a successful extraction cannot be written to the datastore."""

    def __init__(self, product_id: str, message: str):
        self.product_id = product_id
        super().__init__(f"Failed to persist scrape result for product {product_id}: {message}")


class QueueProcessingError(PriceWatchException):
    """Raised when a queue run aborts because of a systemic failure."""


class TorControlError(PriceWatchException):
    """Raised when the Tor control port rejects a command."""
