"""Marketplace to storefront URL mapping."""

DEFAULT_BASE_URL = "https://www.amazon.com"

MARKETPLACE_URLS = {
    "amazon.com": "https://www.amazon.com",
    "amazon.co.uk": "https://www.amazon.co.uk",
    "amazon.de": "https://www.amazon.de",
    "amazon.fr": "https://www.amazon.fr",
    "amazon.ca": "https://www.amazon.ca",
    "amazon.it": "https://www.amazon.it",
    "amazon.es": "https://www.amazon.es",
    "amazon.com.mx": "https://www.amazon.com.mx",
    "amazon.com.au": "https://www.amazon.com.au",
    "amazon.ae": "https://www.amazon.ae",
    # Short country codes accepted from the command API
    "US": "https://www.amazon.com",
    "UK": "https://www.amazon.co.uk",
    "GB": "https://www.amazon.co.uk",
    "DE": "https://www.amazon.de",
    "FR": "https://www.amazon.fr",
    "CA": "https://www.amazon.ca",
    "IT": "https://www.amazon.it",
    "ES": "https://www.amazon.es",
    "MX": "https://www.amazon.com.mx",
    "AU": "https://www.amazon.com.au",
    "AE": "https://www.amazon.ae",
}


def base_url(marketplace_id: str, default: str = DEFAULT_BASE_URL) -> str:
    """Resolve the storefront base URL, falling back to ``default``."""
    return MARKETPLACE_URLS.get(marketplace_id, default)


def item_url(
    marketplace_id: str,
    key: str,
    item_path: str = "/dp/{key}",
    default: str = DEFAULT_BASE_URL,
) -> str:
    """Build the target page URL for one queue item."""
    return base_url(marketplace_id, default).rstrip("/") + item_path.format(key=key)
