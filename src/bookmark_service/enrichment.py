"""WHOIS and Open Graph lookups for a stored bookmark.

Both calls go through one ``httpx.Client`` built by ``build_client`` so the
timeout and headers are shared; tests hand in a client on a
``httpx.MockTransport``.
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote, urljoin, urlsplit

import httpx
from bs4 import BeautifulSoup

DEFAULT_WHOIS_API_URL = "http://htmlweb.ru/analiz/api.php"
DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_USER_AGENT = "bookmark-service/0.1"

NO_TITLE = "no title"
NO_DESCRIPTION = "no description"
NO_IMAGE = "https://upload.wikimedia.org/wikipedia/en/a/aa/No_sign.png"

logger = logging.getLogger(__name__)


class MetadataError(RuntimeError):
    """Raised when a WHOIS or preview lookup fails."""


def build_client(
    *,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    user_agent: str = DEFAULT_USER_AGENT,
    transport: httpx.BaseTransport | None = None,
) -> httpx.Client:
    headers = {
        "User-Agent": user_agent,
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    }
    return httpx.Client(
        timeout=httpx.Timeout(timeout_seconds),
        follow_redirects=True,
        headers=headers,
        transport=transport,
    )


def _meta_content(soup: BeautifulSoup, **attrs: str) -> str | None:
    tag = soup.find("meta", attrs=attrs)
    if tag and tag.get("content"):
        content = str(tag.get("content")).strip()
        return content or None
    return None


def extract_og_preview(html: str, base_url: str | None = None) -> dict[str, str]:
    soup = BeautifulSoup(html or "", "html.parser")

    title = None
    if soup.title and soup.title.string:
        title = soup.title.string.strip() or None
    title = title or _meta_content(soup, property="og:title")

    image = _meta_content(soup, property="og:image") or _meta_content(soup, name="image")
    if image and base_url:
        image = urljoin(base_url, image)

    description = _meta_content(soup, name="description") or _meta_content(soup, property="og:description")

    return {
        "title": title or NO_TITLE,
        "image": image or NO_IMAGE,
        "description": description or NO_DESCRIPTION,
    }


class MetadataEnricher:
    def __init__(self, client: httpx.Client, whois_api_url: str = DEFAULT_WHOIS_API_URL) -> None:
        self.client = client
        self.whois_api_url = whois_api_url

    def whois(self, hostname: str) -> dict[str, Any]:
        # the API takes bare flags, which httpx params would render as "whois="
        url = f"{self.whois_api_url}?whois&url={quote(hostname)}&json"
        try:
            response = self.client.get(url)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as error:
            raise MetadataError(str(error)) from error
        except ValueError as error:
            raise MetadataError(f"whois response is not JSON: {error}") from error
        if not isinstance(payload, dict):
            raise MetadataError("whois response is not an object")
        return payload

    def og_preview(self, link: str) -> dict[str, str]:
        try:
            response = self.client.get(link)
            response.raise_for_status()
        except httpx.HTTPError as error:
            raise MetadataError(str(error)) from error
        return extract_og_preview(response.text, base_url=str(response.url))

    def describe(self, link: str) -> dict[str, Any]:
        hostname = urlsplit(link).hostname
        if not hostname:
            raise MetadataError(f"cannot resolve hostname of {link!r}")
        whois_info = self.whois(hostname)
        preview = self.og_preview(link)
        logger.debug("bookmark_enriched", extra={"hostname": hostname})
        return {"whois": whois_info, "og-preview": preview}
