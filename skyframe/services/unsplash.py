"""Unsplash random-photo client."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

import requests

from ..models import PhotoRecord
from .base import PhotoProviderError

API_URL = "https://api.unsplash.com/photos/random"
DEFAULT_TIMEOUT = 10.0


class UnsplashPhotoProvider:
    """Fetch a landscape photo matching a search query.

    Requests run on a worker thread so the caller's event loop stays free
    while the HTTP call is in flight.
    """

    def __init__(
        self,
        access_key: Optional[str],
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.access_key = access_key
        self.timeout = timeout
        self.session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        if not self.access_key:
            raise PhotoProviderError(
                "Unsplash access key is not configured. Set unsplash.access_key or UNSPLASH_ACCESS_KEY."
            )
        return {"Authorization": f"Client-ID {self.access_key}", "Accept-Version": "v1"}

    async def fetch_photo(self, width: int, height: int, query: str) -> PhotoRecord:
        return await asyncio.to_thread(self._fetch_photo, width, height, query)

    async def trigger_download(self, download_location: str) -> None:
        await asyncio.to_thread(self._trigger_download, download_location)

    def _fetch_photo(self, width: int, height: int, query: str) -> PhotoRecord:
        params = {"orientation": "landscape", "query": query, "w": width, "h": height}
        try:
            response = self.session.get(API_URL, params=params, headers=self._headers(), timeout=self.timeout)
            response.raise_for_status()
            payload = response.json()
        except requests.RequestException as exc:
            raise PhotoProviderError(f"Failed to fetch photo: {exc}") from exc
        except ValueError as exc:
            raise PhotoProviderError("Failed to parse photo data: invalid JSON") from exc
        return parse_photo(payload, width, height)

    def _trigger_download(self, download_location: str) -> None:
        try:
            response = self.session.get(download_location, headers=self._headers(), timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise PhotoProviderError(f"Failed to trigger download: {exc}") from exc


def sized_url(regular_url: str, width: int, height: int) -> str:
    separator = "&" if "?" in regular_url else "?"
    return f"{regular_url}{separator}w={width}&h={height}&fit=crop&q=85"


def parse_photo(payload: Any, width: int, height: int) -> PhotoRecord:
    try:
        regular = payload["urls"]["regular"]
        user = payload["user"]
        author = user["name"]
        author_url = user["links"]["html"]
    except (KeyError, TypeError) as exc:
        raise PhotoProviderError(f"Failed to parse photo data: missing {exc}") from exc

    links = payload.get("links") or {}
    return PhotoRecord(
        url=sized_url(regular, width, height),
        author=author,
        author_url=author_url,
        download_location=links.get("download_location"),
    )
