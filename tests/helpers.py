"""In-memory images and fake network collaborators shared by the test modules."""

from __future__ import annotations

import io
from typing import Dict, List, Optional, Tuple

from PIL import Image

import color_collage
from color_collage import CoverSource, ResolvedCover, SourceItem


def make_image_bytes(
    color=(200, 40, 40),
    size: Tuple[int, int] = (60, 60),
    mode: str = "RGB",
    fmt: str = "PNG",
) -> bytes:
    """Encode a solid-color image in memory."""
    image = Image.new(mode, size, color)
    buffer = io.BytesIO()
    image.save(buffer, format=fmt)
    return buffer.getvalue()


class FakeResponse:
    def __init__(self, status_code: int = 200, content: bytes = b"", json_data=None) -> None:
        self.status_code = status_code
        self.content = content
        self._json = json_data

    def json(self):
        if self._json is None:
            raise ValueError("No JSON body")
        return self._json

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise color_collage.requests.HTTPError(f"HTTP {self.status_code}")


class FakeSession:
    """Routes GET/HEAD calls by URL; unknown URLs answer 404."""

    def __init__(self, routes: Optional[Dict] = None, heads: Optional[Dict] = None) -> None:
        self.routes = routes or {}
        self.heads = heads or {}
        self.calls: List[Tuple[str, str, Optional[Dict]]] = []

    def _answer(self, table: Dict, url: str) -> FakeResponse:
        outcome = table.get(url, FakeResponse(404))
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def get(self, url, params=None, timeout=None, **kwargs):
        self.calls.append(("GET", url, params))
        return self._answer(self.routes, url)

    def head(self, url, timeout=None, **kwargs):
        self.calls.append(("HEAD", url, None))
        return self._answer(self.heads, url)

    def requested_urls(self) -> List[str]:
        return [url for _, url, _ in self.calls]


class FakeResolver:
    """Hands back canned payloads per item name instead of touching the network."""

    def __init__(self, payloads: Optional[Dict[str, bytes]] = None, failing=()) -> None:
        self.payloads = payloads or {}
        self.failing = set(failing)
        self.closed = False

    def resolve(self, item: SourceItem) -> ResolvedCover:
        if item.name in self.failing:
            raise RuntimeError(f"resolver exploded for {item.name}")
        payload = self.payloads.get(item.name)
        if payload is None:
            return ResolvedCover(item=item, image_bytes=None, source_used=CoverSource.NONE)
        return ResolvedCover(item=item, image_bytes=payload, source_used=CoverSource.PRIMARY)

    def close(self) -> None:
        self.closed = True

