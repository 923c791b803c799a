"""Build a color-sorted collage from a listener's top album artwork.

The script pulls a Last.fm user's top albums (or the albums behind a Spotify
user's top tracks), resolves cover art for every grid slot through a chain of
fallback sources, buckets the covers by color temperature and lays them out
along the grid's anti-diagonals, so the finished image sweeps from warm to cool
with grayscale covers trailing in the far corner.
"""

from __future__ import annotations

import argparse
import base64
import colorsys
import concurrent.futures
import io
import json
import logging
import os
import random
import re
import sys
import threading
import time
import unicodedata
from dataclasses import dataclass
from enum import Enum
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import requests
from PIL import Image, ImageOps
from rapidfuzz import fuzz
from tqdm import tqdm

ENV_FILE = Path(__file__).with_name(".env")
DEFAULT_CONFIG = {
    "LASTFM_API_KEY": "",
    "OUTPUT_FILE": "collage.jpg",
    "LOG_FILE": "color_collage.log",
    "DEFAULT_DIMENSIONS": "10x10",
    "TILE_SIZE": "100",
    "MAX_GRID_DIMENSION": "20",
    "TILE_QUALITY": "90",
    "COLLAGE_QUALITY": "95",
    "MIN_IMAGE_BYTES": "100",
    "REQUEST_TIMEOUT": "10",
    "MAX_RETRIES": "3",
    "DEFAULT_WORKERS": "8",
    "MAX_WORKERS": "16",
    "LASTFM_MAX_LIMIT": "400",
    "MATCH_THRESHOLD": "60",
    "USER_AGENT": "LastFM-Collage-Generator/1.0",
}


def load_env_file(path: Path) -> Dict[str, str]:
    if not path.exists():
        return {}
    data: Dict[str, str] = {}
    try:
        for raw_line in path.read_text(encoding="utf-8").splitlines():
            line = raw_line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, value = line.split("=", 1)
            data[key.strip()] = value.strip().strip('"').strip("'")
    except OSError as exc:
        raise RuntimeError(f"Failed to read configuration from {path}: {exc}") from exc
    return data


def load_config() -> Dict[str, str]:
    config = dict(DEFAULT_CONFIG)
    for key, value in load_env_file(ENV_FILE).items():
        if value:
            config[key] = value
    return config


CONFIG = load_config()

OUTPUT_FILE = Path(CONFIG["OUTPUT_FILE"]).expanduser()
LOG_FILE = Path(CONFIG["LOG_FILE"]).expanduser()
DEFAULT_DIMENSIONS = CONFIG["DEFAULT_DIMENSIONS"]

TILE_SIZE = int(CONFIG["TILE_SIZE"])
MAX_GRID_DIMENSION = int(CONFIG["MAX_GRID_DIMENSION"])
TILE_QUALITY = int(CONFIG["TILE_QUALITY"])
COLLAGE_QUALITY = int(CONFIG["COLLAGE_QUALITY"])
MIN_IMAGE_BYTES = int(CONFIG["MIN_IMAGE_BYTES"])
REQUEST_TIMEOUT = float(CONFIG["REQUEST_TIMEOUT"])
MAX_RETRIES = max(1, int(CONFIG["MAX_RETRIES"]))
DEFAULT_WORKERS = int(CONFIG["DEFAULT_WORKERS"])
MAX_WORKERS = int(CONFIG["MAX_WORKERS"])
LASTFM_MAX_LIMIT = int(CONFIG["LASTFM_MAX_LIMIT"])
MATCH_THRESHOLD = int(CONFIG["MATCH_THRESHOLD"])
USER_AGENT = CONFIG["USER_AGENT"]

LASTFM_API_URL = "https://ws.audioscrobbler.com/2.0/"
SPOTIFY_API_URL = "https://api.spotify.com/v1"
ITUNES_SEARCH_URL = "https://itunes.apple.com/search"
MUSICBRAINZ_RELEASE_URL = "https://musicbrainz.org/ws/2/release"
COVER_ART_ARCHIVE_URL = "https://coverartarchive.org/release/{mbid}/front-600.jpg"

# Last.fm serves this star image whenever an album has no artwork of its own.
LASTFM_PLACEHOLDER_HASH = "2a96cbd8b46e442fc41c2b86b821562f"
LASTFM_THUMBNAIL_PATTERN = re.compile(r"/i/u/(?:\d+s|\d+x\d+)/")
LASTFM_UPGRADED_SIZE = "/i/u/600x600/"
LASTFM_REWRITE_SIZE = "/i/u/300x300/"
LASTFM_IMAGE_PREFERENCE = ("extralarge", "large", "medium", "small")
LASTFM_PERIODS = ("overall", "7day", "1month", "3month", "6month", "12month")

SPOTIFY_TIME_RANGES = ("short_term", "medium_term", "long_term")
SPOTIFY_PAGE_SIZE = 50
SPOTIFY_MAX_LIMIT = 100

DIMENSIONS_PATTERN = re.compile(r"^\s*(\d+)\s*[xX]\s*(\d+)\s*$")

PLACEHOLDER_COLOR = (0, 0, 0)
CANVAS_BACKGROUND = (10, 10, 10)
EMPTY_SLOT_NAME = "empty-slot"
MONOCHROME_SATURATION = 0.3
COOL_HUE_RANGE = (120.0, 240.0)

RGB = Tuple[int, int, int]


class CoverSource(Enum):
    PRIMARY = "primary"
    FALLBACK1 = "itunes"
    FALLBACK2 = "musicbrainz"
    NONE = "none"


class TemperatureGroup(Enum):
    WARM = "warm"
    COOL = "cool"
    MONOCHROME = "monochrome"


@dataclass(frozen=True)
class SourceItem:
    """One requested grid slot: an album title, its artist and a cover URL."""

    name: str
    artist: str
    primary_url: Optional[str] = None

    def __post_init__(self) -> None:
        url = self.primary_url.strip() if isinstance(self.primary_url, str) else None
        object.__setattr__(self, "primary_url", url or None)

    @classmethod
    def from_dict(cls, data: Dict) -> "SourceItem":
        return cls(
            name=str(data.get("name") or ""),
            artist=str(data.get("artist") or ""),
            primary_url=data.get("coverUrl") or data.get("primary_url"),
        )


@dataclass(frozen=True)
class ResolvedCover:
    """Outcome of the fallback chain; ``image_bytes`` is None when every source failed."""

    item: SourceItem
    image_bytes: Optional[bytes]
    source_used: CoverSource
    url: Optional[str] = None


@dataclass(frozen=True)
class Tile:
    """A square JPEG-encoded cover ready to be placed into one grid cell."""

    data: bytes
    color: RGB
    is_placeholder: bool
    name: str
    artist: str = ""
    index: int = 0
    source_used: CoverSource = CoverSource.NONE


@dataclass(frozen=True)
class GridPlan:
    cols: int
    rows: int
    total_slots: int
    diagonal_order: Tuple[Tuple[int, int], ...]

    @property
    def grid_size(self) -> str:
        return f"{self.cols}x{self.rows}"


@dataclass(frozen=True)
class Placement:
    name: str
    artist: str
    col: int
    row: int
    group: TemperatureGroup
    color: RGB
    is_placeholder: bool
    source_used: CoverSource

    def to_dict(self) -> Dict:
        return {
            "name": self.name,
            "artist": self.artist,
            "col": self.col,
            "row": self.row,
            "group": self.group.value,
            "color": list(self.color),
            "is_placeholder": self.is_placeholder,
            "source_used": self.source_used.value,
        }


@dataclass(frozen=True)
class Composite:
    """The encoded collage together with what ended up where."""

    image_bytes: bytes
    placed_count: int
    grid_size: str
    total_slots: int
    total_requested: int
    placements: Tuple[Placement, ...]

    def data_uri(self) -> str:
        encoded = base64.b64encode(self.image_bytes).decode("ascii")
        return f"data:image/jpeg;base64,{encoded}"

    def to_payload(self, include_image: bool = True) -> Dict:
        payload = {
            "processedCount": self.placed_count,
            "placedCount": self.placed_count,
            "totalRequested": self.total_requested,
            "gridSize": self.grid_size,
            "totalSlots": self.total_slots,
            "placements": [placement.to_dict() for placement in self.placements],
        }
        if include_image:
            payload["image"] = self.data_uri()
        return payload


class CollageError(Exception):
    """Base class for failures reported to the caller."""


class InvalidInputError(CollageError, ValueError):
    """Raised for an empty item list or an unusable grid shape."""


class NoValidImagesError(CollageError):
    """Raised when not a single tile survives final validation."""


class LastFMError(Exception):
    """Custom exception for Last.fm API issues."""


class SpotifyError(Exception):
    """Raised when the Spotify Web API rejects a request."""


def setup_logging() -> None:
    LOG_FILE.parent.mkdir(parents=True, exist_ok=True)
    file_handler = RotatingFileHandler(
        LOG_FILE,
        maxBytes=1_000_000,
        backupCount=3,
        encoding="utf-8",
    )
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[file_handler, logging.StreamHandler(sys.stdout)],
    )
    logging.getLogger("PIL").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)


def normalize_diacritics(value: str) -> str:
    return "".join(
        ch for ch in unicodedata.normalize("NFKD", value) if not unicodedata.combining(ch)
    )


def normalize_text(value: str) -> str:
    if not value:
        return ""
    value = normalize_diacritics(value).lower()
    value = value.replace("&", " and ")
    value = re.sub(r"[^\w\s]", " ", value)
    value = re.sub(r"\s+", " ", value).strip()
    if value.startswith("the "):
        value = value[4:]
    return value


def matches_item(
    item: SourceItem,
    title: Optional[str],
    artist: Optional[str],
    threshold: int = MATCH_THRESHOLD,
) -> bool:
    """Check that a search hit plausibly refers to the requested album."""
    if threshold <= 0:
        return True
    expected = normalize_text(f"{item.artist} {item.name}")
    found = normalize_text(f"{artist or ''} {title or ''}")
    if not expected or not found:
        return False
    return fuzz.token_set_ratio(expected, found) >= threshold


# ---------------------------------------------------------------------------
# Metadata sources
# ---------------------------------------------------------------------------


class ThreadLocalSessions:
    """Hands each worker thread its own ``requests.Session`` and closes them all together."""

    def __init__(self) -> None:
        self._local = threading.local()
        self._lock = threading.Lock()
        self._sessions: List[requests.Session] = []

    def get(self) -> requests.Session:
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            session.headers["User-Agent"] = USER_AGENT
            self._local.session = session
            with self._lock:
                self._sessions.append(session)
        return session

    def close(self) -> None:
        with self._lock:
            sessions, self._sessions = self._sessions, []
            self._local = threading.local()
        for session in sessions:
            session.close()


class LastFMClient:
    """Client for the Last.fm API with per-thread sessions and retry handling."""

    def __init__(self, api_key: str) -> None:
        self.api_key = api_key
        self._thread = threading.local()
        self._sessions = ThreadLocalSessions()

    def _get_session(self) -> requests.Session:
        return self._sessions.get()

    def close(self) -> None:
        self._sessions.close()

    def _get_random(self) -> random.Random:
        rng = getattr(self._thread, "random", None)
        if rng is None:
            rng = random.Random(time.time_ns() ^ threading.get_ident())
            self._thread.random = rng
        return rng

    def _request(self, params: Dict[str, str]) -> Dict:
        params_with_key = {**params, "api_key": self.api_key, "format": "json"}
        session = self._get_session()
        last_exception: Optional[Exception] = None
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = session.get(
                    LASTFM_API_URL,
                    params=params_with_key,
                    timeout=REQUEST_TIMEOUT,
                )
                if response.status_code == 429:
                    raise LastFMError("Rate limited by Last.fm")
                response.raise_for_status()
                payload = response.json()
                if "error" in payload:
                    raise LastFMError(payload.get("message", "Unknown Last.fm error"))
                return payload
            except (requests.RequestException, ValueError, LastFMError) as exc:
                last_exception = exc
                if attempt == MAX_RETRIES:
                    break
                backoff = (0.5 * (2 ** (attempt - 1))) + self._get_random().uniform(0, 0.25)
                logging.debug(
                    "Retrying Last.fm request (%s/%s) after %.2fs due to: %s",
                    attempt,
                    MAX_RETRIES,
                    backoff,
                    exc,
                )
                time.sleep(backoff)
        raise LastFMError(str(last_exception or "Unknown Last.fm error"))

    def user_top_albums(self, user: str, limit: int = 100, period: str = "overall") -> Dict:
        if period not in LASTFM_PERIODS:
            raise InvalidInputError(
                f"period must be one of {', '.join(LASTFM_PERIODS)}, got {period!r}"
            )
        limit = max(1, min(limit, LASTFM_MAX_LIMIT))
        return self._request(
            {
                "method": "user.getTopAlbums",
                "user": user,
                "limit": str(limit),
                "period": period,
            }
        )


def pick_cover_url(images: Optional[Sequence[Dict]]) -> Optional[str]:
    if not images:
        return None
    candidates = [img for img in images if isinstance(img, dict)]
    for size in LASTFM_IMAGE_PREFERENCE:
        for image in candidates:
            url = (image.get("#text") or "").strip()
            if image.get("size") == size and url:
                return url
    # Unsized entries: Last.fm lists medium third.
    if len(candidates) > 2:
        url = (candidates[2].get("#text") or "").strip()
        if url:
            return url
    return None


def parse_top_albums(payload: Dict) -> List[SourceItem]:
    albums = (payload.get("topalbums") or {}).get("album") or []
    if isinstance(albums, dict):
        albums = [albums]
    items: List[SourceItem] = []
    for album in albums:
        if not isinstance(album, dict) or not album.get("name"):
            continue
        artist = album.get("artist") or {}
        if isinstance(artist, dict):
            artist_name = artist.get("name") or artist.get("#text") or ""
        else:
            artist_name = str(artist)
        items.append(
            SourceItem(
                name=album["name"],
                artist=artist_name,
                primary_url=pick_cover_url(album.get("image")),
            )
        )
    missing = sum(1 for item in items if item.primary_url is None)
    if missing:
        logging.info("%d album(s) have no Last.fm artwork; fallbacks will be tried.", missing)
    return items


class SpotifyClient:
    """Reads a user's top tracks with an access token obtained elsewhere."""

    def __init__(self, access_token: str) -> None:
        self.session = requests.Session()
        self.session.headers.update(
            {"Authorization": f"Bearer {access_token}", "User-Agent": USER_AGENT}
        )

    def _get(self, path: str, params: Dict[str, str]) -> Dict:
        try:
            response = self.session.get(
                f"{SPOTIFY_API_URL}{path}", params=params, timeout=REQUEST_TIMEOUT
            )
        except requests.RequestException as exc:
            raise SpotifyError(str(exc)) from exc
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if response.status_code != 200:
            error = payload.get("error") if isinstance(payload, dict) else None
            message = error.get("message") if isinstance(error, dict) else None
            raise SpotifyError(message or f"Spotify API error (HTTP {response.status_code})")
        return payload

    def top_tracks(self, limit: int = SPOTIFY_MAX_LIMIT, time_range: str = "medium_term") -> List[Dict]:
        if time_range not in SPOTIFY_TIME_RANGES:
            raise InvalidInputError(
                f"time_range must be one of {', '.join(SPOTIFY_TIME_RANGES)}, got {time_range!r}"
            )
        limit = max(1, min(limit, SPOTIFY_MAX_LIMIT))
        tracks: List[Dict] = []
        for offset in range(0, limit, SPOTIFY_PAGE_SIZE):
            payload = self._get(
                "/me/top/tracks",
                {
                    "limit": str(SPOTIFY_PAGE_SIZE),
                    "offset": str(offset),
                    "time_range": time_range,
                },
            )
            items = payload.get("items") or []
            tracks.extend(items)
            if len(items) < SPOTIFY_PAGE_SIZE:
                break
        return tracks[:limit]


def parse_top_tracks(tracks: Sequence[Dict]) -> List[SourceItem]:
    items: List[SourceItem] = []
    for track in tracks:
        album = (track or {}).get("album") or {}
        artists = [a for a in (track.get("artists") or []) if isinstance(a, dict)]
        images = [img for img in (album.get("images") or []) if isinstance(img, dict)]
        items.append(
            SourceItem(
                name=album.get("name") or track.get("name") or "",
                artist=(artists[0].get("name") if artists else None) or "Unknown Artist",
                primary_url=images[0].get("url") if images else None,
            )
        )
    return items


def load_items_file(path: Path) -> List[SourceItem]:
    """Read items from a JSON list, or an object carrying an ``albums`` list."""
    with path.open("r", encoding="utf-8") as handle:
        payload = json.load(handle)
    if isinstance(payload, dict):
        payload = payload.get("albums") or []
    if not isinstance(payload, list):
        raise InvalidInputError(f"{path} does not contain a list of albums")
    return [SourceItem.from_dict(entry) for entry in payload if isinstance(entry, dict)]


# ---------------------------------------------------------------------------
# Cover resolution
# ---------------------------------------------------------------------------


def is_placeholder_url(url: Optional[str]) -> bool:
    return bool(url) and LASTFM_PLACEHOLDER_HASH in url


def usable_primary_url(item: SourceItem) -> Optional[str]:
    if not item.primary_url or is_placeholder_url(item.primary_url):
        return None
    return item.primary_url


def upgrade_image_url(url: str) -> str:
    return LASTFM_THUMBNAIL_PATTERN.sub(LASTFM_UPGRADED_SIZE, url, count=1)


def rewrite_image_url(url: str) -> str:
    return LASTFM_THUMBNAIL_PATTERN.sub(LASTFM_REWRITE_SIZE, url, count=1)


def is_valid_payload(payload: Optional[bytes], min_bytes: int = MIN_IMAGE_BYTES) -> bool:
    return isinstance(payload, (bytes, bytearray)) and len(payload) > min_bytes


Strategy = Callable[[SourceItem], Optional[Tuple[str, bytes]]]
SOURCE_ERRORS = (requests.RequestException, ValueError, KeyError, TypeError, AttributeError)


class CoverResolver:
    """Finds artwork bytes for an item by walking an ordered list of sources.

    Sources are tried left to right and the first one that yields a payload
    wins. A failing source (HTTP error, timeout, undersized body, a search
    that finds nothing or finds the wrong album) just hands over to the next
    one; when every source is exhausted the cover resolves to ``None``.
    """

    def __init__(
        self,
        timeout: float = REQUEST_TIMEOUT,
        min_bytes: int = MIN_IMAGE_BYTES,
        match_threshold: int = MATCH_THRESHOLD,
    ) -> None:
        self.timeout = timeout
        self.min_bytes = min_bytes
        self.match_threshold = match_threshold
        self._sessions = ThreadLocalSessions()

    def _get_session(self) -> requests.Session:
        return self._sessions.get()

    def close(self) -> None:
        self._sessions.close()

    def strategies(self) -> List[Tuple[CoverSource, Strategy]]:
        return [
            (CoverSource.PRIMARY, self.from_upgraded_primary),
            (CoverSource.PRIMARY, self.from_rewritten_primary),
            (CoverSource.FALLBACK1, self.from_itunes),
            (CoverSource.FALLBACK2, self.from_musicbrainz),
        ]

    def resolve(self, item: SourceItem) -> ResolvedCover:
        if item.primary_url and is_placeholder_url(item.primary_url):
            logging.info("Skipping placeholder image for %s", item.name)
        for source, strategy in self.strategies():
            try:
                found = strategy(item)
            except SOURCE_ERRORS as exc:
                logging.debug(
                    "%s lookup failed for %s - %s: %s",
                    source.value,
                    item.artist,
                    item.name,
                    exc,
                )
                continue
            if found is not None:
                url, payload = found
                logging.debug("Resolved %s via %s (%s)", item.name, source.value, url)
                return ResolvedCover(item=item, image_bytes=payload, source_used=source, url=url)
        logging.warning("No artwork found for %s - %s", item.artist, item.name)
        return ResolvedCover(item=item, image_bytes=None, source_used=CoverSource.NONE)

    def fetch_image(self, url: str) -> Optional[bytes]:
        response = self._get_session().get(url, timeout=self.timeout)
        if response.status_code != 200:
            logging.debug("Image request for %s returned HTTP %s", url, response.status_code)
            return None
        payload = response.content
        if not is_valid_payload(payload, self.min_bytes):
            logging.debug("Image payload from %s is too small (%d bytes)", url, len(payload or b""))
            return None
        return payload

    def _fetch_first(self, urls: Sequence[str]) -> Optional[Tuple[str, bytes]]:
        for url in urls:
            try:
                payload = self.fetch_image(url)
            except requests.RequestException as exc:
                logging.debug("Image request failed for %s: %s", url, exc)
                continue
            if payload is not None:
                return url, payload
        return None

    def from_upgraded_primary(self, item: SourceItem) -> Optional[Tuple[str, bytes]]:
        url = usable_primary_url(item)
        if url is None:
            return None
        return self._fetch_first([upgrade_image_url(url)])

    def from_rewritten_primary(self, item: SourceItem) -> Optional[Tuple[str, bytes]]:
        url = usable_primary_url(item)
        if url is None:
            return None
        already_tried = upgrade_image_url(url)
        candidates: List[str] = []
        for candidate in (rewrite_image_url(url), url):
            if candidate != already_tried and candidate not in candidates:
                candidates.append(candidate)
        return self._fetch_first(candidates)

    def from_itunes(self, item: SourceItem) -> Optional[Tuple[str, bytes]]:
        url = self.itunes_artwork_url(item)
        return self._fetch_first([url]) if url else None

    def from_musicbrainz(self, item: SourceItem) -> Optional[Tuple[str, bytes]]:
        url = self.musicbrainz_artwork_url(item)
        return self._fetch_first([url]) if url else None

    def itunes_artwork_url(self, item: SourceItem) -> Optional[str]:
        response = self._get_session().get(
            ITUNES_SEARCH_URL,
            params={
                "term": f"{item.artist} {item.name}".strip(),
                "media": "music",
                "entity": "album",
                "limit": "1",
            },
            timeout=self.timeout,
        )
        response.raise_for_status()
        results = response.json().get("results") or []
        if not results:
            return None
        result = results[0]
        artwork = result.get("artworkUrl100")
        if not artwork:
            return None
        if not matches_item(
            item, result.get("collectionName"), result.get("artistName"), self.match_threshold
        ):
            logging.debug(
                "iTunes match %r by %r rejected for %s",
                result.get("collectionName"),
                result.get("artistName"),
                item.name,
            )
            return None
        return artwork.replace("100x100bb", "600x600bb")

    def musicbrainz_artwork_url(self, item: SourceItem) -> Optional[str]:
        session = self._get_session()
        response = session.get(
            MUSICBRAINZ_RELEASE_URL,
            params={
                "query": f"{item.artist} {item.name}".strip(),
                "limit": "1",
                "fmt": "json",
            },
            timeout=self.timeout,
        )
        response.raise_for_status()
        releases = response.json().get("releases") or []
        if not releases or not releases[0].get("id"):
            return None
        release = releases[0]
        credits = [c for c in (release.get("artist-credit") or []) if isinstance(c, dict)]
        artist = " ".join(c.get("name", "") for c in credits)
        if not matches_item(item, release.get("title"), artist, self.match_threshold):
            logging.debug("MusicBrainz match %r rejected for %s", release.get("title"), item.name)
            return None
        cover_url = COVER_ART_ARCHIVE_URL.format(mbid=release["id"])
        head = session.head(cover_url, allow_redirects=True, timeout=self.timeout)
        if head.status_code != 200:
            return None
        return cover_url


# ---------------------------------------------------------------------------
# Color extraction and classification
# ---------------------------------------------------------------------------


def flatten_alpha(image: Image.Image, background: RGB = PLACEHOLDER_COLOR) -> Image.Image:
    has_alpha = image.mode in ("RGBA", "LA", "PA") or (
        image.mode == "P" and "transparency" in image.info
    )
    if not has_alpha:
        return image.convert("RGB")
    rgba = image.convert("RGBA")
    flattened = Image.new("RGB", rgba.size, background)
    flattened.paste(rgba, mask=rgba.getchannel("A"))
    return flattened


def open_image(data: bytes) -> Image.Image:
    image = Image.open(io.BytesIO(data))
    image.load()
    return flatten_alpha(image)


def extract_color(data: Optional[bytes]) -> RGB:
    """Average the whole image down to a single pixel.

    Undecodable input yields black rather than an error, so one bad cover
    cannot hold up the rest of the collage.
    """
    if not data:
        return PLACEHOLDER_COLOR
    try:
        pixel = open_image(data).resize((1, 1), Image.Resampling.BOX).getpixel((0, 0))
    except Exception as exc:
        logging.debug("Color extraction failed: %s", exc)
        return PLACEHOLDER_COLOR
    return (int(pixel[0]), int(pixel[1]), int(pixel[2]))


def rgb_to_hsv(rgb: RGB) -> Tuple[float, float, float]:
    """Return hue, saturation and value, each in [0, 1]; hue is 0 for grays."""
    r, g, b = (channel / 255.0 for channel in rgb)
    return colorsys.rgb_to_hsv(r, g, b)


def hue_degrees(rgb: RGB) -> float:
    return rgb_to_hsv(rgb)[0] * 360.0


def temperature_group(rgb: RGB) -> TemperatureGroup:
    hue, saturation, _ = rgb_to_hsv(rgb)
    # Hue is unstable at low saturation, so near-grays are bucketed apart.
    if saturation < MONOCHROME_SATURATION:
        return TemperatureGroup.MONOCHROME
    low, high = COOL_HUE_RANGE
    if low <= hue * 360.0 <= high:
        return TemperatureGroup.COOL
    return TemperatureGroup.WARM


def perceived_brightness(rgb: RGB) -> float:
    r, g, b = rgb
    return 0.299 * r + 0.587 * g + 0.114 * b


# ---------------------------------------------------------------------------
# Tiles
# ---------------------------------------------------------------------------


def encode_jpeg(image: Image.Image, quality: int) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="JPEG", quality=quality)
    return buffer.getvalue()


def placeholder_tile(
    index: int, size: int = TILE_SIZE, name: str = EMPTY_SLOT_NAME, artist: str = ""
) -> Tile:
    image = Image.new("RGB", (size, size), PLACEHOLDER_COLOR)
    return Tile(
        data=encode_jpeg(image, TILE_QUALITY),
        color=PLACEHOLDER_COLOR,
        is_placeholder=True,
        name=name,
        artist=artist,
        index=index,
        source_used=CoverSource.NONE,
    )


def build_tile(cover: ResolvedCover, index: int, size: int = TILE_SIZE) -> Tile:
    """Cover-fit the artwork into a ``size`` square, or fall back to a black tile."""
    item = cover.item
    if cover.image_bytes:
        try:
            image = open_image(cover.image_bytes)
            fitted = ImageOps.fit(
                image, (size, size), method=Image.Resampling.LANCZOS, centering=(0.5, 0.5)
            )
            data = encode_jpeg(fitted, TILE_QUALITY)
        except Exception as exc:
            logging.warning("Failed to process artwork for %s: %s", item.name, exc)
        else:
            return Tile(
                data=data,
                color=extract_color(cover.image_bytes),
                is_placeholder=False,
                name=item.name,
                artist=item.artist,
                index=index,
                source_used=cover.source_used,
            )
    return placeholder_tile(index, size, name=item.name or EMPTY_SLOT_NAME, artist=item.artist)


# ---------------------------------------------------------------------------
# Grid layout and compositing
# ---------------------------------------------------------------------------


def parse_dimensions(value: str) -> Tuple[int, int]:
    match = DIMENSIONS_PATTERN.match(value or "")
    if not match:
        raise InvalidInputError(f"dimensions must look like COLSxROWS, got {value!r}")
    return int(match.group(1)), int(match.group(2))


def validate_dimension(value: int, axis: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidInputError(f"{axis} must be an integer, got {value!r}")
    if not 1 <= value <= MAX_GRID_DIMENSION:
        raise InvalidInputError(f"{axis} must be between 1 and {MAX_GRID_DIMENSION}, got {value}")
    return value


def diagonal_order(cols: int, rows: int) -> List[Tuple[int, int]]:
    """Enumerate ``(col, row)`` cells one anti-diagonal at a time, col ascending."""
    positions: List[Tuple[int, int]] = []
    for diagonal in range(cols + rows - 1):
        for col in range(cols):
            row = diagonal - col
            if 0 <= row < rows:
                positions.append((col, row))
    return positions


def build_grid_plan(cols: int, rows: int) -> GridPlan:
    cols = validate_dimension(cols, "cols")
    rows = validate_dimension(rows, "rows")
    return GridPlan(
        cols=cols,
        rows=rows,
        total_slots=cols * rows,
        diagonal_order=tuple(diagonal_order(cols, rows)),
    )


def partition_tiles(tiles: Sequence[Tile]) -> Dict[TemperatureGroup, List[Tuple[int, Tile]]]:
    groups: Dict[TemperatureGroup, List[Tuple[int, Tile]]] = {
        group: [] for group in TemperatureGroup
    }
    for position, tile in enumerate(tiles):
        groups[temperature_group(tile.color)].append((position, tile))
    return groups


def sort_tiles(tiles: Sequence[Tile]) -> List[Tile]:
    """Order tiles warm by hue, then cool by hue, then grays dark to light."""
    groups = partition_tiles(tiles)

    def by_hue(entry: Tuple[int, Tile]) -> Tuple[float, int]:
        return hue_degrees(entry[1].color), entry[0]

    def by_brightness(entry: Tuple[int, Tile]) -> Tuple[float, int]:
        return perceived_brightness(entry[1].color), entry[0]

    ordered = (
        sorted(groups[TemperatureGroup.WARM], key=by_hue)
        + sorted(groups[TemperatureGroup.COOL], key=by_hue)
        + sorted(groups[TemperatureGroup.MONOCHROME], key=by_brightness)
    )
    return [tile for _, tile in ordered]


def load_tile_image(tile: Tile, size: int) -> Optional[Image.Image]:
    try:
        with Image.open(io.BytesIO(tile.data)) as image:
            image.load()
            if image.size != (size, size):
                logging.warning(
                    "Tile for %s is %sx%s, expected %sx%s; skipping",
                    tile.name,
                    image.size[0],
                    image.size[1],
                    size,
                    size,
                )
                return None
            return image.convert("RGB")
    except Exception as exc:
        logging.warning("Tile for %s failed validation: %s", tile.name, exc)
        return None


def compose_collage(
    plan: GridPlan,
    tiles: Sequence[Tile],
    tile_size: int = TILE_SIZE,
    total_requested: Optional[int] = None,
) -> Composite:
    ordered = sort_tiles(tiles)
    limit = min(len(ordered), plan.total_slots, len(plan.diagonal_order))
    canvas = Image.new(
        "RGB", (plan.cols * tile_size, plan.rows * tile_size), CANVAS_BACKGROUND
    )
    placements: List[Placement] = []
    for tile, (col, row) in zip(ordered[:limit], plan.diagonal_order):
        image = load_tile_image(tile, tile_size)
        if image is None:
            continue
        canvas.paste(image, (col * tile_size, row * tile_size))
        placements.append(
            Placement(
                name=tile.name,
                artist=tile.artist,
                col=col,
                row=row,
                group=temperature_group(tile.color),
                color=tile.color,
                is_placeholder=tile.is_placeholder,
                source_used=tile.source_used,
            )
        )
    if not placements:
        raise NoValidImagesError("No valid images after processing")
    return Composite(
        image_bytes=encode_jpeg(canvas, COLLAGE_QUALITY),
        placed_count=len(placements),
        grid_size=plan.grid_size,
        total_slots=plan.total_slots,
        total_requested=len(tiles) if total_requested is None else total_requested,
        placements=tuple(placements),
    )


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


def process_item(resolver: CoverResolver, item: SourceItem, index: int, tile_size: int) -> Tile:
    return build_tile(resolver.resolve(item), index, tile_size)


def build_tiles(
    items: Sequence[SourceItem],
    plan: GridPlan,
    resolver: CoverResolver,
    workers: int = DEFAULT_WORKERS,
    tile_size: int = TILE_SIZE,
    show_progress: bool = False,
) -> List[Tile]:
    """Resolve and normalize every item concurrently, one tile per grid slot.

    Each item settles independently; an item whose task blows up becomes a
    placeholder for its own slot only. Slots beyond the item count are padded
    with empty placeholders.
    """
    requested = list(items[: plan.total_slots])
    tiles: List[Optional[Tile]] = [None] * len(requested)
    if requested:
        with concurrent.futures.ThreadPoolExecutor(max_workers=max(1, workers)) as executor:
            future_to_index = {
                executor.submit(process_item, resolver, item, index, tile_size): index
                for index, item in enumerate(requested)
            }
            with tqdm(
                total=len(requested),
                desc="Resolving covers",
                unit="cover",
                disable=not show_progress,
            ) as progress:
                for future in concurrent.futures.as_completed(future_to_index):
                    index = future_to_index[future]
                    item = requested[index]
                    try:
                        tiles[index] = future.result()
                    except Exception as exc:
                        logging.exception("Error processing %s: %s", item.name, exc)
                        tiles[index] = placeholder_tile(
                            index, tile_size, name=item.name or EMPTY_SLOT_NAME, artist=item.artist
                        )
                    progress.update(1)
    result = [tile for tile in tiles if tile is not None]
    for index in range(len(result), plan.total_slots):
        result.append(placeholder_tile(index, tile_size))
    return result


def generate_collage(
    items: Sequence[SourceItem],
    cols: int,
    rows: int,
    resolver: Optional[CoverResolver] = None,
    workers: int = DEFAULT_WORKERS,
    tile_size: int = TILE_SIZE,
    show_progress: bool = False,
) -> Composite:
    if not items:
        raise InvalidInputError("No albums provided")
    plan = build_grid_plan(cols, rows)
    owns_resolver = resolver is None
    if resolver is None:
        resolver = CoverResolver()
    logging.info("Creating %s collage for %d album(s)", plan.grid_size, len(items))
    try:
        tiles = build_tiles(items, plan, resolver, workers, tile_size, show_progress)
    finally:
        if owns_resolver:
            resolver.close()
    composite = compose_collage(plan, tiles, tile_size, total_requested=len(items))
    placeholders = sum(1 for placement in composite.placements if placement.is_placeholder)
    logging.info(
        "Placed %d of %d slot(s) (%d placeholder(s))",
        composite.placed_count,
        plan.total_slots,
        placeholders,
    )
    return composite


# ---------------------------------------------------------------------------
# Command line
# ---------------------------------------------------------------------------


def write_outputs(composite: Composite, output: Path, metadata_out: Optional[Path]) -> None:
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_bytes(composite.image_bytes)
    if metadata_out is not None:
        metadata_out.parent.mkdir(parents=True, exist_ok=True)
        with metadata_out.open("w", encoding="utf-8") as handle:
            json.dump(composite.to_payload(include_image=False), handle, ensure_ascii=False, indent=2)


def collect_items(args: argparse.Namespace, limit: int) -> List[SourceItem]:
    if args.input is not None:
        return load_items_file(args.input)
    if args.spotify_token:
        client = SpotifyClient(args.spotify_token)
        return parse_top_tracks(client.top_tracks(limit=limit, time_range=args.time_range))
    api_key = os.environ.get("LASTFM_API_KEY") or CONFIG.get("LASTFM_API_KEY", "")
    if not api_key:
        raise LastFMError(
            "Last.fm API key missing. Set LASTFM_API_KEY environment variable, e.g.:\n"
            'export LASTFM_API_KEY="YOUR_KEY"'
        )
    client = LastFMClient(api_key=api_key)
    return parse_top_albums(client.user_top_albums(args.user, limit=limit, period=args.period))


def parse_arguments(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    def worker_count(value: str) -> int:
        workers = int(value)
        if not 1 <= workers <= MAX_WORKERS:
            raise argparse.ArgumentTypeError(
                f"workers must be between 1 and {MAX_WORKERS}, got {workers}"
            )
        return workers

    def grid_dimensions(value: str) -> Tuple[int, int]:
        try:
            cols, rows = parse_dimensions(value)
            build_grid_plan(cols, rows)
        except InvalidInputError as exc:
            raise argparse.ArgumentTypeError(str(exc)) from exc
        return cols, rows

    parser = argparse.ArgumentParser(
        description="Generate a color-sorted collage of top album artwork."
    )
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--user", help="Last.fm username whose top albums to use.")
    source.add_argument(
        "--spotify-token",
        metavar="TOKEN",
        help="Spotify access token; the albums of the user's top tracks are used.",
    )
    source.add_argument(
        "--input",
        type=Path,
        metavar="FILE",
        help='JSON file with a list of {"name", "artist", "coverUrl"} objects.',
    )
    parser.add_argument(
        "--dimensions",
        type=grid_dimensions,
        default=DEFAULT_DIMENSIONS,
        metavar="COLSxROWS",
        help=f"Grid shape, each side 1-{MAX_GRID_DIMENSION} (default {DEFAULT_DIMENSIONS}).",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=None,
        metavar="N",
        help="Number of albums to request (default: one per grid slot).",
    )
    parser.add_argument(
        "--period",
        choices=LASTFM_PERIODS,
        default="overall",
        help="Last.fm chart period (default overall).",
    )
    parser.add_argument(
        "--time-range",
        choices=SPOTIFY_TIME_RANGES,
        default="medium_term",
        help="Spotify top-tracks time range (default medium_term).",
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=OUTPUT_FILE,
        help=f"Where to write the JPEG collage (default {OUTPUT_FILE}).",
    )
    parser.add_argument(
        "--metadata-out",
        type=Path,
        default=None,
        metavar="FILE",
        help="Also write placement metadata as JSON.",
    )
    parser.add_argument(
        "--workers",
        type=worker_count,
        default=DEFAULT_WORKERS,
        help=f"Number of worker threads to use (1-{MAX_WORKERS}, default {DEFAULT_WORKERS}).",
    )
    parser.add_argument(
        "--no-progress",
        action="store_true",
        help="Hide the progress bar.",
    )
    args = parser.parse_args(argv)
    # argparse only runs ``type`` on string defaults, so this is always a tuple.
    args.cols, args.rows = args.dimensions
    return args


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_arguments(argv)
    setup_logging()
    logging.info("Color collage started.")

    limit = args.limit if args.limit is not None else args.cols * args.rows
    try:
        items = collect_items(args, limit)
    except InvalidInputError as exc:
        logging.error("%s", exc)
        print(f"Invalid input: {exc}")
        sys.exit(2)
    except (LastFMError, SpotifyError, OSError, ValueError) as exc:
        logging.error("Failed to load albums: %s", exc)
        print(f"Failed to load albums: {exc}")
        sys.exit(1)

    try:
        composite = generate_collage(
            items,
            args.cols,
            args.rows,
            workers=args.workers,
            show_progress=not args.no_progress,
        )
    except InvalidInputError as exc:
        logging.error("%s", exc)
        print(f"Invalid input: {exc}")
        sys.exit(2)
    except NoValidImagesError as exc:
        logging.error("%s", exc)
        print(f"Collage failed: {exc}")
        sys.exit(1)

    try:
        write_outputs(composite, args.output, args.metadata_out)
    except OSError as exc:
        logging.error("Failed to write collage to %s: %s", args.output, exc)
        print(f"Failed to write collage to {args.output}. See log for details.")
        sys.exit(1)

    logging.info(
        "Finished - %s collage with %d of %d slot(s) placed, written to %s",
        composite.grid_size,
        composite.placed_count,
        composite.total_slots,
        args.output,
    )
    print(
        f"Wrote {composite.grid_size} collage to {args.output}. "
        f"Placed {composite.placed_count}/{composite.total_slots} slot(s) "
        f"from {composite.total_requested} album(s)."
    )


if __name__ == "__main__":
    main()
