"""
osm_water.py — Fetch drinking-water points from OpenStreetMap for a bounding box.

Importable usage:
    from osm_water import BoundingBox, resolve
    features = resolve(BoundingBox.parse("37.0,-122.0,37.1,-121.9"),
                       on_progress=lambda n: print(f"{n} tiles"))

How it works:
  1. Builds an Overpass query for amenity=drinking_water, natural=spring and
     man_made=water_tap (nodes, ways and relations, with way/relation centers).
  2. Sends one request per box.  When the upstream pushes back (400, 429, 504
     or a local timeout) the box is split into four quadrants after an
     exponential backoff, and each quadrant is fetched in turn.  A body that
     stalls or is still arriving when the wall-clock limit runs out counts as
     a timeout and is retried the same way.
  3. Parses every leaf response and merges the features, dropping duplicate
     (kind, id) pairs that straddle quadrant edges.
"""

import itertools
import logging
import math
import socket
import time
import urllib.parse
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple
from xml.etree import ElementTree as ET

import requests
import urllib3
from urllib3.exceptions import ReadTimeoutError

import config

logger = logging.getLogger(__name__)

# (key, value) pairs that make an OSM element a water point.
WATER_TAGS = (
    ("amenity", "drinking_water"),
    ("natural", "spring"),
    ("man_made", "water_tap"),
)
FEATURE_KINDS = ("node", "way", "relation")
SOURCES = ("overpass", "osm")

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded;charset=UTF-8"

# Upper bound per body read; read1() may return less.
READ_CHUNK_BYTES = 8192


# ── Errors ───────────────────────────────────────────────────────────

class WaterFetchError(Exception):
    """Base class for everything that can go wrong while fetching water points."""

    status: Optional[int] = None


class UpstreamError(WaterFetchError):
    """The upstream could not be reached or the transfer broke off."""


class UpstreamTimeout(UpstreamError):
    """No complete response arrived within the wall-clock limit."""

    def __init__(self, url: str, timeout_s: float):
        super().__init__(f"Upstream did not respond within {timeout_s:g}s: {url}")
        self.url = url
        self.timeout_s = timeout_s


class UpstreamStatusError(UpstreamError):
    """The upstream answered with a non-2xx HTTP status."""

    def __init__(self, status: int, body_excerpt: str = "", url: Optional[str] = None):
        message = f"Upstream error: {status}"
        if body_excerpt:
            message += f" - {body_excerpt}"
        super().__init__(message)
        self.status = status
        self.body_excerpt = body_excerpt
        self.url = url


class ResponseParseError(WaterFetchError):
    """The response body was not well-formed XML."""


class NotSplittableError(WaterFetchError):
    """A box at the minimum span kept failing with a retryable error."""

    def __init__(self, bbox: "BoundingBox", cause: WaterFetchError):
        super().__init__(
            f"Box {bbox.overpass_bbox()} is already at the minimum span and still fails: {cause}"
        )
        self.bbox = bbox
        self.status = cause.status


# ── Data model ───────────────────────────────────────────────────────

@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned lat/lon rectangle in WGS84 degrees."""

    min_lat: float
    min_lon: float
    max_lat: float
    max_lon: float

    def __post_init__(self):
        values = (self.min_lat, self.min_lon, self.max_lat, self.max_lon)
        if not all(math.isfinite(v) for v in values):
            raise ValueError(f"Bounding box values must be finite: {values}")
        if self.min_lat > self.max_lat or self.min_lon > self.max_lon:
            raise ValueError(f"Bounding box min must not exceed max: {values}")

    @classmethod
    def parse(cls, bbox_str: str) -> "BoundingBox":
        """Parse 'min_lat,min_lon,max_lat,max_lon'."""
        parts = bbox_str.split(",")
        if len(parts) != 4:
            raise ValueError("Bbox must have 4 values: min_lat,min_lon,max_lat,max_lon")
        return cls(*(float(p) for p in parts))

    def span(self) -> Tuple[float, float]:
        """Return (lat_span, lon_span) in degrees."""
        return max(0.0, self.max_lat - self.min_lat), max(0.0, self.max_lon - self.min_lon)

    def split(self) -> List["BoundingBox"]:
        """Bisect both axes at their midpoints; quadrants come back SW, SE, NW, NE."""
        mid_lat = (self.min_lat + self.max_lat) / 2
        mid_lon = (self.min_lon + self.max_lon) / 2
        return [
            BoundingBox(self.min_lat, self.min_lon, mid_lat, mid_lon),
            BoundingBox(self.min_lat, mid_lon, mid_lat, self.max_lon),
            BoundingBox(mid_lat, self.min_lon, self.max_lat, mid_lon),
            BoundingBox(mid_lat, mid_lon, self.max_lat, self.max_lon),
        ]

    def overpass_bbox(self) -> str:
        # Overpass wants south,west,north,east
        return f"{self.min_lat},{self.min_lon},{self.max_lat},{self.max_lon}"

    def osm_api_bbox(self) -> str:
        # OSM API 0.6 wants left,bottom,right,top
        return f"{self.min_lon},{self.min_lat},{self.max_lon},{self.max_lat}"


@dataclass(frozen=True)
class WaterFeature:
    """One water point as returned by OSM.  Identity is (kind, id)."""

    id: int
    kind: str
    tags: Dict[str, str] = field(default_factory=dict)
    lat: Optional[float] = None
    lon: Optional[float] = None

    @property
    def key(self) -> Tuple[str, int]:
        return self.kind, self.id

    @property
    def position(self) -> Optional[Tuple[float, float]]:
        """(lat, lon), or None when OSM gave no usable location."""
        if self.lat is None or self.lon is None:
            return None
        return self.lat, self.lon

    @property
    def name(self) -> str:
        return self.tags.get("name") or self.tags.get("description") or "Water"

    @property
    def water_type(self) -> str:
        for key, value in WATER_TAGS:
            if self.tags.get(key) == value:
                return value
        return self.kind

    def to_dict(self) -> dict:
        return {"id": self.id, "type": self.kind, "lat": self.lat, "lon": self.lon,
                "tags": dict(self.tags)}


# ── Query building ───────────────────────────────────────────────────

def build_overpass_query(bbox: BoundingBox, timeout_s: int = config.OVERPASS_QUERY_TIMEOUT) -> str:
    """Build the Overpass QL query for every water point in bbox."""
    box = bbox.overpass_bbox()
    clauses = "\n".join(
        f'  {kind}["{key}"="{value}"]({box});'
        for kind in FEATURE_KINDS
        for key, value in WATER_TAGS
    )
    return f"""[out:xml][timeout:{timeout_s}];
(
{clauses}
);
out body center qt;
"""


def build_map_url(bbox: BoundingBox, base_url: str = config.OSM_API_URL) -> str:
    """Build the raw map-data URL for bbox (note the lon,lat order)."""
    return f"{base_url}?bbox={bbox.osm_api_bbox()}"


# ── Response parsing ─────────────────────────────────────────────────

def is_water(tags: Dict[str, str]) -> bool:
    return any(tags.get(key) == value for key, value in WATER_TAGS)


def _coords(elem) -> Tuple[Optional[float], Optional[float]]:
    """Read finite lat/lon attributes from elem, or (None, None)."""
    if elem is None:
        return None, None
    try:
        lat = float(elem.get("lat"))
        lon = float(elem.get("lon"))
    except (TypeError, ValueError):
        return None, None
    if not (math.isfinite(lat) and math.isfinite(lon)):
        return None, None
    return lat, lon


def parse_water_xml(xml_text: str) -> List[WaterFeature]:
    """Parse an OSM XML document into water features, in document order.

    Nodes without a usable lat/lon are dropped.  Ways and relations take
    their position from a nested <center> and are kept without one.
    """
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as e:
        raise ResponseParseError(f"Malformed XML response: {e}") from e

    features = []
    for elem in root:
        kind = elem.tag
        if kind not in FEATURE_KINDS:
            continue
        tags = {t.get("k"): t.get("v", "") for t in elem.findall("tag") if t.get("k")}
        if not is_water(tags):
            continue
        try:
            osm_id = int(elem.get("id"))
        except (TypeError, ValueError):
            logger.warning(f"Skipping {kind} with invalid id {elem.get('id')!r}")
            continue

        if kind == "node":
            lat, lon = _coords(elem)
            if lat is None:
                continue
        else:
            lat, lon = _coords(elem.find("center"))

        features.append(WaterFeature(id=osm_id, kind=kind, tags=tags, lat=lat, lon=lon))

    return features


def dedupe_features(features: List[WaterFeature]) -> List[WaterFeature]:
    """Drop repeated (kind, id) pairs, keeping the first occurrence."""
    seen = set()
    unique = []
    for feature in features:
        if feature.key in seen:
            continue
        seen.add(feature.key)
        unique.append(feature)
    return unique


# ── Fetching ─────────────────────────────────────────────────────────

class WaterPointFetcher:
    """Fetches water points for a bounding box, splitting it on upstream pushback."""

    def __init__(
        self,
        source: str = "overpass",
        min_span: float = config.MIN_SPAN,
        timeout_s: float = config.REQUEST_TIMEOUT,
        initial_backoff_s: float = config.INITIAL_BACKOFF,
        max_backoff_s: float = config.MAX_BACKOFF,
        overpass_url: str = config.OVERPASS_URL,
        osm_api_url: str = config.OSM_API_URL,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if source not in SOURCES:
            raise ValueError(f"source must be one of {SOURCES}, got {source!r}")
        if not min_span > 0:
            raise ValueError("min_span must be > 0")
        if timeout_s <= 0:
            raise ValueError("timeout_s must be > 0")
        if initial_backoff_s < 0 or max_backoff_s < 0:
            raise ValueError("backoff must be >= 0")

        self.source = source
        self.min_span = min_span
        self.timeout_s = timeout_s
        self.initial_backoff_s = initial_backoff_s
        self.max_backoff_s = max_backoff_s
        self.overpass_url = overpass_url
        self.osm_api_url = osm_api_url
        self.session = session if session is not None else requests.Session()
        self.sleep = sleep
        self.retryable_statuses = config.RETRYABLE_STATUSES

    # -- single request ------------------------------------------------

    def fetch_tile(self, bbox: BoundingBox) -> str:
        """Issue exactly one upstream request for bbox and return the raw body."""
        headers = {"User-Agent": config.USER_AGENT}
        deadline = time.monotonic() + self.timeout_s

        if self.source == "overpass":
            url = self.overpass_url
        else:
            url = build_map_url(bbox, self.osm_api_url)

        logger.debug(f"Requesting {url} for bbox {bbox.overpass_bbox()}")
        try:
            if self.source == "overpass":
                headers["Content-Type"] = FORM_CONTENT_TYPE
                body = urllib.parse.urlencode({"data": build_overpass_query(bbox)})
                response = self.session.post(url, data=body.encode("utf-8"), headers=headers,
                                             timeout=self.timeout_s, stream=True)
            else:
                response = self.session.get(url, headers=headers, timeout=self.timeout_s, stream=True)
        except requests.exceptions.Timeout as e:
            raise UpstreamTimeout(url, self.timeout_s) from e
        except requests.exceptions.RequestException as e:
            raise UpstreamError(f"Network error: {e}") from e

        try:
            text = self._read_body(response, url, deadline)
        finally:
            response.close()

        if not 200 <= response.status_code < 300:
            raise UpstreamStatusError(
                response.status_code, text[:config.BODY_EXCERPT_CHARS].strip(), url
            )
        return text

    def _read_body(self, response, url: str, deadline: float) -> str:
        """Read the streamed body, giving up once the wall-clock deadline passes.

        read1() returns after at most one socket read and the socket timeout
        is shrunk to the time left before every read, so a trickling or
        stalled upstream cannot hold the call past the deadline.
        """
        sock = _response_socket(response)
        chunks = []
        try:
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise UpstreamTimeout(url, self.timeout_s)
                if sock is not None:
                    sock.settimeout(remaining)
                chunk = response.raw.read1(READ_CHUNK_BYTES, decode_content=True)
                if not chunk:
                    break
                chunks.append(chunk)
        except (ReadTimeoutError, socket.timeout) as e:
            raise UpstreamTimeout(url, self.timeout_s) from e
        except requests.exceptions.RequestException as e:
            if _is_read_timeout(e):
                raise UpstreamTimeout(url, self.timeout_s) from e
            raise UpstreamError(f"Network error while reading response: {e}") from e
        except urllib3.exceptions.HTTPError as e:
            raise UpstreamError(f"Network error while reading response: {e}") from e
        return b"".join(chunks).decode(_response_encoding(response), errors="replace")

    # -- adaptive splitting --------------------------------------------

    def is_retryable(self, exc: WaterFetchError) -> bool:
        if isinstance(exc, UpstreamTimeout):
            return True
        return isinstance(exc, UpstreamStatusError) and exc.status in self.retryable_statuses

    def can_split(self, bbox: BoundingBox) -> bool:
        lat_span, lon_span = bbox.span()
        return lat_span > self.min_span or lon_span > self.min_span

    def backoff_for(self, attempt: int) -> float:
        return min(self.initial_backoff_s * (2 ** attempt), self.max_backoff_s)

    def resolve(self, bbox: BoundingBox, on_progress: Optional[Callable[[int], None]] = None) -> List[WaterFeature]:
        """Fetch every water point in bbox, splitting the box as needed.

        on_progress(tiles_fetched) is called once per successful leaf fetch.
        Any unrecoverable failure aborts the whole call.
        """
        logger.info(f"Resolving water points for bbox {bbox.overpass_bbox()} via {self.source}")
        tiles = itertools.count(1)
        features = self._resolve_tile(bbox, 0, tiles, on_progress)
        unique = dedupe_features(features)
        if len(unique) != len(features):
            logger.info(f"Dropped {len(features) - len(unique)} duplicate features from quadrant edges")
        logger.info(f"Resolved {len(unique)} water features")
        return unique

    def _resolve_tile(self, bbox, attempt, tiles, on_progress) -> List[WaterFeature]:
        try:
            xml_text = self.fetch_tile(bbox)
        except WaterFetchError as exc:
            if not self.is_retryable(exc):
                raise
            if not self.can_split(bbox):
                logger.error(f"Giving up on bbox {bbox.overpass_bbox()}: {exc}")
                raise NotSplittableError(bbox, exc) from exc

            backoff = self.backoff_for(attempt)
            logger.warning(
                f"{exc} for bbox {bbox.overpass_bbox()}; waiting {backoff:.2f}s "
                f"and splitting into quadrants (depth {attempt + 1})"
            )
            if backoff > 0:
                self.sleep(backoff)

            features = []
            for quadrant in bbox.split():
                features.extend(self._resolve_tile(quadrant, attempt + 1, tiles, on_progress))
            return features

        features = parse_water_xml(xml_text)
        fetched = next(tiles)
        logger.info(f"Tile {fetched}: {len(features)} water features in {bbox.overpass_bbox()}")
        if on_progress:
            on_progress(fetched)
        return features


def _response_socket(response):
    """Socket behind a streamed urllib3 response, or None once it is released."""
    connection = getattr(response.raw, "_connection", None)
    return getattr(connection, "sock", None)


def _is_read_timeout(exc: BaseException) -> bool:
    """requests wraps mid-body read timeouts in ConnectionError; look underneath."""
    seen = set()
    while exc is not None and id(exc) not in seen:
        seen.add(id(exc))
        if isinstance(exc, (ReadTimeoutError, socket.timeout, requests.exceptions.Timeout)):
            return True
        if any(isinstance(arg, (ReadTimeoutError, socket.timeout)) for arg in exc.args):
            return True
        exc = exc.__cause__ or exc.__context__
    return False


def _response_encoding(response) -> str:
    """Use the declared charset, else UTF-8 (requests assumes Latin-1 for text/*)."""
    content_type = response.headers.get("Content-Type", "") or ""
    if "charset=" in content_type.lower() and response.encoding:
        return response.encoding
    return "utf-8"


def resolve(bbox: BoundingBox, on_progress: Optional[Callable[[int], None]] = None, **options) -> List[WaterFeature]:
    """Fetch all water points in bbox; options are WaterPointFetcher arguments."""
    if options.get("session") is not None:
        return WaterPointFetcher(**options).resolve(bbox, on_progress)
    with requests.Session() as session:
        return WaterPointFetcher(session=session, **options).resolve(bbox, on_progress)
