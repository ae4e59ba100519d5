# config.py — water-on-route pipeline configuration
# Edit this file to change upstream endpoints, split/backoff tuning, radius, etc.

import os

# ── Upstreams ────────────────────────────────────────────────────────
# Overpass interpreter used for the query-language POST.  Point this at a
# local proxy or a mirror with the OVERPASS_URL environment variable.
OVERPASS_URL = os.environ.get("OVERPASS_URL", "https://overpass-api.de/api/interpreter")

# Raw map-data endpoint (OSM API 0.6).  Only used with --source osm.
OSM_API_URL = os.environ.get("OSM_API_URL", "https://api.openstreetmap.org/api/0.6/map")

# Server-side timeout written into the Overpass query header ([timeout:N]).
OVERPASS_QUERY_TIMEOUT = 25

# Client-side wall-clock limit (seconds) for a single leaf fetch, body
# included.  Running past it (or a stalled body) is a retryable timeout.
REQUEST_TIMEOUT = 30.0

USER_AGENT = "water-on-route/1.0 (+https://wiki.openstreetmap.org/wiki/Overpass_API)"

# ── Adaptive splitting ───────────────────────────────────────────────
# Smallest box edge (degrees, ~2 km) below which a failing box is not split.
MIN_SPAN = 0.02

# Backoff before retrying a split branch: INITIAL_BACKOFF * 2**attempt,
# capped at MAX_BACKOFF (seconds).
INITIAL_BACKOFF = 0.5
MAX_BACKOFF = 4.0

# HTTP statuses that mean "box too big or too busy" and are retried by
# splitting.  502/503 are deliberately left out.
RETRYABLE_STATUSES = frozenset({400, 429, 504})

# Characters of an error response body kept for diagnostics.
BODY_EXCERPT_CHARS = 200

# ── Proximity ────────────────────────────────────────────────────────
# Spherical Web-Mercator radius (metres).
EARTH_RADIUS_M = 6378137.0

# Default "near the route" radius (metres) when --radius is given without
# a value.
DEFAULT_RADIUS_M = 200.0

# ── Output ───────────────────────────────────────────────────────────
GPX_CREATOR = "GPX Water Mapper"
ENRICHED_SUFFIX = ".enriched.gpx"
LOG_FILE = "water_on_route.log"
