#!/usr/bin/env python3
"""
water_on_route.py — Find drinking water along a GPX route and export an enriched GPX.

Stages:
  1. Read    — parse track segments / routes out of the GPX file
  2. Fetch   — query OSM for water points in the route's bounding box,
               splitting the box whenever the upstream pushes back
  3. Filter  — optionally keep only points within --radius metres of the route
  4. Export  — write the original track plus one waypoint per water point

Usage:
    python3 water_on_route.py ride.gpx                    # -> ride.enriched.gpx
    python3 water_on_route.py ride.gpx --radius 150       # only points near the route
    python3 water_on_route.py ride.gpx --radius           # default radius (200 m)
    python3 water_on_route.py ride.gpx --source osm       # raw OSM map API instead of Overpass
    python3 water_on_route.py ride.gpx -o out.gpx --json water.geojson
"""

import argparse
import json
import logging
import os
import sys
from datetime import datetime

import config
from gpx_route import read_gpx, route_bbox, route_length_km, write_enriched_gpx
from osm_water import NotSplittableError, UpstreamTimeout, WaterFetchError, resolve
from route_proximity import filter_near

logger = logging.getLogger(__name__)


def configure_logging(verbose: bool = False, log_file: str | None = config.LOG_FILE) -> None:
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=handlers,
    )


def default_output_path(gpx_path: str) -> str:
    stem, _ = os.path.splitext(gpx_path)
    return stem + config.ENRICHED_SUFFIX


def describe_failure(exc: WaterFetchError) -> str:
    """User-facing message: 'try a smaller area' when shrinking the box could help."""
    if isinstance(exc, (NotSplittableError, UpstreamTimeout)) or exc.status in config.RETRYABLE_STATUSES:
        return (f"OpenStreetMap could not answer for this area ({exc}). "
                f"Try a smaller area or a larger --min-span, and try again later.")
    return f"Fetching water points failed: {exc}"


def features_to_geojson(features) -> dict:
    """GeoJSON FeatureCollection of the located water points."""
    return {
        'type': 'FeatureCollection',
        'timestamp': datetime.now().isoformat(),
        'features': [
            {
                'type': 'Feature',
                'geometry': {'type': 'Point', 'coordinates': [f.lon, f.lat]},
                'properties': {
                    'id': f.id,
                    'osm_type': f.kind,
                    'name': f.name,
                    'type': f.water_type,
                    'tags': dict(f.tags),
                },
            }
            for f in features
            if f.position is not None
        ],
    }


def parse_args(argv=None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        description="Add OpenStreetMap drinking-water points to a GPX route",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    p.add_argument("gpx", help="Input GPX file")
    p.add_argument("-o", "--output", help="Enriched GPX path (default: <input>.enriched.gpx)")
    p.add_argument("--radius", type=float, nargs="?", const=config.DEFAULT_RADIUS_M,
                   metavar="M",
                   help=f"Keep only points within M metres of the route "
                        f"(default when given without a value: {config.DEFAULT_RADIUS_M:g})")
    p.add_argument("--source", choices=("overpass", "osm"), default="overpass",
                   help="Upstream: Overpass query API (default) or raw OSM map API")
    p.add_argument("--min-span", type=float, default=config.MIN_SPAN, metavar="DEG",
                   help=f"Smallest box edge in degrees that is still split (default {config.MIN_SPAN})")
    p.add_argument("--timeout", type=float, default=config.REQUEST_TIMEOUT, metavar="S",
                   help=f"Per-request timeout in seconds (default {config.REQUEST_TIMEOUT:g})")
    p.add_argument("--json", metavar="FILE", help="Also write the water points as GeoJSON")
    p.add_argument("--log-file", default=config.LOG_FILE,
                   help=f"Log file (default {config.LOG_FILE}; empty string disables)")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return p.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    configure_logging(args.verbose, args.log_file or None)

    # Stage 1: read
    try:
        route = read_gpx(args.gpx)
    except (OSError, ValueError) as e:
        logger.error(f"Could not read {args.gpx}: {e}")
        return 1

    bbox = route_bbox(route.lines)
    logger.info(f"Route {route.name or args.gpx!r}: {route_length_km(route.lines):.2f} km, "
                f"bbox {bbox.overpass_bbox()}")

    # Stage 2: fetch
    try:
        features = resolve(
            bbox,
            on_progress=lambda n: logger.info(f"Fetched {n} tile(s)"),
            source=args.source,
            min_span=args.min_span,
            timeout_s=args.timeout,
        )
    except WaterFetchError as e:
        logger.error(describe_failure(e))
        return 1
    except ValueError as e:
        logger.error(f"Invalid options: {e}")
        return 1
    logger.info(f"Found {len(features)} water points")

    # Stage 3: filter
    if args.radius is not None:
        try:
            features = filter_near(route.lines, features, args.radius)
        except ValueError as e:
            logger.error(str(e))
            return 1
        logger.info(f"{len(features)} water points within {args.radius:g} m of the route")

    # Stage 4: export
    output = args.output or default_output_path(args.gpx)
    try:
        write_enriched_gpx(route, features, output)
        if args.json:
            with open(args.json, 'w') as f:
                json.dump(features_to_geojson(features), f, indent=2)
            logger.info(f"GeoJSON saved to {args.json}")
    except OSError as e:
        logger.error(f"Error saving output: {e}")
        return 1

    logger.info("Pipeline completed successfully")
    return 0


if __name__ == '__main__':
    sys.exit(main())
