"""
gpx_route.py — Read route geometry out of a GPX file and write it back enriched
with water waypoints.
"""

import copy
import logging
import math
import os
from dataclasses import dataclass, field
from typing import List, Optional, Tuple
from xml.etree import ElementTree as ET

from shapely.geometry import MultiPoint

import config
from osm_water import BoundingBox

logger = logging.getLogger(__name__)

GPX_11_NS = "http://www.topografix.com/GPX/1/1"
GPX_10_NS = "http://www.topografix.com/GPX/1/0"

Polyline = List[Tuple[float, float]]  # (lon, lat)


@dataclass
class GpxRoute:
    """Parsed GPX: the source root plus one (lon, lat) polyline per segment."""

    root: ET.Element
    lines: List[Polyline]
    name: Optional[str] = None
    namespace: str = ""
    point_count: int = field(init=False)

    def __post_init__(self):
        self.point_count = sum(len(line) for line in self.lines)


def _ns(root: ET.Element) -> str:
    if root.tag.startswith("{"):
        return root.tag[1:].split("}", 1)[0]
    return ""


def _q(ns: str, name: str) -> str:
    return f"{{{ns}}}{name}" if ns else name


def _points(parent: ET.Element, ns: str, tag: str) -> Polyline:
    line = []
    for pt in parent.findall(_q(ns, tag)):
        try:
            lat = float(pt.get("lat"))
            lon = float(pt.get("lon"))
        except (TypeError, ValueError):
            continue
        if math.isfinite(lat) and math.isfinite(lon):
            line.append((lon, lat))
    return line


def parse_gpx(gpx_text: str) -> GpxRoute:
    """Extract polylines from every <trkseg> and <rte> in a GPX document."""
    try:
        root = ET.fromstring(gpx_text)
    except ET.ParseError as e:
        raise ValueError(f"Invalid GPX: {e}") from e

    ns = _ns(root)
    if root.tag != _q(ns, "gpx"):
        raise ValueError(f"Not a GPX document (root element {root.tag!r})")

    lines = []
    for trkseg in root.iter(_q(ns, "trkseg")):
        lines.append(_points(trkseg, ns, "trkpt"))
    for rte in root.iter(_q(ns, "rte")):
        lines.append(_points(rte, ns, "rtept"))
    lines = [line for line in lines if line]
    if not lines:
        raise ValueError("No track or route points found in GPX")

    name = None
    for path in ("metadata/name", "trk/name", "rte/name", "name"):
        elem = root.find("/".join(_q(ns, part) for part in path.split("/")))
        if elem is not None and elem.text:
            name = elem.text.strip()
            break

    return GpxRoute(root=root, lines=lines, name=name, namespace=ns)


def read_gpx(path: str) -> GpxRoute:
    """Read and parse a GPX file from disk."""
    with open(path, "rb") as f:
        data = f.read()
    route = parse_gpx(data.decode("utf-8-sig"))
    logger.info(f"Read {len(route.lines)} line(s), {route.point_count} points from {path}")
    return route


def route_bbox(lines: List[Polyline]) -> BoundingBox:
    """Bounding box over all route vertices."""
    min_lon, min_lat, max_lon, max_lat = MultiPoint(
        [pt for line in lines for pt in line]
    ).bounds
    return BoundingBox(min_lat, min_lon, max_lat, max_lon)


def _haversine_km(lat1, lon1, lat2, lon2):
    """Return the great-circle distance in km between two points."""
    R = 6371.0
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = (math.sin(dlat / 2) ** 2 +
         math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) *
         math.sin(dlon / 2) ** 2)
    return R * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def route_length_km(lines: List[Polyline]) -> float:
    return sum(
        _haversine_km(line[i][1], line[i][0], line[i + 1][1], line[i + 1][0])
        for line in lines
        for i in range(len(line) - 1)
    )


# ── Writing ──────────────────────────────────────────────────────────

def _retag(elem: ET.Element, src_ns: str) -> ET.Element:
    """Deep-copy elem, moving it from src_ns into the GPX 1.1 namespace."""
    clone = copy.deepcopy(elem)
    if src_ns == GPX_11_NS:
        return clone
    prefix = f"{{{src_ns}}}" if src_ns else ""
    for node in clone.iter():
        if not isinstance(node.tag, str):
            continue
        if prefix and node.tag.startswith(prefix):
            node.tag = _q(GPX_11_NS, node.tag[len(prefix):])
        elif not prefix and not node.tag.startswith("{"):
            node.tag = _q(GPX_11_NS, node.tag)
    return clone


def _waypoint(feature) -> ET.Element:
    lat, lon = feature.position
    wpt = ET.Element(_q(GPX_11_NS, "wpt"), {"lat": repr(lat), "lon": repr(lon)})
    ET.SubElement(wpt, _q(GPX_11_NS, "name")).text = feature.name
    ET.SubElement(wpt, _q(GPX_11_NS, "desc")).text = f"OSM {feature.kind} {feature.id}"
    ET.SubElement(wpt, _q(GPX_11_NS, "type")).text = feature.water_type
    return wpt


def build_enriched_gpx(route: GpxRoute, features, creator: str = config.GPX_CREATOR) -> ET.ElementTree:
    """Original routes and tracks plus one waypoint per located feature."""
    ET.register_namespace("", GPX_11_NS)
    root = ET.Element(_q(GPX_11_NS, "gpx"), {"version": "1.1", "creator": creator})
    if route.name:
        metadata = ET.SubElement(root, _q(GPX_11_NS, "metadata"))
        ET.SubElement(metadata, _q(GPX_11_NS, "name")).text = route.name

    skipped = 0
    for feature in features:
        if feature.position is None:
            skipped += 1
            continue
        root.append(_waypoint(feature))
    if skipped:
        logger.warning(f"{skipped} water features have no location and were not exported")

    # GPX 1.1 schema order: wpt, rte, trk
    for tag in ("rte", "trk"):
        for elem in route.root.findall(_q(route.namespace, tag)):
            root.append(_retag(elem, route.namespace))

    tree = ET.ElementTree(root)
    ET.indent(tree, space="  ")
    return tree


def write_enriched_gpx(route: GpxRoute, features, output_file: str, creator: str = config.GPX_CREATOR) -> str:
    tree = build_enriched_gpx(route, features, creator)
    out_dir = os.path.dirname(output_file)
    if out_dir:
        os.makedirs(out_dir, exist_ok=True)
    tree.write(output_file, encoding="utf-8", xml_declaration=True)
    logger.info(f"Enriched GPX saved to {output_file}")
    return output_file
