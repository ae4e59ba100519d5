"""Tests for water_on_route.py"""

import json
from unittest.mock import patch
from xml.etree import ElementTree as ET

import pytest

from gpx_route import GPX_11_NS
from osm_water import (
    BoundingBox,
    NotSplittableError,
    UpstreamStatusError,
    UpstreamTimeout,
    WaterFeature,
)
from water_on_route import default_output_path, describe_failure, features_to_geojson, main

ROUTE_GPX = """\
<?xml version="1.0" encoding="UTF-8"?>
<gpx version="1.1" creator="test" xmlns="http://www.topografix.com/GPX/1/1">
  <trk><trkseg>
    <trkpt lat="0.0" lon="0.0"/>
    <trkpt lat="1.0" lon="0.0"/>
  </trkseg></trk>
</gpx>
"""

NEAR = WaterFeature(id=1, kind="node", lat=0.5, lon=0.0005, tags={"amenity": "drinking_water"})
FAR = WaterFeature(id=2, kind="node", lat=0.5, lon=0.5, tags={"natural": "spring"})
UNLOCATED = WaterFeature(id=3, kind="way", tags={"man_made": "water_tap"})


@pytest.fixture
def gpx_file(tmp_path):
    path = tmp_path / "ride.gpx"
    path.write_text(ROUTE_GPX, encoding="utf-8")
    return path


def _waypoint_ids(path):
    root = ET.parse(path).getroot()
    return [w.find(f"{{{GPX_11_NS}}}desc").text for w in root.findall(f"{{{GPX_11_NS}}}wpt")]


class TestMain:
    @patch("water_on_route.resolve")
    def test_writes_enriched_gpx(self, mock_resolve, gpx_file):
        mock_resolve.return_value = [NEAR, FAR, UNLOCATED]

        assert main([str(gpx_file), "--log-file", ""]) == 0

        output = gpx_file.with_name("ride.enriched.gpx")
        assert _waypoint_ids(output) == ["OSM node 1", "OSM node 2"]
        bbox = mock_resolve.call_args.args[0]
        assert bbox == BoundingBox(0.0, 0.0, 1.0, 0.0)
        assert mock_resolve.call_args.kwargs["source"] == "overpass"

    @patch("water_on_route.resolve")
    def test_radius_filter(self, mock_resolve, gpx_file, tmp_path):
        mock_resolve.return_value = [NEAR, FAR, UNLOCATED]
        output = tmp_path / "out" / "near.gpx"

        assert main([str(gpx_file), "-o", str(output), "--radius", "100", "--log-file", ""]) == 0
        assert _waypoint_ids(output) == ["OSM node 1"]

    @patch("water_on_route.resolve")
    def test_options_are_passed_through(self, mock_resolve, gpx_file):
        mock_resolve.return_value = []

        main([str(gpx_file), "--source", "osm", "--min-span", "0.05", "--timeout", "10",
              "--log-file", ""])

        kwargs = mock_resolve.call_args.kwargs
        assert kwargs["source"] == "osm"
        assert kwargs["min_span"] == 0.05
        assert kwargs["timeout_s"] == 10.0

    @patch("water_on_route.resolve")
    def test_json_export(self, mock_resolve, gpx_file, tmp_path):
        mock_resolve.return_value = [NEAR, UNLOCATED]
        json_path = tmp_path / "water.geojson"

        assert main([str(gpx_file), "--json", str(json_path), "--log-file", ""]) == 0
        data = json.loads(json_path.read_text())
        assert data["type"] == "FeatureCollection"
        assert len(data["features"]) == 1

    @patch("water_on_route.resolve")
    def test_fetch_failure_exits_nonzero(self, mock_resolve, gpx_file):
        mock_resolve.side_effect = UpstreamStatusError(500, "boom")

        assert main([str(gpx_file), "--log-file", ""]) == 1
        assert not gpx_file.with_name("ride.enriched.gpx").exists()

    def test_missing_input(self, tmp_path):
        assert main([str(tmp_path / "missing.gpx"), "--log-file", ""]) == 1


class TestHelpers:
    def test_default_output_path(self):
        assert default_output_path("rides/loop.gpx") == "rides/loop.enriched.gpx"

    def test_smaller_area_hint_for_retryable_failures(self):
        cause = UpstreamStatusError(429)
        exc = NotSplittableError(BoundingBox(0, 0, 0.01, 0.01), cause)
        assert "smaller area" in describe_failure(exc)
        assert "smaller area" in describe_failure(UpstreamStatusError(504))
        assert "smaller area" in describe_failure(UpstreamTimeout("https://x", 5))

    def test_generic_message_for_other_failures(self):
        message = describe_failure(UpstreamStatusError(500, "Internal Server Error"))
        assert "smaller area" not in message
        assert "500" in message

    def test_geojson_is_lon_lat(self):
        data = features_to_geojson([NEAR])
        feature = data["features"][0]
        assert feature["geometry"]["coordinates"] == [0.0005, 0.5]
        assert feature["properties"]["type"] == "drinking_water"
        assert feature["properties"]["osm_type"] == "node"
