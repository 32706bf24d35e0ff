"""
Data loaders for the expansion engine.

Includes:
- Anchors and places (OpenStreetMap Overpass)
- Region feeds (JSON) and store lists (CSV)
- Static in-memory anchor source for offline runs
"""

from loaders.osm import OverpassAnchorSource, get_overpass_source, fetch_settlements
from loaders.feeds import load_region_inputs, load_anchor_features, load_stores_csv
from loaders.static import StaticAnchorSource

__all__ = [
    "OverpassAnchorSource",
    "get_overpass_source",
    "fetch_settlements",
    "load_region_inputs",
    "load_anchor_features",
    "load_stores_csv",
    "StaticAnchorSource",
]
