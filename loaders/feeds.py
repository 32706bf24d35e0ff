"""
File-based data feeds.

Region inputs come as a single JSON document:

    {
      "region": "Germany",
      "data_as_of": "2024-10-01",
      "bounds": {"min_latitude": ..., ...},
      "settlements": [{"id": ..., "name": ..., "lat": ..., "lng": ..., ...}],
      "stores": [{"id": ..., "lat": ..., "lng": ..., "annual_turnover": ...}],
      "region_populations": [{"region": ..., "population": ..., "estimated": false}],
      "anchors": [{"id": ..., "anchor_type": "mall", "lat": ..., "lng": ...}]
    }

Store lists exported from the store database can also be read from CSV.
"""

import json
import logging
from pathlib import Path
from typing import List, Union

import pandas as pd

from expansion.geo import is_valid_coordinate
from expansion.models import AnchorFeature, RegionInputs, Store

log = logging.getLogger(__name__)

STORE_COLUMNS = ["id", "lat", "lng"]


def load_region_inputs(path: Union[str, Path]) -> RegionInputs:
    """Read a region feed JSON file."""
    with open(path, "r") as f:
        data = json.load(f)
    inputs = RegionInputs.from_dict(data)
    log.info(
        f"Loaded {inputs.region}: {len(inputs.settlements)} settlements, "
        f"{len(inputs.stores)} stores from {path}"
    )
    return inputs


def load_anchor_features(path: Union[str, Path]) -> List[AnchorFeature]:
    """Read the 'anchors' list of a region feed JSON file (empty if absent)."""
    with open(path, "r") as f:
        data = json.load(f)
    return [
        AnchorFeature(
            id=str(a["id"]),
            anchor_type=a["anchor_type"],
            lat=a["lat"],
            lng=a["lng"],
            estimated=bool(a.get("estimated", False)),
        )
        for a in data.get("anchors", [])
    ]


def load_stores_csv(path: Union[str, Path]) -> List[Store]:
    """
    Read stores from CSV with columns id, lat, lng and optional annual_turnover.

    Rows with invalid coordinates are dropped with a warning.
    """
    df = pd.read_csv(path)
    missing = [c for c in STORE_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"Store CSV {path} is missing columns: {missing}")

    if "annual_turnover" not in df.columns:
        df["annual_turnover"] = None
    df["annual_turnover"] = pd.to_numeric(df["annual_turnover"], errors="coerce")

    stores = []
    for row in df.itertuples(index=False):
        if not is_valid_coordinate(row.lat, row.lng):
            log.warning(f"Skipping store {row.id!r} with invalid coordinates")
            continue
        turnover = None if pd.isna(row.annual_turnover) else float(row.annual_turnover)
        stores.append(Store(id=str(row.id), lat=float(row.lat), lng=float(row.lng),
                            annual_turnover=turnover))

    log.info(f"Loaded {len(stores)} stores from {path}")
    return stores
