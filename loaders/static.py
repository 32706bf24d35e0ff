"""
In-memory anchor source for offline runs.
"""

from typing import Iterable

import numpy as np

from expansion.anchors import AnchorFeatureSource, AnchorFetch
from expansion.geo import haversine_many
from expansion.models import AnchorFeature


class StaticAnchorSource(AnchorFeatureSource):
    """
    Serves a fixed list of anchors, filtered to the query radius.

    `live` marks whether the list is a fresh export (True) or a stale
    snapshot (False).
    """

    def __init__(self, features: Iterable[AnchorFeature], live: bool = True):
        self.features = list(features)
        self.live = live
        self._lats = np.array([f.lat for f in self.features], dtype=float)
        self._lngs = np.array([f.lng for f in self.features], dtype=float)

    def fetch(self, lat: float, lng: float, radius_m: float) -> AnchorFetch:
        if not self.features:
            return AnchorFetch(features=[], live=self.live)
        distances = haversine_many(lat, lng, self._lats, self._lngs)
        # NaN distances (malformed anchors) are passed through for the aggregator to drop
        keep = (distances <= radius_m) | np.isnan(distances)
        return AnchorFetch(
            features=[f for f, k in zip(self.features, keep) if k],
            live=self.live,
        )
