"""
Anchor Aggregation

Turns the raw points of interest around a candidate into a single anchor
score:
- Malformed features are dropped
- Same-type features closer than the type's merge radius collapse into one
  cluster (single linkage, so merging is transitive)
- Clusters are ranked by distance and rank r contributes 1/sqrt(r), up to a
  per-site cap, so a dense block of shops cannot win on count alone
"""

import math
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Tuple

from expansion.config import EngineConfig
from expansion.geo import haversine_m, is_valid_coordinate
from expansion.models import AnchorCluster, AnchorFeature, AnchorResult

log = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# FEATURE SOURCE INTERFACE
# ═══════════════════════════════════════════════════════════════════════════
@dataclass
class AnchorFetch:
    """Features returned by a source, and whether they came from a live fetch."""
    features: List[AnchorFeature] = field(default_factory=list)
    live: bool = True


class AnchorFeatureSource:
    """
    Supplies raw anchors around a point.

    Implementations may block or be rate limited; they raise
    AnchorFetchError (or any loader error) when nothing could be fetched.
    """

    def fetch(self, lat: float, lng: float, radius_m: float) -> AnchorFetch:
        raise NotImplementedError


def diminishing_score(count: int, cap: int, diminishing: bool = True) -> float:
    """Score of `count` ranked anchors: sum of 1/sqrt(r) for r up to the cap."""
    n = min(count, cap)
    if not diminishing:
        return float(n)
    return sum(1.0 / math.sqrt(r) for r in range(1, n + 1))


class AnchorAggregator:
    """
    Deduplicates and scores anchors for one candidate at a time.

    Holds only read-only configuration, so one instance can be shared by
    every scoring thread in a batch.
    """

    def __init__(self, config: EngineConfig):
        self.config = config
        self.max_score = diminishing_score(
            config.max_anchors_per_site,
            config.max_anchors_per_site,
            config.diminishing_returns,
        )

    def aggregate(self, lat: float, lng: float, features: Iterable[AnchorFeature]) -> AnchorResult:
        """
        Score the anchors around (lat, lng).

        Returns an AnchorResult; zero anchors is a valid result with score 0.
        """
        valid, dropped = self._drop_malformed(features)

        by_type: Dict[str, List[AnchorFeature]] = defaultdict(list)
        for feature in valid:
            by_type[feature.anchor_type].append(feature)

        clusters: List[AnchorCluster] = []
        merged: Dict[str, int] = {}
        for anchor_type in sorted(by_type):
            type_clusters = self._merge_type(anchor_type, by_type[anchor_type], lat, lng)
            merged[anchor_type] = len(by_type[anchor_type]) - len(type_clusters)
            clusters.extend(type_clusters)

        clusters.sort(key=lambda c: (c.distance_m, c.anchor_type, c.member_ids[0]))
        for rank, cluster in enumerate(clusters, start=1):
            cluster.rank = rank

        cap = self.config.max_anchors_per_site
        score = diminishing_score(len(clusters), cap, self.config.diminishing_returns)
        normalized = score / self.max_score if self.max_score > 0 else 0.0

        return AnchorResult(
            score=score,
            normalized=min(1.0, normalized),
            raw_count=len(valid),
            deduplicated_count=len(clusters),
            capped_count=max(0, len(clusters) - cap),
            merged=merged,
            clusters=clusters,
            dropped=dropped,
            diminishing_applied=self.config.diminishing_returns,
        )

    def _drop_malformed(self, features: Iterable[AnchorFeature]) -> Tuple[List[AnchorFeature], int]:
        valid = []
        dropped = 0
        for feature in features:
            if is_valid_coordinate(feature.lat, feature.lng) and feature.anchor_type:
                valid.append(feature)
            else:
                dropped += 1
                log.warning(f"Dropping malformed anchor {feature.id!r} at ({feature.lat}, {feature.lng})")
        return valid, dropped

    def _merge_type(
        self,
        anchor_type: str,
        features: List[AnchorFeature],
        lat: float,
        lng: float,
    ) -> List[AnchorCluster]:
        """Single-linkage merge of same-type anchors within the type's radius."""
        radius = self.config.merge_radius_for(anchor_type)
        features = sorted(features, key=lambda f: f.id)
        parent = list(range(len(features)))

        def find(i):
            while parent[i] != i:
                parent[i] = parent[parent[i]]
                i = parent[i]
            return i

        for i in range(len(features)):
            for j in range(i + 1, len(features)):
                a, b = features[i], features[j]
                if haversine_m(a.lat, a.lng, b.lat, b.lng) < radius:
                    root_i, root_j = find(i), find(j)
                    if root_i != root_j:
                        parent[max(root_i, root_j)] = min(root_i, root_j)

        groups: Dict[int, List[AnchorFeature]] = defaultdict(list)
        for i, feature in enumerate(features):
            groups[find(i)].append(feature)

        clusters = []
        for members in groups.values():
            c_lat = sum(m.lat for m in members) / len(members)
            c_lng = sum(m.lng for m in members) / len(members)
            clusters.append(AnchorCluster(
                anchor_type=anchor_type,
                lat=c_lat,
                lng=c_lng,
                member_ids=sorted(m.id for m in members),
                distance_m=haversine_m(lat, lng, c_lat, c_lng),
            ))
        return clusters
