"""
OpenStreetMap anchors and places via the Overpass API.

Includes:
- Rate limiting (per Overpass API guidelines), per instance
- SQLite caching to avoid redundant requests
- Retry with exponential backoff
- Classification of POIs into anchor types (mall, station, grocer, retail)
"""

import re
import time
import sqlite3
import json
import hashlib
import threading
from typing import Optional, Dict, List
import logging
import requests
from tenacity import retry, stop_after_attempt, wait_exponential, RetryError

from expansion.anchors import AnchorFeatureSource, AnchorFetch
from expansion.errors import AnchorFetchError
from expansion.geo import BoundingBox
from expansion.models import AnchorFeature, Settlement

log = logging.getLogger(__name__)

CACHE_EXPIRY_SECONDS = 30 * 24 * 60 * 60  # 30 days

MALL_SHOPS = {"mall", "department_store"}
GROCER_SHOPS = {"supermarket", "convenience", "greengrocer"}
STATION_RAILWAY = {"station", "halt"}


def classify_anchor(tags: Dict[str, str]) -> Optional[str]:
    """Map OSM tags to an anchor type, or None if the element is not an anchor."""
    shop = tags.get("shop")
    if shop in MALL_SHOPS:
        return "mall"
    if tags.get("railway") in STATION_RAILWAY or tags.get("amenity") == "bus_station":
        return "station"
    if tags.get("public_transport") == "station":
        return "station"
    if shop in GROCER_SHOPS:
        return "grocer"
    if shop:
        return "retail"
    return None


def parse_population(raw) -> Optional[int]:
    """OSM population tags look like '12345', '12 345' or '12,345'."""
    if raw is None:
        return None
    digits = re.sub(r"[\s,.']", "", str(raw))
    if not digits.isdigit():
        return None
    return int(digits)


class OverpassCache:
    """SQLite cache for Overpass API results."""

    def __init__(self, db_path: str = "overpass_cache.db"):
        self.db_path = db_path
        self._init_db()

    def _init_db(self):
        conn = sqlite3.connect(self.db_path)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS overpass_cache (
                query_hash TEXT PRIMARY KEY,
                result_json TEXT,
                created_at REAL
            )
        """)
        conn.execute("""
            DELETE FROM overpass_cache
            WHERE created_at < ?
        """, (time.time() - CACHE_EXPIRY_SECONDS,))
        conn.commit()
        conn.close()

    @staticmethod
    def _hash_query(query: str) -> str:
        return hashlib.md5(query.encode()).hexdigest()

    def get(self, query: str) -> Optional[Dict]:
        conn = sqlite3.connect(self.db_path)
        row = conn.execute(
            "SELECT result_json FROM overpass_cache WHERE query_hash = ?",
            (self._hash_query(query),)
        ).fetchone()
        conn.close()
        if row:
            return json.loads(row[0])
        return None

    def set(self, query: str, result: Dict):
        conn = sqlite3.connect(self.db_path)
        conn.execute(
            """INSERT OR REPLACE INTO overpass_cache
               (query_hash, result_json, created_at)
               VALUES (?, ?, ?)""",
            (self._hash_query(query), json.dumps(result), time.time())
        )
        conn.commit()
        conn.close()


class OverpassAnchorSource(AnchorFeatureSource):
    """
    Anchor feature source backed by the Overpass API.

    Cached responses are returned with live=False so the engine scores
    them with reduced anchor coverage.
    """

    OVERPASS_URL = "https://overpass-api.de/api/interpreter"

    def __init__(
        self,
        cache_path: str = "overpass_cache.db",
        timeout: int = 30,
        min_request_interval: float = 2.0,
    ):
        self.cache = OverpassCache(cache_path)
        self.timeout = timeout
        self.min_request_interval = min_request_interval
        self.session = requests.Session()
        self._rate_lock = threading.Lock()
        self._last_request_time = 0.0

    def _rate_limit(self):
        """Ensure we don't exceed rate limits."""
        with self._rate_lock:
            elapsed = time.time() - self._last_request_time
            if elapsed < self.min_request_interval:
                time.sleep(self.min_request_interval - elapsed)
            self._last_request_time = time.time()

    def _anchor_query(self, lat: float, lng: float, radius: int) -> str:
        around = f"around:{radius},{lat:.4f},{lng:.4f}"
        return f"""
        [out:json][timeout:{self.timeout}];
        (
          node["shop"]({around});
          way["shop"]({around});
          node["railway"~"^(station|halt)$"]({around});
          node["public_transport"="station"]({around});
          node["amenity"="bus_station"]({around});
        );
        out center;
        """

    def _places_query(self, bounds: BoundingBox) -> str:
        bbox = (f"{bounds.min_latitude},{bounds.min_longitude},"
                f"{bounds.max_latitude},{bounds.max_longitude}")
        return f"""
        [out:json][timeout:{self.timeout}];
        (
          node["place"~"^(city|town|village)$"]({bbox});
        );
        out body;
        """

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=2, min=2, max=15))
    def _make_request(self, query: str) -> Dict:
        """Make a rate-limited request with retry."""
        self._rate_limit()
        response = self.session.post(
            self.OVERPASS_URL,
            data={"data": query},
            timeout=self.timeout
        )
        response.raise_for_status()
        return response.json()

    def _query(self, query: str):
        """Return (data, live). Raises AnchorFetchError when nothing is available."""
        cached = self.cache.get(query)
        if cached is not None:
            log.debug("Cache hit for Overpass query")
            return cached, False
        try:
            data = self._make_request(query)
        except (requests.RequestException, RetryError, ValueError) as e:
            log.error(f"Overpass request failed: {e}")
            raise AnchorFetchError(str(e)) from e
        self.cache.set(query, data)
        return data, True

    def fetch(self, lat: float, lng: float, radius_m: float) -> AnchorFetch:
        data, live = self._query(self._anchor_query(lat, lng, int(radius_m)))

        features = []
        for el in data.get("elements", []):
            tags = el.get("tags", {})
            anchor_type = classify_anchor(tags)
            if anchor_type is None:
                continue
            el_lat = el.get("lat", el.get("center", {}).get("lat"))
            el_lng = el.get("lon", el.get("center", {}).get("lon"))
            if el_lat is None or el_lng is None:
                continue
            features.append(AnchorFeature(
                id=f"{el.get('type', 'node')}/{el.get('id')}",
                anchor_type=anchor_type,
                lat=el_lat,
                lng=el_lng,
            ))

        if live:
            log.info(f"Overpass fetched {len(features)} anchors at ({lat:.4f}, {lng:.4f})")
        return AnchorFetch(features=features, live=live)

    def fetch_settlements(self, bounds: BoundingBox, region: str) -> List[Settlement]:
        """
        Cities, towns and villages inside the bounds.

        The region comes from the place's state tags when present.
        """
        data, _ = self._query(self._places_query(bounds))

        settlements = []
        for el in data.get("elements", []):
            tags = el.get("tags", {})
            if "lat" not in el or "lon" not in el:
                continue
            settlements.append(Settlement(
                id=str(el.get("id")),
                name=tags.get("name", str(el.get("id"))),
                lat=el["lat"],
                lng=el["lon"],
                region=tags.get("is_in:state") or tags.get("addr:state") or region,
                settlement_type=tags.get("place", "town"),
                population=parse_population(tags.get("population")),
            ))
        log.info(f"Overpass returned {len(settlements)} settlements for {region}")
        return settlements


# Singleton
_source: Optional[OverpassAnchorSource] = None


def get_overpass_source() -> OverpassAnchorSource:
    """Get singleton Overpass source."""
    global _source
    if _source is None:
        _source = OverpassAnchorSource()
    return _source


def fetch_settlements(bounds: BoundingBox, region: str) -> List[Settlement]:
    return get_overpass_source().fetch_settlements(bounds, region)
