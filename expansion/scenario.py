"""
Scenario Persistence - append-only SQLite store of generation runs.

A scenario id is a hash of everything that determines a run's output
(region, seed, weights, mix ratio, population floor, pinned snapshot date
and data versions), so replaying the same request maps to the same record.
Saving an id that already exists returns the stored record untouched.
"""

import io
import json
import sqlite3
import hashlib
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence
import logging

import pandas as pd

from expansion.errors import ScenarioNotFoundError
from expansion.models import ScenarioRecord, WeightVector

log = logging.getLogger(__name__)

# Thresholds for flagging a comparison as significant
ACCEPTANCE_RATE_DELTA_POINTS = 5.0
AVG_CONFIDENCE_DELTA = 0.1


def scenario_id(
    region: str,
    seed: int,
    weights: WeightVector,
    mix_ratio: float,
    population_floor: int,
    snapshot_date: str,
    data_versions: Dict[str, str],
) -> str:
    """Deterministic identifier for a set of run inputs."""
    payload = {
        "region": region,
        "seed": int(seed),
        "weights": {k: round(v, 9) for k, v in weights.to_dict().items()},
        "mix_ratio": round(float(mix_ratio), 9),
        "population_floor": int(population_floor),
        "snapshot_date": snapshot_date,
        "data_versions": dict(sorted(data_versions.items())),
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return "scenario_" + hashlib.sha256(canonical.encode()).hexdigest()[:16]


def flatten(records: Sequence[ScenarioRecord]) -> pd.DataFrame:
    """One row per scenario with nested fields flattened to dotted columns."""
    rows = [
        {
            "id": r.id,
            "name": r.name,
            "created_at": r.created_at,
            "parameters": r.parameters,
            "data_versions": r.data_versions,
            "results": r.results,
        }
        for r in records
    ]
    return pd.json_normalize(rows)


class ScenarioStore:
    """
    SQLite-backed, append-only scenario store.

    Usage:
        store = ScenarioStore("scenarios.db")
        record = store.save(record)
        same = store.load(record.id)
        diff = store.compare(a.id, b.id)
    """

    DEFAULT_DB_PATH = "scenarios.db"

    def __init__(self, db_path: str = None):
        self.db_path = db_path or self.DEFAULT_DB_PATH
        self._lock = threading.RLock()
        # Single shared connection so ":memory:" databases work across calls
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._init_db()

    @contextmanager
    def _transaction(self):
        """Context manager for transaction handling with error recovery."""
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except sqlite3.Error as e:
                self._conn.rollback()
                log.error(f"SQLite transaction failed: {e}")
                raise

    def _init_db(self) -> None:
        with self._transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS scenarios (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    region TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    parameters_json TEXT NOT NULL,
                    data_versions_json TEXT NOT NULL,
                    results_json TEXT NOT NULL,
                    profile_json TEXT NOT NULL DEFAULT '[]'
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_scenarios_created
                ON scenarios(created_at DESC)
            """)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ───────────────────────────────────────────────────────────────────────
    # Records
    # ───────────────────────────────────────────────────────────────────────
    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> ScenarioRecord:
        return ScenarioRecord(
            id=row["id"],
            name=row["name"],
            created_at=row["created_at"],
            parameters=json.loads(row["parameters_json"]),
            data_versions=json.loads(row["data_versions_json"]),
            results=json.loads(row["results_json"]),
            profile=json.loads(row["profile_json"]),
        )

    def save(self, record: ScenarioRecord) -> ScenarioRecord:
        """
        Store a record unless its id already exists.

        Returns the stored record, which is the existing one on a repeat save.
        """
        with self._transaction() as conn:
            cursor = conn.execute("""
                INSERT OR IGNORE INTO scenarios (
                    id, name, region, created_at, parameters_json,
                    data_versions_json, results_json, profile_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.id,
                record.name,
                record.parameters.get("region", ""),
                record.created_at,
                json.dumps(record.parameters, sort_keys=True),
                json.dumps(record.data_versions, sort_keys=True),
                json.dumps(record.results, sort_keys=True),
                json.dumps(record.profile),
            ))
            inserted = cursor.rowcount == 1

        if inserted:
            log.info(f"Saved scenario {record.id} ({record.name})")
        else:
            log.info(f"Scenario {record.id} already stored; returning existing record")
        return self.load(record.id)

    def get(self, scenario_id: str) -> Optional[ScenarioRecord]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM scenarios WHERE id = ?", (scenario_id,)
            ).fetchone()
        return self._row_to_record(row) if row else None

    def load(self, scenario_id: str) -> ScenarioRecord:
        record = self.get(scenario_id)
        if record is None:
            raise ScenarioNotFoundError(scenario_id)
        return record

    def list_scenarios(self, region: Optional[str] = None, limit: int = 50) -> List[ScenarioRecord]:
        """Most recent first."""
        query = "SELECT * FROM scenarios"
        args: List[Any] = []
        if region:
            query += " WHERE region = ?"
            args.append(region)
        query += " ORDER BY created_at DESC, id ASC LIMIT ?"
        args.append(limit)
        with self._lock:
            rows = self._conn.execute(query, args).fetchall()
        return [self._row_to_record(r) for r in rows]

    def count(self) -> int:
        with self._lock:
            return self._conn.execute("SELECT COUNT(*) FROM scenarios").fetchone()[0]

    # ───────────────────────────────────────────────────────────────────────
    # Comparison & export
    # ───────────────────────────────────────────────────────────────────────
    def compare(self, first_id: str, second_id: str) -> Dict[str, Any]:
        """Parameter and result differences between two scenarios."""
        a = self.load(first_id)
        b = self.load(second_id)

        flat_a = flatten([a]).iloc[0].to_dict()
        flat_b = flatten([b]).iloc[0].to_dict()

        parameter_diffs = {}
        for key in sorted(set(flat_a) | set(flat_b)):
            if not key.startswith(("parameters.", "data_versions.")):
                continue
            va, vb = flat_a.get(key), flat_b.get(key)
            if va != vb:
                parameter_diffs[key] = {"first": va, "second": vb}

        result_diffs = {}
        for key in sorted(set(a.results) | set(b.results)):
            va, vb = a.results.get(key), b.results.get(key)
            if isinstance(va, (int, float)) and isinstance(vb, (int, float)) and not isinstance(va, bool):
                result_diffs[key] = {"first": va, "second": vb, "delta": vb - va}
            elif va != vb:
                result_diffs[key] = {"first": va, "second": vb}

        significant = []
        rate_delta = result_diffs.get("acceptance_rate", {}).get("delta", 0.0)
        if abs(rate_delta) > ACCEPTANCE_RATE_DELTA_POINTS:
            significant.append(f"acceptance rate changed by {rate_delta:+.1f} points")
        conf_delta = result_diffs.get("avg_confidence", {}).get("delta", 0.0)
        if abs(conf_delta) > AVG_CONFIDENCE_DELTA:
            significant.append(f"average confidence changed by {conf_delta:+.3f}")

        return {
            "first": a.id,
            "second": b.id,
            "parameter_diffs": parameter_diffs,
            "result_diffs": result_diffs,
            "significant_changes": significant,
        }

    def export(self, scenario_id: str, fmt: str = "json") -> str:
        """Export one scenario as JSON or as Parameter,Value CSV rows."""
        record = self.load(scenario_id)
        if fmt == "json":
            return json.dumps(record.to_dict(), indent=2, sort_keys=True)
        if fmt == "csv":
            flat = flatten([record]).iloc[0]
            frame = pd.DataFrame({"Parameter": flat.index, "Value": flat.values})
            buffer = io.StringIO()
            frame.to_csv(buffer, index=False)
            return buffer.getvalue()
        raise ValueError(f"Unsupported export format: {fmt}")

    def to_frame(self, region: Optional[str] = None) -> pd.DataFrame:
        """All stored scenarios as a flat DataFrame for external analysis."""
        return flatten(self.list_scenarios(region=region, limit=-1))


def new_record(
    scenario_key: str,
    name: Optional[str],
    parameters: Dict[str, Any],
    data_versions: Dict[str, str],
    results: Dict[str, Any],
    profile: Optional[List[Dict[str, Any]]] = None,
) -> ScenarioRecord:
    created_at = datetime.now().isoformat()
    return ScenarioRecord(
        id=scenario_key,
        name=name or f"{parameters.get('region', 'scenario')} {created_at[:16]}",
        created_at=created_at,
        parameters=parameters,
        data_versions=dict(data_versions),
        results=results,
        profile=list(profile or []),
    )
