from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from typing import Iterable, Optional

from core.sample_model import LabeledSample
from storage.db import get_conn, init_db


def _row_to_sample(row: sqlite3.Row) -> LabeledSample:
    return LabeledSample.from_dict(
        {
            "token_id": row["token_id"],
            "symbol": row["symbol"],
            "feature_vector": json.loads(row["feature_vector"]),
            "feature_version": row["feature_version"],
            "outcome_label": row["outcome_label"],
            "label_confidence": row["label_confidence"],
            "label_source": row["label_source"],
            "discovered_at": row["discovered_at"],
            "labeled_at": row["labeled_at"],
        }
    )


class SampleRepo:
    """Append-only store of labeled samples."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        init_db(self.db_path)

    def save(self, sample: LabeledSample) -> None:
        self.save_many([sample])

    def save_many(self, samples: Iterable[LabeledSample]) -> int:
        rows = [
            (
                s.token_id,
                s.symbol,
                json.dumps(list(s.feature_vector)),
                s.feature_version,
                s.outcome_label.value,
                s.label_confidence,
                s.label_source.value,
                s.discovered_at,
                s.labeled_at,
            )
            for s in samples
        ]
        if not rows:
            return 0

        conn = get_conn(self.db_path)
        try:
            conn.executemany("""
            INSERT INTO labeled_samples (
                token_id, symbol, feature_vector, feature_version, outcome_label,
                label_confidence, label_source, discovered_at, labeled_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, rows)
            conn.commit()
        finally:
            conn.close()
        return len(rows)

    def recent(self, limit: int, feature_version: Optional[str] = None) -> list[LabeledSample]:
        """Most recent samples, newest first."""
        conn = get_conn(self.db_path)
        try:
            if feature_version is None:
                rows = conn.execute(
                    "SELECT * FROM labeled_samples ORDER BY id DESC LIMIT ?",
                    (int(limit),),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM labeled_samples WHERE feature_version = ? "
                    "ORDER BY id DESC LIMIT ?",
                    (feature_version, int(limit)),
                ).fetchall()
        finally:
            conn.close()
        return [_row_to_sample(r) for r in rows]

    def feature_rows(self, limit: int) -> list[list[float]]:
        return [list(s.feature_vector) for s in self.recent(limit)]

    def count(self) -> int:
        conn = get_conn(self.db_path)
        try:
            (n,) = conn.execute("SELECT COUNT(*) FROM labeled_samples").fetchone()
        finally:
            conn.close()
        return int(n)

    def count_since(self, labeled_after: str) -> int:
        conn = get_conn(self.db_path)
        try:
            (n,) = conn.execute(
                "SELECT COUNT(*) FROM labeled_samples WHERE labeled_at > ?",
                (labeled_after,),
            ).fetchone()
        finally:
            conn.close()
        return int(n)
