from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path

from core.exceptions import TransientPersistenceError
from storage.db import get_conn, init_db


class AuditRepo:
    """Training-run and model-comparison audit rows.

    Every write failure surfaces as TransientPersistenceError so callers
    can log and continue.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        init_db(self.db_path)

    def save_training_run(self, run: dict) -> None:
        metrics = run.get("metrics")
        try:
            conn = get_conn(self.db_path)
            try:
                conn.execute("""
                INSERT OR REPLACE INTO training_runs VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    run["id"],
                    run.get("model_version"),
                    run.get("trigger"),
                    run.get("status"),
                    run.get("samples_used"),
                    run.get("train_size"),
                    run.get("validation_size"),
                    run.get("test_size"),
                    json.dumps(metrics) if metrics is not None else None,
                    1 if run.get("deployed") else 0,
                    run.get("error"),
                    run.get("started_at"),
                    run.get("completed_at"),
                ))
                conn.commit()
            finally:
                conn.close()
        except (sqlite3.Error, OSError) as e:
            raise TransientPersistenceError(f"Failed to save training run {run.get('id')}") from e

    def save_comparison(self, comparison: dict) -> None:
        try:
            conn = get_conn(self.db_path)
            try:
                conn.execute("""
                INSERT INTO model_comparisons (
                    production_version, challenger_version, winner, p_value,
                    accuracy_delta, f1_delta, payload, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    comparison.get("production_version"),
                    comparison.get("challenger_version"),
                    comparison.get("winner"),
                    (comparison.get("statistical_test") or {}).get("p_value"),
                    comparison.get("accuracy_delta"),
                    comparison.get("f1_delta"),
                    json.dumps(comparison),
                    datetime.now(timezone.utc).isoformat(),
                ))
                conn.commit()
            finally:
                conn.close()
        except (sqlite3.Error, OSError) as e:
            raise TransientPersistenceError("Failed to save model comparison") from e

    def recent_training_runs(self, limit: int = 10) -> list[dict]:
        conn = get_conn(self.db_path)
        try:
            rows = conn.execute(
                "SELECT * FROM training_runs ORDER BY started_at DESC LIMIT ?",
                (int(limit),),
            ).fetchall()
        finally:
            conn.close()

        out = []
        for r in rows:
            d = dict(r)
            d["metrics"] = json.loads(d["metrics"]) if d.get("metrics") else None
            d["deployed"] = bool(d.get("deployed"))
            out.append(d)
        return out

    def recent_comparisons(self, limit: int = 10) -> list[dict]:
        conn = get_conn(self.db_path)
        try:
            rows = conn.execute(
                "SELECT payload FROM model_comparisons ORDER BY id DESC LIMIT ?",
                (int(limit),),
            ).fetchall()
        finally:
            conn.close()
        return [json.loads(r["payload"]) for r in rows]
