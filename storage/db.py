import sqlite3
from pathlib import Path


def get_conn(db_path: Path) -> sqlite3.Connection:
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: Path) -> None:
    conn = get_conn(db_path)
    cur = conn.cursor()

    cur.execute("""
    CREATE TABLE IF NOT EXISTS labeled_samples (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        token_id TEXT NOT NULL,
        symbol TEXT,
        feature_vector TEXT NOT NULL,
        feature_version TEXT NOT NULL,
        outcome_label TEXT NOT NULL,
        label_confidence REAL,
        label_source TEXT,
        discovered_at TEXT,
        labeled_at TEXT
    )
    """)

    cur.execute("""
    CREATE TABLE IF NOT EXISTS training_runs (
        job_id TEXT PRIMARY KEY,
        model_version TEXT,
        trigger TEXT,
        status TEXT,
        samples_used INTEGER,
        train_size INTEGER,
        validation_size INTEGER,
        test_size INTEGER,
        metrics TEXT,
        deployed INTEGER,
        error TEXT,
        started_at TEXT,
        completed_at TEXT
    )
    """)

    cur.execute("""
    CREATE TABLE IF NOT EXISTS model_comparisons (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        production_version TEXT,
        challenger_version TEXT,
        winner TEXT,
        p_value REAL,
        accuracy_delta REAL,
        f1_delta REAL,
        payload TEXT,
        created_at TEXT
    )
    """)

    cur.execute(
        "CREATE INDEX IF NOT EXISTS idx_samples_labeled_at ON labeled_samples(labeled_at)"
    )

    conn.commit()
    conn.close()
