"""Tests for SQLite sample and audit repositories"""

import sqlite3

import pytest

from core.exceptions import TransientPersistenceError
from core.sample_model import OutcomeLabel
from storage.audit_repo import AuditRepo
from storage.sample_repo import SampleRepo


class TestSampleRepo:
    """Labeled sample persistence"""

    def test_save_and_recent(self, tmp_path, sample_factory):
        """Samples come back newest first with identical fields"""
        repo = SampleRepo(tmp_path / "ml.db")
        samples = sample_factory(3, 2)
        assert repo.save_many(samples) == 5
        assert repo.count() == 5

        recent = repo.recent(2)
        assert [s.token_id for s in recent] == ["tok4", "tok3"]
        assert recent[0] == samples[4]
        assert recent[0].outcome_label is OutcomeLabel.RUG

    def test_feature_rows(self, tmp_path, sample_factory):
        """Feature rows are plain 28-value lists"""
        repo = SampleRepo(tmp_path / "ml.db")
        repo.save_many(sample_factory(2, 0))
        rows = repo.feature_rows(10)
        assert len(rows) == 2
        assert all(len(r) == 28 for r in rows)

    def test_count_since(self, tmp_path, sample_factory):
        """Counts samples labeled after a timestamp"""
        repo = SampleRepo(tmp_path / "ml.db")
        samples = sample_factory(5, 0)
        repo.save_many(samples)
        assert repo.count_since(samples[1].labeled_at) == 3

    def test_filter_by_feature_version(self, tmp_path, sample_factory):
        """Only matching feature versions are returned"""
        repo = SampleRepo(tmp_path / "ml.db")
        repo.save_many(sample_factory(2, 0))
        assert len(repo.recent(10, feature_version="v2")) == 2
        assert repo.recent(10, feature_version="v1") == []


class TestAuditRepo:
    """Training-run and comparison audit rows"""

    def test_training_run_round_trip(self, tmp_path):
        """Saved runs come back with decoded metrics"""
        repo = AuditRepo(tmp_path / "ml.db")
        repo.save_training_run(
            {
                "id": "job_1",
                "model_version": "v2_20240101000000",
                "trigger": "manual",
                "status": "completed",
                "samples_used": 150,
                "metrics": {"accuracy": 0.7},
                "deployed": True,
                "started_at": "2024-01-01T00:00:00+00:00",
                "completed_at": "2024-01-01T00:01:00+00:00",
            }
        )
        runs = repo.recent_training_runs()
        assert len(runs) == 1
        assert runs[0]["job_id"] == "job_1"
        assert runs[0]["metrics"] == {"accuracy": 0.7}
        assert runs[0]["deployed"] is True

    def test_comparison_round_trip(self, tmp_path):
        """Comparisons are stored as full payloads"""
        repo = AuditRepo(tmp_path / "ml.db")
        payload = {"production_version": "a", "challenger_version": "b", "winner": "tie"}
        repo.save_comparison(payload)
        assert repo.recent_comparisons() == [payload]

    def test_write_failure_is_transient(self, tmp_path):
        """Database errors surface as TransientPersistenceError"""
        repo = AuditRepo(tmp_path / "ml.db")
        conn = sqlite3.connect(tmp_path / "ml.db")
        conn.execute("DROP TABLE training_runs")
        conn.commit()
        conn.close()
        with pytest.raises(TransientPersistenceError):
            repo.save_training_run({"id": "job_x"})
