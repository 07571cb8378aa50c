"""Model Version Registry

Tracks trained versions, the active/production pointer and the
champion/challenger A/B state. The manifest is rewritten after every
mutation so a restart resumes exactly where the process stopped.

Rules:
- Exactly one version is active (= production) at a time
- The challenger is never the production source
- Retention cleanup never removes production or the current challenger
"""

from __future__ import annotations

import json
import logging
import random
import shutil
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from core.config import RegistryConfig
from features.token_features import FEATURE_VERSION
from models.rug_classifier import RugClassifier, load_classifier

logger = logging.getLogger(__name__)

MANIFEST_FILE = "manifest.json"
ARM_CHAMPION = "champion"
ARM_CHALLENGER = "challenger"


@dataclass(frozen=True)
class ModelVersion:
    version: str
    feature_version: str
    created_at: str
    metrics: dict
    samples_used: int
    artifact_ref: str
    is_active: bool = False
    is_production: bool = False
    is_challenger: bool = False
    activated_at: Optional[str] = None
    deactivated_at: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "feature_version": self.feature_version,
            "created_at": self.created_at,
            "metrics": self.metrics,
            "samples_used": self.samples_used,
            "artifact_ref": self.artifact_ref,
            "is_active": self.is_active,
            "is_production": self.is_production,
            "is_challenger": self.is_challenger,
            "activated_at": self.activated_at,
            "deactivated_at": self.deactivated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> ModelVersion:
        return cls(
            version=data["version"],
            feature_version=data.get("feature_version", FEATURE_VERSION),
            created_at=data["created_at"],
            metrics=dict(data.get("metrics") or {}),
            samples_used=int(data.get("samples_used", 0)),
            artifact_ref=data.get("artifact_ref", ""),
            is_active=bool(data.get("is_active", False)),
            is_production=bool(data.get("is_production", False)),
            is_challenger=bool(data.get("is_challenger", False)),
            activated_at=data.get("activated_at"),
            deactivated_at=data.get("deactivated_at"),
        )


@dataclass
class ArmStats:
    predictions: int = 0
    outcomes: int = 0
    correct: int = 0

    @property
    def accuracy(self) -> float:
        return self.correct / self.outcomes if self.outcomes > 0 else 0.0

    def to_dict(self) -> dict:
        return {"predictions": self.predictions, "outcomes": self.outcomes, "correct": self.correct}

    @classmethod
    def from_dict(cls, data: dict) -> ArmStats:
        return cls(
            predictions=int(data.get("predictions", 0)),
            outcomes=int(data.get("outcomes", 0)),
            correct=int(data.get("correct", 0)),
        )


@dataclass
class ABTestState:
    challenger_version: str
    champion_version: str
    traffic_split: float
    started_at: str
    enabled: bool = True
    arms: dict[str, ArmStats] = field(
        default_factory=lambda: {ARM_CHAMPION: ArmStats(), ARM_CHALLENGER: ArmStats()}
    )

    def to_dict(self) -> dict:
        return {
            "challenger_version": self.challenger_version,
            "champion_version": self.champion_version,
            "traffic_split": self.traffic_split,
            "started_at": self.started_at,
            "enabled": self.enabled,
            "arms": {k: v.to_dict() for k, v in self.arms.items()},
        }

    @classmethod
    def from_dict(cls, data: dict) -> ABTestState:
        arms = data.get("arms") or {}
        return cls(
            challenger_version=data["challenger_version"],
            champion_version=data["champion_version"],
            traffic_split=float(data.get("traffic_split", 0.1)),
            started_at=data["started_at"],
            enabled=bool(data.get("enabled", True)),
            arms={
                ARM_CHAMPION: ArmStats.from_dict(arms.get(ARM_CHAMPION, {})),
                ARM_CHALLENGER: ArmStats.from_dict(arms.get(ARM_CHALLENGER, {})),
            },
        )


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ModelVersionRegistry:
    """Owns ModelVersion records and the A/B state."""

    def __init__(
        self,
        config: Optional[RegistryConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
        rng: Optional[random.Random] = None,
    ):
        self.config = config or RegistryConfig()
        self.models_dir = Path(self.config.models_dir)
        self.models_dir.mkdir(parents=True, exist_ok=True)
        self.manifest_path = self.models_dir / MANIFEST_FILE

        self._clock = clock or _utc_now
        self._rng = rng or random.Random()
        self._lock = threading.RLock()

        self._versions: dict[str, ModelVersion] = {}
        self._active_version: Optional[str] = None
        self._ab_test: Optional[ABTestState] = None

        self._load_manifest()

    # Manifest

    def _load_manifest(self) -> None:
        if not self.manifest_path.exists():
            return
        data = json.loads(self.manifest_path.read_text(encoding="utf-8"))
        self._versions = {
            v["version"]: ModelVersion.from_dict(v) for v in data.get("versions", [])
        }
        self._active_version = data.get("active_version")
        ab = data.get("ab_test")
        self._ab_test = ABTestState.from_dict(ab) if ab else None
        logger.info(
            "Loaded registry manifest: %d versions, active=%s",
            len(self._versions),
            self._active_version,
        )

    def _save_manifest(self) -> None:
        payload = {
            "active_version": self._active_version,
            "ab_test": self._ab_test.to_dict() if self._ab_test else None,
            "versions": [v.to_dict() for v in self._sorted_versions()],
            "updated_at": self._clock().isoformat(),
        }
        tmp = self.manifest_path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        tmp.replace(self.manifest_path)

    def _sorted_versions(self) -> list[ModelVersion]:
        return sorted(self._versions.values(), key=lambda v: (v.created_at, v.version), reverse=True)

    # Versions

    def next_version_id(self) -> str:
        with self._lock:
            base = f"{FEATURE_VERSION}_{self._clock().strftime('%Y%m%d%H%M%S')}"
            candidate = base
            i = 1
            while candidate in self._versions or (self.models_dir / candidate).exists():
                candidate = f"{base}_{i}"
                i += 1
            return candidate

    def artifact_dir(self, version: str) -> Path:
        return self.models_dir / version

    def register_version(
        self,
        metrics: dict,
        samples_used: int,
        classifier: Optional[RugClassifier] = None,
        version: Optional[str] = None,
    ) -> ModelVersion:
        """Record a trained version, persisting its artifact when given."""
        with self._lock:
            version = version or self.next_version_id()
            if version in self._versions:
                raise ValueError(f"Version already registered: {version}")

            artifact_dir = self.artifact_dir(version)
            if classifier is not None:
                classifier.save(
                    artifact_dir,
                    extra_meta={"version": version, "metrics": metrics, "samples_used": samples_used},
                )

            mv = ModelVersion(
                version=version,
                feature_version=FEATURE_VERSION,
                created_at=self._clock().isoformat(),
                metrics=dict(metrics),
                samples_used=int(samples_used),
                artifact_ref=str(artifact_dir),
            )
            self._versions[version] = mv
            self._save_manifest()

        logger.info("Registered model version %s (samples=%d)", version, samples_used)
        return mv

    def get_version(self, version: str) -> Optional[ModelVersion]:
        return self._versions.get(version)

    def list_versions(self) -> list[ModelVersion]:
        with self._lock:
            return self._sorted_versions()

    def get_active_version(self) -> Optional[ModelVersion]:
        with self._lock:
            if self._active_version is None:
                return None
            return self._versions.get(self._active_version)

    get_production_version = get_active_version

    def get_challenger_version(self) -> Optional[ModelVersion]:
        with self._lock:
            for v in self._versions.values():
                if v.is_challenger:
                    return v
            return None

    def activate_version(self, version: str) -> Optional[str]:
        """Make version active/production. Returns the previously active id."""
        with self._lock:
            if version not in self._versions:
                raise KeyError(f"Unknown model version: {version}")

            now = self._clock().isoformat()
            previous = self._active_version
            if previous and previous != version and previous in self._versions:
                self._versions[previous] = replace(
                    self._versions[previous],
                    is_active=False,
                    is_production=False,
                    deactivated_at=now,
                )

            self._versions[version] = replace(
                self._versions[version],
                is_active=True,
                is_production=True,
                is_challenger=False,
                activated_at=now,
                deactivated_at=None,
            )
            self._active_version = version
            if self._ab_test and self._ab_test.challenger_version == version:
                self._ab_test = None
            self._save_manifest()

        logger.info("Activated model version %s (previous=%s)", version, previous)
        return previous

    def should_promote(self, metrics: dict) -> tuple[bool, str]:
        """Absolute floors a version must clear before it may serve.

        The head-to-head verdict against production comes from the
        evaluator; this gate applies on top of it, and alone when there is
        no production version yet.
        """
        accuracy = float(metrics.get("accuracy", 0.0))
        f1 = float(metrics.get("f1_score", 0.0))
        if accuracy < self.config.min_accuracy:
            return False, f"Accuracy {accuracy:.4f} below minimum {self.config.min_accuracy:.2f}"
        if f1 < self.config.min_f1:
            return False, f"F1 {f1:.4f} below minimum {self.config.min_f1:.2f}"
        return True, "Clears promotion floors"

    def load_classifier(self, version: str) -> RugClassifier:
        mv = self._versions.get(version)
        if mv is None:
            raise KeyError(f"Unknown model version: {version}")
        return load_classifier(mv.artifact_ref)

    # A/B testing

    def start_ab_test(self, challenger: str, traffic_split: Optional[float] = None) -> tuple[bool, str]:
        split = self.config.default_traffic_split if traffic_split is None else float(traffic_split)
        if not 0.0 <= split <= 1.0:
            return False, f"Traffic split must be within [0, 1]: {split}"

        with self._lock:
            if challenger not in self._versions:
                return False, f"Unknown challenger version: {challenger}"
            if self._active_version is None:
                return False, "No production version to compare against"
            if challenger == self._active_version:
                return False, "Challenger is already production"

            for vid, other in self._versions.items():
                if other.is_challenger and vid != challenger:
                    self._versions[vid] = replace(other, is_challenger=False)
            self._versions[challenger] = replace(self._versions[challenger], is_challenger=True)
            self._ab_test = ABTestState(
                challenger_version=challenger,
                champion_version=self._active_version,
                traffic_split=split,
                started_at=self._clock().isoformat(),
            )
            self._save_manifest()

        logger.info("Started A/B test: challenger=%s split=%.2f", challenger, split)
        return True, "started"

    @property
    def ab_test(self) -> Optional[ABTestState]:
        return self._ab_test

    def select_model_for_prediction(self) -> tuple[Optional[str], str]:
        """Pick (version, arm) for one prediction with a Bernoulli draw.

        Prediction counters live in memory and reach the manifest with the
        next outcome or lifecycle write.
        """
        with self._lock:
            ab = self._ab_test
            if ab is None or not ab.enabled:
                return self._active_version, ARM_CHAMPION

            if self._rng.random() < ab.traffic_split:
                ab.arms[ARM_CHALLENGER].predictions += 1
                version, arm = ab.challenger_version, ARM_CHALLENGER
            else:
                ab.arms[ARM_CHAMPION].predictions += 1
                version, arm = ab.champion_version, ARM_CHAMPION
            return version, arm

    def record_outcome(self, arm: str, was_correct: bool) -> bool:
        with self._lock:
            ab = self._ab_test
            if ab is None or not ab.enabled:
                return False
            if arm not in ab.arms:
                raise ValueError(f"Unknown A/B arm: {arm}")
            stats = ab.arms[arm]
            stats.outcomes += 1
            if was_correct:
                stats.correct += 1
            self._save_manifest()
            return True

    def stop_ab_test(self, promote: bool = False) -> Optional[str]:
        """End the A/B test. Returns the promoted version if any."""
        with self._lock:
            ab = self._ab_test
            if ab is None:
                return None

            challenger = ab.challenger_version
            self._ab_test = None
            mv = self._versions.get(challenger)
            if mv is not None:
                self._versions[challenger] = replace(mv, is_challenger=False)
            self._save_manifest()

        if promote and challenger in self._versions:
            self.activate_version(challenger)
            logger.info("A/B test stopped, challenger %s promoted", challenger)
            return challenger

        logger.info("A/B test stopped, challenger %s not promoted", challenger)
        return None

    def get_ab_test_stats(self) -> Optional[dict]:
        with self._lock:
            ab = self._ab_test
            if ab is None:
                return None
            return {
                "enabled": ab.enabled,
                "started_at": ab.started_at,
                "traffic_split": ab.traffic_split,
                "champion": {
                    "version": ab.champion_version,
                    **ab.arms[ARM_CHAMPION].to_dict(),
                    "accuracy": ab.arms[ARM_CHAMPION].accuracy,
                },
                "challenger": {
                    "version": ab.challenger_version,
                    **ab.arms[ARM_CHALLENGER].to_dict(),
                    "accuracy": ab.arms[ARM_CHALLENGER].accuracy,
                },
            }

    # Retention

    def cleanup_old_versions(self, keep: Optional[int] = None) -> list[str]:
        """Keep the N newest plus production and challenger. Returns deleted ids."""
        keep = self.config.models_to_keep if keep is None else int(keep)
        deleted: list[str] = []

        with self._lock:
            protected = {self._active_version}
            if self._ab_test:
                protected.add(self._ab_test.challenger_version)
            protected.update(v.version for v in self._versions.values() if v.is_challenger or v.is_active)
            protected.discard(None)

            newest = {v.version for v in self._sorted_versions()[: max(keep, 0)]}
            for mv in self._sorted_versions():
                if mv.version in protected or mv.version in newest:
                    continue
                artifact = Path(mv.artifact_ref) if mv.artifact_ref else None
                if artifact is not None and artifact.exists():
                    shutil.rmtree(artifact, ignore_errors=True)
                del self._versions[mv.version]
                deleted.append(mv.version)

            if deleted:
                self._save_manifest()

        if deleted:
            logger.info("Cleaned up %d old model versions: %s", len(deleted), ", ".join(deleted))
        return deleted
