from __future__ import annotations

import json
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import numpy as np
import torch
import torch.nn as nn

from features.token_features import FEATURE_COUNT, FEATURE_NAMES, FEATURE_VERSION

STATE_DICT_FILE = "model.pt"
META_FILE = "meta.json"


@dataclass(frozen=True)
class ClassifierSpec:
    input_dim: int = FEATURE_COUNT
    hidden_dims: tuple[int, ...] = (128, 64, 32)
    dropouts: tuple[float, ...] = (0.3, 0.2, 0.0)

    def to_dict(self) -> dict:
        return {
            "input_dim": self.input_dim,
            "hidden_dims": list(self.hidden_dims),
            "dropouts": list(self.dropouts),
        }

    @classmethod
    def from_dict(cls, data: dict) -> ClassifierSpec:
        return cls(
            input_dim=int(data.get("input_dim", FEATURE_COUNT)),
            hidden_dims=tuple(int(h) for h in data.get("hidden_dims", (128, 64, 32))),
            dropouts=tuple(float(d) for d in data.get("dropouts", (0.3, 0.2, 0.0))),
        )


def build_model(spec: ClassifierSpec) -> nn.Sequential:
    """Dense stack with a single sigmoid output. BatchNorm after the first layer."""
    layers: list[nn.Module] = []
    prev = int(spec.input_dim)
    for i, hidden in enumerate(spec.hidden_dims):
        layers.append(nn.Linear(prev, int(hidden)))
        layers.append(nn.ReLU())
        if i == 0:
            layers.append(nn.BatchNorm1d(int(hidden)))
        dropout = spec.dropouts[i] if i < len(spec.dropouts) else 0.0
        if dropout > 0:
            layers.append(nn.Dropout(p=float(dropout)))
        prev = int(hidden)
    layers.append(nn.Linear(prev, 1))
    layers.append(nn.Sigmoid())
    return nn.Sequential(*layers)


class RugClassifier:
    """Trained binary classifier over the token feature vector.

    Inference is read-only; concurrent predict calls share the module in
    eval mode. dispose() releases the weights and makes later calls fail.
    """

    def __init__(self, model: nn.Module, spec: ClassifierSpec, meta: Optional[dict] = None):
        self.model = model
        self.spec = spec
        self.meta = dict(meta or {})
        self._lock = threading.Lock()
        self._disposed = False
        self.model.eval()

    @classmethod
    def create(cls, spec: Optional[ClassifierSpec] = None, seed: Optional[int] = None) -> RugClassifier:
        if seed is not None:
            torch.manual_seed(int(seed))
        spec = spec or ClassifierSpec()
        return cls(build_model(spec), spec)

    @property
    def disposed(self) -> bool:
        return self._disposed

    def predict_proba(self, x: np.ndarray) -> np.ndarray:
        arr = np.asarray(x, dtype=np.float32)
        if arr.ndim == 1:
            arr = arr.reshape(1, -1)
        if arr.shape[0] == 0:
            return np.zeros(0, dtype=np.float64)
        if arr.shape[1] != self.spec.input_dim:
            raise ValueError(f"Expected {self.spec.input_dim} features, got {arr.shape[1]}")
        with self._lock, torch.no_grad():
            if self._disposed:
                raise RuntimeError("Classifier has been disposed")
            self.model.eval()
            out = self.model(torch.from_numpy(arr)).reshape(-1).cpu().numpy()
        return np.asarray(out, dtype=np.float64)

    def predict(self, x: np.ndarray) -> list[float]:
        return [float(p) for p in self.predict_proba(x)]

    def save(self, artifact_dir: str | Path, extra_meta: Optional[dict] = None) -> Path:
        out_dir = Path(artifact_dir)
        out_dir.mkdir(parents=True, exist_ok=True)
        torch.save(self.model.state_dict(), out_dir / STATE_DICT_FILE)

        meta = {
            **self.meta,
            **(extra_meta or {}),
            "spec": self.spec.to_dict(),
            "feature_cols": list(FEATURE_NAMES),
            "feature_version": FEATURE_VERSION,
        }
        (out_dir / META_FILE).write_text(json.dumps(meta, indent=2), encoding="utf-8")
        self.meta = meta
        return out_dir

    def dispose(self) -> None:
        with self._lock:
            self._disposed = True
            self.model = nn.Identity()


def load_classifier(artifact_dir: str | Path) -> RugClassifier:
    ad = Path(artifact_dir)
    state_path = ad / STATE_DICT_FILE
    meta_path = ad / META_FILE
    if not state_path.exists():
        raise FileNotFoundError(f"Artifact not found: {state_path}")
    if not meta_path.exists():
        raise FileNotFoundError(f"meta.json not found next to artifact: {meta_path}")

    meta = json.loads(meta_path.read_text(encoding="utf-8"))
    feature_cols = [str(c) for c in meta.get("feature_cols", [])]
    if feature_cols and feature_cols != list(FEATURE_NAMES):
        raise ValueError("Feature schema mismatch: meta.json feature_cols != FEATURE_NAMES")

    spec = ClassifierSpec.from_dict(meta.get("spec", {}))
    model = build_model(spec)
    model.load_state_dict(torch.load(state_path, map_location="cpu"))
    return RugClassifier(model, spec, meta)
