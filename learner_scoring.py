"""Single-IR learned scoring: a tiny linear model nudged by each vote."""
from __future__ import annotations

import json
import math
from dataclasses import dataclass, asdict, fields
from pathlib import Path
from typing import Any, Mapping

from logging_utils import log_event
from tonal_engine import TonalFeatures, is_finite_number, safe_number


LEARNING_RATE = 0.00001

# Each feature with the metric names it may appear under
FEATURE_ALIASES = {
    "centroid": ("centroid_computed_hz", "spectral_centroid_hz", "spectralCentroidHz", "spectral_centroid", "spectralCentroid"),
    "tilt": ("spectral_tilt_db_per_oct", "tilt_db_per_oct", "tiltDbPerOct", "spectral_tilt", "spectralTilt"),
    "smooth": ("smooth_score", "smoothScore", "frequency_smoothness", "frequencySmoothness"),
    "hi_mid": ("hi_mid_mid_ratio", "hiMidMid_ratio", "hiMidMidRatio"),
    "low_mid": ("low_mid_pct", "lowMid_pct", "low_mid_percent", "lowMidPercent"),
    "presence": ("presence_pct", "presence_percent", "presencePercent"),
    "air": ("air_pct", "air_percent", "airPercent"),
}


@dataclass
class PreferenceWeights:
    centroid: float = 0.0
    tilt: float = 0.0
    smooth: float = 0.0
    hi_mid: float = 0.0
    low_mid: float = 0.0
    presence: float = 0.0
    fizz_penalty: float = 0.0


def _coerce(v: Any) -> float | None:
    if v is None or isinstance(v, bool):
        return None
    if is_finite_number(v):
        return float(v)
    if isinstance(v, str):
        try:
            n = float(v.strip())
        except ValueError:
            return None
        return n if math.isfinite(n) else None
    return None


def val(obj: Mapping[str, Any] | None, *keys: str) -> float:
    """First finite value among keys (numeric strings allowed), else 0."""
    if not obj:
        return 0.0
    for k in keys:
        n = _coerce(obj.get(k))
        if n is not None:
            return n
    return 0.0


def extract_features(ir: Mapping[str, Any] | None) -> dict[str, float]:
    return {name: val(ir, *aliases) for name, aliases in FEATURE_ALIASES.items()}


def metrics_from_features(features: TonalFeatures) -> dict[str, Any]:
    """Learner-facing metrics for an IR or blend that only has tonal features."""
    pct = features.bands_percent
    mid = safe_number(pct.get("mid"))
    return {
        "spectral_centroid_hz": features.spectral_centroid_hz,
        "tilt_db_per_oct": features.tilt_db_per_oct,
        "smooth_score": features.smooth_score,
        "hi_mid_mid_ratio": safe_number(pct.get("high_mid")) / mid if mid > 0 else 0.0,
        "low_mid_pct": safe_number(pct.get("low_mid")),
        "presence_pct": safe_number(pct.get("presence")),
        "air_pct": safe_number(pct.get("air")),
    }


class LearnerScorer:
    """Accumulates preference weights from preferred/rejected IR pairs."""

    def __init__(self, learning_rate: float = LEARNING_RATE):
        self.learning_rate = learning_rate
        self.weights = PreferenceWeights()

    def reset(self) -> None:
        self.weights = PreferenceWeights()

    def update_weights_from_vote(self, preferred: Mapping[str, Any], rejected: Mapping[str, Any]) -> None:
        p = extract_features(preferred)
        r = extract_features(rejected)
        w = self.weights
        lr = self.learning_rate

        w.centroid += lr * (p["centroid"] - r["centroid"])
        w.tilt += lr * (p["tilt"] - r["tilt"])
        w.smooth += lr * (p["smooth"] - r["smooth"])
        w.hi_mid += lr * (p["hi_mid"] - r["hi_mid"])
        w.low_mid += lr * (p["low_mid"] - r["low_mid"])
        w.presence += lr * (p["presence"] - r["presence"])
        w.fizz_penalty += lr * (r["air"] - p["air"])

    def score_ir(self, ir: Mapping[str, Any]) -> float:
        f = extract_features(ir)
        w = self.weights
        learned = (
            w.centroid * f["centroid"]
            + w.tilt * f["tilt"]
            + w.smooth * f["smooth"]
            + w.hi_mid * f["hi_mid"]
            + w.low_mid * f["low_mid"]
            + w.presence * f["presence"]
            - w.fizz_penalty * f["air"]
        )
        base_score = _coerce(ir.get("score")) if ir else None
        return (base_score or 0.0) + learned

    def as_dict(self) -> dict[str, float]:
        return asdict(self.weights)

    def load_dict(self, data: Mapping[str, Any]) -> None:
        """Restore weights saved by as_dict(); unknown or non-numeric entries are skipped."""
        for f in fields(PreferenceWeights):
            n = _coerce(data.get(f.name))
            if n is not None:
                setattr(self.weights, f.name, n)


def load_learner(path: Path, learning_rate: float = LEARNING_RATE) -> LearnerScorer:
    """Scorer with weights from `path`, fresh when the file is missing or unreadable."""
    scorer = LearnerScorer(learning_rate=learning_rate)
    path = Path(path)
    if not path.exists():
        return scorer
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        log_event("WARNING", "Learner", "Could not read learner weights, starting fresh", path=path, error=e)
        return scorer
    weights = data.get("weights") if isinstance(data, dict) else None
    if not isinstance(weights, dict):
        log_event("WARNING", "Learner", "Unexpected learner file shape, starting fresh", path=path)
        return scorer
    scorer.load_dict(weights)
    return scorer


def save_learner(path: Path, scorer: LearnerScorer) -> bool:
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump({"weights": scorer.as_dict()}, f, indent=2)
        return True
    except OSError as e:
        log_event("ERROR", "Learner", "Failed to save learner weights", path=path, error=e)
        return False


_default_scorer = LearnerScorer()


def get_preference_weights() -> PreferenceWeights:
    return _default_scorer.weights


def update_weights_from_vote(preferred: Mapping[str, Any], rejected: Mapping[str, Any]) -> None:
    _default_scorer.update_weights_from_vote(preferred, rejected)


def score_ir(ir: Mapping[str, Any]) -> float:
    return _default_scorer.score_ir(ir)


def reset_weights() -> None:
    _default_scorer.reset()
