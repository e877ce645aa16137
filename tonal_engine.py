"""
irscope - Tonal Engine
Band-energy feature vectors for cab IRs: percent/shape-dB views, tilt,
smoothness, linear blending of two IRs and distance scoring against a target.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Sequence

import numpy as np


BAND_KEYS = ("sub_bass", "bass", "low_mid", "mid", "high_mid", "presence", "air")

# Six-band view used by the mixer and the preference profiles (no air band)
SIX_BAND_KEYS = BAND_KEYS[:6]

DB_FLOOR = -120.0
DB_CEILING = 60.0
_EPS = 1e-12

TonalBands = dict  # band key -> float

# Alias names accepted for each band, in lookup order
_BAND_ALIASES = {
    "sub_bass": ("sub_bass", "subBass", "subbass", "sub_bass_energy", "subBassEnergy"),
    "bass": ("bass", "bass_energy", "bassEnergy"),
    "low_mid": ("low_mid", "lowMid", "lowmid", "low_mid_energy", "lowMidEnergy"),
    "mid": ("mid", "mid_energy_6", "midEnergy6", "mid_energy", "midEnergy"),
    "high_mid": ("high_mid", "highMid", "highmid", "high_mid_energy", "highMidEnergy"),
    "presence": ("presence", "pres", "presence_energy", "presenceEnergy"),
    "air": ("air", "ultra_high_energy", "ultraHighEnergy", "air_energy", "airEnergy"),
}

# Short keys used by analyzers that report a nested band_energies mapping
_BAND_ENERGY_KEYS = {
    "sub_bass": "sub",
    "bass": "bass",
    "low_mid": "lowmid",
    "mid": "mid",
    "high_mid": "highmid",
    "presence": "pres",
    "air": "air",
}

# Inclusive bin ranges used when only 24 log-spaced bins are available
_LOG_BIN_BUCKETS = (
    ("sub_bass", 0, 2),
    ("bass", 3, 5),
    ("low_mid", 6, 8),
    ("mid", 9, 11),
    ("high_mid", 12, 14),
    ("presence", 15, 18),
    ("air", 19, 23),
)


@dataclass
class TonalFeatures:
    """Spectral fingerprint of one IR (or one blend)."""
    bands_raw: TonalBands
    bands_percent: TonalBands
    bands_shape_db: TonalBands
    tilt_db_per_oct: float
    smooth_score: Optional[float] = None
    notch_count: Optional[float] = None
    max_notch_depth: Optional[float] = None
    rolloff_freq: Optional[float] = None
    tail_level_db: Optional[float] = None
    tail_status: Optional[str] = None
    spectral_centroid_hz: Optional[float] = None

    def shape_vector(self) -> np.ndarray:
        return np.array([safe_number(self.bands_shape_db.get(k)) for k in BAND_KEYS])


@dataclass
class ScoreWeights:
    shape_weight: float = 1.0
    tilt_weight: float = 2.0
    smooth_penalty_weight: float = 10.0
    notch_penalty_weight: float = 1.0
    rolloff_penalty_weight: float = 0.002


@dataclass(frozen=True)
class BlendRatio:
    label: str
    base: float
    feature: float


DEFAULT_BLEND_RATIOS = (
    BlendRatio("70/30", 0.7, 0.3),
    BlendRatio("60/40", 0.6, 0.4),
    BlendRatio("50/50", 0.5, 0.5),
    BlendRatio("40/60", 0.4, 0.6),
    BlendRatio("30/70", 0.3, 0.7),
)


def round_half_up(value: float, digits: int = 0) -> float:
    """Round like a UI would (0.5 always up), not banker's rounding."""
    scale = 10 ** digits
    return math.floor(value * scale + 0.5) / scale


def is_finite_number(v: Any) -> bool:
    if isinstance(v, bool):
        return False
    if isinstance(v, (int, float, np.integer, np.floating)):
        return math.isfinite(float(v))
    return False


def safe_number(v: Any) -> float:
    return float(v) if is_finite_number(v) else 0.0


def clamp(x: float, lo: float, hi: float) -> float:
    if not is_finite_number(x):
        return lo
    return max(lo, min(hi, float(x)))


def zero_bands(keys: Sequence[str] = BAND_KEYS) -> TonalBands:
    return {k: 0.0 for k in keys}


def distance_to_score(distance: float) -> int:
    return int(max(0, round_half_up(100 - distance * 3)))


def score_to_label(score: float) -> str:
    if score >= 85:
        return "strong"
    if score >= 70:
        return "close"
    if score >= 50:
        return "partial"
    return "miss"


def normalize_smooth_score(v: Any) -> Optional[float]:
    """Accept 0-1 fractions or 0-100 scores; None when unusable."""
    if not is_finite_number(v):
        return None
    n = float(v)
    if n == 0:
        return None
    if 0 <= n <= 1.2:
        return clamp(n, 0.0, 1.0) * 100
    if 0 <= n <= 100:
        return n
    return None


def proxy_smooth_score(shape: Mapping[str, float]) -> float:
    """Estimate smoothness (5-100) from the shape curve alone."""
    v = np.array([safe_number(shape.get(k)) for k in BAND_KEYS])

    diffs = np.diff(v)
    sign_changes = int(np.sum(diffs[:-1] * diffs[1:] < 0))
    curvs = np.abs(v[2:] - 2 * v[1:-1] + v[:-2])
    max_curv = float(np.max(curvs)) if curvs.size else 0.0

    air = safe_number(shape.get("air"))
    presence = safe_number(shape.get("presence"))
    high_mid = safe_number(shape.get("high_mid"))

    fizz_excess = max(0.0, air - max(presence, high_mid) - 1.0)
    presence_spike = max(0.0, presence - high_mid - 2.0)
    zig_zag_penalty = max(0, sign_changes - 2) * 1.5
    curv_penalty = max(0.0, max_curv - 6) * 0.4

    roughness = fizz_excess * 1.5 + presence_spike * 1.2 + zig_zag_penalty + curv_penalty
    normalized = 100 * math.exp(-roughness / 8)
    return round_half_up(clamp(normalized, 5, 100))


def _first_finite(obj: Any, keys: Sequence[str]) -> Optional[float]:
    if not isinstance(obj, Mapping):
        return None
    for key in keys:
        v = obj.get(key)
        if is_finite_number(v):
            return float(v)
    return None


def extract_bands_raw(metrics: Optional[Mapping[str, Any]]) -> TonalBands:
    """Pull 7-band raw energies out of whatever metrics shape the analyzer produced."""
    metrics = metrics or {}
    be = metrics.get("band_energies") or metrics.get("bandEnergies") or {}
    src = metrics.get("bands_raw") or metrics.get("bandsRaw") or metrics

    out = {}
    for k in BAND_KEYS:
        v = _first_finite(be, (_BAND_ENERGY_KEYS[k],))
        if v is None:
            v = _first_finite(src, _BAND_ALIASES[k])
        out[k] = safe_number(v)

    total = sum(abs(out[k]) for k in BAND_KEYS)
    bins = metrics.get("log_band_energies")
    if not isinstance(bins, (list, tuple)):
        bins = metrics.get("band_energies_log")
    if not isinstance(bins, (list, tuple)):
        bins = None

    if total < 1e-9 and bins is not None and len(bins) >= 12:
        b = [safe_number(x) for x in bins]
        for k, i0, i1 in _LOG_BIN_BUCKETS:
            if k == "air":
                i1 = min(i1, len(b) - 1)
            out[k] = float(sum(b[i0:i1 + 1]))

    return out


def bands_to_percent(bands_raw: Mapping[str, float], keys: Sequence[str] = BAND_KEYS) -> TonalBands:
    total = sum(bands_raw[k] for k in keys)
    if total <= 0:
        return zero_bands(keys)
    return {k: bands_raw[k] / total * 100 for k in keys}


def _clamp_db(v: float) -> float:
    if not math.isfinite(v):
        return DB_FLOOR
    return max(DB_FLOOR, min(DB_CEILING, v))


def bands_to_shape_db(bands_raw: Mapping[str, float]) -> TonalBands:
    """Band levels in dB relative to the mid/high-mid/presence average."""
    energies = np.array([max(_EPS, safe_number(bands_raw.get(k))) for k in BAND_KEYS])
    db = dict(zip(BAND_KEYS, 10 * np.log10(energies)))

    ref_candidates = [db[k] for k in ("mid", "high_mid", "presence") if math.isfinite(db[k])]
    if ref_candidates:
        ref = sum(ref_candidates) / len(ref_candidates)
    else:
        finite = [v for v in db.values() if math.isfinite(v)]
        ref = sum(finite) / len(finite) if finite else 0.0

    return {k: _clamp_db(float(db[k]) - ref) for k in BAND_KEYS}


def compute_tilt(shape: Mapping[str, float]) -> float:
    high = (safe_number(shape.get("presence")) + safe_number(shape.get("air"))) / 2
    low = (safe_number(shape.get("bass")) + safe_number(shape.get("sub_bass"))) / 2
    return high - low


def _optional_metric(metrics: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in metrics and metrics[key] is not None:
            return metrics[key]
    return None


def compute_tonal_features(metrics: Optional[Mapping[str, Any]]) -> TonalFeatures:
    metrics = metrics or {}
    bands_raw = extract_bands_raw(metrics)
    bands_percent = bands_to_percent(bands_raw)
    bands_shape_db = bands_to_shape_db(bands_raw)

    smooth = normalize_smooth_score(
        _optional_metric(metrics, "smooth_score", "smoothScore", "frequency_smoothness")
    )
    if smooth is None:
        smooth = proxy_smooth_score(bands_shape_db)

    return TonalFeatures(
        bands_raw=bands_raw,
        bands_percent=bands_percent,
        bands_shape_db=bands_shape_db,
        tilt_db_per_oct=compute_tilt(bands_shape_db),
        smooth_score=smooth,
        notch_count=_optional_metric(metrics, "notch_count", "notchCount"),
        max_notch_depth=_optional_metric(metrics, "max_notch_depth", "maxNotchDepth"),
        rolloff_freq=_optional_metric(metrics, "rolloff_freq", "rolloffFreq"),
        tail_level_db=_optional_metric(metrics, "tail_level_db", "tailLevelDb"),
        tail_status=_optional_metric(metrics, "tail_status", "tailStatus"),
        spectral_centroid_hz=_optional_metric(
            metrics, "spectral_centroid_hz", "spectralCentroidHz", "spectral_centroid"
        ),
    )


def _blend_scalar(a: Any, b: Any, a_gain: float, b_gain: float) -> Optional[float]:
    """Gain-weighted mix; None when neither side has the metric."""
    if not is_finite_number(a) and not is_finite_number(b):
        return None
    return safe_number(a) * a_gain + safe_number(b) * b_gain


def blend_features(a: TonalFeatures, b: TonalFeatures, a_gain: float, b_gain: float) -> TonalFeatures:
    """Mix two IRs' raw band energies and recompute every derived view."""
    blended_raw = {k: a.bands_raw[k] * a_gain + b.bands_raw[k] * b_gain for k in BAND_KEYS}
    blended_shape = bands_to_shape_db(blended_raw)

    a_smooth = normalize_smooth_score(a.smooth_score)
    b_smooth = normalize_smooth_score(b.smooth_score)
    if a_smooth is not None and b_smooth is not None:
        blended_smooth = round_half_up(a_smooth * a_gain + b_smooth * b_gain)
    else:
        blended_smooth = proxy_smooth_score(blended_shape)

    return TonalFeatures(
        bands_raw=blended_raw,
        bands_percent=bands_to_percent(blended_raw),
        bands_shape_db=blended_shape,
        tilt_db_per_oct=compute_tilt(blended_shape),
        smooth_score=blended_smooth,
        notch_count=_blend_scalar(a.notch_count, b.notch_count, a_gain, b_gain),
        max_notch_depth=_blend_scalar(a.max_notch_depth, b.max_notch_depth, a_gain, b_gain),
        rolloff_freq=_blend_scalar(a.rolloff_freq, b.rolloff_freq, a_gain, b_gain),
        tail_level_db=_blend_scalar(a.tail_level_db, b.tail_level_db, a_gain, b_gain),
        tail_status=None,
        spectral_centroid_hz=_blend_scalar(a.spectral_centroid_hz, b.spectral_centroid_hz, a_gain, b_gain),
    )


def score_blend(
    features: TonalFeatures,
    target_shape: Mapping[str, float],
    target_tilt: float,
    weights: Optional[ScoreWeights] = None,
) -> float:
    """Distance from a target curve plus quality penalties. Lower is better."""
    w = weights or ScoreWeights()

    score = 0.0
    for k in BAND_KEYS:
        score += abs(features.bands_shape_db[k] - target_shape[k]) * w.shape_weight

    score += abs(features.tilt_db_per_oct - target_tilt) * w.tilt_weight

    if features.smooth_score is not None and features.smooth_score < 55:
        score += ((55 - features.smooth_score) / 100) * w.smooth_penalty_weight

    if features.max_notch_depth is not None and features.max_notch_depth > 10:
        score += (features.max_notch_depth - 10) * w.notch_penalty_weight

    if features.rolloff_freq is not None and features.rolloff_freq < 4500:
        score += (4500 - features.rolloff_freq) * w.rolloff_penalty_weight

    return score


_REDUNDANCY_KEYS = ("low_mid", "mid", "high_mid", "presence", "air")


def redundancy_similarity(a_shape: Mapping[str, float], b_shape: Mapping[str, float]) -> float:
    """Pearson correlation of the upper five shape bands."""
    va = np.array([safe_number(a_shape.get(k)) for k in _REDUNDANCY_KEYS])
    vb = np.array([safe_number(b_shape.get(k)) for k in _REDUNDANCY_KEYS])

    xa = va - va.mean()
    xb = vb - vb.mean()
    na = float(np.sqrt(np.sum(xa * xa)))
    nb = float(np.sqrt(np.sum(xb * xb)))

    if na < 1e-9 or nb < 1e-9:
        return 0.0
    return float(np.dot(xa, xb) / (na * nb))


def is_redundant(a: Mapping[str, float], b: Mapping[str, float], threshold: float = 0.94) -> bool:
    return redundancy_similarity(a, b) >= threshold


def energy_to_percent(raw: Mapping[str, float]) -> TonalBands:
    """Six-band percentages rounded to one decimal, as shown in the mixer."""
    total = sum(raw[k] for k in SIX_BAND_KEYS)
    if total == 0:
        return zero_bands(SIX_BAND_KEYS)
    return {k: round_half_up(raw[k] / total * 1000) / 10 for k in SIX_BAND_KEYS}


def blend_from_raw(
    base_raw: Mapping[str, float],
    feature_raw: Mapping[str, float],
    base_ratio: float,
    feature_ratio: float,
) -> TonalBands:
    blended = {k: base_raw[k] * base_ratio + feature_raw[k] * feature_ratio for k in SIX_BAND_KEYS}
    return energy_to_percent(blended)
