"""
irscope - IR Mixer
Base IR + feature IRs -> blend permutations across the ratio grid, with the
best profile match for the selected ratio and a redundancy flag per pair.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from preference_profiles import (
    DEFAULT_PROFILES,
    IRBands,
    MatchResult,
    PreferenceProfile,
    score_against_all_profiles,
)
from tonal_engine import (
    DEFAULT_BLEND_RATIOS,
    SIX_BAND_KEYS,
    BlendRatio,
    TonalBands,
    TonalFeatures,
    blend_from_raw,
    compute_tonal_features,
    energy_to_percent,
    redundancy_similarity,
    round_half_up,
    safe_number,
)

# Analyzer metric name for each six-band raw energy
_RAW_ENERGY_KEYS = {
    "sub_bass": ("sub_bass_energy", "subBassEnergy"),
    "bass": ("bass_energy", "bassEnergy"),
    "low_mid": ("low_mid_energy", "lowMidEnergy"),
    "mid": ("mid_energy_6", "midEnergy6"),
    "high_mid": ("high_mid_energy", "highMidEnergy"),
    "presence": ("presence_energy", "presenceEnergy"),
}


@dataclass
class AnalyzedIR:
    filename: str
    metrics: Mapping[str, Any]
    raw_energy: TonalBands
    bands: TonalBands
    features: TonalFeatures

    def as_ir_bands(self) -> IRBands:
        return IRBands(filename=self.filename, bands=self.bands, raw_energy=self.raw_energy)


@dataclass
class RatioBlend:
    ratio: BlendRatio
    bands: TonalBands


@dataclass
class BlendResult:
    feature: AnalyzedIR
    current_blend: TonalBands
    all_ratio_blends: list[RatioBlend]
    best_match: MatchResult
    similarity: float
    redundant: bool
    hi_mid_mid_ratio: float = 0.0
    brightness: str = "balanced"
    ratio_matches: dict[str, MatchResult] = field(default_factory=dict)


def extract_raw_energy(metrics: Mapping[str, Any]) -> TonalBands:
    out = {}
    for k in SIX_BAND_KEYS:
        value = 0.0
        for key in _RAW_ENERGY_KEYS[k]:
            if key in metrics:
                value = safe_number(metrics[key])
                break
        out[k] = value
    return out


def analyzed_ir_from_metrics(filename: str, metrics: Mapping[str, Any]) -> AnalyzedIR:
    raw = extract_raw_energy(metrics)
    return AnalyzedIR(
        filename=filename,
        metrics=metrics,
        raw_energy=raw,
        bands=energy_to_percent(raw),
        features=compute_tonal_features(metrics),
    )


def hi_mid_mid_ratio(bands: Mapping[str, float]) -> float:
    if bands["mid"] <= 0:
        return 0.0
    return round_half_up(bands["high_mid"] / bands["mid"], 2)


def brightness_label(ratio: float) -> str:
    if ratio < 1.0:
        return "dark"
    if ratio > 2.0:
        return "bright"
    return "balanced"


def parse_ratio_label(label: str) -> BlendRatio:
    """'60/40' -> BlendRatio('60/40', 0.6, 0.4). Parts must sum to 100."""
    parts = (label or "").strip().split("/")
    if len(parts) != 2:
        raise ValueError(f"ratio must look like 60/40, got {label!r}")
    try:
        base, feature = (float(p) for p in parts)
    except ValueError as exc:
        raise ValueError(f"ratio must look like 60/40, got {label!r}") from exc
    if base < 0 or feature < 0 or abs(base + feature - 100) > 1e-6:
        raise ValueError(f"ratio parts must be non-negative and sum to 100, got {label!r}")
    return BlendRatio(f"{base:g}/{feature:g}", base / 100, feature / 100)


def build_blend_results(
    base: AnalyzedIR,
    features: Sequence[AnalyzedIR],
    current_ratio: BlendRatio = DEFAULT_BLEND_RATIOS[2],
    ratios: Sequence[BlendRatio] = DEFAULT_BLEND_RATIOS,
    profiles: Sequence[PreferenceProfile] = DEFAULT_PROFILES,
    redundancy_threshold: float = 0.94,
) -> list[BlendResult]:
    """One BlendResult per feature IR, in input order."""
    results = []
    for feature in features:
        current = blend_from_raw(base.raw_energy, feature.raw_energy, current_ratio.base, current_ratio.feature)
        all_blends = [
            RatioBlend(ratio=r, bands=blend_from_raw(base.raw_energy, feature.raw_energy, r.base, r.feature))
            for r in ratios
        ]
        _, best = score_against_all_profiles(current, profiles)
        ratio_matches = {rb.ratio.label: score_against_all_profiles(rb.bands, profiles)[1] for rb in all_blends}
        similarity = redundancy_similarity(base.features.bands_shape_db, feature.features.bands_shape_db)
        hm = hi_mid_mid_ratio(current)

        results.append(
            BlendResult(
                feature=feature,
                current_blend=current,
                all_ratio_blends=all_blends,
                best_match=best,
                similarity=similarity,
                redundant=similarity >= redundancy_threshold,
                hi_mid_mid_ratio=hm,
                brightness=brightness_label(hm),
                ratio_matches=ratio_matches,
            )
        )
    return results
