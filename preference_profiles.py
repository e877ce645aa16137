"""
irscope - Preference Profiles
Static tonal targets (Featured / Body) over six-band percentages, and the
rankings built on them: foundation IR search and blend-partner search.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, Sequence

from tonal_engine import (
    DEFAULT_BLEND_RATIOS,
    BlendRatio,
    TonalBands,
    blend_from_raw,
    round_half_up,
    score_to_label,
)


@dataclass(frozen=True)
class BandTarget:
    low: float
    high: float
    ideal: float


@dataclass(frozen=True)
class PreferenceProfile:
    name: str
    description: str
    mid: BandTarget
    high_mid: BandTarget
    presence: BandTarget
    ratio: BandTarget                 # high_mid / mid
    low_end_max: float                # sub_bass + bass cap (%)
    low_mid_max: float


@dataclass
class Deviation:
    band: str
    direction: str                    # "low" | "high"
    amount: float


@dataclass
class MatchResult:
    profile: str
    score: int
    label: str
    deviations: list[Deviation] = field(default_factory=list)
    summary: str = ""


@dataclass
class IRBands:
    """Input row for the rankings: percent bands plus raw energies."""
    filename: str
    bands: TonalBands
    raw_energy: TonalBands


@dataclass
class FoundationScore:
    filename: str
    score: int
    body_score: int
    featured_score: int
    reasons: list[str]
    bands: TonalBands
    ratio: float
    rank: int = 0


@dataclass
class BlendPartnerScore:
    filename: str
    bands: TonalBands
    best_blend_score: int
    best_blend_label: str
    best_blend_profile: str
    best_ratio: BlendRatio
    best_blend_bands: TonalBands
    rank: int = 0


FEATURED_PROFILE = PreferenceProfile(
    name="Featured",
    description="Cut, air, articulation. For lead/featured parts.",
    mid=BandTarget(19, 26, 22),
    high_mid=BandTarget(35, 43, 39),
    presence=BandTarget(28, 39, 34),
    ratio=BandTarget(1.4, 1.9, 1.65),
    low_end_max=5,
    low_mid_max=7,
)

BODY_PROFILE = PreferenceProfile(
    name="Body",
    description="Weight, warmth, sit-in-the-mix. For rhythm/foundation parts.",
    mid=BandTarget(30, 39, 34),
    high_mid=BandTarget(35, 43, 40),
    presence=BandTarget(5, 18, 12),
    ratio=BandTarget(1.0, 1.4, 1.2),
    low_end_max=5,
    low_mid_max=7,
)

DEFAULT_PROFILES = (FEATURED_PROFILE, BODY_PROFILE)


def _band_deviation(value: float, target: BandTarget) -> tuple[str, float, float]:
    """Return (direction, amount, penalty) for a ranged target."""
    if target.low <= value <= target.high:
        dist_from_ideal = abs(value - target.ideal)
        half_range = (target.high - target.low) / 2
        penalty = (dist_from_ideal / half_range) * 10 if half_range > 0 else 0.0
        return "ok", 0.0, penalty
    if value < target.low:
        amount = target.low - value
        return "low", amount, min(amount * 3, 40)
    amount = value - target.high
    return "high", amount, min(amount * 3, 40)


def _cap_deviation(value: float, cap: float) -> tuple[str, float, float]:
    if value <= cap:
        return "ok", 0.0, 0.0
    amount = value - cap
    return "high", amount, min(amount * 2, 20)


def hi_mid_ratio(bands: Mapping[str, float]) -> float:
    return bands["high_mid"] / bands["mid"] if bands["mid"] > 0 else 0.0


def score_against_profile(bands: Mapping[str, float], profile: PreferenceProfile) -> MatchResult:
    ratio = hi_mid_ratio(bands)
    low_end = bands["sub_bass"] + bands["bass"]

    checks = (
        ("Mid", _band_deviation(bands["mid"], profile.mid)),
        ("HiMid", _band_deviation(bands["high_mid"], profile.high_mid)),
        ("Presence", _band_deviation(bands["presence"], profile.presence)),
        ("Ratio", _band_deviation(ratio, profile.ratio)),
        ("LowEnd", _cap_deviation(low_end, profile.low_end_max)),
        ("LowMid", _cap_deviation(bands["low_mid"], profile.low_mid_max)),
    )

    total_penalty = sum(penalty for _, (_, _, penalty) in checks)
    score = int(max(0, round_half_up(100 - total_penalty)))
    label = score_to_label(score)

    deviations = [
        Deviation(band=band, direction=direction, amount=amount)
        for band, (direction, amount, _) in checks
        if direction != "ok"
    ]

    if label == "strong":
        summary = f"Strong {profile.name} match"
    elif label == "close":
        deviations.sort(key=lambda d: d.amount, reverse=True)
        if deviations:
            top = deviations[0]
            where = "above" if top.direction == "high" else "below"
            summary = f"Near {profile.name}: {top.band} {where} target"
        else:
            summary = f"Near {profile.name}"
    elif label == "partial":
        summary = f"Partial {profile.name}: {len(deviations)} bands out of range"
    else:
        summary = f"Outside {profile.name} range"

    return MatchResult(profile=profile.name, score=score, label=label, deviations=deviations, summary=summary)


def score_against_all_profiles(
    bands: Mapping[str, float],
    profiles: Sequence[PreferenceProfile] = DEFAULT_PROFILES,
) -> tuple[list[MatchResult], MatchResult]:
    """Score every profile; the best keeps the later profile on ties."""
    if not profiles:
        raise ValueError("at least one preference profile is required")
    results = [score_against_profile(bands, p) for p in profiles]
    best = results[0]
    for r in results[1:]:
        if not best.score > r.score:
            best = r
    return results, best


def _find_profile(profiles: Sequence[PreferenceProfile], name: str, fallback_index: int) -> PreferenceProfile:
    for p in profiles:
        if p.name == name:
            return p
    return profiles[min(fallback_index, len(profiles) - 1)]


def find_foundation_ir(
    irs: Sequence[IRBands],
    profiles: Sequence[PreferenceProfile] = DEFAULT_PROFILES,
) -> list[FoundationScore]:
    """Rank IRs as blend foundations by their Body-profile score."""
    if not irs:
        return []
    if not profiles:
        raise ValueError("at least one preference profile is required")

    body_profile = _find_profile(profiles, "Body", 1)
    featured_profile = _find_profile(profiles, "Featured", 0)

    scored = []
    for ir in irs:
        b = ir.bands
        ratio = hi_mid_ratio(b)
        body_match = score_against_profile(b, body_profile)
        featured_match = score_against_profile(b, featured_profile)

        reasons = []
        if body_match.label == "strong":
            reasons.append("Strong Body match")
        elif body_match.label == "close":
            reasons.append("Close Body match")

        low_end = b["sub_bass"] + b["bass"]
        if low_end <= 3:
            reasons.append("Tight low end")
        if b["low_mid"] <= 5:
            reasons.append("Clean low-mids")
        if 30 <= b["mid"] <= 39:
            reasons.append("Mid in Body sweet spot")
        if 1.0 <= ratio <= 1.4:
            reasons.append("Ratio in Body range")
        if 35 <= b["high_mid"] <= 43:
            reasons.append("HiMid in sweet spot")

        if low_end > 8:
            reasons.append("Low end too loose")
        if b["low_mid"] > 10:
            reasons.append("Muddy low-mids")
        if body_match.label == "miss":
            reasons.append("Outside Body range")

        scored.append(
            FoundationScore(
                filename=ir.filename,
                score=body_match.score,
                body_score=body_match.score,
                featured_score=featured_match.score,
                reasons=reasons,
                bands=b,
                ratio=round_half_up(ratio, 2),
            )
        )

    scored.sort(key=lambda s: s.score, reverse=True)
    for i, s in enumerate(scored):
        s.rank = i + 1
    return scored


def best_blend_for(
    base_raw: Mapping[str, float],
    feature_raw: Mapping[str, float],
    ratios: Sequence[BlendRatio] = DEFAULT_BLEND_RATIOS,
    profiles: Sequence[PreferenceProfile] = DEFAULT_PROFILES,
) -> tuple[BlendRatio, TonalBands, MatchResult]:
    """Best (ratio, blended bands, profile match) across a ratio grid."""
    if not ratios:
        raise ValueError("at least one blend ratio is required")
    best = None
    for r in ratios:
        blended = blend_from_raw(base_raw, feature_raw, r.base, r.feature)
        _, match = score_against_all_profiles(blended, profiles)
        if best is None or match.score > best[2].score:
            best = (r, blended, match)
    return best


def rank_blend_partners(
    base_raw: Mapping[str, float],
    candidates: Sequence[IRBands],
    ratios: Sequence[BlendRatio] = DEFAULT_BLEND_RATIOS,
    profiles: Sequence[PreferenceProfile] = DEFAULT_PROFILES,
) -> list[BlendPartnerScore]:
    """Rank feature IRs by the best profile score they reach blended with the base."""
    if not candidates:
        return []

    scored = []
    for cand in candidates:
        ratio, blended, match = best_blend_for(base_raw, cand.raw_energy, ratios, profiles)
        scored.append(
            BlendPartnerScore(
                filename=cand.filename,
                bands=cand.bands,
                best_blend_score=match.score,
                best_blend_label=match.label,
                best_blend_profile=match.profile,
                best_ratio=ratio,
                best_blend_bands=blended,
            )
        )

    scored.sort(key=lambda s: s.best_blend_score, reverse=True)
    for i, s in enumerate(scored):
        s.rank = i + 1
    return scored
