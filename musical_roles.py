"""
irscope - Musical Roles
Labels each IR with the job it does in a blend (Foundation, Cut Layer, ...).

Classification is a rule cascade over band percentages, tilt, rolloff and
smoothness. When several IRs of the same speaker are loaded, the rules
compare each IR against its speaker's mean/std rather than fixed limits,
so a V30 set and a Greenback set are judged on their own terms.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Mapping, Optional, Sequence

import numpy as np

from logging_utils import log_event
from taste_store import infer_speaker_prefix
from tonal_engine import TonalFeatures, is_finite_number, safe_number

FOUNDATION = "Foundation"
CUT_LAYER = "Cut Layer"
MID_THICKENER = "Mid Thickener"
FIZZ_TAMER = "Fizz Tamer"
LEAD_POLISH = "Lead Polish"
DARK_SPECIALTY = "Dark Specialty"

ALL_ROLES = (FOUNDATION, CUT_LAYER, MID_THICKENER, FIZZ_TAMER, LEAD_POLISH, DARK_SPECIALTY)

STAT_KEYS = ("centroid", "tilt", "ext", "presence", "hi_mid_mid", "smooth", "air")

# Filename tokens (mic, position, capture vendor) and the role they hint at
NAME_HINTS = (
    ("presence", CUT_LAYER, 0.8),
    ("capedge_br", CUT_LAYER, 0.4),
    ("capedge", FOUNDATION, 0.2),
    ("cone_tr", FIZZ_TAMER, 0.4),
    ("cone_", MID_THICKENER, 0.3),
    ("fredman", FOUNDATION, 0.4),
    ("_thick_", MID_THICKENER, 0.5),
    ("_balanced_", FOUNDATION, 0.4),
    ("_tight_", LEAD_POLISH, 0.4),
    ("r121", MID_THICKENER, 0.4),
    ("roswell", DARK_SPECIALTY, 0.7),
    ("md441", CUT_LAYER, 0.4),
    ("pr30", FOUNDATION, 0.35),
    ("md421", FOUNDATION, 0.25),
    ("m201", FOUNDATION, 0.25),
    ("e906", CUT_LAYER, 0.25),
    ("sm57", FOUNDATION, 0.15),
)

# Added to the foundation distance; lower wins
FOUNDATION_ROLE_BIAS = {
    FOUNDATION: -0.40,
    LEAD_POLISH: -0.10,
    MID_THICKENER: 0.10,
    CUT_LAYER: 0.15,
    FIZZ_TAMER: 0.25,
    DARK_SPECIALTY: 0.45,
}

# A non-Foundation best pick must beat the best Foundation by this much
FOUNDATION_PICK_MARGIN = 0.20


@dataclass(frozen=True)
class RolePreferences:
    preferred: tuple[tuple[str, str], ...]   # best pairing first
    good: tuple[str, ...]
    avoid: tuple[str, ...] = ()


INTENT_ROLE_PREFERENCES = {
    "rhythm": RolePreferences(
        preferred=(
            (FOUNDATION, MID_THICKENER),
            (FOUNDATION, CUT_LAYER),
            (FOUNDATION, FIZZ_TAMER),
            (FOUNDATION, FOUNDATION),
            (MID_THICKENER, CUT_LAYER),
            (MID_THICKENER, FIZZ_TAMER),
            (CUT_LAYER, DARK_SPECIALTY),
        ),
        good=(FOUNDATION, MID_THICKENER, FIZZ_TAMER, CUT_LAYER),
        avoid=(LEAD_POLISH,),
    ),
    "lead": RolePreferences(
        preferred=(
            (FOUNDATION, CUT_LAYER),
            (FOUNDATION, LEAD_POLISH),
            (CUT_LAYER, LEAD_POLISH),
            (CUT_LAYER, MID_THICKENER),
            (FOUNDATION, FOUNDATION),
            (CUT_LAYER, FIZZ_TAMER),
        ),
        good=(CUT_LAYER, LEAD_POLISH, FOUNDATION),
        avoid=(DARK_SPECIALTY,),
    ),
    "clean": RolePreferences(
        preferred=(
            (FOUNDATION, LEAD_POLISH),
            (FOUNDATION, FOUNDATION),
            (LEAD_POLISH, LEAD_POLISH),
            (FOUNDATION, CUT_LAYER),
            (LEAD_POLISH, MID_THICKENER),
            (FOUNDATION, DARK_SPECIALTY),
            (FOUNDATION, FIZZ_TAMER),
        ),
        good=(FOUNDATION, LEAD_POLISH, FIZZ_TAMER),
    ),
}


@dataclass
class SpeakerStats:
    mean: dict[str, float] = field(default_factory=dict)
    std: dict[str, float] = field(default_factory=dict)

    def z(self, key: str, value: float) -> float:
        return z_score(value, self.mean.get(key, 0.0), self.std.get(key, 1.0))


@dataclass
class WinRecord:
    wins: int = 0
    losses: int = 0
    both: int = 0                     # ties / "liked both" answers


def z_score(value: float, mean: float, std: float) -> float:
    """0 for non-finite inputs or a degenerate spread."""
    if not (is_finite_number(value) and is_finite_number(mean) and is_finite_number(std)) or std <= 1e-9:
        return 0.0
    return (value - mean) / std


def role_metrics(tf: TonalFeatures) -> dict[str, float]:
    """Scalars the role rules read; band values are percentages."""
    pct = tf.bands_percent
    mid = safe_number(pct.get("mid"))
    high_mid = safe_number(pct.get("high_mid"))
    return {
        "centroid": safe_number(tf.spectral_centroid_hz),
        "tilt": safe_number(tf.tilt_db_per_oct),
        "ext": safe_number(tf.rolloff_freq),
        "smooth": safe_number(tf.smooth_score),
        "sub_bass": safe_number(pct.get("sub_bass")),
        "bass": safe_number(pct.get("bass")),
        "low_mid": safe_number(pct.get("low_mid")),
        "mid": mid,
        "high_mid": high_mid,
        "presence": safe_number(pct.get("presence")),
        "air": safe_number(pct.get("air")),
        "hi_mid_mid": high_mid / mid if mid > 0 else 10.0,
    }


def _group_by_speaker(rows: Iterable[tuple[str, TonalFeatures]]) -> dict[str, list[tuple[str, TonalFeatures]]]:
    groups: dict[str, list[tuple[str, TonalFeatures]]] = {}
    for name, tf in rows:
        groups.setdefault(infer_speaker_prefix(name), []).append((name, tf))
    return groups


def compute_speaker_stats(rows: Iterable[tuple[str, TonalFeatures]]) -> dict[str, SpeakerStats]:
    """Per-speaker mean/std (population) of the role metrics, keyed by filename prefix."""
    stats = {}
    for speaker, group in _group_by_speaker(rows).items():
        metrics = [role_metrics(tf) for _, tf in group]
        mean, std = {}, {}
        for key in STAT_KEYS:
            values = np.array([m[key] for m in metrics], dtype=float)
            values = values[np.isfinite(values)]
            mean[key] = float(values.mean()) if values.size else 0.0
            std[key] = (float(values.std()) if values.size else 0.0) or 1.0
        stats[speaker] = SpeakerStats(mean=mean, std=std)
    return stats


def classify_musical_role(tf: TonalFeatures, stats: Optional[SpeakerStats] = None) -> str:
    m = role_metrics(tf)
    mid, low_mid, high_mid = m["mid"], m["low_mid"], m["high_mid"]
    presence, air, smooth = m["presence"], m["air"], m["smooth"]
    tilt, ext, centroid = m["tilt"], m["ext"], m["centroid"]

    body = m["sub_bass"] + m["bass"] + low_mid
    core = mid + low_mid
    cut_core = (high_mid + presence) / max(1e-6, core)

    relative = stats is not None
    zc = stats.z("centroid", centroid) if relative else 0.0
    ze = stats.z("ext", ext) if relative else 0.0
    zp = stats.z("presence", presence) if relative else 0.0
    zt = stats.z("tilt", tilt) if relative else 0.0
    za = stats.z("air", air) if relative else 0.0

    balanced = (
        22 <= mid <= 35
        and 18 <= presence <= 42
        and 18 <= high_mid <= 45
        and 1.10 <= cut_core <= 2.40
        and air <= 6.0
    )
    tilt_ok = abs(zt) <= 1.2 if relative else -5.5 <= tilt <= -1.0
    bright_enough = ext == 0 or (ze >= -0.2 if relative else ext >= 4200)
    if balanced and tilt_ok and bright_enough and body >= 18:
        return FOUNDATION

    if relative and abs(zc) <= 0.8 and (abs(zt) <= 1.2 or abs(ze) <= 0.8) and smooth >= 84:
        return FOUNDATION

    abs_dark = 0 < ext < 2900 or tilt <= -8.0
    if (mid >= 34 or body >= 28) and presence <= 36:
        very_dark = (ze <= -1.5 or (zt <= -1.5 and zc <= -0.9)) if relative else abs_dark
        if very_dark:
            return DARK_SPECIALTY
    else:
        dark = (ze <= -1.1 or (zt <= -1.2 and zc <= -0.6)) if relative else abs_dark
        if dark:
            return DARK_SPECIALTY

    extended = ext > 0 and (ze >= 0.6 if relative else ext >= 4200)
    top_end = (zc >= 0.4 or zp >= 0.3) if relative else (centroid >= 2500 or presence >= 20)
    if (
        extended
        and smooth >= 87
        and 14 <= presence <= 55
        and core >= 16
        and presence <= 58 and zp <= 1.9 and cut_core <= 3.4
        and top_end
    ):
        return LEAD_POLISH

    cut_forward = presence >= 50 or cut_core >= 3.0 or zp >= 1.15 or zc >= 1.15
    if cut_forward and core <= 24:
        return CUT_LAYER

    mid_heavy = mid >= 34 or low_mid >= 10 or body >= 24
    if mid_heavy and presence <= 36 and zp <= 0.35:
        return MID_THICKENER

    if relative and abs(zc) <= 0.9 and abs(ze) <= 1.0 and abs(zt) <= 1.3 and smooth >= 84:
        return FOUNDATION

    if relative:
        clearly_dark = zt <= -1.0 or ze <= -1.0
    else:
        rolled_off = 0 < ext <= 4500
        clearly_dark = rolled_off or tilt <= -5.2
    low_air = air <= 1.8 or za <= -0.3
    if clearly_dark and smooth >= 82 and low_air and zp <= -0.5:
        return FIZZ_TAMER

    if cut_forward and core <= 28:
        return CUT_LAYER
    if mid_heavy:
        return MID_THICKENER
    if tilt <= -4.8 or 0 < ext <= 4700 or zt <= -0.7:
        return FIZZ_TAMER
    return FOUNDATION


def apply_context_bias(
    role: str,
    tf: TonalFeatures,
    filename: str,
    stats: Optional[SpeakerStats] = None,
) -> str:
    """Let filename hints and a few measured traits overturn a close call."""
    name = (filename or "").lower()
    m = role_metrics(tf)
    tilt, ext, smooth, presence, air = m["tilt"], m["ext"], m["smooth"], m["presence"], m["air"]

    relative = stats is not None
    zc = stats.z("centroid", m["centroid"]) if relative else 0.0
    ze = stats.z("ext", ext) if relative else 0.0
    zp = stats.z("presence", presence) if relative else 0.0
    zr = stats.z("hi_mid_mid", m["hi_mid_mid"]) if relative else 0.0
    za = stats.z("air", air) if relative else 0.0
    zt = stats.z("tilt", tilt) if relative else 0.0

    clearly_dark = 0 < ext <= 3900 or tilt <= -5.8
    if role == FIZZ_TAMER and ("presence" in name or presence >= 28) and not clearly_dark:
        role = CUT_LAYER

    cutty = (zc >= 1.0 and ze >= 0.8) or zp >= 1.1 or zr >= 1.2
    if cutty and role == FOUNDATION:
        return CUT_LAYER

    scores = {r: 0.0 for r in ALL_ROLES}
    scores[role] = scores.get(role, 0.0) + 3.0
    for token, hinted, bonus in NAME_HINTS:
        if token in name:
            scores[hinted] += bonus

    sheen = (
        smooth >= 88 and ext >= 4800 and presence <= 48 and m["hi_mid_mid"] <= 1.75
        and tilt >= -5.2 and (air >= 2.0 or za >= 0.7)
    )
    if sheen:
        scores[LEAD_POLISH] += 0.9
    if 0 < ext < 3600 or tilt <= -6.2 or zt <= -1.3:
        scores[DARK_SPECIALTY] += 1.0

    best = role
    for r in ALL_ROLES:
        if scores[r] > scores[best]:
            best = r
    return best


def classify_ir(tf: TonalFeatures, filename: str, stats: Optional[SpeakerStats] = None) -> str:
    return apply_context_bias(classify_musical_role(tf, stats), tf, filename, stats)


def classify_irs(rows: Sequence[tuple[str, TonalFeatures]]) -> list[str]:
    """Roles for (filename, features) rows, each judged against its own speaker."""
    stats = compute_speaker_stats(rows)
    roles = [classify_ir(tf, name, stats.get(infer_speaker_prefix(name))) for name, tf in rows]
    log_event("DEBUG", "Roles", "Classified", irs=len(rows), speakers=len(stats))
    return roles


def score_role_pair_for_intent(role_a: str, role_b: str, intent: str) -> float:
    """How well two roles pair for an intent: 3.0 for the top pairing, down 0.4 per rank."""
    prefs = INTENT_ROLE_PREFERENCES.get(intent)
    if prefs is None:
        return 0.0

    pair = sorted((role_a, role_b))
    for i, preferred in enumerate(prefs.preferred):
        if sorted(preferred) == pair:
            return 3.0 - i * 0.4

    score = 0.0
    for role in (role_a, role_b):
        if role in prefs.good:
            score += 1.0
        if role in prefs.avoid:
            score -= 2.0
    return score


def soften_roles_from_learning(
    roles: Mapping[str, str],
    records: Mapping[str, WinRecord],
    intent: str,
) -> dict[str, str]:
    """Promote IRs the player keeps picking: clear winners become Foundation,
    steady winners move to the intent's first good role."""
    softened = dict(roles)
    prefs = INTENT_ROLE_PREFERENCES.get(intent)
    for name, rec in records.items():
        current = softened.get(name)
        if not current or current == FOUNDATION:
            continue

        net = rec.wins + rec.both * 0.5 - rec.losses
        total = rec.wins + rec.losses + rec.both
        if total < 2 or net <= 0:
            continue
        win_rate = (rec.wins + rec.both * 0.5) / max(1, total)

        if net >= 4 and win_rate >= 0.6:
            softened[name] = FOUNDATION
        elif net >= 2 and win_rate >= 0.5 and prefs is not None and current not in prefs.good:
            softened[name] = prefs.good[0]

        if softened[name] != current:
            log_event("DEBUG", "Roles", "Role softened", ir=name, old=current, new=softened[name])
    return softened


def foundation_distance(tf: TonalFeatures, role: str, stats: Optional[SpeakerStats] = None) -> float:
    """Distance from a speaker's tonal centre; lower makes a better foundation."""
    m = role_metrics(tf)
    d = 0.0
    if stats is not None:
        d += abs(stats.z("centroid", m["centroid"])) + abs(stats.z("tilt", m["tilt"])) + abs(stats.z("ext", m["ext"]))
    if m["smooth"]:
        d += (90 - m["smooth"]) / 10
    d += max(0.0, (m["presence"] - 22) / 30)
    d += max(0.0, (m["low_mid"] - 12) / 25)
    d += max(0.0, (m["air"] - 6) / 10)
    return d + FOUNDATION_ROLE_BIAS.get(role, 0.0)


def pick_foundation_candidates(
    rows: Sequence[tuple[str, TonalFeatures]],
    roles: Mapping[str, str],
) -> dict[str, str]:
    """Best foundation IR per speaker prefix.

    An IR already labelled Foundation is kept unless another IR of the same
    speaker sits closer to the speaker's centre by more than the margin.
    """
    stats = compute_speaker_stats(rows)
    picks = {}
    for speaker, group in _group_by_speaker(rows).items():
        best_all = best_foundation = None
        for name, tf in group:
            role = roles.get(name, FOUNDATION)
            d = foundation_distance(tf, role, stats.get(speaker))
            if best_all is None or d < best_all[1]:
                best_all = (name, d)
            if role == FOUNDATION and (best_foundation is None or d < best_foundation[1]):
                best_foundation = (name, d)

        if best_foundation is not None and best_all[1] + FOUNDATION_PICK_MARGIN >= best_foundation[1]:
            picks[speaker] = best_foundation[0]
        else:
            picks[speaker] = best_all[0]
    return picks
