"""
irscope - Taste Store
Per-context linear taste models learned from pairwise "A over B" votes and
persisted as a small versioned JSON document.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path, PurePath
from typing import Optional, Sequence

import numpy as np

from config import TasteConfig
from logging_utils import log_event
from tonal_engine import BAND_KEYS, TonalFeatures, blend_features, clamp, safe_number


STORE_VERSION = 1

TASTE_MODES = ("single_ir", "blend")
TASTE_INTENTS = ("rhythm", "lead", "clean")

# Feature vector layout produced by featurize_blend()
FEATURE_NAMES = tuple(f"{k}_db" for k in BAND_KEYS) + ("tilt_db_per_oct", "smooth_score")
TILT_INDEX = len(BAND_KEYS)


@dataclass(frozen=True)
class TasteContext:
    speaker_prefix: str
    mode: str = "blend"
    intent: str = "rhythm"

    def __post_init__(self):
        if self.mode not in TASTE_MODES:
            raise ValueError(f"mode must be one of {TASTE_MODES}, got {self.mode!r}")
        if self.intent not in TASTE_INTENTS:
            raise ValueError(f"intent must be one of {TASTE_INTENTS}, got {self.intent!r}")

    @property
    def key(self) -> str:
        return make_taste_key(self)


@dataclass
class TasteStatus:
    n_votes: int
    confidence: float


def make_taste_key(ctx: TasteContext) -> str:
    return f"{ctx.speaker_prefix}__{ctx.mode}__{ctx.intent}"


def infer_speaker_prefix(filename: str) -> str:
    """'v30_sm57_cap.wav' -> 'V30'."""
    base = PurePath(filename or "").name or (filename or "")
    first = base.split("_")[0]
    return first.upper() if first else "UNKNOWN"


def featurize_blend(
    base: TonalFeatures,
    feat: TonalFeatures,
    base_ratio: float,
    min_ratio: float = 0.3,
    max_ratio: float = 0.7,
) -> np.ndarray:
    """Shape dB per band + tilt + smoothness of the blend at base_ratio."""
    a = clamp(base_ratio, min_ratio, max_ratio)
    blended = blend_features(base, feat, a, 1 - a)
    return featurize(blended)


def featurize(features: TonalFeatures) -> np.ndarray:
    vec = [safe_number(features.bands_shape_db.get(k)) for k in BAND_KEYS]
    vec.append(safe_number(features.tilt_db_per_oct))
    vec.append(safe_number(features.smooth_score))
    return np.array(vec, dtype=float)


def _empty_state() -> dict:
    return {"version": STORE_VERSION, "models": {}}


class TasteStore:
    """JSON-file backed store of {context key: (weights, vote count)}."""

    def __init__(self, path: Path, config: Optional[TasteConfig] = None):
        self.path = Path(path)
        self.config = config or TasteConfig()

    def _load_state(self) -> dict:
        if not self.path.exists():
            return _empty_state()
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                parsed = json.load(f)
        except (OSError, ValueError) as e:
            log_event("WARNING", "Taste", "Could not read taste store, starting fresh", path=self.path, error=e)
            return _empty_state()
        if not isinstance(parsed, dict) or parsed.get("version") != STORE_VERSION:
            log_event("WARNING", "Taste", "Unsupported taste store version, starting fresh", path=self.path)
            return _empty_state()
        if not isinstance(parsed.get("models"), dict):
            parsed["models"] = {}
        return parsed

    def _save_state(self, state: dict) -> bool:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "w", encoding="utf-8") as f:
                json.dump(state, f, indent=2)
            return True
        except OSError as e:
            log_event("ERROR", "Taste", "Failed to save taste store", path=self.path, error=e)
            return False

    @staticmethod
    def _get_or_create_model(state: dict, key: str, dim: int) -> dict:
        existing = state["models"].get(key)
        if isinstance(existing, dict) and isinstance(existing.get("w"), list) and len(existing["w"]) == dim:
            return existing
        if existing is not None:
            log_event("INFO", "Taste", "Resetting model with mismatched dimension", key=key, dim=dim)
        fresh = {"w": [0.0] * dim, "n_votes": 0}
        state["models"][key] = fresh
        return fresh

    def _confidence(self, n_votes: int) -> float:
        return clamp(n_votes / self.config.confidence_votes, 0.0, 1.0)

    def _model(self, ctx: TasteContext) -> Optional[dict]:
        model = self._load_state()["models"].get(make_taste_key(ctx))
        if not isinstance(model, dict) or not isinstance(model.get("w"), list):
            return None
        return model

    def weights(self, ctx: TasteContext) -> Optional[np.ndarray]:
        model = self._model(ctx)
        if model is None:
            return None
        return np.array(model.get("w", []), dtype=float)

    def get_taste_bias(self, ctx: TasteContext, x: Sequence[float]) -> tuple[float, float]:
        """(w . x, confidence) for this context; (0, 0) when nothing is learned."""
        model = self._model(ctx)
        if model is None:
            return 0.0, 0.0
        w = np.asarray(model.get("w", []), dtype=float)
        xv = np.asarray(x, dtype=float)
        n = min(w.size, xv.size)
        bias = float(np.dot(w[:n], xv[:n]))
        return bias, self._confidence(int(model.get("n_votes", 0)))

    def record_preference(
        self,
        ctx: TasteContext,
        x_winner: Sequence[float],
        x_loser: Sequence[float],
        lr: Optional[float] = None,
        tie: bool = False,
    ) -> None:
        if tie:
            return

        rate = self.config.learning_rate if lr is None else lr
        state = self._load_state()
        key = make_taste_key(ctx)
        xw = np.asarray(x_winner, dtype=float)
        xl = np.asarray(x_loser, dtype=float)
        dim = min(xw.size, xl.size)
        model = self._get_or_create_model(state, key, dim)

        w = np.asarray(model["w"], dtype=float) + rate * (xw[:dim] - xl[:dim])
        model["w"] = [float(v) for v in w]
        model["n_votes"] = int(model.get("n_votes", 0)) + 1

        self._save_state(state)
        log_event("DEBUG", "Taste", "Vote recorded", key=key, n_votes=model["n_votes"])

    def reset(self, ctx: Optional[TasteContext] = None) -> None:
        if ctx is None:
            self._save_state(_empty_state())
            log_event("INFO", "Taste", "All taste models reset")
            return
        state = self._load_state()
        state["models"].pop(make_taste_key(ctx), None)
        self._save_state(state)
        log_event("INFO", "Taste", "Taste model reset", key=make_taste_key(ctx))

    def status(self, ctx: TasteContext) -> TasteStatus:
        model = self._model(ctx)
        n_votes = int(model.get("n_votes", 0)) if model is not None else 0
        return TasteStatus(n_votes=n_votes, confidence=self._confidence(n_votes))

    def contexts(self) -> list[str]:
        return sorted(self._load_state()["models"].keys())

    def simulate_votes(self, ctx: TasteContext, vectors: Sequence[Sequence[float]], count: int = 20) -> None:
        """Seed a model that prefers the brightest (highest tilt) vector."""
        if len(vectors) == 0:
            return

        tilt_index = len(vectors[0]) - 2
        ordered = sorted(
            vectors,
            key=lambda v: v[tilt_index] if len(v) > tilt_index else 0.0,
            reverse=True,
        )
        winner = ordered[0]
        losers = ordered[1:]

        for i in range(count):
            loser = losers[i % len(losers)] if losers else ordered[-1]
            self.record_preference(ctx, winner, loser, lr=self.config.simulate_learning_rate)
