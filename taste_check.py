"""
irscope - Taste Check
Interactive A/B session that learns which feature IR (and which mix ratio)
a player prefers against a fixed base IR.

Two phases:
  ranking    bandit-style tournament. Each round pits the current leader
             against the challenger with the highest UCB1 value. Every vote
             trains the per-context TasteStore model, which in turn shifts
             the ranking of blends not yet heard.
  bisection  the winning feature IR's base ratio is narrowed by comparing
             the quarter points of the current interval and keeping the
             preferred half.
"""
from __future__ import annotations

import math
import random
import time
from dataclasses import dataclass, field
from typing import Callable, Mapping, Optional, Sequence

import numpy as np

from config import TasteCheckConfig, TasteConfig
from learner_scoring import LearnerScorer, metrics_from_features
from logging_utils import log_event
from musical_roles import WinRecord, classify_irs, score_role_pair_for_intent, soften_roles_from_learning
from preference_profiles import DEFAULT_PROFILES, PreferenceProfile, score_against_all_profiles
from taste_store import TasteContext, TasteStore, featurize_blend
from tonal_engine import (
    ScoreWeights,
    TonalFeatures,
    blend_features,
    clamp,
    distance_to_score,
    energy_to_percent,
    round_half_up,
    score_blend,
)

CHOICES = ("a", "b", "tie")

PHASE_RANKING = "ranking"
PHASE_BISECTION = "bisection"
PHASE_DONE = "done"


@dataclass(frozen=True)
class TonalTarget:
    """Explicit target curve; replaces profile matching for the prior."""
    shape_db: Mapping[str, float]
    tilt_db_per_oct: float

    @classmethod
    def from_features(cls, features: TonalFeatures) -> "TonalTarget":
        return cls(shape_db=dict(features.bands_shape_db), tilt_db_per_oct=features.tilt_db_per_oct)


@dataclass(eq=False)
class BlendOption:
    """One audible option: a feature IR blended with the base at base_ratio."""
    name: str
    base_ratio: float
    features: TonalFeatures
    vector: np.ndarray

    @property
    def label(self) -> str:
        base_pct = int(round_half_up(self.base_ratio * 100))
        return f"{self.name} @ {base_pct}/{100 - base_pct}"


@dataclass(eq=False)
class Candidate:
    name: str
    source: TonalFeatures
    option: BlendOption
    prior: float
    wins: int = 0
    losses: int = 0
    ties: int = 0
    role: str = ""

    @property
    def plays(self) -> int:
        return self.wins + self.losses + self.ties

    @property
    def win_rate(self) -> float:
        decisive = self.wins + self.losses
        return self.wins / decisive if decisive else 0.5


@dataclass(eq=False)
class Matchup:
    phase: str
    index: int
    a: BlendOption
    b: BlendOption


@dataclass
class RankedCandidate:
    name: str
    score: float
    prior: float
    base_ratio: float
    wins: int
    losses: int
    ties: int
    role: str = ""


@dataclass
class TasteCheckResult:
    winner: str
    base_ratio: float
    feature_ratio: float
    done: bool
    rounds: int
    bisection_steps: int
    votes: int
    ties: int
    ranking: list[RankedCandidate] = field(default_factory=list)


class TasteCheckSession:
    def __init__(
        self,
        base: TonalFeatures,
        features: Mapping[str, TonalFeatures],
        ctx: TasteContext,
        store: TasteStore,
        config: Optional[TasteCheckConfig] = None,
        taste_config: Optional[TasteConfig] = None,
        profiles: Sequence[PreferenceProfile] = DEFAULT_PROFILES,
        target: Optional[TonalTarget] = None,
        score_weights: Optional[ScoreWeights] = None,
        learner: Optional[LearnerScorer] = None,
        rng: Optional[random.Random] = None,
        base_name: str = "base",
    ):
        if not features:
            raise ValueError("taste check needs at least one feature IR")

        self.base = base
        self.base_name = base_name
        self.ctx = ctx
        self.store = store
        self.config = config or TasteCheckConfig()
        self.taste_config = taste_config or store.config
        self.profiles = profiles
        self.target = target
        self.score_weights = score_weights
        self.learner = learner
        self.rng = rng or random.Random(self.config.seed)

        names = list(features)
        roles = classify_irs([(base_name, base)] + [(name, features[name]) for name in names])
        self.base_role = roles[0]
        self.candidates = [
            self._make_candidate(name, features[name], role) for name, role in zip(names, roles[1:])
        ]

        self.phase = PHASE_RANKING
        self.rounds = 0
        self.votes = 0
        self.tie_count = 0
        self.bisection_steps = 0
        self.started_at = time.time()
        self.ended_at: Optional[float] = None

        self._pending: Optional[Matchup] = None
        self._pending_leader: Optional[str] = None
        self._leader_streak = 0
        self._streak_holder: Optional[str] = None
        self._winner: Optional[Candidate] = None
        self._lo = self.taste_config.min_base_ratio
        self._hi = self.taste_config.max_base_ratio

        log_event(
            "INFO",
            "TasteCheck",
            "Session started",
            context=ctx.key,
            base=base_name,
            candidates=len(self.candidates),
        )

        if len(self.candidates) == 1:
            self._finish_ranking()

    # ------------------------------------------------------------------
    # Candidates and scoring
    # ------------------------------------------------------------------
    def make_option(self, name: str, feat: TonalFeatures, base_ratio: float) -> BlendOption:
        ratio = clamp(base_ratio, 0.0, 1.0)
        blended = blend_features(self.base, feat, ratio, 1 - ratio)
        vector = featurize_blend(
            self.base,
            feat,
            ratio,
            self.taste_config.min_base_ratio,
            self.taste_config.max_base_ratio,
        )
        return BlendOption(name=name, base_ratio=ratio, features=blended, vector=vector)

    def prior_score(self, option: BlendOption) -> float:
        """0-100 score of a blend before any taste is applied."""
        if self.target is not None:
            distance = score_blend(
                option.features,
                self.target.shape_db,
                self.target.tilt_db_per_oct,
                self.score_weights,
            )
            return float(distance_to_score(distance))
        six_band = energy_to_percent(option.features.bands_raw)
        _, best = score_against_all_profiles(six_band, self.profiles)
        return float(best.score)

    def _make_candidate(self, name: str, feat: TonalFeatures, role: str = "") -> Candidate:
        best_option = None
        best_prior = -1.0
        for ratio in self.config.ratio_grid:
            option = self.make_option(name, feat, ratio)
            prior = self.prior_score(option)
            if prior > best_prior:
                best_option, best_prior = option, prior
        if role:
            pairing = score_role_pair_for_intent(self.base_role, role, self.ctx.intent)
            best_prior = clamp(best_prior + self.config.role_pair_weight * pairing, 0.0, 100.0)
        return Candidate(name=name, source=feat, option=best_option, prior=best_prior, role=role)

    def _taste_snapshot(self) -> tuple[Optional[np.ndarray], float]:
        w = self.store.weights(self.ctx)
        if w is None:
            return None, 0.0
        return w, self.store.status(self.ctx).confidence

    def _taste_term(self, option: BlendOption, w: Optional[np.ndarray], confidence: float) -> float:
        if w is None or confidence <= 0:
            return 0.0
        n = min(w.size, option.vector.size)
        bias = float(np.dot(w[:n], option.vector[:n]))
        return self.config.taste_weight * confidence * math.tanh(bias / self.config.bias_scale)

    def _score(self, c: Candidate, w: Optional[np.ndarray], confidence: float) -> float:
        score = c.prior + self._taste_term(c.option, w, confidence)
        if c.wins + c.losses:
            score += self.config.win_rate_weight * (c.win_rate - 0.5)
        return score

    def _ranked(self) -> list[tuple[Candidate, float]]:
        w, confidence = self._taste_snapshot()
        scored = [(c, self._score(c, w, confidence)) for c in self.candidates]
        scored.sort(key=lambda pair: (-pair[1], -pair[0].prior, pair[0].name))
        return scored

    def roles(self) -> dict[str, str]:
        """Candidate roles, promoted for IRs this session keeps picking."""
        return soften_roles_from_learning(
            {c.name: c.role for c in self.candidates},
            {c.name: WinRecord(c.wins, c.losses, c.ties) for c in self.candidates},
            self.ctx.intent,
        )

    def ranking(self) -> list[RankedCandidate]:
        roles = self.roles()
        return [
            RankedCandidate(
                name=c.name,
                score=round(score, 2),
                prior=c.prior,
                base_ratio=c.option.base_ratio,
                wins=c.wins,
                losses=c.losses,
                ties=c.ties,
                role=roles.get(c.name, c.role),
            )
            for c, score in self._ranked()
        ]

    def _ucb(self, c: Candidate, total_plays: int) -> float:
        if c.plays == 0:
            return math.inf
        return c.win_rate + self.config.exploration * math.sqrt(math.log(total_plays + 1) / c.plays)

    # ------------------------------------------------------------------
    # Session flow
    # ------------------------------------------------------------------
    @property
    def done(self) -> bool:
        return self.phase == PHASE_DONE

    @property
    def ratio_interval(self) -> tuple[float, float]:
        return self._lo, self._hi

    def next_matchup(self) -> Optional[Matchup]:
        """Pending A/B pair, creating one if needed. None once the session is done."""
        if self._pending is not None:
            return self._pending
        if self.phase == PHASE_RANKING:
            self._pending = self._next_ranking_matchup()
        elif self.phase == PHASE_BISECTION:
            self._pending = self._next_bisection_matchup()
        return self._pending

    def _maybe_swap(self, a: BlendOption, b: BlendOption) -> tuple[BlendOption, BlendOption]:
        if self.config.swap_sides and self.rng.random() < 0.5:
            return b, a
        return a, b

    def _next_ranking_matchup(self) -> Matchup:
        ranked = [c for c, _ in self._ranked()]
        leader = ranked[0]
        total_plays = sum(c.plays for c in self.candidates)

        challenger = None
        best_ucb = -math.inf
        for c in ranked[1:]:
            ucb = self._ucb(c, total_plays)
            if ucb > best_ucb:
                challenger, best_ucb = c, ucb

        self._pending_leader = leader.name
        a, b = self._maybe_swap(leader.option, challenger.option)
        return Matchup(phase=PHASE_RANKING, index=self.rounds + 1, a=a, b=b)

    def _next_bisection_matchup(self) -> Matchup:
        width = self._hi - self._lo
        low_option = self.make_option(self._winner.name, self._winner.source, self._lo + width / 4)
        high_option = self.make_option(self._winner.name, self._winner.source, self._hi - width / 4)
        a, b = self._maybe_swap(low_option, high_option)
        return Matchup(phase=PHASE_BISECTION, index=self.bisection_steps + 1, a=a, b=b)

    def submit(self, choice: str) -> None:
        """Answer the pending matchup with "a", "b" or "tie"."""
        choice = (choice or "").strip().lower()
        if choice not in CHOICES:
            raise ValueError(f"choice must be one of {CHOICES}, got {choice!r}")
        matchup = self._pending
        if matchup is None:
            raise RuntimeError("no pending matchup; call next_matchup() first")
        self._pending = None

        if choice == "tie":
            winner = loser = None
            self.tie_count += 1
        else:
            winner, loser = (matchup.a, matchup.b) if choice == "a" else (matchup.b, matchup.a)
            self._learn(winner, loser)

        if matchup.phase == PHASE_RANKING:
            self._apply_ranking_vote(matchup, winner, loser)
        else:
            self._apply_bisection_vote(matchup, winner)

    def _learn(self, winner: BlendOption, loser: BlendOption) -> None:
        self.votes += 1
        self.store.record_preference(self.ctx, winner.vector, loser.vector, lr=self.taste_config.learning_rate)
        if self.learner is not None:
            self.learner.update_weights_from_vote(
                metrics_from_features(winner.features),
                metrics_from_features(loser.features),
            )

    def _candidate(self, name: str) -> Candidate:
        for c in self.candidates:
            if c.name == name:
                return c
        raise KeyError(name)

    def _apply_ranking_vote(self, matchup: Matchup, winner: Optional[BlendOption], loser: Optional[BlendOption]) -> None:
        self.rounds += 1
        if winner is None:
            self._candidate(matchup.a.name).ties += 1
            self._candidate(matchup.b.name).ties += 1
            self._leader_streak = 0
            self._streak_holder = None
        else:
            self._candidate(winner.name).wins += 1
            self._candidate(loser.name).losses += 1
            if winner.name != self._pending_leader:
                self._leader_streak = 0
                self._streak_holder = None
            elif winner.name == self._streak_holder:
                self._leader_streak += 1
            else:
                self._streak_holder = winner.name
                self._leader_streak = 1

        log_event(
            "DEBUG",
            "TasteCheck",
            "Ranking vote",
            round=self.rounds,
            winner=winner.label if winner else "tie",
            streak=self._leader_streak,
        )

        if self._leader_streak >= self.config.settle_streak:
            self._finish_ranking(self._streak_holder)
        elif self.rounds >= self.config.max_rounds:
            self._finish_ranking()

    def _finish_ranking(self, holder: Optional[str] = None) -> None:
        # a settled streak decides the winner, otherwise the current ranking does
        self._winner = self._candidate(holder) if holder else self._ranked()[0][0]
        self.phase = PHASE_BISECTION
        log_event(
            "INFO",
            "TasteCheck",
            "Ranking settled",
            winner=self._winner.name,
            rounds=self.rounds,
        )
        self._check_bisection_done()

    def _apply_bisection_vote(self, matchup: Matchup, winner: Optional[BlendOption]) -> None:
        self.bisection_steps += 1
        width = self._hi - self._lo
        low_ratio = self._lo + width / 4
        high_ratio = self._hi - width / 4
        mid = (self._lo + self._hi) / 2

        if winner is None:
            self._lo, self._hi = low_ratio, high_ratio
        elif winner.base_ratio <= mid:
            self._hi = mid
        else:
            self._lo = mid

        log_event(
            "DEBUG",
            "TasteCheck",
            "Bisection vote",
            step=self.bisection_steps,
            lo=self._lo,
            hi=self._hi,
        )
        self._check_bisection_done()

    def _check_bisection_done(self) -> None:
        width = self._hi - self._lo
        if width <= self.config.bisection_tolerance + 1e-12 or self.bisection_steps >= self.config.max_bisection_steps:
            self.phase = PHASE_DONE
            self.ended_at = time.time()
            result = self.result()
            log_event(
                "INFO",
                "TasteCheck",
                "Session finished",
                winner=result.winner,
                base_ratio=result.base_ratio,
                votes=self.votes,
            )

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------
    def current_ratio(self) -> float:
        winner = self._winner or self._ranked()[0][0]
        if self.bisection_steps == 0:
            return winner.option.base_ratio
        return round_half_up((self._lo + self._hi) / 2, 2)

    def result(self) -> TasteCheckResult:
        winner = self._winner or self._ranked()[0][0]
        base_ratio = self.current_ratio()
        return TasteCheckResult(
            winner=winner.name,
            base_ratio=base_ratio,
            feature_ratio=round_half_up(1 - base_ratio, 2),
            done=self.done,
            rounds=self.rounds,
            bisection_steps=self.bisection_steps,
            votes=self.votes,
            ties=self.tie_count,
            ranking=self.ranking(),
        )

    def summary(self) -> dict:
        """Flat summary for session reports."""
        result = self.result()
        status = self.store.status(self.ctx)
        return {
            "session_started_at": self.started_at,
            "session_ended_at": self.ended_at or time.time(),
            "context": self.ctx.key,
            "base": self.base_name,
            "candidates": len(self.candidates),
            "rounds": result.rounds,
            "bisection_steps": result.bisection_steps,
            "votes": result.votes,
            "ties": result.ties,
            "winner": result.winner,
            "winner_role": self.roles().get(result.winner, ""),
            "base_ratio": result.base_ratio,
            "feature_ratio": result.feature_ratio,
            "completed": result.done,
            "context_votes": status.n_votes,
            "context_confidence": status.confidence,
        }


def run_taste_check(session: TasteCheckSession, chooser: Callable[[Matchup], str]) -> TasteCheckResult:
    """Drive a session to completion, asking chooser for every matchup."""
    while not session.done:
        matchup = session.next_matchup()
        if matchup is None:
            break
        session.submit(chooser(matchup))
    return session.result()
