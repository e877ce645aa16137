# irscope Configuration
# All default values and constants

from dataclasses import dataclass, field, is_dataclass
from typing import List

from logging_utils import log_event


CURRENT_CONFIG_VERSION = 1


@dataclass
class AnalysisConfig:
    """IR analyzer parameters"""
    fft_size: int = 8192                  # Zero-padded FFT length
    analysis_len: int = 4096              # Samples windowed with Blackman(analysis_len)
    clipping_threshold: float = 0.99      # |sample| at or above this counts as clipped
    clipping_ratio: float = 0.001         # Fraction of clipped samples that flags clipping
    min_crest_factor_db: float = 6.0      # Crest factor below this flags clipping
    truncated_ir_ms: float = 200.0        # Shorter IRs use decay extrapolation for noise floor
    smooth_min_hz: float = 75.0           # Smoothness scan range (Hz)
    smooth_max_hz: float = 5000.0
    max_expected_deviation: float = 25.0  # Byte deviation that maps to smoothness 0


@dataclass
class ScoringConfig:
    """Blend scoring weights (distance units, lower is better)"""
    shape_weight: float = 1.0
    tilt_weight: float = 2.0
    smooth_penalty_weight: float = 10.0
    notch_penalty_weight: float = 1.0
    rolloff_penalty_weight: float = 0.002
    redundancy_threshold: float = 0.94    # Shape correlation at/above this = redundant pair


@dataclass
class TasteConfig:
    """Per-context pairwise taste model"""
    learning_rate: float = 0.15
    simulate_learning_rate: float = 0.12
    confidence_votes: int = 30            # Votes needed for full confidence
    min_base_ratio: float = 0.3           # Base ratio clamp used when featurizing blends
    max_base_ratio: float = 0.7
    store_file: str = "taste.json"
    learner_file: str = "learner.json"    # Single-IR learner weights, next to the store


@dataclass
class TasteCheckConfig:
    """A/B taste-check tournament and ratio bisection"""
    ratio_grid: List[float] = field(default_factory=lambda: [0.7, 0.6, 0.5, 0.4, 0.3])
    max_rounds: int = 12                  # Ranking-phase rounds before forcing a winner
    settle_streak: int = 3                # Consecutive leader wins that end the ranking phase
    exploration: float = 1.4              # UCB1 exploration constant
    taste_weight: float = 25.0            # Max score points the learned taste can add/remove
    bias_scale: float = 50.0              # Taste bias that saturates tanh()
    win_rate_weight: float = 20.0         # Score points for a 100% win rate
    role_pair_weight: float = 2.0         # Prior points per unit of base/candidate role pairing
    bisection_tolerance: float = 0.05     # Stop bisection when interval width <= this
    max_bisection_steps: int = 6
    swap_sides: bool = True               # Randomize A/B sides to avoid position bias
    seed: int | None = None


@dataclass
class Config:
    """Master configuration"""
    version: int = 1                  # Schema version for persisted configs
    analysis: AnalysisConfig = field(default_factory=AnalysisConfig)
    scoring: ScoringConfig = field(default_factory=ScoringConfig)
    taste: TasteConfig = field(default_factory=TasteConfig)
    taste_check: TasteCheckConfig = field(default_factory=TasteCheckConfig)

    # Global
    log_level: str = "INFO"           # Logging level (DEBUG/INFO/WARNING/ERROR)
    report_generation_enabled: bool = True    # Write taste-check session reports
    profiles_file: str = "profiles.json"


def apply_dict_to_dataclass(target, data) -> None:
    """Recursively apply values from a dict onto a dataclass instance.
    Unknown keys are ignored."""
    if not isinstance(data, dict):
        return

    for key, value in data.items():
        if not hasattr(target, key):
            continue

        current = getattr(target, key)

        if is_dataclass(current) and isinstance(value, dict):
            apply_dict_to_dataclass(current, value)
            continue

        if is_dataclass(current):
            log_event("WARNING", "Config", "Ignoring non-object value for section", key=key)
            continue

        setattr(target, key, value)


def _float_or(value, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _int_or(value, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def migrate_config(config: Config, loaded_version) -> None:
    """Upgrade older config structures to the current schema.
    Fills defaults for missing/None fields, clamps ranges and bumps version."""
    version = _int_or(loaded_version, 0) if loaded_version is not None else 0

    if version < 1:
        if getattr(config.taste, 'store_file', None) in (None, ""):
            config.taste.store_file = "taste.json"
        if getattr(config, 'profiles_file', None) in (None, ""):
            config.profiles_file = "profiles.json"

    if getattr(config.taste, 'learner_file', None) in (None, ""):
        config.taste.learner_file = "learner.json"
    if getattr(config, 'report_generation_enabled', True) is None:
        config.report_generation_enabled = True
    if not isinstance(getattr(config, 'log_level', "INFO"), str):
        config.log_level = "INFO"

    # Base ratio window must stay inside (0, 1) with min < max
    lo = max(0.05, min(0.95, _float_or(config.taste.min_base_ratio, 0.3)))
    hi = max(0.05, min(0.95, _float_or(config.taste.max_base_ratio, 0.7)))
    if lo >= hi:
        lo, hi = 0.3, 0.7
    config.taste.min_base_ratio = lo
    config.taste.max_base_ratio = hi

    lr = _float_or(config.taste.learning_rate, 0.15)
    config.taste.learning_rate = lr if lr > 0 else 0.15
    sim_lr = _float_or(config.taste.simulate_learning_rate, 0.12)
    config.taste.simulate_learning_rate = sim_lr if sim_lr > 0 else 0.12
    config.taste.confidence_votes = max(1, _int_or(config.taste.confidence_votes, 30))

    tc = config.taste_check
    grid = tc.ratio_grid if isinstance(tc.ratio_grid, list) else []
    grid = [max(0.0, min(1.0, _float_or(r, 0.5))) for r in grid]
    tc.ratio_grid = grid or [0.7, 0.6, 0.5, 0.4, 0.3]
    tc.max_rounds = max(1, _int_or(tc.max_rounds, 12))
    tc.settle_streak = max(1, _int_or(tc.settle_streak, 3))
    tol = _float_or(tc.bisection_tolerance, 0.05)
    tc.bisection_tolerance = tol if tol > 0 else 0.05
    tc.max_bisection_steps = max(0, _int_or(tc.max_bisection_steps, 6))
    tc.role_pair_weight = max(0.0, _float_or(tc.role_pair_weight, 2.0))
    scale = _float_or(tc.bias_scale, 50.0)
    tc.bias_scale = scale if scale > 0 else 50.0

    threshold = _float_or(config.scoring.redundancy_threshold, 0.94)
    config.scoring.redundancy_threshold = max(-1.0, min(1.0, threshold))

    config.version = CURRENT_CONFIG_VERSION


# Default config instance
DEFAULT_CONFIG = Config()
