"""
irscope - IR Analysis
Mono IR samples -> IRMetrics: level/clipping, byte-scaled FFT spectrum,
3- and 7-band energies, centroid, smoothness and noise floor.
"""
from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Optional

import numpy as np

from config import AnalysisConfig
from frequency_utils import (
    band_energy,
    bin_frequencies,
    dominant_frequency,
    magnitude_spectrum_bytes,
    spectral_centroid,
)
from ir_audio import load_ir
from logging_utils import log_event


# (metric field, low Hz, high Hz, high edge inclusive)
THREE_BANDS = (
    ("low_energy", 20, 250, False),
    ("mid_energy", 250, 4000, False),
    ("high_energy", 4000, 20000, True),
)

SEVEN_BANDS = (
    ("sub_bass_energy", 20, 120, False),
    ("bass_energy", 120, 250, False),
    ("low_mid_energy", 250, 500, False),
    ("mid_energy_6", 500, 2000, False),
    ("high_mid_energy", 2000, 4000, False),
    ("presence_energy", 4000, 8000, False),
    ("ultra_high_energy", 8000, 20000, True),
)

NOISE_FLOOR_UNKNOWN_DB = -72.0
NOISE_FLOOR_SILENT_DB = -96.0
NOISE_REFERENCE_MS = 200.0
NOISE_WINDOW_MS = 15.0


@dataclass
class IRMetrics:
    duration_ms: int
    duration_samples: int
    sample_rate: int
    peak_amplitude_db: float
    spectral_centroid: float
    low_energy: float
    mid_energy: float
    high_energy: float
    sub_bass_energy: float
    bass_energy: float
    low_mid_energy: float
    mid_energy_6: float
    high_mid_energy: float
    presence_energy: float
    ultra_high_energy: float
    has_clipping: bool
    clipped_samples: int
    crest_factor_db: float
    frequency_smoothness: float
    noise_floor_db: float
    is_truncated_ir: bool
    peak_freq_hz: float = 0.0
    frequency_data: list[int] = field(default_factory=list, repr=False)

    def as_metrics(self, include_spectrum: bool = False) -> dict:
        """Plain dict usable wherever a metrics mapping is expected."""
        data = asdict(self)
        if not include_spectrum:
            data.pop("frequency_data", None)
        return data


def _db(value: float, floor: float = NOISE_FLOOR_SILENT_DB) -> float:
    return 20 * math.log10(value) if value > 0 else floor


def _rms(x: np.ndarray) -> float:
    return float(np.sqrt(np.mean(x * x))) if x.size else 0.0


def frequency_smoothness(
    spectrum: np.ndarray,
    sample_rate: int,
    fft_size: int,
    original_length: int,
    config: Optional[AnalysisConfig] = None,
) -> float:
    """0-100, higher = fewer peaks and notches between smooth_min_hz and smooth_max_hz.

    The sliding window is widened to the IR's real frequency resolution so
    zero-padded short IRs do not read artificially smooth.
    """
    cfg = config or AnalysisConfig()
    bin_size = sample_rate / fft_size
    interpolation = max(1, math.floor(fft_size / max(1, original_length) + 0.5))
    min_bin = math.floor(cfg.smooth_min_hz / bin_size)
    max_bin = min(math.floor(cfg.smooth_max_hz / bin_size), len(spectrum) - 1)
    win = max(5, math.ceil(interpolation / 2))
    step = max(1, interpolation // 2)

    centers = np.arange(min_bin + win, max_bin - win, step)
    if centers.size == 0:
        return 100.0

    values = spectrum.astype(float)
    csum = np.concatenate(([0.0], np.cumsum(values)))
    local_avg = (csum[centers + win + 1] - csum[centers - win]) / (2 * win + 1)
    avg_deviation = float(np.mean(np.abs(values[centers] - local_avg)))
    return max(0.0, min(100.0, 100 * (1 - avg_deviation / cfg.max_expected_deviation)))


def noise_floor_db(samples: np.ndarray, sample_rate: int, truncated: bool) -> float:
    """Quietest tail level for long IRs; decay extrapolated to 200 ms for truncated ones."""
    n = len(samples)
    if truncated:
        q_len = n // 4
        if n < 16 or q_len < 8:
            return NOISE_FLOOR_UNKNOWN_DB
        q_first = _rms(samples[:q_len])
        q_last = _rms(samples[3 * q_len:])
        if not (q_first > 0 and q_last > 0 and q_first > q_last):
            return NOISE_FLOOR_UNKNOWN_DB
        span_ms = (3 * q_len / sample_rate) * 1000
        decay_per_ms = (_db(q_first) - _db(q_last)) / span_ms if span_ms > 0 else 0.0
        extrapolated = _db(q_first) - decay_per_ms * NOISE_REFERENCE_MS
        return max(-96.0, min(-40.0, extrapolated))

    window = max(4, int(sample_rate * NOISE_WINDOW_MS / 1000))
    step = max(1, window // 2)
    quietest = math.inf
    for start in range(int(n * 0.4), n - window + 1, step):
        quietest = min(quietest, _rms(samples[start:start + window]))
    quietest = min(quietest, _rms(samples[max(0, n - window):]))

    if not math.isfinite(quietest) or quietest <= 0:
        return NOISE_FLOOR_SILENT_DB
    return _db(quietest)


def analyze_ir(samples: np.ndarray, sample_rate: int, config: Optional[AnalysisConfig] = None) -> IRMetrics:
    cfg = config or AnalysisConfig()
    if sample_rate <= 0:
        raise ValueError(f"sample rate must be positive, got {sample_rate}")

    data = np.asarray(samples, dtype=float)
    if data.ndim > 1:
        data = data[:, 0]
    if data.size == 0:
        raise ValueError("cannot analyze an empty IR")
    data = data.copy()
    n = data.size

    # Level and clipping are judged on the raw signal
    abs_data = np.abs(data)
    peak = float(np.max(abs_data))
    rms = _rms(data)
    clipped = int(np.count_nonzero(abs_data >= cfg.clipping_threshold))
    crest_db = 20 * math.log10(peak / rms if peak > 0 and rms > 0 else 1.0)
    has_clipping = clipped / n > cfg.clipping_ratio or crest_db < cfg.min_crest_factor_db

    if 0 < peak < 1.0:
        data /= peak
        peak = 1.0
    peak_db = _db(peak)

    spectrum = magnitude_spectrum_bytes(data, cfg.fft_size, cfg.analysis_len)
    freqs = bin_frequencies(spectrum.size, sample_rate, cfg.fft_size)
    energy = spectrum.astype(float) ** 2
    total = float(np.sum(energy))

    def share(low, high, inclusive):
        return round(band_energy(energy, freqs, low, high, inclusive) / total, 4) if total > 0 else 0.0

    bands = {name: share(lo, hi, inc) for name, lo, hi, inc in THREE_BANDS + SEVEN_BANDS}

    duration_ms = n / sample_rate * 1000
    truncated = duration_ms < cfg.truncated_ir_ms

    metrics = IRMetrics(
        duration_ms=int(math.floor(duration_ms + 0.5)),
        duration_samples=n,
        sample_rate=int(sample_rate),
        peak_amplitude_db=round(peak_db, 2),
        spectral_centroid=round(spectral_centroid(spectrum, freqs), 2),
        has_clipping=bool(has_clipping),
        clipped_samples=clipped,
        crest_factor_db=round(crest_db, 2),
        frequency_smoothness=round(frequency_smoothness(spectrum, sample_rate, cfg.fft_size, n, cfg), 1),
        noise_floor_db=round(noise_floor_db(data, sample_rate, truncated), 1),
        is_truncated_ir=truncated,
        peak_freq_hz=round(dominant_frequency(spectrum, sample_rate, 75.0, 8000.0), 1),
        frequency_data=[int(v) for v in spectrum],
        **bands,
    )

    if metrics.has_clipping:
        log_event(
            "WARNING",
            "Analysis",
            "Possible clipping",
            clipped=clipped,
            crest_db=metrics.crest_factor_db,
        )
    return metrics


def analyze_file(path, config: Optional[AnalysisConfig] = None) -> IRMetrics:
    samples, sample_rate = load_ir(path)
    metrics = analyze_ir(samples, sample_rate, config)
    log_event(
        "DEBUG",
        "Analysis",
        "Analyzed",
        file=Path(path).name,
        centroid=metrics.spectral_centroid,
        smooth=metrics.frequency_smoothness,
    )
    return metrics
