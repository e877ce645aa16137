"""IR audio I/O: WAV load/save, waveform blending and audition playback.

Blends produced here are what the taste check plays; the tonal side of the
same blend is computed from band energies in tonal_engine.
"""

from math import gcd
from pathlib import Path

import numpy as np
from scipy.io import wavfile
from scipy.signal import fftconvolve, resample_poly

from logging_utils import log_event


BLEND_PEAK_LIMIT = 0.98


def load_ir(path):
    """Load a WAV IR as mono float64 in [-1, 1].

    Returns (samples, sample_rate). Multi-channel files keep the first channel.
    """
    sample_rate, data = wavfile.read(str(path))
    if data.dtype == np.int16:
        samples = data.astype(np.float64) / 32768.0
    elif data.dtype == np.int32:
        samples = data.astype(np.float64) / 2147483648.0
    elif data.dtype == np.uint8:
        samples = (data.astype(np.float64) - 128.0) / 128.0
    else:
        samples = data.astype(np.float64)
    if samples.ndim > 1:
        samples = samples[:, 0]
    if samples.size == 0:
        raise ValueError(f"{Path(path).name}: WAV file has no samples")
    return samples, int(sample_rate)


def save_ir(path, samples, sample_rate):
    """Write a float32 WAV (no normalization, IR levels are meaningful)."""
    out = np.clip(np.asarray(samples, dtype=np.float64), -1.0, 1.0).astype(np.float32)
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    wavfile.write(str(path), int(sample_rate), out)
    log_event("INFO", "Audio", "Saved IR", path=path, samples=out.size, sample_rate=sample_rate)


def resample(samples, from_sr, to_sr):
    if from_sr == to_sr:
        return np.asarray(samples, dtype=np.float64)
    g = gcd(int(to_sr), int(from_sr))
    return resample_poly(samples, int(to_sr) // g, int(from_sr) // g)


def blend_ir_samples(base, feature, base_ratio, sr_base, sr_feature=None):
    """Mix two IR waveforms with amplitude gains base_ratio / 1 - base_ratio.

    The feature IR is resampled to the base rate, the shorter IR is zero
    padded, and the result is peak-limited so it never exceeds 0.98.
    Returns (samples, sample_rate).
    """
    if not 0.0 <= base_ratio <= 1.0:
        raise ValueError(f"base_ratio must be within [0, 1], got {base_ratio}")
    sr_feature = sr_base if sr_feature is None else sr_feature

    a = np.asarray(base, dtype=np.float64)
    b = resample(feature, sr_feature, sr_base)
    if a.size == 0 or b.size == 0:
        raise ValueError("cannot blend an empty IR")

    n = max(a.size, b.size)
    mixed = np.zeros(n)
    mixed[:a.size] += a * base_ratio
    mixed[:b.size] += b * (1.0 - base_ratio)

    peak = float(np.max(np.abs(mixed)))
    if peak > BLEND_PEAK_LIMIT:
        mixed *= BLEND_PEAK_LIMIT / peak
    return mixed, sr_base


def make_test_pluck(sample_rate=48000, seconds=1.5, freq=110.0, seed=0):
    """Synthetic palm-muted pluck: noisy attack plus decaying harmonics."""
    n = int(sample_rate * seconds)
    t = np.arange(n) / sample_rate
    rng = np.random.default_rng(seed)

    tone = np.zeros(n)
    for h in range(1, 9):
        tone += np.sin(2 * np.pi * freq * h * t) * np.exp(-t * (3.0 + h)) / h
    attack = rng.standard_normal(n) * np.exp(-t * 60.0) * 0.3
    pluck = tone + attack

    peak = float(np.max(np.abs(pluck)))
    return pluck / peak * 0.5 if peak > 0 else pluck


def render_audition(ir, sample_rate, dry=None):
    """Convolve a dry signal (default: test pluck) with the IR, normalized to 0.9 peak."""
    if dry is None:
        dry = make_test_pluck(sample_rate)
    wet = fftconvolve(np.asarray(dry, dtype=np.float64), np.asarray(ir, dtype=np.float64))
    peak = float(np.max(np.abs(wet))) if wet.size else 0.0
    if peak > 0:
        wet = wet / peak * 0.9
    return wet


def audition(ir, sample_rate, dry=None, blocking=True):
    """Play the IR through the default output device."""
    import sounddevice as sd

    wet = render_audition(ir, sample_rate, dry)
    log_event("DEBUG", "Audio", "Audition", samples=wet.size, sample_rate=sample_rate)
    sd.play(wet.astype(np.float32), sample_rate)
    if blocking:
        sd.wait()
