import numpy as np


MIN_DB = -100.0
MAX_DB = -30.0


def magnitude_spectrum_bytes(
    samples: np.ndarray,
    fft_size: int = 8192,
    analysis_len: int = 4096,
    min_db: float = MIN_DB,
    max_db: float = MAX_DB,
) -> np.ndarray:
    """Blackman-windowed head of the signal -> 0-255 magnitude per bin (fft_size // 2 bins).

    The window always spans analysis_len samples so short and long renders of
    the same IR are windowed identically; the rest of the frame is zero padding.
    """
    if fft_size <= 0 or analysis_len <= 1:
        raise ValueError("fft_size and analysis_len must be positive")

    frame = np.zeros(fft_size, dtype=float)
    copy_len = min(len(samples), analysis_len, fft_size)
    window = np.blackman(analysis_len)[:copy_len]
    frame[:copy_len] = np.asarray(samples[:copy_len], dtype=float) * window

    mags = np.abs(np.fft.fft(frame)[: fft_size // 2]) / fft_size
    with np.errstate(divide="ignore"):
        db = np.where(mags > 0, 20 * np.log10(np.maximum(mags, 1e-300)), -200.0)
    db = np.clip(db, min_db, max_db)
    return np.floor((db - min_db) / (max_db - min_db) * 255 + 0.5).astype(np.uint8)


def bin_frequencies(n_bins: int, sample_rate: float, fft_size: int) -> np.ndarray:
    return np.arange(n_bins) * (sample_rate / fft_size)


def band_energy(
    energy: np.ndarray,
    freqs: np.ndarray,
    low: float,
    high: float,
    include_high: bool = False,
) -> float:
    """Sum of energy for bins in [low, high) (or [low, high] with include_high)."""
    upper = freqs <= high if include_high else freqs < high
    return float(np.sum(energy[(freqs >= low) & upper]))


def spectral_centroid(magnitudes: np.ndarray, freqs: np.ndarray) -> float:
    mags = np.asarray(magnitudes, dtype=float)
    total = float(np.sum(mags))
    if total <= 0:
        return 0.0
    return float(np.sum(freqs * mags) / total)


def dominant_frequency(
    spectrum: np.ndarray | None,
    sample_rate: int,
    freq_low: float,
    freq_high: float,
) -> float:
    """Peak frequency of a half spectrum inside [freq_low, freq_high] Hz."""
    if spectrum is None or len(spectrum) == 0:
        return 0.0

    freq_per_bin = sample_rate / (2 * len(spectrum))
    if freq_per_bin <= 0:
        return 0.0

    low_bin = max(0, int(freq_low / freq_per_bin))
    high_bin = min(len(spectrum) - 1, int(freq_high / freq_per_bin))
    if low_bin >= high_bin:
        return 0.0

    band = np.asarray(spectrum[low_bin:high_bin + 1], dtype=float)
    peak_bin = low_bin + int(np.argmax(band))
    return peak_bin * freq_per_bin
