import json
from dataclasses import asdict
from pathlib import Path
from typing import Sequence

from logging_utils import log_event
from preference_profiles import DEFAULT_PROFILES, BandTarget, PreferenceProfile


# Nested target keys written by older profile exports
_LEGACY_TARGET_KEYS = {
    "mid": ("mid",),
    "high_mid": ("highMid", "high_mid"),
    "presence": ("presence",),
    "ratio": ("ratio",),
}


def _band_target(data, where: str) -> BandTarget:
    if not isinstance(data, dict):
        raise ValueError(f"{where}: expected an object with low/high/ideal")
    low = data.get("low", data.get("min"))
    high = data.get("high", data.get("max"))
    ideal = data.get("ideal")
    try:
        low, high = float(low), float(high)
        ideal = (low + high) / 2 if ideal is None else float(ideal)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{where}: low/high/ideal must be numbers") from exc
    if low > high:
        raise ValueError(f"{where}: low {low} is above high {high}")
    return BandTarget(low, high, ideal)


def _cap(data, where: str) -> float:
    value = data.get("max") if isinstance(data, dict) else data
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{where}: cap must be a number") from exc


def profile_to_dict(profile: PreferenceProfile) -> dict:
    return asdict(profile)


def profile_from_dict(data: dict) -> PreferenceProfile:
    """Build a profile from the flat saved shape or the legacy nested 'targets' shape."""
    if not isinstance(data, dict):
        raise ValueError("profile must be an object")
    name = data.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ValueError("profile needs a non-empty name")

    targets = data.get("targets")
    if isinstance(targets, dict):
        bands = {}
        for field_name, keys in _LEGACY_TARGET_KEYS.items():
            raw = next((targets[k] for k in keys if k in targets), None)
            bands[field_name] = _band_target(raw, f"{name}.{keys[0]}")
        low_end_max = _cap(targets.get("lowEnd"), f"{name}.lowEnd")
        low_mid_max = _cap(targets.get("lowMid"), f"{name}.lowMid")
    else:
        bands = {k: _band_target(data.get(k), f"{name}.{k}") for k in _LEGACY_TARGET_KEYS}
        low_end_max = _cap(data.get("low_end_max"), f"{name}.low_end_max")
        low_mid_max = _cap(data.get("low_mid_max"), f"{name}.low_mid_max")

    return PreferenceProfile(
        name=name.strip(),
        description=str(data.get("description", "")),
        low_end_max=low_end_max,
        low_mid_max=low_mid_max,
        **bands,
    )


def save_profiles(profiles_file: Path, profiles: Sequence[PreferenceProfile]) -> None:
    """Persist profiles to disk."""
    profiles_file = Path(profiles_file)
    profiles_file.parent.mkdir(parents=True, exist_ok=True)
    payload = {"profiles": [profile_to_dict(p) for p in profiles]}
    with open(profiles_file, 'w', encoding='utf-8') as f:
        json.dump(payload, f, indent=2)


def load_profiles(profiles_file: Path) -> tuple[PreferenceProfile, ...]:
    """Load user profiles, falling back to the built-in Featured/Body pair."""
    profiles_file = Path(profiles_file)
    if not profiles_file.exists():
        return DEFAULT_PROFILES

    try:
        with open(profiles_file, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        log_event("WARNING", "Profiles", "Could not read profiles, using defaults", path=profiles_file, error=e)
        return DEFAULT_PROFILES

    entries = data.get("profiles", []) if isinstance(data, dict) else data
    if not isinstance(entries, list):
        entries = []

    profiles = []
    for entry in entries:
        try:
            profiles.append(profile_from_dict(entry))
        except ValueError as e:
            log_event("WARNING", "Profiles", "Skipping invalid profile", error=e)

    if not profiles:
        log_event("WARNING", "Profiles", "No usable profiles, using defaults", path=profiles_file)
        return DEFAULT_PROFILES
    return tuple(profiles)
