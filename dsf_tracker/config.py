from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Tuple


def _get_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _get_csv(name: str, default_csv: str = "") -> Tuple[str, ...]:
    raw = os.getenv(name, default_csv)
    parts = [p.strip() for p in raw.split(",") if p.strip()]
    # keep order, speaker prefixes are tried left to right
    return tuple(dict.fromkeys(parts))


@dataclass(frozen=True)
class Settings:
    # General
    environment: str
    debug: bool  # enables the Testing event kind

    # Backend
    api_url: str
    http_timeout_seconds: float
    access_token: str
    refresh_token: str
    reporter_name: str

    # Local service auth (optional shared secret for the capture agent)
    tracker_api_key: str

    # Persistence
    store_path: str

    # Poll cadence
    capture_interval_seconds: float
    dialog_interval_seconds: float
    sweep_interval_seconds: float
    oracle_interval_seconds: float

    # Recognition
    match_threshold: float
    min_match_length: int
    position_tolerance_px: int
    speaker_prefixes: Tuple[str, ...]

    # World hops
    hop_quiet_seconds: float

    # Reconciliation
    attribution_policy: str  # perception | acceptance
    unknown_event_duration: int
    oracle_drift_seconds: int

    @staticmethod
    def from_env() -> "Settings":
        return Settings(
            environment=(os.getenv("ENVIRONMENT") or os.getenv("ENV") or "development").strip() or "development",
            debug=_get_bool("DEBUG", False),
            api_url=(os.getenv("API_URL") or "https://api.dsfeventtracker.com").strip().rstrip("/"),
            http_timeout_seconds=_get_float("HTTP_TIMEOUT_SECONDS", 12.0),
            access_token=(os.getenv("ACCESS_TOKEN") or "").strip(),
            refresh_token=(os.getenv("REFRESH_TOKEN") or "").strip(),
            reporter_name=(os.getenv("REPORTER_NAME") or "").strip(),
            tracker_api_key=(os.getenv("TRACKER_API_KEY") or "").strip(),
            store_path=(os.getenv("STORE_PATH") or "").strip(),
            capture_interval_seconds=_get_float("CAPTURE_INTERVAL_SECONDS", 2.0),
            dialog_interval_seconds=_get_float("DIALOG_INTERVAL_SECONDS", 1.0),
            sweep_interval_seconds=_get_float("SWEEP_INTERVAL_SECONDS", 1.0),
            oracle_interval_seconds=_get_float("ORACLE_INTERVAL_SECONDS", 60.0),
            match_threshold=_get_float("MATCH_THRESHOLD", 0.3),
            min_match_length=_get_int("MIN_MATCH_LENGTH", 10),
            position_tolerance_px=_get_int("POSITION_TOLERANCE_PX", 100),
            speaker_prefixes=_get_csv("SPEAKER_PREFIXES", "Misty,Fisherman,Guys,5Ftx"),
            hop_quiet_seconds=_get_float("HOP_QUIET_SECONDS", 6.0),
            attribution_policy=(os.getenv("ATTRIBUTION_POLICY") or "perception").strip().lower(),
            unknown_event_duration=_get_int("UNKNOWN_EVENT_DURATION", 120),
            oracle_drift_seconds=_get_int("ORACLE_DRIFT_SECONDS", 5),
        )
