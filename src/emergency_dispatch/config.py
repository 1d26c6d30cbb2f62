from __future__ import annotations

import logging
import logging.config
import os
from dataclasses import dataclass
from pathlib import Path

import yaml

BASE_DIR = Path(__file__).resolve().parent
DATA_DIR = BASE_DIR / "data"
DB_PATH = Path(os.getenv("DISPATCH_DB_PATH", str(BASE_DIR.parents[1] / "dispatch.db")))
MODEL_PATH = Path(os.getenv("DISPATCH_MODEL_PATH", str(DATA_DIR / "model.pkl")))
DATASET_PATH = Path(os.getenv("DISPATCH_DATASET_PATH", str(DATA_DIR / "severity_dataset.csv")))
LOGGING_CONFIG = Path(os.getenv("DISPATCH_LOGGING_CONFIG", str(BASE_DIR / "logging.yaml")))
LOG_LEVEL = os.getenv("DISPATCH_LOG_LEVEL", "INFO")

ROUTING_TIMEOUT_SECONDS = float(os.getenv("ROUTING_TIMEOUT_SECONDS", "5"))
AI_TRIAGE_TIMEOUT_SECONDS = float(os.getenv("AI_TRIAGE_TIMEOUT_SECONDS", "5"))
MAX_RESERVATION_ATTEMPTS = int(os.getenv("MAX_RESERVATION_ATTEMPTS", "3"))
AVERAGE_SPEED_KMH = float(os.getenv("AVERAGE_SPEED_KMH", "40"))
TRAFFIC_MULTIPLIER = float(os.getenv("TRAFFIC_MULTIPLIER", "1.3"))
NEARBY_AMBULANCE_RADIUS_KM = float(os.getenv("NEARBY_AMBULANCE_RADIUS_KM", "10"))
NEARBY_HOSPITAL_RADIUS_KM = float(os.getenv("NEARBY_HOSPITAL_RADIUS_KM", "20"))
NEARBY_LIMIT = int(os.getenv("NEARBY_LIMIT", "10"))
FALLBACK_TRIAGE_CONFIDENCE = 0.75


@dataclass(frozen=True)
class DispatchSettings:
    routing_timeout_seconds: float = ROUTING_TIMEOUT_SECONDS
    ai_triage_timeout_seconds: float = AI_TRIAGE_TIMEOUT_SECONDS
    max_reservation_attempts: int = MAX_RESERVATION_ATTEMPTS
    average_speed_kmh: float = AVERAGE_SPEED_KMH
    traffic_multiplier: float = TRAFFIC_MULTIPLIER
    fallback_confidence: float = FALLBACK_TRIAGE_CONFIDENCE
    nearby_ambulance_radius_km: float = NEARBY_AMBULANCE_RADIUS_KM
    nearby_hospital_radius_km: float = NEARBY_HOSPITAL_RADIUS_KM
    nearby_limit: int = NEARBY_LIMIT

    def __post_init__(self) -> None:
        if self.average_speed_kmh <= 0:
            raise ValueError("average_speed_kmh must be positive")
        if self.max_reservation_attempts < 1:
            raise ValueError("max_reservation_attempts must be at least 1")


def setup_logging(config_path: str | os.PathLike | None = None) -> None:
    path = Path(config_path) if config_path is not None else LOGGING_CONFIG
    if path.exists():
        with path.open("r", encoding="utf-8") as f:
            logging.config.dictConfig(yaml.safe_load(f))
    else:
        logging.basicConfig(level=LOG_LEVEL)
