import os
from typing import Dict, List

from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict


class RateLimitRule(BaseModel):
    window_ms: int
    max_requests: int
    message: str = "Too many requests. Please try again later."


DEFAULT_RATE_LIMITS: Dict[str, RateLimitRule] = {
    # Attendance marking - strict
    "attendance": RateLimitRule(
        window_ms=15 * 60 * 1000,
        max_requests=10,
        message="Too many attendance attempts. Please try again later.",
    ),
    "auth": RateLimitRule(
        window_ms=15 * 60 * 1000,
        max_requests=5,
        message="Too many login attempts. Please try again later.",
    ),
    "registration": RateLimitRule(
        window_ms=60 * 60 * 1000,
        max_requests=3,
        message="Too many registration attempts. Please try again later.",
    ),
    "general": RateLimitRule(
        window_ms=15 * 60 * 1000,
        max_requests=100,
    ),
    "qr_generation": RateLimitRule(
        window_ms=5 * 60 * 1000,
        max_requests=20,
        message="Too many QR code generation attempts. Please try again later.",
    ),
}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=True
    )

    # App Settings
    APP_NAME: str = "Presence Verification Service"
    API_V1_STR: str = "/api/v1"
    CORS_ORIGINS: List[str] = ["*"]

    # Storage Settings
    STORE_BACKEND: str = "memory"  # memory | firestore
    FIREBASE_CREDENTIALS_PATH: str = os.getenv("FIREBASE_CREDENTIALS_PATH", "")

    # Session Settings
    SESSION_MIN_MINUTES: int = 5
    SESSION_MAX_MINUTES: int = 180
    SESSION_DEFAULT_MINUTES: int = 30
    EXTEND_MIN_MINUTES: int = 1
    EXTEND_MAX_MINUTES: int = 60
    EXTEND_DEFAULT_MINUTES: int = 15
    SESSION_RETENTION_HOURS: int = 24  # purge window after expiry

    # Proximity Settings
    PROXIMITY_TOLERANCE_METERS: float = 50.0  # consumer GPS accuracy, not a security boundary
    SPOOFING_DISTANCE_MULTIPLIER: float = 20.0

    # Rate Limiting
    RATE_LIMITS: Dict[str, RateLimitRule] = DEFAULT_RATE_LIMITS

    # Suspicious Activity Heuristics
    ACTIVITY_WINDOW_SECONDS: int = 3600
    ACTIVITY_HISTORY_SIZE: int = 100
    FAILED_LOGIN_THRESHOLD: int = 5
    ATTENDANCE_ATTEMPT_THRESHOLD: int = 20
    RAPID_LOCATION_MIN_MARKINGS: int = 3
    RAPID_LOCATION_DISTANCE_METERS: float = 10_000.0
    LOGIN_DISTINCT_CLIENTS_THRESHOLD: int = 3

    # Security Log Settings
    SECURITY_LOG_DIR: str = os.path.join(os.getcwd(), "logs", "security")
    SECURITY_LOG_RETENTION_DAYS: int = 30
    ALERT_LEVELS: List[str] = ["HIGH", "CRITICAL"]


settings = Settings()
