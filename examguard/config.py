"""
examguard Configuration Settings

All integrity thresholds are tunables read from the environment (or .env),
never compiled-in constants. Components receive the derived
IntegrityThresholds / RetryPolicy objects rather than the settings themselves.
"""
from dataclasses import dataclass
from typing import Optional

from pydantic_settings import BaseSettings


@dataclass(frozen=True)
class IntegrityThresholds:
    """Named set of tunables for consolidation, alerting and escalation"""
    window_size: int = 15
    window_stride: int = 15
    min_occurrence: int = 1
    min_confidence: int = 60
    incident_alert_threshold: int = 3
    auto_flag_threshold: int = 5

    def __post_init__(self):
        if self.window_size < 1:
            raise ValueError("window_size must be >= 1")
        if not 1 <= self.window_stride <= self.window_size:
            raise ValueError("window_stride must be between 1 and window_size")
        if self.min_occurrence < 1:
            raise ValueError("min_occurrence must be >= 1")
        if self.incident_alert_threshold < 1:
            raise ValueError("incident_alert_threshold must be >= 1")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for persistence calls"""
    max_attempts: int = 3
    base_delay_seconds: float = 0.1
    max_delay_seconds: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based)"""
        return min(self.max_delay_seconds, self.base_delay_seconds * (2 ** (attempt - 1)))


class Settings(BaseSettings):
    """Configuration for the examguard service."""

    # API Settings
    APP_NAME: str = "examguard Integrity Service"
    DEBUG: bool = True

    # Persistence (unset -> in-memory repository)
    DATABASE_URL: Optional[str] = None
    PERSISTENCE_MAX_ATTEMPTS: int = 3
    PERSISTENCE_BACKOFF_SECONDS: float = 0.1
    PERSISTENCE_BACKOFF_MAX_SECONDS: float = 2.0

    # Consolidation window (frames)
    WINDOW_SIZE: int = 15
    WINDOW_STRIDE: int = 0  # 0 -> same as WINDOW_SIZE (tumbling windows)

    # Alert generation
    MIN_OCCURRENCE: int = 1
    MIN_CONFIDENCE: int = 60

    # Escalation and lifecycle
    INCIDENT_ALERT_THRESHOLD: int = 3
    AUTO_FLAG_THRESHOLD: int = 5

    # Detector
    DETECTOR_MODEL_PATH: Optional[str] = None  # unset -> no classifier (degraded mode)
    DETECTOR_CONFIDENCE: float = 0.5
    DETECTOR_TIMEOUT_SECONDS: float = 2.0
    DETECTOR_MAX_WORKERS: int = 4
    DETECTOR_QUEUE_TIMEOUT_SECONDS: float = 30.0  # max wait for a free worker

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_TO_FILE: bool = False
    LOG_DIR: str = "logs"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"

    def thresholds(self) -> IntegrityThresholds:
        return IntegrityThresholds(
            window_size=self.WINDOW_SIZE,
            window_stride=self.WINDOW_STRIDE or self.WINDOW_SIZE,
            min_occurrence=self.MIN_OCCURRENCE,
            min_confidence=self.MIN_CONFIDENCE,
            incident_alert_threshold=self.INCIDENT_ALERT_THRESHOLD,
            auto_flag_threshold=self.AUTO_FLAG_THRESHOLD,
        )

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.PERSISTENCE_MAX_ATTEMPTS,
            base_delay_seconds=self.PERSISTENCE_BACKOFF_SECONDS,
            max_delay_seconds=self.PERSISTENCE_BACKOFF_MAX_SECONDS,
        )


settings = Settings()
