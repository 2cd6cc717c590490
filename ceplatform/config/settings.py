"""
ceplatform/config/settings.py
Engine configuration

Every tunable the progression engine reads lives on EngineSettings.
The engine never touches the process environment itself: the application
factory and the CLI call load_settings() once and pass the object down.
"""
import os
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Tuple

from dotenv import load_dotenv


def get_bool_env(key: str, default: bool = False) -> bool:
    """Get a boolean value from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ('true', '1', 'yes', 'on', 'enabled')


def get_int_env(key: str, default: int) -> int:
    """Get an integer value from environment variable."""
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    return int(value)


def get_list_env(key: str, default: Optional[List[str]] = None) -> List[str]:
    """Get a comma separated list from environment variable."""
    value = os.getenv(key, "")
    items = [item.strip() for item in value.split(",") if item.strip()]
    return items or list(default or [])


@dataclass(frozen=True)
class JurisdictionPolicy:
    """
    Final-exam retake rules for one jurisdiction.

    Florida (Rule 61J2-3.008(5)(a)) allows the original exam plus one
    retest within a year of the original attempt, with a 30 day wait after
    a failure; exhausting the retests means repeating the course.
    """
    code: str
    max_attempts: int
    cooldown_days: int = 30
    window_days: int = 365
    exam_forms: Tuple[str, ...] = ("A", "B")
    requires_policy_acknowledgment: bool = False
    requires_course_repeat_after_max: bool = False

    def form_for_attempt(self, attempt_number: int) -> str:
        """Form used by the 1-based attempt number (A, B, A, ...)."""
        forms = self.exam_forms or ("A",)
        return forms[(attempt_number - 1) % len(forms)]


FLORIDA_POLICY = JurisdictionPolicy(
    code="FL",
    max_attempts=2,
    cooldown_days=30,
    window_days=365,
    exam_forms=("A", "B"),
    requires_policy_acknowledgment=True,
    requires_course_repeat_after_max=True,
)

DEFAULT_POLICY = JurisdictionPolicy(
    code="DEFAULT",
    max_attempts=3,
    cooldown_days=30,
    window_days=365,
    exam_forms=("A", "B"),
)


@dataclass(frozen=True)
class EngineSettings:
    """Explicit configuration injected into the engine and the app."""

    database_url: str = "sqlite+aiosqlite:///./ceplatform.db"
    environment: str = "development"
    jwt_secret_key: str = "dev-secret-key-change-in-production"
    jwt_algorithm: str = "HS256"
    allowed_origins: Tuple[str, ...] = ()
    quiz_start_rate_limit: str = "20/minute"
    rate_limit_enabled: bool = True

    jurisdictions: Dict[str, JurisdictionPolicy] = field(
        default_factory=lambda: {"FL": FLORIDA_POLICY}
    )
    default_policy: JurisdictionPolicy = DEFAULT_POLICY

    minimum_lesson_seconds: int = 60
    max_time_increment_seconds: int = 120
    reservation_max_retries: int = 10

    # Open question decisions, see DESIGN.md
    final_exam_immediate_feedback: bool = False
    enforce_time_limits: bool = True
    time_limit_grace_seconds: int = 30

    def policy_for(self, jurisdiction: Optional[str]) -> JurisdictionPolicy:
        """Rules for a course's jurisdiction, falling back to the default set."""
        if jurisdiction:
            policy = self.jurisdictions.get(jurisdiction.upper())
            if policy is not None:
                return policy
        return self.default_policy

    def with_overrides(self, **changes) -> "EngineSettings":
        return replace(self, **changes)


def load_settings(env_file: Optional[str] = None) -> EngineSettings:
    """
    Build EngineSettings from the process environment.

    Recognized variables:
        DATABASE_URL, ENVIRONMENT, JWT_SECRET_KEY, JWT_ALGORITHM,
        ALLOWED_ORIGINS, QUIZ_START_RATE_LIMIT, RATE_LIMIT_ENABLED,
        FL_MAX_ATTEMPTS, FL_COOLDOWN_DAYS, FL_WINDOW_DAYS,
        DEFAULT_MAX_ATTEMPTS, DEFAULT_COOLDOWN_DAYS, DEFAULT_WINDOW_DAYS,
        EXAM_FORMS, MINIMUM_LESSON_SECONDS, MAX_TIME_INCREMENT_SECONDS,
        RESERVATION_MAX_RETRIES, FEATURE_FINAL_EXAM_FEEDBACK,
        FEATURE_ENFORCE_TIME_LIMITS, TIME_LIMIT_GRACE_SECONDS
    """
    load_dotenv(dotenv_path=env_file)

    forms = tuple(get_list_env("EXAM_FORMS", ["A", "B"]))

    florida = replace(
        FLORIDA_POLICY,
        max_attempts=get_int_env("FL_MAX_ATTEMPTS", FLORIDA_POLICY.max_attempts),
        cooldown_days=get_int_env("FL_COOLDOWN_DAYS", FLORIDA_POLICY.cooldown_days),
        window_days=get_int_env("FL_WINDOW_DAYS", FLORIDA_POLICY.window_days),
        exam_forms=forms,
    )
    default = replace(
        DEFAULT_POLICY,
        max_attempts=get_int_env("DEFAULT_MAX_ATTEMPTS", DEFAULT_POLICY.max_attempts),
        cooldown_days=get_int_env("DEFAULT_COOLDOWN_DAYS", DEFAULT_POLICY.cooldown_days),
        window_days=get_int_env("DEFAULT_WINDOW_DAYS", DEFAULT_POLICY.window_days),
        exam_forms=forms,
    )

    return EngineSettings(
        database_url=os.getenv("DATABASE_URL", EngineSettings.database_url),
        environment=os.getenv("ENVIRONMENT", EngineSettings.environment),
        jwt_secret_key=os.getenv("JWT_SECRET_KEY", EngineSettings.jwt_secret_key),
        jwt_algorithm=os.getenv("JWT_ALGORITHM", EngineSettings.jwt_algorithm),
        allowed_origins=tuple(get_list_env("ALLOWED_ORIGINS")),
        quiz_start_rate_limit=os.getenv("QUIZ_START_RATE_LIMIT", EngineSettings.quiz_start_rate_limit),
        rate_limit_enabled=get_bool_env("RATE_LIMIT_ENABLED", True),
        jurisdictions={"FL": florida},
        default_policy=default,
        minimum_lesson_seconds=get_int_env("MINIMUM_LESSON_SECONDS", 60),
        max_time_increment_seconds=get_int_env("MAX_TIME_INCREMENT_SECONDS", 120),
        reservation_max_retries=get_int_env("RESERVATION_MAX_RETRIES", 10),
        final_exam_immediate_feedback=get_bool_env("FEATURE_FINAL_EXAM_FEEDBACK", False),
        enforce_time_limits=get_bool_env("FEATURE_ENFORCE_TIME_LIMITS", True),
        time_limit_grace_seconds=get_int_env("TIME_LIMIT_GRACE_SECONDS", 30),
    )
