#!/usr/bin/env python3
"""
Cricket SQL Environment Guard - Settings + Fail-Fast Startup Validation

Loads configuration from the environment (and .env via python-dotenv) into a
frozen Settings object, and verifies the runtime before the app starts.

GUARANTEES:
1. All critical dependencies are importable
2. DATABASE_URL is present (hard failure otherwise)
3. GROQ_API_KEY absence is reported, NOT fatal: requests fail with AI_ERROR

USAGE:
    from env_guard import load_settings, validate_environment
    settings = load_settings()
    validate_environment(settings)  # Raises EnvironmentError if invalid
"""

import os
import sys
from dataclasses import dataclass
from typing import Optional, List, Tuple

from dotenv import load_dotenv

# ============================================================================
# CONFIGURATION
# ============================================================================
REQUIRED_PACKAGES = [
    # (module_name, package_name)
    ("fastapi", "fastapi"),
    ("uvicorn", "uvicorn"),
    ("sqlalchemy", "sqlalchemy"),
    ("sqlparse", "sqlparse"),
    ("pydantic", "pydantic"),
    ("dotenv", "python-dotenv"),
    ("llama_index.core", "llama-index-core"),
    ("llama_index.llms.groq", "llama-index-llms-groq"),
]

REQUIRED_ENV_VARS = [
    "DATABASE_URL",
]

# Missing these degrades the service instead of stopping it
OPTIONAL_ENV_VARS = [
    "GROQ_API_KEY",
]

DEFAULT_GROQ_MODEL = "llama-3.3-70b-versatile"
VALID_LEAGUES = ("WPL", "IPL", "BBL", "WBBL", "SA20")


@dataclass(frozen=True)
class Settings:
    """
    Process-wide configuration, built once at startup.

    Attributes:
        database_url: SQLAlchemy URL of the cricket database
        groq_api_key: Credential for the text-generation service (may be None)
        groq_model: Groq model name
        llm_temperature: Sampling temperature for SQL generation
        generation_timeout_seconds: Upper bound on one generation call
        statement_timeout_ms: PostgreSQL statement_timeout per connection
        max_result_rows: Row cap enforced on every generated statement
        log_level: Application log level name
        default_league: League assumed when the request names none
    """
    database_url: Optional[str]
    groq_api_key: Optional[str] = None
    groq_model: str = DEFAULT_GROQ_MODEL
    llm_temperature: float = 0.1
    generation_timeout_seconds: float = 35.0
    statement_timeout_ms: int = 15000
    max_result_rows: int = 1000
    log_level: str = "INFO"
    default_league: str = "WPL"

    @property
    def has_generation_credentials(self) -> bool:
        return bool(self.groq_api_key and self.groq_api_key.strip())

    @classmethod
    def from_env(cls, env=None) -> "Settings":
        """Build settings from a mapping (defaults to os.environ)."""
        env = os.environ if env is None else env

        default_league = env.get("DEFAULT_LEAGUE", "WPL").strip().upper()
        if default_league not in VALID_LEAGUES:
            raise ValueError(
                f"Invalid DEFAULT_LEAGUE: {default_league}. "
                f"Valid leagues are: {', '.join(VALID_LEAGUES)}"
            )

        return cls(
            database_url=env.get("DATABASE_URL") or None,
            groq_api_key=env.get("GROQ_API_KEY") or None,
            groq_model=env.get("GROQ_MODEL", DEFAULT_GROQ_MODEL),
            llm_temperature=float(env.get("LLM_TEMPERATURE", "0.1")),
            generation_timeout_seconds=float(env.get("GENERATION_TIMEOUT_SECONDS", "35")),
            statement_timeout_ms=int(env.get("STATEMENT_TIMEOUT_MS", "15000")),
            max_result_rows=int(env.get("MAX_RESULT_ROWS", "1000")),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
            default_league=default_league,
        )


def load_settings() -> Settings:
    """Load .env (if present) and build Settings from the process environment."""
    load_dotenv()
    return Settings.from_env()


# ============================================================================
# VALIDATION FUNCTIONS
# ============================================================================

def validate_packages() -> Tuple[List[str], List[str]]:
    """
    Validate all required packages are importable.

    Returns:
        (errors, package_info)
    """
    errors = []
    info = []

    for module_name, package_name in REQUIRED_PACKAGES:
        try:
            module = __import__(module_name, fromlist=[''])
            version = getattr(module, "__version__", None)
            info.append(f"  {package_name}: {version or 'imported'}")
        except ImportError as e:
            errors.append(
                f"MISSING PACKAGE: {package_name}\n"
                f"  Import error: {e}\n"
                f"  Solution: pip install {package_name}"
            )

    return errors, info


def validate_env_vars(settings: Settings) -> Tuple[List[str], List[str]]:
    """
    Validate environment variables.

    Returns:
        (errors, warnings)
    """
    errors = []
    warnings = []

    if not settings.database_url:
        errors.append(
            "MISSING ENVIRONMENT VARIABLE: DATABASE_URL\n"
            "  Solution: Add DATABASE_URL=postgresql://... to .env file"
        )

    if not settings.has_generation_credentials:
        warnings.append(
            "GROQ_API_KEY is not set - text-to-SQL requests will fail with AI_ERROR\n"
            "  Get a key at: https://console.groq.com/keys"
        )
    elif not settings.groq_api_key.startswith("gsk_"):
        warnings.append(
            "GROQ_API_KEY has an unexpected format (Groq API keys start with 'gsk_')"
        )

    if settings.max_result_rows <= 0:
        errors.append(f"MAX_RESULT_ROWS must be positive, got {settings.max_result_rows}")

    return errors, warnings


def _mask(value: Optional[str]) -> str:
    if not value:
        return "NOT SET"
    return value[:4] + "..." + value[-4:] if len(value) > 12 else "***"


def validate_environment(settings: Settings, strict: bool = True, verbose: bool = True) -> bool:
    """
    Run all environment validations.

    Args:
        settings: Loaded settings to check
        strict: If True, raise EnvironmentError on any hard failure.
        verbose: Print the validation banner.

    Returns:
        True if environment is valid, False otherwise.

    Raises:
        EnvironmentError: If strict=True and validation fails.
    """
    def emit(line: str = "") -> None:
        if verbose:
            print(line)

    emit("=" * 70)
    emit("CRICKET SQL ENVIRONMENT GUARD - Startup Validation")
    emit("=" * 70)

    all_errors = []

    emit("\n[1/2] Checking required packages...")
    package_errors, package_info = validate_packages()
    all_errors.extend(package_errors)
    for line in package_info:
        emit(line)

    emit("\n[2/2] Checking environment variables...")
    env_errors, env_warnings = validate_env_vars(settings)
    all_errors.extend(env_errors)
    emit(f"  DATABASE_URL: {'set' if settings.database_url else 'NOT SET'}")
    emit(f"  GROQ_API_KEY: {_mask(settings.groq_api_key)}")
    emit(f"  GROQ_MODEL: {settings.groq_model}")
    for warning in env_warnings:
        emit(f"  WARNING: {warning}")

    emit("\n" + "=" * 70)

    if all_errors:
        emit("ENVIRONMENT VALIDATION FAILED!")
        emit("=" * 70)
        for i, error in enumerate(all_errors, 1):
            emit(f"\nError {i}:")
            emit(error)

        if strict:
            raise EnvironmentError(
                f"Environment validation failed with {len(all_errors)} error(s). "
                f"See above for details."
            )
        return False

    emit("ENVIRONMENT VALIDATION PASSED!")
    emit("=" * 70)
    return True


# ============================================================================
# MAIN (for standalone testing)
# ============================================================================
if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Cricket SQL Environment Guard")
    parser.add_argument(
        "--strict",
        action="store_true",
        help="Exit with error code on failure"
    )
    args = parser.parse_args()

    try:
        success = validate_environment(load_settings(), strict=args.strict)
        sys.exit(0 if success else 1)
    except EnvironmentError as e:
        print(f"\n\nFATAL: {e}")
        sys.exit(1)
