"""Environment variable validation and typed accessors."""

import os
import logging
from typing import Dict

logger = logging.getLogger(__name__)

class EnvironmentError(Exception):
    """Raised when required environment variables are missing or invalid."""
    pass

def validate_environment() -> None:
    """Validate configuration read from the environment.

    Raises EnvironmentError if validation fails.
    """
    required_vars: Dict[str, str] = {}

    defaults = {
        "DB_PATH": os.getenv("DB_PATH") or "data.db",
    }

    # Apply defaults before validation so dependent modules see consistent values.
    for var, value in defaults.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    optional_vars = {
        "LLM_URL": "OpenAI-compatible chat completions endpoint",
        "LLM_API_KEY": "Bearer token for the language model endpoint",
        "MODEL_ID": "Model used for tutoring chat, roadmaps and exams",
        "LLM_FAST_MODEL_ID": "Model used for concept-map updates",
    }

    missing = []
    for var, description in required_vars.items():
        if not os.getenv(var):
            missing.append(f"{var} ({description})")

    if missing:
        raise EnvironmentError(
            f"Missing required environment variables: {', '.join(missing)}"
        )

    for var in ("LLM_URL",):
        value = os.getenv(var)
        if value and not (value.startswith("http://") or value.startswith("https://")):
            raise EnvironmentError(f"Invalid URL format for {var}: {value}")

    for var in ("LAYOUT_FPS", "LLM_TIMEOUT", "LLM_TEMPERATURE", "LLM_TOP_P"):
        value = os.getenv(var)
        if value:
            try:
                number = float(value)
            except ValueError:
                raise EnvironmentError(f"{var} must be numeric, got {value!r}") from None
            if number <= 0 and var in {"LAYOUT_FPS", "LLM_TIMEOUT"}:
                raise EnvironmentError(f"{var} must be positive, got {value!r}")

    for var, description in optional_vars.items():
        if not os.getenv(var):
            logger.warning("Optional environment variable not set: %s (%s)", var, description)

def get_env_bool(name: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on", "enabled"}

def get_env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "")
    try:
        return float(raw) if raw else default
    except ValueError:
        return default

def get_env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    try:
        return int(raw) if raw else default
    except ValueError:
        return default
