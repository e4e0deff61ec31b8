import logging
import os
from pathlib import Path

from dotenv import load_dotenv


def load_environment() -> None:
    """
    Load environment variables by profile.
    - development (default): .env
    - production: .env.production
    """
    root_dir = Path(__file__).resolve().parents[1]
    environment = os.getenv("ENVIRONMENT", "development").strip().lower()
    env_filename = ".env.production" if environment == "production" else ".env"
    env_path = root_dir / env_filename

    if env_path.exists():
        load_dotenv(dotenv_path=env_path, override=False)
    else:
        load_dotenv(override=False)


def str_to_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in ("true", "1", "yes")


def get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def get_secret_key() -> str:
    return os.getenv("SECRET_KEY", "karaoke-insecure-default-key-change-me")


def get_token_max_age() -> int:
    return get_int("TOKEN_MAX_AGE_SECONDS", 24 * 3600)


def get_sweep_interval() -> int:
    return get_int("SWEEP_INTERVAL_SECONDS", 5 * 60)


def sweeper_enabled() -> bool:
    return str_to_bool(os.getenv("SWEEPER_ENABLED"), default=True)


def reports_swallow_errors() -> bool:
    return str_to_bool(os.getenv("REPORTS_SWALLOW_ERRORS"), default=False)


def configure_logging() -> None:
    level = os.getenv("LOG_LEVEL", "INFO").strip().upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
