"""Environment helpers shared by the API, the worker and Alembic."""

import logging
import os

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def require_env(name: str) -> str:
    """Value of a mandatory variable; RuntimeError when unset or empty."""
    value = os.getenv(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def load_env_file() -> bool:
    """Load backend/.env into os.environ; exported variables always win."""
    loaded = load_dotenv(override=False)
    if loaded:
        logger.info("[ENV] Loaded .env (exported variables kept)")
    else:
        logger.debug("[ENV] No .env file found")
    return loaded
