"""Local .env loading for developer runs.

WHAT:
    Loads backend/.env into os.environ without overwriting variables that
    are already exported.

WHY:
    The dispatcher CLI, the ARQ worker and the API are started from
    different working directories; resolving the file next to the package
    makes all of them pick up the same local settings.
"""

import logging
from pathlib import Path

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# backend/.env (this file lives in backend/adsync/utils/)
ENV_FILE = Path(__file__).resolve().parents[2] / ".env"


def load_env_file(path: Path = ENV_FILE) -> bool:
    """Load variables from `path` if it exists. Returns True when a file was read."""
    if not path.is_file():
        logger.debug("No local .env file at %s", path)
        return False

    load_dotenv(path, override=False)
    logger.info("Loaded local .env file %s (existing variables were NOT overwritten)", path)
    return True
