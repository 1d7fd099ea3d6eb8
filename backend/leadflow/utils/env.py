import logging

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def load_env_file() -> bool:
    """Load variables from a local .env file without overwriting existing ones.

    WHAT:
        Populates os.environ from backend/.env for local development.
    WHY:
        Production injects real env vars; a stray .env must never shadow them.

    Returns:
        True when a .env file was found and read.
    """
    loaded = load_dotenv(override=False)

    if loaded:
        logger.info("Loaded local .env file (existing variables were NOT overwritten)")
    else:
        logger.debug("No local .env file found or loaded")
    return loaded
