#!/usr/bin/env python3
"""Setup script for the marketplace backend: local store migrations and a backend check."""

import asyncio
import logging
import sys
from pathlib import Path

# Add the server directory to the Python path
server_dir = Path(__file__).parent.parent / "server"
sys.path.insert(0, str(server_dir))

from alembic import command
from alembic.config import Config
from marketplace.backend import BackendClient
from marketplace.core.config import settings
from marketplace.core.exceptions import BackendError

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def migrate_local_store() -> None:
    """Bring the local store (cache entries, idempotency records) to the latest revision."""
    logger.info(f"Migrating local store at {settings.database_url}")

    alembic_cfg = Config(str(server_dir / "db" / "alembic.ini"))
    alembic_cfg.set_main_option("script_location", str(server_dir / "db" / "alembic"))
    command.upgrade(alembic_cfg, "head")

    logger.info("Local store migrations completed")


async def check_backend() -> bool:
    """Make one cheap read against the backend platform with the service key."""
    backend = BackendClient.from_settings(settings)
    try:
        await backend.table("profiles").select("id").limit(1).execute()
    except BackendError as e:
        logger.error(f"Backend check failed: {e}")
        return False
    finally:
        await backend.close()

    logger.info(f"Backend reachable at {settings.backend_url}")
    return True


def main() -> int:
    logger.info("Starting marketplace backend setup...")

    migrate_local_store()
    backend_ok = asyncio.run(check_backend())

    if not backend_ok:
        logger.warning("Setup finished, but the backend platform could not be reached")
        return 1

    logger.info("Setup completed successfully!")
    logger.info("You can now start the API server with: cd server && uvicorn marketplace.main:app --reload")
    return 0


if __name__ == "__main__":
    sys.exit(main())
