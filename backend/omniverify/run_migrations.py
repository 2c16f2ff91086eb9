# run_migrations.py (wraps alembic call with wait_for_db)
import asyncio
import logging
import os

from alembic import command
from alembic.config import Config

from omniverify.db import wait_for_db

logging.basicConfig(level=logging.INFO)
log = logging.getLogger("omniverify.run_migrations")

ALEMBIC_INI = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "alembic.ini")


async def run_migrations():
    # wait for DB (will raise if auth fails)
    await wait_for_db(max_retries=8, delay=2.0)

    cfg = Config(ALEMBIC_INI)
    log.info("Upgrading schema to head using %s", ALEMBIC_INI)
    command.upgrade(cfg, "head")


def main():
    asyncio.run(run_migrations())


if __name__ == "__main__":
    main()
