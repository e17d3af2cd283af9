"""Initialize database tables."""

import logging

from receiptscan.core.database import engine, init_db

logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
logger = logging.getLogger("receiptscan.scripts.init_db")


def main() -> None:
    logger.info("Initializing database tables on %s", engine.url.render_as_string(hide_password=True))
    init_db()
    logger.info("Database initialization complete!")


if __name__ == "__main__":
    main()
