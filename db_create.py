import logging

from crm_engine.config import Settings
from crm_engine.db import create_db

logger = logging.getLogger(__name__)


def main(database_url=None):
    settings = Settings.from_env()
    url = database_url or settings.database_url
    create_db(url)
    logger.info(f"Database schema created/updated: {url}")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    main()
