"""
Database configuration module.
Reads the PostgreSQL connection string from DATABASE_URL.
"""

import os
import logging
from urllib.parse import urlparse, unquote

logger = logging.getLogger(__name__)


class DBConfig:
    """Database configuration from DATABASE_URL"""

    def __init__(self):
        self.database_url = os.getenv("DATABASE_URL")

        if self.database_url:
            try:
                parsed = urlparse(self.database_url.replace('[', '').replace(']', ''))
                logger.info(
                    f"[db_config] DATABASE_URL configured: "
                    f"{parsed.scheme}://{parsed.username}:***@{parsed.hostname}:{parsed.port or 5432}{parsed.path}"
                )
            except Exception as e:
                logger.info(f"[db_config] DATABASE_URL configured (unable to parse for logging: {e})")
        else:
            logger.warning("[db_config] DATABASE_URL not set - using in-memory store")

    @property
    def is_db_enabled(self) -> bool:
        return bool(self.database_url)

    def get_connection_params(self) -> dict | None:
        """
        Get database connection parameters.
        Returns dict with host, port, database, user, password.
        """
        if not self.database_url:
            return None

        # Handles URLs like: postgresql://user:pass@[hostname]:port/db
        cleaned_url = self.database_url.replace('[', '').replace(']', '')

        try:
            parsed = urlparse(cleaned_url)
        except Exception as e:
            logger.error(f"Failed to parse DATABASE_URL: {e}")
            return None

        if not parsed.hostname:
            return None

        params = {
            "host": parsed.hostname,
            "port": parsed.port or 5432,
            "database": parsed.path.lstrip('/') or 'postgres',
            "user": parsed.username or 'postgres',
        }

        # URL-decode to handle special characters
        if parsed.password:
            params["password"] = unquote(parsed.password)

        logger.info(
            f"[db_config] Database connection params: host={params['host']}, port={params['port']}, "
            f"database={params['database']}, user={params['user']}"
        )

        return params


db_config = DBConfig()
