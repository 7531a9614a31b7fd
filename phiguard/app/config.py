"""
Runtime configuration for PHIGuard.

All settings come from environment variables. They are read when
``Settings.from_env()`` is called (not at import time) so tests can point the
service at a temporary database or a different master key.

Environment variables:
- PHIGUARD_DB_PATH: SQLite database file (default /tmp/phiguard.db)
- DATABASE_URL: full SQLAlchemy URL used by Alembic (overrides the DB path)
- PHIGUARD_MASTER_KEY: master secret for field-level encryption
- PHIGUARD_KEY_SALT: salt for master key derivation
- PHI_DECRYPT_FAILURE_POLICY: "raise" (default) or "redact"
- LOG_LEVEL / LOG_FILE: logging configuration
- ENV: "TEST" disables rate limiting and the dev-key warning
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

DEV_MASTER_KEY = "dev-master-key-change-in-production"
DEV_KEY_SALT = "phiguard-field-encryption"

DECRYPT_POLICIES = {"raise", "redact"}


@dataclass(frozen=True)
class Settings:
    """Process-wide settings, constructed once at startup."""

    db_path: Path
    database_url: Optional[str]
    master_key: str
    key_salt: str
    decrypt_failure_policy: str = "raise"
    environment: str = "prod"
    log_level: str = "INFO"
    log_file: Optional[str] = None

    @property
    def is_test(self) -> bool:
        return self.environment.upper() == "TEST"

    @property
    def sqlalchemy_url(self) -> str:
        """Database URL for Alembic migrations."""
        if self.database_url:
            return self.database_url
        return f"sqlite:///{self.db_path}"

    @classmethod
    def from_env(cls) -> "Settings":
        environment = os.getenv("ENV", "prod")

        master_key = os.getenv("PHIGUARD_MASTER_KEY")
        if not master_key:
            if environment.upper() != "TEST":
                logger.warning(
                    "PHIGUARD_MASTER_KEY is not set; using the development master key. "
                    "Set PHIGUARD_MASTER_KEY before storing real patient data."
                )
            master_key = DEV_MASTER_KEY

        policy = os.getenv("PHI_DECRYPT_FAILURE_POLICY", "raise").lower()
        if policy not in DECRYPT_POLICIES:
            raise ValueError(
                f"PHI_DECRYPT_FAILURE_POLICY must be one of {sorted(DECRYPT_POLICIES)}, got '{policy}'"
            )

        return cls(
            db_path=Path(os.getenv("PHIGUARD_DB_PATH", "/tmp/phiguard.db")),
            database_url=os.getenv("DATABASE_URL"),
            master_key=master_key,
            key_salt=os.getenv("PHIGUARD_KEY_SALT", DEV_KEY_SALT),
            decrypt_failure_policy=policy,
            environment=environment,
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_file=os.getenv("LOG_FILE"),
        )


def rate_limits_disabled() -> bool:
    """Rate limiting is off in test mode or when explicitly disabled."""
    return os.environ.get("ENV") == "TEST" or os.environ.get("DISABLE_RATE_LIMITS") == "1"
