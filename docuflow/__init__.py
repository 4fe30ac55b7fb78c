"""Docuflow - configuration and logging setup."""

import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional

__version__ = "0.1.0"

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class ConfigError(Exception):
    """A required setting is missing or malformed."""
    pass


@dataclass
class Settings:
    """Settings for the storage core.

    Values are read once (usually from the environment) and then passed
    explicitly to the components that need them; nothing below this layer
    looks up configuration on its own.
    """
    supabase_url: Optional[str] = None
    supabase_service_key: Optional[str] = None
    encryption_key: Optional[str] = None
    google_client_id: Optional[str] = None
    google_client_secret: Optional[str] = None
    request_timeout: float = 30.0
    verify_batch_size: int = 10

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from environment variables.

        Raises:
            ConfigError: If a numeric setting can't be parsed
        """
        env = os.environ if environ is None else environ
        try:
            timeout = float(env.get('DOCUFLOW_REQUEST_TIMEOUT', '30'))
            batch_size = int(env.get('DOCUFLOW_VERIFY_BATCH_SIZE', '10'))
        except ValueError as e:
            raise ConfigError(f"Invalid numeric setting: {e}")

        if timeout <= 0:
            raise ConfigError("DOCUFLOW_REQUEST_TIMEOUT must be positive")
        if batch_size < 1:
            raise ConfigError("DOCUFLOW_VERIFY_BATCH_SIZE must be at least 1")

        return cls(
            supabase_url=env.get('SUPABASE_URL') or env.get('NEXT_PUBLIC_SUPABASE_URL'),
            supabase_service_key=env.get('SUPABASE_SERVICE_ROLE_KEY'),
            encryption_key=env.get('ENCRYPTION_KEY'),
            google_client_id=env.get('GOOGLE_CLIENT_ID'),
            google_client_secret=env.get('GOOGLE_CLIENT_SECRET'),
            request_timeout=timeout,
            verify_batch_size=batch_size,
        )

    def require(self, *names: str) -> None:
        """Ensure the named settings are set.

        Raises:
            ConfigError: Naming every missing setting
        """
        missing = [name for name in names if not getattr(self, name)]
        if missing:
            raise ConfigError(f"Missing configuration: {', '.join(missing)}")


def configure_logging(verbose: bool = False) -> None:
    """Set up root logging for command line use."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
    )
    # googleapiclient logs every discovery/cache lookup at INFO
    logging.getLogger('googleapiclient').setLevel(logging.WARNING)
