"""Runtime configuration read from environment variables."""
import os
from dataclasses import dataclass
from typing import Mapping, Optional
from zoneinfo import ZoneInfo


def _get_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _get_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


@dataclass(frozen=True)
class Settings:
    """Configuration for the cache refresh function."""
    table_name: str = 'events-cache'
    database_url: Optional[str] = None
    cron_secret: Optional[str] = None
    timezone: str = 'Europe/London'
    boundary_hour: int = 4
    snapshot_ttl_seconds: int = 86400
    max_retries: int = 3
    retry_delay_seconds: int = 30
    timeout_seconds: int = 10
    slow_query_seconds: float = 2.0
    dynamodb_endpoint_url: Optional[str] = None
    aws_region: Optional[str] = None
    cronjob_api_key: Optional[str] = None
    cronjob_id: Optional[str] = None
    log_level: str = 'INFO'

    def __post_init__(self):
        if not 0 <= self.boundary_hour <= 23:
            raise ValueError(
                f"BOUNDARY_HOUR must be between 0 and 23, got {self.boundary_hour}"
            )
        if self.max_retries < 0:
            raise ValueError("MAX_RETRIES must not be negative")
        # Raises ZoneInfoNotFoundError for unknown names
        ZoneInfo(self.timezone)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> 'Settings':
        """
        Build settings from environment variables.

        Args:
            env: Mapping to read from (default: os.environ)

        Returns:
            Settings instance

        Raises:
            ValueError: If a numeric variable is malformed or out of range
        """
        env = os.environ if env is None else env
        return cls(
            table_name=env.get('TABLE_NAME', 'events-cache'),
            database_url=env.get('DATABASE_URL') or None,
            cron_secret=env.get('CRON_SECRET') or None,
            timezone=env.get('TIMEZONE', 'Europe/London'),
            boundary_hour=_get_int(env, 'BOUNDARY_HOUR', 4),
            snapshot_ttl_seconds=_get_int(env, 'SNAPSHOT_TTL_SECONDS', 86400),
            max_retries=_get_int(env, 'MAX_RETRIES', 3),
            retry_delay_seconds=_get_int(env, 'RETRY_DELAY_SECONDS', 30),
            timeout_seconds=_get_int(env, 'TIMEOUT_SECONDS', 10),
            slow_query_seconds=_get_float(env, 'SLOW_QUERY_SECONDS', 2.0),
            dynamodb_endpoint_url=env.get('DYNAMODB_ENDPOINT_URL') or None,
            aws_region=env.get('AWS_REGION') or None,
            cronjob_api_key=env.get('CRONJOB_API_KEY') or None,
            cronjob_id=env.get('CRONJOB_ID') or None,
            log_level=env.get('LOG_LEVEL', 'INFO'),
        )
