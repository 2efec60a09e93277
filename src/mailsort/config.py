"""
Runtime settings, read from the environment (and a .env file)
"""
import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

# Environment variable for each setting
ENV_VARS = {
    'database_url': 'DATABASE_URL',
    'token_dir': 'GMAIL_TOKEN_DIR',
    'gmail_poll_interval': 'GMAIL_POLL_INTERVAL',
    'log_level': 'LOG_LEVEL',
    'bulk_time_budget': 'BULK_TIME_BUDGET_SECONDS',
    'bulk_default_limit': 'BULK_DEFAULT_LIMIT',
    'bulk_per_folder_limit': 'BULK_PER_FOLDER_LIMIT',
    'body_fetch_batch_size': 'BODY_FETCH_BATCH_SIZE',
    'daemon_refresh_interval': 'DAEMON_REFRESH_INTERVAL',
    'daemon_event_settle_delay': 'DAEMON_EVENT_SETTLE_DELAY',
    'daemon_channel_capacity': 'DAEMON_CHANNEL_CAPACITY',
    'job_poll_interval': 'JOB_POLL_INTERVAL',
}


class Settings(BaseModel):
    """Everything that can be tuned without touching code"""
    database_url: str = 'sqlite:///mailsort.db'
    token_dir: str = '.secrets/accounts'
    gmail_poll_interval: float = Field(30.0, gt=0)
    log_level: str = 'INFO'

    # Bulk applier
    bulk_time_budget: float = Field(25.0, gt=0)
    bulk_default_limit: int = Field(2000, gt=0)
    bulk_per_folder_limit: int = Field(500, gt=0)
    body_fetch_batch_size: int = Field(10, gt=0)
    folder_delay: float = 0.2
    folder_failure_cooldown: float = 1.5
    body_fetch_message_delay: float = 0.03
    body_fetch_batch_delay: float = 0.15
    body_fetch_base_delay_ms: int = 300
    apply_pause_every: int = Field(5, gt=0)
    apply_pause: float = 0.5
    message_rate_limit_cooldown: float = 2.0

    # Daemon
    daemon_refresh_interval: float = Field(60.0, gt=0)
    daemon_event_settle_delay: float = Field(0.25, ge=0)
    daemon_channel_capacity: int = Field(100, gt=0)
    daemon_rate_limit_cooldown: float = 5.0

    # Job queue
    job_poll_interval: float = Field(30.0, gt=0)
    job_stale_after: float = 60 * 60
    job_retention_days: int = 7

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> 'Settings':
        """Build settings from environment variables, loading .env first"""
        load_dotenv(dotenv_path)
        values = {}
        for field, var in ENV_VARS.items():
            value = os.getenv(var)
            if value not in (None, ''):
                values[field] = value
        return cls(**values)
