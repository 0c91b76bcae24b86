import yaml
import os
import logging
from typing import List, Optional, Dict

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class RedisConfig(BaseModel):
    url: str = "redis://localhost:6379/0"
    password: Optional[str] = None
    socket_timeout_seconds: float = 5.0
    connect_attempts: int = 5  # startup wait_for_store attempts
    connect_wait_seconds: float = 2.0


class FrequencyLimit(BaseModel):
    hourly: int
    daily: int


class QuietHoursDefaults(BaseModel):
    enabled: bool = True
    start: str = "22:00"
    end: str = "08:00"
    timezone: str = "UTC"
    min_importance: float = 0.7  # scores at or above this ignore quiet hours


class SpamConfig(BaseModel):
    rapid_fire_threshold: int = 5
    rapid_fire_window_seconds: int = 30
    sender_hourly_limit: int = 10
    default_reputation: float = 0.8
    reputation_ttl_seconds: int = 86400


class FilteringConfig(BaseModel):
    """
    Configuration for the filtering engine.

    Type weights are the base importance per notification type. Frequency
    limits are per (user, type); types missing here use the 'system' limits.
    """
    type_weights: Dict[str, float] = Field(default_factory=lambda: {
        'mention': 0.9,
        'comment': 0.7,
        'follow': 0.6,
        'like': 0.4,
        'trending': 0.8,
        'system': 0.5,
        'presence': 0.3,
    })
    frequency_limits: Dict[str, FrequencyLimit] = Field(default_factory=lambda: {
        'like': FrequencyLimit(hourly=20, daily=100),
        'comment': FrequencyLimit(hourly=15, daily=80),
        'follow': FrequencyLimit(hourly=10, daily=50),
        'mention': FrequencyLimit(hourly=8, daily=40),
        'trending': FrequencyLimit(hourly=5, daily=20),
        'system': FrequencyLimit(hourly=3, daily=15),
        'presence': FrequencyLimit(hourly=50, daily=200),
    })
    frequency_retry_seconds: int = 3600
    spam: SpamConfig = Field(default_factory=SpamConfig)
    quiet_hours: QuietHoursDefaults = Field(default_factory=QuietHoursDefaults)
    batchable_types: List[str] = Field(default_factory=lambda: ['like', 'follow'])
    batch_score_threshold: float = 0.5
    default_score: float = 0.5  # used when scoring itself fails


class SchedulerConfig(BaseModel):
    """Queue, batching, rate limit and retry settings for the scheduler."""
    drain_interval_seconds: float = 30.0
    batch_window_seconds: int = 300
    max_batch_size: int = 10

    # Per-user send rate limits
    rate_limit_per_minute: int = 10
    rate_limit_per_hour: int = 200
    rate_limit_per_day: int = 1000
    high_priority_bypass: bool = True
    critical_types: List[str] = Field(default_factory=lambda: ['system', 'mention'])

    retry_delays_seconds: List[int] = Field(default_factory=lambda: [1, 2, 4, 8, 16])
    default_max_retries: int = 3

    max_items_per_cycle: int = 500
    drain_lock_ttl_seconds: int = 120
    intent_ttl_seconds: int = 7 * 24 * 3600
    send_inline: bool = True  # due, non-batched intents are sent during schedule()
    run_in_web: bool = False  # start the drain loop inside the web process


class ProviderConfig(BaseModel):
    """A push provider bound to one platform (android, ios, web)."""
    type: str = "log"  # "log" or "webhook"
    url: Optional[str] = None
    auth_token: Optional[str] = None
    timeout_seconds: float = 10.0


class DispatcherConfig(BaseModel):
    max_workers: int = 8
    send_timeout_seconds: float = 15.0
    dry_run: bool = False
    providers: Dict[str, ProviderConfig] = Field(default_factory=lambda: {
        'android': ProviderConfig(),
        'ios': ProviderConfig(),
        'web': ProviderConfig(),
    })


class RealtimeConfig(BaseModel):
    dedup_ttl_seconds: int = 60
    presence_ttl_seconds: int = 300


class TemplatesConfig(BaseModel):
    file: Optional[str] = None  # extra templates (YAML)
    default_locale: str = "en"
    cache_size: int = 1000


class WebConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8080


class LoggingConfig(BaseModel):
    level: str = "INFO"


class AppConfig(BaseModel):
    redis: RedisConfig = Field(default_factory=RedisConfig)
    filtering: FilteringConfig = Field(default_factory=FilteringConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    dispatcher: DispatcherConfig = Field(default_factory=DispatcherConfig)
    realtime: RealtimeConfig = Field(default_factory=RealtimeConfig)
    templates: TemplatesConfig = Field(default_factory=TemplatesConfig)
    web: WebConfig = Field(default_factory=WebConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_config(config_path: str = "config.yaml") -> AppConfig:
    # If not found at relative path (e.g. running from root), try the project root
    if not os.path.exists(config_path):
        base_dir = os.path.dirname(os.path.abspath(__file__))
        config_path = os.path.join(base_dir, "..", config_path)

    data = {}
    if os.path.exists(config_path):
        with open(config_path, "r") as f:
            data = yaml.safe_load(f) or {}
    else:
        logger.info(f"No config file at {config_path}, using defaults")

    # Allow env var override for Redis URL
    env_redis_url = os.environ.get("REDIS_URL")
    if env_redis_url:
        data.setdefault('redis', {})
        data['redis']['url'] = env_redis_url

    env_log_level = os.environ.get("LOG_LEVEL")
    if env_log_level:
        data.setdefault('logging', {})
        data['logging']['level'] = env_log_level

    env_host = os.environ.get("WEB_HOST")
    if env_host:
        data.setdefault('web', {})
        data['web']['host'] = env_host

    env_port = os.environ.get("WEB_PORT")
    if env_port:
        data.setdefault('web', {})
        data['web']['port'] = int(env_port)

    # Same switch the push providers honour at send time
    if os.environ.get('NOTIFICATION_DRY_RUN', '').lower() in ('true', '1', 'yes'):
        data.setdefault('dispatcher', {})
        data['dispatcher']['dry_run'] = True

    return AppConfig(**data)
