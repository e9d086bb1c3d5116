import yaml
import os
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field, ValidationError

from notifier.config import ChannelsConfig, DeduplicationConfig, RateLimitConfig
from notifier.exceptions import ConfigurationError


class DirectoryConfig(BaseModel):
    recipients_file: Optional[str] = None  # YAML/JSON staff documents
    cache_ttl_seconds: float = Field(default=30.0, ge=0)


class DatabaseConfig(BaseModel):
    url: Optional[str] = None  # Audit log disabled when unset


class QueueConfig(BaseModel):
    name: str = "notifications:job_events"
    block_timeout_seconds: int = Field(default=5, ge=1)


class AppConfig(BaseModel):
    redis_url: str = "redis://localhost:6379/0"
    dry_run: bool = False  # Log instead of calling transports
    rate_limits: RateLimitConfig = Field(default_factory=RateLimitConfig)
    deduplication: DeduplicationConfig = Field(default_factory=DeduplicationConfig)
    channels: ChannelsConfig = Field(default_factory=ChannelsConfig)
    directory: DirectoryConfig = Field(default_factory=DirectoryConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)


def _section(data: Dict[str, Any], *path: str) -> Dict[str, Any]:
    """Return the nested dict at ``path``, creating empty levels as needed."""
    node = data
    for key in path:
        if not isinstance(node.get(key), dict):
            node[key] = {}
        node = node[key]
    return node


def load_config(config_path: str = "config.yaml") -> AppConfig:
    # If not found at relative path (e.g. running from root), try the repository root
    if not os.path.exists(config_path):
        base_dir = os.path.dirname(os.path.abspath(__file__))
        config_path = os.path.join(base_dir, "..", "config.yaml")

    data: Dict[str, Any] = {}
    if os.path.exists(config_path):
        with open(config_path, "r") as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Could not parse {config_path}: {e}") from e

    # Allow env var override for Redis URL
    env_redis_url = os.environ.get("REDIS_URL")
    if env_redis_url:
        data['redis_url'] = env_redis_url

    # Allow env var override for the audit database
    env_db_url = os.environ.get("DATABASE_URL")
    if env_db_url:
        _section(data, 'database')['url'] = env_db_url

    # Allow env var override for the push gateway
    env_gateway_url = os.environ.get("PUSH_GATEWAY_URL")
    if env_gateway_url:
        _section(data, 'channels', 'push')['gateway_url'] = env_gateway_url

    env_gateway_token = os.environ.get("PUSH_GATEWAY_ACCESS_TOKEN")
    if env_gateway_token:
        _section(data, 'channels', 'push')['access_token'] = env_gateway_token

    env_dry_run = os.environ.get("NOTIFICATION_DRY_RUN")
    if env_dry_run:
        data['dry_run'] = env_dry_run.lower() in ('true', '1', 'yes')

    try:
        return AppConfig(**data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration in {config_path}: {e}") from e
