"""
Configuration management and loading.

Handles application settings and environment variables.
"""

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from ..core.pricing import PRICING_TABLE

ENV_API_KEY = "OPENAI_API_KEY"
ENV_CONFIG_PATH = "COPYFORGE_CONFIG"
ENV_DB_PATH = "COPYFORGE_DB"


@dataclass(frozen=True)
class OpenAIConfig:
    """Model endpoint settings."""
    api_key: Optional[str] = None
    model: str = "gpt-4-turbo-preview"
    temperature: float = 0.7
    max_tokens: int = 4096
    timeout_seconds: float = 60.0
    system_message: str = (
        "You are a helpful assistant that generates SEO-optimized marketing "
        "copy for e-commerce landing pages."
    )

    def __post_init__(self):
        """Validate model settings."""
        PRICING_TABLE.get_pricing(self.model)
        if not 0 <= self.temperature <= 2:
            raise ValueError("temperature must be between 0 and 2")
        if self.max_tokens <= 0:
            raise ValueError("max_tokens must be > 0")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")


@dataclass(frozen=True)
class BudgetConfig:
    """Monthly spend ceiling. A monthly value of 0 means unlimited."""
    enabled: bool = True
    monthly: float = 100.0
    alert_threshold_percent: int = 80

    def __post_init__(self):
        """Validate budget values."""
        if self.monthly < 0:
            raise ValueError("monthly budget must be >= 0")
        if not 0 < self.alert_threshold_percent <= 100:
            raise ValueError("alert_threshold_percent must be between 1 and 100")


@dataclass(frozen=True)
class QueueConfig:
    """Pacing and retry behaviour of the generation queue."""
    pacing_seconds: int = 180
    max_retries: int = 3
    cleanup_days: int = 7

    def __post_init__(self):
        if self.pacing_seconds <= 0:
            raise ValueError("pacing_seconds must be > 0")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.cleanup_days <= 0:
            raise ValueError("cleanup_days must be > 0")


@dataclass(frozen=True)
class BulkConfig:
    """Per-user ceiling on simultaneous bulk runs."""
    max_concurrent: int = 3
    marker_ttl_seconds: int = 600

    def __post_init__(self):
        if self.max_concurrent <= 0:
            raise ValueError("max_concurrent must be > 0")
        if self.marker_ttl_seconds <= 0:
            raise ValueError("marker_ttl_seconds must be > 0")


@dataclass(frozen=True)
class ImageConfig:
    """Automatic image assignment."""
    auto_assign: bool = True
    default_image_id: Optional[int] = None


@dataclass(frozen=True)
class LogConfig:
    """Retention of generation log rows."""
    retention_days: int = 30

    def __post_init__(self):
        if self.retention_days <= 0:
            raise ValueError("retention_days must be > 0")


@dataclass(frozen=True)
class Settings:
    """Complete application configuration."""
    openai: OpenAIConfig = field(default_factory=OpenAIConfig)
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    bulk: BulkConfig = field(default_factory=BulkConfig)
    images: ImageConfig = field(default_factory=ImageConfig)
    logs: LogConfig = field(default_factory=LogConfig)
    business: Dict[str, str] = field(default_factory=dict)
    catalog_path: Optional[str] = None
    db_path: str = "copyforge.db"


_SECTIONS = {
    "openai": OpenAIConfig,
    "budget": BudgetConfig,
    "queue": QueueConfig,
    "bulk": BulkConfig,
    "images": ImageConfig,
    "logs": LogConfig,
}

BUSINESS_KEYS = {
    "business_name", "business_type", "business_description",
    "business_address", "service_area", "business_phone",
    "business_email", "business_url", "years_in_business",
    "usps", "certifications",
}


def load_settings(path: Optional[str] = None, env: Optional[Dict[str, str]] = None) -> Settings:
    """Load and validate settings from a YAML file plus environment overrides.

    Strict validation ensures no silent misconfigurations that could
    lead to unexpected spend.

    Args:
        path: Path to YAML settings file. Falls back to $COPYFORGE_CONFIG;
            when neither is set, defaults are used.
        env: Environment mapping (defaults to os.environ)

    Returns:
        Validated Settings object

    Raises:
        FileNotFoundError: If an explicit config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
        UnknownModelError: If the configured model has no pricing entry
    """
    env = os.environ if env is None else env
    path = path or env.get(ENV_CONFIG_PATH)

    raw_config: Dict[str, Any] = {}
    if path:
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(config_path, 'r', encoding='utf-8') as f:
            try:
                raw_config = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not isinstance(raw_config, dict):
        raise ValueError("Configuration root must be a dictionary")

    allowed_top_keys = set(_SECTIONS) | {"business", "catalog_path", "db_path"}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {
        name: _parse_section(raw_config.get(name, {}), cls, name)
        for name, cls in _SECTIONS.items()
    }

    business = _parse_business(raw_config.get("business", {}))

    openai_config = sections["openai"]
    if env.get(ENV_API_KEY):
        sections["openai"] = replace(openai_config, api_key=env[ENV_API_KEY])

    db_path = env.get(ENV_DB_PATH) or raw_config.get("db_path") or "copyforge.db"
    catalog_path = raw_config.get("catalog_path")
    if catalog_path is not None and not isinstance(catalog_path, str):
        raise ValueError("'catalog_path' must be a string")

    return Settings(
        business=business,
        catalog_path=catalog_path,
        db_path=str(db_path),
        **sections,
    )


def _parse_section(data: Any, cls, path: str):
    """Parse and validate one settings section into its dataclass.

    Args:
        data: Raw section mapping
        cls: Dataclass to build
        path: Path for error messages

    Returns:
        Validated section instance

    Raises:
        ValueError: If configuration is invalid
    """
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")

    allowed = {f.name: f for f in fields(cls)}
    unknown_keys = set(data.keys()) - set(allowed)
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    values = {}
    for key, value in data.items():
        expected = allowed[key].type
        values[key] = _coerce(value, expected, f"{path}.{key}")

    return cls(**values)


def _coerce(value: Any, expected, path: str):
    """Check a raw YAML value against the dataclass field annotation."""
    if value is None:
        if expected in (Optional[str], Optional[int]):
            return None
        raise ValueError(f"'{path}' cannot be empty")

    if expected is bool:
        if not isinstance(value, bool):
            raise ValueError(f"'{path}' must be true or false")
        return value
    if expected in (int, Optional[int]):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"'{path}' must be an integer")
        return value
    if expected is float:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"'{path}' must be a number")
        return float(value)
    if expected in (str, Optional[str]):
        if not isinstance(value, str):
            raise ValueError(f"'{path}' must be a string")
        return value
    return value


def _parse_business(data: Any) -> Dict[str, str]:
    """Business profile strings substituted into prompts.

    List values (usps, certifications) are joined with commas.
    """
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError("'business' must be a dictionary")

    unknown_keys = set(data.keys()) - BUSINESS_KEYS
    if unknown_keys:
        raise ValueError(f"Unknown keys in business: {unknown_keys}")

    profile = {}
    for key, value in data.items():
        if isinstance(value, list):
            profile[key] = ", ".join(str(item).strip() for item in value if str(item).strip())
        elif value is None:
            profile[key] = ""
        else:
            profile[key] = str(value)
    return profile
