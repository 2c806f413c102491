import logging
import os
from pathlib import Path
from typing import Any, Literal, Mapping, Self

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from core.settings import CONFIG_ENV_NESTING_SEPARATOR, CONFIG_ENV_PREFIX, SCRATCH_DIR
from vendor_ingestion.errors import ConfigError

logger = logging.getLogger(__name__)


class StrictBaseModel(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class ApiSpec(StrictBaseModel):
    vendors_url: str = "https://disco.deliveryhero.io/listing/api/v1/pandora/vendors"
    page_size: int = Field(default=48, gt=0)
    headers: dict[str, str] = Field(default_factory=dict)
    base_params: dict[str, str] = Field(default_factory=dict)
    # One User-Agent per pooled client profile; rotated per request.
    user_agents: list[str] = Field(default_factory=lambda: [
        "Mozilla/5.0 (X11; Linux x86_64; rv:136.0) Gecko/20100101 Firefox/136.0",
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/133.0 Safari/537.36",
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_3) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/18.3 Safari/605.1.15",
    ])
    attempt_timeout_seconds: float = Field(default=20.0, gt=0)


class RetrySpec(StrictBaseModel):
    max_retries: int = Field(default=5, ge=1)
    base_delay_seconds: float = Field(default=1.0, ge=0)
    max_delay_seconds: float = Field(default=30.0, ge=0)
    jitter_min: float = Field(default=0.5, ge=0)
    jitter_max: float = Field(default=1.5, ge=0)

    @model_validator(mode="after")
    def validate_spec(self) -> Self:
        if self.base_delay_seconds > self.max_delay_seconds:
            raise ValueError("base_delay_seconds must not exceed max_delay_seconds")
        if self.jitter_min > self.jitter_max:
            raise ValueError("jitter_min must not exceed jitter_max")
        return self


class RateLimitSpec(StrictBaseModel):
    max_concurrent: int = Field(default=4, ge=1)
    max_requests_per_window: int = Field(default=60, ge=1)
    window_seconds: float = Field(default=60.0, gt=0)


class StorageSpec(StrictBaseModel):
    endpoint_url: str | None = None
    access_key: str | None = None
    secret_key: str | None = None
    region: str = "us-east-1"
    bucket: str
    key_prefix: str = ""
    create_bucket: bool = False
    addressing_style: Literal["path", "virtual", "auto"] = "path"
    multipart_threshold_bytes: int = Field(default=8 * 1024 * 1024, gt=0)
    connect_timeout_seconds: float = Field(default=10.0, gt=0)
    read_timeout_seconds: float = Field(default=60.0, gt=0)

    @model_validator(mode="after")
    def validate_spec(self) -> Self:
        if (self.access_key is None) ^ (self.secret_key is None):
            raise ValueError("Both access_key and secret_key must be specified together")
        return self


class TransformSpec(StrictBaseModel):
    # A page dropping more than this fraction of its records fails the city.
    max_drop_fraction: float = Field(default=0.5, ge=0.0, le=1.0)


VENDOR_CODE_PLACEHOLDER = "{vendor_code}"


class EnrichmentSpec(StrictBaseModel):
    """Per-vendor detail, rating and review lookups. Off unless enabled."""
    enabled: bool = False
    details_url: str = "https://pk.fd-api.com/api/v5/vendors/{vendor_code}"
    details_params: dict[str, str] = Field(default_factory=lambda: {
        "include": "menus,bundles,multiple_discounts",
        "language_id": "1",
        "opening_type": "delivery",
        "basket_currency": "PKR",
    })
    fetch_ratings: bool = True
    ratings_url: str = "https://reviews-api-pk.fd-api.com/ratings-distribution/vendor/{vendor_code}"
    ratings_params: dict[str, str] = Field(default_factory=lambda: {"global_entity_id": "FP_PK"})
    fetch_reviews: bool = False
    reviews_url: str = "https://reviews-api-pk.fd-api.com/reviews/vendor/{vendor_code}"
    reviews_params: dict[str, str] = Field(default_factory=lambda: {
        "global_entity_id": "FP_PK",
        "limit": "30",
        "created_at": "desc",
        "has_dish": "true",
    })
    max_concurrent_vendors: int = Field(default=8, ge=1)

    @model_validator(mode="after")
    def validate_spec(self) -> Self:
        for name in ("details_url", "ratings_url", "reviews_url"):
            if VENDOR_CODE_PLACEHOLDER not in getattr(self, name):
                raise ValueError(f"{name} must contain the {VENDOR_CODE_PLACEHOLDER} placeholder")
        return self


class PipelineConfig(StrictBaseModel):
    cities: list[str]
    api: ApiSpec = Field(default_factory=ApiSpec)
    retry: RetrySpec = Field(default_factory=RetrySpec)
    rate_limit: RateLimitSpec = Field(default_factory=RateLimitSpec)
    storage: StorageSpec
    transform: TransformSpec = Field(default_factory=TransformSpec)
    enrichment: EnrichmentSpec = Field(default_factory=EnrichmentSpec)

    max_parallel_cities: int = Field(default=4, ge=1)
    scratch_dir: str = str(SCRATCH_DIR)
    keep_raw_json: bool = False
    cleanup_on_success: bool = True

    @field_validator("cities", mode="before")
    @classmethod
    def stringify_city_ids(cls, value: Any) -> Any:
        # YAML reads unquoted ids like 69036 as ints
        if isinstance(value, list):
            return [str(v) if isinstance(v, int) and not isinstance(v, bool) else v for v in value]
        return value

    @model_validator(mode="after")
    def validate_spec(self) -> Self:
        if not self.cities:
            raise ValueError("At least one city id must be configured")

        if duplicates := sorted({c for c in self.cities if self.cities.count(c) > 1}):
            raise ValueError(f"Duplicate city ids: {duplicates}")

        for city_id in self.cities:
            if not city_id.strip() or "/" in city_id or "=" in city_id:
                raise ValueError(f"Invalid city id '{city_id}'. It is used verbatim in object keys.")

        return self


def _parse_env_value(env_key: str, raw_value: str) -> Any:
    if not raw_value.lstrip().startswith(("[", "{")):
        return raw_value
    try:
        return yaml.safe_load(raw_value)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid value in environment variable {env_key}: {e}") from e


def apply_env_overrides(data: dict[str, Any], environ: Mapping[str, str]) -> dict[str, Any]:
    """
    Overlay APP_-prefixed environment variables onto the parsed YAML.

    APP_STORAGE__SECRET_KEY=... sets data["storage"]["secret_key"]. Values are YAML
    parsed only when they look like a flow collection, so APP_CITIES="[69036, 69037]"
    becomes a list; scalars stay strings and pydantic coerces them.
    """
    merged: dict[str, Any] = dict(data)
    for env_key, raw_value in sorted(environ.items()):
        if not env_key.startswith(CONFIG_ENV_PREFIX):
            continue
        path = [p.lower() for p in env_key[len(CONFIG_ENV_PREFIX):].split(CONFIG_ENV_NESTING_SEPARATOR) if p]
        if not path:
            continue

        node = merged
        for part in path[:-1]:
            child = node.get(part)
            child = dict(child) if isinstance(child, dict) else {}
            node[part] = child
            node = child
        node[path[-1]] = _parse_env_value(env_key, raw_value)
        logger.debug("Config override from environment: %s", env_key)

    return merged


def load_pipeline_config(path: str | Path, environ: Mapping[str, str] | None = None) -> PipelineConfig:
    config_path = Path(path)
    if not config_path.exists():
        raise ConfigError(f"Missing config file: {config_path}")

    try:
        with open(config_path, "r") as file:
            config_yaml = yaml.safe_load(file) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file {config_path}: {e}") from e

    if not isinstance(config_yaml, dict):
        raise ConfigError(f"Config file {config_path} must contain a mapping at the top level")

    config_yaml = apply_env_overrides(config_yaml, os.environ if environ is None else environ)

    try:
        return PipelineConfig.model_validate(config_yaml)
    except ValidationError as e:
        raise ConfigError(f"Error loading pipeline config from {config_path}: {e}") from e
