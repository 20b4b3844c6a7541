# src/routeguard/config/settings.py
"""
Application settings (Pydantic).

Settings are loaded from `src/routeguard/config/defaults.yaml`, then optionally overridden by:
- environment variables (e.g., `PLACE_SEARCH_API_KEY`, `ROUTEGUARD_DATASET_URL`)
- an external YAML file via `ROUTEGUARD_CONFIG_PATH`

Design rule:
- Matching radii, thresholds and classification vocabularies live in YAML, not in business logic.
"""

from __future__ import annotations

import os
from functools import lru_cache
from importlib import resources
from pathlib import Path
from typing import Any
from routeguard.core.env import load_dotenv_if_present

import yaml
from pydantic import BaseModel, Field


def _read_package_yaml(filename: str) -> dict[str, Any]:
    """Read a YAML file packaged inside `routeguard.config`."""
    text = resources.files("routeguard.config").joinpath(filename).read_text(encoding="utf-8")
    data = yaml.safe_load(text) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Invalid YAML root object for {filename}; expected a mapping.")
    return data


def _read_yaml_file(path: str | Path) -> dict[str, Any]:
    """Read a YAML file from disk and return its mapping root."""
    data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Invalid YAML root object for {path}; expected a mapping.")
    return data


class AppSettings(BaseModel):
    name: str = "RouteGuard"
    http_timeout_seconds: float = 10
    http_total_timeout_seconds: float = 20
    log_level: str = "INFO"


class CacheSettings(BaseModel):
    enabled: bool = True
    dir: str = ".cache/routeguard"
    default_ttl_seconds: int = 60 * 60 * 24


class DatasetSettings(BaseModel):
    url: str | None = None
    cache_path: str = ".cache/routeguard/hazards.json"
    refresh_interval_seconds: int = 60 * 60 * 12
    lookup_radius_m: float = Field(85, gt=0)
    cell_size_deg: float = Field(0.01, gt=0)
    error_body_limit: int = Field(600, ge=0)


class PublicApiSettings(BaseModel):
    base_url: str = "https://www.api.data.go.kr/openapi/tn_pubr_public_unmanned_traffic_camera_api"
    service_key: str | None = None
    rows_per_page: int = Field(1000, ge=100, le=1000)
    max_pages: int = Field(2000, ge=1)
    source_label: str = "data.go.kr: tn_pubr_public_unmanned_traffic_camera_api"


class MatchingSettings(BaseModel):
    bbox_margin_m: float = Field(320, ge=0)
    corridor_m: float = Field(180, ge=0)
    dedupe_m: float = Field(28, ge=0)
    fusion_m: float = Field(35, ge=0)
    turn_passed_m: float = Field(25, ge=0)
    hazard_passed_m: float = Field(20, ge=0)
    vertex_slack: int = Field(2, ge=0)


class VehicleSettings(BaseModel):
    min_coordinate_delta_deg: float = Field(0.00002, ge=0)
    min_speed_delta_kph: float = Field(0.3, ge=0)
    unknown_radius_m: float = Field(1.0, ge=0)


class ClassificationSettings(BaseModel):
    keywords: list[str] = Field(
        default_factory=lambda: ["speed", "camera", "enforcement", "cctv", "section-control"]
    )
    maneuver_types: list[int] = Field(default_factory=list)


class PlaceSearchSettings(BaseModel):
    base_url: str = "https://dapi.kakao.com/v2/local/search/keyword.json"
    api_key: str | None = None
    query: str = "speed camera"
    radius_m: int = 15_000
    page_limit: int = 3
    page_size: int = Field(15, ge=1, le=15)
    cache_ttl_seconds: int = 60 * 10
    min_interval_seconds: float = 60
    min_move_m: float = 2_000


class AlertSettings(BaseModel):
    thresholds_m: list[int] = Field(default_factory=lambda: [1000, 500, 300, 150])
    max_display_m: int = 1800
    overspeed_window_m: int = 500
    slow_down_stage_m: int = 300
    slow_down_speed_kph: float = 50
    announce_interval_seconds: float = 5
    overspeed_repeat_seconds: float = 1.2


class Settings(BaseModel):
    app: AppSettings = Field(default_factory=AppSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    dataset: DatasetSettings = Field(default_factory=DatasetSettings)
    public_api: PublicApiSettings = Field(default_factory=PublicApiSettings)
    matching: MatchingSettings = Field(default_factory=MatchingSettings)
    vehicle: VehicleSettings = Field(default_factory=VehicleSettings)
    classification: ClassificationSettings = Field(default_factory=ClassificationSettings)
    place_search: PlaceSearchSettings = Field(default_factory=PlaceSearchSettings)
    alerts: AlertSettings = Field(default_factory=AlertSettings)


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Overlay selected environment variables onto raw settings payload.

    Note: We intentionally keep this whitelist small to avoid exposing unsafe overrides.
    """
    load_dotenv_if_present()
    data = dict(data)
    cache_dir = os.getenv("ROUTEGUARD_CACHE_DIR")
    if cache_dir:
        data.setdefault("cache", {})["dir"] = cache_dir

    log_level = os.getenv("ROUTEGUARD_LOG_LEVEL")
    if log_level:
        data.setdefault("app", {})["log_level"] = log_level

    dataset_url = os.getenv("ROUTEGUARD_DATASET_URL")
    if dataset_url:
        data.setdefault("dataset", {})["url"] = dataset_url

    dataset_path = os.getenv("ROUTEGUARD_DATASET_PATH")
    if dataset_path:
        data.setdefault("dataset", {})["cache_path"] = dataset_path

    place_key = os.getenv("PLACE_SEARCH_API_KEY")
    if place_key:
        data.setdefault("place_search", {})["api_key"] = place_key

    service_key = os.getenv("DATA_GO_KR_SERVICE_KEY")
    if service_key:
        data.setdefault("public_api", {})["service_key"] = service_key

    return data


@lru_cache
def get_settings() -> Settings:
    """Load and validate settings (cached)."""
    load_dotenv_if_present()
    config_path = os.getenv("ROUTEGUARD_CONFIG_PATH")
    raw = _read_yaml_file(config_path) if config_path else _read_package_yaml("defaults.yaml")
    raw = _apply_env_overrides(raw)
    return Settings.model_validate(raw)


@lru_cache
def get_logging_config() -> dict[str, Any]:
    """Load logging configuration (cached)."""
    return _read_package_yaml("logging.yaml")
