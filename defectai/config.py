from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

DEFAULT_CONFIG_PATH = Path("configs/default.yaml")
ENV_PREFIX = "DEFECTAI_"


class PresenceSettings(BaseModel):
    working_width: int = Field(160, gt=0)
    working_height: int = Field(120, gt=0)
    sample_stride: int = Field(4, ge=1)
    motion_threshold: float = Field(25.0, ge=0.0, le=255.0)
    presence_threshold: float = Field(0.02, ge=0.0, le=1.0)
    exit_frames_required: int = Field(15, ge=1)


class InspectionSettings(BaseModel):
    buffer_size: int = Field(8, ge=1)
    auto_save: bool = True


class CameraSettings(BaseModel):
    source: str = "0"
    frame_width: int = 1280
    frame_height: int = 720
    analysis_fps: float = Field(30.0, gt=0.0)
    reconnect_attempts: int = Field(3, ge=0)
    reconnect_delay_seconds: float = Field(2.0, ge=0.0)
    max_failed_reads: int = Field(30, ge=1)
    thumbnail_size: int = Field(96, gt=0)


class ClassifierSettings(BaseModel):
    factory: str | None = None
    every_n_frames: int = Field(5, ge=1)
    options: dict[str, Any] = Field(default_factory=dict)


class StorageSettings(BaseModel):
    history_path: Path = Path("data/history/inspections.jsonl")
    export_dir: Path = Path("data/exports")


class LoggingSettings(BaseModel):
    level: str = "INFO"


class Settings(BaseModel):
    presence: PresenceSettings = Field(default_factory=PresenceSettings)
    inspection: InspectionSettings = Field(default_factory=InspectionSettings)
    camera: CameraSettings = Field(default_factory=CameraSettings)
    classifier: ClassifierSettings = Field(default_factory=ClassifierSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load typed settings from YAML with environment-variable overrides."""

    resolved_path = Path(
        config_path
        or os.getenv(f"{ENV_PREFIX}CONFIG")
        or DEFAULT_CONFIG_PATH
    )
    raw_config = yaml.safe_load(resolved_path.read_text(encoding="utf-8")) or {}
    data = Settings.model_validate(raw_config).model_dump(mode="python")

    for key, raw_value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue

        suffix = key[len(ENV_PREFIX) :]
        if suffix == "CONFIG":
            continue

        path = [part.lower() for part in suffix.split("__")]
        _apply_override(data, path, raw_value)

    return Settings.model_validate(data)


def _apply_override(data: dict[str, Any], path: list[str], raw_value: str) -> None:
    current: Any = data
    for segment in path[:-1]:
        if not isinstance(current, dict) or segment not in current:
            return
        current = current[segment]

    if not isinstance(current, dict):
        return

    final_key = path[-1]
    if final_key not in current:
        return

    current[final_key] = _coerce_value(raw_value, current[final_key])


def _coerce_value(raw_value: str, existing_value: Any) -> Any:
    if isinstance(existing_value, bool):
        return raw_value.lower() in {"1", "true", "yes", "on"}
    if isinstance(existing_value, int) and not isinstance(existing_value, bool):
        return int(raw_value)
    if isinstance(existing_value, float):
        return float(raw_value)
    if isinstance(existing_value, list | dict):
        return json.loads(raw_value)
    if isinstance(existing_value, Path):
        return Path(raw_value)
    return raw_value
