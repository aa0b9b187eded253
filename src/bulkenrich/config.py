from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any

from .storage import get_setting, set_setting


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class AppConfig:
    name: str


@dataclass(frozen=True)
class JobsConfig:
    batch_size: int
    item_delay_seconds: float
    batch_delay_seconds: float
    max_concurrent_jobs: int
    stale_after_seconds: int


@dataclass(frozen=True)
class ScanConfig:
    page_size: int


@dataclass(frozen=True)
class LlmConfig:
    base_url: str
    model: str
    api_key: str | None
    timeout_seconds: int
    temperature: float
    max_input_chars: int
    enrichment_max_input_chars: int


@dataclass(frozen=True)
class Config:
    app: AppConfig
    jobs: JobsConfig
    scan: ScanConfig
    llm: LlmConfig


DEFAULT_CONFIG: dict[str, Any] = {
    "app": {
        "name": "bulkenrich",
    },
    "jobs": {
        "batch_size": 3,
        "item_delay_seconds": 0.3,
        "batch_delay_seconds": 0.2,
        "max_concurrent_jobs": 2,
        "stale_after_seconds": 600,
    },
    "scan": {
        "page_size": 1000,
    },
    "llm": {
        "base_url": "https://ai.gateway.lovable.dev/v1",
        "model": "google/gemini-2.5-flash",
        "timeout_seconds": 60,
        "temperature": 0.3,
        "max_input_chars": 2000,
        "enrichment_max_input_chars": 8000,
    },
}

CONFIG_KEY = "config.runtime"


def bootstrap_runtime_config(conn) -> dict[str, Any]:
    cfg = get_setting(conn, CONFIG_KEY, None)
    if cfg is None:
        set_setting(conn, CONFIG_KEY, _deep_copy(DEFAULT_CONFIG))
        cfg = get_setting(conn, CONFIG_KEY, None)
    if not isinstance(cfg, dict):
        raise ConfigError("config.runtime must be a JSON object")
    return cfg


def get_runtime_config(conn) -> dict[str, Any]:
    cfg = bootstrap_runtime_config(conn)
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    return cfg


def set_runtime_config(conn, cfg: dict[str, Any]) -> None:
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    set_setting(conn, CONFIG_KEY, _deep_copy(cfg))


def load_runtime_config(conn) -> Config:
    cfg = get_runtime_config(conn)
    return build_config(cfg)


def validate_runtime_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config.runtime", errors)
    if not errors:
        _validate_ranges(cfg, errors)
    return errors


def _validate_dict(value: dict[str, Any], schema: dict[str, Any], path: str, errors: list[str]) -> None:
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    for key in schema.keys():
        if key not in value:
            errors.append(f"missing {path}.{key}")
    for key in value.keys():
        if key not in schema:
            errors.append(f"unknown {path}.{key}")
    for key, default in schema.items():
        if key not in value:
            continue
        _validate_value(value[key], default, f"{path}.{key}", errors)


def _validate_value(value: Any, default: Any, path: str, errors: list[str]) -> None:
    if isinstance(default, dict):
        if not isinstance(value, dict):
            errors.append(f"{path} must be an object")
            return
        _validate_dict(value, default, path, errors)
        return
    if isinstance(default, bool):
        if not isinstance(value, bool):
            errors.append(f"{path} must be a boolean")
        return
    if isinstance(default, int):
        if not isinstance(value, int) or isinstance(value, bool):
            errors.append(f"{path} must be an integer")
        return
    if isinstance(default, float):
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            errors.append(f"{path} must be a number")
        return
    if isinstance(default, str):
        if not isinstance(value, str):
            errors.append(f"{path} must be a string")
        return


def _validate_ranges(cfg: dict[str, Any], errors: list[str]) -> None:
    jobs = cfg["jobs"]
    if jobs["batch_size"] < 1:
        errors.append("config.runtime.jobs.batch_size must be >= 1")
    if jobs["max_concurrent_jobs"] < 1:
        errors.append("config.runtime.jobs.max_concurrent_jobs must be >= 1")
    for key in ("item_delay_seconds", "batch_delay_seconds", "stale_after_seconds"):
        if jobs[key] < 0:
            errors.append(f"config.runtime.jobs.{key} must be >= 0")
    if cfg["scan"]["page_size"] < 1:
        errors.append("config.runtime.scan.page_size must be >= 1")
    if cfg["llm"]["timeout_seconds"] < 1:
        errors.append("config.runtime.llm.timeout_seconds must be >= 1")


def build_config(cfg: dict[str, Any]) -> Config:
    app_cfg = cfg.get("app") or {}
    jobs_cfg = cfg.get("jobs") or {}
    scan_cfg = cfg.get("scan") or {}
    llm_cfg = cfg.get("llm") or {}

    app = AppConfig(name=str(app_cfg.get("name")))

    jobs = JobsConfig(
        batch_size=int(jobs_cfg.get("batch_size")),
        item_delay_seconds=float(jobs_cfg.get("item_delay_seconds")),
        batch_delay_seconds=float(jobs_cfg.get("batch_delay_seconds")),
        max_concurrent_jobs=int(jobs_cfg.get("max_concurrent_jobs")),
        stale_after_seconds=int(jobs_cfg.get("stale_after_seconds")),
    )

    scan = ScanConfig(page_size=int(scan_cfg.get("page_size")))

    # Credentials never live in the settings table
    llm = LlmConfig(
        base_url=os.environ.get("BE_LLM_BASE_URL", "").strip() or str(llm_cfg.get("base_url")),
        model=os.environ.get("BE_LLM_MODEL", "").strip() or str(llm_cfg.get("model")),
        api_key=os.environ.get("BE_LLM_API_KEY", "").strip() or None,
        timeout_seconds=int(llm_cfg.get("timeout_seconds")),
        temperature=float(llm_cfg.get("temperature")),
        max_input_chars=int(llm_cfg.get("max_input_chars")),
        enrichment_max_input_chars=int(llm_cfg.get("enrichment_max_input_chars")),
    )

    return Config(app=app, jobs=jobs, scan=scan, llm=llm)


def default_config() -> Config:
    return build_config(_deep_copy(DEFAULT_CONFIG))


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value))
