"""Configuration loading and dataclasses."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Mapping

import yaml

from .catalog import ModelDescriptor, parse_descriptors
from .engines.base import GenerationParams
from .prompts import DEFAULT_SYSTEM

logger = logging.getLogger(__name__)


@dataclass
class AppConfig:
    title: str = "LocalChat"
    host: str = "127.0.0.1"
    port: int = 7860
    concurrency_limit: int = 1
    log_level: str = "info"
    offline_mode: bool = False
    progress_poll_ms: int = 250


@dataclass
class GenerationDefaults:
    temperature: float = 0.7
    max_output_tokens: int = 2048
    top_p: float = 1.0
    system_prompt: str | None = DEFAULT_SYSTEM

    def to_params(self) -> GenerationParams:
        return GenerationParams(
            temperature=self.temperature,
            max_output_tokens=self.max_output_tokens,
            top_p=self.top_p,
        )


@dataclass
class EngineConfig:
    compression: str | None = None
    layer_cache_dir: str = "./cache/airllm_layers"
    gpu_index: int | None = 0
    max_context: int = 4096


@dataclass
class RootConfig:
    app: AppConfig = field(default_factory=AppConfig)
    generation_defaults: GenerationDefaults = field(default_factory=GenerationDefaults)
    engine: EngineConfig = field(default_factory=EngineConfig)
    models: list[ModelDescriptor] = field(default_factory=list)


ENV_OVERRIDES = {
    "LOCALCHAT_HOST": ("host", str),
    "LOCALCHAT_PORT": ("port", int),
    "LOCALCHAT_LOG_LEVEL": ("log_level", str),
}


def _get(data: dict[str, Any], key: str, default: Any) -> Any:
    return data.get(key, default) if isinstance(data, dict) else default


def parse_config(raw: dict[str, Any]) -> RootConfig:
    app_raw = _get(raw, "app", {})
    gen_raw = _get(raw, "generation_defaults", {})
    engine_raw = _get(raw, "engine", {})

    app = AppConfig(
        title=_get(app_raw, "title", AppConfig.title),
        host=_get(app_raw, "host", AppConfig.host),
        port=int(_get(app_raw, "port", AppConfig.port)),
        concurrency_limit=int(_get(app_raw, "concurrency_limit", AppConfig.concurrency_limit)),
        log_level=str(_get(app_raw, "log_level", AppConfig.log_level)),
        offline_mode=bool(_get(app_raw, "offline_mode", AppConfig.offline_mode)),
        progress_poll_ms=int(_get(app_raw, "progress_poll_ms", AppConfig.progress_poll_ms)),
    )

    gen = GenerationDefaults(
        temperature=float(_get(gen_raw, "temperature", GenerationDefaults.temperature)),
        max_output_tokens=int(_get(gen_raw, "max_output_tokens", GenerationDefaults.max_output_tokens)),
        top_p=float(_get(gen_raw, "top_p", GenerationDefaults.top_p)),
        system_prompt=_get(gen_raw, "system_prompt", GenerationDefaults.system_prompt),
    )

    engine = EngineConfig(
        compression=_get(engine_raw, "compression", EngineConfig.compression),
        layer_cache_dir=_get(engine_raw, "layer_cache_dir", EngineConfig.layer_cache_dir),
        gpu_index=_get(engine_raw, "gpu_index", EngineConfig.gpu_index),
        max_context=int(_get(engine_raw, "max_context", EngineConfig.max_context)),
    )

    return RootConfig(
        app=app,
        generation_defaults=gen,
        engine=engine,
        models=parse_descriptors(_get(raw, "models", [])),
    )


def load_config(path: str) -> RootConfig:
    if not os.path.exists(path):
        return RootConfig()
    with open(path, "r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}
    return parse_config(raw)


def apply_env(cfg: RootConfig, environ: Mapping[str, str] | None = None) -> RootConfig:
    environ = os.environ if environ is None else environ
    for name, (attr, cast) in ENV_OVERRIDES.items():
        value = environ.get(name)
        if not value:
            continue
        try:
            setattr(cfg.app, attr, cast(value))
        except ValueError:
            logger.warning("Ignoring invalid %s=%r", name, value)
    return cfg
