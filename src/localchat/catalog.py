"""Model catalog helpers."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import yaml

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelDescriptor:
    id: str
    display_name: str
    description: str = ""
    size_label: str = ""
    param_count_label: str = ""
    tags: frozenset[str] = field(default_factory=frozenset)
    quantization: str | None = None
    local_path: str | None = None


DEFAULT_DESCRIPTOR = ModelDescriptor(
    id="meta-llama/Llama-3.2-1B-Instruct",
    display_name="Llama 3.2 1B Instruct",
    description="Small, fast model ideal for quick responses",
    size_label="650 MB",
    param_count_label="1B",
    tags=frozenset({"fast", "lightweight", "recommended"}),
)


def parse_descriptors(items: Any) -> list[ModelDescriptor]:
    if not isinstance(items, list):
        return []
    models: list[ModelDescriptor] = []
    for item in items:
        if not isinstance(item, dict) or not item.get("id"):
            logger.warning("Skipping catalog entry without id: %r", item)
            continue
        models.append(
            ModelDescriptor(
                id=str(item["id"]),
                display_name=str(item.get("display_name") or item["id"]),
                description=str(item.get("description", "")),
                size_label=str(item.get("size", "")),
                param_count_label=str(item.get("parameters", "")),
                tags=frozenset(str(tag) for tag in item.get("tags") or ()),
                quantization=item.get("quantization"),
                local_path=item.get("local_path"),
            )
        )
    return models


def load_catalog(path: str) -> list[ModelDescriptor]:
    """Read the ``models`` list from a YAML file, or the built-in default."""
    try:
        with open(path, "r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}
    except (OSError, yaml.YAMLError) as exc:
        logger.warning("Failed to fetch models from %s: %s", path, exc)
        return [DEFAULT_DESCRIPTOR]
    models = parse_descriptors(raw.get("models") if isinstance(raw, dict) else None)
    if not models:
        logger.warning("No models found in %s; using default", path)
        return [DEFAULT_DESCRIPTOR]
    return models


class ModelCatalog:
    def __init__(self, models: list[ModelDescriptor]):
        self._models = list(models) or [DEFAULT_DESCRIPTOR]

    def list(self) -> list[ModelDescriptor]:
        return list(self._models)

    def get(self, model_id: str) -> ModelDescriptor:
        for model in self._models:
            if model.id == model_id:
                return model
        raise KeyError(f"Model not found: {model_id}")

    def local_paths(self) -> dict[str, str]:
        return {m.id: m.local_path for m in self._models if m.local_path}
