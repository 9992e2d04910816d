"""AirLLM engine implementation."""
from __future__ import annotations

import asyncio
import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, AsyncIterator, Sequence

import torch
from airllm import AutoModel
from transformers import TextStreamer

from .base import DeviceSpec, GenerationParams, ProgressFn, TokenDelta
from .streaming import Emit, stream_from_thread
from ..config import EngineConfig
from ..prompts import render_prompt

logger = logging.getLogger(__name__)


def _ensure_safetensors_index(model_path: str) -> None:
    index_path = Path(model_path) / "model.safetensors.index.json"
    if index_path.exists():
        return
    st_path = Path(model_path) / "model.safetensors"
    if not st_path.exists():
        return
    from safetensors import safe_open

    weight_map: dict[str, str] = {}
    with safe_open(str(st_path), framework="pt") as f:
        for key in f.keys():
            weight_map[key] = st_path.name
    data = {
        "metadata": {"total_size": os.path.getsize(st_path)},
        "weight_map": weight_map,
    }
    with open(index_path, "w", encoding="utf-8") as handle:
        json.dump(data, handle)


def build_device(cfg: EngineConfig) -> DeviceSpec:
    if torch.cuda.is_available() and cfg.gpu_index is not None and cfg.gpu_index >= 0:
        return DeviceSpec(kind="cuda", gpu_index=cfg.gpu_index)
    return DeviceSpec(kind="cpu", gpu_index=None)


def resolve_cache_dir(base_dir: str, model_id: str) -> str:
    if not base_dir:
        return base_dir
    safe_id = model_id.replace("/", "--")
    if "{model_id}" in base_dir:
        return base_dir.replace("{model_id}", safe_id)
    base = os.path.basename(base_dir.rstrip("/\\"))
    if base != safe_id:
        return os.path.join(base_dir, safe_id)
    return base_dir


class _EmitStreamer(TextStreamer):
    """Hands decoded text to ``emit``; checks for cancellation on every token."""

    def __init__(self, tokenizer: Any, emit: Emit) -> None:
        super().__init__(tokenizer, skip_prompt=True, skip_special_tokens=True)
        self._emit = emit

    def put(self, value: Any) -> None:
        self._emit("")
        super().put(value)

    def on_finalized_text(self, text: str, stream_end: bool = False) -> None:
        self._emit(text)


class AirLLMEngineHandle:
    def __init__(self, model_id: str, model: Any, tokenizer: Any, device: torch.device, max_context: int) -> None:
        self.model_id = model_id
        self._model = model
        self._tokenizer = tokenizer
        self._device = device
        self._max_context = max_context
        self._active: set[threading.Event] = set()

    async def generate_stream(
        self, messages: Sequence[dict[str, str]], params: GenerationParams
    ) -> AsyncIterator[TokenDelta]:
        if self._model is None or self._tokenizer is None:
            raise RuntimeError("Engine not loaded")

        prompt = render_prompt(self._tokenizer, list(messages))
        inputs = self._tokenizer(
            prompt,
            return_tensors="pt",
            truncation=True,
            max_length=self._max_context,
        )
        input_ids = inputs["input_ids"].to(self._device)
        attention_mask = inputs.get("attention_mask")
        if attention_mask is not None:
            attention_mask = attention_mask.to(self._device)

        model = self._model
        tokenizer = self._tokenizer

        def _produce(emit: Emit) -> None:
            model.generate(
                input_ids=input_ids,
                attention_mask=attention_mask,
                max_new_tokens=params.max_output_tokens,
                temperature=params.temperature,
                top_p=params.top_p,
                do_sample=params.temperature > 0,
                use_cache=False,
                streamer=_EmitStreamer(tokenizer, emit),
            )

        cancelled = threading.Event()
        self._active.add(cancelled)
        try:
            async for delta in stream_from_thread(_produce, cancelled, name="airllm-generate"):
                yield delta
        finally:
            self._active.discard(cancelled)

    def dispose(self) -> None:
        for cancelled in list(self._active):
            cancelled.set()
        self._active.clear()
        if self._model is None:
            return
        logger.info("Releasing engine for %s", self.model_id)
        self._model = None
        self._tokenizer = None
        if torch.cuda.is_available():
            torch.cuda.empty_cache()


class AirLLMEngineFactory:
    """Creates AirLLM handles; model ids resolve to local paths when known."""

    def __init__(self, cfg: EngineConfig, local_paths: dict[str, str] | None = None) -> None:
        self._cfg = cfg
        self._local_paths = dict(local_paths or {})

    def _load_blocking(self, model_path: str, cache_dir: str) -> tuple[Any, Any]:
        if os.path.isdir(model_path):
            _ensure_safetensors_index(model_path)
        if cache_dir:
            os.makedirs(cache_dir, exist_ok=True)
        model = AutoModel.from_pretrained(
            model_path,
            layer_shards_saving_path=cache_dir or None,
            compression=self._cfg.compression,
        )
        tokenizer = getattr(model, "tokenizer", None)
        if tokenizer is None:
            raise RuntimeError("Model tokenizer not available")
        return model, tokenizer

    async def create(self, model_id: str, on_progress: ProgressFn) -> AirLLMEngineHandle:
        spec = build_device(self._cfg)
        if spec.kind == "cuda":
            device = torch.device(f"cuda:{spec.gpu_index or 0}")
        else:
            device = torch.device("cpu")

        model_path = self._local_paths.get(model_id) or model_id
        cache_dir = resolve_cache_dir(self._cfg.layer_cache_dir, model_id)

        on_progress(0.0, f"Preparing {model_id} on {device}")
        on_progress(0.1, "Splitting model layers")
        model, tokenizer = await asyncio.to_thread(self._load_blocking, model_path, cache_dir)
        on_progress(1.0, "Model ready")
        return AirLLMEngineHandle(model_id, model, tokenizer, device, self._cfg.max_context)
