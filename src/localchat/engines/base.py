"""Engine protocol and dataclasses."""
from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncIterator, Callable, Literal, Protocol, Sequence


@dataclass
class DeviceSpec:
    kind: Literal["cuda", "cpu"]
    gpu_index: int | None


@dataclass(frozen=True)
class GenerationParams:
    temperature: float = 0.7
    max_output_tokens: int = 2048
    top_p: float = 1.0


@dataclass(frozen=True)
class TokenDelta:
    text: str


ProgressFn = Callable[[float, str], None]


class EngineHandle(Protocol):
    def generate_stream(
        self, messages: Sequence[dict[str, str]], params: GenerationParams
    ) -> AsyncIterator[TokenDelta]:
        ...

    def dispose(self) -> None:
        ...


class EngineFactory(Protocol):
    async def create(self, model_id: str, on_progress: ProgressFn) -> EngineHandle:
        ...
