import asyncio

import pytest

from localchat.chat import StreamingChatOrchestrator
from localchat.engines.base import TokenDelta
from localchat.session import ModelSessionManager


class FakeEngine:
    def __init__(self, model_id, deltas=(), fail_after=None, gate=None, fail_on_request=False):
        self.model_id = model_id
        self.deltas = list(deltas)
        self.fail_after = fail_after
        self.gate = gate
        self.fail_on_request = fail_on_request
        self.dispose_calls = 0
        self.requests = []

    def generate_stream(self, messages, params):
        if self.fail_on_request:
            raise RuntimeError("request rejected")
        self.requests.append((list(messages), params))
        return self._stream()

    async def _stream(self):
        gate = self.gate
        for i, text in enumerate(self.deltas):
            if self.fail_after is not None and i == self.fail_after:
                raise RuntimeError("stream broke")
            if gate is not None:
                await gate.wait()
                gate.clear()
            yield TokenDelta(text)
        if self.fail_after is not None and self.fail_after >= len(self.deltas):
            raise RuntimeError("stream broke")

    def dispose(self):
        self.dispose_calls += 1


class FakeFactory:
    """Records every create() call; behaviour is scripted per model id."""

    def __init__(self):
        self.created = []
        self.events = []
        self.failures = {}
        self.gates = {}
        self.progress = {}
        self.engine_kwargs = {}

    async def create(self, model_id, on_progress):
        self.events.append(("create", model_id))
        for fraction, label in self.progress.get(model_id, [(0.5, "halfway")]):
            on_progress(fraction, label)
        gate = self.gates.get(model_id)
        if gate is not None:
            await gate.wait()
        if model_id in self.failures:
            raise self.failures[model_id]
        engine = FakeEngine(model_id, **self.engine_kwargs.get(model_id, {}))
        original_dispose = engine.dispose

        def _dispose():
            self.events.append(("dispose", model_id))
            original_dispose()

        engine.dispose = _dispose
        self.created.append(engine)
        return engine


@pytest.fixture
def factory():
    return FakeFactory()


@pytest.fixture
def manager(factory):
    return ModelSessionManager(factory)


@pytest.fixture
def orchestrator(manager):
    return StreamingChatOrchestrator(manager, system_prompt=None)


async def settle():
    for _ in range(5):
        await asyncio.sleep(0)
