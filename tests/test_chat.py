import asyncio

import pytest

from localchat.chat import Message, Role, StreamingChatOrchestrator
from localchat.engines.base import GenerationParams
from localchat.errors import EngineFailure, ErrorKind, GenerationBusy, NoSessionError

from .conftest import settle


def _assistant_contents(snapshots):
    return [s[-1].content for s in snapshots if s and s[-1].role is Role.ASSISTANT]


class TestSend:
    async def test_end_to_end(self, manager, factory, orchestrator):
        factory.engine_kwargs["m1"] = {"deltas": ["He", "llo", "!"]}
        assert orchestrator.transcript == ()

        await manager.select_model("m1")
        await orchestrator.send("Hi")

        assert orchestrator.transcript == (
            Message(Role.USER, "Hi"),
            Message(Role.ASSISTANT, "Hello!"),
        )
        assert not orchestrator.busy

    async def test_streaming_is_monotonic_and_per_delta(self, manager, factory, orchestrator):
        factory.engine_kwargs["m1"] = {"deltas": ["The", " quick", "", " fox"]}
        snapshots = []
        orchestrator.subscribe_transcript(snapshots.append)
        await manager.select_model("m1")

        await orchestrator.send("Tell me a story")

        contents = _assistant_contents(snapshots)
        assert contents == ["", "The", "The quick", "The quick", "The quick fox"]
        for shorter, longer in zip(contents, contents[1:]):
            assert longer.startswith(shorter)
        assert len(snapshots) == 2 + 4
        assert all(len(s) <= 2 for s in snapshots)

    async def test_context_is_history_without_placeholder(self, manager, factory):
        factory.engine_kwargs["m1"] = {"deltas": ["ok"]}
        params = GenerationParams(temperature=0.2, max_output_tokens=64)
        orchestrator = StreamingChatOrchestrator(manager, params=params, system_prompt="Be brief.")
        await manager.select_model("m1")

        await orchestrator.send("first")
        await orchestrator.send("  second  ")

        engine = factory.created[0]
        messages, used_params = engine.requests[-1]
        assert messages == [
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "first"},
            {"role": "assistant", "content": "ok"},
            {"role": "user", "content": "second"},
        ]
        assert used_params == params

    async def test_empty_text_rejected_without_mutation(self, manager, orchestrator):
        await manager.select_model("m1")
        with pytest.raises(ValueError):
            await orchestrator.send("   ")
        assert orchestrator.transcript == ()


class TestPreconditions:
    async def test_no_session(self, orchestrator):
        errors = []
        orchestrator.subscribe_errors(lambda kind, message: errors.append(kind))

        with pytest.raises(NoSessionError):
            await orchestrator.send("hello")

        assert orchestrator.transcript == ()
        assert errors == [ErrorKind.NO_SESSION]

    async def test_send_while_loading_is_rejected(self, manager, factory, orchestrator):
        gate = asyncio.Event()
        factory.gates["m1"] = gate
        load = asyncio.create_task(manager.select_model("m1"))
        await settle()

        with pytest.raises(NoSessionError):
            await orchestrator.send("hello")

        gate.set()
        await load
        assert orchestrator.transcript == ()

    async def test_busy_rejection_leaves_turn_intact(self, manager, factory, orchestrator):
        gate = asyncio.Event()
        factory.engine_kwargs["m1"] = {"deltas": ["a", "b"], "gate": gate}
        await manager.select_model("m1")

        first = asyncio.create_task(orchestrator.send("one"))
        await settle()
        gate.set()
        await settle()
        before = orchestrator.transcript

        with pytest.raises(GenerationBusy):
            await orchestrator.send("two")

        assert orchestrator.transcript == before
        assert before[-1] == Message(Role.ASSISTANT, "a")

        gate.set()
        await first
        assert orchestrator.transcript == (
            Message(Role.USER, "one"),
            Message(Role.ASSISTANT, "ab"),
        )


class TestRollback:
    @pytest.mark.parametrize("fail_after", [0, 2])
    async def test_stream_failure_keeps_only_user_message(self, manager, factory, orchestrator, fail_after):
        factory.engine_kwargs["m1"] = {"deltas": ["x", "y", "z"], "fail_after": fail_after}
        errors = []
        orchestrator.subscribe_errors(lambda kind, message: errors.append((kind, message)))
        await manager.select_model("m1")
        pre = len(orchestrator.transcript)

        with pytest.raises(EngineFailure, match="stream broke") as excinfo:
            await orchestrator.send("hello")

        assert isinstance(excinfo.value.__cause__, RuntimeError)
        assert len(orchestrator.transcript) == pre + 1
        assert orchestrator.transcript[-1] == Message(Role.USER, "hello")
        assert errors[0][0] is ErrorKind.ENGINE_FAILURE
        assert not orchestrator.busy

    async def test_request_failure_rolls_back(self, manager, factory, orchestrator):
        factory.engine_kwargs["m1"] = {"fail_on_request": True}
        snapshots = []
        orchestrator.subscribe_transcript(snapshots.append)
        await manager.select_model("m1")

        with pytest.raises(EngineFailure, match="request rejected"):
            await orchestrator.send("hello")

        assert snapshots[-1] == (Message(Role.USER, "hello"),)
        assert snapshots[-2] == (Message(Role.USER, "hello"), Message(Role.ASSISTANT, ""))

    async def test_history_survives_failed_turn(self, manager, factory, orchestrator):
        factory.engine_kwargs["m1"] = {"deltas": ["fine"]}
        await manager.select_model("m1")
        await orchestrator.send("first")

        factory.created[0].fail_after = 0
        with pytest.raises(EngineFailure):
            await orchestrator.send("second")

        assert orchestrator.transcript == (
            Message(Role.USER, "first"),
            Message(Role.ASSISTANT, "fine"),
            Message(Role.USER, "second"),
        )


    async def test_cancelled_turn_keeps_only_user_message(self, manager, factory, orchestrator):
        gate = asyncio.Event()
        factory.engine_kwargs["m1"] = {"deltas": ["a", "b"], "gate": gate}
        await manager.select_model("m1")
        turn = asyncio.create_task(orchestrator.send("hi"))
        await settle()
        gate.set()
        await settle()
        assert orchestrator.transcript[-1] == Message(Role.ASSISTANT, "a")

        turn.cancel()
        with pytest.raises(asyncio.CancelledError):
            await turn

        assert orchestrator.transcript == (Message(Role.USER, "hi"),)
        assert not orchestrator.busy


class TestOrphaning:
    async def test_reset_discards_later_deltas(self, manager, factory, orchestrator):
        gate = asyncio.Event()
        factory.engine_kwargs["m1"] = {"deltas": ["a", "b", "c"], "gate": gate}
        await manager.select_model("m1")
        turn = asyncio.create_task(orchestrator.send("hi"))
        await settle()
        gate.set()
        await settle()

        manager.reset()
        assert orchestrator.transcript == ()
        assert not orchestrator.busy

        gate.set()
        await turn
        assert orchestrator.transcript == ()

    async def test_clear_allows_new_turn(self, manager, factory, orchestrator):
        gate = asyncio.Event()
        factory.engine_kwargs["m1"] = {"deltas": ["a", "b"], "gate": gate}
        await manager.select_model("m1")
        orphan = asyncio.create_task(orchestrator.send("old"))
        await settle()

        orchestrator.clear()
        factory.created[0].gate = None
        factory.created[0].deltas = ["new"]
        await orchestrator.send("fresh")

        assert orchestrator.transcript == (
            Message(Role.USER, "fresh"),
            Message(Role.ASSISTANT, "new"),
        )
        gate.set()
        await orphan
        assert orchestrator.transcript[-1] == Message(Role.ASSISTANT, "new")

    async def test_switch_mid_stream_drops_reply(self, manager, factory, orchestrator):
        gate = asyncio.Event()
        factory.engine_kwargs["A"] = {"deltas": ["a", "b", "c"], "gate": gate}
        factory.engine_kwargs["B"] = {"deltas": ["ok"]}
        await manager.select_model("A")
        turn = asyncio.create_task(orchestrator.send("hi"))
        await settle()
        gate.set()
        await settle()

        await manager.select_model("B")
        assert orchestrator.transcript == (Message(Role.USER, "hi"),)
        assert not orchestrator.busy
        assert factory.created[0].dispose_calls == 1

        gate.set()
        await turn
        assert orchestrator.transcript == (Message(Role.USER, "hi"),)

        await orchestrator.send("again")
        assert orchestrator.transcript == (
            Message(Role.USER, "hi"),
            Message(Role.USER, "again"),
            Message(Role.ASSISTANT, "ok"),
        )
        assert factory.created[1].requests
