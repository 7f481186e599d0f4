import asyncio
import tempfile
import threading
import time
from pathlib import Path

import pytest

from promptcraft.agents.chat_session import ChatSessionController, assemble_history
from promptcraft.agents.generation import GenerateResponse
from promptcraft.agents.stream_simulator import MessageStreamSimulator
from promptcraft.domain.conversation import Message
from promptcraft.domain.exceptions import ErrorKind, GenerationCause, PersistenceError
from promptcraft.domain.session import SubmissionPhase
from promptcraft.infrastructure.storage.json_store import JsonConversationStore
from promptcraft.infrastructure.storage.quota_store import AnonymousQuotaStore


class FakeGenerator:
    provider_name = "fake"

    def __init__(self, reply="Hello world", response=None, gate=None, delay=0.0):
        self.reply = reply
        self.response = response
        self.gate = gate
        self.delay = delay
        self.calls = []

    def generate(self, current_turn_text, prior_history, system_persona):
        self.calls.append((current_turn_text, list(prior_history), system_persona))
        if self.gate is not None:
            self.gate.wait(5)
        if self.delay:
            time.sleep(self.delay)
        if self.response is not None:
            return self.response
        return GenerateResponse.ok(self.reply)


class FailingCreateStore(JsonConversationStore):
    async def create_conversation(self, owner_id, first_message):
        raise PersistenceError(code="STORE_WRITE_ERROR", message="disk full")


class FailingAssistantStore(JsonConversationStore):
    async def append_message(self, owner_id, conversation_id, message):
        if message.role == "assistant":
            raise PersistenceError(code="STORE_WRITE_ERROR", message="disk full")
        await super().append_message(owner_id, conversation_id, message)


class GatedCreateStore(JsonConversationStore):
    def __init__(self, *a, **kw):
        super().__init__(*a, **kw)
        self.gate = asyncio.Event()

    async def create_conversation(self, owner_id, first_message):
        await self.gate.wait()
        return await super().create_conversation(owner_id, first_message)


def _controller(tmp, generator, store=None, limit=5, timeout=None, tick=0):
    return ChatSessionController(
        generator=generator,
        store=store,
        quota=AnonymousQuotaStore(path=Path(tmp) / "local_state.json", limit=limit),
        simulator=MessageStreamSimulator(tick_seconds=tick),
        persona="test persona",
        generation_timeout=timeout,
    )


async def _drain():
    for _ in range(10):
        await asyncio.sleep(0.01)


async def _until(predicate):
    for _ in range(200):
        if predicate():
            return
        await asyncio.sleep(0.005)
    raise AssertionError("condition not reached")


def _roles(controller):
    return [m.role for m in controller.state.messages]


def test_assemble_history_skips_error_messages():
    msgs = [
        Message.create("user", "A"),
        Message.create("assistant", "B"),
        Message.create("error", "C"),
        Message.create("user", "D"),
    ]
    history = assemble_history(msgs)
    assert [(h.speaker, h.text) for h in history] == [("user", "A"), ("model", "B"), ("user", "D")]


@pytest.mark.asyncio
async def test_anonymous_submit_settles():
    with tempfile.TemporaryDirectory() as d:
        gen = FakeGenerator(reply="Hello world")
        c = _controller(d, gen)
        buffers = []
        c.add_listener(lambda s: buffers.append(s.streaming_buffer))

        outcome = await c.submit("  Hi  ")

        assert outcome.status == "settled"
        assert outcome.reply.text == "Hello world"
        assert [(m.role, m.text) for m in c.state.messages] == [("user", "Hi"), ("assistant", "Hello world")]
        assert c.state.phase == SubmissionPhase.SETTLED
        assert c.state.streaming_buffer is None
        assert "Hello world" in buffers
        assert c.quota.count == 1
        assert gen.calls[0][0] == "Hi"
        assert gen.calls[0][2] == "test persona"


@pytest.mark.asyncio
async def test_empty_input_is_ignored():
    with tempfile.TemporaryDirectory() as d:
        gen = FakeGenerator()
        c = _controller(d, gen)
        outcome = await c.submit("   ")
        assert outcome.status == "ignored"
        assert outcome.error_kind == ErrorKind.EMPTY_INPUT
        assert c.state.messages == []
        assert gen.calls == []


@pytest.mark.asyncio
async def test_context_excludes_errors_and_current_turn():
    with tempfile.TemporaryDirectory() as d:
        gen = FakeGenerator()
        c = _controller(d, gen)
        c.state.messages = [
            Message.create("user", "A"),
            Message.create("assistant", "B"),
            Message.create("error", "C"),
            Message.create("user", "D"),
        ]
        await c.submit("E")

        turn, history, _ = gen.calls[0]
        assert turn == "E"
        assert [(h.speaker, h.text) for h in history] == [("user", "A"), ("model", "B"), ("user", "D")]


@pytest.mark.asyncio
async def test_generation_failure_appends_single_error():
    with tempfile.TemporaryDirectory() as d:
        gen = FakeGenerator(response=GenerateResponse.failed(GenerationCause.RATE_LIMITED))
        c = _controller(d, gen)

        outcome = await c.submit("Hi")

        assert outcome.status == "failed"
        assert outcome.error_kind == ErrorKind.GENERATION_FAILED
        assert outcome.cause == GenerationCause.RATE_LIMITED
        assert _roles(c) == ["user", "error"]
        assert c.state.messages[-1].text == "Rate limit exceeded. Please try again later."
        assert c.state.phase == SubmissionPhase.FAILED
        assert not c.state.busy
        assert c.quota.count == 0


@pytest.mark.asyncio
async def test_empty_generation_is_reported():
    with tempfile.TemporaryDirectory() as d:
        c = _controller(d, FakeGenerator(response=GenerateResponse.empty()))
        outcome = await c.submit("Hi")
        assert outcome.error_kind == ErrorKind.EMPTY_GENERATION
        assert _roles(c) == ["user", "error"]


@pytest.mark.asyncio
async def test_generation_timeout_fails_submission():
    with tempfile.TemporaryDirectory() as d:
        c = _controller(d, FakeGenerator(delay=0.3), timeout=0.05)
        outcome = await c.submit("Hi")
        assert outcome.status == "failed"
        assert outcome.error_kind == ErrorKind.GENERATION_FAILED
        assert outcome.cause == GenerationCause.UNKNOWN
        assert _roles(c) == ["user", "error"]


@pytest.mark.asyncio
async def test_anonymous_quota_blocks_sixth_submit():
    with tempfile.TemporaryDirectory() as d:
        gen = FakeGenerator()
        c = _controller(d, gen, limit=5)
        for i in range(5):
            assert (await c.submit(f"q{i}")).status == "settled"

        outcome = await c.submit("one more")

        assert outcome.status == "failed"
        assert outcome.error_kind == ErrorKind.QUOTA_EXCEEDED
        assert len(gen.calls) == 5
        assert c.state.messages[-1].role == "error"
        assert all(m.text != "one more" for m in c.state.messages)


@pytest.mark.asyncio
async def test_second_submit_while_busy_is_ignored():
    with tempfile.TemporaryDirectory() as d:
        gate = threading.Event()
        gen = FakeGenerator(gate=gate)
        c = _controller(d, gen)

        first = asyncio.ensure_future(c.submit("first"))
        await _until(lambda: c.state.phase == SubmissionPhase.AWAITING_GENERATION)
        assert c.state.busy
        assert c.state.pending_user_message_id == c.state.messages[0].id

        second = await c.submit("second")
        assert second.status == "ignored"

        gate.set()
        assert (await first).status == "settled"
        assert [m.text for m in c.state.messages if m.role == "user"] == ["first"]
        assert len(gen.calls) == 1


@pytest.mark.asyncio
async def test_switching_conversation_abandons_in_flight_submit():
    with tempfile.TemporaryDirectory() as d:
        gate = threading.Event()
        c = _controller(d, FakeGenerator(gate=gate))

        task = asyncio.ensure_future(c.submit("Hi"))
        await _until(lambda: c.state.phase == SubmissionPhase.AWAITING_GENERATION)
        await c.start_new_conversation()
        assert not c.state.busy

        gate.set()
        outcome = await task
        assert outcome.status == "abandoned"
        assert c.state.messages == []
        assert c.quota.count == 0


@pytest.mark.asyncio
async def test_owner_submit_is_optimistic_and_persisted():
    with tempfile.TemporaryDirectory() as d:
        store = GatedCreateStore(root=Path(d) / ".storage")
        c = _controller(d, FakeGenerator(reply="Hello world"), store=store)
        await c.bind_owner("u1")

        task = asyncio.ensure_future(c.submit("Hi"))
        await _until(lambda: c.state.phase == SubmissionPhase.SUBMITTING)
        assert [(m.role, m.text) for m in c.state.messages] == [("user", "Hi")]
        assert c.state.busy

        store.gate.set()
        outcome = await task
        await _drain()

        assert outcome.status == "settled"
        cid = c.state.active_conversation_id
        conv = await store.get_conversation("u1", cid)
        assert [(m.role, m.text) for m in conv.messages] == [("user", "Hi"), ("assistant", "Hello world")]
        assert [m.id for m in c.state.messages] == [m.id for m in conv.messages]
        assert [s.id for s in c.state.conversations] == [cid]
        assert c.quota.count == 0
        await c.close()


@pytest.mark.asyncio
async def test_owner_submit_advances_updated_at():
    with tempfile.TemporaryDirectory() as d:
        store = JsonConversationStore(root=Path(d) / ".storage")
        c = _controller(d, FakeGenerator(), store=store)
        await c.bind_owner("u1")
        await c.submit("first")
        cid = c.state.active_conversation_id
        before = (await store.get_conversation("u1", cid)).updated_at

        await c.submit("second")
        await _drain()

        conv = await store.get_conversation("u1", cid)
        assert conv.updated_at > before
        assert [m.role for m in conv.messages] == ["user", "assistant", "user", "assistant"]
        assert _roles(c).count("assistant") == 2
        await c.close()


@pytest.mark.asyncio
async def test_owner_store_failure_rolls_back():
    with tempfile.TemporaryDirectory() as d:
        gen = FakeGenerator()
        c = _controller(d, gen, store=FailingCreateStore(root=Path(d) / ".storage"))
        await c.bind_owner("u1")

        outcome = await c.submit("Hi")

        assert outcome.status == "failed"
        assert outcome.error_kind == ErrorKind.PERSISTENCE_FAILED
        assert c.state.messages == []
        assert c.state.last_error == ErrorKind.PERSISTENCE_FAILED
        assert gen.calls == []
        await c.close()


@pytest.mark.asyncio
async def test_answer_not_shown_when_it_cannot_be_saved():
    with tempfile.TemporaryDirectory() as d:
        store = FailingAssistantStore(root=Path(d) / ".storage")
        c = _controller(d, FakeGenerator(reply="Hello world"), store=store)
        await c.bind_owner("u1")

        outcome = await c.submit("Hi")
        await _drain()

        assert outcome.error_kind == ErrorKind.PERSISTENCE_FAILED
        assert "assistant" not in _roles(c)
        assert _roles(c) == ["user", "error"]
        conv = await store.get_conversation("u1", c.state.active_conversation_id)
        assert [m.role for m in conv.messages] == ["user", "error"]
        await c.close()


@pytest.mark.asyncio
async def test_owner_generation_error_is_persisted_once():
    with tempfile.TemporaryDirectory() as d:
        store = JsonConversationStore(root=Path(d) / ".storage")
        gen = FakeGenerator(response=GenerateResponse.failed(GenerationCause.AUTH_CONFIG))
        c = _controller(d, gen, store=store)
        await c.bind_owner("u1")

        await c.submit("Hi")
        await _drain()

        assert _roles(c) == ["user", "error"]
        conv = await store.get_conversation("u1", c.state.active_conversation_id)
        assert [(m.role, m.text) for m in conv.messages] == [
            ("user", "Hi"),
            ("error", "Authentication error: Invalid API key."),
        ]
        await c.close()


@pytest.mark.asyncio
async def test_select_and_delete_conversation():
    with tempfile.TemporaryDirectory() as d:
        store = JsonConversationStore(root=Path(d) / ".storage")
        c = _controller(d, FakeGenerator(), store=store)
        await c.bind_owner("u1")
        await c.submit("first topic")
        first = c.state.active_conversation_id

        await c.start_new_conversation()
        assert c.state.messages == []
        await c.submit("second topic")
        second = c.state.active_conversation_id
        assert second != first

        await c.select_conversation(first)
        await _drain()
        assert [m.text for m in c.state.messages] == ["first topic", "Hello world"]

        assert await c.delete_conversation(first)
        await _drain()
        assert c.state.active_conversation_id is None
        assert c.state.messages == []
        assert [s.id for s in c.state.conversations] == [second]
        await c.close()


@pytest.mark.asyncio
async def test_bind_owner_resets_anonymous_quota():
    with tempfile.TemporaryDirectory() as d:
        c = _controller(d, FakeGenerator(), store=JsonConversationStore(root=Path(d) / ".storage"))
        await c.submit("anon")
        assert c.quota.count == 1

        await c.bind_owner("u1")
        assert c.quota.count == 0
        assert c.state.messages == []

        await c.unbind_owner()
        assert c.state.owner_id is None
        assert await c.delete_conversation("whatever") is False
        await c.close()


class SlowAssistantStore(JsonConversationStore):
    async def append_message(self, owner_id, conversation_id, message):
        await super().append_message(owner_id, conversation_id, message)
        if message.role == "assistant":
            await asyncio.sleep(0.02)


class MetaFailingStore(JsonConversationStore):
    fail_meta = False

    def _write_meta(self, cdir, conv):
        if self.fail_meta:
            raise PersistenceError(code="STORE_WRITE_ERROR", message="disk full")
        super()._write_meta(cdir, conv)


class GatedUserAppendStore(JsonConversationStore):
    gate = None

    async def append_message(self, owner_id, conversation_id, message):
        if message.role == "user" and self.gate is not None:
            await self.gate.wait()
        await super().append_message(owner_id, conversation_id, message)


@pytest.mark.asyncio
async def test_selected_conversation_history_is_ready_for_next_submit():
    with tempfile.TemporaryDirectory() as d:
        gen = FakeGenerator(reply="Hello world")
        c = _controller(d, gen, store=JsonConversationStore(root=Path(d) / ".storage"))
        await c.bind_owner("u1")
        await c.submit("A")
        first = c.state.active_conversation_id

        await c.start_new_conversation()
        await c.select_conversation(first)
        assert [m.text for m in c.state.messages] == ["A", "Hello world"]

        await c.submit("B")
        turn, history, _ = gen.calls[-1]
        assert turn == "B"
        assert [(h.speaker, h.text) for h in history] == [("user", "A"), ("model", "Hello world")]
        await c.close()


@pytest.mark.asyncio
async def test_saved_answer_is_not_displayed_twice_while_revealing():
    with tempfile.TemporaryDirectory() as d:
        c = _controller(d, FakeGenerator(reply="Hello world"), store=SlowAssistantStore(root=Path(d) / ".storage"))
        await c.bind_owner("u1")
        seen = []
        c.add_listener(lambda s: seen.append((s.phase, s.streaming_buffer, [m.role for m in s.messages])))

        outcome = await c.submit("Hi")
        await _drain()

        assert outcome.status == "settled"
        in_flight = [roles for phase, _, roles in seen if phase in (SubmissionPhase.AWAITING_GENERATION, SubmissionPhase.DELIVERING)]
        assert in_flight
        assert all("assistant" not in roles for roles in in_flight)
        assert any(buf == "Hello world" for _, buf, _ in seen)
        assert _roles(c) == ["user", "assistant"]
        await c.close()


@pytest.mark.asyncio
async def test_failed_user_save_leaves_store_and_display_in_sync():
    with tempfile.TemporaryDirectory() as d:
        store = MetaFailingStore(root=Path(d) / ".storage")
        c = _controller(d, FakeGenerator(reply="Hello world"), store=store)
        await c.bind_owner("u1")
        await c.submit("first")
        cid = c.state.active_conversation_id

        store.fail_meta = True
        outcome = await c.submit("second")
        store.fail_meta = False
        await _drain()

        assert outcome.status == "failed"
        assert outcome.error_kind == ErrorKind.PERSISTENCE_FAILED
        durable = [m.text for m in await store.list_messages("u1", cid)]
        assert durable == ["first", "Hello world"]
        assert [m.text for m in c.state.messages] == durable
        await c.close()


@pytest.mark.asyncio
async def test_starting_new_conversation_stops_reveal():
    with tempfile.TemporaryDirectory() as d:
        c = _controller(d, FakeGenerator(reply="a fairly long answer to reveal"), tick=0.01)
        buffers = []
        c.add_listener(lambda s: buffers.append(s.streaming_buffer) if s.streaming_buffer else None)

        task = asyncio.ensure_future(c.submit("Hi"))
        await _until(lambda: c.state.phase == SubmissionPhase.DELIVERING and bool(c.state.streaming_buffer))
        await c.start_new_conversation()
        revealed = len(buffers)

        outcome = await task
        await asyncio.sleep(0.05)

        assert outcome.status == "abandoned"
        assert len(buffers) == revealed
        assert buffers[-1] != "a fairly long answer to reveal"
        assert c.state.streaming_buffer is None
        assert c.state.messages == []
        assert not c.state.busy
        assert c.quota.count == 0


@pytest.mark.asyncio
async def test_snapshot_during_submit_keeps_pending_message():
    with tempfile.TemporaryDirectory() as d:
        store = GatedUserAppendStore(root=Path(d) / ".storage")
        gen_gate = threading.Event()
        gen_gate.set()
        c = _controller(d, FakeGenerator(reply="Hello world", gate=gen_gate), store=store)
        await c.bind_owner("u1")
        await c.submit("first")
        await _drain()
        cid = c.state.active_conversation_id

        store.gate = asyncio.Event()
        gen_gate.clear()
        note = Message.create("error", "note")
        task = asyncio.ensure_future(c.submit("second"))
        await _until(lambda: c.state.phase == SubmissionPhase.SUBMITTING)
        pending_id = c.state.pending_user_message_id

        await store.append_message("u1", cid, note)
        await _drain()
        assert [m.text for m in c.state.messages] == ["first", "Hello world", "note", "second"]
        assert c.state.pending_user_message_id == pending_id

        store.gate.set()
        await _until(lambda: c.state.phase == SubmissionPhase.AWAITING_GENERATION)
        await store.append_message("u1", cid, Message.create("error", "note 2"))
        await _drain()
        assert [m.text for m in c.state.messages] == ["first", "Hello world", "note", "second", "note 2"]

        gen_gate.set()
        assert (await task).status == "settled"
        await _drain()
        assert [m.text for m in c.state.messages] == [
            "first", "Hello world", "note", "second", "note 2", "Hello world",
        ]
        await c.close()


@pytest.mark.asyncio
async def test_anonymous_session_keeps_no_local_only_ids():
    with tempfile.TemporaryDirectory() as d:
        c = _controller(d, FakeGenerator())
        await c.submit("Hi")
        c._generator = FakeGenerator(response=GenerateResponse.empty())
        await c.submit("again")
        assert _roles(c) == ["user", "assistant", "user", "error"]
        assert c._local_only_ids == set()
