"""Tests for optimistic send and reconciliation in the message pipeline."""
import asyncio

import pytest

from casino_chat.client.cooldown import CooldownLimiter
from casino_chat.client.errors import AuthExpiredError, NetworkError, RateLimitError, ValidationError
from casino_chat.client.models import MessageState
from casino_chat.client.pipeline import MessagePipeline
from casino_chat.events import MessagePayload, MessageRef

from fakes import FakeMessageStore


def _payload(message_id, author_id="u-bob", created_at=100.0, correlation_id=None, content="hi",
             is_deleted=False):
    return MessagePayload(
        id=message_id,
        correlation_id=correlation_id,
        author_id=author_id,
        author_name=author_id[2:],
        content=content,
        created_at=created_at,
        is_deleted=is_deleted,
    )


def _ids(prefix="c"):
    counter = iter(range(1, 10_000))
    return lambda: f"{prefix}{next(counter)}"


@pytest.fixture
def pipeline(alice, store, clock):
    limiter = CooldownLimiter(limit=100, window=1.0, clock=clock)
    return MessagePipeline(alice, store, limiter, clock=clock, id_factory=_ids())


class TestSend:
    @pytest.mark.asyncio
    async def test_pending_entry_visible_before_network_call_returns(self, pipeline, store):
        store.gate = asyncio.Event()
        task = asyncio.create_task(pipeline.send("  gl hf  "))
        await asyncio.sleep(0)

        [pending] = pipeline.messages
        assert pending.state is MessageState.PENDING
        assert pending.id == pending.correlation_id == "c1"
        assert pending.content == "gl hf"

        store.gate.set()
        confirmed = await task
        assert confirmed.state is MessageState.CONFIRMED
        assert confirmed.id == "srv-1"
        assert confirmed.correlation_id == "c1"
        assert [m.id for m in pipeline.messages] == ["srv-1"]

    @pytest.mark.asyncio
    async def test_confirmed_entry_adopts_server_timestamp(self, pipeline, store, clock):
        message = await pipeline.send("hello")
        assert message.created_at == store.messages[0].created_at
        assert message.created_at != clock.now

    @pytest.mark.asyncio
    async def test_local_order_follows_send_order(self, alice, clock):
        releases = {"a": asyncio.Event(), "b": asyncio.Event(), "c": asyncio.Event()}

        class OutOfOrderStore(FakeMessageStore):
            async def send_message(self, content, correlation_id):
                await releases[content].wait()
                return await super().send_message(content, correlation_id)

        limiter = CooldownLimiter(limit=100, window=1.0, clock=clock)
        pipeline = MessagePipeline(alice, OutOfOrderStore(clock), limiter, clock=clock, id_factory=_ids())
        tasks = [asyncio.create_task(pipeline.send(text)) for text in "abc"]
        await asyncio.sleep(0)

        for text in "cba":
            releases[text].set()
            await asyncio.sleep(0.01)
        await asyncio.gather(*tasks)

        assert [m.content for m in pipeline.messages] == ["a", "b", "c"]
        assert all(m.state is MessageState.CONFIRMED for m in pipeline.messages)

    @pytest.mark.asyncio
    async def test_invalid_content_touches_nothing(self, alice, store, clock):
        limiter = CooldownLimiter(limit=1, window=2.0, clock=clock)
        pipeline = MessagePipeline(alice, store, limiter, clock=clock)

        with pytest.raises(ValidationError):
            await pipeline.send("   ")
        with pytest.raises(ValidationError):
            await pipeline.send("x" * 501)

        assert pipeline.messages == []
        assert store.messages == []
        # The cooldown was not consumed
        await pipeline.send("ok")

    @pytest.mark.asyncio
    async def test_cooldown_refuses_without_network_call(self, alice, store, clock):
        limiter = CooldownLimiter(limit=1, window=2.0, clock=clock)
        pipeline = MessagePipeline(alice, store, limiter, clock=clock)
        start = clock.now

        await pipeline.send("one")
        clock.advance(1.0)
        with pytest.raises(RateLimitError) as exc_info:
            await pipeline.send("two")

        assert exc_info.value.reset_at == start + 2.0
        assert len(store.messages) == 1
        assert len(pipeline.messages) == 1

        clock.advance(1.0)
        await pipeline.send("three")
        assert len(pipeline.messages) == 2


class TestSendFailure:
    @pytest.mark.asyncio
    async def test_network_error_rolls_back(self, pipeline, store):
        store.fail_with = NetworkError("502 Bad Gateway", status_code=502)

        with pytest.raises(NetworkError) as exc_info:
            await pipeline.send("hello")

        assert pipeline.messages == []
        failed = exc_info.value.failed_message
        assert failed.state is MessageState.FAILED
        assert failed.content == "hello"
        assert exc_info.value.status_code == 502

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_network_error(self, pipeline, store):
        store.fail_with = RuntimeError("socket exploded")

        with pytest.raises(NetworkError, match="socket exploded") as exc_info:
            await pipeline.send("hello")

        assert pipeline.messages == []
        assert exc_info.value.failed_message.correlation_id == "c1"

    @pytest.mark.asyncio
    async def test_timeout_rolls_back(self, alice, store, clock):
        limiter = CooldownLimiter(limit=100, window=1.0, clock=clock)
        pipeline = MessagePipeline(alice, store, limiter, clock=clock, send_timeout=0.01)
        store.gate = asyncio.Event()

        with pytest.raises(NetworkError, match="timed out") as exc_info:
            await pipeline.send("hello")

        assert pipeline.messages == []
        assert exc_info.value.failed_message.state is MessageState.FAILED

    @pytest.mark.asyncio
    async def test_auth_error_rolls_back_and_propagates(self, pipeline, store):
        store.fail_with = AuthExpiredError()

        with pytest.raises(AuthExpiredError):
            await pipeline.send("hello")
        assert pipeline.messages == []

    @pytest.mark.asyncio
    async def test_failure_leaves_other_entries_alone(self, pipeline, store):
        await pipeline.send("first")
        pipeline.apply_new(_payload("m-bob", created_at=10_000.0))
        store.fail_with = NetworkError("down")

        with pytest.raises(NetworkError):
            await pipeline.send("second")

        assert [m.content for m in pipeline.messages] == ["first", "hi"]

    @pytest.mark.asyncio
    async def test_entry_evicted_while_in_flight(self, alice, store, clock):
        limiter = CooldownLimiter(limit=100, window=1.0, clock=clock)
        pipeline = MessagePipeline(alice, store, limiter, clock=clock, cache_size=1, id_factory=_ids())
        store.gate = asyncio.Event()

        task = asyncio.create_task(pipeline.send("mine"))
        await asyncio.sleep(0)
        pipeline.apply_new(_payload("m-bob"))
        store.gate.set()
        confirmed = await task

        assert confirmed.id == "srv-1"
        assert confirmed.correlation_id == "c1"
        assert [m.id for m in pipeline.messages] == ["m-bob"]


class TestInbound:
    @pytest.mark.asyncio
    async def test_own_echo_is_idempotent(self, pipeline, store):
        confirmed = await pipeline.send("hello")
        echo = store.messages[0]

        pipeline.apply_new(echo)
        pipeline.apply_new(echo)

        assert len(pipeline.messages) == 1
        assert pipeline.messages[0].id == confirmed.id

    @pytest.mark.asyncio
    async def test_echo_before_response_confirms(self, pipeline, store):
        store.gate = asyncio.Event()
        task = asyncio.create_task(pipeline.send("hello"))
        await asyncio.sleep(0)

        pipeline.apply_new(_payload("srv-1", author_id="u-alice", correlation_id="c1",
                                    content="hello", created_at=5_001.0))
        [message] = pipeline.messages
        assert message.state is MessageState.CONFIRMED
        assert message.id == "srv-1"

        store.gate.set()
        await task
        assert len(pipeline.messages) == 1

    def test_own_message_from_elsewhere_is_not_inserted(self, pipeline):
        pipeline.apply_new(_payload("srv-7", author_id="u-alice", correlation_id="other-device"))
        assert pipeline.messages == []

    def test_other_users_messages_appended_once(self, pipeline):
        pipeline.apply_new(_payload("m1"))
        pipeline.apply_new(_payload("m1"))
        pipeline.apply_new(_payload("m2", correlation_id="bob-c2"))

        assert [m.id for m in pipeline.messages] == ["m1", "m2"]
        assert all(m.state is MessageState.CONFIRMED for m in pipeline.messages)

    def test_deleted_message_not_inserted(self, pipeline):
        pipeline.apply_new(_payload("m1", is_deleted=True))
        assert pipeline.messages == []

    def test_update_replaces_content(self, pipeline):
        pipeline.apply_new(_payload("m1", content="helo"))
        pipeline.apply_update(_payload("m1", content="hello"))
        assert pipeline.messages[0].content == "hello"

    def test_update_with_soft_delete_removes(self, pipeline):
        pipeline.apply_new(_payload("m1"))
        pipeline.apply_update(_payload("m1", is_deleted=True))
        assert pipeline.messages == []

    def test_update_for_unknown_message_ignored(self, pipeline):
        pipeline.apply_update(_payload("nope"))
        assert pipeline.messages == []

    def test_delete_event_removes(self, pipeline):
        pipeline.apply_new(_payload("m1"))
        pipeline.apply_new(_payload("m2"))
        pipeline.apply_delete(MessageRef(id="m1"))
        pipeline.apply_delete(MessageRef(id="m1"))
        assert [m.id for m in pipeline.messages] == ["m2"]


class TestEviction:
    def test_fifty_first_message_evicts_oldest(self, pipeline):
        for i in range(50):
            pipeline.apply_new(_payload(f"m{i}", created_at=float(i)))
        assert len(pipeline.messages) == 50

        pipeline.apply_new(_payload("m50", created_at=50.0))

        ids = [m.id for m in pipeline.messages]
        assert len(ids) == 50
        assert ids[0] == "m1"
        assert ids[-1] == "m50"

    @pytest.mark.asyncio
    async def test_new_pending_entry_never_evicted(self, alice, store, clock):
        limiter = CooldownLimiter(limit=100, window=1.0, clock=clock)
        pipeline = MessagePipeline(alice, store, limiter, clock=clock, cache_size=2)
        pipeline.apply_new(_payload("m1"))
        pipeline.apply_new(_payload("m2"))

        store.gate = asyncio.Event()
        task = asyncio.create_task(pipeline.send("mine"))
        await asyncio.sleep(0)

        assert [m.id for m in pipeline.messages][0] == "m2"
        assert pipeline.messages[-1].is_pending
        store.gate.set()
        await task


class TestDelete:
    @pytest.mark.asyncio
    async def test_delete_removes_after_success(self, pipeline, store):
        message = await pipeline.send("oops")
        await pipeline.delete_message(message.id)

        assert store.deleted == ["srv-1"]
        assert pipeline.messages == []

    @pytest.mark.asyncio
    async def test_failed_delete_leaves_cache(self, pipeline, store):
        message = await pipeline.send("keep me")
        store.delete_fail_with = NetworkError("403 Forbidden", status_code=403)

        with pytest.raises(NetworkError):
            await pipeline.delete_message(message.id)
        assert [m.id for m in pipeline.messages] == ["srv-1"]

    @pytest.mark.asyncio
    async def test_unexpected_delete_error_wrapped(self, pipeline, store):
        pipeline.apply_new(_payload("m1"))
        store.delete_fail_with = RuntimeError("boom")

        with pytest.raises(NetworkError, match="boom"):
            await pipeline.delete_message("m1")
        assert len(pipeline.messages) == 1


class TestSnapshot:
    def test_loads_oldest_first(self, pipeline):
        added = pipeline.load_snapshot([
            _payload("m3", created_at=3.0),
            _payload("m2", created_at=2.0),
            _payload("m1", created_at=1.0),
        ])
        assert added == 3
        assert [m.id for m in pipeline.messages] == ["m1", "m2", "m3"]

    def test_backfills_only_newer_than_watermark(self, pipeline):
        pipeline.apply_new(_payload("m10", created_at=10.0))

        added = pipeline.load_snapshot([
            _payload("m15", created_at=15.0),
            _payload("m12", created_at=12.0),
            _payload("m10", created_at=10.0),
            _payload("m5", created_at=5.0),
        ])

        assert added == 2
        assert [m.id for m in pipeline.messages] == ["m10", "m12", "m15"]

    @pytest.mark.asyncio
    async def test_own_send_during_outage_does_not_hide_missed_messages(self, pipeline, clock):
        pipeline.apply_new(_payload("m10", created_at=clock.now - 10, content="seen"))
        # Link is down: bob posts, then alice's send is confirmed over HTTP
        missed = _payload("m15", created_at=clock.now - 5, content="missed")
        mine = await pipeline.send("mine")
        assert mine.created_at > missed.created_at

        added = pipeline.load_snapshot([
            _payload(mine.id, author_id="u-alice", correlation_id=mine.correlation_id,
                     content="mine", created_at=mine.created_at),
            missed,
            _payload("m10", created_at=clock.now - 10, content="seen"),
        ])

        assert added == 1
        assert [m.content for m in pipeline.messages] == ["seen", "mine", "missed"]

    def test_skips_deleted(self, pipeline):
        pipeline.load_snapshot([_payload("m1", is_deleted=True)])
        assert pipeline.messages == []

    @pytest.mark.asyncio
    async def test_confirms_own_pending_entry(self, pipeline, store):
        store.gate = asyncio.Event()
        task = asyncio.create_task(pipeline.send("hello"))
        await asyncio.sleep(0)

        added = pipeline.load_snapshot([
            _payload("srv-1", author_id="u-alice", correlation_id="c1", content="hello", created_at=5_001.0)
        ])

        assert added == 0
        [message] = pipeline.messages
        assert message.state is MessageState.CONFIRMED
        store.gate.set()
        await task
        assert len(pipeline.messages) == 1


class TestChangeNotifications:
    @pytest.mark.asyncio
    async def test_handlers_see_each_change(self, pipeline):
        seen = []
        unsubscribe = pipeline.on_change(lambda messages: seen.append([m.state for m in messages]))

        await pipeline.send("hello")
        assert seen == [[MessageState.PENDING], [MessageState.CONFIRMED]]

        unsubscribe()
        pipeline.apply_new(_payload("m1"))
        assert len(seen) == 2

    def test_failing_handler_is_isolated(self, pipeline):
        seen = []

        def broken(messages):
            raise RuntimeError("render failed")

        pipeline.on_change(broken)
        pipeline.on_change(seen.append)
        pipeline.apply_new(_payload("m1"))
        assert len(seen) == 1

    def test_messages_are_copies(self, pipeline):
        pipeline.apply_new(_payload("m1", content="original"))
        pipeline.messages[0].content = "tampered"
        assert pipeline.messages[0].content == "original"

    def test_clear(self, pipeline):
        pipeline.apply_new(_payload("m1"))
        pipeline.clear()
        assert pipeline.messages == []
