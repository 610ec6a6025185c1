"""End-to-end behaviour of ScopedPubSub against a fake Redis server."""

import asyncio

import pytest
from redis import exceptions

from scoped_pubsub import ChannelState, PubSubClosedError
from scoped_pubsub.observability import metrics as m


async def _sync(bus, recorder, eventually):
    """Publish a marker on the bus' own channel and wait for it, so anything published earlier has arrived."""
    marker = recorder("marker")
    await bus.subscribe("_marker", marker)
    await bus.publish("_marker", "done")
    await eventually(lambda: marker.calls)
    await bus.unsubscribe("_marker", marker)


@pytest.mark.asyncio
async def test_scoped_publish_reaches_handler_with_physical_channel(make_bus, recorder, eventually):
    bus = make_bus(scope="app1")
    handler = recorder()
    await bus.subscribe("events.created", handler)

    await bus.publish("events.created", {"id": 42})

    await eventually(lambda: handler.calls)
    await _sync(bus, recorder, eventually)
    assert handler.calls == [({"id": 42}, "app1:events.created")]


@pytest.mark.asyncio
async def test_unscoped_channel_is_used_verbatim(make_bus, recorder, eventually):
    bus = make_bus()
    handler = recorder()
    await bus.subscribe("user.created", handler)

    await bus.publish("user.created", [1, "two", None])

    await eventually(lambda: handler.calls)
    assert handler.calls == [([1, "two", None], "user.created")]


@pytest.mark.asyncio
async def test_publish_returns_receiver_count(make_bus, recorder):
    subscriber = make_bus(scope="s")
    publisher = make_bus(scope="s")
    await subscriber.subscribe("news", recorder())

    assert await publisher.publish("news", "hello") == 1
    assert await publisher.publish("nobody-listens", "hello") == 0


@pytest.mark.asyncio
async def test_unsubscribe_stops_delivery(make_bus, recorder, eventually):
    bus = make_bus(scope="app")
    handler = recorder()
    await bus.subscribe("x", handler)
    await bus.unsubscribe("x", handler)

    await bus.publish("x", 1)
    await _sync(bus, recorder, eventually)

    assert handler.calls == []
    assert "x" not in bus.registry


@pytest.mark.asyncio
async def test_handlers_fire_in_registration_order(make_bus, recorder, eventually):
    bus = make_bus()
    order = []
    first = recorder("first", order)
    second = recorder("second", order)
    await bus.subscribe("c", first)
    await bus.subscribe("c", second)

    await bus.publish("c", "a")
    await bus.publish("c", "b")

    await eventually(lambda: len(order) == 4)
    assert order == ["first", "second", "first", "second"]
    assert [v for v, _ in first.calls] == ["a", "b"]


@pytest.mark.asyncio
async def test_different_scopes_do_not_see_each_other(make_bus, recorder, eventually):
    bus_a = make_bus(scope="A")
    bus_b = make_bus(scope="B")
    handler_a = recorder("a")
    handler_b = recorder("b")
    await bus_a.subscribe("foo", handler_a)
    await bus_b.subscribe("foo", handler_b)

    await bus_a.publish("foo", "from A")

    await eventually(lambda: handler_a.calls)
    await _sync(bus_b, recorder, eventually)
    assert handler_a.calls == [("from A", "A:foo")]
    assert handler_b.calls == []


@pytest.mark.parametrize("scope", [None, "shared"])
@pytest.mark.asyncio
async def test_same_scope_shares_messages(make_bus, recorder, eventually, scope):
    publisher = make_bus(scope=scope)
    subscriber = make_bus(scope=scope)
    handler = recorder()
    await subscriber.subscribe("foo", handler)

    await publisher.publish("foo", {"n": 1})

    await eventually(lambda: handler.calls)
    expected_channel = "foo" if scope is None else "shared:foo"
    assert handler.calls == [({"n": 1}, expected_channel)]


@pytest.mark.asyncio
async def test_unsubscribe_unknown_handler_is_noop(make_bus, recorder):
    bus = make_bus()
    registered = recorder("registered")
    stranger = recorder("stranger")
    await bus.subscribe("c", registered)

    called = []
    await bus.unsubscribe("c", stranger, lambda: called.append("known-channel"))
    await bus.unsubscribe("never-used", stranger, lambda: called.append("unknown-channel"))

    assert called == ["known-channel", "unknown-channel"]
    assert bus.registry.lookup("c") == [registered]
    assert bus.metrics.get_counter(m.REMOTE_UNSUBSCRIBES) == 0


@pytest.mark.asyncio
async def test_double_subscribe_fires_twice(make_bus, recorder, eventually):
    bus = make_bus()
    handler = recorder()
    await bus.subscribe("x", handler)
    await bus.subscribe("x", handler)
    remote_subscribes = bus.metrics.get_counter(m.REMOTE_SUBSCRIBES)

    await bus.publish("x", "once")

    await eventually(lambda: len(handler.calls) == 2)
    await _sync(bus, recorder, eventually)
    assert handler.calls == [("once", "x"), ("once", "x")]
    assert remote_subscribes == 1


@pytest.mark.asyncio
async def test_double_subscribe_needs_two_unsubscribes(make_bus, recorder, eventually):
    bus = make_bus()
    handler = recorder()
    await bus.subscribe("x", handler)
    await bus.subscribe("x", handler)

    await bus.unsubscribe("x", handler)
    assert bus.channel_state("x") is ChannelState.SUBSCRIBED
    await bus.publish("x", 1)
    await eventually(lambda: handler.calls)

    await bus.unsubscribe("x", handler)
    assert bus.channel_state("x") is ChannelState.UNSUBSCRIBED


@pytest.mark.asyncio
async def test_resubscribe_after_full_removal(make_bus, recorder, eventually):
    bus = make_bus()
    handler = recorder()
    await bus.subscribe("x", handler)
    await bus.unsubscribe("x", handler)
    await bus.subscribe("x", handler)

    await bus.publish("x", "again")

    await eventually(lambda: handler.calls)
    await _sync(bus, recorder, eventually)
    assert handler.calls == [("again", "x")]


@pytest.mark.asyncio
async def test_subscribe_callback_runs_after_acknowledgement(make_bus, recorder):
    bus = make_bus(scope="cb")
    states = []
    await bus.subscribe("c", recorder(), lambda: states.append(bus.channel_state("c")))
    await bus.subscribe("c", recorder(), lambda: states.append(bus.channel_state("c")))

    assert states == [ChannelState.SUBSCRIBED, ChannelState.SUBSCRIBED]


@pytest.mark.asyncio
async def test_unsubscribe_callback_after_remote_unsubscribe(make_bus, recorder):
    bus = make_bus()
    first = recorder("first")
    second = recorder("second")
    await bus.subscribe("c", first)
    await bus.subscribe("c", second)

    states = []
    await bus.unsubscribe("c", first, lambda: states.append(bus.channel_state("c")))
    await bus.unsubscribe("c", second, lambda: states.append(bus.channel_state("c")))

    assert states == [ChannelState.SUBSCRIBED, ChannelState.UNSUBSCRIBED]
    assert bus.metrics.get_counter(m.REMOTE_UNSUBSCRIBES) == 1


@pytest.mark.asyncio
async def test_concurrent_subscribes_send_one_remote_subscribe(make_bus, recorder):
    bus = make_bus()
    done = []

    await asyncio.gather(
        bus.subscribe("c", recorder("one"), lambda: done.append("one")),
        bus.subscribe("c", recorder("two"), lambda: done.append("two")),
    )

    assert sorted(done) == ["one", "two"]
    assert bus.metrics.get_counter(m.REMOTE_SUBSCRIBES) == 1
    assert bus.registry.handler_count("c") == 2


@pytest.mark.asyncio
async def test_malformed_payload_is_dropped(make_bus, recorder, eventually):
    bus = make_bus(scope="app")
    handler = recorder()
    await bus.subscribe("c", handler)

    await bus.get_client().publish("app:c", "{not json")
    await bus.publish("c", {"ok": True})

    await eventually(lambda: handler.calls)
    assert handler.calls == [({"ok": True}, "app:c")]
    assert bus.metrics.get_counter(m.MALFORMED_PAYLOADS) == 1


@pytest.mark.asyncio
async def test_failing_handler_does_not_stop_the_others(make_bus, recorder, eventually):
    bus = make_bus()

    def broken(value, physical_channel):
        raise RuntimeError("boom")

    handler = recorder()
    await bus.subscribe("c", broken)
    await bus.subscribe("c", handler)

    await bus.publish("c", 1)
    await bus.publish("c", 2)

    await eventually(lambda: len(handler.calls) == 2)
    assert bus.metrics.get_counter(m.HANDLER_ERRORS) == 2


@pytest.mark.asyncio
async def test_async_handlers_are_awaited(make_bus, eventually):
    bus = make_bus()
    seen = []

    async def handler(value, physical_channel):
        await asyncio.sleep(0)
        seen.append(value)

    await bus.subscribe("c", handler)
    await bus.publish("c", "async")

    await eventually(lambda: seen)
    assert seen == ["async"]


@pytest.mark.asyncio
async def test_handler_may_subscribe_from_inside_dispatch(make_bus, recorder, eventually):
    bus = make_bus()
    late = recorder("late")
    callbacks = []

    async def first(value, physical_channel):
        await bus.subscribe("second", late, lambda: callbacks.append("late"))

    await bus.subscribe("first", first)
    await bus.publish("first", None)

    await eventually(lambda: bus.channel_state("second") is ChannelState.SUBSCRIBED)
    await bus.publish("second", "hi")
    await eventually(lambda: late.calls)
    assert callbacks == ["late"]


@pytest.mark.asyncio
async def test_get_client_is_the_publishing_connection(make_bus):
    bus = make_bus(scope="raw")
    client = bus.get_client()

    await client.set("key", "value")

    assert await client.get("key") == "value"
    assert bus.get_redis_client() is client


@pytest.mark.asyncio
async def test_aliases_match_node_style_names(make_bus, recorder, eventually):
    bus = make_bus()
    handler = recorder()
    await bus.on("c", handler)
    await bus.emit("c", "via emit")
    await eventually(lambda: handler.calls)
    await bus.off("c", handler)
    assert "c" not in bus.registry


@pytest.mark.asyncio
async def test_quit_closes_and_rejects_further_use(make_bus, recorder):
    bus = make_bus()
    await bus.subscribe("c", recorder())

    await bus.quit()

    assert bus.closed
    with pytest.raises(PubSubClosedError):
        await bus.publish("c", 1)
    with pytest.raises(PubSubClosedError):
        await bus.subscribe("c", recorder())
    await bus.quit()


@pytest.mark.asyncio
async def test_close_is_immediate_and_idempotent(make_bus, recorder):
    bus = make_bus()
    await bus.subscribe("c", recorder())

    await bus.close()
    await bus.end()

    assert bus.closed
    with pytest.raises(PubSubClosedError):
        await bus.unsubscribe("c", recorder())


@pytest.mark.asyncio
async def test_async_context_manager_quits(make_bus, recorder, eventually):
    handler = recorder()
    async with make_bus(scope="ctx") as bus:
        await bus.subscribe("c", handler)
        await bus.publish("c", "inside")
        await eventually(lambda: handler.calls)
    assert bus.closed


def _fail_next_read(monkeypatch, bus, exc):
    """Make the receiver's next get_message raise exc; later reads go through. Returns the list of raised errors."""
    pubsub = bus._dispatcher.pubsub
    real_get_message = pubsub.get_message
    raised = []

    async def get_message(*args, **kwargs):
        if not raised:
            raised.append(exc)
            raise exc
        return await real_get_message(*args, **kwargs)

    monkeypatch.setattr(pubsub, "get_message", get_message)
    return raised


@pytest.mark.asyncio
async def test_listener_survives_connection_error(monkeypatch, make_bus, recorder, eventually):
    bus = make_bus()
    handler = recorder()
    await bus.subscribe("c", handler)

    raised = _fail_next_read(monkeypatch, bus, exceptions.ConnectionError("blip"))
    await eventually(lambda: raised, timeout=3)
    assert bus._dispatcher.running

    await bus.publish("c", 1)

    await eventually(lambda: handler.calls, timeout=3)
    assert handler.calls == [(1, "c")]


@pytest.mark.asyncio
async def test_subscribe_restarts_a_stopped_listener(monkeypatch, make_bus, recorder, eventually):
    bus = make_bus()
    first = recorder("first")
    second = recorder("second")
    await bus.subscribe("c", first)

    raised = _fail_next_read(monkeypatch, bus, RuntimeError("unexpected"))
    await eventually(lambda: raised and not bus._dispatcher.running, timeout=3)

    await bus.subscribe("c", second)
    assert bus._dispatcher.running
    await bus.publish("c", 1)

    await eventually(lambda: first.calls and second.calls)
    assert bus.metrics.get_counter(m.REMOTE_SUBSCRIBES) == 1


@pytest.mark.asyncio
async def test_failed_acknowledgement_forgets_handler(monkeypatch, make_bus, recorder, eventually):
    bus = make_bus()
    handler = recorder()
    _fail_next_read(monkeypatch, bus, RuntimeError("unexpected"))

    with pytest.raises(RuntimeError, match="unexpected"):
        await bus.subscribe("c", handler)
    assert "c" not in bus.registry

    await bus.subscribe("c", handler)
    await bus.publish("c", "again")

    await eventually(lambda: handler.calls)
    assert handler.calls == [("again", "c")]
    assert bus.metrics.get_counter(m.REMOTE_SUBSCRIBES) == 2
