"""Logout notifier tests."""

import asyncio

import pytest

from sessiongate.observer import LogoutNotifier


@pytest.mark.asyncio
async def test_sync_and_async_subscribers_both_run():
    notifier = LogoutNotifier()
    calls = []

    async def async_cb():
        await asyncio.sleep(0)
        calls.append("async")

    notifier.subscribe(lambda: calls.append("sync"))
    notifier.subscribe(async_cb)
    await notifier.notify()

    assert calls == ["sync", "async"]
    assert notifier.notifications == 1


@pytest.mark.asyncio
async def test_unsubscribe():
    notifier = LogoutNotifier()
    calls = []
    unsubscribe = notifier.subscribe(lambda: calls.append(1))
    unsubscribe()
    unsubscribe()  # idempotent
    await notifier.notify()
    assert calls == []
    assert notifier.notifications == 1


@pytest.mark.asyncio
async def test_failing_subscriber_does_not_stop_the_rest():
    notifier = LogoutNotifier()
    calls = []

    def broken():
        raise RuntimeError("boom")

    async def broken_async():
        raise ValueError("also boom")

    notifier.subscribe(broken)
    notifier.subscribe(broken_async)
    notifier.subscribe(lambda: calls.append("after"))
    await notifier.notify()

    assert calls == ["after"]


@pytest.mark.asyncio
async def test_subscriber_may_unsubscribe_during_notify():
    notifier = LogoutNotifier()
    calls = []
    handles = {}

    def once():
        calls.append("once")
        handles["once"]()

    handles["once"] = notifier.subscribe(once)
    notifier.subscribe(lambda: calls.append("always"))

    await notifier.notify()
    await notifier.notify()
    assert calls == ["once", "always", "always"]
