import asyncio
import orjson
import pytest
from fakes import descriptor
from control_api.server.schemas import ServerStatus, ServerStatusUpdate
from control_api.status.broadcaster import Broadcaster, Subscription


def update_with(*names):
    return ServerStatusUpdate(
        servers=tuple(ServerStatus.from_descriptor(descriptor(name), is_healthy=True) for name in names)
    )


def names_in(payload):
    return [server["name"] for server in orjson.loads(payload)["servers"]]


@pytest.mark.asyncio
async def test_subscribe_gets_latest_immediately():
    broadcaster = Broadcaster()
    early = broadcaster.subscribe()
    assert early._mailbox.empty()

    broadcaster.publish(update_with("ftp"))
    late = broadcaster.subscribe()
    assert names_in(await asyncio.wait_for(late.next(), timeout=1)) == ["ftp"]
    assert names_in(await asyncio.wait_for(early.next(), timeout=1)) == ["ftp"]
    assert broadcaster.subscriber_count == 2


@pytest.mark.asyncio
async def test_mailbox_keeps_only_newest():
    subscription = Subscription()
    subscription.offer("first")
    subscription.offer("second")
    assert await subscription.next() == "second"
    assert subscription._mailbox.empty()


@pytest.mark.asyncio
async def test_payload_is_camel_case():
    broadcaster = Broadcaster()
    broadcaster.publish(update_with("ftp", "sftp"))
    payload = orjson.loads(await broadcaster.subscribe().next())
    assert payload["totalServers"] == 2
    assert payload["healthyServers"] == 2
    assert payload["servers"][0]["podReady"] is True
    assert "timestamp" in payload


@pytest.mark.asyncio
async def test_slow_subscriber_dropped_others_unaffected():
    broadcaster = Broadcaster()
    received = []
    stuck = asyncio.Event()

    async def fast_send(payload):
        received.append(payload)

    async def slow_send(payload):
        await stuck.wait()

    fast = broadcaster.subscribe()
    slow = broadcaster.subscribe()
    fast_task = asyncio.create_task(broadcaster.pump(fast, fast_send, send_timeout=0.2))
    slow_task = asyncio.create_task(broadcaster.pump(slow, slow_send, send_timeout=0.2))

    broadcaster.publish(update_with("ftp"))
    await asyncio.wait_for(slow_task, timeout=2)
    assert broadcaster.subscriber_count == 1

    broadcaster.publish(update_with("ftp", "sftp"))
    for _ in range(20):
        if len(received) == 2:
            break
        await asyncio.sleep(0.05)
    assert [names_in(payload) for payload in received] == [["ftp"], ["ftp", "sftp"]]

    fast_task.cancel()
    await asyncio.gather(fast_task, return_exceptions=True)
    assert broadcaster.subscriber_count == 0


@pytest.mark.asyncio
async def test_failed_send_unsubscribes():
    broadcaster = Broadcaster()

    async def broken_send(payload):
        raise ConnectionResetError("peer gone")

    subscription = broadcaster.subscribe()
    task = asyncio.create_task(broadcaster.pump(subscription, broken_send, send_timeout=1))
    broadcaster.publish(update_with("ftp"))
    with pytest.raises(ConnectionResetError):
        await asyncio.wait_for(task, timeout=1)
    assert broadcaster.subscriber_count == 0


def test_publish_never_blocks():
    broadcaster = Broadcaster()
    subscriptions = [broadcaster.subscribe() for _ in range(3)]
    for idx in range(10):
        broadcaster.publish(update_with(f"server-{idx}"))
    assert all(subscription._mailbox.qsize() == 1 for subscription in subscriptions)
    assert broadcaster.latest.servers[0].name == "server-9"
