import pytest

from tacklebox.models import JobStatus
from tacklebox.progress import ProgressChannel


async def drain(sub):
    return [evt async for evt in sub]


@pytest.mark.anyio
async def test_sequences_are_per_job_and_gap_free():
    channel = ProgressChannel()
    sub_a = channel.subscribe("a")
    sub_b = channel.subscribe("b")

    channel.publish("a", "one")
    channel.publish("b", "uno")
    channel.publish("a", "two")
    channel.publish("a", "done", status=JobStatus.COMPLETED, final=True)
    channel.publish("b", "fin", status=JobStatus.FAILED, final=True)

    events_a = await drain(sub_a)
    events_b = await drain(sub_b)
    assert [(e.sequence, e.message) for e in events_a] == [(1, "one"), (2, "two"), (3, "done")]
    assert [(e.sequence, e.message) for e in events_b] == [(1, "uno"), (2, "fin")]
    assert events_a[-1].final and events_a[-1].status == JobStatus.COMPLETED


@pytest.mark.anyio
async def test_every_subscriber_sees_every_event_from_subscription_point():
    channel = ProgressChannel()
    early = channel.subscribe("job")
    channel.publish("job", "first")
    late = channel.subscribe("job")
    channel.publish("job", "second")
    channel.publish("job", "end", final=True)

    assert [e.message for e in await drain(early)] == ["first", "second", "end"]
    assert [e.sequence for e in await drain(late)] == [2, 3]


@pytest.mark.anyio
async def test_final_event_releases_job_state():
    channel = ProgressChannel()
    channel.subscribe("job")
    channel.publish("job", "end", final=True)

    assert channel.subscriber_count("job") == 0


@pytest.mark.anyio
async def test_nothing_is_published_after_final_event():
    channel = ProgressChannel()
    everything = channel.subscribe()
    channel.publish("job", "working")
    channel.publish("job", "end", status=JobStatus.CANCELLED, final=True)

    assert channel.publish("job", "late straggler") is None
    assert channel.publish("job", "late end", final=True) is None
    everything.close()

    events = await drain(everything)
    assert [(e.sequence, e.message) for e in events] == [(1, "working"), (2, "end")]


@pytest.mark.anyio
async def test_slow_subscriber_is_dropped_not_blocking():
    channel = ProgressChannel(queue_size=2)
    slow = channel.subscribe("job")
    fast = channel.subscribe("job")

    channel.publish("job", "1")
    channel.publish("job", "2")
    assert await fast.__anext__() is not None
    assert await fast.__anext__() is not None
    channel.publish("job", "3")

    assert slow.dropped
    assert channel.subscriber_count("job") == 1
    assert [e.message for e in await drain(slow)] == ["1", "2"]

    channel.publish("job", "end", final=True)
    assert [e.message for e in await drain(fast)] == ["3", "end"]


@pytest.mark.anyio
async def test_close_ends_stream_and_unsubscribes():
    channel = ProgressChannel()
    sub = channel.subscribe("job")
    sub.close()
    assert channel.subscriber_count("job") == 0
    assert await drain(sub) == []

    channel.publish("job", "nobody listening")


@pytest.mark.anyio
async def test_wildcard_subscription_receives_all_jobs():
    channel = ProgressChannel()
    async with channel.subscribe() as everything:
        channel.publish("a", "hello")
        channel.publish("b", "world", final=True)
        channel.publish("a", "bye", final=True)

        first = await everything.__anext__()
        second = await everything.__anext__()
        third = await everything.__anext__()

    assert [(e.job_id, e.message) for e in (first, second, third)] == [
        ("a", "hello"),
        ("b", "world"),
        ("a", "bye"),
    ]
    assert everything.closed
    assert channel.subscriber_count() == 0
