import asyncio

import httpx
import pytest
import respx

from conftest import GATEWAY_URL
from models.upload_models import ProcessingPhase, ProcessingStatus
from uploader.gateway_client import GatewayClient, GatewayError
from uploader.poller import PollCancelled, PollReady, PollTimeout, ProcessingPoller


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    async def sleep(self, delay):
        self.sleeps.append(delay)
        self.now += delay


class ScriptedGateway:
    """Answers the nth status poll with script(n); exceptions are raised"""

    def __init__(self, clock, script):
        self.clock = clock
        self.script = script
        self.poll_times = []

    async def processing_status(self, file_id):
        self.poll_times.append(self.clock.now)
        answer = self.script(len(self.poll_times))
        if isinstance(answer, Exception):
            raise answer
        return answer


def pending(file_id="f1"):
    return ProcessingStatus(file_id=file_id, phase=ProcessingPhase.IN_PROGRESS, hls_files_found=2)


def ready(file_id="f1"):
    return ProcessingStatus(
        file_id=file_id,
        phase=ProcessingPhase.COMPLETED,
        playlist_ready=True,
        playlist_url=f"https://test-bucket.s3.us-east-2.amazonaws.com/hls/{file_id}/playlist.m3u8",
        metadata={"duration": 93.5, "resolution": "1920x1080", "video_codec": "h264"},
    )


def make_poller(script, **kwargs):
    clock = FakeClock()
    gateway = ScriptedGateway(clock, script)
    poller = ProcessingPoller(gateway, clock=clock, sleep=clock.sleep, **kwargs)
    return poller, gateway, clock


@pytest.mark.asyncio
async def test_ready_on_third_poll_fires_callback_once():
    poller, gateway, _ = make_poller(lambda n: ready() if n >= 3 else pending())
    seen = []

    result = await poller.poll_until_ready("f1", seen.append)

    assert isinstance(result, PollReady)
    assert result.polls == 3
    assert gateway.poll_times == [0.0, 3.0, 6.0]
    assert len(seen) == 1
    assert seen[0].metadata.duration == 93.5
    assert seen[0].metadata.codec == "h264"
    assert not poller.is_polling


@pytest.mark.asyncio
async def test_gives_up_after_forty_polls():
    poller, gateway, _ = make_poller(lambda n: pending())
    seen = []

    result = await poller.poll_until_ready("f1", seen.append)

    assert isinstance(result, PollTimeout)
    assert result.polls == 40
    assert len(gateway.poll_times) == 40
    assert gateway.poll_times[-1] == 117.0
    assert result.last_status.phase == ProcessingPhase.IN_PROGRESS
    assert seen == []


@pytest.mark.asyncio
async def test_interval_and_timeout_are_configurable():
    poller, gateway, _ = make_poller(lambda n: pending(), interval=5.0, timeout=20.0)

    result = await poller.poll_until_ready("f1", lambda status: None)

    assert result.polls == 4
    assert gateway.poll_times == [0.0, 5.0, 10.0, 15.0]


@pytest.mark.asyncio
async def test_slow_responses_do_not_stretch_the_schedule():
    clock = FakeClock()

    def slow(n):
        clock.now += 1.0
        return pending()

    gateway = ScriptedGateway(clock, slow)
    poller = ProcessingPoller(gateway, clock=clock, sleep=clock.sleep, timeout=12.0)

    result = await poller.poll_until_ready("f1", lambda status: None)

    assert gateway.poll_times == [0.0, 3.0, 6.0, 9.0]
    assert clock.sleeps == [2.0, 2.0, 2.0]
    assert result.polls == 4


@pytest.mark.asyncio
async def test_failed_polls_are_tolerated():
    def flaky(n):
        if n == 1:
            return GatewayError("processing_status", "Bad gateway", status_code=502)
        return ready()

    poller, _, _ = make_poller(flaky)

    result = await poller.poll_until_ready("f1", lambda status: None)

    assert isinstance(result, PollReady)
    assert result.polls == 2


@pytest.mark.asyncio
async def test_completed_without_playlist_is_not_ready():
    status = ProcessingStatus(file_id="f1", phase=ProcessingPhase.COMPLETED, playlist_ready=False)
    poller, _, _ = make_poller(lambda n: status, timeout=6.0)

    result = await poller.poll_until_ready("f1", lambda s: None)

    assert isinstance(result, PollTimeout)


@pytest.mark.asyncio
async def test_async_ready_callback_is_awaited():
    poller, _, _ = make_poller(lambda n: ready())
    seen = []

    async def on_ready(status):
        await asyncio.sleep(0)
        seen.append(status.file_id)

    await poller.poll_until_ready("f1", on_ready)

    assert seen == ["f1"]


@pytest.mark.asyncio
async def test_stop_ends_polling_without_callback():
    first_poll = asyncio.Event()

    class SlowGateway:
        async def processing_status(self, file_id):
            first_poll.set()
            return pending()

    poller = ProcessingPoller(SlowGateway(), interval=30.0)
    seen = []

    task = poller.start("f1", seen.append)
    await first_poll.wait()
    assert poller.is_polling
    poller.stop()
    result = await asyncio.wait_for(task, timeout=1.0)

    assert isinstance(result, PollCancelled)
    assert seen == []
    assert not poller.is_polling


@pytest.mark.asyncio
async def test_start_twice_is_rejected():
    first_poll = asyncio.Event()

    class SlowGateway:
        async def processing_status(self, file_id):
            first_poll.set()
            return pending()

    poller = ProcessingPoller(SlowGateway(), interval=30.0)
    task = poller.start("f1", lambda status: None)
    await first_poll.wait()

    with pytest.raises(RuntimeError):
        poller.start("f1", lambda status: None)

    poller.stop()
    await asyncio.wait_for(task, timeout=1.0)


def test_status_from_gateway_response():
    status = ProcessingStatus.from_response({
        "success": True,
        "fileId": "f1",
        "processing": {"status": "completed", "hlsFilesFound": 5, "segmentCount": 4, "hasPlaylist": True},
        "hls": {"playlistUrl": "https://example/hls/f1/playlist.m3u8", "segmentCount": 4, "ready": True},
        "metadata": {"duration": 12.0, "fps": 30},
    })

    assert status.is_ready
    assert status.segments_found == 4
    assert status.metadata.duration == 12.0
    assert status.metadata.model_extra == {"fps": 30}


@pytest.mark.asyncio
async def test_stop_immediately_after_start_prevents_any_poll():
    poller, gateway, _ = make_poller(lambda n: ready())
    seen = []

    task = poller.start("f1", seen.append)
    poller.stop()
    result = await task

    assert isinstance(result, PollCancelled)
    assert result.polls == 0
    assert gateway.poll_times == []
    assert seen == []


@pytest.mark.asyncio
@respx.mock
async def test_malformed_status_body_does_not_end_polling():
    respx.get(f"{GATEWAY_URL}/processing-status/f1").mock(side_effect=[
        httpx.Response(200, content=b"null", headers={"Content-Type": "application/json"}),
        httpx.Response(200, json={"success": True, "fileId": "f1", "processing": {"status": "bogus"}}),
        httpx.Response(200, json={
            "success": True,
            "fileId": "f1",
            "processing": {"status": "completed", "hlsFilesFound": 2, "segmentCount": 1, "hasPlaylist": True},
            "hls": {"playlistUrl": "https://example/hls/f1/playlist.m3u8", "ready": True},
        }),
    ])
    clock = FakeClock()
    seen = []
    async with GatewayClient(GATEWAY_URL) as gateway:
        poller = ProcessingPoller(gateway, clock=clock, sleep=clock.sleep)
        result = await poller.poll_until_ready("f1", seen.append)

    assert isinstance(result, PollReady)
    assert result.polls == 3
    assert len(seen) == 1
