import asyncio
from typing import List, Optional

import aiohttp
import pytest
from maas_pod_machine.exceptions import (
    TransportError,
    UnexpectedStatusError,
    WaitCancelledError,
    WaitTimeoutError,
)
from maas_pod_machine.models import (
    MachineStatus,
    StatusClass,
    UnknownStatusPolicy,
    WaitConfig,
)
from maas_pod_machine.poller import ReadinessPoller, classify, wait_until_ready

SYSTEM_ID = "abc123"


class ScriptedStatus:
    """Status function that replays a list of statuses, repeating the last one."""

    def __init__(self, statuses: List[MachineStatus], error: Optional[Exception] = None):
        self.statuses = statuses
        self.error = error
        self.calls: List[float] = []

    async def __call__(self, system_id: str) -> MachineStatus:
        assert system_id == SYSTEM_ID
        self.calls.append(asyncio.get_event_loop().time())
        if self.error is not None:
            raise self.error
        index = min(len(self.calls) - 1, len(self.statuses) - 1)
        return self.statuses[index]


@pytest.fixture
def config() -> WaitConfig:
    """Provide a fast configuration for the poller."""
    return WaitConfig(timeout=2.0, initial_delay=0.1, poll_interval=0.05, max_delay=0.2)


def test_classify_default_states():
    config = WaitConfig()
    assert classify(MachineStatus.commissioning, config) == StatusClass.pending
    assert classify(MachineStatus.testing, config) == StatusClass.pending
    assert classify(MachineStatus.ready, config) == StatusClass.target
    assert classify(MachineStatus.failed_testing, config) == StatusClass.error
    assert classify(MachineStatus.unknown, config) == StatusClass.error


def test_classify_retry_policy():
    config = WaitConfig(unknown_status_policy=UnknownStatusPolicy.retry)
    assert classify(MachineStatus.new, config) == StatusClass.pending
    assert classify(MachineStatus.ready, config) == StatusClass.target


def test_unrecognised_status_maps_to_unknown():
    assert MachineStatus("Hibernating") is MachineStatus.unknown


def test_wait_config_rejects_overlapping_states():
    with pytest.raises(ValueError):
        WaitConfig(
            pending_states=frozenset({MachineStatus.ready}),
            target_states=frozenset({MachineStatus.ready}),
        )


def test_poll_interval_is_a_floor(config):
    poller = ReadinessPoller(ScriptedStatus([]), config.model_copy(update={"backoff_factor": 0.5}))
    assert poller._calculate_delay(3) == config.poll_interval


def test_backoff_is_capped(config):
    poller = ReadinessPoller(ScriptedStatus([]), config.model_copy(update={"backoff_factor": 2.0}))
    assert poller._calculate_delay(10) == config.max_delay


@pytest.mark.asyncio
async def test_reaches_target(config):
    """Commissioning, Testing, Ready returns Ready on the third query."""
    get_status = ScriptedStatus(
        [MachineStatus.commissioning, MachineStatus.testing, MachineStatus.ready]
    )

    result = await wait_until_ready(SYSTEM_ID, get_status, config)

    assert result.status == MachineStatus.ready
    assert result.system_id == SYSTEM_ID
    assert result.attempts == 3
    assert result.elapsed_time >= config.initial_delay
    assert len(get_status.calls) == 3
    gaps = [b - a for a, b in zip(get_status.calls, get_status.calls[1:])]
    assert all(gap >= config.poll_interval * 0.9 for gap in gaps)


@pytest.mark.asyncio
async def test_timeout_while_pending(config):
    """A machine stuck in Testing times out."""
    config = config.model_copy(update={"timeout": 0.5})
    get_status = ScriptedStatus([MachineStatus.testing])

    with pytest.raises(WaitTimeoutError) as excinfo:
        await wait_until_ready(SYSTEM_ID, get_status, config)

    assert excinfo.value.system_id == SYSTEM_ID
    assert excinfo.value.elapsed >= config.timeout
    assert SYSTEM_ID in str(excinfo.value)
    assert isinstance(excinfo.value, TimeoutError)


@pytest.mark.asyncio
async def test_transport_error_is_not_retried(config):
    """A failing first query raises right after the initial delay."""
    get_status = ScriptedStatus([], error=aiohttp.ClientConnectionError("refused"))
    loop = asyncio.get_event_loop()
    started = loop.time()

    with pytest.raises(TransportError) as excinfo:
        await wait_until_ready(SYSTEM_ID, get_status, config)

    assert excinfo.value.system_id == SYSTEM_ID
    assert isinstance(excinfo.value.__cause__, aiohttp.ClientConnectionError)
    assert len(get_status.calls) == 1
    assert loop.time() - started < config.initial_delay + config.poll_interval


@pytest.mark.asyncio
async def test_unexpected_status_stops_polling(config):
    get_status = ScriptedStatus([MachineStatus.commissioning, MachineStatus.failed_testing])

    with pytest.raises(UnexpectedStatusError) as excinfo:
        await wait_until_ready(SYSTEM_ID, get_status, config)

    assert excinfo.value.status == "Failed testing"
    assert len(get_status.calls) == 2


@pytest.mark.asyncio
async def test_retry_policy_keeps_polling(config):
    config = config.model_copy(update={"unknown_status_policy": UnknownStatusPolicy.retry})
    get_status = ScriptedStatus([MachineStatus.new, MachineStatus.unknown, MachineStatus.ready])

    result = await wait_until_ready(SYSTEM_ID, get_status, config)

    assert result.status == MachineStatus.ready
    assert len(get_status.calls) == 3


@pytest.mark.asyncio
async def test_cancellation_during_wait(config):
    """Setting the cancel event ends the wait within one poll interval."""
    config = config.model_copy(update={"poll_interval": 0.2, "max_delay": 0.2, "timeout": 5.0})
    get_status = ScriptedStatus([MachineStatus.testing])
    cancel_event = asyncio.Event()
    loop = asyncio.get_event_loop()

    task = asyncio.create_task(
        wait_until_ready(SYSTEM_ID, get_status, config, cancel_event=cancel_event)
    )
    await asyncio.sleep(0.3)
    cancelled_at = loop.time()
    cancel_event.set()

    with pytest.raises(WaitCancelledError) as excinfo:
        await task

    assert loop.time() - cancelled_at < config.poll_interval
    assert excinfo.value.system_id == SYSTEM_ID


@pytest.mark.asyncio
async def test_cancellation_before_first_query(config):
    cancel_event = asyncio.Event()
    cancel_event.set()
    get_status = ScriptedStatus([MachineStatus.ready])

    with pytest.raises(WaitCancelledError):
        await wait_until_ready(SYSTEM_ID, get_status, config, cancel_event=cancel_event)

    assert get_status.calls == []


@pytest.mark.asyncio
async def test_status_change_callback(config):
    status_changes = []

    async def status_callback(response):
        status_changes.append(response.status)

    get_status = ScriptedStatus(
        [
            MachineStatus.commissioning,
            MachineStatus.commissioning,
            MachineStatus.testing,
            MachineStatus.ready,
        ]
    )
    poller = ReadinessPoller(get_status, config, on_status_change=status_callback)

    await poller.wait_until_ready(SYSTEM_ID)

    assert status_changes == [
        MachineStatus.commissioning,
        MachineStatus.testing,
        MachineStatus.ready,
    ]


class SlowStatus:
    """Status function whose query takes longer than the wait allows."""

    def __init__(self, duration: float):
        self.duration = duration
        self.abandoned = False

    async def __call__(self, system_id: str) -> MachineStatus:
        try:
            await asyncio.sleep(self.duration)
        except asyncio.CancelledError:
            self.abandoned = True
            raise
        return MachineStatus.ready


@pytest.mark.asyncio
async def test_cancellation_during_slow_query(config):
    """Cancelling while a query is in flight does not wait for the query."""
    config = config.model_copy(update={"poll_interval": 0.1, "timeout": 10.0})
    get_status = SlowStatus(3.0)
    cancel_event = asyncio.Event()
    loop = asyncio.get_event_loop()

    task = asyncio.create_task(
        wait_until_ready(SYSTEM_ID, get_status, config, cancel_event=cancel_event)
    )
    await asyncio.sleep(config.initial_delay + 0.2)
    cancelled_at = loop.time()
    cancel_event.set()

    with pytest.raises(WaitCancelledError):
        await task

    assert loop.time() - cancelled_at < config.poll_interval
    await asyncio.sleep(0.01)
    assert get_status.abandoned


@pytest.mark.asyncio
async def test_timeout_during_slow_query(config):
    """The deadline applies while a query is in flight."""
    config = config.model_copy(update={"timeout": 0.5})
    get_status = SlowStatus(3.0)
    loop = asyncio.get_event_loop()
    started = loop.time()

    with pytest.raises(WaitTimeoutError) as excinfo:
        await wait_until_ready(SYSTEM_ID, get_status, config)

    assert loop.time() - started < 1.0
    assert excinfo.value.system_id == SYSTEM_ID
    await asyncio.sleep(0.01)
    assert get_status.abandoned


@pytest.mark.parametrize(
    "field, value",
    [("timeout", 0), ("poll_interval", 0), ("max_delay", -1.0), ("initial_delay", -0.1)],
)
def test_wait_config_rejects_non_positive_timings(field, value):
    with pytest.raises(ValueError):
        WaitConfig(**{field: value})


def test_wait_config_allows_no_initial_delay():
    assert WaitConfig(initial_delay=0).initial_delay == 0
