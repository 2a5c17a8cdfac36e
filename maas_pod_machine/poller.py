import asyncio
from typing import Any, Awaitable, Callable, Optional

import aiohttp
from loguru import logger
from maas_pod_machine.exceptions import (
    MaasAPIError,
    TransportError,
    UnexpectedStatusError,
    WaitCancelledError,
    WaitTimeoutError,
)
from maas_pod_machine.models import (
    MachineStatus,
    StatusClass,
    StatusResponse,
    UnknownStatusPolicy,
    WaitConfig,
)

StatusFunc = Callable[[str], Awaitable[MachineStatus]]
StatusCallback = Callable[[StatusResponse], Awaitable[Any]]


def classify(status: MachineStatus, config: WaitConfig) -> StatusClass:
    """Places a reported status into the pending, target or error class"""
    if status in config.target_states:
        return StatusClass.target
    if status in config.pending_states:
        return StatusClass.pending
    if config.unknown_status_policy == UnknownStatusPolicy.retry:
        return StatusClass.pending
    return StatusClass.error


class ReadinessPoller:
    def __init__(
        self,
        get_status: StatusFunc,
        config: Optional[WaitConfig] = None,
        cancel_event: Optional[asyncio.Event] = None,
        on_status_change: Optional[StatusCallback] = None,
    ):
        self.get_status = get_status
        self.config = config or WaitConfig()
        self.cancel_event = cancel_event
        self.on_status_change = on_status_change
        self.logger = logger

    def _calculate_delay(self, attempt: int) -> float:
        """Calculates the delay before the next status query, never below poll_interval"""
        delay = min(
            self.config.poll_interval * (self.config.backoff_factor**attempt),
            self.config.max_delay,
        )
        delay = max(delay, self.config.poll_interval)

        # Add random jitter between 0-20% of the delay
        if self.config.jitter:
            delay *= 1 + 0.2 * (asyncio.get_event_loop().time() % 1)
        return delay

    def _check_cancelled(self, system_id: str, started: float) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            elapsed = asyncio.get_event_loop().time() - started
            self.logger.info(f"Wait for machine ({system_id}) cancelled")
            raise WaitCancelledError(system_id, elapsed)

    async def _sleep(self, delay: float, system_id: str, started: float) -> None:
        """Sleeps for delay seconds, returning early with an error if the wait is cancelled"""
        if delay <= 0:
            self._check_cancelled(system_id, started)
            return
        if self.cancel_event is None:
            await asyncio.sleep(delay)
            return
        try:
            await asyncio.wait_for(self.cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        self._check_cancelled(system_id, started)

    def _timed_out(self, system_id: str, started: float) -> WaitTimeoutError:
        elapsed = asyncio.get_event_loop().time() - started
        self.logger.error(f"Machine ({system_id}) did not become ready within {self.config.timeout}s")
        return WaitTimeoutError(system_id, elapsed, self.config.timeout)

    async def _query_status(self, system_id: str, started: float, deadline: float) -> MachineStatus:
        """Runs one status query, abandoning it if the wait is cancelled or the deadline passes"""
        loop = asyncio.get_event_loop()
        query = asyncio.ensure_future(self.get_status(system_id))
        waiters = {query}
        cancelled = None
        if self.cancel_event is not None:
            cancelled = asyncio.ensure_future(self.cancel_event.wait())
            waiters.add(cancelled)

        try:
            done, _ = await asyncio.wait(
                waiters,
                timeout=max(deadline - loop.time(), 0),
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in waiters:
                if not task.done():
                    task.cancel()

        if query in done:
            try:
                return query.result()
            except (aiohttp.ClientError, asyncio.TimeoutError, MaasAPIError) as e:
                self.logger.error(f"Error querying status of machine ({system_id}): {e}")
                raise TransportError(
                    f"status query for machine ({system_id}) failed: {e}", system_id
                ) from e
        if cancelled is not None and cancelled in done:
            self._check_cancelled(system_id, started)
        raise self._timed_out(system_id, started)

    async def _handle_status_change(
        self, status_response: StatusResponse, last_status: Optional[MachineStatus]
    ) -> None:
        """Invoke the status change callback if the status has changed"""
        if last_status != status_response.status and self.on_status_change is not None:
            self.logger.debug(
                f"Machine ({status_response.system_id}) status changed to {status_response.status.value}"
            )
            await self.on_status_change(status_response)

    async def wait_until_ready(self, system_id: str) -> StatusResponse:
        """Poll the machine status until a target status, an error status or the timeout"""
        loop = asyncio.get_event_loop()
        started = loop.time()
        deadline = started + self.config.timeout
        attempt = 0
        last_status = None

        self.logger.debug(f"Waiting for machine ({system_id}) to become ready")
        await self._sleep(min(self.config.initial_delay, self.config.timeout), system_id, started)

        while loop.time() < deadline:
            self._check_cancelled(system_id, started)

            status = await self._query_status(system_id, started, deadline)
            attempt += 1
            status_response = StatusResponse(
                system_id=system_id,
                status=status,
                elapsed_time=loop.time() - started,
                attempts=attempt,
            )
            await self._handle_status_change(status_response, last_status)
            last_status = status

            status_class = classify(status, self.config)
            if status_class == StatusClass.target:
                self.logger.info(
                    f"Machine ({system_id}) is {status.value} after {status_response.elapsed_time:.1f}s"
                )
                return status_response
            if status_class == StatusClass.error:
                self.logger.error(f"Machine ({system_id}) reported unexpected status {status.value}")
                raise UnexpectedStatusError(system_id, status.value)
            if status not in self.config.pending_states:
                self.logger.warning(
                    f"Machine ({system_id}) reported unexpected status {status.value}, still waiting"
                )

            delay = min(self._calculate_delay(attempt - 1), deadline - loop.time())
            self.logger.debug(
                f"Machine ({system_id}) still {status.value}, waiting {max(delay, 0):.2f}s before next attempt"
            )
            await self._sleep(delay, system_id, started)

        raise self._timed_out(system_id, started)


async def wait_until_ready(
    system_id: str,
    get_status: StatusFunc,
    config: Optional[WaitConfig] = None,
    cancel_event: Optional[asyncio.Event] = None,
    on_status_change: Optional[StatusCallback] = None,
) -> StatusResponse:
    poller = ReadinessPoller(
        get_status, config, cancel_event=cancel_event, on_status_change=on_status_change
    )
    return await poller.wait_until_ready(system_id)
