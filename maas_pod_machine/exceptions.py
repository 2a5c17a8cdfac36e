from typing import Optional


class PodMachineError(Exception):
    """Base exception for pod machine operations."""
    pass


class MaasAPIError(PodMachineError):
    """Raised when the MAAS API returns a payload that cannot be understood."""
    pass


class PodNotFoundError(PodMachineError):
    """Raised when no pod matches the requested ID or name."""

    def __init__(self, identifier: str):
        super().__init__(f"pod ({identifier}) not found")
        self.identifier = identifier


class WaitError(PodMachineError):
    """Base exception for failures while waiting on a machine."""

    def __init__(self, message: str, system_id: str):
        super().__init__(message)
        self.system_id = system_id


class TransportError(WaitError):
    """Raised when a status query itself fails."""
    pass


class UnexpectedStatusError(WaitError):
    """Raised when the machine reports a status the wait cannot act on."""

    def __init__(self, system_id: str, status: str):
        super().__init__(f"machine ({system_id}) reported unexpected status {status!r}", system_id)
        self.status = status


class WaitTimeoutError(WaitError, TimeoutError):
    """Raised when no target status is reached in time."""

    def __init__(self, system_id: str, elapsed: float, timeout: float):
        super().__init__(
            f"machine ({system_id}) did not become ready within {timeout} seconds "
            f"(elapsed {elapsed:.1f}s)",
            system_id,
        )
        self.elapsed = elapsed
        self.timeout = timeout


class WaitCancelledError(WaitError):
    """Raised when the caller cancels the wait."""

    def __init__(self, system_id: str, elapsed: float):
        super().__init__(
            f"wait for machine ({system_id}) cancelled after {elapsed:.1f}s", system_id
        )
        self.elapsed = elapsed


class MachineNotReadyError(PodMachineError):
    """Raised by create when the composed machine's readiness is unknown.

    The machine exists in MAAS; ``state`` holds what was recorded before
    the wait failed, including its system ID.
    """

    def __init__(self, message: str, system_id: str, state: Optional[object] = None):
        super().__init__(message)
        self.system_id = system_id
        self.state = state
