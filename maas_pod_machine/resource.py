import asyncio
from typing import Optional

from loguru import logger
from maas_pod_machine.exceptions import MachineNotReadyError, WaitError
from maas_pod_machine.locator import find_pod
from maas_pod_machine.maas_client import MaasClient
from maas_pod_machine.models import PodMachine, WaitConfig
from maas_pod_machine.params import (
    get_pod_machine_create_params,
    get_pod_machine_update_params,
)
from maas_pod_machine.poller import ReadinessPoller


class PodMachineResource:
    """Create, read, update and delete handlers for a MAAS pod machine.

    Every handler takes the current ``PodMachine`` and returns the new
    one; the input is never modified.
    """

    def __init__(
        self,
        client: MaasClient,
        wait_config: Optional[WaitConfig] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ):
        self.client = client
        self.wait_config = wait_config or WaitConfig()
        self.cancel_event = cancel_event
        self.logger = logger.bind(resource="maas_pod_machine")

    async def create(self, desired: PodMachine) -> PodMachine:
        pods = await self.client.list_pods()
        pod = find_pod(pods, desired.pod)

        params = get_pod_machine_create_params(desired)
        composed = await self.client.compose(pod.id, params)
        self.logger.info(f"Composed machine ({composed.system_id}) on pod {pod.name}")

        state = desired.model_copy(
            update={
                "id": composed.system_id,
                "cores": params.cores,
                "pinned_cores": params.pinned_cores,
                "memory": params.memory,
                "storage": params.storage,
                "interfaces": params.interfaces,
            }
        )

        poller = ReadinessPoller(
            self.client.get_machine_status, self.wait_config, cancel_event=self.cancel_event
        )
        try:
            await poller.wait_until_ready(composed.system_id)
        except WaitError as e:
            raise MachineNotReadyError(
                f"machine ({composed.system_id}) didn't become ready within allowed timeout: {e}",
                composed.system_id,
                state=state,
            ) from e

        return await self.update(state)

    async def read(self, state: PodMachine) -> PodMachine:
        machine = await self.client.get_machine(state.id)
        return state.model_copy(
            update={
                "hostname": machine.hostname,
                "domain": machine.domain.name,
                "zone": machine.zone.name,
                "pool": machine.pool.name,
                "cores": state.cores or machine.cpu_count or None,
                "memory": state.memory or machine.memory or None,
            }
        )

    async def update(self, state: PodMachine) -> PodMachine:
        machine = await self.client.get_machine(state.id)
        await self.client.update_machine(
            machine.system_id, get_pod_machine_update_params(state, machine)
        )
        self.logger.debug(f"Updated machine ({machine.system_id})")
        return await self.read(state)

    async def delete(self, state: PodMachine) -> None:
        await self.client.delete_machine(state.id)
        self.logger.info(f"Deleted machine ({state.id})")
