import asyncio

from maas_pod_machine.exceptions import MachineNotReadyError
from maas_pod_machine.maas_client import MaasClient
from maas_pod_machine.models import PodMachine, ProviderConfig, WaitConfig
from maas_pod_machine.resource import PodMachineResource
from maas_server import MaasServer


async def main():
    PORT = 5240
    server = MaasServer(commissioning_time=4.0, testing_time=4.0)
    server.randomize(error_rate=0.1)
    await server.start(port=PORT)
    print(f"Server started on http://localhost:{PORT}/MAAS")

    config = ProviderConfig(api_url=f"http://localhost:{PORT}/MAAS", api_key="consumer:token:secret")
    wait_config = WaitConfig(timeout=60.0, initial_delay=2.0, poll_interval=1.0)

    async with MaasClient(config) as client:
        resource = PodMachineResource(client, wait_config)
        try:
            state = await resource.create(
                PodMachine(pod="kvm-01", cores=2, memory=4096, hostname="web-01")
            )
            print(f"Machine ready: {state.model_dump()}")
            await resource.delete(state)
            print(f"Machine {state.id} deleted")
        except MachineNotReadyError as e:
            print(f"Machine {e.system_id} readiness unknown: {e}")
        except Exception as e:
            print(f"Error occurred: {e}")

    await server.stop()


if __name__ == "__main__":
    asyncio.run(main())
