from maas_pod_machine.models import Machine, MachineParams, PodMachine, PodMachineParams

_CREATE_FIELDS = ("cores", "pinned_cores", "memory", "storage", "interfaces", "hostname")
_ECHOED_FIELDS = (
    "cpu_count",
    "memory",
    "swap_size",
    "architecture",
    "min_hwe_kernel",
    "power_type",
    "description",
)
_UPDATE_OVERRIDES = ("hostname", "domain", "zone", "pool")


def get_pod_machine_create_params(machine: PodMachine) -> PodMachineParams:
    """Compose parameters, taken from the fields that are set to a non-empty value"""
    params = PodMachineParams()
    for name in _CREATE_FIELDS:
        value = getattr(machine, name)
        if value:
            setattr(params, name, value)
    return params


def get_pod_machine_update_params(machine: PodMachine, current: Machine) -> MachineParams:
    """Update parameters for a machine.

    MAAS expects the hardware fields on every update, so they are echoed
    back from ``current``. Hostname, domain, zone and pool come from the
    configuration when they are set. Empty strings and zeros are left
    unset so they are never sent.
    """
    params = MachineParams()
    for name in _ECHOED_FIELDS:
        value = getattr(current, name)
        if value:
            setattr(params, name, value)
    for name in _UPDATE_OVERRIDES:
        value = getattr(machine, name)
        if value:
            setattr(params, name, value)
    return params
