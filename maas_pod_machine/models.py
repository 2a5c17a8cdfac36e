import os
from enum import Enum
from typing import Any, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class MachineStatus(str, Enum):
    new = "New"
    commissioning = "Commissioning"
    failed_commissioning = "Failed commissioning"
    missing = "Missing"
    ready = "Ready"
    reserved = "Reserved"
    allocated = "Allocated"
    deploying = "Deploying"
    deployed = "Deployed"
    retired = "Retired"
    broken = "Broken"
    failed_deployment = "Failed deployment"
    releasing = "Releasing"
    failed_releasing = "Failed releasing"
    disk_erasing = "Disk erasing"
    failed_disk_erasing = "Failed disk erasing"
    rescue_mode = "Rescue mode"
    entering_rescue_mode = "Entering rescue mode"
    failed_entering_rescue_mode = "Failed to enter rescue mode"
    exiting_rescue_mode = "Exiting rescue mode"
    failed_exiting_rescue_mode = "Failed to exit rescue mode"
    testing = "Testing"
    failed_testing = "Failed testing"
    unknown = "Unknown"

    @classmethod
    def _missing_(cls, value: object) -> "MachineStatus":
        return cls.unknown


class StatusClass(str, Enum):
    pending = "pending"
    target = "target"
    error = "error"


class UnknownStatusPolicy(str, Enum):
    fail = "fail"
    retry = "retry"


class WaitConfig(BaseModel):
    """Parameters for a single readiness wait.

    The defaults match what a freshly composed pod machine goes through:
    commissioning, then testing, then ready.
    """

    model_config = ConfigDict(frozen=True)

    pending_states: FrozenSet[MachineStatus] = frozenset(
        {MachineStatus.commissioning, MachineStatus.testing}
    )
    target_states: FrozenSet[MachineStatus] = frozenset({MachineStatus.ready})
    timeout: float = Field(default=600.0, gt=0)  # 10 minutes
    initial_delay: float = Field(default=10.0, ge=0)
    poll_interval: float = Field(default=3.0, gt=0)
    max_delay: float = Field(default=10.0, gt=0)
    backoff_factor: float = Field(default=1.0, gt=0)
    jitter: bool = False
    unknown_status_policy: UnknownStatusPolicy = UnknownStatusPolicy.fail

    @model_validator(mode="after")
    def _check_states(self) -> "WaitConfig":
        if not self.target_states:
            raise ValueError("target_states must not be empty")
        overlap = self.pending_states & self.target_states
        if overlap:
            names = ", ".join(sorted(s.value for s in overlap))
            raise ValueError(f"states cannot be both pending and target: {names}")
        return self


class StatusResponse(BaseModel):
    system_id: str
    status: MachineStatus
    elapsed_time: float
    attempts: int


class ProviderConfig(BaseModel):
    api_url: str
    api_key: str
    api_version: str = "2.0"
    request_timeout: float = 30.0

    @classmethod
    def from_env(cls) -> "ProviderConfig":
        """Build a config from MAAS_API_URL, MAAS_API_KEY and MAAS_API_VERSION"""
        return cls(
            api_url=os.environ["MAAS_API_URL"],
            api_key=os.environ["MAAS_API_KEY"],
            api_version=os.environ.get("MAAS_API_VERSION", "2.0"),
        )


class Pod(BaseModel):
    id: int
    name: str


class NamedRef(BaseModel):
    name: str = ""


class Machine(BaseModel):
    system_id: str
    hostname: str = ""
    domain: NamedRef = NamedRef()
    zone: NamedRef = NamedRef()
    pool: NamedRef = NamedRef()
    status_name: MachineStatus = MachineStatus.unknown
    cpu_count: int = 0
    memory: int = 0
    swap_size: Optional[int] = None
    architecture: str = ""
    min_hwe_kernel: str = ""
    power_type: str = ""
    description: str = ""

    @field_validator("status_name", mode="before")
    @classmethod
    def _parse_status(cls, value: Any) -> MachineStatus:
        return MachineStatus(value)


class ComposedMachine(BaseModel):
    system_id: str
    resource_uri: str = ""


class PodMachineParams(BaseModel):
    cores: Optional[int] = None
    pinned_cores: Optional[int] = None
    memory: Optional[int] = None
    storage: Optional[str] = None
    interfaces: Optional[str] = None
    hostname: Optional[str] = None


class MachineParams(BaseModel):
    cpu_count: Optional[int] = None
    memory: Optional[int] = None
    swap_size: Optional[int] = None
    architecture: Optional[str] = None
    min_hwe_kernel: Optional[str] = None
    power_type: Optional[str] = None
    description: Optional[str] = None
    hostname: Optional[str] = None
    domain: Optional[str] = None
    zone: Optional[str] = None
    pool: Optional[str] = None


def _attribute(*, computed: bool = False, force_new: bool = False) -> Any:
    return Field(
        default=None,
        json_schema_extra={"computed": computed, "force_new": force_new},
    )


class PodMachine(BaseModel):
    """Declared configuration and recorded state of a pod machine.

    ``id`` is the MAAS system ID and is only known once the machine has
    been composed. Reading the machine fills in hostname, domain, zone and
    pool, and cores and memory when they were left unset. pinned_cores is
    not reported by MAAS and keeps its configured value.
    """

    id: Optional[str] = None
    pod: str = Field(json_schema_extra={"computed": False, "force_new": True})
    cores: Optional[int] = _attribute(computed=True, force_new=True)
    pinned_cores: Optional[int] = _attribute(computed=True, force_new=True)
    memory: Optional[int] = _attribute(computed=True, force_new=True)
    storage: Optional[str] = _attribute(force_new=True)
    interfaces: Optional[str] = _attribute(force_new=True)
    hostname: Optional[str] = _attribute(computed=True)
    domain: Optional[str] = _attribute(computed=True)
    zone: Optional[str] = _attribute(computed=True)
    pool: Optional[str] = _attribute(computed=True)


def _fields_with(flag: str) -> List[str]:
    return [
        name
        for name, field in PodMachine.model_fields.items()
        if isinstance(field.json_schema_extra, dict) and field.json_schema_extra.get(flag)
    ]


def force_new_fields() -> List[str]:
    return _fields_with("force_new")


def computed_fields() -> List[str]:
    return _fields_with("computed")


def requires_replacement(prior: PodMachine, desired: PodMachine) -> List[str]:
    """Return the force-new fields whose desired value differs from the prior state"""
    computed = set(computed_fields())
    changed = []
    for name in force_new_fields():
        wanted = getattr(desired, name)
        if wanted is None and name in computed:
            continue
        if wanted != getattr(prior, name):
            changed.append(name)
    return changed
