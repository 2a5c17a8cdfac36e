from typing import Iterable

from maas_pod_machine.exceptions import PodNotFoundError
from maas_pod_machine.models import Pod


def find_pod(pods: Iterable[Pod], identifier: str) -> Pod:
    """Returns the first pod whose ID or name matches identifier"""
    for pod in pods:
        if str(pod.id) == identifier or pod.name == identifier:
            return pod
    raise PodNotFoundError(identifier)
