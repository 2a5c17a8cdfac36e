import time
import uuid
from typing import Any, Dict, List, Optional

import aiohttp
from loguru import logger
from maas_pod_machine.exceptions import MaasAPIError
from maas_pod_machine.models import (
    ComposedMachine,
    Machine,
    MachineParams,
    MachineStatus,
    Pod,
    PodMachineParams,
    ProviderConfig,
)
from pydantic import BaseModel, ValidationError


class MaasClient:
    """Async access to the MAAS endpoints a pod machine needs.

    Use as an async context manager so the underlying session is closed::

        async with MaasClient(config) as client:
            pods = await client.list_pods()
    """

    def __init__(self, config: ProviderConfig):
        self.config = config
        self.base_url = f"{config.api_url.rstrip('/')}/api/{config.api_version}"
        self.logger = logger
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "MaasClient":
        self._session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.config.request_timeout)
        )
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    def _auth_header(self) -> str:
        """Builds an OAuth 1.0 PLAINTEXT header from a consumer:token:secret API key"""
        try:
            consumer_key, token_key, token_secret = self.config.api_key.split(":")
        except ValueError:
            raise MaasAPIError("api_key must have the form consumer:token:secret") from None
        return (
            'OAuth oauth_version="1.0", oauth_signature_method="PLAINTEXT", '
            f'oauth_consumer_key="{consumer_key}", oauth_token="{token_key}", '
            f'oauth_signature="&{token_secret}", oauth_nonce="{uuid.uuid4().hex}", '
            f'oauth_timestamp="{int(time.time())}"'
        )

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, str]] = None,
        data: Optional[BaseModel] = None,
    ) -> Any:
        if self._session is None:
            raise RuntimeError("MaasClient must be used as an async context manager")

        url = f"{self.base_url}/{path}"
        form = None
        if data is not None:
            form = {k: str(v) for k, v in data.model_dump(exclude_none=True).items()}

        try:
            async with self._session.request(
                method,
                url,
                params=params,
                data=form,
                headers={"Authorization": self._auth_header(), "Accept": "application/json"},
            ) as response:
                response.raise_for_status()
                if response.status == 204:
                    return None
                try:
                    return await response.json(content_type=None)
                except ValueError as e:
                    self.logger.error(f"Malformed response from {method} {url}: {e}")
                    raise MaasAPIError(f"response from {method} {url} is not valid JSON") from e
        except aiohttp.ClientResponseError as e:
            self.logger.error(f"HTTP error {e.status} at {method} {url}: {e.message}")
            raise
        except aiohttp.ClientError as e:
            self.logger.error(f"Error calling {method} {url}: {e}")
            raise

    @staticmethod
    def _parse(model: Any, payload: Any) -> Any:
        try:
            return model.model_validate(payload)
        except ValidationError as e:
            raise MaasAPIError(f"unexpected {model.__name__} payload: {e}") from e

    async def list_pods(self) -> List[Pod]:
        payload = await self._request("GET", "pods/")
        if not isinstance(payload, list):
            raise MaasAPIError(f"expected a list of pods, got {type(payload).__name__}")
        return [self._parse(Pod, item) for item in payload]

    async def compose(self, pod_id: int, params: PodMachineParams) -> ComposedMachine:
        payload = await self._request(
            "POST", f"pods/{pod_id}/", params={"op": "compose"}, data=params
        )
        return self._parse(ComposedMachine, payload)

    async def get_machine(self, system_id: str) -> Machine:
        payload = await self._request("GET", f"machines/{system_id}/")
        return self._parse(Machine, payload)

    async def update_machine(self, system_id: str, params: MachineParams) -> Machine:
        payload = await self._request("PUT", f"machines/{system_id}/", data=params)
        return self._parse(Machine, payload)

    async def delete_machine(self, system_id: str) -> None:
        await self._request("DELETE", f"machines/{system_id}/")

    async def get_machine_status(self, system_id: str) -> MachineStatus:
        machine = await self.get_machine(system_id)
        return machine.status_name
