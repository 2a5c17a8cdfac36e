import itertools
import random
from datetime import datetime
from typing import Dict, List, Optional

from aiohttp import web
from loguru import logger

API_PREFIX = "/MAAS/api/2.0"


class MaasServer:
    """A small stand-in for a MAAS region controller.

    Composed machines report Commissioning, then Testing, then Ready as
    time passes. Setting ``stuck_status`` or ``error_status`` overrides
    that progression for every machine, and setting ``html_body`` makes
    machine reads answer with that page instead of JSON.
    """

    def __init__(
        self,
        commissioning_time: float = 1.0,
        testing_time: float = 1.0,
        pods: Optional[List[Dict]] = None,
    ):
        self.commissioning_time = commissioning_time
        self.testing_time = testing_time
        self.stuck_status: Optional[str] = None
        self.error_status: Optional[str] = None
        self.html_body: Optional[str] = None
        self.pods = pods or [
            {"id": 1, "name": "kvm-01"},
            {"id": 2, "name": "kvm-02"},
        ]
        self.machines: Dict[str, Dict] = {}
        self.composed_at: Dict[str, datetime] = {}
        self.status_requests = 0
        self.last_update_form: Dict[str, str] = {}
        self._ids = itertools.count(1)
        self._runner: Optional[web.AppRunner] = None
        self.logger = logger

        self.app = web.Application(middlewares=[self._require_auth])
        self.app.router.add_get(f"{API_PREFIX}/pods/", self.handle_list_pods)
        self.app.router.add_post(f"{API_PREFIX}/pods/{{pod_id}}/", self.handle_pod_op)
        self.app.router.add_get(f"{API_PREFIX}/machines/{{system_id}}/", self.handle_get_machine)
        self.app.router.add_put(f"{API_PREFIX}/machines/{{system_id}}/", self.handle_update_machine)
        self.app.router.add_delete(f"{API_PREFIX}/machines/{{system_id}}/", self.handle_delete_machine)

    @web.middleware
    async def _require_auth(self, request, handler):
        if not request.headers.get("Authorization", "").startswith("OAuth "):
            raise web.HTTPUnauthorized()
        return await handler(request)

    def _status_of(self, system_id: str) -> str:
        if self.error_status is not None:
            return self.error_status
        if self.stuck_status is not None:
            return self.stuck_status

        elapsed = (datetime.now() - self.composed_at[system_id]).total_seconds()
        if elapsed < self.commissioning_time:
            return "Commissioning"
        if elapsed < self.commissioning_time + self.testing_time:
            return "Testing"
        return "Ready"

    def _machine_or_404(self, request) -> Dict:
        system_id = request.match_info["system_id"]
        if system_id not in self.machines:
            raise web.HTTPNotFound()
        return self.machines[system_id]

    async def handle_list_pods(self, request):
        return web.json_response(self.pods)

    async def handle_pod_op(self, request):
        if request.query.get("op") != "compose":
            raise web.HTTPBadRequest(text="unsupported op")
        pod_id = int(request.match_info["pod_id"])
        pod = next((p for p in self.pods if p["id"] == pod_id), None)
        if pod is None:
            raise web.HTTPNotFound()

        form = await request.post()
        system_id = f"m{next(self._ids):05d}"
        self.machines[system_id] = {
            "system_id": system_id,
            "hostname": form.get("hostname", f"machine-{system_id}"),
            "domain": {"name": "maas"},
            "zone": {"name": "default"},
            "pool": {"name": "default"},
            "cpu_count": int(form.get("cores", 1)),
            "memory": int(form.get("memory", 2048)),
            "swap_size": None,
            "architecture": "amd64/generic",
            "min_hwe_kernel": "",
            "power_type": "virsh",
            "description": "",
        }
        self.composed_at[system_id] = datetime.now()
        self.logger.info(f"Composed machine {system_id} on pod {pod['name']}")
        return web.json_response(
            {"system_id": system_id, "resource_uri": f"{API_PREFIX}/machines/{system_id}/"}
        )

    async def handle_get_machine(self, request):
        machine = self._machine_or_404(request)
        self.status_requests += 1
        if self.html_body is not None:
            return web.Response(text=self.html_body, content_type="text/html")
        status = self._status_of(machine["system_id"])
        self.logger.info(f"Returning {status} status for {machine['system_id']}")
        return web.json_response({**machine, "status_name": status})

    async def handle_update_machine(self, request):
        machine = self._machine_or_404(request)
        form = await request.post()
        self.last_update_form = dict(form)
        if "hostname" in form:
            machine["hostname"] = form["hostname"]
        for ref in ("domain", "zone", "pool"):
            if ref in form:
                machine[ref] = {"name": form[ref]}
        status = self._status_of(machine["system_id"])
        return web.json_response({**machine, "status_name": status})

    async def handle_delete_machine(self, request):
        machine = self._machine_or_404(request)
        del self.machines[machine["system_id"]]
        self.logger.info(f"Deleted machine {machine['system_id']}")
        return web.Response(status=204)

    async def start(self, port: int = 5240):
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, "localhost", port)
        await site.start()
        self.logger.info(f"Server started on port {port}")
        return site

    async def stop(self):
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

    def randomize(self, error_rate: float = 0.1) -> None:
        """Makes every machine fail testing with probability error_rate"""
        if random.random() < error_rate:
            self.error_status = "Failed testing"
