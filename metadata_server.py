import base64
import io
import random
import uuid
import zipfile
from datetime import datetime
from typing import Dict, Optional

from aiohttp import web
from loguru import logger


class MetadataServer:
    """Local stand-in for the metadata service's asynchronous operations"""

    def __init__(
        self,
        completion_time: float = 10.0,
        error_rate: float = 0.1,
        files: Optional[Dict[str, bytes]] = None,
        transient_failures: int = 0,
    ):
        self.completion_time = completion_time
        self.error_rate = error_rate
        self.files = files if files is not None else {"package.xml": b"<Package/>"}
        self.transient_failures = transient_failures
        self.jobs: Dict[str, dict] = {}
        self.app = web.Application()
        self.app.router.add_post("/operations/{operation}", self.handle_submit)
        self.app.router.add_get("/jobs/{job_id}", self.handle_status)
        self.logger = logger

    async def handle_submit(self, request):
        operation = request.match_info["operation"]
        params = await request.json()
        job_id = uuid.uuid4().hex[:15]
        self.jobs[job_id] = {
            "operation": operation,
            "params": params,
            "start_time": datetime.now(),
            "fails": random.random() < self.error_rate,
        }
        self.logger.info(f"Accepted {operation} as job {job_id}")
        return web.json_response({"id": job_id})

    async def handle_status(self, request):
        job = self.jobs.get(request.match_info["job_id"])
        if job is None:
            raise web.HTTPNotFound()

        if self.transient_failures > 0:
            self.transient_failures -= 1
            self.logger.info("Returning transient failure")
            raise web.HTTPServiceUnavailable()

        elapsed = (datetime.now() - job["start_time"]).total_seconds()

        if elapsed < self.completion_time / 4:
            return web.json_response({"done": False, "state": "Pending"})
        if elapsed < self.completion_time:
            self.logger.info(f"Returning in progress status (elapsed: {elapsed:.1f}s)")
            return web.json_response({"done": False, "state": "InProgress"})
        if job["fails"]:
            self.logger.info("Returning failed status")
            return web.json_response({"done": True, "state": "Failed"})

        self.logger.info("Returning succeeded status")
        return web.json_response(
            {"done": True, "state": "Succeeded", "payload": self._payload(job)}
        )

    def _payload(self, job: dict):
        if job["operation"] == "retrieve":
            buffer = io.BytesIO()
            with zipfile.ZipFile(buffer, "w") as zf:
                for name, content in self.files.items():
                    zf.writestr(name, content)
            return base64.b64encode(buffer.getvalue()).decode("ascii")
        if job["operation"] != "deploy":
            return {"success": True}
        archive = base64.b64decode(job["params"]["zip_file"])
        with zipfile.ZipFile(io.BytesIO(archive)) as zf:
            deployed = len([info for info in zf.infolist() if not info.is_dir()])
        return {"success": True, "numberComponentsDeployed": deployed}

    async def start(self, port: int = 8080):
        runner = web.AppRunner(self.app)
        await runner.setup()
        site = web.TCPSite(runner, "localhost", port)
        await site.start()
        self.logger.info(f"Server started on port {port}")
        return site
