import asyncio
import random
from typing import Dict, List, Optional, Sequence, Set

from aiohttp import web
from loguru import logger

PROGRESS_STEPS = (8, 20, 35, 55, 75, 92, 100)


class JobStoreServer:
    """In-process REST job store that advances its jobs on its own.

    Every created job walks through `steps` one every `step_delay` seconds.
    `error_rate` and `rate_limit_rate` inject 500 and 429 responses on status
    reads.
    """

    def __init__(
        self,
        step_delay: float = 0.8,
        steps: Sequence[float] = PROGRESS_STEPS,
        error_rate: float = 0.0,
        rate_limit_rate: float = 0.0,
        retry_after: Optional[int] = None,
        auto_advance: bool = True,
    ):
        self.step_delay = step_delay
        self.steps = list(steps)
        self.error_rate = error_rate
        self.rate_limit_rate = rate_limit_rate
        self.retry_after = retry_after
        self.auto_advance = auto_advance
        self.jobs: Dict[str, dict] = {}
        self.status_reads = 0
        self._next_id = 1
        self._workers: Set[asyncio.Task] = set()
        self.runner: Optional[web.AppRunner] = None
        self.app = web.Application()
        self.app.router.add_post("/jobs", self.handle_create)
        self.app.router.add_get("/jobs", self.handle_list)
        self.app.router.add_get("/jobs/{job_id}", self.handle_get)
        self.app.router.add_put("/jobs/{job_id}", self.handle_update)
        self.app.router.add_delete("/jobs/{job_id}", self.handle_delete)
        self.app.on_shutdown.append(self._stop_workers)
        self.logger = logger

    def _not_found(self, job_id: str) -> web.Response:
        return web.json_response({"message": f"Job {job_id} not found"}, status=404)

    async def handle_create(self, request: web.Request) -> web.Response:
        payload = await request.json()
        job_id = str(self._next_id)
        self._next_id += 1

        job = {
            "name": "",
            "status": "queued",
            "progress": 0,
            **payload,
            "id": job_id,
        }
        self.jobs[job_id] = job
        self.logger.info(f"Created job {job_id} ({job['name']})")

        if self.auto_advance:
            worker = asyncio.create_task(self._work(job_id))
            self._workers.add(worker)
            worker.add_done_callback(self._workers.discard)
        return web.json_response(job, status=201)

    async def handle_list(self, request: web.Request) -> web.Response:
        jobs: List[dict] = list(self.jobs.values())
        return web.json_response(jobs)

    async def handle_get(self, request: web.Request) -> web.Response:
        job_id = request.match_info["job_id"]
        self.status_reads += 1

        if random.random() < self.rate_limit_rate:
            self.logger.info("Returning rate limited status")
            headers = {}
            if self.retry_after is not None:
                headers["Retry-After"] = str(self.retry_after)
            return web.json_response(
                {"message": "Too many requests"}, status=429, headers=headers
            )

        if random.random() < self.error_rate:
            self.logger.info("Returning error status")
            return web.json_response({"message": "Internal error"}, status=500)

        job = self.jobs.get(job_id)
        if job is None:
            return self._not_found(job_id)
        self.logger.info(
            f"Returning {job['status']} status for job {job_id} ({job['progress']}%)"
        )
        return web.json_response(job)

    async def handle_update(self, request: web.Request) -> web.Response:
        job_id = request.match_info["job_id"]
        job = self.jobs.get(job_id)
        if job is None:
            return self._not_found(job_id)
        patch = await request.json()
        job.update({k: v for k, v in patch.items() if k != "id"})
        return web.json_response(job)

    async def handle_delete(self, request: web.Request) -> web.Response:
        job_id = request.match_info["job_id"]
        job = self.jobs.pop(job_id, None)
        if job is None:
            return self._not_found(job_id)
        self.logger.info(f"Deleted job {job_id}")
        return web.json_response(job)

    async def _work(self, job_id: str) -> None:
        """Moves a job through processing to completed"""
        job = self.jobs.get(job_id)
        if job is None:
            return
        job.update(status="processing", progress=0)

        for progress in self.steps:
            await asyncio.sleep(self.step_delay)
            job = self.jobs.get(job_id)
            if job is None:
                return
            job.update(
                progress=progress,
                status="completed" if progress >= 100 else "processing",
            )

    async def _stop_workers(self, app: web.Application) -> None:
        for worker in list(self._workers):
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)

    async def start(self, port: int = 8080):
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, "localhost", port)
        await site.start()
        self.logger.info(f"Server started on port {port}")
        return site

    async def stop(self) -> None:
        if self.runner is not None:
            await self.runner.cleanup()
            self.runner = None
