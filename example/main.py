import asyncio
import sys
from pathlib import Path

from job_store_server import JobStoreServer
from job_tracking_client.job_store_client import JobStoreClient
from job_tracking_client.lifecycle import JobLifecycle
from job_tracking_client.models import CREATE_JOB, IMPORT_JOB, JobStoreConfig


async def phase_changed(state):
    print(f"Phase changed to: {state.phase.value} (job {state.job_id or '-'})")


async def main():
    PORT = 8000
    server = JobStoreServer(step_delay=0.8, rate_limit_rate=0.2, retry_after=1)
    await server.start(port=PORT)
    print(f"Server started on http://localhost:{PORT}")

    import_name = Path(sys.argv[1]).stem if len(sys.argv) > 1 else "imported-game"

    async with JobStoreClient(
        f"http://localhost:{PORT}", JobStoreConfig(min_request_gap=0.3)
    ) as client:

        async def refresh_list():
            jobs = await client.list_jobs()
            active = [job for job in jobs if job.is_active]
            print(f"{len(jobs)} jobs, {len(active)} active")

        def on_done():
            asyncio.create_task(refresh_list())

        create = JobLifecycle(
            client, kind=CREATE_JOB, on_done=on_done, on_change=phase_changed
        )
        imported = JobLifecycle(
            client, kind=IMPORT_JOB, on_done=on_done, on_change=phase_changed
        )

        try:
            await create.start("Space Game")
            await imported.start(import_name)

            while create.busy or imported.busy:
                print(
                    f"create: {create.state.progress:.0f}%  "
                    f"import: {imported.state.progress:.0f}%"
                )
                await asyncio.sleep(0.5)

            for lifecycle in (create, imported):
                state = lifecycle.state
                print(f"{lifecycle.kind.name}: {state.phase.value} {state.error or ''}")
        finally:
            create.close()
            imported.close()

        await asyncio.sleep(1)

    await server.stop()


if __name__ == "__main__":
    asyncio.run(main())
