import asyncio

from metadata_job_client.gateway import HttpGateway
from metadata_job_client.metadata_client import MetadataClient
from metadata_job_client.models import StatusPollingConfig
from metadata_server import MetadataServer


async def polled(job):
    print(f"Job {job.id} is {(await job.state()).value}")


async def completed(job):
    print(f"Job {job.id} completed with {len(await job.archive_bytes())} archive bytes")


async def failed(job):
    status = await job.status()
    print(f"Job {job.id} failed: {status.transport_error or status.raw_response}")


async def main():
    PORT = 8000
    server = MetadataServer(completion_time=10.0, error_rate=0.1)
    await server.start(port=PORT)
    print(f"Server started on http://localhost:{PORT}")

    config = StatusPollingConfig(
        initial_delay=0.5, max_delay=8.0, backoff_factor=2.0, timeout=60.0
    )

    async with HttpGateway(f"http://localhost:{PORT}") as gateway:
        client = MetadataClient(gateway, config)
        job = client.retrieve(singlePackage=True)
        job.on_poll(polled).on_complete(completed).on_error(failed)
        await job.extract_to("./retrieved")

        try:
            await job.start()
            final_status = await job.wait()
            print(f"Final state: {final_status.state.value}")
        except TimeoutError as e:
            print(f"Polling timed out: {e}")
        except Exception as e:
            print(f"Error occurred: {e}")

    await asyncio.sleep(1)


if __name__ == "__main__":
    asyncio.run(main())
