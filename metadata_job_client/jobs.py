import asyncio
import base64
import binascii
import io
import os
import tempfile
import zipfile
from pathlib import Path
from typing import Any, Dict, Optional, Union

from loguru import logger

from metadata_job_client.backoff import BackoffScheduler, BackoffState, Sleep
from metadata_job_client.callbacks import CallbackRegistry, EventKind, Handler
from metadata_job_client.errors import (
    ArchiveDecodeError,
    ExtractionError,
    JobError,
    JobStateError,
    PayloadUnavailableError,
    PollError,
    SubmissionError,
)
from metadata_job_client.gateway import Gateway
from metadata_job_client.models import (
    ConcurrencyMode,
    JobState,
    RunState,
    StatusPollingConfig,
    StatusSnapshot,
    WorkerFailurePolicy,
)

PathLike = Union[str, os.PathLike]


class PollingHandle:
    """Cancellation and join handle for a job polled in the background"""

    def __init__(self, task: "asyncio.Task[StatusSnapshot]"):
        self._task = task

    def cancel(self) -> bool:
        return self._task.cancel()

    def cancelled(self) -> bool:
        return self._task.cancelled()

    def done(self) -> bool:
        return self._task.done()

    async def wait(self) -> StatusSnapshot:
        """Waits for the worker and returns the terminal snapshot.

        Re-raises whatever ended the worker, including CancelledError. Cancelling
        the waiter does not cancel the worker; use cancel() for that.
        """
        return await asyncio.shield(self._task)


class Job:
    """Tracks one long-running operation on the remote metadata service.

    Nothing happens until start() is awaited: the operation is submitted, then
    the job polls the gateway with exponential backoff until the server reports
    Succeeded or Failed, firing on_poll after every poll and exactly one of
    on_complete/on_error at the end.

    Example:
        job = Job(gateway, "retrieve", {"singlePackage": True})
        job.on_complete(lambda job: print(f"Job {job.id} completed"))
        await job.extract_to("./src")
        await job.start()
    """

    def __init__(
        self,
        gateway: Gateway,
        operation: str,
        params: Optional[Dict[str, Any]] = None,
        config: Optional[StatusPollingConfig] = None,
        sleep: Optional[Sleep] = None,
    ):
        self.gateway = gateway
        self.operation = operation
        self.config = config or StatusPollingConfig()
        self.logger = logger
        self._params = dict(params or {})
        self._sleep = sleep
        self._id: Optional[str] = None
        self._snapshot: Optional[StatusSnapshot] = None
        self._run_state = RunState.not_started
        self._callbacks = CallbackRegistry()
        self._poll_lock = asyncio.Lock()
        self._handle: Optional[PollingHandle] = None

    def __repr__(self) -> str:
        return f"<{type(self).__name__} id={self._id!r} state={self._run_state.value}>"

    @property
    def id(self) -> Optional[str]:
        return self._id

    @property
    def params(self) -> Dict[str, Any]:
        return dict(self._params)

    @property
    def run_state(self) -> RunState:
        return self._run_state

    @property
    def handle(self) -> Optional[PollingHandle]:
        """The background worker handle, set only in concurrent mode"""
        return self._handle

    def is_started(self) -> bool:
        return self._id is not None

    def on_poll(self, handler: Handler) -> "Job":
        self._callbacks.register(EventKind.on_poll, handler)
        return self

    def on_complete(self, handler: Handler) -> "Job":
        self._callbacks.register(EventKind.on_complete, handler)
        return self

    def on_error(self, handler: Handler) -> "Job":
        self._callbacks.register(EventKind.on_error, handler)
        return self

    async def start(self) -> "Job":
        """Submits the operation and starts polling it.

        In synchronous mode this returns once the job is terminal. In concurrent
        mode it returns right after submission and polling continues on a
        background task reachable through `handle`.
        """
        if self._run_state is not RunState.not_started:
            raise JobStateError(f"{self!r} has already been started")

        self._id = await self._submit()
        self._run_state = RunState.polling
        self.logger.info(f"Submitted {self.operation} as job {self._id}")

        if self.config.concurrency is ConcurrencyMode.synchronous:
            await self._run()
        else:
            task = asyncio.create_task(self._run(), name=f"metadata-job-{self._id}")
            task.add_done_callback(self._on_worker_done)
            self._handle = PollingHandle(task)
        return self

    def cancel(self) -> bool:
        """Stops a background worker at its next suspension point"""
        if self._handle is None:
            return False
        return self._handle.cancel()

    async def wait(self) -> Optional[StatusSnapshot]:
        """Joins the background worker, or returns the cached snapshot without one"""
        if self._handle is None:
            return self._snapshot
        return await self._handle.wait()

    async def status(self) -> StatusSnapshot:
        """Returns the cached snapshot, polling once if none is cached"""
        if self._id is None:
            raise JobStateError(f"{self!r} has no status before it is started")
        async with self._poll_lock:
            if self._snapshot is None:
                self._snapshot = await self.gateway.poll(self._id)
            return self._snapshot

    result = status

    async def is_done(self) -> bool:
        return (await self.status()).done

    async def state(self) -> JobState:
        return (await self.status()).state

    async def is_pending(self) -> bool:
        return await self.state() is JobState.pending

    async def is_in_progress(self) -> bool:
        return await self.state() is JobState.in_progress

    async def is_succeeded(self) -> bool:
        return await self.state() is JobState.succeeded

    async def is_failed(self) -> bool:
        return await self.state() is JobState.failed

    async def archive_bytes(self) -> bytes:
        """Decodes the base64 zip archive carried by the terminal snapshot"""
        snapshot = await self.result()
        if not snapshot.state.is_terminal or snapshot.payload is None:
            raise PayloadUnavailableError(
                f"Job {self._id} has no result payload (state {snapshot.state.value})"
            )
        if not isinstance(snapshot.payload, str):
            raise PayloadUnavailableError(
                f"Job {self._id} payload is not an archive"
            )

        # base64Binary may be wrapped into lines
        encoded = "".join(snapshot.payload.split())
        try:
            return base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ArchiveDecodeError(
                f"Job {self._id} payload is not valid base64"
            ) from e

    async def extract_to(self, destination: PathLike) -> "Job":
        """Unzips the result archive into destination.

        When the job has not reached a terminal snapshot yet, extraction is
        deferred to an on_complete handler, so this may be called before start().
        """
        running = self._run_state is not RunState.stopped
        if running and not self._has_terminal_snapshot():
            self.logger.debug(f"Deferring extraction of {self!r} to {destination}")
            return self.on_complete(lambda job: job.extract_to(destination))

        archive = await self.archive_bytes()
        await asyncio.to_thread(self._extract_archive, archive, Path(destination))
        self.logger.info(f"Extracted job {self._id} to {destination}")
        return self

    async def _submission_params(self) -> Dict[str, Any]:
        return dict(self._params)

    async def _submit(self) -> str:
        params = await self._submission_params()
        try:
            job_id = await self.gateway.submit(self.operation, params)
        except JobError:
            raise
        except Exception as e:
            self.logger.error(f"Unexpected error submitting {self.operation}: {e!r}")
            raise SubmissionError(f"{self.operation} could not be submitted") from e
        if not job_id:
            raise SubmissionError(f"{self.operation} returned no job id")
        return job_id

    async def _run(self) -> StatusSnapshot:
        try:
            if self.config.timeout is None:
                return await self._poll_loop()
            try:
                return await asyncio.wait_for(self._poll_loop(), self.config.timeout)
            except asyncio.TimeoutError as e:
                raise TimeoutError(
                    f"Job {self._id} did not complete within "
                    f"{self.config.timeout} seconds"
                ) from e
        except asyncio.CancelledError:
            self.logger.info(f"Polling of job {self._id} cancelled")
            raise
        finally:
            self._run_state = RunState.stopped

    async def _poll_loop(self) -> StatusSnapshot:
        """Polls with backoff until the job reaches a terminal state"""
        state = BackoffState.from_config(self.config)
        backoff = BackoffScheduler(state, self._sleep)

        while True:
            self._snapshot = None
            await backoff.wait()

            snapshot = await self._poll_with_retry(backoff)
            if snapshot.transport_error is not None:
                self._snapshot = snapshot
                await self._callbacks.fire(EventKind.on_error, self)
                return snapshot

            self._snapshot = snapshot
            self.logger.debug(f"Job {self._id} is {snapshot.state.value}")
            await self._callbacks.fire(EventKind.on_poll, self)

            if snapshot.state is JobState.succeeded:
                self.logger.info(f"Job {self._id} succeeded")
                await self._callbacks.fire(EventKind.on_complete, self)
                return snapshot
            if snapshot.state is JobState.failed:
                self.logger.info(f"Job {self._id} failed")
                await self._callbacks.fire(EventKind.on_error, self)
                return snapshot

    async def _poll_with_retry(self, backoff: BackoffScheduler) -> StatusSnapshot:
        """Polls once, retrying transport failures up to max_poll_retries times.

        Exhausted retries produce a synthetic Failed snapshot instead of raising.
        """
        retries = 0
        while True:
            try:
                async with self._poll_lock:
                    return await self.gateway.poll(self._id)
            except PollError as polling_error:
                if retries >= self.config.max_poll_retries:
                    self.logger.error(
                        f"Giving up on job {self._id} after {retries + 1} "
                        f"failed polls: {polling_error}"
                    )
                    return StatusSnapshot.transport_failure(polling_error)
                retries += 1
                self.logger.warning(
                    f"Error polling job {self._id} "
                    f"(retry {retries}/{self.config.max_poll_retries}): {polling_error}"
                )
                await backoff.wait()

    def _has_terminal_snapshot(self) -> bool:
        return self._snapshot is not None and self._snapshot.state.is_terminal

    def _on_worker_done(self, task: "asyncio.Task[StatusSnapshot]") -> None:
        self._run_state = RunState.stopped
        if task.cancelled():
            return
        error = task.exception()
        if error is None:
            return
        if self.config.failure_policy is WorkerFailurePolicy.abort:
            self.logger.opt(exception=error).critical(
                f"Polling worker for job {self._id} failed, aborting process"
            )
            os._exit(1)
        else:
            self.logger.opt(exception=error).error(
                f"Polling worker for job {self._id} failed"
            )

    @staticmethod
    def _extract_archive(archive: bytes, destination: Path) -> None:
        root = destination.resolve()
        tmp = tempfile.NamedTemporaryFile(
            prefix="retrieve", suffix=".zip", delete=False
        )
        try:
            with tmp:
                tmp.write(archive)
            with zipfile.ZipFile(tmp.name) as zf:
                for entry in zf.infolist():
                    path = root / entry.filename
                    if not path.resolve().is_relative_to(root):
                        raise ExtractionError(
                            f"Archive entry {entry.filename!r} escapes {root}"
                        )
                    if entry.is_dir():
                        path.mkdir(parents=True, exist_ok=True)
                        continue
                    path.parent.mkdir(parents=True, exist_ok=True)
                    path.write_bytes(zf.read(entry))
        except (OSError, zipfile.BadZipFile) as e:
            raise ExtractionError(
                f"Could not extract archive to {destination}: {e}"
            ) from e
        finally:
            os.unlink(tmp.name)


class DeployJob(Job):
    """Deploys a zip file, or a directory zipped on the fly"""

    def __init__(
        self,
        gateway: Gateway,
        path: PathLike,
        options: Optional[Dict[str, Any]] = None,
        config: Optional[StatusPollingConfig] = None,
        sleep: Optional[Sleep] = None,
    ):
        self.path = Path(path)
        params = {"deploy_options": dict(options or {})}
        super().__init__(gateway, "deploy", params, config=config, sleep=sleep)

    async def _submission_params(self) -> Dict[str, Any]:
        """Zips the deploy path off the event loop right before submission"""
        try:
            archive = await asyncio.to_thread(self._zip_bytes, self.path)
        except OSError as e:
            raise SubmissionError(f"Cannot package {self.path} for deploy: {e}") from e
        params = await super()._submission_params()
        params["zip_file"] = base64.b64encode(archive).decode("ascii")
        return params

    async def details(self) -> Dict[str, Any]:
        """Returns the structured deploy detail of the terminal snapshot"""
        snapshot = await self.result()
        if not snapshot.state.is_terminal or not isinstance(snapshot.payload, dict):
            raise PayloadUnavailableError(f"Job {self.id} has no deploy detail")
        return snapshot.payload

    @staticmethod
    def _zip_bytes(path: Path) -> bytes:
        if not path.is_dir():
            return path.read_bytes()

        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as zf:
            for file in sorted(path.rglob("*")):
                if file.is_file():
                    zf.write(file, file.relative_to(path.parent).as_posix())
        return buffer.getvalue()
