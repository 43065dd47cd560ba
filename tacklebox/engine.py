"""
Job engine: owns job lifecycles from creation to a terminal state.

Each started job runs as one tracked asyncio.Task. Every state change is
persisted through the JobStore before the matching progress event goes out on
the ProgressChannel.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from tacklebox.cancellation import CancellationToken
from tacklebox.config import Settings
from tacklebox.errors import (
    CancellationObserved,
    InvalidStateTransitionError,
    NotFoundError,
    TaskFatalError,
    ValidationError,
)
from tacklebox.models import Job, JobStatus, JobType, ResultFile
from tacklebox.progress import ProgressChannel, Subscription
from tacklebox.store import JobStore
from tacklebox.tasks import ScrapeTask, TaskContext, registered_tasks
from tacklebox.tasks.base import PendingFile

logger = logging.getLogger(__name__)

MSG_STARTED = "Job started"
MSG_CANCELLING = "Cancelling..."
MSG_CANCELLED = "Job cancelled"
MSG_COMPLETED = "Job completed"
MSG_INTERRUPTED = "Interrupted by server restart"


def completion_message(ctx: TaskContext) -> str:
    if ctx.items_recorded:
        return f"{MSG_COMPLETED}: {ctx.succeeded} succeeded, {ctx.failed} failed"
    return MSG_COMPLETED


def _safe_name(name: str) -> str:
    cleaned = Path(name).name
    if not cleaned or cleaned in (".", ".."):
        raise ValueError(f"Invalid result file name: {name!r}")
    return cleaned


class JobEngine:
    def __init__(
        self,
        store: JobStore,
        channel: ProgressChannel,
        settings: Settings,
        *,
        registry: Optional[Mapping[JobType, ScrapeTask]] = None,
    ) -> None:
        self.store = store
        self.channel = channel
        self.settings = settings
        self._registry: Dict[JobType, ScrapeTask] = (
            dict(registry) if registry is not None else registered_tasks()
        )

        # guards _tasks/_tokens and the PENDING -> RUNNING/CANCELLED decisions
        self._lock = asyncio.Lock()
        self._tasks: Dict[str, asyncio.Task] = {}
        self._tokens: Dict[str, CancellationToken] = {}
        self._closing = False

    # -----------------------------
    # Jobs API
    # -----------------------------

    def resolve_task(self, job_type: Union[JobType, str]) -> ScrapeTask:
        jt = job_type if isinstance(job_type, JobType) else JobType.parse(job_type)
        task = self._registry.get(jt)
        if task is None:
            raise ValidationError(f"No task registered for job type {jt.value}")
        return task

    async def create_job(
        self,
        job_type: Union[JobType, str],
        params: Optional[Dict[str, Any]] = None,
        *,
        start: bool = True,
    ) -> Job:
        """Validate, persist as PENDING and (by default) start. Never waits for the task."""
        task = self.resolve_task(job_type)
        task.validate(params or {})

        job = Job.new(task.job_type, params or {})
        await self.store.save(job)
        logger.info("Created %s job %s", job.type.value, job.id)

        if start:
            await self.start_job(job.id)
            job = await self.store.find_by_id(job.id) or job
        return job

    async def start_job(self, job_id: str) -> bool:
        """
        Move a PENDING job to RUNNING and launch its execution.
        Returns False when the job is not PENDING or already has an execution.
        """
        async with self._lock:
            if self._closing or job_id in self._tasks:
                return False
            job = await self.store.find_by_id(job_id)
            if job is None:
                raise NotFoundError(job_id)
            if job.status != JobStatus.PENDING:
                return False

            task = self.resolve_task(job.type)
            params = task.validate(job.params)

            try:
                job = await self.store.update_status(job_id, JobStatus.RUNNING)
            except InvalidStateTransitionError:
                return False

            token = CancellationToken()
            self._tokens[job_id] = token
            self.channel.publish(job_id, MSG_STARTED, status=JobStatus.RUNNING)

            handle = asyncio.create_task(self._execute(job, task, params, token), name=f"job-{job_id}")
            self._tasks[job_id] = handle
            handle.add_done_callback(lambda _t, jid=job_id: self._forget(jid))

        logger.info("Started %s job %s", job.type.value, job_id)
        return True

    async def cancel_job(self, job_id: str) -> Job:
        async with self._lock:
            job = await self.store.find_by_id(job_id)
            if job is None:
                raise NotFoundError(job_id)
            if job.status.is_terminal:
                return job

            if job.status == JobStatus.PENDING:
                job = await self.store.update_status(job_id, JobStatus.CANCELLED, message=MSG_CANCELLED)
                self.channel.publish(job_id, MSG_CANCELLED, status=JobStatus.CANCELLED, final=True)
                logger.info("Cancelled pending job %s", job_id)
                return job

            token = self._tokens.get(job_id)
            handle = self._tasks.get(job_id)
            if token is None or handle is None or handle.done():
                return job
            if not token.is_cancelled():
                token.cancel()
                self.channel.publish(job_id, MSG_CANCELLING)
                logger.info("Cancellation requested for job %s", job_id)
        return job

    async def get_job_status(self, job_id: str) -> Job:
        job = await self.store.find_by_id(job_id)
        if job is None:
            raise NotFoundError(job_id)
        return job

    async def get_job_files(self, job_id: str) -> List[ResultFile]:
        job = await self.get_job_status(job_id)
        if job.status != JobStatus.COMPLETED:
            return []
        return list(job.result_files)

    async def get_job_file(self, job_id: str, name: str) -> Optional[ResultFile]:
        for f in await self.get_job_files(job_id):
            if f.name == name:
                return f
        return None

    async def watch_job(self, job_id: str) -> Subscription:
        """
        Subscribe to a job's progress. The subscription is registered before the
        status is read so a terminal event cannot slip between the two. For a
        job that is already terminal the returned subscription is closed.
        """
        sub = self.channel.subscribe(job_id)
        try:
            job = await self.get_job_status(job_id)
        except BaseException:
            sub.close()
            raise
        if job.status.is_terminal:
            sub.close()
        return sub

    async def wait_for(self, job_id: str) -> None:
        handle = self._tasks.get(job_id)
        if handle is not None:
            await asyncio.shield(handle)

    # -----------------------------
    # Startup / shutdown
    # -----------------------------

    async def recover(self) -> None:
        """Fail jobs orphaned by a previous process and start the ones still PENDING."""
        for job in await self.store.list_jobs(statuses=[JobStatus.RUNNING]):
            if job.id in self._tasks:
                continue
            try:
                await self.store.update_status(
                    job.id, JobStatus.FAILED, message=MSG_INTERRUPTED, error=MSG_INTERRUPTED
                )
            except InvalidStateTransitionError:
                continue
            self.channel.publish(job.id, MSG_INTERRUPTED, status=JobStatus.FAILED, final=True)
            logger.warning("Job %s was interrupted by a restart; marked FAILED", job.id)

        pending = await self.store.list_jobs(statuses=[JobStatus.PENDING])
        for job in reversed(pending):
            try:
                await self.start_job(job.id)
            except ValidationError as e:
                logger.warning("Pending job %s can no longer start: %s", job.id, e)
                await self.cancel_job(job.id)

    async def aclose(self) -> None:
        async with self._lock:
            self._closing = True
            tokens = list(self._tokens.values())
            tasks = list(self._tasks.values())

        for token in tokens:
            token.cancel()
        if not tasks:
            return

        _done, pending = await asyncio.wait(tasks, timeout=self.settings.shutdown_grace_s)
        for t in pending:
            t.cancel()
        if pending:
            logger.warning("Force-cancelled %d jobs on shutdown", len(pending))
            await asyncio.gather(*pending, return_exceptions=True)

    # -----------------------------
    # Execution
    # -----------------------------

    def _forget(self, job_id: str) -> None:
        self._tasks.pop(job_id, None)
        self._tokens.pop(job_id, None)

    async def _execute(self, job: Job, task: ScrapeTask, params: BaseModel, token: CancellationToken) -> None:
        job_id = job.id
        ctx = TaskContext(
            job_id,
            token,
            lambda message: self.channel.publish(job_id, message),
            self.settings,
        )

        try:
            token.throw_if_cancelled()
            await task.run(params, ctx)
            token.throw_if_cancelled()
        except CancellationObserved:
            await self._finish(job_id, JobStatus.CANCELLED, MSG_CANCELLED)
            return
        except asyncio.CancelledError:
            # shutdown overran its grace period
            await self._finish(job_id, JobStatus.CANCELLED, MSG_CANCELLED)
            raise
        except TaskFatalError as e:
            logger.warning("Job %s failed: %s", job_id, e)
            await self._fail(job_id, str(e), ctx)
            return
        except Exception as e:
            logger.exception("Job %s crashed", job_id)
            await self._fail(job_id, f"{type(e).__name__}: {e}", ctx)
            return

        try:
            files = await self._write_files(job_id, ctx.files)
        except (OSError, ValueError) as e:
            logger.exception("Job %s could not write result files", job_id)
            await self._fail(job_id, f"Could not write result files: {e}", ctx)
            return

        if token.is_cancelled():
            await run_in_threadpool(shutil.rmtree, self.job_dir(job_id), True)
            await self._finish(job_id, JobStatus.CANCELLED, MSG_CANCELLED)
            return

        await self._finish(job_id, JobStatus.COMPLETED, completion_message(ctx), files=files)

    async def _fail(self, job_id: str, error: str, ctx: TaskContext) -> None:
        files: List[ResultFile] = []
        if ctx.files:
            try:
                files = await self._write_files(job_id, ctx.files)
            except (OSError, ValueError):
                logger.exception("Job %s could not write partial files", job_id)
        await self._finish(job_id, JobStatus.FAILED, f"Error: {error}", files=files, error=error)

    async def _finish(
        self,
        job_id: str,
        status: JobStatus,
        message: str,
        *,
        files: Optional[List[ResultFile]] = None,
        error: Optional[str] = None,
    ) -> None:
        try:
            await self.store.update_status(
                job_id, status, result_files=files, message=message, error=error
            )
        except InvalidStateTransitionError as e:
            logger.error("Job %s could not be finished: %s", job_id, e)
        logger.info("Job %s finished: %s (%s)", job_id, status.value, message)
        # subscribers are released by the final event even if persisting failed
        self.channel.publish(job_id, message, status=status, final=True)

    def job_dir(self, job_id: str) -> Path:
        return Path(self.settings.results_dir) / job_id

    async def _write_files(self, job_id: str, pending: List[PendingFile]) -> List[ResultFile]:
        if not pending:
            return []
        return await run_in_threadpool(self._write_files_sync, self.job_dir(job_id), pending)

    @staticmethod
    def _write_files_sync(directory: Path, pending: List[PendingFile]) -> List[ResultFile]:
        directory.mkdir(parents=True, exist_ok=True)
        out: List[ResultFile] = []
        for f in pending:
            path = directory / _safe_name(f.name)
            path.write_bytes(f.data)
            out.append(ResultFile(name=path.name, path=str(path), media_type=f.media_type, size=len(f.data)))
        return out
