"""
Job persistence.

The engine only talks to the JobStore interface. InMemoryJobStore keeps records
for the life of the process; SqlJobStore persists them with SQLAlchemy so status
survives a restart.
"""

from __future__ import annotations

import abc
import asyncio
import copy
import time
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import JSON, Float, String, Text, create_engine, delete, select, update
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool
from starlette.concurrency import run_in_threadpool

from tacklebox.errors import InvalidStateTransitionError, NotFoundError
from tacklebox.models import (
    Job,
    JobStatus,
    JobType,
    ResultFile,
    allowed_sources,
    check_transition,
)


class JobStore(abc.ABC):
    """Owns persisted Job records. Updates are atomic per job id."""

    @abc.abstractmethod
    async def save(self, job: Job) -> None: ...

    @abc.abstractmethod
    async def find_by_id(self, job_id: str) -> Optional[Job]: ...

    @abc.abstractmethod
    async def update_status(
        self,
        job_id: str,
        status: JobStatus,
        *,
        result_files: Optional[List[ResultFile]] = None,
        message: Optional[str] = None,
        error: Optional[str] = None,
    ) -> Job:
        """
        Move a job to `status`, enforcing the state machine as a compare-and-set.
        Raises NotFoundError or InvalidStateTransitionError.
        """

    @abc.abstractmethod
    async def list_jobs(
        self,
        *,
        job_type: Optional[JobType] = None,
        statuses: Optional[Iterable[JobStatus]] = None,
    ) -> List[Job]:
        """Newest first."""

    @abc.abstractmethod
    async def delete(self, job_ids: Iterable[str]) -> int: ...

    async def aclose(self) -> None:
        return None


# -----------------------------
# In-memory
# -----------------------------

class InMemoryJobStore(JobStore):
    def __init__(self) -> None:
        self._jobs: Dict[str, Job] = {}
        self._lock = asyncio.Lock()

    async def save(self, job: Job) -> None:
        async with self._lock:
            self._jobs[job.id] = copy.deepcopy(job)

    async def find_by_id(self, job_id: str) -> Optional[Job]:
        async with self._lock:
            job = self._jobs.get(job_id)
            return copy.deepcopy(job) if job else None

    async def update_status(
        self,
        job_id: str,
        status: JobStatus,
        *,
        result_files: Optional[List[ResultFile]] = None,
        message: Optional[str] = None,
        error: Optional[str] = None,
    ) -> Job:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise NotFoundError(job_id)
            check_transition(job_id, job.status, status)
            job.status = status
            job.updated_at = time.time()
            if result_files is not None:
                job.result_files = list(result_files)
            if message is not None:
                job.message = message
            if error is not None:
                job.error = error
            return copy.deepcopy(job)

    async def list_jobs(
        self,
        *,
        job_type: Optional[JobType] = None,
        statuses: Optional[Iterable[JobStatus]] = None,
    ) -> List[Job]:
        wanted = set(statuses) if statuses is not None else None
        async with self._lock:
            jobs = [
                copy.deepcopy(j)
                for j in self._jobs.values()
                if (job_type is None or j.type == job_type) and (wanted is None or j.status in wanted)
            ]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return jobs

    async def delete(self, job_ids: Iterable[str]) -> int:
        removed = 0
        async with self._lock:
            for job_id in job_ids:
                if self._jobs.pop(job_id, None) is not None:
                    removed += 1
        return removed


# -----------------------------
# SQLAlchemy
# -----------------------------

class Base(DeclarativeBase):
    pass


class JobRow(Base):
    __tablename__ = "jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    type: Mapped[str] = mapped_column(String(32), index=True, nullable=False)
    status: Mapped[str] = mapped_column(String(16), index=True, nullable=False)
    created_at: Mapped[float] = mapped_column(Float, nullable=False)
    updated_at: Mapped[float] = mapped_column(Float, nullable=False)
    params: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    result_files: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


def _row_to_job(row: JobRow) -> Job:
    return Job(
        id=row.id,
        type=JobType(row.type),
        status=JobStatus(row.status),
        created_at=row.created_at,
        updated_at=row.updated_at,
        params=dict(row.params or {}),
        result_files=[ResultFile.from_dict(f) for f in (row.result_files or [])],
        message=row.message,
        error=row.error,
    )


class SqlJobStore(JobStore):
    """
    SQLAlchemy-backed store. Sessions are synchronous and run in the threadpool
    so the event loop never blocks on the database.
    """

    def __init__(self, url: str, *, echo: bool = False) -> None:
        kwargs: Dict[str, Any] = {"echo": echo}
        if url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if url in ("sqlite://", "sqlite:///:memory:"):
                # one shared connection, otherwise every thread sees an empty database
                kwargs["poolclass"] = StaticPool
        self._engine = create_engine(url, **kwargs)
        self._sessions = sessionmaker(bind=self._engine, expire_on_commit=False)
        Base.metadata.create_all(self._engine)

    async def aclose(self) -> None:
        await run_in_threadpool(self._engine.dispose)

    async def save(self, job: Job) -> None:
        await run_in_threadpool(self._save_sync, job)

    async def find_by_id(self, job_id: str) -> Optional[Job]:
        return await run_in_threadpool(self._find_sync, job_id)

    async def update_status(
        self,
        job_id: str,
        status: JobStatus,
        *,
        result_files: Optional[List[ResultFile]] = None,
        message: Optional[str] = None,
        error: Optional[str] = None,
    ) -> Job:
        return await run_in_threadpool(
            self._update_status_sync, job_id, status, result_files, message, error
        )

    async def list_jobs(
        self,
        *,
        job_type: Optional[JobType] = None,
        statuses: Optional[Iterable[JobStatus]] = None,
    ) -> List[Job]:
        wanted = [s.value for s in statuses] if statuses is not None else None
        return await run_in_threadpool(self._list_sync, job_type, wanted)

    async def delete(self, job_ids: Iterable[str]) -> int:
        return await run_in_threadpool(self._delete_sync, list(job_ids))

    # -----------------------------
    # Sync bodies (threadpool)
    # -----------------------------

    def _save_sync(self, job: Job) -> None:
        with self._sessions() as session, session.begin():
            session.merge(
                JobRow(
                    id=job.id,
                    type=job.type.value,
                    status=job.status.value,
                    created_at=job.created_at,
                    updated_at=job.updated_at,
                    params=job.params,
                    result_files=[f.to_dict() for f in job.result_files],
                    message=job.message,
                    error=job.error,
                )
            )

    def _find_sync(self, job_id: str) -> Optional[Job]:
        with self._sessions() as session:
            row = session.get(JobRow, job_id)
            return _row_to_job(row) if row else None

    def _update_status_sync(
        self,
        job_id: str,
        status: JobStatus,
        result_files: Optional[List[ResultFile]],
        message: Optional[str],
        error: Optional[str],
    ) -> Job:
        values: Dict[str, Any] = {"status": status.value, "updated_at": time.time()}
        if result_files is not None:
            values["result_files"] = [f.to_dict() for f in result_files]
        if message is not None:
            values["message"] = message
        if error is not None:
            values["error"] = error

        sources = [s.value for s in allowed_sources(status)]
        with self._sessions() as session, session.begin():
            result = session.execute(
                update(JobRow)
                .where(JobRow.id == job_id, JobRow.status.in_(sources))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            row = session.get(JobRow, job_id)
            if row is None:
                raise NotFoundError(job_id)
            if result.rowcount == 0:
                check_transition(job_id, JobStatus(row.status), status)
                # legal edge but the row moved underneath us
                raise InvalidStateTransitionError(job_id, row.status, status.value)
            return _row_to_job(row)

    def _list_sync(self, job_type: Optional[JobType], statuses: Optional[List[str]]) -> List[Job]:
        stmt = select(JobRow).order_by(JobRow.created_at.desc())
        if job_type is not None:
            stmt = stmt.where(JobRow.type == job_type.value)
        if statuses is not None:
            stmt = stmt.where(JobRow.status.in_(statuses))
        with self._sessions() as session:
            return [_row_to_job(row) for row in session.scalars(stmt)]

    def _delete_sync(self, job_ids: List[str]) -> int:
        if not job_ids:
            return 0
        with self._sessions() as session, session.begin():
            result = session.execute(delete(JobRow).where(JobRow.id.in_(job_ids)))
            return int(result.rowcount or 0)


def create_store(database_url: Optional[str]) -> JobStore:
    if not database_url or database_url == "memory":
        return InMemoryJobStore()
    return SqlJobStore(database_url)
