from __future__ import annotations

import abc
import asyncio
import logging
from dataclasses import dataclass
from typing import (
    Any,
    Awaitable,
    Callable,
    ClassVar,
    Dict,
    Generic,
    List,
    Optional,
    Sequence,
    Type,
    TypeVar,
)

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from tacklebox.cancellation import CancellationToken, gather_or_cancel
from tacklebox.config import Settings
from tacklebox.errors import TaskItemError, ValidationError
from tacklebox.models import JobType

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class PendingFile:
    name: str
    data: bytes
    media_type: str


@dataclass
class ItemResult(Generic[T, R]):
    item: T
    value: Optional[R] = None
    error: Optional[TaskItemError] = None
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.skipped


class TaskContext:
    """
    Everything a running task may touch: its cancellation token, the progress
    emitter, and the per-item success/failure tally. Files added here are
    written by the engine when the task finishes.
    """

    def __init__(
        self,
        job_id: str,
        token: CancellationToken,
        emit: Callable[[str], Any],
        settings: Settings,
    ) -> None:
        self.job_id = job_id
        self.token = token
        self.settings = settings
        self._emit = emit
        self.files: List[PendingFile] = []
        self.failures: List[TaskItemError] = []
        self.succeeded = 0

    @property
    def failed(self) -> int:
        return len(self.failures)

    @property
    def items_recorded(self) -> bool:
        return bool(self.succeeded or self.failures)

    def emit(self, message: str) -> None:
        self._emit(message)

    def check_cancelled(self) -> None:
        self.token.throw_if_cancelled()

    def add_file(self, name: str, data: bytes, media_type: str = "application/octet-stream") -> None:
        # a later file with the same name replaces the earlier one
        self.files = [f for f in self.files if f.name != name]
        self.files.append(PendingFile(name=name, data=data, media_type=media_type))

    def record_success(self) -> None:
        self.succeeded += 1

    def record_failure(self, error: TaskItemError) -> None:
        logger.warning("Job %s item failed: %s", self.job_id, error)
        self.failures.append(error)

    async def map_items(
        self,
        items: Sequence[T],
        worker: Callable[[T], Awaitable[R]],
        *,
        label: str,
        target: Callable[[T], str] = str,
        item_timeout: bool = True,
    ) -> List[ItemResult[T, R]]:
        """
        Run `worker` over items with bounded concurrency and a per-item timeout.
        Pass item_timeout=False when the worker enforces its own deadline.

        Item failures (TaskItemError and timeouts) are recorded and never abort
        the batch. Once the token is cancelled no new item is started; in-flight
        items finish and the caller's next checkpoint raises. Any other error
        leaving a worker cancels the items still running before it propagates.
        """
        results: List[ItemResult[T, R]] = [ItemResult(item=i) for i in items]
        total = len(results)
        done = 0
        sem = asyncio.Semaphore(max(1, int(self.settings.concurrency)))
        timeout = self.settings.item_timeout_s

        self.emit(f"{label} (0/{total})")

        async def run_one(res: ItemResult[T, R]) -> None:
            nonlocal done
            async with sem:
                if self.token.is_cancelled():
                    res.skipped = True
                    return
                name = target(res.item)
                try:
                    if item_timeout:
                        res.value = await asyncio.wait_for(worker(res.item), timeout=timeout)
                    else:
                        res.value = await worker(res.item)
                    self.record_success()
                except asyncio.TimeoutError:
                    res.error = TaskItemError(name, f"Timed out after {timeout:.0f}s")
                    self.record_failure(res.error)
                except TaskItemError as e:
                    res.error = e
                    self.record_failure(e)
            done += 1
            self.emit(f"{label} ({done}/{total})")

        await gather_or_cancel(*(run_one(r) for r in results))
        return results


# -----------------------------
# Task contract / registry
# -----------------------------

class ScrapeTask(abc.ABC):
    job_type: ClassVar[JobType]
    params_model: ClassVar[Type[BaseModel]]

    def validate(self, params: Dict[str, Any]) -> BaseModel:
        try:
            return self.params_model.model_validate(params or {})
        except PydanticValidationError as e:
            errors = [
                {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
                for err in e.errors(include_url=False, include_input=False)
            ]
            raise ValidationError(f"Invalid parameters for {self.job_type.value}", errors) from e

    @abc.abstractmethod
    async def run(self, params: Any, ctx: TaskContext) -> None:
        """Do the work; report files through ctx.add_file()."""


_REGISTRY: Dict[JobType, ScrapeTask] = {}

_TaskT = TypeVar("_TaskT", bound=Type[ScrapeTask])


def register_task(cls: _TaskT) -> _TaskT:
    _REGISTRY[cls.job_type] = cls()
    return cls


def registered_tasks() -> Dict[JobType, ScrapeTask]:
    return dict(_REGISTRY)
