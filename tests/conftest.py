"""Shared fixtures: test settings, a fake scrape task and an engine wired to it."""

from __future__ import annotations

import asyncio
import base64
from pathlib import Path
from typing import Dict, List, Optional

import pytest
from pydantic import BaseModel

from tacklebox.config import Settings
from tacklebox.engine import JobEngine
from tacklebox.errors import BlockedError, TaskFatalError, TaskItemError
from tacklebox.files import TEXT_MEDIA_TYPE
from tacklebox.models import Job, JobType
from tacklebox.progress import ProgressChannel
from tacklebox.scraping import normalize_url
from tacklebox.store import InMemoryJobStore
from tacklebox.tasks import ScrapeTask, TaskContext


@pytest.fixture
def anyio_backend():
    return "asyncio"


def make_settings(results_dir: Path, **overrides) -> Settings:
    values = dict(
        environment="development",
        log_level="INFO",
        database_url="memory",
        results_dir=results_dir,
        concurrency=3,
        item_timeout_s=5.0,
        page_timeout_s=5.0,
        http_timeout_s=5.0,
        event_queue_size=100,
        keep_completed_per_type=5,
        shutdown_grace_s=1.0,
        headless=True,
        serp_api_key="serp-server-key",
        gemini_api_key="gemini-server-key",
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return make_settings(tmp_path / "results")


class FakeParams(BaseModel):
    sites: int = 3
    failing: int = 0
    files: bool = True
    fatal: bool = False
    crash: bool = False
    wait: bool = False


class FakeTask(ScrapeTask):
    """Visits `sites` fake targets; the first `failing` of them are blocked."""

    job_type = JobType.SHOP_REEL
    params_model = FakeParams

    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.gate = asyncio.Event()
        self.runs = 0

    async def run(self, params: FakeParams, ctx: TaskContext) -> None:
        self.runs += 1
        self.started.set()
        ctx.emit("Searching...")
        if params.fatal:
            raise TaskFatalError("Upstream rejected the API key.")
        if params.crash:
            raise RuntimeError("boom")

        async def visit(i: int) -> int:
            if params.wait:
                await self.gate.wait()
            if i < params.failing:
                raise BlockedError(f"https://site{i}.test", 403)
            return i

        await ctx.map_items(list(range(params.sites)), visit, label="Scraping sites")
        ctx.check_cancelled()
        if params.files:
            ctx.add_file("out.txt", b"done", TEXT_MEDIA_TYPE)


@pytest.fixture
def fake_task() -> FakeTask:
    return FakeTask()


@pytest.fixture
async def engine(settings, fake_task):
    eng = JobEngine(
        InMemoryJobStore(),
        ProgressChannel(queue_size=settings.event_queue_size),
        settings,
        registry={JobType.SHOP_REEL: fake_task},
    )
    yield eng
    await eng.aclose()


async def run_to_end(engine: JobEngine, job: Job) -> Job:
    await engine.wait_for(job.id)
    return await engine.get_job_status(job.id)


class FakeSnapshot:
    def __init__(self, url: str, html: str, status: int = 200) -> None:
        self.url = url
        self.html = html
        self.status = status


class FakeBrowser:
    """Serves canned HTML keyed by normalized URL; unknown URLs 404."""

    def __init__(
        self,
        pages: Dict[str, str],
        statuses: Optional[Dict[str, int]] = None,
        delay: float = 0.0,
    ) -> None:
        self.delay = delay
        self.pages = {normalize_url(u): html for u, html in pages.items()}
        self.statuses = {normalize_url(u): s for u, s in (statuses or {}).items()}
        self.fetched: List[str] = []

    async def __aenter__(self) -> "FakeBrowser":
        return self

    async def __aexit__(self, *exc_info) -> None:
        return None

    async def fetch(self, url: str) -> FakeSnapshot:
        key = normalize_url(url)
        self.fetched.append(key)
        if self.delay:
            await asyncio.sleep(self.delay)
        if key not in self.pages:
            raise TaskItemError(key, "Page load failed (HTTP 404)")
        return FakeSnapshot(key, self.pages[key], self.statuses.get(key, 200))


def build_engine(settings: Settings, *tasks: ScrapeTask) -> JobEngine:
    return JobEngine(
        InMemoryJobStore(),
        ProgressChannel(queue_size=settings.event_queue_size),
        settings,
        registry={t.job_type: t for t in tasks},
    )


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


class NullEmitter:
    def __init__(self) -> None:
        self.messages: List[str] = []

    def __call__(self, message: str) -> None:
        self.messages.append(message)
