import dataclasses
import datetime as dt
import math
from types import SimpleNamespace

import pytest

from tacklebox.cancellation import CancellationToken
from tacklebox.errors import TaskItemError
from tacklebox.files import write_rows
from tacklebox.models import JobStatus
from tacklebox.summarizer import GeminiSummarizer
from tacklebox.tasks import TaskContext
from tacklebox.tasks.fish_tales import (
    REPORT_FILE,
    SITE_LIST_FILE,
    FishTalesTask,
    Site,
    extract_date,
    filter_reports,
    link_priority,
    sites_from_rows,
)
from tests.conftest import FakeBrowser, NullEmitter, b64, build_engine, run_to_end

TODAY = dt.date(2025, 3, 10)

SITE = Site(
    url="https://flyshop.test/",
    selector="#report",
    keywords=["report"],
    junk_words=["archive"],
    click_phrases=["read more"],
)


def site_pages(date_text):
    return {
        "https://flyshop.test/": (
            '<a href="/fishing-report">Reports</a>'
            '<a href="/shop">Shop</a>'
            '<a href="https://other.test/fishing-report">Elsewhere</a>'
        ),
        "https://flyshop.test/fishing-report": (
            f'<div id="report">Madison River {date_text}: flows 1200 cfs, salmonflies.</div>'
            '<a href="/fishing-report/archive">Archive</a>'
            '<a href="/blog/post-1">Read more</a>'
        ),
        "https://flyshop.test/fishing-report/archive": '<div id="report">Old news from 2021-06-01</div>',
        "https://flyshop.test/blog/post-1": '<div id="report" style="display:none">hidden</div>',
    }


def test_link_priority():
    assert link_priority(SITE.url, "https://flyshop.test/fishing-report", "reports", SITE) == 0
    assert link_priority(
        "https://flyshop.test/fishing-report", "https://flyshop.test/blog/1", "read more", SITE
    ) == 1
    assert link_priority(SITE.url, "https://flyshop.test/report/archive", "", SITE) == 2
    assert link_priority(SITE.url, "https://flyshop.test/shop", "shop", SITE) == math.inf
    # click phrases only count on keyword pages
    assert link_priority(SITE.url, "https://flyshop.test/blog/1", "read more", SITE) == math.inf


@pytest.mark.parametrize(
    "text, expected",
    [
        ("Updated March 4, 2025 by Dave", dt.date(2025, 3, 4)),
        ("Report for 4th Mar 2025", dt.date(2025, 3, 4)),
        ("posted 2025-02-28", dt.date(2025, 2, 28)),
        ("3/1/2025 and 3/5/2025", dt.date(2025, 3, 5)),
        ("Established 1998. Updated 2019-05-01", None),
        ("See you on 12/25/2030", None),
        ("No date here", None),
        ("February 30, 2025", None),
    ],
)
def test_extract_date(text, expected):
    assert extract_date(text, today=TODAY) == expected


def test_filter_reports_by_age_and_river():
    reports = [
        "Madison River March 4, 2025 fishing well",
        "Gallatin River March 5, 2025 slow",
        "Yellowstone January 2, 2025 iced over",
        "Undated report about the Madison",
    ]
    assert filter_reports(reports, max_age=14, today=TODAY) == reports[:2]
    assert filter_reports(reports, max_age=14, rivers=["madison"], today=TODAY) == reports[:1]
    assert filter_reports(reports, max_age=90, rivers=[], today=TODAY) == reports[:3]


def test_sites_from_rows_dedupes_normalized_urls():
    rows = [
        {"url": "https://FlyShop.test/", "keywords": ["report"], "selector": "#r"},
        {"url": "https://flyshop.test?utm=1", "keywords": []},
        {"url": None},
        {"url": "other.test", "selector": None},
    ]
    sites = sites_from_rows(rows)
    assert [s.url for s in sites] == ["https://flyshop.test/", "https://other.test/"]
    assert sites[0].selector == "#r"
    assert sites[1].selector == "body"


@pytest.mark.anyio
async def test_find_reports_crawls_best_first(settings):
    browser = FakeBrowser(site_pages("March 4, 2025"))
    ctx = TaskContext("job-1", CancellationToken(), NullEmitter(), settings)

    crawl = await FishTalesTask().find_reports(browser, SITE, 10, ctx)

    assert crawl.visited[:2] == ["https://flyshop.test/", "https://flyshop.test/fishing-report"]
    assert "https://other.test/fishing-report" not in crawl.visited
    assert "https://flyshop.test/shop" not in crawl.visited
    # keyword link beats the click-phrase link, junk comes last
    assert crawl.visited[2:] == ["https://flyshop.test/blog/post-1", "https://flyshop.test/fishing-report/archive"]
    assert crawl.reports[0].endswith("Source: https://flyshop.test/fishing-report")
    assert len(crawl.reports) == 2
    assert not crawl.hit_limit


@pytest.mark.anyio
async def test_find_reports_stops_at_crawl_depth(settings):
    browser = FakeBrowser(site_pages("March 4, 2025"))
    ctx = TaskContext("job-1", CancellationToken(), NullEmitter(), settings)

    crawl = await FishTalesTask().find_reports(browser, SITE, 2, ctx)

    assert len(crawl.visited) == 2
    assert crawl.hit_limit
    assert crawl.to_visit == ["https://flyshop.test/blog/post-1", "https://flyshop.test/fishing-report/archive"]


@pytest.mark.anyio
async def test_slow_site_keeps_reports_found_before_deadline(settings):
    browser = FakeBrowser(site_pages("March 4, 2025"), delay=0.1)
    settings = dataclasses.replace(settings, item_timeout_s=0.25)
    ctx = TaskContext("job-1", CancellationToken(), NullEmitter(), settings)

    crawl = await FishTalesTask().find_reports(browser, SITE, 10, ctx)

    assert crawl.timed_out
    assert not crawl.hit_limit
    assert len(crawl.reports) == 1
    assert crawl.reports[0].endswith("Source: https://flyshop.test/fishing-report")


@pytest.mark.anyio
async def test_home_page_past_deadline_fails_site(settings):
    browser = FakeBrowser(site_pages("March 4, 2025"), delay=0.1)
    settings = dataclasses.replace(settings, item_timeout_s=0.02)
    ctx = TaskContext("job-1", CancellationToken(), NullEmitter(), settings)

    with pytest.raises(TaskItemError, match="Timed out"):
        await FishTalesTask().find_reports(browser, SITE, 10, ctx)


class FakeModels:
    def __init__(self):
        self.prompts = []

    async def generate_content(self, *, model, contents):
        self.prompts.append(contents)
        return SimpleNamespace(text="Madison: fishing well on salmonflies.")


class OfflineFishTales(FishTalesTask):
    def __init__(self, browser):
        self.browser = browser
        self.models = FakeModels()

    def open_browser(self, settings):
        return self.browser

    def create_summarizer(self, params, settings):
        return GeminiSummarizer(None, params.model, client=SimpleNamespace(aio=SimpleNamespace(models=self.models)))


def starter_workbook(*urls):
    return write_rows(
        [
            {
                "URL": url,
                "Selector": "#report",
                "Last Updated": None,
                "Keywords": "report",
                "Junk Words": "archive",
                "Click Phrases": "read more",
            }
            for url in urls
        ]
    )


@pytest.mark.anyio
async def test_fish_tales_job_summarizes_recent_reports(settings):
    today = dt.date.today()
    pages = site_pages(f"{today:%B} {today.day}, {today.year}")
    task = OfflineFishTales(FakeBrowser(pages))
    engine = build_engine(settings, task)

    job = await engine.create_job(
        "FishTales",
        {
            "apiKey": "test",
            "starterFile": b64(starter_workbook("https://flyshop.test", "https://down.test")),
            "includeSiteList": True,
        },
    )
    done = await run_to_end(engine, job)
    await engine.aclose()

    assert done.status == JobStatus.COMPLETED
    assert "1 succeeded, 1 failed" in done.message
    files = {f.name: f for f in await engine.get_job_files(job.id)}
    assert set(files) == {REPORT_FILE, SITE_LIST_FILE}

    with open(files[REPORT_FILE].path, encoding="utf-8") as fh:
        assert fh.read() == "Madison: fishing well on salmonflies."
    with open(files[SITE_LIST_FILE].path, encoding="utf-8") as fh:
        site_list = fh.read()
    assert "SITE: https://flyshop.test/" in site_list
    assert "FAILED: Page load failed (HTTP 404)" in site_list

    # one chunk summary plus the merge
    assert len(task.models.prompts) == 2
    assert "Source: https://flyshop.test/fishing-report" in task.models.prompts[0]
    assert "Old news" not in task.models.prompts[0]


@pytest.mark.anyio
async def test_fish_tales_without_recent_reports_completes_empty(settings):
    task = OfflineFishTales(FakeBrowser(site_pages("March 4, 2021")))
    engine = build_engine(settings, task)

    job = await engine.create_job(
        "FishTales", {"starterFile": b64(starter_workbook("https://flyshop.test"))}
    )
    done = await run_to_end(engine, job)
    await engine.aclose()

    assert done.status == JobStatus.COMPLETED
    assert await engine.get_job_files(job.id) == []
    assert task.models.prompts == []


@pytest.mark.anyio
async def test_fish_tales_rejects_unreadable_starter(settings):
    engine = build_engine(settings, OfflineFishTales(FakeBrowser({})))

    job = await engine.create_job("FishTales", {"starterFile": b64(b"not a workbook")})
    done = await run_to_end(engine, job)
    await engine.aclose()

    assert done.status == JobStatus.FAILED
    assert "Could not read workbook" in done.error
