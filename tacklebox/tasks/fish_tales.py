from __future__ import annotations

import asyncio
import datetime as dt
import heapq
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, AsyncContextManager, Dict, List, Optional, Tuple

from pydantic import Base64Bytes, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from tacklebox.browser import StealthBrowser
from tacklebox.config import Settings
from tacklebox.errors import TaskFatalError, TaskItemError
from tacklebox.files import DIVIDER, TEXT_MEDIA_TYPE, WorkbookError, read_rows, text_bytes
from tacklebox.models import JobType
from tacklebox.scraping import extract_anchors, includes_any, normalize_url, same_domain, visible_text
from tacklebox.summarizer import DEFAULT_MODEL, GeminiSummarizer
from tacklebox.tasks.base import ScrapeTask, TaskContext, register_task

logger = logging.getLogger(__name__)

REPORT_FILE = "fishing_report.txt"
SITE_LIST_FILE = "site_list.txt"

EARLIEST_REPORT_YEAR = 2020

DEFAULT_SUMMARY_PROMPT = (
    "Summarize the fishing reports above. For each river or lake, list current "
    "conditions, water levels, hatches and recommended flies. Keep the source URLs."
)
DEFAULT_MERGE_PROMPT = (
    "Merge the following fishing report summaries into one report grouped by "
    "river or lake. Remove duplicates and keep the most recent information."
)


class FishTalesParams(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    api_key: Optional[str] = None
    starter_file: Base64Bytes
    max_age: int = Field(default=14, ge=1, le=3650)
    filter_by_rivers: bool = False
    river_list: List[str] = Field(default_factory=list)
    include_site_list: bool = False
    token_limit: int = Field(default=50_000, ge=500, le=1_000_000)
    crawl_depth: int = Field(default=20, ge=1, le=500)
    model: str = DEFAULT_MODEL
    summary_prompt: str = DEFAULT_SUMMARY_PROMPT
    merge_prompt: str = DEFAULT_MERGE_PROMPT


@dataclass
class Site:
    url: str
    selector: str = "body"
    last_updated: Any = None
    keywords: List[str] = field(default_factory=list)
    junk_words: List[str] = field(default_factory=list)
    click_phrases: List[str] = field(default_factory=list)


@dataclass
class CrawlResult:
    reports: List[str]
    visited: List[str]
    to_visit: List[str]
    hit_limit: bool
    timed_out: bool = False


# -----------------------------
# Site list / crawl helpers
# -----------------------------

def sites_from_rows(rows: List[Dict[str, Any]]) -> List[Site]:
    """Build Site records, dropping rows without a URL and duplicate normalized URLs."""
    seen = set()
    sites: List[Site] = []
    for row in rows:
        raw = row.get("url")
        if not raw:
            continue
        url = normalize_url(str(raw))
        if url in seen:
            logger.warning("Duplicate site skipped: %s", url)
            continue
        seen.add(url)
        sites.append(Site(
            url=url,
            selector=str(row.get("selector") or "body"),
            last_updated=row.get("last_updated"),
            keywords=list(row.get("keywords") or []),
            junk_words=list(row.get("junk_words") or []),
            click_phrases=list(row.get("click_phrases") or []),
        ))
    return sites


def link_priority(current_url: str, link: str, link_text: str, site: Site) -> float:
    """Lower is visited sooner; math.inf means do not follow."""
    has_keyword = includes_any(link, site.keywords)
    has_junk = includes_any(link, site.junk_words)
    if has_keyword and not has_junk:
        return 0
    if includes_any(current_url, site.keywords) and includes_any(link_text, site.click_phrases):
        return 1
    if has_keyword and has_junk:
        return 2
    return math.inf


_MONTHS = {
    m: i + 1
    for i, names in enumerate([
        ("jan", "january"), ("feb", "february"), ("mar", "march"), ("apr", "april"),
        ("may",), ("jun", "june"), ("jul", "july"), ("aug", "august"),
        ("sep", "sept", "september"), ("oct", "october"), ("nov", "november"), ("dec", "december"),
    ])
    for m in names
}
_MONTH_NAMES = "|".join(sorted(_MONTHS, key=len, reverse=True))

_DATE_PATTERNS = (
    # March 4, 2025 / Mar 4th 2025
    (re.compile(rf"\b({_MONTH_NAMES})\.?\s+(\d{{1,2}})(?:st|nd|rd|th)?,?\s+(\d{{4}})\b", re.I), "mdy_name"),
    # 4 March 2025
    (re.compile(rf"\b(\d{{1,2}})(?:st|nd|rd|th)?\s+({_MONTH_NAMES})\.?,?\s+(\d{{4}})\b", re.I), "dmy_name"),
    # 2025-03-04
    (re.compile(r"\b(\d{4})-(\d{1,2})-(\d{1,2})\b"), "ymd"),
    # 3/4/2025 (US order)
    (re.compile(r"\b(\d{1,2})/(\d{1,2})/(\d{4})\b"), "mdy"),
)


def extract_date(text: str, *, today: Optional[dt.date] = None) -> Optional[dt.date]:
    """Most recent explicit date (year required) between 2020 and this year, or None."""
    today = today or dt.date.today()
    found: List[dt.date] = []
    for pattern, kind in _DATE_PATTERNS:
        for m in pattern.finditer(text or ""):
            try:
                if kind == "mdy_name":
                    d = dt.date(int(m.group(3)), _MONTHS[m.group(1).lower()], int(m.group(2)))
                elif kind == "dmy_name":
                    d = dt.date(int(m.group(3)), _MONTHS[m.group(2).lower()], int(m.group(1)))
                elif kind == "ymd":
                    d = dt.date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
                else:
                    d = dt.date(int(m.group(3)), int(m.group(1)), int(m.group(2)))
            except ValueError:
                continue
            if EARLIEST_REPORT_YEAR <= d.year <= today.year:
                found.append(d)
    return max(found) if found else None


def filter_reports(
    reports: List[str],
    *,
    max_age: int,
    rivers: Optional[List[str]] = None,
    today: Optional[dt.date] = None,
) -> List[str]:
    today = today or dt.date.today()
    kept = []
    for report in reports:
        date = extract_date(report, today=today)
        if date is None or (today - date).days > max_age:
            continue
        if rivers and not includes_any(report, rivers):
            continue
        kept.append(report)
    return kept


# -----------------------------
# Task
# -----------------------------

@register_task
class FishTalesTask(ScrapeTask):
    """
    Crawl fishing-report sites from a starter workbook, keep recent reports and
    summarize them with Gemini.
    """

    job_type = JobType.FISH_TALES
    params_model = FishTalesParams

    async def run(self, params: FishTalesParams, ctx: TaskContext) -> None:
        ctx.emit("Reading sites from file...")
        try:
            rows = read_rows(params.starter_file, list_cols=("keywords", "junk_words", "click_phrases"))
        except WorkbookError as e:
            raise TaskFatalError(str(e)) from e
        sites = sites_from_rows(rows)
        if not sites:
            raise TaskFatalError("The starter file does not list any site URLs.")
        ctx.emit(f"Found {len(sites)} sites to scrape.")
        ctx.check_cancelled()

        reports, site_log = await self.scrape_reports(sites, params, ctx)
        ctx.check_cancelled()
        ctx.emit(f"Found {len(reports)} total reports.")
        if params.include_site_list:
            ctx.add_file(SITE_LIST_FILE, text_bytes(site_log), TEXT_MEDIA_TYPE)

        ctx.emit("Compiling reports...")
        kept = filter_reports(
            reports,
            max_age=params.max_age,
            rivers=params.river_list if params.filter_by_rivers else None,
        )
        if not kept:
            ctx.emit("No reports matched the age and river filters.")
            return
        ctx.emit(f"Compiled {len(kept)} recent reports.")
        ctx.check_cancelled()

        ctx.emit("Generating report summary...")
        summary = await self.summarize(DIVIDER.join(kept), params, ctx)
        if not summary:
            ctx.emit("No summaries generated. Skipping final summary.")
            return
        ctx.add_file(REPORT_FILE, text_bytes(summary), TEXT_MEDIA_TYPE)

    def open_browser(self, settings: Settings) -> AsyncContextManager[Any]:
        return StealthBrowser(headless=settings.headless, timeout_s=settings.page_timeout_s)

    def create_summarizer(self, params: FishTalesParams, settings: Settings) -> GeminiSummarizer:
        api_key = settings.resolve_api_key(params.api_key, settings.gemini_api_key)
        return GeminiSummarizer(api_key, params.model)

    async def summarize(self, report: str, params: FishTalesParams, ctx: TaskContext) -> str:
        summarizer = self.create_summarizer(params, ctx.settings)
        return await summarizer.summarize(
            report,
            token_limit=params.token_limit,
            summary_prompt=params.summary_prompt,
            merge_prompt=params.merge_prompt,
            concurrency=ctx.settings.concurrency,
            token=ctx.token,
        )

    async def scrape_reports(
        self, sites: List[Site], params: FishTalesParams, ctx: TaskContext
    ) -> Tuple[List[str], str]:
        async with self.open_browser(ctx.settings) as browser:
            results = await ctx.map_items(
                sites,
                lambda site: self.find_reports(browser, site, params.crawl_depth, ctx),
                label="Scraping sites for reports",
                target=lambda site: site.url,
                item_timeout=False,
            )

        reports: List[str] = []
        log_parts: List[str] = []
        for res in results:
            site = res.item
            if res.value is not None:
                crawl: CrawlResult = res.value
                reports.extend(crawl.reports)
                lines = []
                if crawl.hit_limit:
                    lines.append("Reached crawl depth limit for this site.")
                if crawl.timed_out:
                    lines.append("Ran out of time for this site.")
                lines.append(f"SITE: {site.url}")
                lines.append("VISITED:")
                lines.extend(f"\t{u}" for u in crawl.visited)
                lines.append("TO VISIT:")
                lines.extend(f"\t{u}" for u in crawl.to_visit)
                log_parts.append("\n".join(lines))
            elif res.error is not None:
                log_parts.append(f"SITE: {site.url}\nFAILED: {res.error.reason}")
        return reports, DIVIDER.join(log_parts)

    async def find_reports(
        self,
        browser: StealthBrowser,
        site: Site,
        crawl_depth: int,
        ctx: TaskContext,
    ) -> CrawlResult:
        """
        Best-first crawl of one site within item_timeout_s. The home page failing
        to load (or not loading in time) fails the site; a failing sub-page is only
        logged, and running out of time keeps the reports found so far.
        """
        reports: List[str] = []
        visited: List[str] = []
        seen = set()
        counter = 0
        queue: List[Tuple[float, int, str]] = [(-1, counter, site.url)]
        budget = ctx.settings.item_timeout_s
        loop = asyncio.get_running_loop()
        deadline = loop.time() + budget
        timed_out = False

        while queue and len(visited) < crawl_depth:
            ctx.check_cancelled()
            remaining = deadline - loop.time()
            if remaining <= 0:
                timed_out = True
                break
            _prio, _n, url = heapq.heappop(queue)
            if url in seen:
                continue
            seen.add(url)
            visited.append(url)

            try:
                snap = await asyncio.wait_for(browser.fetch(url), timeout=remaining)
            except asyncio.TimeoutError:
                if url == site.url:
                    raise TaskItemError(site.url, f"Timed out after {budget:.0f}s") from None
                logger.info("Ran out of time crawling %s", site.url)
                timed_out = True
                break
            except TaskItemError:
                if url == site.url:
                    raise
                logger.info("Skipping %s: failed to load", url)
                continue

            if url != site.url:
                text = visible_text(snap.html, site.selector)
                if text:
                    reports.append(f"{text}\nSource: {url}")

            for anchor in extract_anchors(snap.html, url):
                if not same_domain(anchor.href, site.url):
                    continue
                link = normalize_url(anchor.href)
                if link in seen:
                    continue
                priority = link_priority(url, link, anchor.text, site)
                if priority != math.inf:
                    counter += 1
                    heapq.heappush(queue, (priority, counter, link))

        return CrawlResult(
            reports=reports,
            visited=visited,
            to_visit=[u for _p, _n, u in sorted(queue) if u not in seen],
            hit_limit=len(visited) >= crawl_depth,
            timed_out=timed_out,
        )
