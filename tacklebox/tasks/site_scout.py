from __future__ import annotations

import logging
from typing import Any, Dict, List

from pydantic import Base64Bytes, BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from tacklebox.errors import TaskFatalError
from tacklebox.files import XLSX_MEDIA_TYPE, WorkbookError, read_rows, write_rows
from tacklebox.models import JobType
from tacklebox.scraping import domain
from tacklebox.tasks.base import ScrapeTask, TaskContext, register_task

logger = logging.getLogger(__name__)

STARTER_FILE = "fish_tales_starter.xlsx"
STARTER_HEADERS = ["url", "selector", "last_updated", "keywords", "junk_words", "click_phrases"]
LIST_COLS = ("keywords", "junk_words", "click_phrases")


class SiteScoutParams(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    shop_reel_file: Base64Bytes
    fish_tales_file: Base64Bytes


def _truthy(value: Any) -> bool:
    # failed rows carry fallback text such as "Page load failed"
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"true", "yes", "1"}
    return False


def missing_report_sites(shop_rows: List[Dict[str, Any]], starter_rows: List[Dict[str, Any]]) -> List[str]:
    """Websites of shops with a fishing report whose domain the starter list lacks."""
    known = {domain(str(r["url"])) for r in starter_rows if r.get("url")}
    missing: List[str] = []
    for row in shop_rows:
        website = row.get("website")
        if not website or not _truthy(row.get("has_report")):
            continue
        host = domain(str(website))
        if not host or host in known:
            continue
        known.add(host)
        missing.append(str(website))
    return missing


def merge_starter_rows(starter_rows: List[Dict[str, Any]], websites: List[str]) -> List[Dict[str, Any]]:
    rows = [dict(r) for r in starter_rows]
    for website in websites:
        rows.append({"url": website, "selector": "body"})
    return rows


@register_task
class SiteScoutTask(ScrapeTask):
    """Add shops that publish fishing reports to a FishTales starter workbook."""

    job_type = JobType.SITE_SCOUT
    params_model = SiteScoutParams

    async def run(self, params: SiteScoutParams, ctx: TaskContext) -> None:
        ctx.emit("Reading files...")
        try:
            shop_rows = read_rows(params.shop_reel_file)
            starter_rows = read_rows(params.fish_tales_file, list_cols=LIST_COLS)
        except WorkbookError as e:
            raise TaskFatalError(str(e)) from e
        ctx.check_cancelled()

        ctx.emit("Checking for missing report sites...")
        missing = missing_report_sites(shop_rows, starter_rows)
        if not missing:
            ctx.emit("No missing sites found.")
            return

        ctx.emit(f"Found {len(missing)} missing sites. Adding to file...")
        headers = list(STARTER_HEADERS)
        for row in starter_rows:
            for key in row:
                if key not in headers:
                    headers.append(key)
        data = write_rows(merge_starter_rows(starter_rows, missing), headers=headers)
        ctx.add_file(STARTER_FILE, data, XLSX_MEDIA_TYPE)
        ctx.emit("Updated starter file created.")
