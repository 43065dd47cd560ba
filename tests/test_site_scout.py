import pytest

from tacklebox.errors import ValidationError
from tacklebox.files import read_rows, write_rows
from tacklebox.models import JobStatus
from tacklebox.tasks.site_scout import STARTER_FILE, SiteScoutTask, missing_report_sites
from tests.conftest import b64, build_engine, run_to_end

SHOP_ROWS = [
    {"Name": "Madison Fly Co", "Website": "https://www.madisonfly.test/", "Has Report": True},
    {"Name": "Known Shop", "Website": "https://known.test/reports", "Has Report": True},
    {"Name": "No Report", "Website": "https://noreport.test", "Has Report": False},
    {"Name": "Blocked", "Website": "https://blocked.test", "Has Report": "Blocked or Forbidden link (HTTP 403)"},
    {"Name": "Bait Shack", "Website": "No Website", "Has Report": False},
]

STARTER_ROWS = [
    {"URL": "https://known.test", "Selector": "#report", "Keywords": "report, fishing"},
]


def test_missing_report_sites():
    shop_rows = read_rows(write_rows(SHOP_ROWS))
    starter_rows = read_rows(write_rows(STARTER_ROWS))
    assert missing_report_sites(shop_rows, starter_rows) == ["https://www.madisonfly.test/"]


def test_missing_report_sites_dedupes_by_domain():
    shop_rows = [
        {"website": "https://a.test/", "has_report": "TRUE"},
        {"website": "https://www.a.test/fishing", "has_report": True},
    ]
    assert missing_report_sites(shop_rows, []) == ["https://a.test/"]


@pytest.mark.anyio
async def test_site_scout_job_appends_missing_sites(settings):
    engine = build_engine(settings, SiteScoutTask())

    job = await engine.create_job(
        "site-scout",
        {"shopReelFile": b64(write_rows(SHOP_ROWS)), "fishTalesFile": b64(write_rows(STARTER_ROWS))},
    )
    done = await run_to_end(engine, job)
    await engine.aclose()

    assert done.status == JobStatus.COMPLETED
    files = await engine.get_job_files(job.id)
    assert [f.name for f in files] == [STARTER_FILE]

    with open(files[0].path, "rb") as fh:
        rows = read_rows(fh.read(), list_cols=("keywords",))
    assert [r["url"] for r in rows] == ["https://known.test", "https://www.madisonfly.test/"]
    assert rows[0]["keywords"] == ["report", "fishing"]
    assert rows[1]["selector"] == "body"


@pytest.mark.anyio
async def test_site_scout_with_nothing_missing_has_no_files(settings):
    engine = build_engine(settings, SiteScoutTask())
    starter = [{"URL": "https://madisonfly.test"}]

    job = await engine.create_job(
        "SiteScout",
        {"shopReelFile": b64(write_rows(SHOP_ROWS[:1])), "fishTalesFile": b64(write_rows(starter))},
    )
    done = await run_to_end(engine, job)
    await engine.aclose()

    assert done.status == JobStatus.COMPLETED
    assert await engine.get_job_files(job.id) == []


@pytest.mark.anyio
async def test_site_scout_requires_both_files(settings):
    engine = build_engine(settings, SiteScoutTask())
    with pytest.raises(ValidationError):
        await engine.create_job("SiteScout", {"shopReelFile": b64(b"x")})
