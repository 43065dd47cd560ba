from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncContextManager, Dict, List, Optional, Union

import httpx
from pydantic import AliasChoices, Base64Bytes, BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from tacklebox.browser import StealthBrowser
from tacklebox.config import Settings
from tacklebox.errors import BlockedError, TaskFatalError, TaskItemError
from tacklebox.files import XLSX_MEDIA_TYPE, WorkbookError, read_rows, write_rows
from tacklebox.models import JobType
from tacklebox.scraping import (
    contact_link,
    find_email,
    has_online_shop,
    normalize_url,
    publishes_fishing_report,
    social_media,
)
from tacklebox.tasks.base import ItemResult, ScrapeTask, TaskContext, register_task

logger = logging.getLogger(__name__)

SERP_API_URL = "https://serpapi.com/search.json"
SERP_PAGE_SIZE = 20

NO_EMAIL = "No Email"
NO_WEBSITE = "No Website"
LOAD_FAILED = "Page load failed"

SHOP_DETAILS_FILE = "shop_details.xlsx"
CACHE_FILE = "simple_shop_details.xlsx"


class ShopReelParams(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    api_key: Optional[str] = None
    query: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("query", "searchTerm", "search_term"),
    )
    lat: Optional[float] = Field(
        default=None, ge=-90, le=90, validation_alias=AliasChoices("lat", "latitude")
    )
    lng: Optional[float] = Field(
        default=None, ge=-180, le=180, validation_alias=AliasChoices("lng", "longitude")
    )
    max_results: int = Field(default=100, ge=1, le=500)

    # A previous search's simple_shop_details.xlsx; skips the SerpAPI calls
    cache_file: Optional[Base64Bytes] = None
    include_cache_file: bool = False

    @model_validator(mode="after")
    def _search_or_cache(self) -> "ShopReelParams":
        if self.cache_file:
            return self
        if not (self.query or "").strip() or self.lat is None or self.lng is None:
            raise ValueError("Provide either a cache file or a query with lat and lng.")
        return self


@dataclass
class ShopDetails:
    email: str = ""
    sells_online: Union[bool, str] = False
    fishing_report: Union[bool, str] = False
    social_media: str = ""

    @classmethod
    def fallback(cls, reason: str) -> "ShopDetails":
        return cls(email=reason, sells_online=reason, fishing_report=reason, social_media=reason)

    @classmethod
    def for_error(cls, error: TaskItemError) -> "ShopDetails":
        if isinstance(error, BlockedError):
            return cls.fallback(error.reason)
        return cls.fallback(LOAD_FAILED)


def _rating(shop: Dict[str, Any]) -> str:
    rating = shop.get("rating")
    return f"{rating}/5" if rating is not None else "N/A"


def build_cache_rows(shops: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [
        {
            "Name": shop.get("title") or "",
            "Category": shop.get("type") or "",
            "Phone": shop.get("phone") or "",
            "Address": shop.get("address") or "",
            "Has Website": bool(shop.get("website")),
            "Website": shop.get("website") or NO_WEBSITE,
            "Rating": _rating(shop),
            "Reviews": shop.get("reviews") or 0,
        }
        for shop in shops
    ]


def build_shop_rows(shops: List[Dict[str, Any]], details: List[ShopDetails]) -> List[Dict[str, Any]]:
    if len(shops) != len(details):
        raise ValueError(f"Shop count {len(shops)} != details count {len(details)}")

    rows = []
    for shop, d in zip(shops, details):
        rows.append({
            "Name": shop.get("title") or "",
            "Category": shop.get("type") or "",
            "Phone": shop.get("phone") or "",
            "Address": shop.get("address") or "",
            "Email": d.email,
            "Has Website": bool(shop.get("website")),
            "Website": shop.get("website") or NO_WEBSITE,
            "Sells Online": d.sells_online,
            "Rating": _rating(shop),
            "Reviews": shop.get("reviews") or 0,
            "Has Report": d.fishing_report,
            "Socials": d.social_media,
        })
    return rows


def shops_from_cache_rows(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    shops = []
    for row in rows:
        website = row.get("website")
        if website == NO_WEBSITE:
            website = None
        rating: Any = row.get("rating")
        if isinstance(rating, str):
            head = rating.split("/")[0].strip()
            try:
                rating = float(head)
            except ValueError:
                rating = None
        shops.append({
            "title": row.get("name") or "",
            "type": row.get("category") or "",
            "phone": row.get("phone") or "",
            "address": row.get("address") or "",
            "website": website or None,
            "rating": rating,
            "reviews": row.get("reviews") or 0,
        })
    return shops


@register_task
class ShopReelTask(ScrapeTask):
    """
    Google Maps shop search (SerpAPI) plus a visit to every shop website to
    check for an email, an online store, a fishing report and social links.
    """

    job_type = JobType.SHOP_REEL
    params_model = ShopReelParams

    async def run(self, params: ShopReelParams, ctx: TaskContext) -> None:
        ctx.emit("Searching for shops...")
        shops = await self.fetch_shops(params, ctx)
        ctx.emit(f"Found {len(shops)} shops.")
        ctx.check_cancelled()

        details = await self.get_details(shops, ctx)
        ctx.check_cancelled()

        ctx.emit("Writing shop data to Excel...")
        ctx.add_file(SHOP_DETAILS_FILE, write_rows(build_shop_rows(shops, details)), XLSX_MEDIA_TYPE)
        ctx.emit("Excel file created.")

    # -----------------------------
    # Shop search
    # -----------------------------

    async def fetch_shops(self, params: ShopReelParams, ctx: TaskContext) -> List[Dict[str, Any]]:
        if params.cache_file:
            try:
                return shops_from_cache_rows(read_rows(params.cache_file))
            except WorkbookError as e:
                raise TaskFatalError(str(e)) from e

        api_key = ctx.settings.resolve_api_key(params.api_key, ctx.settings.serp_api_key)
        if not api_key:
            raise TaskFatalError("A SerpAPI key is required to search Google Maps.")

        results: List[Dict[str, Any]] = []
        async with httpx.AsyncClient(timeout=httpx.Timeout(ctx.settings.http_timeout_s)) as client:
            for start in range(0, params.max_results, SERP_PAGE_SIZE):
                ctx.check_cancelled()
                page = await self._search_page(client, params, api_key, start)
                results.extend(page)
                if len(page) < SERP_PAGE_SIZE:
                    break

        results = results[: params.max_results]
        if results and params.include_cache_file:
            ctx.add_file(CACHE_FILE, write_rows(build_cache_rows(results)), XLSX_MEDIA_TYPE)
        return results

    async def _search_page(
        self,
        client: httpx.AsyncClient,
        params: ShopReelParams,
        api_key: str,
        start: int,
    ) -> List[Dict[str, Any]]:
        try:
            resp = await client.get(
                SERP_API_URL,
                params={
                    "engine": "google_maps",
                    "q": params.query,
                    "ll": f"@{params.lat},{params.lng},10z",
                    "start": start,
                    "type": "search",
                    "api_key": api_key,
                },
            )
        except httpx.HTTPError as e:
            raise TaskFatalError(f"SerpAPI request failed: {type(e).__name__}") from e

        if resp.status_code in (401, 403):
            raise TaskFatalError("SerpAPI rejected the API key.")
        if resp.status_code >= 400:
            raise TaskFatalError(f"SerpAPI request failed (HTTP {resp.status_code}).")

        data = resp.json()
        if data.get("error") and not data.get("local_results"):
            # SerpAPI reports "no results" as an error string too
            if "hasn't returned any results" in str(data["error"]):
                return []
            raise TaskFatalError(f"SerpAPI error: {data['error']}")
        return list(data.get("local_results") or [])

    # -----------------------------
    # Website details
    # -----------------------------

    def open_browser(self, settings: Settings) -> AsyncContextManager[Any]:
        return StealthBrowser(headless=settings.headless, timeout_s=settings.page_timeout_s)

    async def get_details(self, shops: List[Dict[str, Any]], ctx: TaskContext) -> List[ShopDetails]:
        details = [ShopDetails() for _ in shops]
        targets = [(i, shop) for i, shop in enumerate(shops) if shop.get("website")]
        if not targets:
            return details

        cache: Dict[str, "asyncio.Task[ShopDetails]"] = {}
        async with self.open_browser(ctx.settings) as browser:
            try:
                results: List[ItemResult] = await ctx.map_items(
                    targets,
                    lambda t: self.scrape_website(browser, t[1]["website"], cache),
                    label="Scraping shops",
                    target=lambda t: t[1]["website"],
                )
            finally:
                for scrape in cache.values():
                    scrape.cancel()
                await asyncio.gather(*cache.values(), return_exceptions=True)

        for res in results:
            index = res.item[0]
            if res.error is not None:
                details[index] = ShopDetails.for_error(res.error)
            elif res.value is not None:
                details[index] = res.value
        ctx.emit("Scraping complete.")
        return details

    async def scrape_website(
        self, browser: StealthBrowser, url: str, cache: Dict[str, "asyncio.Task[ShopDetails]"]
    ) -> ShopDetails:
        """Shops sharing a website share one scrape of it."""
        normalized = normalize_url(url)
        scrape = cache.get(normalized)
        if scrape is None:
            scrape = asyncio.ensure_future(self._scrape_details(browser, normalized))
            cache[normalized] = scrape
        # one waiter timing out must not cancel the scrape for the others
        return await asyncio.shield(scrape)

    async def _scrape_details(self, browser: StealthBrowser, normalized: str) -> ShopDetails:
        snap = await browser.fetch(normalized)
        if snap.status in (403, 429):
            raise BlockedError(normalized, snap.status)

        html = snap.html
        email = find_email(html)
        if not email:
            link = contact_link(html, snap.url)
            if link:
                try:
                    email = find_email((await browser.fetch(link)).html)
                except TaskItemError:
                    logger.info("Contact page %s failed to load", link)

        details = ShopDetails(
            email=email or NO_EMAIL,
            sells_online=has_online_shop(html),
            fishing_report=publishes_fishing_report(html),
            social_media=", ".join(social_media(html)),
        )
        return details
