"""HTML helpers shared by the scrape tasks. Pure functions over page HTML."""

from __future__ import annotations

import re
import urllib.parse
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from bs4 import BeautifulSoup

MAX_TEXT_CHARS: int = 200_000

# Detection heuristics
BLOCK_MARKERS = (
    "Access Denied",
    "Forbidden",
    "Too Many Requests",
    "Error 403",
    "Access Blocked",
    "You have been rate limited",
)
BLOCK_STATUSES = (401, 403, 429)

EMAIL_REGEX = re.compile(r"[a-zA-Z0-9._%+\-]+@[a-zA-Z0-9.\-]+\.[a-zA-Z]{2,}", re.IGNORECASE)

SHOP_KEYWORDS = ("shop", "store", "buy", "products", "cart", "checkout")

SOCIAL_MEDIA_MAP: Tuple[Tuple[str, str], ...] = (
    ("facebook.com", "Facebook"),
    ("instagram.com", "Instagram"),
    ("linkedin.com", "LinkedIn"),
    ("tiktok.com", "TikTok"),
    ("vimeo.com", "Vimeo"),
    ("whatsapp.com", "WhatsApp"),
    ("wa.me", "WhatsApp"),
    ("x.com", "X (Twitter)"),
    ("twitter.com", "X (Twitter)"),
    ("youtube.com", "YouTube"),
)


@dataclass(frozen=True)
class Anchor:
    href: str
    text: str


# -----------------------------
# URLs
# -----------------------------

def normalize_url(url: str) -> str:
    """Strip query/fragment and trailing slash so URLs compare cleanly."""
    raw = (url or "").strip()
    if raw and "://" not in raw:
        raw = "https://" + raw
    parsed = urllib.parse.urlparse(raw)
    if not parsed.netloc:
        return url
    path = parsed.path.rstrip("/") or "/"
    return urllib.parse.urlunparse((parsed.scheme.lower(), parsed.netloc.lower(), path, "", "", ""))


def domain(url: str) -> str:
    host = urllib.parse.urlparse(normalize_url(url)).hostname or ""
    return host.lower().removeprefix("www.")


def same_domain(a: str, b: str) -> bool:
    da, db = domain(a), domain(b)
    return bool(da) and da == db


# -----------------------------
# Page content
# -----------------------------

def _soup(html: str) -> BeautifulSoup:
    return BeautifulSoup(html or "", "lxml")


def looks_like_block(html: str) -> bool:
    return any(m in (html or "") for m in BLOCK_MARKERS)


def extract_title_and_text(html: str) -> Tuple[str, str]:
    soup = _soup(html)
    title = (soup.title.string.strip() if soup.title and soup.title.string else "").strip()
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    text = soup.get_text(" ", strip=True)
    if len(text) > MAX_TEXT_CHARS:
        text = text[:MAX_TEXT_CHARS]
    return title, text


def extract_anchors(html: str, base_url: str) -> List[Anchor]:
    anchors: List[Anchor] = []
    for a in _soup(html).find_all("a", href=True):
        href = (a.get("href") or "").strip()
        if not href or href.startswith(("javascript:", "mailto:", "tel:", "#")):
            continue
        abs_url = urllib.parse.urljoin(base_url, href)
        if abs_url.startswith("http"):
            anchors.append(Anchor(href=abs_url, text=a.get_text(" ", strip=True).lower()))
    return anchors


def visible_text(html: str, selector: str) -> Optional[str]:
    """Text of the first element matching `selector`, or None if missing/hidden."""
    if not selector:
        return None
    soup = _soup(html)
    node = soup.select_one(selector)
    if node is None:
        return None
    for el in [node, *node.parents]:
        attrs = getattr(el, "attrs", None) or {}
        style = str(attrs.get("style", "")).replace(" ", "").lower()
        if "hidden" in attrs or "display:none" in style or "visibility:hidden" in style:
            return None
    for tag in node(["script", "style", "noscript"]):
        tag.decompose()
    text = node.get_text("\n", strip=True)
    text = re.sub(r"\n{2,}", "\n", text).strip()
    return text or None


def has_element_with_keyword(html: str, element: str, keyword: str) -> bool:
    needle = keyword.lower()
    return any(needle in el.get_text(" ", strip=True).lower() for el in _soup(html).find_all(element))


# -----------------------------
# Shop details
# -----------------------------

def email_from_href(html: str) -> Optional[str]:
    a = _soup(html).select_one('a[href^="mailto:"]')
    if a is None:
        return None
    email = a["href"].replace("mailto:", "", 1).split("?")[0].strip()
    return email or None


def email_from_text(html: str) -> Optional[str]:
    _title, text = extract_title_and_text(html)
    m = EMAIL_REGEX.search(text)
    return m.group(0) if m else None


def find_email(html: str) -> Optional[str]:
    return email_from_href(html) or email_from_text(html)


def contact_link(html: str, base_url: str) -> Optional[str]:
    a = _soup(html).select_one('a[href*="contact"]')
    if a is None:
        return None
    return urllib.parse.urljoin(base_url, a["href"].strip())


def has_online_shop(html: str) -> bool:
    return any(
        has_element_with_keyword(html, el, keyword)
        for keyword in SHOP_KEYWORDS
        for el in ("a", "button")
    )


def publishes_fishing_report(html: str) -> bool:
    return has_element_with_keyword(html, "a", "report")


def social_media(html: str) -> List[str]:
    hrefs = [(a.get("href") or "").lower() for a in _soup(html).find_all("a", href=True)]
    found: List[str] = []
    for dom, name in SOCIAL_MEDIA_MAP:
        if name not in found and any(dom in h for h in hrefs):
            found.append(name)
    return found


# -----------------------------
# Misc
# -----------------------------

def includes_any(target: str, terms: Iterable[str]) -> bool:
    t = (target or "").lower()
    return any(term and term.lower() in t for term in terms)
