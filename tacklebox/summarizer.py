"""Gemini-backed summaries of compiled fishing reports."""

from __future__ import annotations

import asyncio
import logging
import math
import random
from typing import Any, List, Optional

from google import genai
from google.genai import errors as genai_errors

from tacklebox.cancellation import CancellationToken, gather_or_cancel
from tacklebox.errors import TaskFatalError
from tacklebox.files import DIVIDER

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gemini-2.5-flash"
_AUTH_ERROR_CODES = (400, 401, 403)


def estimate_token_count(text: str) -> int:
    words = len((text or "").split())
    return math.ceil(words * 1.3)


def chunk_report_text(text: str, token_limit: int) -> List[str]:
    """Split on DIVIDER and pack whole reports into chunks under token_limit."""
    chunks: List[str] = []
    current = ""
    current_tokens = 0

    for report in text.split(DIVIDER):
        section = report + DIVIDER
        tokens = estimate_token_count(section)
        if current_tokens + tokens > token_limit:
            if current.strip():
                chunks.append(current.strip())
            current = section
            current_tokens = tokens
        else:
            current += section
            current_tokens += tokens

    if current.strip():
        chunks.append(current.strip())
    return chunks


async def _with_backoff(func, *args, **kwargs):
    retries = 3
    base_delay = 1
    for i in range(retries):
        try:
            return await func(*args, **kwargs)
        except genai_errors.APIError as e:
            if e.code == 429 and i < retries - 1:
                delay = base_delay * (2**i) + random.uniform(0, 1)
                logger.warning("Gemini rate limited, retrying in %.1fs", delay)
                await asyncio.sleep(delay)
                continue
            raise
    return await func(*args, **kwargs)


class GeminiSummarizer:
    def __init__(self, api_key: Optional[str], model: str = DEFAULT_MODEL, *, client: Any = None) -> None:
        if client is None:
            if not api_key:
                raise TaskFatalError("A Gemini API key is required to summarize reports.")
            client = genai.Client(api_key=api_key)
        self._client = client
        self.model = model

    async def generate(self, prompt: str) -> str:
        try:
            response = await _with_backoff(
                self._client.aio.models.generate_content, model=self.model, contents=prompt
            )
        except genai_errors.APIError as e:
            if e.code in _AUTH_ERROR_CODES:
                raise TaskFatalError(f"Gemini rejected the request: {e.message or e}") from e
            raise
        return (response.text or "").strip()

    async def summarize(
        self,
        report: str,
        *,
        token_limit: int,
        summary_prompt: str,
        merge_prompt: str,
        concurrency: int,
        token: CancellationToken,
    ) -> str:
        """Summarize each chunk concurrently, then merge the chunk summaries."""
        chunks = chunk_report_text(report, token_limit)
        sem = asyncio.Semaphore(max(1, concurrency))

        async def one(chunk: str) -> str:
            async with sem:
                token.throw_if_cancelled()
                return await self.generate(f"{chunk}\n\n{summary_prompt}")

        summaries = await gather_or_cancel(*(one(c) for c in chunks))
        summaries = [s for s in summaries if s]
        if not summaries:
            return ""

        token.throw_if_cancelled()
        return await self.generate(f"{merge_prompt}\n\n" + "\n\n".join(summaries))
