import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional

from .config import Settings
from .errors import DramaboxError, describe_error
from .models import BestEffort, ChapterEntry, ChapterRecord, ChapterWindow
from .retry import Sleep

logger = logging.getLogger(__name__)

BATCH_LOAD_ENDPOINT = "/drama-box/chapterv2/batch/load"


class WindowAnomaly(DramaboxError):
    """A window came back shorter than it should have."""


class ChapterPager:
    """
    Walks every chapter window of one book.

    The upstream serves five chapters per window and answers with truncated
    or empty windows when it decides a client is scraping. Short windows that
    are not explained by the end of the book or the paywall boundary trigger a
    token rotation and a single recovery fetch. A fresh pager is built for
    each listing; partial state is discarded with it.
    """

    def __init__(self, client, tokens, settings: Settings, lang: str, sleep: Sleep = asyncio.sleep):
        self.client = client
        self.tokens = tokens
        self.settings = settings
        self.lang = lang
        self.sleep = sleep
        self.total_chapters = 0
        self.pay_chapter_index = 0
        self.errors: List[str] = []
        self._accumulated: List[ChapterEntry] = []

    @staticmethod
    def window_payload(book_id: str, index: int) -> Dict[str, Any]:
        return {
            "boundaryIndex": 0,
            "comingPlaySectionId": -1,
            "index": index,
            "currencyPlaySourceName": "首页发现_Untukmu_推荐列表",
            "rid": "",
            "enterReaderChapterIndex": 0,
            "loadDirection": 1,
            "startUpKey": "10942710-5e9e-48f2-8927-7c387e6f5fac",
            "bookId": book_id,
            "currencyPlaySource": "discover_175_rec",
            "needEndRecommend": 0,
            "preLoad": False,
            "pullCid": "",
        }

    def is_near_end(self, index: int) -> bool:
        return self.total_chapters != 0 and index + self.settings.end_of_book_margin >= self.total_chapters

    def check_window(self, window: ChapterWindow, index: int, is_recovery_retry: bool) -> None:
        count = len(window)
        at_paywall = index == self.pay_chapter_index

        if (
            count <= self.settings.throttle_max_items
            and not at_paywall
            and not is_recovery_retry
            and not self.is_near_end(index)
        ):
            raise WindowAnomaly(f"Suspected throttling ({count} items)")

        if count == 0 and not at_paywall:
            raise WindowAnomaly("Soft error: window is empty")

    async def _load(self, book_id: str, index: int, is_recovery_retry: bool) -> ChapterWindow:
        payload = await self.client.request(self.lang, BATCH_LOAD_ENDPOINT, self.window_payload(book_id, index))
        window = ChapterWindow.from_payload(payload)
        self.check_window(window, index, is_recovery_retry)
        return window

    async def fetch_window(self, book_id: str, index: int, is_recovery_retry: bool = False) -> Optional[ChapterWindow]:
        try:
            window = await self._load(book_id, index, is_recovery_retry)
            logger.info("📥 Window %d: ✅ %d items", index, len(window))
            return window
        except DramaboxError as exc:
            if is_recovery_retry:
                logger.warning("📥 Window %d: ❌ giving up (%s)", index, exc)
                self.errors.append(describe_error(exc, f"window {index}"))
                return None
            logger.warning("📥 Window %d: ⚠️ %s", index, exc)

        logger.info("🔄 Refreshing session for window %d...", index)
        await self.tokens.refresh(self.lang)

        if self.pay_chapter_index > 0 and index != self.pay_chapter_index:
            try:
                await self._load(book_id, self.pay_chapter_index, True)
            except DramaboxError as exc:
                logger.debug("Paywall window %d failed: %s", self.pay_chapter_index, exc)
            await self.sleep(self.settings.paywall_pause)

        await self.sleep(self.settings.recovery_pause)
        return await self.fetch_window(book_id, index, True)

    async def run(self, book_id: str) -> BestEffort:
        logger.info("%s", "=" * 50)
        logger.info("🚀 Listing all chapters of book %s (%s)", book_id, self.lang)

        try:
            first = await self.fetch_window(book_id, 1)
            if first is not None:
                self.total_chapters = first.chapter_count
                self.pay_chapter_index = first.pay_chapter_num
                logger.info("📖 Title: %s | Total eps: %d", first.book_name, self.total_chapters)
                self._accumulated.extend(first.chapters)
                await self._walk(book_id)

            records = self.finalize(self._accumulated)
        except Exception as exc:
            logger.exception("Critical error while listing chapters of book %s", book_id)
            return BestEffort(items=[], errors=self.errors + [describe_error(exc, "batch listing")])

        logger.info("✅ Done. %d episodes for book %s", len(records), book_id)
        return BestEffort(items=records, errors=list(self.errors))

    async def _walk(self, book_id: str) -> None:
        step = self.settings.window_size
        index = 1 + step
        empty_streak = 0

        while index <= self.total_chapters:
            window = await self.fetch_window(book_id, index)
            if window is not None and len(window) > 0:
                self._accumulated.extend(window.chapters)
                index += step
                empty_streak = 0
            else:
                empty_streak += 1
                if empty_streak >= self.settings.starvation_limit:
                    logger.warning("Window %d starved %d times, skipping ahead", index, empty_streak)
                    index += step
                    empty_streak = 0
                else:
                    await self.sleep(self.settings.starvation_pause)
            await self.sleep(self.settings.window_pause)

    @staticmethod
    def finalize(entries: Iterable[ChapterEntry]) -> List[ChapterRecord]:
        unique: Dict[Any, ChapterEntry] = {}
        for entry in entries:
            unique[entry.chapter_id] = entry
        ordered = sorted(unique.values(), key=lambda e: e.chapter_index or 0)
        return [ChapterRecord.from_entry(e) for e in ordered]
