import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from .cache import ResponseCache
from .client import UpstreamClient
from .config import Settings
from .errors import DramaboxError, NotFound, ValidationError
from .models import (
    BestEffort,
    ChapterEntry,
    StreamChapter,
    data_of,
    flatten_tag_cards,
    summarize_book,
    summarize_search_hit,
)
from .pager import BATCH_LOAD_ENDPOINT, ChapterPager
from .retry import RetryContext, RetryPolicy, Sleep
from .signer import Signer
from .tokens import TokenStore
from .transport import send_json

logger = logging.getLogger(__name__)

MAX_INPUT_LENGTH = 200

STREAM_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/91.0.4472.124 Safari/537.36",
    "X-Requested-With": "XMLHttpRequest",
}


def sanitize(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    return value.strip()[:MAX_INPUT_LENGTH]


def require(**params: Any) -> None:
    missing = [name for name, value in params.items() if value in (None, "")]
    if missing:
        raise ValidationError(f"Required parameters: {', '.join(missing)}")


class DramaboxContext:
    """
    Process-wide state shared by every language partition.

    Built once at startup and closed at shutdown: one HTTP client, one
    response cache, one token store, and the per-language façades handed out
    by :meth:`dramabox`.
    """

    def __init__(
        self,
        settings: Settings,
        http: Optional[httpx.AsyncClient] = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.time,
        cache_timer: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self.http = http or httpx.AsyncClient(
            timeout=settings.request_timeout,
            headers={"Accept-Encoding": "gzip, deflate"},
        )
        self.sleep = sleep
        self.cache = ResponseCache(maxsize=settings.cache_maxsize, timer=cache_timer)
        self.signer = Signer(settings.sign_secret)
        self.retry_policy = RetryPolicy.from_settings(settings, sleep=sleep)
        self.tokens = TokenStore(self.http, self.cache, self.signer, self.retry_policy, settings, clock)
        self.client = UpstreamClient(self.http, self.tokens, self.signer, self.retry_policy, settings, clock)
        self._instances: Dict[str, "Dramabox"] = {}

    def dramabox(self, lang: Optional[str] = None) -> "Dramabox":
        lang = sanitize(lang) or self.settings.default_lang
        if lang not in self._instances:
            self._instances[lang] = Dramabox(lang, self)
        return self._instances[lang]

    def clear_cache(self) -> None:
        self.cache.clear()
        self.tokens.clear()
        logger.info("[Cache] All cache cleared")

    async def aclose(self) -> None:
        self.clear_cache()
        self._instances.clear()
        await self.http.aclose()


class Dramabox:
    """Dramabox operations for one language."""

    def __init__(self, lang: str, context: DramaboxContext):
        self.lang = lang
        self.context = context
        self.settings = context.settings
        self.cache = context.cache
        self.client = context.client

    async def _cached(self, key: str, ttl: int, loader: Callable[[], Awaitable[Any]]) -> Any:
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        value = await loader()
        self.cache.set(key, value, ttl)
        return value

    async def _request(self, endpoint: str, payload: Optional[Dict[str, Any]] = None, **kwargs) -> Any:
        return await self.client.request(self.lang, endpoint, payload, **kwargs)

    # Listings

    async def search(self, keyword: str, page: int = 1, size: int = 20) -> Dict[str, Any]:
        keyword = sanitize(keyword)
        require(keyword=keyword)

        async def load():
            data = data_of(
                await self._request(
                    "/drama-box/search/search",
                    {
                        "searchSource": "搜索按钮",
                        "pageNo": page,
                        "pageSize": size,
                        "from": "search_sug",
                        "keyword": keyword,
                    },
                )
            )
            return {
                "items": [summarize_search_hit(b) for b in data.get("searchList") or []],
                "hasMore": data.get("isMore") in (1, "1", True),
            }

        key = ResponseCache.key("search", keyword, page, size, self.lang)
        return await self._cached(key, self.settings.ttl_search, load)

    async def list_home(self, page: int = 1, size: int = 10) -> Dict[str, Any]:
        async def load():
            filters = [] if page == 1 else [
                {"type": 1, "value": ""},
                {"type": 2, "value": ""},
                {"type": 3, "value": ""},
                {"type": 4, "value": ""},
                {"type": 4, "value": ""},
                {"type": 5, "value": "1"},
            ]
            data = data_of(
                await self._request(
                    "/drama-box/he001/classify",
                    {"typeList": filters, "showLabels": False, "pageNo": str(page), "pageSize": str(size)},
                )
            )
            listing = data.get("classifyBookList") or {}
            return {
                "items": [summarize_book(b) for b in flatten_tag_cards(listing.get("records"))],
                "hasMore": listing.get("isMore") in (1, "1", True),
            }

        key = ResponseCache.key("list", page, size, self.lang)
        return await self._cached(key, self.settings.ttl_drama_list, load)

    async def get_vip_theater(self) -> Any:
        async def load():
            return await self._request(
                "/drama-box/he001/theater",
                {"homePageStyle": 0, "isNeedRank": 1, "index": 4, "type": 0, "channelId": 205},
            )

        return await self._cached(ResponseCache.key("vip", self.lang), self.settings.ttl_drama_list, load)

    async def list_recommended(self) -> List[Dict[str, Any]]:
        async def load():
            data = data_of(
                await self._request(
                    "/drama-box/he001/recommendBook",
                    {"isNeedRank": 1, "newChannelStyle": 1, "specialColumnId": 0, "pageNo": 1, "channelId": 43},
                )
            )
            return flatten_tag_cards((data.get("recommendList") or {}).get("records"))

        return await self._cached(ResponseCache.key("recommend", self.lang), self.settings.ttl_drama_list, load)

    async def list_categories(self, page: int = 1, size: int = 30) -> List[Dict[str, Any]]:
        async def load():
            data = data_of(
                await self._request(
                    "/webfic/home/browse",
                    {"typeTwoId": 0, "pageNo": page, "pageSize": size},
                    use_alternate_auth=True,
                )
            )
            return data.get("types") or []

        key = ResponseCache.key("categories", page, size, self.lang)
        return await self._cached(key, self.settings.ttl_categories, load)

    async def list_by_category(self, category_id: int, page: int = 1, size: int = 10) -> Any:
        require(category_id=category_id)

        async def load():
            payload = await self._request(
                "/webfic/home/browse",
                {"typeTwoId": category_id, "pageNo": page, "pageSize": size},
                use_alternate_auth=True,
            )
            return (payload or {}).get("data") or []

        key = ResponseCache.key("category", category_id, page, size, self.lang)
        return await self._cached(key, self.settings.ttl_drama_list, load)

    async def suggest(self, keyword: str, page: int = 3) -> List[Dict[str, Any]]:
        keyword = sanitize(keyword)
        require(keyword=keyword)
        data = data_of(await self._request("/drama-box/search/suggest", {"keyword": keyword, "pageNo": page}))
        return [
            {
                "bookId": item.get("bookId"),
                "bookName": "-".join((item.get("bookName") or "").split()),
                "cover": item.get("cover"),
            }
            for item in data.get("suggestList") or []
        ]

    async def hot_searches(self) -> List[Dict[str, Any]]:
        async def load():
            return data_of(await self._request("/drama-box/search/index")).get("hotVideoList") or []

        return await self._cached(ResponseCache.key("searchIndex", self.lang), self.settings.ttl_search, load)

    # Single dramas

    async def get_detail(self, book_id: str) -> Dict[str, Any]:
        book_id = sanitize(book_id)
        require(book_id=book_id)

        async def load():
            data = data_of(
                await self._request(
                    f"/webfic/book/detail/v2?id={book_id}&language={self.lang}",
                    {"id": book_id, "language": self.lang},
                    use_alternate_auth=True,
                    method="GET",
                )
            )
            if not data.get("book"):
                raise NotFound(f"Drama {book_id} not found")
            chapters = [{"index": ch.get("index"), "id": ch.get("id")} for ch in data.get("chapterList") or []]
            return {"chapters": chapters, "drama": data["book"]}

        key = ResponseCache.key("detailv2", book_id, self.lang)
        return await self._cached(key, self.settings.ttl_drama_detail, load)

    async def get_drama_detail(self, book_id: str, need_recommend: bool = False, source: str = "book_album") -> Any:
        book_id = sanitize(book_id)
        require(book_id=book_id)

        async def load():
            return await self._request(
                "/drama-box/chapterv2/detail",
                {"needRecommend": need_recommend, "from": source, "bookId": book_id},
            )

        key = ResponseCache.key("detail", book_id, self.lang)
        return await self._cached(key, self.settings.ttl_drama_detail, load)

    async def list_chapters(self, book_id: str) -> List[Dict[str, Any]]:
        book_id = sanitize(book_id)
        require(book_id=book_id)

        async def load():
            data = data_of(
                await self._request(
                    BATCH_LOAD_ENDPOINT,
                    {
                        "boundaryIndex": 0,
                        "comingPlaySectionId": -1,
                        "index": 1,
                        "currencyPlaySource": "discover_new_rec_new",
                        "needEndRecommend": 0,
                        "currencyPlaySourceName": "",
                        "preLoad": False,
                        "rid": "",
                        "pullCid": "",
                        "loadDirection": 0,
                        "bookId": book_id,
                    },
                )
            )
            chapters = []
            for raw in data.get("chapterList") or []:
                entry = ChapterEntry.from_payload(raw)
                chapters.append({**raw, "videoPath": entry.strict_video_path()})
            return chapters

        key = ResponseCache.key("chapters", book_id, self.lang)
        return await self._cached(key, self.settings.ttl_chapters, load)

    async def get_stream_url(self, book_id: str, episode: int) -> Dict[str, Any]:
        book_id = sanitize(str(book_id)) if book_id is not None else None
        episode = sanitize(str(episode)) if episode is not None else None
        require(book_id=book_id, episode=episode)

        async def load():
            ctx = RetryContext()
            retrying = self.context.retry_policy.retrying(ctx, "Stream")
            try:
                async for attempt in retrying:
                    with attempt:
                        payload = await send_json(
                            self.context.http,
                            "GET",
                            self.settings.stream_url,
                            headers={**STREAM_HEADERS, "Referer": f"{self.settings.stream_url}?bookId={book_id}"},
                            params={"ajax": 1, "bookId": book_id, "lang": self.lang, "episode": episode},
                            timeout=self.settings.request_timeout,
                        )
                        stream = StreamChapter.from_payload(payload)
                        if stream is None:
                            raise NotFound("Episode not found or locked")
            except DramaboxError as exc:
                raise exc.annotate("Stream URL")
            return stream.to_dict(book_id)

        key = ResponseCache.key("stream", book_id, episode, self.lang)
        return await self._cached(key, self.settings.ttl_chapters, load)

    async def batch_list_all_chapters(self, book_id: str) -> BestEffort:
        book_id = sanitize(book_id)
        require(book_id=book_id)
        pager = ChapterPager(self.client, self.context.tokens, self.settings, self.lang, sleep=self.context.sleep)
        return await pager.run(book_id)

    # Utilities

    def clear_cache(self) -> None:
        self.context.clear_cache()

    def get_cache_stats(self) -> Dict[str, int]:
        return self.cache.stats()

    async def get_debug_headers(self) -> Dict[str, Any]:
        return await self.client.debug_headers(self.lang)
