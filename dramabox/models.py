"""
Typed views over upstream JSON.

The upstream omits fields freely, so every parser below tolerates missing or
null keys and falls back to the documented default instead of raising.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

UNAVAILABLE = "N/A"


def _dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def _flag(value: Any) -> bool:
    return value in (1, True, "1")


def data_of(payload: Any) -> Dict[str, Any]:
    """The ``data`` object of an upstream envelope, ``{}`` when absent."""
    return _dict(_dict(payload).get("data"))


@dataclass(frozen=True)
class BootstrapResponse:
    token: Optional[str]
    user_id: Optional[str]
    attribution_param: Any = None

    @classmethod
    def from_payload(cls, payload: Any) -> "BootstrapResponse":
        data = data_of(payload)
        user = _dict(data.get("user"))
        uid = user.get("uid")
        return cls(
            token=user.get("token") or None,
            user_id=str(uid) if uid not in (None, "") else None,
            attribution_param=data.get("attributionPubParam"),
        )


@dataclass(frozen=True)
class VideoPath:
    quality: Optional[int]
    path: Optional[str]
    is_default: bool = False

    @classmethod
    def from_payload(cls, raw: Any) -> "VideoPath":
        raw = _dict(raw)
        return cls(
            quality=raw.get("quality"),
            path=raw.get("videoPath"),
            is_default=_flag(raw.get("isDefault")),
        )


@dataclass(frozen=True)
class CdnEntry:
    is_default: bool
    video_paths: List[VideoPath] = field(default_factory=list)

    @classmethod
    def from_payload(cls, raw: Any) -> "CdnEntry":
        raw = _dict(raw)
        return cls(
            is_default=_flag(raw.get("isDefault")),
            video_paths=[VideoPath.from_payload(v) for v in _list(raw.get("videoPathList"))],
        )


@dataclass(frozen=True)
class ChapterEntry:
    chapter_id: Any
    chapter_index: int
    chapter_name: Optional[str]
    cdn_list: List[CdnEntry] = field(default_factory=list)

    @classmethod
    def from_payload(cls, raw: Any) -> "ChapterEntry":
        raw = _dict(raw)
        return cls(
            chapter_id=raw.get("chapterId"),
            chapter_index=raw.get("chapterIndex") or 0,
            chapter_name=raw.get("chapterName"),
            cdn_list=[CdnEntry.from_payload(c) for c in _list(raw.get("cdnList"))],
        )

    def default_cdn(self) -> Optional[CdnEntry]:
        return next((c for c in self.cdn_list if c.is_default), None)

    def strict_video_path(self) -> str:
        """Path flagged default inside the default cdn, else ``N/A``."""
        cdn = self.default_cdn()
        if cdn is None:
            return UNAVAILABLE
        chosen = next((v for v in cdn.video_paths if v.is_default), None)
        return (chosen and chosen.path) or UNAVAILABLE

    def preferred_video_path(self) -> str:
        """Default cdn (else first), then default path → 1080p → 720p → first."""
        cdn = self.default_cdn() or (self.cdn_list[0] if self.cdn_list else None)
        if cdn is None or not cdn.video_paths:
            return UNAVAILABLE
        paths = cdn.video_paths
        chosen = (
            next((v for v in paths if v.is_default), None)
            or next((v for v in paths if v.quality == 1080), None)
            or next((v for v in paths if v.quality == 720), None)
            or paths[0]
        )
        return chosen.path or UNAVAILABLE


@dataclass(frozen=True)
class ChapterRecord:
    chapter_id: Any
    chapter_index: int
    chapter_name: Optional[str]
    video_path: str

    @classmethod
    def from_entry(cls, entry: ChapterEntry) -> "ChapterRecord":
        return cls(
            chapter_id=entry.chapter_id,
            chapter_index=entry.chapter_index,
            chapter_name=entry.chapter_name,
            video_path=entry.preferred_video_path(),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chapterId": self.chapter_id,
            "chapterIndex": self.chapter_index,
            "chapterName": self.chapter_name,
            "videoPath": self.video_path,
        }


@dataclass(frozen=True)
class ChapterWindow:
    """One ``chapterv2/batch/load`` page."""

    chapter_count: int
    pay_chapter_num: int
    book_name: Optional[str]
    chapters: List[ChapterEntry]
    raw_chapters: List[Dict[str, Any]]

    @classmethod
    def from_payload(cls, payload: Any) -> "ChapterWindow":
        data = data_of(payload)
        raw_chapters = [c for c in _list(data.get("chapterList")) if isinstance(c, dict)]
        return cls(
            chapter_count=data.get("chapterCount") or 0,
            pay_chapter_num=data.get("payChapterNum") or 0,
            book_name=data.get("bookName"),
            chapters=[ChapterEntry.from_payload(c) for c in raw_chapters],
            raw_chapters=raw_chapters,
        )

    def __len__(self) -> int:
        return len(self.chapters)


@dataclass
class BestEffort:
    """Result of an operation that suppresses its internal failures."""

    items: List[Any] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def flatten_tag_cards(records: Any) -> List[Dict[str, Any]]:
    """Expand tag cards (``cardType == 3``) into their books and drop repeated ids."""
    books: List[Dict[str, Any]] = []
    for item in _list(records):
        item = _dict(item)
        tag_books = _list(_dict(item.get("tagCardVo")).get("tagBooks"))
        if item.get("cardType") == 3 and tag_books:
            books.extend(_dict(b) for b in tag_books)
        else:
            books.append(item)

    seen = set()
    unique = []
    for book in books:
        if book.get("bookId") in seen:
            continue
        seen.add(book.get("bookId"))
        unique.append(book)
    return unique


def summarize_book(book: Dict[str, Any]) -> Dict[str, Any]:
    corner = _dict(book.get("corner"))
    return {
        "id": book.get("bookId"),
        "name": book.get("bookName"),
        "cover": book.get("coverWap"),
        "chapterCount": book.get("chapterCount"),
        "introduction": book.get("introduction"),
        "tags": book.get("tagV3s"),
        "playCount": book.get("playCount"),
        "cornerName": corner.get("name"),
        "cornerColor": corner.get("color"),
    }


def summarize_search_hit(book: Dict[str, Any]) -> Dict[str, Any]:
    book = _dict(book)
    return {
        "id": book.get("bookId"),
        "name": book.get("bookName"),
        "cover": book.get("cover"),
        "introduction": book.get("introduction"),
        "tags": book.get("tagNames"),
        "playCount": book.get("playCount"),
    }


@dataclass(frozen=True)
class StreamChapter:
    """Episode payload of the unauthenticated stream endpoint."""

    total_episodes: Any
    chapter: Dict[str, Any]

    @classmethod
    def from_payload(cls, payload: Any) -> Optional["StreamChapter"]:
        payload = _dict(payload)
        chapter = _dict(payload.get("chapter"))
        if not chapter:
            return None
        return cls(total_episodes=payload.get("totalEpisodes"), chapter=chapter)

    def to_dict(self, book_id: str) -> Dict[str, Any]:
        ch = self.chapter
        return {
            "bookId": str(book_id),
            "allEps": self.total_episodes,
            "chapter": {
                "id": ch.get("id"),
                "index": ch.get("index"),
                "indexCode": ch.get("indexStr"),
                "duration": ch.get("duration"),
                "cover": ch.get("cover"),
                "video": {
                    "mp4": ch.get("mp4"),
                    "m3u8": ch.get("m3u8Url"),
                },
            },
        }
