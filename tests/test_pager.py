import pytest

from conftest import FakeSleep, run
from dramabox.config import Settings
from dramabox.errors import UpstreamStatusError
from dramabox.models import ChapterEntry
from dramabox.pager import BATCH_LOAD_ENDPOINT, ChapterPager


def chapter(n, path=None):
    return {
        "chapterId": f"c{n}",
        "chapterIndex": n,
        "chapterName": f"EP {n}",
        "cdnList": [{"isDefault": 1, "videoPathList": [{"quality": 720, "isDefault": 1, "videoPath": path or f"v{n}.mp4"}]}],
    }


def window(numbers, total, pay=0, name="Book"):
    return {
        "success": True,
        "data": {
            "chapterCount": total,
            "payChapterNum": pay,
            "bookName": name,
            "chapterList": [chapter(n) for n in numbers],
        },
    }


class FakeClient:
    """Serves batch windows keyed by start index, consumed in order per index."""

    def __init__(self, windows):
        self.windows = {k: list(v) if isinstance(v, list) else [v] for k, v in windows.items()}
        self.indices = []

    async def request(self, lang, endpoint, payload=None, **kwargs):
        assert endpoint == BATCH_LOAD_ENDPOINT
        index = payload["index"]
        self.indices.append(index)
        queue = self.windows[index]
        outcome = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakeTokens:
    def __init__(self):
        self.refreshed = []

    async def refresh(self, lang):
        self.refreshed.append(lang)


@pytest.fixture
def pager_for():
    def build(windows):
        client = FakeClient(windows)
        tokens = FakeTokens()
        sleep = FakeSleep()
        pager = ChapterPager(client, tokens, Settings(), "pt", sleep=sleep)
        return pager, client, tokens, sleep

    return build


def ids(result):
    return [r.chapter_id for r in result.items]


def test_walks_every_window_and_dedupes_overlap(pager_for):
    pager, client, tokens, sleep = pager_for(
        {
            1: window(range(1, 6), 12),
            6: window(range(6, 11), 12),
            11: window([10, 11, 12], 12),
        }
    )

    result = run(pager.run("41000102902"))

    assert ids(result) == [f"c{n}" for n in range(1, 13)]
    assert result.ok
    assert client.indices == [1, 6, 11]
    assert tokens.refreshed == []
    assert sleep.calls == [0.8, 0.8]
    assert result.items[0].video_path == "v1.mp4"


def test_window_payload_targets_book_and_index():
    payload = ChapterPager.window_payload("41000102902", 6)

    assert payload["bookId"] == "41000102902"
    assert payload["index"] == 6
    assert payload["loadDirection"] == 1
    assert payload["preLoad"] is False


def test_throttled_window_is_recovered_after_refresh(pager_for):
    pager, client, tokens, sleep = pager_for(
        {
            1: window(range(1, 6), 20),
            6: [window([6], 20), window(range(6, 11), 20)],
            11: window(range(11, 16), 20),
            16: window(range(16, 21), 20),
        }
    )

    result = run(pager.run("b"))

    assert len(result.items) == 20
    assert tokens.refreshed == ["pt"]
    assert client.indices == [1, 6, 6, 11, 16]
    assert sleep.calls == [2.0, 0.8, 0.8, 0.8]


def test_recovery_warms_paywall_window_first(pager_for):
    pager, client, tokens, sleep = pager_for(
        {
            1: window(range(1, 6), 20, pay=10),
            6: [window([], 20, pay=10), window(range(6, 11), 20, pay=10)],
            10: window([], 20, pay=10),
            11: window(range(11, 16), 20, pay=10),
            16: window(range(16, 21), 20, pay=10),
        }
    )

    result = run(pager.run("b"))

    assert client.indices == [1, 6, 10, 6, 11, 16]
    assert sleep.calls[:2] == [1.5, 2.0]
    assert len(result.items) == 20
    assert result.ok


def test_short_window_near_the_end_is_accepted(pager_for):
    pager, client, tokens, sleep = pager_for(
        {
            1: window(range(1, 6), 7),
            6: window([6, 7], 7),
        }
    )

    result = run(pager.run("b"))

    assert len(result.items) == 7
    assert tokens.refreshed == []


def test_starved_window_is_skipped_after_three_misses(pager_for):
    pager, client, tokens, sleep = pager_for(
        {
            1: window(range(1, 6), 15),
            6: window([], 15),
            11: window(range(11, 16), 15),
        }
    )

    result = run(pager.run("b"))

    assert ids(result) == [f"c{n}" for n in [1, 2, 3, 4, 5, 11, 12, 13, 14, 15]]
    assert client.indices == [1, 6, 6, 6, 6, 6, 6, 11]
    assert len(result.errors) == 3
    assert all(e.startswith("[window 6]") for e in result.errors)
    assert sleep.calls.count(4.0) == 2


def test_failed_recovery_is_reported_not_raised(pager_for):
    pager, client, tokens, sleep = pager_for({1: UpstreamStatusError(403, "Forbidden")})

    result = run(pager.run("b"))

    assert result.items == []
    assert result.errors == ["[window 1] Forbidden - access denied by the server"]
    assert client.indices == [1, 1]


def test_unexpected_failure_returns_empty_result(pager_for):
    pager, client, tokens, sleep = pager_for({1: RuntimeError("boom")})

    result = run(pager.run("b"))

    assert result.items == []
    assert result.errors == ["[batch listing] boom"]
    assert not result.ok


def test_finalize_keeps_last_duplicate_and_sorts():
    entries = [
        ChapterEntry.from_payload(chapter(3)),
        ChapterEntry.from_payload(chapter(1, path="old.mp4")),
        ChapterEntry.from_payload(chapter(2)),
        ChapterEntry.from_payload(chapter(1, path="new.mp4")),
    ]

    records = ChapterPager.finalize(entries)

    assert [r.chapter_index for r in records] == [1, 2, 3]
    assert records[0].video_path == "new.mp4"
    assert records[0].to_dict() == {
        "chapterId": "c1",
        "chapterIndex": 1,
        "chapterName": "EP 1",
        "videoPath": "new.mp4",
    }


def _entry(*cdns):
    return ChapterEntry.from_payload({"chapterId": "x", "chapterIndex": 1, "cdnList": list(cdns)})


def _cdn(paths, default=1):
    return {"isDefault": default, "videoPathList": paths}


@pytest.mark.parametrize(
    "paths, expected",
    [
        (
            [
                {"quality": 720, "videoPath": "720.mp4"},
                {"quality": 1080, "isDefault": 0, "videoPath": "1080.mp4"},
                {"quality": 480, "isDefault": 1, "videoPath": "480.mp4"},
            ],
            "480.mp4",
        ),
        ([{"quality": 720, "videoPath": "720.mp4"}, {"quality": 1080, "videoPath": "1080.mp4"}], "1080.mp4"),
        ([{"quality": 540, "videoPath": "540.mp4"}, {"quality": 720, "videoPath": "720.mp4"}], "720.mp4"),
        ([{"quality": 360, "videoPath": "360.mp4"}, {"quality": 540, "videoPath": "540.mp4"}], "360.mp4"),
        ([], "N/A"),
    ],
)
def test_preferred_video_path_order(paths, expected):
    assert _entry(_cdn(paths)).preferred_video_path() == expected


def test_preferred_video_path_prefers_default_cdn():
    entry = _entry(
        _cdn([{"quality": 1080, "videoPath": "backup.mp4"}], default=0),
        _cdn([{"quality": 720, "videoPath": "main.mp4"}], default=1),
    )

    assert entry.preferred_video_path() == "main.mp4"


def test_preferred_video_path_falls_back_to_first_cdn():
    entry = _entry(
        _cdn([{"quality": 720, "videoPath": "first.mp4"}], default=0),
        _cdn([{"quality": 1080, "videoPath": "second.mp4"}], default=0),
    )

    assert entry.preferred_video_path() == "first.mp4"
    assert entry.strict_video_path() == "N/A"


def test_chapter_without_cdn_has_no_path():
    assert _entry().preferred_video_path() == "N/A"
