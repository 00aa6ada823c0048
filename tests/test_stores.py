from __future__ import annotations

import itertools
import threading

from config import DetectionConfig
from models import Candidate
from stores import ContextRegistry


def _registry(clock, **overrides) -> ContextRegistry:
    return ContextRegistry(DetectionConfig(**overrides), clock=clock)


def test_merge_inserts_once_per_normalized_url(clock) -> None:
    reg = _registry(clock)

    assert reg.merge(1, Candidate(url="https://cdn.x/v.mp4?bytestart=0&byteend=10", source="webRequest"))
    assert not reg.merge(1, Candidate(url="https://cdn.x/v.mp4?bytestart=11&byteend=20", source="webRequest"))

    assert reg.urls(1) == ["https://cdn.x/v.mp4"]
    assert reg.get(1, "https://cdn.x/v.mp4").first_seen_at == clock.now


def test_merge_ignores_missing_ids_and_junk_urls(clock) -> None:
    reg = _registry(clock)

    assert not reg.merge(None, Candidate(url="https://cdn.x/v.mp4"))
    assert not reg.merge("", Candidate(url="https://cdn.x/v.mp4"))
    assert not reg.merge(1, Candidate(url=""))
    assert not reg.merge(1, Candidate(url="blob:https://site.com/1234"))
    assert not reg.merge(1, Candidate(url="data:video/mp4;base64,AAAA"))
    assert reg.contexts() == []


def test_merge_never_downgrades_source(clock) -> None:
    reg = _registry(clock)
    url = "https://cdn.x/v.mp4"

    reg.merge(1, Candidate(url=url, source="dom"))
    reg.merge(1, Candidate(url=url, source="webRequest"))
    assert reg.get(1, url).source == "dom"

    reg.merge(1, Candidate(url=url, source="instagram"))
    assert reg.get(1, url).source == "instagram"


def test_merge_upgrades_fields_monotonically(clock) -> None:
    reg = _registry(clock)
    url = "https://cdn.x/v.mp4"

    reg.merge(1, Candidate(url=url, source="dom", quality="360p", content_type="text/plain", size=1_000))
    reg.merge(1, Candidate(url=url, source="dom", quality="720p", content_type="video/mp4", size=9_000_000,
                           title="First", is_playlist=True))
    reg.merge(1, Candidate(url=url, source="dom", quality="480p", content_type="application/octet-stream",
                           size=2_000, title="Second", is_playlist=False))

    got = reg.get(1, url)
    assert got.quality == "720p"
    assert got.content_type == "video/mp4"
    assert got.size == 9_000_000
    assert got.title == "First"
    assert got.is_playlist is True


def test_merge_is_commutative(clock) -> None:
    url = "https://cdn.x/v.mp4"
    candidates = [
        Candidate(url=url, source="dom", size=200_000, quality="480p"),
        Candidate(url=url, source="instagram", content_type="video/mp4", title="Clip"),
        Candidate(url=url + "?bytestart=0", source="webRequest", size=8_000_000, quality="720p", is_playlist=False),
        Candidate(url=url, source="twitter", content_type="video/quicktime"),
    ]

    results = []
    for order in itertools.permutations(candidates):
        reg = _registry(clock)
        for c in order:
            reg.merge(7, c)
        results.append(reg.get(7, url))

    assert all(r == results[0] for r in results)
    assert results[0].source == "twitter"
    assert results[0].size == 8_000_000
    assert results[0].quality == "720p"


def test_merge_is_idempotent(clock) -> None:
    reg = _registry(clock)
    c = Candidate(url="https://cdn.x/v.mp4", source="api", size=1_000_000, quality="720p", title="T")

    reg.merge(1, c)
    first = reg.get(1, c.url)
    reg.merge(1, c)
    assert reg.get(1, c.url) == first


def test_query_filters_scores_sorts_and_caps(clock) -> None:
    reg = _registry(clock)

    reg.merge(1, Candidate(url="https://cdn.x/seg-1.ts", source="webRequest", size=100))
    reg.merge(1, Candidate(url="https://cdn.x/low.mp4", source="webRequest", size=600_000))
    reg.merge(1, Candidate(url="https://scontent.x/o1/abc", source="instagram"))
    reg.merge(1, Candidate(url="https://cdn.x/page.mp4", source="dom"))

    views = reg.query(1)
    assert [v.url for v in views] == [
        "https://scontent.x/o1/abc",
        "https://cdn.x/page.mp4",
        "https://cdn.x/low.mp4",
    ]
    assert views[0].score > views[1].score > views[2].score
    # stored but not playable
    assert reg.size(1) == 4


def test_query_cap_default_and_explicit(clock) -> None:
    reg = _registry(clock)
    small = _registry(clock, max_results=3)
    for i in range(8):
        reg.merge(1, Candidate(url=f"https://cdn.x/{i}.mp4", source="dom"))
        small.merge(1, Candidate(url=f"https://cdn.x/{i}.mp4", source="dom"))

    assert len(reg.query(1)) == 5
    assert len(reg.query(1, limit=2)) == 2
    assert reg.query(1, limit=0) == []
    assert len(small.query(1)) == 3


def test_ties_prefer_most_recent(clock) -> None:
    reg = _registry(clock)
    reg.merge(1, Candidate(url="https://cdn.x/a.mp4", source="dom"))
    clock.advance(5)
    reg.merge(1, Candidate(url="https://cdn.x/b.mp4", source="dom"))

    assert [v.url for v in reg.query(1)] == ["https://cdn.x/b.mp4", "https://cdn.x/a.mp4"]


def test_ttl_expiry_deletes_entries_lazily(clock) -> None:
    reg = _registry(clock)
    reg.merge(1, Candidate(url="https://cdn.x/v.mp4", source="dom"))

    clock.advance(600)
    assert len(reg.query(1)) == 1

    clock.advance(1)
    assert reg.size(1) == 1  # nothing happens until the next query
    assert reg.query(1) == []
    assert reg.size(1) == 0


def test_later_merge_does_not_refresh_ttl(clock) -> None:
    reg = _registry(clock, entry_ttl_seconds=10)
    url = "https://cdn.x/v.mp4"
    reg.merge(1, Candidate(url=url, source="dom"))
    clock.advance(8)
    reg.merge(1, Candidate(url=url, source="instagram"))
    clock.advance(3)

    assert reg.query(1) == []


def test_context_isolation_clear_and_destroy(clock) -> None:
    reg = _registry(clock)
    reg.merge("a", Candidate(url="https://cdn.x/a.mp4", source="dom"))
    reg.merge("b", Candidate(url="https://cdn.x/b.mp4", source="dom"))

    assert [v.url for v in reg.query("b")] == ["https://cdn.x/b.mp4"]
    assert reg.query("unknown") == []

    reg.clear("a")
    reg.clear("a")
    assert reg.has_context("a") and reg.size("a") == 0

    reg.destroy("a")
    reg.destroy("a")
    assert not reg.has_context("a")
    assert [v.url for v in reg.query("b")] == ["https://cdn.x/b.mp4"]


def test_views_are_detached_snapshots(clock) -> None:
    reg = _registry(clock)
    reg.merge(1, Candidate(url="https://cdn.x/v.mp4", source="dom", title="T"))

    view = reg.query(1)[0]
    assert view.to_dict() == {
        "url": "https://cdn.x/v.mp4",
        "size": None,
        "score": view.score,
        "timestamp": clock.now,
        "quality": None,
        "source": "dom",
        "title": "T",
        "playlist": False,
    }
    reg.clear(1)
    assert view.url == "https://cdn.x/v.mp4"


def test_concurrent_merges_collapse_to_one_entry(clock) -> None:
    reg = _registry(clock)
    sources = ["dom", "webRequest", "instagram", "hls", "api"] * 40

    def worker(src: str) -> None:
        reg.merge(3, Candidate(url="https://cdn.x/v.mp4?bytestart=0", source=src, size=len(src)))

    threads = [threading.Thread(target=worker, args=(s,)) for s in sources]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert reg.size(3) == 1
    got = reg.get(3, "https://cdn.x/v.mp4")
    assert got.source == "instagram"
    assert got.size == len("webRequest")


def test_equal_quality_values_break_ties_by_label(clock) -> None:
    url = "https://cdn.x/v.mp4"
    finals = set()
    for order in (["720", "720p"], ["720p", "720"]):
        reg = _registry(clock)
        for q in order:
            reg.merge(1, Candidate(url=url, source="dom", quality=q))
        finals.add(reg.get(1, url).quality)

    assert finals == {"720p"}


def test_stale_generation_merge_is_dropped(clock) -> None:
    reg = _registry(clock)
    reg.merge(1, Candidate(url="https://cdn.x/a.mp4", source="dom"))
    before = reg.generation(1)

    reg.clear(1)
    assert reg.generation(1) == before + 1
    assert not reg.merge(1, Candidate(url="https://cdn.x/old.m3u8", source="hls"), generation=before)
    assert reg.merge(1, Candidate(url="https://cdn.x/new.m3u8", source="hls"), generation=reg.generation(1))
    assert reg.urls(1) == ["https://cdn.x/new.m3u8"]

    reg.destroy(1)
    assert not reg.merge(1, Candidate(url="https://cdn.x/x.mp4", source="dom"), generation=before + 1)
    assert not reg.has_context(1)
