from __future__ import annotations

import asyncio

from models import (
    Candidate,
    CandidatesRequested,
    ContextClosed,
    NavigationChanged,
    ObservedResponse,
    RankedCandidates,
    RawCandidate,
    message_from_dict,
)
from pipeline import DetectionPipeline

MASTER_URL = "https://cdn.example.com/video/master.m3u8"


def test_dom_then_network_observation_fuse_into_one_entry(clock) -> None:
    pipe = DetectionPipeline(clock=clock)
    url = "https://cdn.example.com/v.mp4"

    pipe.registry.merge(1, Candidate(url=url, source="dom", size=200_000))
    pipe.dispatch(ObservedResponse(1, url, "video/mp4", 8_000_000))
    ranked = pipe.dispatch(CandidatesRequested(1))

    assert isinstance(ranked, RankedCandidates)
    assert len(ranked.items) == 1
    only = ranked.items[0]
    assert (only.url, only.size, only.source, only.content_type) == (url, 8_000_000, "dom", "video/mp4")
    assert only.score == 10 + 50 + 20 + 10


def test_wire_messages_round_trip(clock) -> None:
    pipe = DetectionPipeline(clock=clock)

    pipe.dispatch_dict({"type": "ADD_VIDEO", "tabId": "3", "url": "https://cdn.x/clip", "source": "instagram",
                        "title": "Clip", "playlist": False})
    pipe.dispatch_dict({"type": "web_request", "tabId": 3, "url": "https://cdn.x/other.mp4",
                        "contentType": "video/mp4", "size": "900000"})
    ranked = pipe.dispatch_dict({"type": "GET_VIDEOS", "tabId": 3})

    payload = ranked.to_dict()
    assert payload["context_id"] == 3
    assert [v["url"] for v in payload["videos"]] == ["https://cdn.x/clip", "https://cdn.x/other.mp4"]
    assert payload["videos"][0]["title"] == "Clip"
    assert payload["videos"][1]["size"] == 900_000


def test_navigation_and_close(clock) -> None:
    pipe = DetectionPipeline(clock=clock)
    pipe.dispatch(RawCandidate(1, "https://cdn.x/v.mp4", "dom"))
    pipe.dispatch(RawCandidate(2, "https://cdn.x/v.mp4", "dom"))

    pipe.dispatch(NavigationChanged(1))
    assert pipe.dispatch(CandidatesRequested(1)).items == []
    assert pipe.registry.has_context(1)

    pipe.dispatch_dict({"type": "tab_removed", "tabId": 1})
    assert not pipe.registry.has_context(1)
    assert len(pipe.dispatch(CandidatesRequested(2)).items) == 1


def test_untrusted_messages_never_raise(clock) -> None:
    pipe = DetectionPipeline(clock=clock)
    log = []

    assert pipe.dispatch_dict("not a dict", log) is None
    assert pipe.dispatch_dict({"type": "ADD_VIDEO", "tabId": 1}, log) is None
    assert pipe.dispatch_dict({"type": "SELF_DESTRUCT"}, log) is None
    assert pipe.dispatch(object(), log) is None
    assert pipe.dispatch(RawCandidate(None, "https://cdn.x/v.mp4", "dom")) is None
    assert pipe.dispatch(ObservedResponse(1, None)) is None
    assert pipe.registry.contexts() == []
    assert len(log) == 4


def test_manifest_observation_expands_in_background(clock, make_http, master_m3u8) -> None:
    http = make_http({MASTER_URL: master_m3u8})
    pipe = DetectionPipeline(http=http, clock=clock)

    async def scenario():
        pipe.dispatch(ObservedResponse(8, MASTER_URL, "application/vnd.apple.mpegurl"))
        await pipe.drain()
        return pipe.dispatch(CandidatesRequested(8))

    ranked = asyncio.run(scenario())

    assert [v.quality for v in ranked.items] == ["1080p", "720p", "480p", None]
    assert ranked.items[-1].url == MASTER_URL
    assert all(v.is_playlist and v.source == "hls" for v in ranked.items)


def test_manifest_fetch_failure_keeps_master(clock, make_http) -> None:
    pipe = DetectionPipeline(http=make_http({MASTER_URL: OSError("offline")}), clock=clock)

    async def scenario():
        pipe.dispatch(ObservedResponse(8, MASTER_URL))
        await pipe.drain()

    asyncio.run(scenario())
    assert [v.url for v in pipe.query(8).items] == [MASTER_URL]


def test_scan_html_runs_every_page_sniffer(clock) -> None:
    pipe = DetectionPipeline(clock=clock)
    html = """<html><head><title>Watch - YouTube</title>
      <meta property="og:video:url" content="https://cdn.x/og.mp4"></head>
      <body><video src="/v/main.mp4"></video></body></html>"""

    added = pipe.scan_html(4, html, "https://www.youtube.com/watch?v=xyz")

    assert added == 3
    sources = {v.source for v in pipe.query(4).items}
    assert sources == {"youtube", "og:video", "dom"}


def test_page_sniffer_per_context(clock) -> None:
    pipe = DetectionPipeline(clock=clock)
    page = pipe.page(5, "https://site.com/a", "A")
    page.dispatch(RawCandidate(None, "https://cdn.x/v.mp4", "api"))
    assert pipe.page(5, "https://site.com/a") is page
    assert pipe.registry.size(5) == 1

    pipe.page(5, "https://site.com/b")
    assert pipe.registry.size(5) == 0

    pipe.dispatch(ContextClosed(5))
    assert pipe.page(5, "https://site.com/c") is not page


def test_message_from_dict_aliases() -> None:
    assert message_from_dict({"type": "get_candidates", "context_id": "x", "limit": "2"}) == CandidatesRequested("x", 2)
    assert message_from_dict({"type": "CLEAR_VIDEOS", "tabId": 9}) == NavigationChanged(9)
    assert message_from_dict({"type": "observed_response", "tabId": 1}) is None
    assert message_from_dict(["ADD_VIDEO"]) is None


def test_navigation_drops_in_flight_manifest_variants(clock, make_http, master_m3u8) -> None:
    pipe = DetectionPipeline(http=make_http({MASTER_URL: master_m3u8}, delay=0.01), clock=clock)

    async def scenario():
        pipe.dispatch(ObservedResponse(8, MASTER_URL, "application/vnd.apple.mpegurl"))
        pipe.page(8, "https://site.com/a")
        pipe.page(8, "https://site.com/b")
        await pipe.drain()
        return pipe.dispatch(CandidatesRequested(8))

    assert asyncio.run(scenario()).items == []
    assert pipe.registry.has_context(8)


def test_watched_navigation_resets_every_detector(clock) -> None:
    pipe = DetectionPipeline(clock=clock)
    html = '<html><body><video src="https://cdn.x/v.mp4"></video></body></html>'
    location = ["https://site.com/a"]

    assert pipe.scan_html(4, html, location[0]) == 1
    watcher = pipe.watch(4, location[0], lambda: location[0])
    assert pipe.scan_html(4, html, location[0]) == 0

    location[0] = "https://site.com/b"
    assert watcher.poll_once()
    assert pipe.registry.size(4) == 0

    assert pipe.scan_html(4, html, location[0]) == 1
    assert [v.url for v in pipe.query(4).items] == ["https://cdn.x/v.mp4"]


def test_raw_manifest_candidate_is_expanded(clock, make_http, master_m3u8) -> None:
    http = make_http({MASTER_URL: master_m3u8})
    pipe = DetectionPipeline(http=http, clock=clock)

    async def scenario():
        pipe.dispatch_dict({"type": "ADD_VIDEO", "tabId": 8, "url": MASTER_URL, "source": "hls", "playlist": True})
        await pipe.drain()
        return pipe.query(8)

    ranked = asyncio.run(scenario())

    assert [v.quality for v in ranked.items] == ["1080p", "720p", "480p", None]
    assert [call[0] for call in http.calls] == [MASTER_URL]


def test_dom_elements_upgrade_to_playing(clock) -> None:
    pipe = DetectionPipeline(clock=clock)
    url = "https://cdn.x/v.mp4"

    assert pipe.dom_elements(2, [{"url": url, "visible": True, "playing": False}, {"nourl": 1}, "junk"]) == 1
    assert pipe.query(2).items[0].source == "dom"

    assert pipe.dom_elements(2, [{"url": url, "visible": True, "playing": True}]) == 1
    assert pipe.dom_elements(2, [{"url": url, "visible": True, "playing": True}]) == 0
    assert pipe.query(2).items[0].source == "dom-playing"
