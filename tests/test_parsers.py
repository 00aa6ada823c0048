from __future__ import annotations

import json

from config import DetectionConfig
from parsers import (
    GenericJSONParser,
    HLSPlaylistParser,
    InstagramParser,
    PageInfo,
    TwitterParser,
    VimeoParser,
    dig,
    loads_json,
    search_key,
    search_key_with_context,
)
from registry import SITE_PARSERS

PAGE = PageInfo(href="https://www.example.com/watch/1", title="Page Title")


def _instagram_body() -> str:
    return "for (;;);" + json.dumps({
        "data": {"items": [{
            "caption": {"text": "Sunset"},
            "video_versions": [
                {"width": 480, "url": "https://scontent.cdninstagram.com/v/a.mp4?bytestart=0&byteend=100"},
                {"width": 1080, "url": "https://scontent.cdninstagram.com/v/b.mp4?x=1&bytestart=0"},
            ],
        }]},
    })


def test_search_key_finds_nested_values_and_skips_falsy() -> None:
    data = {"a": {"url": "one"}, "b": [{"url": "two"}, {"url": ""}, [{"c": {"url": "three"}}]], "url": None}
    assert search_key(data, "url") == ["one", "two", "three"]


def test_search_key_is_depth_bounded() -> None:
    data = {"k": "deep"}
    for _ in range(200):
        data = {"n": data}

    assert search_key(data, "k") == []
    assert search_key(data, "k", max_depth=300) == ["deep"]


def test_search_key_with_context_pairs_caption() -> None:
    data = [{"caption": {"text": " Hello "}, "video_versions": [1]}, {"video_versions": [2]}]
    assert search_key_with_context(data, "video_versions") == [([1], "Hello"), ([2], None)]


def test_json_helpers_tolerate_garbage() -> None:
    assert loads_json("{nope") is None
    assert loads_json("") is None
    assert loads_json('for (;;);{"a": 1}', strip_xssi=True) == {"a": 1}
    assert dig({"a": [{"b": 2}]}, "a", 0, "b") == 2
    assert dig({"a": [{"b": 2}]}, "a", 5, "b") is None
    assert dig("scalar", "a") is None


def test_registration_order_puts_site_parsers_before_generic() -> None:
    assert SITE_PARSERS.names() == ["instagram", "twitter", "vimeo", "hls", "generic"]


def test_instagram_picks_widest_version_with_caption_title() -> None:
    p = InstagramParser()
    assert p.applies_to("www.instagram.com")
    assert not p.applies_to("example.com")

    found = p.on_load(_instagram_body(), "https://www.instagram.com/api/graphql", PAGE)

    assert len(found) == 1
    assert found[0].url == "https://scontent.cdninstagram.com/v/b.mp4?x=1"
    assert found[0].quality == "1080p"
    assert found[0].title == "Sunset"
    assert found[0].source == "instagram"


def test_instagram_ignores_unrelated_or_malformed_bodies() -> None:
    p = InstagramParser()
    assert p.on_load('{"items": []}', "https://i/api", PAGE) == []
    assert p.on_load("video_versions {broken", "https://i/api", PAGE) == []


def test_twitter_picks_best_mp4_bitrate() -> None:
    body = json.dumps({"data": {"media": [{"video_info": {"variants": [
        {"content_type": "application/x-mpegURL", "url": "https://video.twimg.com/pl/master.m3u8"},
        {"bitrate": 832000, "content_type": "video/mp4", "url": "https://video.twimg.com/vid/avc1/640x360/a.mp4"},
        {"bitrate": 2176000, "content_type": "video/mp4", "url": "https://video.twimg.com/vid/avc1/1280x720/b.mp4"},
    ]}}]}})
    p = TwitterParser()
    assert p.applies_to("x.com") and p.applies_to("mobile.twitter.com")

    found = p.on_load(body, "https://x.com/i/api/graphql/TweetDetail", PAGE)

    assert [c.url for c in found] == ["https://video.twimg.com/vid/avc1/1280x720/b.mp4"]
    assert found[0].quality == "720p"
    assert found[0].title == "Page Title"


def test_vimeo_progressive_files_by_width() -> None:
    body = json.dumps({"request": {"files": {"progressive": [
        {"width": 640, "url": "https://vod.vimeocdn.com/a.mp4"},
        {"width": 1920, "url": "https://vod.vimeocdn.com/b.mp4"},
    ]}}})
    p = VimeoParser()

    assert p.on_load(body, "https://player.vimeo.com/video/1/other", PAGE) == []
    found = p.on_load(body, "https://player.vimeo.com/video/1/config", PAGE)
    assert [(c.url, c.quality) for c in found] == [
        ("https://vod.vimeocdn.com/b.mp4", "1920p"),
        ("https://vod.vimeocdn.com/a.mp4", "640p"),
    ]


def test_vimeo_hls_cdns_fallback() -> None:
    body = json.dumps({
        "video": {"height": 720},
        "request": {"files": {"hls": {"cdns": {
            "akfire": {"url": "https://skyfire.vimeocdn.com/x/subtitles/en/master.m3u8"},
            "cme": {"url": "https://cme-media.vimeocdn.com/x/master.m3u8"},
        }}}},
    })
    found = VimeoParser().on_load(body, "https://player.vimeo.com/video/1/config?h=a", PAGE)

    assert len(found) == 1
    assert found[0].url == "https://skyfire.vimeocdn.com/x/master.m3u8"
    assert found[0].quality == "720p"
    assert found[0].is_playlist


def test_hls_parser_expands_intercepted_body_capped(master_m3u8) -> None:
    p = HLSPlaylistParser(DetectionConfig(max_manifest_variants=2))
    found = p.on_load(master_m3u8, "https://cdn.example.com/video/master.m3u8", PAGE)

    assert [c.quality for c in found] == ["1080p", "720p"]
    assert all(c.source == "hls" and c.is_playlist for c in found)
    assert p.on_load(master_m3u8, "https://cdn.example.com/video/master.txt", PAGE) == []


def test_generic_json_skips_segments_and_byte_ranges() -> None:
    body = json.dumps({"player": {
        "file": "https://cdn.x/movie.mp4",
        "src": "https://cdn.x/seg-1.mp4",
        "url": "https://cdn.x/page.html",
        "video_url": "https://cdn.x/a.mp4?bytestart=0",
        "stream_url": "https://cdn.x/live.m3u8?token=1",
    }})
    found = GenericJSONParser().on_load(body, "https://api.x/player", PAGE)

    assert [c.url for c in found] == ["https://cdn.x/movie.mp4", "https://cdn.x/live.m3u8?token=1"]
    assert all(c.source == "api" for c in found)
    assert GenericJSONParser().on_load("not json at all", "https://api.x", PAGE) == []


def test_registry_lookup() -> None:
    assert isinstance(SITE_PARSERS.create("HLS"), HLSPlaylistParser)
    try:
        SITE_PARSERS.get("myspace")
    except KeyError as e:
        assert "instagram" in str(e)
    else:
        raise AssertionError("unknown parser name should raise KeyError")
