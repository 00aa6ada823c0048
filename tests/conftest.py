import asyncio
import sys
from pathlib import Path

import pytest


# Ensure tests can import the flat modules regardless of how pytest is invoked.
ROOT = Path(__file__).resolve().parents[1]
ROOT_STR = str(ROOT)
if ROOT_STR not in sys.path:
    sys.path.insert(0, ROOT_STR)


MASTER_M3U8 = """#EXTM3U
#EXT-X-VERSION:3
#EXT-X-STREAM-INF:BANDWIDTH=800000,RESOLUTION=640x360
low/index.m3u8
#EXT-X-STREAM-INF:BANDWIDTH=5000000,RESOLUTION=1920x1080
https://cdn.example.com/hi/index.m3u8
#EXT-X-STREAM-INF:BANDWIDTH=2000000,RESOLUTION=1280x720
mid/index.m3u8
#EXT-X-STREAM-INF:BANDWIDTH=1200000,RESOLUTION=854x480
sd/index.m3u8
"""

MEDIA_M3U8 = """#EXTM3U
#EXT-X-TARGETDURATION:6
#EXTINF:6.0,
seg-0.ts
#EXTINF:6.0,
seg-1.ts
#EXT-X-ENDLIST
"""


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeHTTP:
    """Stands in for HTTPSSubmanager: url -> text, or an exception to raise."""

    def __init__(self, responses=None, delay: float = 0.0):
        self.responses = dict(responses or {})
        self.delay = delay
        self.calls = []

    async def get_text(self, url, headers=None):
        self.calls.append((url, headers))
        if self.delay:
            await asyncio.sleep(self.delay)
        resp = self.responses.get(url, "")
        if isinstance(resp, Exception):
            raise resp
        return resp


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def master_m3u8():
    return MASTER_M3U8


@pytest.fixture
def media_m3u8():
    return MEDIA_M3U8


@pytest.fixture
def make_http():
    return FakeHTTP
