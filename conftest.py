from datetime import datetime, timedelta, timezone

import httpx
import pytest

from library_app.config import Settings
from library_app.library import Library
from library_app.services.cover_storage import CoverStorage


class FakeClock:
    """Settable clock so due dates and overdue sweeps are deterministic."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeBucket:
    """In-memory object store answering HEAD/GET/POST like the cover bucket."""

    def __init__(self):
        self.objects = {}
        self.requests = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        if request.method == "POST":
            self.objects[url] = (request.content, request.headers.get("content-type", "image/jpeg"))
            return httpx.Response(200)
        if url not in self.objects:
            return httpx.Response(404)
        content, media_type = self.objects[url]
        if request.method == "HEAD":
            return httpx.Response(200, headers={"content-type": media_type})
        return httpx.Response(200, content=content, headers={"content-type": media_type})


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def bucket():
    return FakeBucket()


@pytest.fixture
def test_settings():
    return Settings(
        api_key="test-key", loan_period_days=14, overdue_sweep_interval=0, fine_daily_rate=0.5, log_level="WARNING"
    )


@pytest.fixture
def lib(tmp_path, clock, bucket, test_settings):
    # tmp_path is unique per test, parametrized ids included
    db_file = str(tmp_path / "library.db")
    covers = CoverStorage.from_settings(test_settings, transport=httpx.MockTransport(bucket.handler))
    lib = Library(db_file=db_file, settings=test_settings, clock=clock, covers=covers)
    yield lib
    lib.close()
