"""
Shared fixtures: in-memory images, fake HTTP collaborators and Ophim payloads.
"""

import copy
import json
from io import BytesIO

import pytest
from django.core.files.storage import FileSystemStorage
from PIL import Image

from api.catalog.config import CrawlerOptions
from api.catalog.media import FetchResult, ImageRole, MediaResolutionPipeline
from api.catalog.reconciliation import ReconciliationEngine


def make_image(size=(40, 20), fmt="PNG", color=(200, 10, 10)):
    buf = BytesIO()
    Image.new("RGB", size, color).save(buf, fmt)
    return buf.getvalue()


def image_response(url, body=None, content_type="image/png"):
    return FetchResult(url=url, status=200, content_type=content_type, body=body or make_image())


class FakeFetcher:
    """Answers from a url -> FetchResult map, 404 for anything else."""

    def __init__(self, responses=None):
        self.responses = dict(responses or {})
        self.calls = []

    def fetch(self, url):
        self.calls.append(url)
        return self.responses.get(url, FetchResult(url=url, status=404))


class FakeResolver:
    """Alternate providers as a list of (name, {role: url})."""

    def __init__(self, alternates=None):
        self.alternates = list(alternates or [])
        self.calls = []

    def candidates(self, slug, role):
        role = ImageRole(role)
        for name, urls in self.alternates:
            self.calls.append((name, slug, role.value))
            if urls.get(role.value):
                yield name, urls[role.value]


@pytest.fixture
def storage(tmp_path):
    return FileSystemStorage(location=str(tmp_path / "media"), base_url="/storage/")


@pytest.fixture
def options():
    return CrawlerOptions(download_image=True)


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def resolver():
    return FakeResolver()


@pytest.fixture
def media(options, storage, fetcher, resolver):
    return MediaResolutionPipeline(options, storage=storage, fetcher=fetcher, resolver=resolver)


@pytest.fixture
def engine(storage):
    # image downloads off: artwork URLs pass through untouched
    options = CrawlerOptions(download_image=False)
    media = MediaResolutionPipeline(options, storage=storage, fetcher=FakeFetcher(), resolver=FakeResolver())
    return ReconciliationEngine(options, media=media)


BASE_PAYLOAD = {
    "status": True,
    "movie": {
        "_id": "64a1f0c2e9b1",
        "name": "Người Nhện: Không Còn Nhà",
        "origin_name": "Spider-Man: No Way Home",
        "slug": "nguoi-nhen-khong-con-nha",
        "content": "Peter Parker's identity is revealed.",
        "type": "single",
        "status": "completed",
        "thumb_url": "https://img.ophim.live/uploads/movies/nguoi-nhen-thumb.jpg",
        "poster_url": "https://img.ophim.live/uploads/movies/nguoi-nhen-poster.jpg",
        "is_copyright": False,
        "trailer_url": "https://www.youtube.com/watch?v=JfVOs4VSpmA",
        "time": "148 phút",
        "episode_current": "Full",
        "episode_total": "1",
        "quality": "HD",
        "lang": "Vietsub",
        "notify": "",
        "showtimes": "",
        "year": 2021,
        "chieurap": True,
        "actor": ["Tom Holland", "Zendaya"],
        "director": ["Jon Watts"],
        "category": [{"id": "1", "name": "Hành Động", "slug": "hanh-dong"}],
        "country": [{"id": "9", "name": "Âu Mỹ", "slug": "au-my"}],
        "created": {"time": "2022-01-10T08:30:00.000Z"},
        "modified": {"time": "2022-03-01T12:00:00.000Z"},
    },
    "episodes": [
        {
            "server_name": "Vietsub #1",
            "server_data": [
                {
                    "name": "Full",
                    "slug": "full",
                    "link_embed": "https://player.ophim.live/share/abc",
                    "link_m3u8": "https://stream.ophim.live/abc/index.m3u8",
                },
            ],
        },
    ],
}


@pytest.fixture
def payload():
    return copy.deepcopy(BASE_PAYLOAD)


def body_of(payload):
    return json.dumps(payload, ensure_ascii=False)
