import logging
from typing import ClassVar
from urllib.parse import quote, urlsplit, urlunsplit

import scrapy

from api.catalog.exceptions import TransportError

logger = logging.getLogger(__name__)


def encode_url(url):
    """Percent-encode the non-ASCII path segments of a URL, leaving the rest as is."""
    parts = urlsplit(url)
    if not parts.path:
        return url
    segments = [
        quote(segment, safe="") if any(ord(ch) > 0x7F for ch in segment) else segment
        for segment in parts.path.split("/")
    ]
    return urlunsplit(parts._replace(path="/".join(segments)))


class OphimSpider(scrapy.Spider):
    """
    Fetches Ophim movie detail payloads for the given slugs or links and
    hands the raw body to the catalog pipeline. Listing/discovery is left
    to whoever calls the spider.
    """

    name = "ophim"
    allowed_domains: ClassVar[tuple[str, ...]] = ("ophim1.com", "ophim.cc")

    custom_settings = {
        "ITEM_PIPELINES": {
            "scraper.pipelines.CatalogPipeline": 300,
        },
        "DEFAULT_REQUEST_HEADERS": {
            "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/111.0.0.0 Safari/537.36",
            "Accept": "application/json, text/plain, */*",
        },
        "LOG_LEVEL": "INFO",
    }

    def __init__(self, slugs="", links="", force_update=False, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.slugs = self._split(slugs)
        self.links = self._split(links)
        self.force_update = str(force_update).lower() in ("1", "true", "yes")

    def start_requests(self):
        template = self.settings.get("OPHIM_API_URL", "https://ophim1.com/phim/{slug}")
        links = self.links + [template.format(slug=slug) for slug in self.slugs]
        if not links:
            logger.warning("No slugs or links given, nothing to crawl")

        for link in links:
            yield scrapy.Request(
                encode_url(link),
                callback=self.parse,
                errback=self.on_error,
                dont_filter=True,
                meta={"handle_httpstatus_all": True, "link": link},
            )

    def parse(self, response, **kwargs):
        link = response.meta.get("link", response.url)
        if response.status != 200:
            raise TransportError(link, status=response.status)

        yield {
            "link": link,
            "body": response.text,
            "force_update": self.force_update,
        }

    def on_error(self, failure):
        link = failure.request.meta.get("link", failure.request.url)
        logger.error(f"Cannot load payload {link}: {failure.getErrorMessage()}")

    @staticmethod
    def _split(value):
        if isinstance(value, (list, tuple)):
            return [str(v).strip() for v in value if str(v).strip()]
        return [v.strip() for v in str(value or "").split(",") if v.strip()]
