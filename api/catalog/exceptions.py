class CrawlerError(Exception):
    """Base class for errors that stop a single crawl."""


class TransportError(CrawlerError):
    def __init__(self, url, status=None, reason=""):
        self.url = url
        self.status = status
        detail = f"HTTP {status}" if status is not None else (reason or "network failure")
        super().__init__(f"Cannot load payload ({detail}): {url}")


class MalformedPayloadError(CrawlerError):
    pass


class ExclusionRejection(CrawlerError):
    """The payload belongs to an excluded type, category or region.

    This is a normal outcome of a crawl, not a system failure.
    """

    def __init__(self, kind, values):
        self.kind = kind
        self.values = tuple(values)
        super().__init__(f"Excluded {kind}: {', '.join(self.values)}")
