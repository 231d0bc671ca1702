import logging
import posixpath
from dataclasses import dataclass
from enum import Enum
from io import BytesIO
from typing import Iterator, Optional, Tuple

import requests
from django.core.files.base import ContentFile
from django.core.files.storage import default_storage
from PIL import Image
from redis import exceptions as redis_exceptions

from .config import CrawlerOptions, ResizePolicy

logger = logging.getLogger(__name__)

# original URL plus one attempt per alternate provider
MAX_CANDIDATES = 3
WEBP_QUALITY = 80


class ImageRole(str, Enum):
	THUMB = "thumb"
	POSTER = "poster"

	@property
	def url_key(self) -> str:
		return f"{self.value}_url"


@dataclass(frozen=True)
class FetchResult:
	url: str
	status: int
	content_type: str = ""
	body: bytes = b""
	error: str = ""

	def failure_reason(self) -> Optional[str]:
		"""Why this response cannot be used as an image, None when it looks fine.

		Some providers answer with an XML error envelope and a 200 status,
		so the body is inspected as well as the status line.
		"""
		if self.status != 200:
			return self.error or f"HTTP {self.status}"
		if "xml" in (self.content_type or "").lower():
			return f"XML content type ({self.content_type})"
		if self.body.startswith(b"<?xml") or b"<Error>" in self.body:
			return "XML error document"
		return None


@dataclass(frozen=True)
class ImageResolution:
	url: str
	cached: bool = False
	source: str = ""
	degraded_reason: Optional[str] = None

	@property
	def degraded(self) -> bool:
		return self.degraded_reason is not None


class ImageFetcher:
	"""Single GET for a binary resource. No retries, no fallback."""

	def __init__(self, options: CrawlerOptions, session: Optional[requests.Session] = None):
		self.timeout = options.image_timeout
		self.session = session or requests.Session()
		self.session.headers.update({"User-Agent": options.user_agent})

	def fetch(self, url: str) -> FetchResult:
		try:
			response = self.session.get(url, timeout=self.timeout, allow_redirects=True)
		except requests.RequestException as e:
			return FetchResult(url=url, status=0, error=f"{type(e).__name__}: {e}")

		return FetchResult(
			url=url,
			status=response.status_code,
			content_type=response.headers.get("Content-Type", ""),
			body=response.content or b"",
		)


@dataclass(frozen=True)
class AlternateProvider:
	name: str
	endpoint: str
	success_status: object

	def is_success(self, data: dict) -> bool:
		status = data.get("status")
		if isinstance(self.success_status, bool):
			return status is self.success_status
		return status == self.success_status


ALTERNATE_PROVIDERS = (
	AlternateProvider("phimapi", "https://phimapi.com/phim/{slug}", True),
	AlternateProvider("nguonc", "https://phim.nguonc.com/api/film/{slug}", "success"),
)


class AlternateSourceResolver:
	"""
	Looks up replacement artwork URLs for a slug on secondary metadata APIs.
	Providers are queried lazily, in order, and only when the caller asks for
	the next candidate. Every lookup is best-effort.
	"""

	def __init__(self, options: CrawlerOptions, session=None, cache=None, providers=ALTERNATE_PROVIDERS):
		self.timeout = options.alternate_timeout
		self.session = session or requests.Session()
		self.session.headers.update({"User-Agent": options.user_agent})
		self.cache = cache
		self.providers = tuple(providers)

	def candidates(self, slug: str, role) -> Iterator[Tuple[str, str]]:
		role = ImageRole(role)
		for provider in self.providers:
			url = self.lookup(provider, slug, role)
			if url:
				logger.info(f"Found alternate {role.value} for {slug} on {provider.name}: {url}")
				yield provider.name, url

	def lookup(self, provider: AlternateProvider, slug: str, role: ImageRole) -> Optional[str]:
		data = self._load(provider, slug)
		if not isinstance(data, dict) or not provider.is_success(data):
			return None
		movie = data.get("movie")
		if not isinstance(movie, dict):
			return None
		return movie.get(role.url_key) or None

	def _load(self, provider: AlternateProvider, slug: str):
		params = {"slug": slug}
		if self.cache is not None:
			try:
				cached = self.cache.get_cached_api_response(provider.name, params)
			except redis_exceptions.RedisError as e:
				logger.warning(f"Redis lookup failed for {provider.name}/{slug}: {e}")
				cached = None
			if cached is not None:
				return cached

		try:
			response = self.session.get(provider.endpoint.format(slug=slug), timeout=self.timeout)
			data = response.json()
		except (requests.RequestException, ValueError) as e:
			logger.error(f"Alternate lookup on {provider.name} failed for {slug}: {e}")
			return None

		if self.cache is not None and isinstance(data, dict):
			try:
				self.cache.cache_api_response(provider.name, params, data)
			except redis_exceptions.RedisError as e:
				logger.warning(f"Redis cache update failed for {provider.name}/{slug}: {e}")
		return data


class MediaResolutionPipeline:
	"""
	Turns a remote artwork URL into a locally cached one:
	1. Pass through when downloading is disabled or the URL is empty
	2. Short-circuit on an existing blob at the cache path
	3. Fetch, classify, and walk the alternate providers on failure
	4. Resize / re-encode and write the blob

	Never raises. Failures come back as an ImageResolution carrying a
	degraded_reason and the best URL available.
	"""

	def __init__(self, options: CrawlerOptions, storage=None, fetcher=None, resolver=None):
		self.options = options
		self.storage = storage or default_storage
		self.fetcher = fetcher or ImageFetcher(options)
		self.resolver = resolver or AlternateSourceResolver(options)

	def resolve(
			self,
			slug: str,
			source_url: str,
			role,
			resize: Optional[ResizePolicy] = None,
			sibling: Optional[ImageResolution] = None,
			force_update: bool = False) -> ImageResolution:
		role = ImageRole(role)
		if not source_url or not self.options.download_image:
			return ImageResolution(url=source_url or "", source="passthrough")

		if resize is None:
			resize = self.options.resize_for(role)

		try:
			return self._resolve_candidates(slug, source_url, role, resize, sibling, force_update)
		except Exception as e:
			return self._degrade(source_url, role, sibling, f"{type(e).__name__}: {e}")

	def cache_path(self, slug: str, url: str) -> str:
		filename = posixpath.basename(url.split("?", 1)[0])
		if not filename:
			raise ValueError(f"No filename in image URL: {url}")
		if self.options.convert_to_webp:
			filename = f"{posixpath.splitext(filename)[0]}.webp"
		return f"images/{slug}/{filename}"

	def _resolve_candidates(self, slug, source_url, role, resize, sibling, force_update) -> ImageResolution:
		tried = []
		reasons = []
		for source, url in self._candidate_urls(slug, source_url, role):
			if url in tried:
				continue
			tried.append(url)

			path = self.cache_path(slug, url)
			if not force_update and self.storage.exists(path):
				return ImageResolution(url=self.storage.url(path), cached=True, source="cache")

			result = self.fetcher.fetch(url)
			reason = result.failure_reason()
			if reason is None:
				name = self._store(path, result.body, resize)
				return ImageResolution(url=self.storage.url(name), cached=True, source=source)

			reasons.append(f"{source}: {reason}")
			if len(tried) >= MAX_CANDIDATES:
				break

		return self._degrade(source_url, role, sibling, "; ".join(reasons))

	def _candidate_urls(self, slug, source_url, role):
		yield "primary", source_url
		yield from self.resolver.candidates(slug, role)

	def _degrade(self, source_url, role, sibling, reason) -> ImageResolution:
		if role is ImageRole.POSTER and sibling is not None and sibling.cached:
			return ImageResolution(url=sibling.url, cached=True, source="sibling", degraded_reason=reason)
		return ImageResolution(url=source_url, source="original", degraded_reason=reason)

	def _store(self, path: str, body: bytes, resize: Optional[ResizePolicy]) -> str:
		content = self.render(body, resize)
		if self.storage.exists(path):
			self.storage.delete(path)
		return self.storage.save(path, ContentFile(content))

	def render(self, body: bytes, resize: Optional[ResizePolicy] = None) -> bytes:
		"""Decode, optionally shrink to fit the resize box and re-encode."""
		convert = self.options.convert_to_webp
		if resize is None and not convert:
			# decode check only, the original bytes are kept
			with Image.open(BytesIO(body)) as image:
				image.verify()
			return body

		with Image.open(BytesIO(body)) as image:
			image.load()
			fmt = "WEBP" if convert else (image.format or "PNG")
			if resize is not None:
				# fits inside the box, never upscales or crops
				image.thumbnail(
					(resize.width or image.width, resize.height or image.height),
					Image.Resampling.LANCZOS,
				)
			if fmt == "JPEG" and image.mode not in ("RGB", "L"):
				image = image.convert("RGB")

			out = BytesIO()
			if convert:
				image.save(out, fmt, quality=WEBP_QUALITY)
			else:
				image.save(out, fmt)
			return out.getvalue()
