import logging

from django.utils.text import slugify

from .media import ImageResolution, ImageRole, MediaResolutionPipeline
from .models import MovieType

logger = logging.getLogger(__name__)


class PayloadNormalizer:
	"""Maps a raw Ophim payload onto the Movie attribute set."""

	def __init__(self, media: MediaResolutionPipeline):
		self.media = media

	def normalize(self, payload: dict, force_update: bool = False) -> dict:
		info = payload.get("movie") or {}
		episodes = payload.get("episodes") or []
		slug = self._text(info.get("slug")) or slugify(self._text(info.get("name"))) or self._text(info.get("_id"))

		# poster falls back on the thumbnail, so the thumbnail goes first
		thumb = self.media.resolve(
			slug, self._text(info.get("thumb_url")), ImageRole.THUMB, force_update=force_update)
		self._report(slug, ImageRole.THUMB, thumb)
		poster_url = self._text(info.get("poster_url"))
		if not poster_url and thumb.cached:
			logger.info(f"No poster for {slug}, using thumbnail: {thumb.url}")
			poster = ImageResolution(url=thumb.url, cached=True, source="sibling")
		else:
			poster = self.media.resolve(
				slug, poster_url, ImageRole.POSTER, sibling=thumb, force_update=force_update)
			self._report(slug, ImageRole.POSTER, poster)

		return {
			"name": self._text(info.get("name")),
			"origin_name": self._text(info.get("origin_name")),
			"slug": slug,
			"publish_year": self._safe_int(info.get("year")),
			"content": self._text(info.get("content")),
			"type": self.movie_type(info, episodes),
			"status": self._text(info.get("status")),
			"thumb_url": thumb.url,
			"poster_url": poster.url,
			"is_copyright": bool(info.get("is_copyright")),
			"trailer_url": self._text(info.get("trailer_url")),
			"quality": self._text(info.get("quality")),
			"language": self._text(info.get("lang")),
			"episode_time": self._text(info.get("time")),
			"episode_current": self._text(info.get("episode_current")),
			"episode_total": self._text(info.get("episode_total")),
			"notify": self._text(info.get("notify")),
			"showtimes": self._text(info.get("showtimes")),
			"is_shown_in_theater": bool(info.get("chieurap")),
		}

	@staticmethod
	def movie_type(info: dict, episodes: list) -> str:
		declared = info.get("type")
		if declared in (MovieType.SERIES, MovieType.SINGLE):
			return str(declared)
		first_server = episodes[0] if episodes and isinstance(episodes[0], dict) else {}
		server_data = first_server.get("server_data") or []
		return MovieType.SERIES.value if len(server_data) > 1 else MovieType.SINGLE.value

	@staticmethod
	def _report(slug: str, role: ImageRole, resolution: ImageResolution):
		if not resolution.degraded:
			return
		if resolution.source == "sibling":
			logger.info(f"Using thumbnail as {role.value} for {slug}: {resolution.url}")
		logger.error(f"Could not cache {role.value} for {slug} ({resolution.degraded_reason}), keeping {resolution.url}")

	@staticmethod
	def _text(value) -> str:
		return "" if value is None else str(value).strip()

	@staticmethod
	def _safe_int(value):
		if value in (None, ""):
			return None
		try:
			return int(str(value).strip())
		except (TypeError, ValueError):
			return None
