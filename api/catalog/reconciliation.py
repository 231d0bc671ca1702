import hashlib
import json
import logging
import re
import unicodedata
import uuid
from collections import defaultdict
from typing import Iterable, List, NamedTuple, Optional, Tuple

from django.db import DatabaseError, transaction
from django.utils import timezone
from django.utils.dateparse import parse_datetime
from django.utils.text import slugify

from .config import CrawlerOptions
from .exceptions import ExclusionRejection, MalformedPayloadError
from .media import MediaResolutionPipeline
from .models import Actor, Category, Director, Episode, EpisodeType, Movie, Region, Tag
from .normalizer import PayloadNormalizer

logger = logging.getLogger(__name__)


class EpisodeSlot(NamedTuple):
	server: str
	name: str
	type: str
	link: str

	@property
	def key(self) -> Tuple[str, str, str]:
		return self.server, self.name, self.type


class ReconciliationEngine:
	"""
	Checksum-gated upsert of one Ophim payload into the catalog:
	1. Reject excluded types, categories and regions
	2. Skip payloads whose checksum did not change (unless forced)
	3. Normalize (resolving artwork), then upsert the movie and re-sync
	   its associations and episodes in a single transaction
	"""

	# payload types that also file the movie under a fixed category
	TYPE_CATEGORIES = {
		"hoathinh": "Hoạt Hình",
		"tvshows": "TV Shows",
	}

	def __init__(self, options: Optional[CrawlerOptions] = None, normalizer: Optional[PayloadNormalizer] = None,
				 media: Optional[MediaResolutionPipeline] = None):
		self.options = options or CrawlerOptions.from_settings()
		self.normalizer = normalizer or PayloadNormalizer(media or MediaResolutionPipeline(self.options))

	@property
	def handler(self) -> str:
		cls = type(self)
		return f"{cls.__module__}.{cls.__qualname__}"

	def reconcile(self, body, fields: Optional[Iterable[str]] = None, force_update: bool = False) -> bool:
		"""
		Apply a raw payload body to the catalog.

		Returns True when the movie was written, False when the checksum gate
		found nothing new.
		"""
		payload = self.parse(body)
		self.check_excluded(payload)

		info = payload["movie"]
		identity = str(info.get("_id") or "").strip()
		if not identity:
			raise MalformedPayloadError("Payload movie has no _id")

		fields = tuple(fields) if fields is not None else self.options.fields
		checksum = self.checksum(body)
		movie = Movie.objects.filter(update_handler=self.handler, update_identity=identity).first()

		if not self.has_change(movie, checksum) and not force_update:
			logger.info(f"⏭️ Unchanged: {movie.name} ({identity})")
			return False

		attributes = self.normalizer.normalize(payload, force_update=force_update)
		created_at, updated_at = self.resolve_timestamps(info)

		with transaction.atomic():
			if movie is not None:
				for field in fields:
					if field in attributes:
						setattr(movie, field, attributes[field])
				movie.update_checksum = checksum
				movie.updated_at = updated_at
				movie.save()
				logger.info(f"🔄 Updated: {movie.name} ({identity})")
			else:
				movie = Movie.objects.create(
					**attributes,
					update_handler=self.handler,
					update_identity=identity,
					update_checksum=checksum,
					created_at=created_at,
					updated_at=updated_at,
				)
				logger.info(f"✅ Created: {movie.name} ({identity})")

			self.sync_actors(movie, info, fields)
			self.sync_directors(movie, info, fields)
			self.sync_categories(movie, info, fields)
			self.sync_regions(movie, info, fields)
			self.sync_tags(movie, fields)
			self.sync_studios(movie, info, fields)
			self.sync_episodes(movie, payload, fields)

		return True

	@staticmethod
	def parse(body) -> dict:
		if isinstance(body, dict):
			payload = body
		else:
			try:
				payload = json.loads(body)
			except (TypeError, ValueError) as e:
				raise MalformedPayloadError(f"Payload is not valid JSON: {e}") from e

		if not isinstance(payload, dict) or not isinstance(payload.get("movie"), dict) or not payload["movie"]:
			raise MalformedPayloadError("Payload has no movie section")
		return payload

	@staticmethod
	def checksum(body) -> str:
		if isinstance(body, dict):
			body = json.dumps(body, sort_keys=True, ensure_ascii=False)
		if isinstance(body, str):
			body = body.encode("utf-8")
		return hashlib.md5(body).hexdigest()

	@staticmethod
	def has_change(movie: Optional[Movie], checksum: str) -> bool:
		return movie is None or movie.update_checksum != checksum

	def check_excluded(self, payload: dict):
		info = payload["movie"]

		movie_type = info.get("type")
		if movie_type in self.options.excluded_types:
			raise ExclusionRejection("type", [movie_type])

		categories = set(self._names(info.get("category"))) & self.options.excluded_categories
		if categories:
			raise ExclusionRejection("category", sorted(categories))

		regions = set(self._names(info.get("country"))) & self.options.excluded_regions
		if regions:
			raise ExclusionRejection("region", sorted(regions))

	@staticmethod
	def resolve_timestamps(info: dict):
		"""Remote created/modified times, each falling back to now on its own."""

		def remote_time(section):
			stamp = info.get(section)
			value = stamp.get("time") if isinstance(stamp, dict) else None
			if not value:
				return None
			try:
				parsed = parse_datetime(str(value))
			except ValueError:
				return None
			if parsed is not None and timezone.is_naive(parsed):
				parsed = timezone.make_aware(parsed)
			return parsed

		now = timezone.now()
		return remote_time("created") or now, remote_time("modified") or now

	# --- associations ---

	def sync_actors(self, movie: Movie, info: dict, fields):
		if "actors" not in fields:
			return

		actor_ids = []
		for name in self.split_names(info.get("actor")):
			try:
				with transaction.atomic():
					actor = self.find_or_create_actor(name)
			except (DatabaseError, ValueError) as e:
				logger.exception(f"Failed to sync actor {name!r} of {movie.name}: {e}")
				continue
			if actor.pk not in actor_ids:
				actor_ids.append(actor.pk)

		movie.actors.set(actor_ids)

	def find_or_create_actor(self, name: str) -> Actor:
		normalized = self.normalize_actor_name(name)
		if not normalized:
			raise ValueError(f"Actor name {name!r} is empty once normalized")

		actor, created = Actor.objects.get_or_create(
			name_normalized=normalized,
			defaults={
				"name": name,
				# suffix keeps slugs unique when two names slugify alike
				"slug": f"{slugify(normalized) or 'actor'}-{uuid.uuid4().hex[:8]}",
			},
		)
		if created:
			logger.debug(f"New actor: {actor.name}")
		return actor

	@staticmethod
	def normalize_actor_name(name: str) -> str:
		name = unicodedata.normalize("NFC", name).lower().strip()
		name = re.sub(r"[^\w\s]|_", "", name)
		return " ".join(name.split())

	def sync_directors(self, movie: Movie, info: dict, fields):
		if "directors" not in fields:
			return
		movie.directors.set(self._get_or_create_named(Director, self.split_names(info.get("director"))))

	def sync_categories(self, movie: Movie, info: dict, fields):
		if "categories" not in fields:
			return
		names = list(self._names(info.get("category")))
		extra = self.TYPE_CATEGORIES.get(info.get("type"))
		if extra:
			names.append(extra)
		movie.categories.set(self._get_or_create_named(Category, names))

	def sync_regions(self, movie: Movie, info: dict, fields):
		if "regions" not in fields:
			return
		movie.regions.set(self._get_or_create_named(Region, self._names(info.get("country"))))

	def sync_tags(self, movie: Movie, fields):
		if "tags" not in fields:
			return
		movie.tags.set(self._get_or_create_named(Tag, [movie.name, movie.origin_name]))

	def sync_studios(self, movie: Movie, info: dict, fields):
		if "studios" not in fields:
			return
		# Studios are not in the Ophim payload yet; the association stays untouched.

	# --- episodes ---

	@staticmethod
	def episode_slots(payload: dict) -> List[EpisodeSlot]:
		slots = []
		for server in payload.get("episodes") or []:
			server_name = str(server.get("server_name") or "").strip()
			for entry in server.get("server_data") or []:
				name = str(entry.get("name") or "").strip()
				if entry.get("link_m3u8"):
					slots.append(EpisodeSlot(server_name, name, EpisodeType.DIRECT.value, entry["link_m3u8"]))
				if entry.get("link_embed"):
					slots.append(EpisodeSlot(server_name, name, EpisodeType.EMBED.value, entry["link_embed"]))
		return slots

	def sync_episodes(self, movie: Movie, payload: dict, fields):
		"""
		Make the stored episodes equal the payload's slots, in payload order.

		Existing rows are matched by (server, name, type) first; slots left
		unmatched reuse the unclaimed row at the same position. Rows claimed
		by no slot are deleted, which also prunes a shrunk list.
		"""
		if "episodes" not in fields:
			return

		slots = self.episode_slots(payload)
		existing = list(movie.episodes.order_by("position", "id"))

		pool = defaultdict(list)
		for episode in existing:
			pool[(episode.server, episode.name, episode.type)].append(episode)
		matched = [pool[slot.key].pop(0) if pool[slot.key] else None for slot in slots]
		claimed = {episode.pk for episode in matched if episode is not None}

		kept = []
		for position, slot in enumerate(slots):
			episode = matched[position]
			if episode is None and position < len(existing) and existing[position].pk not in claimed:
				episode = existing[position]
				claimed.add(episode.pk)

			values = {
				"position": position,
				"server": slot.server,
				"name": slot.name,
				"slug": f"tap-{slugify(slot.name)}",
				"type": slot.type,
				"link": slot.link,
			}
			if episode is None:
				episode = Episode.objects.create(movie=movie, **values)
			elif any(getattr(episode, key) != value for key, value in values.items()):
				for key, value in values.items():
					setattr(episode, key, value)
				episode.save()
			kept.append(episode.pk)

		stale = movie.episodes.exclude(pk__in=kept)
		if stale.exists():
			count, _ = stale.delete()
			logger.info(f"🗑️ Pruned {count} stale episodes of {movie.name}")

	# --- helpers ---

	@staticmethod
	def split_names(value) -> List[str]:
		"""Trimmed, non-blank names from a list or a comma separated string."""
		if not value:
			return []
		items = value.split(",") if isinstance(value, str) else value
		names = []
		for item in items:
			if item is None:
				continue
			name = str(item).strip()
			if name:
				names.append(name)
		return names

	@staticmethod
	def _names(items) -> List[str]:
		names = []
		for item in items or []:
			name = item.get("name") if isinstance(item, dict) else item
			if name and str(name).strip():
				names.append(str(name).strip())
		return names

	@staticmethod
	def _get_or_create_named(model, names) -> List[int]:
		ids = []
		for name in names:
			name = (name or "").strip()
			if not name:
				continue
			obj, _ = model.objects.get_or_create(name=name)
			if obj.pk not in ids:
				ids.append(obj.pk)
		return ids
