import logging
import os
import threading

import django
from django.apps import apps
from itemadapter import ItemAdapter
from redis import ConnectionPool, Redis, exceptions as redis_exceptions
from twisted.internet.threads import deferToThread

logger = logging.getLogger(__name__)


class CatalogPipeline:
	def __init__(self, redis_client=None, fields=None):
		self.redis = redis_client
		self.fields = fields
		self.django_setup_done = False
		self.engine = None
		self.stats = self._empty_stats()
		# deferToThread may run items side by side; reconcile one at a time
		self._lock = threading.Lock()

	@classmethod
	def from_crawler(cls, crawler):
		"""
		Prefer REDIS_URL if present, otherwise use REDIS_HOST/PORT/DB.
		Redis only caches alternate artwork lookups, so the pipeline runs without it.
		"""
		fields = crawler.settings.getlist("CRAWLER_FIELDS") or None
		redis_url = crawler.settings.get("REDIS_URL") or os.environ.get("REDIS_URL")
		try:
			if redis_url:
				pool = ConnectionPool.from_url(redis_url, decode_responses=True)
			else:
				host = crawler.settings.get("REDIS_HOST", "redis")
				port = int(crawler.settings.get("REDIS_PORT", 6379))
				db = int(crawler.settings.get("REDIS_DB", 0))
				pool = ConnectionPool(host=host, port=port, db=db, decode_responses=True)
			redis_client = Redis(connection_pool=pool)
			redis_client.ping()
			return cls(redis_client, fields=fields)
		except redis_exceptions.RedisError as e:
			logger.warning(f"Redis unavailable, alternate lookups will not be cached: {e}")
			return cls(None, fields=fields)

	@staticmethod
	def _empty_stats():
		return {
			"applied": 0,
			"unchanged": 0,
			"rejected": 0,
			"errors": 0,
		}

	def _setup_django(self):
		if self.django_setup_done:
			return

		os.environ.setdefault("DJANGO_SETTINGS_MODULE", "api.vod.settings")

		if not apps.ready:
			django.setup()

		self.django_setup_done = True

	def open_spider(self, spider):
		"""Run setup in a thread to avoid async issues"""
		self._setup_django()
		return deferToThread(self._open_spider_sync, spider)

	def _open_spider_sync(self, spider):
		self.engine = self.build_engine()
		self.stats = self._empty_stats()
		logger.info("Catalog pipeline opened")

	def build_engine(self):
		from api.catalog.config import CrawlerOptions
		from api.catalog.media import AlternateSourceResolver, MediaResolutionPipeline
		from api.catalog.reconciliation import ReconciliationEngine
		from api.catalog.redis_client import RedisClient

		options = CrawlerOptions.from_settings()
		cache = RedisClient(self.redis) if self.redis is not None else None
		media = MediaResolutionPipeline(options, resolver=AlternateSourceResolver(options, cache=cache))
		return ReconciliationEngine(options, media=media)

	def close_spider(self, spider):
		logger.info(f"Pipeline stats: {self.stats}")

	def process_item(self, item, spider):
		"""Use deferToThread to process items in threads"""
		return deferToThread(self._process_item_sync, item, spider)

	def _process_item_sync(self, item, spider):
		from api.catalog.exceptions import CrawlerError, ExclusionRejection

		if not self.django_setup_done:
			self._setup_django()
		if self.engine is None:
			self.engine = self.build_engine()

		adapter = ItemAdapter(item)
		link = adapter.get("link", "")
		try:
			with self._lock:
				applied = self.engine.reconcile(
					adapter.get("body"),
					fields=self.fields,
					force_update=bool(adapter.get("force_update", False)))
		except ExclusionRejection as e:
			self.stats["rejected"] += 1
			logger.info(f"🚫 Rejected {link}: {e}")
			self._record(link, "rejected")
			return item
		except CrawlerError as e:
			self.stats["errors"] += 1
			logger.error(f"❌ Crawl failed for {link}: {e}")
			self._record(link, "error")
			return item
		except Exception as e:
			logger.exception(f"Error processing item {link}: {e}")
			self.stats["errors"] += 1
			self._record(link, "error")
			return item

		outcome = "applied" if applied else "unchanged"
		self.stats[outcome] += 1
		self._record(link, outcome)
		return item

	def _record(self, link, outcome):
		if self.redis is None or not link:
			return
		from api.catalog.redis_client import RedisClient

		try:
			RedisClient(self.redis).record_crawl(link, outcome)
		except redis_exceptions.RedisError as e:
			logger.warning(f"Redis crawl record failed: {e}")
