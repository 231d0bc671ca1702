import redis
from django.conf import settings
import json


class RedisClient:
	def __init__(self, client=None):
		self.redis = client or redis.Redis(
			host=settings.REDIS_HOST,
			port=settings.REDIS_PORT,
			db=settings.REDIS_DB,
			decode_responses=True
		)

	def cache_api_response(self, endpoint, params, data, expire=300):
		"""Cache API responses so repeated crawls of a slug skip the network"""
		key = f"api:{endpoint}:{json.dumps(params, sort_keys=True)}"
		self.redis.setex(key, expire, json.dumps(data))

	def get_cached_api_response(self, endpoint, params):
		key = f"api:{endpoint}:{json.dumps(params, sort_keys=True)}"
		data = self.redis.get(key)
		return json.loads(data) if data else None

	def record_crawl(self, slug, outcome, expire=86400):
		"""Remember the last crawl outcome of a slug for a day"""
		self.redis.setex(f"crawl:{slug}", expire, outcome)
