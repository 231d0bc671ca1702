from pathlib import Path
import os

# Base path resolution and load .env from project root
BASE_DIR = Path(__file__).resolve().parent.parent
env_path = BASE_DIR / '.env'
if env_path.exists():
    from dotenv import load_dotenv
    load_dotenv(dotenv_path=env_path)

BOT_NAME = 'ophim_crawler'

SPIDER_MODULES = ['scraper.spiders']
NEWSPIDER_MODULE = 'scraper.spiders'

OPHIM_API_URL = os.environ.get('OPHIM_API_URL', 'https://ophim1.com/phim/{slug}')

# Comma separated whitelist of movie fields and associations, empty means all
CRAWLER_FIELDS = [f.strip() for f in os.environ.get('CRAWLER_FIELDS', '').split(',') if f.strip()]

# One payload request in flight; CatalogPipeline also serializes reconciliation
try:
    DOWNLOAD_DELAY = float(os.environ.get('SCRAPER_DOWNLOAD_DELAY', 0.5))
except ValueError:
    DOWNLOAD_DELAY = 0.5

CONCURRENT_REQUESTS = 1
CONCURRENT_REQUESTS_PER_DOMAIN = 1
CONCURRENT_ITEMS = 1

try:
    DOWNLOAD_TIMEOUT = int(os.environ.get('SCRAPER_DOWNLOAD_TIMEOUT', 30))
except ValueError:
    DOWNLOAD_TIMEOUT = 30

# Retry + headers
RETRY_ENABLED = str(os.environ.get('SCRAPER_RETRY_ENABLED', 'true')).lower() in ('1', 'true', 'yes')
try:
    RETRY_TIMES = int(os.environ.get('SCRAPER_RETRY_TIMES', 2))
except ValueError:
    RETRY_TIMES = 2
RETRY_HTTP_CODES = [500, 502, 503, 504, 408]

DEFAULT_REQUEST_HEADERS = {
    'Accept': 'application/json, text/plain, */*',
    'User-Agent': os.environ.get(
        'SCRAPER_USER_AGENT',
        'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/111.0.0.0 Safari/537.36',
    ),
}

ITEM_PIPELINES = {
    'scraper.pipelines.CatalogPipeline': 300,
}

REDIS_URL = os.environ.get('REDIS_URL', None)
REDIS_HOST = os.environ.get('REDIS_HOST', 'redis')
REDIS_PORT = int(os.environ.get('REDIS_PORT', 6379))
REDIS_DB = int(os.environ.get('REDIS_DB', 0))

ROBOTSTXT_OBEY = False

# Logging
LOG_LEVEL = os.environ.get('SCRAPER_LOG_LEVEL', 'INFO')
LOG_FORMAT = '%(asctime)s [%(name)s] %(levelname)s: %(message)s'
