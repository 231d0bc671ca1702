#!/usr/bin/env python3
"""
Crawl Ophim movie payloads into the catalog.

    python run_scrapers.py <slug> [<slug> ...] [--force] [--link URL ...]
"""

import argparse
import logging
import os
import sys
from pathlib import Path

# Configure logging
logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)

# Add project root to path
ROOT = Path(__file__).resolve().parent
sys.path.insert(0, str(ROOT))

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "api.vod.settings")
os.environ.setdefault("SCRAPY_SETTINGS_MODULE", "scraper.settings")


def setup_django():
    import django

    try:
        django.setup()
        logger.info("Django setup completed successfully")
        return True
    except Exception as e:
        logger.error(f"Failed to setup Django: {e}")
        return False


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Crawl Ophim movies into the catalog")
    parser.add_argument("slugs", nargs="*", help="movie slugs on the Ophim API")
    parser.add_argument("--link", action="append", default=[], help="full payload URL, repeatable")
    parser.add_argument("--force", action="store_true", help="reconcile even when the checksum is unchanged")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    if not args.slugs and not args.link:
        logger.error("Nothing to crawl: pass at least one slug or --link")
        return False

    if not setup_django():
        return False

    # Scrapy after Django so the pipeline finds the app registry ready
    from scraper.spiders.ophim_spider import OphimSpider
    from scrapy.crawler import CrawlerProcess
    from scrapy.utils.project import get_project_settings

    try:
        process = CrawlerProcess(settings=get_project_settings())
        logger.info(f"🕷️ Crawling {len(args.slugs) + len(args.link)} payloads...")
        process.crawl(OphimSpider, slugs=args.slugs, links=args.link, force_update=args.force)
        process.start()

        logger.info("✅ Crawl completed")
        return True

    except Exception as e:
        logger.error(f"❌ Error running crawl: {e}")
        return False


if __name__ == "__main__":
    success = main()
    sys.exit(0 if success else 1)
