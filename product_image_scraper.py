#!/usr/bin/env python3
"""
Product Image Scraper

Bulk downloads product images from an e-commerce catalog. Product ids come from
a CSV file; a sample product page URL supplies the page pattern (its 12-digit
product id is replaced by each id in turn). Every page is checked in a headless
browser for product images, which are then downloaded into one folder per
product.
"""

import argparse
import asyncio
import csv
import json
import re
import signal
import sys
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Tuple
from urllib.parse import urlparse

from browser_pool import BrowserPool, PoolConfig, SessionCreationError
from image_downloader import DownloadSummary, ImageDownloader, ImageSourceLogger
from image_scanner import (
    DEFAULT_IMAGE_SELECTOR, DEFAULT_SOURCE_ATTRIBUTE, STRATEGIES, STRATEGY_QUEUE,
    ImageScanner, ProductTask, ScanResult
)
from playwright_utils import CHROME_ARGS, DEFAULT_NAVIGATION_OPTIONS
from progress import CancellationToken, ProgressEvent, ProgressReporter
from scraper_logger import ScraperLogger

PRODUCT_ID_LENGTH = 12
PRODUCT_ID_PATTERN = re.compile(r"\d{%d}" % PRODUCT_ID_LENGTH)


class StructuralError(Exception):
    """The input can't be turned into product tasks."""


class InputError(Exception):
    """The product list file could not be read."""


# ============================================================================
# Product List Input
# ============================================================================

# Shop back-office exports are Shift JIS; files saved by other tools are UTF-8
DEFAULT_ENCODINGS = ('utf-8-sig', 'shift_jis')


class ProductListReader:
    """Reads product rows from a CSV file."""

    def __init__(self, csv_path: str, logger: ScraperLogger, encoding: Optional[str] = None):
        """Initialize the reader.

        Args:
            csv_path: Path to the product CSV file
            logger: Logger instance for error reporting
            encoding: Text encoding of the file (e.g. utf-8, shift_jis). When
                None, UTF-8 is tried first and Shift JIS second.
        """
        self.csv_path = Path(csv_path)
        self.logger = logger
        self.encoding = encoding

    def _read(self, encoding: str) -> Tuple[List[str], List[Dict[str, str]]]:
        with open(self.csv_path, 'r', encoding=encoding, newline='') as f:
            reader = csv.DictReader(f)
            headers = list(reader.fieldnames or [])
            rows = [
                row for row in reader
                if any((value or '').strip() for value in row.values() if isinstance(value, str))
            ]
        return headers, rows

    def read_rows(self) -> Tuple[List[str], List[Dict[str, str]]]:
        """Read header names and rows, skipping blank lines.

        Returns:
            Tuple of (headers, rows)

        Raises:
            InputError: if the file is missing, is not valid CSV or cannot be
                decoded with any of the candidate encodings
        """
        if not self.csv_path.exists():
            self.logger.log_error("", "FileNotFound", f"CSV file not found: {self.csv_path}")
            raise InputError(f"CSV file not found: {self.csv_path}")

        encodings = [self.encoding] if self.encoding else list(DEFAULT_ENCODINGS)
        decode_error = None
        for encoding in encodings:
            try:
                headers, rows = self._read(encoding)
            except UnicodeDecodeError as e:
                self.logger.debug(f"{self.csv_path} is not {encoding}: {e}")
                decode_error = e
                continue
            except csv.Error as e:
                self.logger.log_error("", "CSVError", f"Error reading CSV file: {e}")
                raise InputError(f"Error reading CSV file {self.csv_path}: {e}") from e

            self.logger.info(f"Loaded {len(rows)} rows from {self.csv_path} ({encoding})")
            return headers, rows

        tried = ", ".join(encodings)
        self.logger.log_error("", "CSVError", f"Cannot decode CSV file as {tried}: {decode_error}")
        raise InputError(f"Cannot decode CSV file {self.csv_path} as {tried}") from decode_error


def build_product_tasks(rows: Sequence[Mapping[str, str]], id_field: str, sample_url: str,
                        headers: Optional[Sequence[str]] = None) -> List[ProductTask]:
    """Turn CSV rows into product page tasks.

    The first 12-digit run of the sample URL is replaced by each row's product
    id, stripped of quotes and zero-padded to 12 digits. Rows with an empty id
    are skipped.

    Raises:
        StructuralError: if the id field is not a column or the sample URL
            contains no 12-digit product id
    """
    if headers is None:
        headers = list(rows[0].keys()) if rows else []
    if id_field not in headers:
        raise StructuralError(f'Product ID field "{id_field}" not found in CSV')

    match = PRODUCT_ID_PATTERN.search(sample_url)
    if not match:
        raise StructuralError(
            f"Sample URL must contain a {PRODUCT_ID_LENGTH}-digit product ID: {sample_url}"
        )
    prefix, suffix = sample_url[:match.start()], sample_url[match.end():]

    tasks = []
    for row in rows:
        raw_id = (row.get(id_field) or '').replace('"', '').strip()
        if not raw_id:
            continue
        product_id = raw_id.zfill(PRODUCT_ID_LENGTH)
        tasks.append(ProductTask(product_id=product_id, url=f"{prefix}{product_id}{suffix}"))
    return tasks


def extract_domain_name(url: str) -> str:
    """Hostname of a URL, or 'unknown-domain' when there is none."""
    try:
        hostname = urlparse(url).hostname
    except ValueError:
        hostname = None
    return hostname or 'unknown-domain'


def create_domain_folder(storage_path, domain_name: str) -> Path:
    """Create (if needed) and return the folder for a shop's images."""
    domain_folder = Path(storage_path) / domain_name
    domain_folder.mkdir(parents=True, exist_ok=True)
    return domain_folder


# ============================================================================
# Site-Specific Configuration
# ============================================================================

class SiteConfig:
    """Per-site scraping settings loaded from a JSON file.

    The file maps domains to settings such as:
    - image_selector: CSS selector for product images
    - source_attribute: attribute holding the image URL
    - wait_until / navigation_timeout: page load policy
    - concurrency: number of pages checked in parallel
    """

    def __init__(self, config_file: Optional[str] = None, logger=None):
        """Initialize site configuration.

        Args:
            config_file: Path to JSON configuration file (optional)
            logger: Logger instance for debug output
        """
        self.logger = logger
        self.config: Dict[str, Dict] = {}

        if config_file:
            self.load_config(config_file)

    def load_config(self, config_file: str) -> bool:
        """Load configuration from JSON file.

        Returns:
            True if config loaded successfully, False otherwise
        """
        config_path = Path(config_file)
        if not config_path.exists():
            if self.logger:
                self.logger.warning(f"Config file not found: {config_file}, using defaults")
            return False

        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                loaded = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            if self.logger:
                self.logger.warning(f"Invalid config file {config_file}: {e}")
            return False

        if not isinstance(loaded, dict):
            if self.logger:
                self.logger.warning(f"Config file {config_file} must hold a JSON object")
            return False

        # Remove schema/comment keys
        self.config = {k: v for k, v in loaded.items() if not k.startswith('_')}

        if self.logger:
            self.logger.info(f"Loaded site configuration for {len(self.config)} domains")
            self.logger.debug(f"Configured domains: {', '.join(self.config.keys())}")
        return True

    def get_site_config(self, url: str) -> Dict:
        """Configuration for the site a URL belongs to, or {} if none."""
        domain = urlparse(url).netloc

        if domain in self.config:
            return self.config[domain]

        if domain.startswith('www.'):
            domain_no_www = domain[4:]
            if domain_no_www in self.config:
                return self.config[domain_no_www]

        domain_with_www = f"www.{domain}"
        if domain_with_www in self.config:
            return self.config[domain_with_www]

        return {}

    def get_image_selector(self, url: str) -> str:
        return self.get_site_config(url).get('image_selector', DEFAULT_IMAGE_SELECTOR)

    def get_source_attribute(self, url: str) -> str:
        return self.get_site_config(url).get('source_attribute', DEFAULT_SOURCE_ATTRIBUTE)

    def get_concurrency(self, url: str, default: int = 4) -> int:
        return int(self.get_site_config(url).get('concurrency', default))

    def get_navigation_options(self, url: str) -> Dict:
        """wait_until and timeout (ms) to use when loading pages of a site."""
        site_config = self.get_site_config(url)
        return {
            'wait_until': site_config.get('wait_until', DEFAULT_NAVIGATION_OPTIONS['wait_until']),
            'timeout': int(site_config.get('navigation_timeout',
                                           DEFAULT_NAVIGATION_OPTIONS['timeout'])),
        }


# ============================================================================
# Main Scraper Class
# ============================================================================

class ProductImageScraper:
    """Runs the check-then-download process for one product list."""

    def __init__(self, input_csv: str, id_field: str, sample_url: str,
                 output_dir: str = "output",
                 log_dir: str = "logs",
                 encoding: Optional[str] = None,
                 concurrency: Optional[int] = None,
                 max_browsers: int = 4,
                 idle_timeout: float = 5 * 60.0,
                 strategy: str = STRATEGY_QUEUE,
                 site_config_file: Optional[str] = None,
                 check_only: bool = False,
                 headless: bool = True,
                 logger: Optional[ScraperLogger] = None,
                 launcher=None):
        """Initialize the scraper.

        Args:
            input_csv: Path to the product CSV file
            id_field: CSV column holding the product id
            sample_url: A product page URL containing a 12-digit product id
            output_dir: Folder receiving one subfolder per shop domain
            log_dir: Directory for log files
            encoding: Encoding of the CSV file (default: UTF-8, then Shift JIS)
            concurrency: Pages checked in parallel (default: site config or 4)
            max_browsers: Maximum browser sessions in the pool
            idle_timeout: Seconds before an idle browser is closed
            strategy: Scan work distribution, 'queue' or 'shards'
            site_config_file: Path to site configuration JSON file (optional)
            check_only: Stop after checking pages, download nothing
            headless: Run browsers without a window
            logger: Existing logger (a new ScraperLogger otherwise)
            launcher: Browser launcher passed through to the BrowserPool
        """
        self.input_csv = input_csv
        self.id_field = id_field
        self.sample_url = sample_url
        self.output_dir = Path(output_dir)
        self.strategy = strategy
        self.check_only = check_only
        self.launcher = launcher

        self.logger = logger or ScraperLogger(log_dir)
        self.reader = ProductListReader(input_csv, self.logger, encoding=encoding)
        self.site_config = SiteConfig(site_config_file, self.logger)
        self.concurrency = concurrency or self.site_config.get_concurrency(sample_url)

        self.pool_config = PoolConfig(
            max_instances=max_browsers,
            idle_timeout=idle_timeout,
            launch_options={'headless': headless, 'args': list(CHROME_ARGS)},
        )

        self.progress = ProgressReporter(self.logger)
        self.progress.subscribe(self._log_progress)
        self.cancel_token = CancellationToken()

        self.scan_result: Optional[ScanResult] = None
        self.download_summary: Optional[DownloadSummary] = None
        self.domain_folder: Optional[Path] = None

    def cancel(self):
        """Request cooperative cancellation of the current run."""
        if not self.cancel_token.cancelled:
            self.logger.info("Download cancellation requested")
        self.cancel_token.cancel()

    def _log_progress(self, event: ProgressEvent):
        self.logger.info(f"[{event.stage} {event.progress:3d}%] {event.message}")

    async def run(self) -> Optional[DownloadSummary]:
        """Execute the check and download stages.

        Returns:
            DownloadSummary, or None when nothing was downloaded (check-only,
            no images found, or cancelled during the check)

        Raises:
            InputError, StructuralError: bad input, before any browser starts
            SessionCreationError: a browser could not be launched
        """
        self.cancel_token = CancellationToken()
        self.scan_result = None
        self.download_summary = None

        self.logger.info("=" * 60)
        self.logger.info("Product Image Scraper")
        self.logger.info("=" * 60)

        headers, rows = self.reader.read_rows()
        try:
            tasks = build_product_tasks(rows, self.id_field, self.sample_url, headers)
        except StructuralError as e:
            self.logger.log_error("", "StructuralError", str(e))
            raise

        if not tasks:
            self.logger.info("No products to process. Exiting.")
            return None

        navigation_options = self.site_config.get_navigation_options(self.sample_url)

        async with BrowserPool(self.pool_config, self.logger, launcher=self.launcher) as pool:
            scanner = ImageScanner(
                pool, self.logger, self.progress,
                image_selector=self.site_config.get_image_selector(self.sample_url),
                source_attribute=self.site_config.get_source_attribute(self.sample_url),
                navigation_options=navigation_options,
            )
            self.scan_result = await scanner.scan(
                tasks, concurrency=self.concurrency,
                cancel_token=self.cancel_token, strategy=self.strategy,
            )

            if self.check_only or self.scan_result.cancelled or not self.scan_result.candidates:
                self._print_summary()
                return None

            self.domain_folder = create_domain_folder(
                self.output_dir, extract_domain_name(self.sample_url)
            )
            downloader = ImageDownloader(
                pool, self.logger, self.progress,
                source_logger=ImageSourceLogger(self.domain_folder, self.logger),
                navigation_options=navigation_options,
            )
            self.download_summary = await downloader.download_all(
                self.scan_result.candidates, self.domain_folder, self.cancel_token
            )

        self._print_summary()
        return self.download_summary

    def _print_summary(self):
        """Print final summary statistics."""
        scan = self.scan_result
        summary = self.download_summary

        self.logger.info("\n" + "=" * 60)
        if scan is not None and scan.cancelled and summary is None:
            self.logger.info("IMAGE CHECK CANCELLED")
        elif summary is None:
            self.logger.info("IMAGE CHECK COMPLETE")
        elif summary.cancelled:
            self.logger.info(f"Download cancelled. {summary.success_count} images downloaded.")
        elif summary.success_count == summary.total:
            self.logger.info(f"All {summary.total} images downloaded, organized into product folders.")
        else:
            self.logger.info(f"{summary.success_count} images downloaded. "
                             f"{summary.failure_count} images failed to download.")
        self.logger.info("=" * 60)

        if scan is not None:
            self.logger.info(f"Products checked: {scan.processed_count}")
            self.logger.info(f"Products failed: {scan.failed_count}")
            if scan.skipped_count:
                self.logger.info(f"Products skipped: {scan.skipped_count}")
            self.logger.info(f"Unique images found: {len(scan.candidates)}")
            self.logger.info(f"Duplicates removed: {scan.duplicate_count}")
        if summary is not None:
            self.logger.info(f"Images downloaded: {summary.success_count}")
            self.logger.info(f"Images failed: {summary.failure_count}")
            if summary.skipped_count:
                self.logger.info(f"Images skipped: {summary.skipped_count}")
        if self.domain_folder is not None:
            self.logger.info(f"\nOutput directory: {self.domain_folder.absolute()}")
        self.logger.info(f"Error log: {self.logger.error_log_path}")
        self.logger.info(f"Log directory: {self.logger.log_dir.absolute()}")


# ============================================================================
# Main Entry Point
# ============================================================================

async def _run_with_signals(scraper: ProductImageScraper):
    loop = asyncio.get_running_loop()
    handled = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, scraper.cancel)
            handled.append(sig)
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no signal handlers; Ctrl+C aborts instead
            scraper.logger.debug(f"Cannot install handler for {sig.name}")
    try:
        return await scraper.run()
    finally:
        for sig in handled:
            loop.remove_signal_handler(sig)


def positive_int(value: str) -> int:
    """argparse type for counts that must be at least 1."""
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid int value: '{value}'")
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {number}")
    return number


def positive_float(value: str) -> float:
    """argparse type for durations that must be greater than 0."""
    try:
        number = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid float value: '{value}'")
    if number <= 0:
        raise argparse.ArgumentTypeError(f"must be greater than 0, got {value}")
    return number


def main(argv=None):
    """Main entry point with CLI argument parsing."""
    parser = argparse.ArgumentParser(
        description='Product Image Scraper - bulk download product images from a shop',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Examples:
  # Download images for every product id in the "code" column
  python product_image_scraper.py --input products.csv --id-field code \\
      --sample-url https://shop.example.jp/view/item/000000001234

  # Force the encoding when detection picks the wrong one
  python product_image_scraper.py --input products.csv --encoding shift_jis \\
      --id-field 商品番号 --sample-url https://shop.example.jp/view/item/000000001234

  # Only check which images exist, download nothing
  python product_image_scraper.py --input products.csv --id-field code \\
      --sample-url https://shop.example.jp/view/item/000000001234 --check-only

  # Press Ctrl+C during a run to stop after the downloads in flight
        '''
    )

    parser.add_argument('--input', type=str, required=True, metavar='FILE',
                        help='Path to the product CSV file')
    parser.add_argument('--id-field', type=str, required=True, metavar='COLUMN',
                        help='CSV column holding the product id')
    parser.add_argument('--sample-url', type=str, required=True, metavar='URL',
                        help='A product page URL containing a 12-digit product id')
    parser.add_argument('--output', type=str, default='output', metavar='DIR',
                        help='Storage folder; images go to DIR/<shop domain>/<product id>/ '
                             '(default: output/)')
    parser.add_argument('--encoding', type=str, default=None, metavar='NAME',
                        help='CSV text encoding, e.g. shift_jis (default: UTF-8, then Shift JIS)')
    parser.add_argument('--concurrent', type=positive_int, default=None, metavar='N',
                        help='Product pages checked in parallel (default: site config or 4)')
    parser.add_argument('--max-browsers', type=positive_int, default=4, metavar='N',
                        help='Maximum browser instances (default: 4)')
    parser.add_argument('--idle-timeout', type=positive_float, default=300.0, metavar='SECONDS',
                        help='Close browsers idle longer than this (default: 300)')
    parser.add_argument('--strategy', choices=STRATEGIES, default=STRATEGY_QUEUE,
                        help='Distribute pages through a shared queue or fixed shards '
                             '(default: queue)')
    parser.add_argument('--site-config', type=str, default=None, metavar='FILE',
                        help='Path to site configuration JSON file (default: None - uses defaults)')
    parser.add_argument('--check-only', action='store_true',
                        help='Check product pages for images without downloading')
    parser.add_argument('--headed', action='store_true',
                        help='Show browser windows')
    parser.add_argument('--log-dir', type=str, default='logs', metavar='DIR',
                        help='Directory for log files (default: logs/)')

    args = parser.parse_args(argv)

    scraper = ProductImageScraper(
        input_csv=args.input,
        id_field=args.id_field,
        sample_url=args.sample_url,
        output_dir=args.output,
        log_dir=args.log_dir,
        encoding=args.encoding,
        concurrency=args.concurrent,
        max_browsers=args.max_browsers,
        idle_timeout=args.idle_timeout,
        strategy=args.strategy,
        site_config_file=args.site_config,
        check_only=args.check_only,
        headless=not args.headed,
    )

    try:
        asyncio.run(_run_with_signals(scraper))
    except (InputError, StructuralError, SessionCreationError) as e:
        scraper.logger.info(f"Aborted: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
