#!/usr/bin/env python3
"""
Image discovery for product pages.

Visits each product page in a pooled browser session, collects the image
sources that belong to the product and turns them into ImageCandidate records
ready for download.
"""

import asyncio
import math
import re
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional, Sequence

from progress import (
    STAGE_CHECKING, CancellationToken, ProgressEvent, ProgressReporter
)
from playwright_utils import get_attribute, navigate, open_page, query_all

DEFAULT_IMAGE_SELECTOR = 'img[src*="makeshop-multi-images.akamaized.net"]'
DEFAULT_SOURCE_ATTRIBUTE = 'src'

STRATEGY_QUEUE = 'queue'
STRATEGY_SHARDS = 'shards'
STRATEGIES = (STRATEGY_QUEUE, STRATEGY_SHARDS)


@dataclass(frozen=True)
class ProductTask:
    """A product page to check for images."""
    product_id: str
    url: str


@dataclass(frozen=True)
class ImageCandidate:
    """An image found on a product page, pending download."""
    url: str
    product_id: str
    suffix: str


@dataclass
class ScanResult:
    """Outcome of scanning a list of product pages."""
    candidates: List[ImageCandidate] = field(default_factory=list)
    processed_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    duplicate_count: int = 0
    cancelled: bool = False


def derive_suffix(src: str, product_id: str, index: int) -> str:
    """Suffix of an image filename of the form ``<product_id>[_<suffix>].jpg``.

    Falls back to the element's position on the page when the filename
    carries no suffix.
    """
    match = re.search(rf"{re.escape(product_id)}(?:_(\w+))?\.jpg", src)
    if match and match.group(1):
        return match.group(1)
    return str(index)


def dedupe_candidates(candidates: Sequence[ImageCandidate]) -> List[ImageCandidate]:
    """Keep the first candidate seen for each distinct URL, in order."""
    seen = set()
    unique = []
    for candidate in candidates:
        if candidate.url in seen:
            continue
        seen.add(candidate.url)
        unique.append(candidate)
    return unique


def partition_tasks(tasks: Sequence[ProductTask], concurrency: int) -> List[List[ProductTask]]:
    """Split tasks into contiguous shards of ceil(total / concurrency) each.

    The last shard may be shorter; empty shards are not returned.
    """
    if concurrency < 1:
        raise ValueError("concurrency must be at least 1")
    if not tasks:
        return []
    size = math.ceil(len(tasks) / concurrency)
    return [list(tasks[start:start + size]) for start in range(0, len(tasks), size)]


class ImageScanner:
    """Finds product images across many product pages concurrently."""

    def __init__(self, pool, logger, progress: Optional[ProgressReporter] = None,
                 image_selector: str = DEFAULT_IMAGE_SELECTOR,
                 source_attribute: str = DEFAULT_SOURCE_ATTRIBUTE,
                 navigation_options: Optional[Dict] = None):
        """Initialize the scanner.

        Args:
            pool: BrowserPool to borrow sessions from
            logger: Logger instance
            progress: Reporter for 'checking' progress events
            image_selector: CSS selector matching product images
            source_attribute: Attribute holding the image URL
            navigation_options: wait_until / timeout overrides for navigation
        """
        self.pool = pool
        self.logger = logger
        self.progress = progress or ProgressReporter(logger)
        self.image_selector = image_selector
        self.source_attribute = source_attribute
        self.navigation_options = navigation_options or {}

    async def extract_candidates(self, session, task: ProductTask) -> List[ImageCandidate]:
        """Collect the image candidates for one product page.

        Raises:
            NavigationError: when the page cannot be loaded
        """
        candidates = []

        async with open_page(session) as page:
            self.logger.debug(f"Checking images for: {task.url}")
            await navigate(page, task.url, **self.navigation_options)

            elements = await query_all(page, self.image_selector)
            if not elements:
                self.logger.warning(f"No images found for product ID: {task.product_id}")
                return candidates

            self.logger.debug(f"Found {len(elements)} images for product ID: {task.product_id}")

            for index, element in enumerate(elements):
                src = await get_attribute(element, self.source_attribute, self.logger)

                # Skip banners and other images that aren't this product's
                if not src or task.product_id not in src:
                    continue

                candidates.append(ImageCandidate(
                    url=src,
                    product_id=task.product_id,
                    suffix=derive_suffix(src, task.product_id, index),
                ))

        return candidates

    async def scan(self, tasks: Sequence[ProductTask], concurrency: int = 4,
                   cancel_token: Optional[CancellationToken] = None,
                   strategy: str = STRATEGY_QUEUE) -> ScanResult:
        """Check every product page and return the deduplicated candidates.

        Args:
            tasks: Product pages to check
            concurrency: Number of browser sessions working in parallel
            cancel_token: Checked before each product page is started
            strategy: 'queue' (workers share one queue) or 'shards'
                      (contiguous slices, one per worker)

        Returns:
            ScanResult with unique candidates and per-task counts

        Raises:
            SessionCreationError: when a worker cannot get a browser
        """
        if strategy not in STRATEGIES:
            raise ValueError(f"Unknown scan strategy: {strategy}")
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")

        cancel_token = cancel_token or CancellationToken()
        total = len(tasks)
        result = ScanResult()
        found: List[ImageCandidate] = []

        self.logger.info(f"Total products to check: {total}")
        self.progress.emit(ProgressEvent.create(
            STAGE_CHECKING, 0, total, f"Checking images for {total} products..."
        ))

        if strategy == STRATEGY_SHARDS:
            work = [deque(shard) for shard in partition_tasks(tasks, concurrency)]
        else:
            shared: Deque[ProductTask] = deque(tasks)
            work = [shared] * min(concurrency, total)

        workers = [
            self._run_worker(pending, total, result, found, cancel_token)
            for pending in work
        ]
        outcomes = await asyncio.gather(*workers, return_exceptions=True)

        result.skipped_count = total - result.processed_count
        result.cancelled = cancel_token.cancelled
        result.candidates = dedupe_candidates(found)
        result.duplicate_count = len(found) - len(result.candidates)

        errors = [outcome for outcome in outcomes if isinstance(outcome, BaseException)]
        if errors:
            raise errors[0]

        if result.duplicate_count > 0:
            self.logger.info(f"Removed {result.duplicate_count} duplicate image URLs")
        if result.cancelled:
            self.logger.info(f"Image check cancelled after {result.processed_count}/{total} products")

        self.progress.emit(ProgressEvent.create(
            STAGE_CHECKING, result.processed_count, total,
            f"Found {len(result.candidates)} unique images to download"
        ))
        return result

    async def _run_worker(self, pending: Deque[ProductTask], total: int,
                          result: ScanResult, found: List[ImageCandidate],
                          cancel_token: CancellationToken):
        if not pending or cancel_token.cancelled:
            return

        async with self.pool.session() as session:
            while pending and not cancel_token.cancelled:
                task = pending.popleft()
                try:
                    found.extend(await self.extract_candidates(session, task))
                except Exception as e:
                    self.logger.log_error(task.product_id, "ImageCheckError",
                                          f"Error checking images: {e}", task.url)
                    result.failed_count += 1

                result.processed_count += 1
                self.progress.emit(ProgressEvent.create(
                    STAGE_CHECKING, result.processed_count, total,
                    f"Checking images ({result.processed_count}/{total} products)"
                ))
