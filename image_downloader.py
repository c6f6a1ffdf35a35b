#!/usr/bin/env python3
"""
Image download stage.

Fetches each ImageCandidate through a pooled browser session and stores it as
``<domain folder>/<product id>/<product id>_<suffix>.jpg`` without ever
overwriting an existing file.
"""

import asyncio
import csv
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from image_scanner import ImageCandidate
from progress import (
    STAGE_DOWNLOADING, CancellationToken, ProgressEvent, ProgressReporter
)
from playwright_utils import fetch_binary, open_page

IMAGE_EXTENSION = '.jpg'

SUCCESS = 'success'
FAILED = 'failed'
SKIPPED = 'skipped'


@dataclass
class DownloadSummary:
    """Aggregate outcome of a download batch."""
    success_count: int = 0
    failure_count: int = 0
    skipped_count: int = 0
    cancelled: bool = False
    total: int = 0


def save_image(product_folder: Path, product_id: str, suffix: str, data: bytes) -> Path:
    """Write image data under the first free ``<id>_<suffix>[_<n>].jpg`` name.

    The file is opened in exclusive-create mode, so a name taken between the
    choice and the write is skipped instead of overwritten.

    Returns:
        Path of the written file
    """
    counter = 0
    while True:
        unique_suffix = suffix if counter == 0 else f"{suffix}_{counter}"
        file_path = Path(product_folder) / f"{product_id}_{unique_suffix}{IMAGE_EXTENSION}"
        try:
            with open(file_path, 'xb') as f:
                f.write(data)
            return file_path
        except FileExistsError:
            counter += 1


class ImageSourceLogger:
    """Logs downloaded image sources to CSV."""

    def __init__(self, output_dir: Path, logger):
        """Initialize the CSV logger.

        Args:
            output_dir: Directory to save the log file
            logger: Logger instance
        """
        self.output_dir = Path(output_dir)
        self.logger = logger
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        self.log_path = self.output_dir / f"image_sources_{timestamp}.csv"
        self._init_csv()

    def _init_csv(self):
        """Initialize the CSV file with headers."""
        self.output_dir.mkdir(parents=True, exist_ok=True)
        with open(self.log_path, 'w', newline='', encoding='utf-8') as f:
            writer = csv.writer(f)
            writer.writerow(['product_id', 'image_url', 'local_filename', 'timestamp'])

    def log_image(self, candidate: ImageCandidate, local_path: Path):
        """Append one saved image to the CSV."""
        with open(self.log_path, 'a', newline='', encoding='utf-8') as f:
            writer = csv.writer(f)
            writer.writerow([
                candidate.product_id,
                candidate.url,
                str(local_path),
                datetime.now().isoformat(),
            ])


class ImageDownloader:
    """Downloads image candidates concurrently through the browser pool."""

    def __init__(self, pool, logger, progress: Optional[ProgressReporter] = None,
                 source_logger: Optional[ImageSourceLogger] = None,
                 navigation_options: Optional[Dict] = None):
        """Initialize the image downloader.

        Args:
            pool: BrowserPool to borrow sessions from
            logger: Logger instance
            progress: Reporter for 'downloading' progress events
            source_logger: Optional CSV manifest of saved images
            navigation_options: wait_until / timeout overrides for fetches
        """
        self.pool = pool
        self.logger = logger
        self.progress = progress or ProgressReporter(logger)
        self.source_logger = source_logger
        self.navigation_options = navigation_options or {}

    def _cancelled(self, cancel_token: CancellationToken, candidate: ImageCandidate) -> bool:
        if cancel_token.cancelled:
            self.logger.debug(f"Download cancelled, skipping image for product {candidate.product_id}")
            return True
        return False

    async def _download(self, session, candidate: ImageCandidate, domain_folder,
                        cancel_token: CancellationToken) -> str:
        if self._cancelled(cancel_token, candidate):
            return SKIPPED

        product_folder = Path(domain_folder) / candidate.product_id
        try:
            product_folder.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            self.logger.log_error(candidate.product_id, "FolderError",
                                  f"Cannot create {product_folder}: {e}", candidate.url)
            return FAILED

        if self._cancelled(cancel_token, candidate):
            return SKIPPED

        try:
            async with open_page(session) as page:
                data = await fetch_binary(page, candidate.url, **self.navigation_options)
        except Exception as e:
            self.logger.log_error(candidate.product_id, "ImageFetchError",
                                  f"Error downloading image: {e}", candidate.url)
            return FAILED

        if self._cancelled(cancel_token, candidate):
            return SKIPPED

        try:
            file_path = save_image(product_folder, candidate.product_id, candidate.suffix, data)
        except OSError as e:
            self.logger.log_error(candidate.product_id, "ImageWriteError",
                                  f"Error saving image: {e}", candidate.url)
            return FAILED

        self.logger.debug(f"Downloaded image for product {candidate.product_id} to {file_path}")
        if self.source_logger:
            self.source_logger.log_image(candidate, file_path)
        return SUCCESS

    async def download_one(self, session, candidate: ImageCandidate, domain_folder,
                           cancel_token: Optional[CancellationToken] = None) -> bool:
        """Download a single image on an already acquired session.

        Returns:
            True when the image was written to disk
        """
        outcome = await self._download(session, candidate, domain_folder,
                                       cancel_token or CancellationToken())
        return outcome == SUCCESS

    async def download_all(self, candidates: Sequence[ImageCandidate], domain_folder,
                           cancel_token: Optional[CancellationToken] = None) -> DownloadSummary:
        """Download every candidate, one pooled session per image.

        Args:
            candidates: Deduplicated image candidates
            domain_folder: Folder receiving one subfolder per product
            cancel_token: Checked before and during each download

        Returns:
            DownloadSummary; candidates never started because of cancellation
            are counted as skipped

        Raises:
            SessionCreationError: when a browser for a download cannot be launched
        """
        cancel_token = cancel_token or CancellationToken()
        total = len(candidates)
        summary = DownloadSummary(total=total)
        finished = 0

        self.logger.info(f"Downloading {total} images...")
        self.progress.emit(ProgressEvent.create(
            STAGE_DOWNLOADING, 0, total, f"Downloading {total} images..."
        ))

        async def process(candidate: ImageCandidate):
            nonlocal finished

            # No new download starts once cancelled
            if self._cancelled(cancel_token, candidate):
                outcome = SKIPPED
            else:
                try:
                    async with self.pool.session() as session:
                        outcome = await self._download(session, candidate, domain_folder,
                                                       cancel_token)
                except Exception:
                    summary.failure_count += 1
                    raise

            if outcome == SUCCESS:
                summary.success_count += 1
            elif outcome == FAILED:
                summary.failure_count += 1
            else:
                summary.skipped_count += 1

            finished += 1
            self.progress.emit(ProgressEvent.create(
                STAGE_DOWNLOADING, finished, total,
                f"Downloading images ({finished}/{total}, {summary.success_count} saved)"
            ))

        results = await asyncio.gather(*(process(c) for c in candidates),
                                       return_exceptions=True)
        summary.cancelled = cancel_token.cancelled

        errors: List[BaseException] = [r for r in results if isinstance(r, BaseException)]
        if errors:
            raise errors[0]
        return summary
