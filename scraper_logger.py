#!/usr/bin/env python3
"""
Logging for the product image scraper.

Console output carries the user-facing progress messages, a timestamped file
keeps the full debug trail, and every per-item failure is also appended to an
error CSV so a run can be audited afterwards.
"""

import csv
import logging
import sys
from datetime import datetime
from pathlib import Path


class ScraperLogger:
    """Centralized logging system for the scraper."""

    def __init__(self, log_dir: str = "logs", name: str = "ProductImageScraper"):
        """Initialize logger with separate error and activity logs.

        Args:
            log_dir: Directory to store log files
            name: Name of the underlying logging.Logger
        """
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)

        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.DEBUG)
        self.logger.propagate = False

        # A second ScraperLogger in the same process replaces the handlers
        for handler in list(self.logger.handlers):
            self.logger.removeHandler(handler)
            handler.close()

        # Console handler for user-facing messages
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(logging.INFO)
        console_handler.setFormatter(logging.Formatter('%(message)s'))

        # File handler for detailed logs
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        file_handler = logging.FileHandler(
            self.log_dir / f"scraper_{timestamp}.log", encoding='utf-8'
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        ))

        self.logger.addHandler(console_handler)
        self.logger.addHandler(file_handler)

        self.error_log_path = self.log_dir / f"errors_{timestamp}.csv"
        self.error_count = 0
        self._init_error_log()

    def _init_error_log(self):
        """Initialize the error log CSV file."""
        with open(self.error_log_path, 'w', newline='', encoding='utf-8') as f:
            writer = csv.writer(f)
            writer.writerow([
                'timestamp', 'product_id', 'error_type', 'error_message', 'url'
            ])

    def log_error(self, product_id: str, error_type: str, error_message: str,
                  url: str = ""):
        """Log an error to both console and CSV file.

        Args:
            product_id: Product the error belongs to ("" for run-level errors)
            error_type: Type of error (e.g. 'Navigation', 'Fetch', 'Write')
            error_message: Detailed error message
            url: URL that caused the error
        """
        timestamp = datetime.now().isoformat()
        self.error_count += 1

        subject = f"product {product_id}" if product_id else "run"
        self.logger.error(f"Error processing {subject}: {error_type} - {error_message}")

        with open(self.error_log_path, 'a', newline='', encoding='utf-8') as f:
            writer = csv.writer(f)
            writer.writerow([timestamp, product_id, error_type, error_message, url])

    def info(self, message: str):
        """Log an info message."""
        self.logger.info(message)

    def warning(self, message: str):
        """Log a warning message."""
        self.logger.warning(message)

    def debug(self, message: str):
        """Log a debug message."""
        self.logger.debug(message)

    def close(self):
        """Flush and detach the handlers."""
        for handler in list(self.logger.handlers):
            self.logger.removeHandler(handler)
            handler.close()
