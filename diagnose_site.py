#!/usr/bin/env python3
"""
Diagnostic tool to find the image selector for a new shop.

Loads a sample product page in the browser pool, lists the images the
rendered page contains and suggests an ``image_selector`` for
site_config.json.
"""

import argparse
import asyncio
import json
import sys
from collections import Counter
from typing import Dict, Optional
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup

from browser_pool import BrowserPool, PoolConfig
from image_scanner import DEFAULT_SOURCE_ATTRIBUTE
from playwright_utils import CHROME_ARGS, navigate, open_page, page_content
from product_image_scraper import PRODUCT_ID_PATTERN, extract_domain_name

SOURCE_ATTRIBUTES = ('src', 'data-src')


def summarize_images(html: str, page_url: str, product_id: Optional[str] = None) -> Dict:
    """Analyze the <img> tags of a rendered product page.

    Args:
        html: Rendered page HTML
        page_url: URL of the page, for resolving relative sources
        product_id: Product id expected in product image URLs

    Returns:
        Dictionary with the image count, per-host counts, the sources that
        contain the product id, a suggested CSS selector (or None) and the
        attribute the product image URLs were read from
    """
    soup = BeautifulSoup(html, 'lxml')

    images = []
    for img in soup.find_all('img'):
        # Lazy-loaded images keep a placeholder in src and the real URL in data-src
        for attribute in SOURCE_ATTRIBUTES:
            value = img.get(attribute)
            if value and not value.startswith('data:'):
                images.append((urljoin(page_url, value), attribute))
                break

    hosts = Counter(urlparse(src).netloc for src, _ in images)
    product_images = [(src, attr) for src, attr in images if product_id and product_id in src]
    product_hosts = Counter((urlparse(src).netloc, attr) for src, attr in product_images)

    suggested_selector = None
    source_attribute = None
    if product_hosts:
        (host, source_attribute), _ = product_hosts.most_common(1)[0]
        suggested_selector = f'img[{source_attribute}*="{host}"]'

    return {
        'title': soup.title.string.strip() if soup.title and soup.title.string else '',
        'image_count': len(images),
        'hosts': dict(hosts.most_common()),
        'product_images': [src for src, _ in product_images],
        'suggested_selector': suggested_selector,
        'source_attribute': source_attribute,
    }


async def diagnose_site(url: str, headless: bool = True):
    """Diagnose which images Playwright sees on a product page."""
    match = PRODUCT_ID_PATTERN.search(url)
    product_id = match.group(0) if match else None

    print(f"\n{'='*60}")
    print(f"Diagnosing: {url}")
    print('='*60)

    config = PoolConfig(max_instances=1,
                        launch_options={'headless': headless, 'args': list(CHROME_ARGS)})
    async with BrowserPool(config) as pool:
        async with pool.session() as session:
            async with open_page(session) as page:
                print("\nNavigating to page...")
                await navigate(page, url)
                html = await page_content(page)

    report = summarize_images(html, url, product_id)

    print(f"\nPage title: {report['title'] or 'No title'}")
    print(f"Content length: {len(html)} bytes")
    print(f"\nTotal images found: {report['image_count']}")

    print("\nImage hosts:")
    for host, count in report['hosts'].items():
        print(f"  {host}: {count} images")

    if product_id is None:
        print("\nURL has no 12-digit product id; cannot match product images")
    else:
        print(f"\nImages containing product id {product_id}: {len(report['product_images'])}")
        for i, src in enumerate(report['product_images'][:20], 1):
            print(f"  {i}. {src[:100]}")

    if report['suggested_selector']:
        print("\nSuggested site_config.json entry:")
        settings = {'image_selector': report['suggested_selector']}
        if report['source_attribute'] != DEFAULT_SOURCE_ATTRIBUTE:
            settings['source_attribute'] = report['source_attribute']
        print(f"  {json.dumps({extract_domain_name(url): settings})}")
    else:
        print("\nNo product images found; check the URL or use --headed to inspect the page")

    return report


def main():
    parser = argparse.ArgumentParser(description='Inspect the images on a sample product page')
    parser.add_argument('url', help='Sample product page URL')
    parser.add_argument('--headed', action='store_true', help='Show the browser window')
    args = parser.parse_args()

    asyncio.run(diagnose_site(args.url, headless=not args.headed))
    return 0


if __name__ == "__main__":
    sys.exit(main())
