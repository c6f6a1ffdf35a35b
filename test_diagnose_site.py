#!/usr/bin/env python3
"""
Tests for the site diagnostic helper.
"""

import sys

from diagnose_site import summarize_images

PAGE_URL = "https://shop.example.jp/view/item/000000001234"

HTML = """
<html>
<head><title> Cotton Shirt | Example Shop </title></head>
<body>
  <img src="/images/logo.png">
  <img src="data:image/gif;base64,R0lGODlhAQABAAAAACw=">
  <img src="https://makeshop-multi-images.akamaized.net/shop/itemimages/0000000001234_front.jpg">
  <img data-src="https://makeshop-multi-images.akamaized.net/shop/itemimages/0000000001234_back.jpg">
  <img src="https://cdn.example.jp/banner/sale.jpg">
  <img>
</body>
</html>
"""


def test_summarize_images():
    """Images are counted per host and product images drive the selector."""
    print("Testing image summary...")
    report = summarize_images(HTML, PAGE_URL, "000000001234")

    assert report['title'] == "Cotton Shirt | Example Shop"
    assert report['image_count'] == 4
    assert report['hosts'] == {
        'makeshop-multi-images.akamaized.net': 2,
        'shop.example.jp': 1,
        'cdn.example.jp': 1,
    }
    assert len(report['product_images']) == 2
    assert report['suggested_selector'] == 'img[src*="makeshop-multi-images.akamaized.net"]'
    assert report['source_attribute'] == 'src'
    print(f"  Suggested selector: {report['suggested_selector']}")
    print("✓ Image summary works!")


LAZY_HTML = """
<html><body>
  <img src="data:image/gif;base64,R0lGODlhAQABAAAAACw="
       data-src="https://img.example-cdn.com/items/000000001234_front.jpg">
  <img src="/placeholder.gif"
       data-src="https://img.example-cdn.com/items/000000001234_back.jpg">
  <img data-src="https://img.example-cdn.com/items/000000001234_side.jpg">
</body></html>
"""


def test_lazy_loaded_images_suggest_data_src():
    """Product images found only in data-src get a data-src selector."""
    print("\nTesting lazy-loaded images...")
    report = summarize_images(LAZY_HTML, PAGE_URL, "000000001234")

    # The second image has a real src, so it is read from src
    assert report['image_count'] == 3
    assert len(report['product_images']) == 2
    assert report['source_attribute'] == 'data-src'
    assert report['suggested_selector'] == 'img[data-src*="img.example-cdn.com"]'
    print(f"  Suggested selector: {report['suggested_selector']}")
    print("✓ Lazy-loaded images handled!")


def test_summary_without_product_id():
    """Without a product id nothing is suggested."""
    print("\nTesting summary without product id...")
    report = summarize_images(HTML, PAGE_URL)
    assert report['product_images'] == []
    assert report['suggested_selector'] is None
    assert report['source_attribute'] is None

    empty = summarize_images("<html><body></body></html>", PAGE_URL, "000000001234")
    assert empty['title'] == ''
    assert empty['image_count'] == 0
    print("✓ Missing product id handled!")


def main():
    """Run all tests."""
    print("=" * 60)
    print("Site Diagnostic Tests")
    print("=" * 60)

    try:
        test_summarize_images()
        test_lazy_loaded_images_suggest_data_src()
        test_summary_without_product_id()

        print("\n" + "=" * 60)
        print("ALL TESTS PASSED! ✓")
        print("=" * 60)

    except AssertionError as e:
        print(f"\n✗ Test failed: {e}")
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
