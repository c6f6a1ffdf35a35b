#!/usr/bin/env python3
"""
Tests for the image download stage.
"""

import asyncio
import csv
import sys
import tempfile
from pathlib import Path

from browser_fakes import FakeLauncher, FakeSite, make_logger
from browser_pool import BrowserPool, PoolConfig
from image_downloader import ImageDownloader, ImageSourceLogger, save_image
from image_scanner import ImageCandidate
from progress import STAGE_DOWNLOADING, CancellationToken, ProgressReporter

CDN = "https://makeshop-multi-images.akamaized.net/shop/itemimages"
PID = "000000001234"


def candidate(suffix: str, pid: str = PID) -> ImageCandidate:
    return ImageCandidate(url=f"{CDN}/0{pid}_{suffix}.jpg", product_id=pid, suffix=suffix)


async def run_downloads(site, candidates, folder, cancel_token=None, max_instances=2,
                        progress=None, source_logger=None):
    launcher = FakeLauncher(site)
    logger = make_logger()
    async with BrowserPool(PoolConfig(max_instances=max_instances), logger,
                           launcher=launcher) as pool:
        downloader = ImageDownloader(pool, logger, progress, source_logger=source_logger)
        summary = await downloader.download_all(candidates, folder, cancel_token)
    return summary, launcher


def test_collision_avoidance():
    """Existing files are never overwritten; the suffix gets a counter."""
    print("Testing filename collisions...")
    with tempfile.TemporaryDirectory() as tmp:
        folder = Path(tmp)
        (folder / "A_red.jpg").write_bytes(b"original")

        first = save_image(folder, "A", "red", b"new-1")
        second = save_image(folder, "A", "red", b"new-2")

        assert first.name == "A_red_1.jpg"
        assert second.name == "A_red_2.jpg"
        assert (folder / "A_red.jpg").read_bytes() == b"original"
        assert first.read_bytes() == b"new-1"
        print(f"  Saved as {first.name}, {second.name}")
    print("✓ Collision avoidance works!")


def test_download_all_saves_per_product_folders():
    """Images land in <domain>/<id>/<id>_<suffix>.jpg and are logged."""
    print("\nTesting batch download...")
    other = "000000005678"
    candidates = [candidate("a"), candidate("b"), candidate("0", pid=other)]
    site = FakeSite(images={c.url: f"jpeg:{c.url}".encode() for c in candidates})

    with tempfile.TemporaryDirectory() as tmp:
        domain_folder = Path(tmp) / "shop.example.jp"
        source_logger = ImageSourceLogger(domain_folder, make_logger())
        events = []
        progress = ProgressReporter()
        progress.subscribe(events.append)

        summary, _ = asyncio.run(run_downloads(site, candidates, domain_folder,
                                               progress=progress,
                                               source_logger=source_logger))

        assert summary.success_count == 3
        assert summary.failure_count == 0
        assert not summary.cancelled
        assert (domain_folder / PID / f"{PID}_a.jpg").read_bytes() == f"jpeg:{candidates[0].url}".encode()
        assert (domain_folder / PID / f"{PID}_b.jpg").exists()
        assert (domain_folder / other / f"{other}_0.jpg").exists()

        with open(source_logger.log_path, newline='', encoding='utf-8') as f:
            rows = list(csv.DictReader(f))
        assert sorted(r['image_url'] for r in rows) == sorted(c.url for c in candidates)

    assert all(e.stage == STAGE_DOWNLOADING for e in events)
    assert events[-1].current == 3 and events[-1].progress == 100
    assert site.opened_pages == site.closed_pages == 3
    print("✓ Batch download works!")


def test_second_run_does_not_overwrite():
    """Downloading the same candidate again keeps the first file."""
    print("\nTesting repeated download...")
    item = candidate("red")
    site = FakeSite(images={item.url: b"image"})

    with tempfile.TemporaryDirectory() as tmp:
        asyncio.run(run_downloads(site, [item], tmp))
        asyncio.run(run_downloads(site, [item], tmp))
        names = sorted(p.name for p in (Path(tmp) / PID).iterdir())

    assert names == [f"{PID}_red.jpg", f"{PID}_red_1.jpg"]
    print("✓ Repeated download keeps both files!")


def test_fetch_failures_are_counted():
    """No response or an empty body counts as a failure, not an abort."""
    print("\nTesting fetch failures...")
    ok, no_response, empty, missing = candidate("ok"), candidate("none"), candidate("empty"), candidate("404")
    site = FakeSite(images={ok.url: b"image", no_response.url: None, empty.url: b""})

    with tempfile.TemporaryDirectory() as tmp:
        summary, _ = asyncio.run(run_downloads(site, [ok, no_response, empty, missing], tmp))
        saved = [p.name for p in (Path(tmp) / PID).iterdir()]

    assert summary.success_count == 1
    assert summary.failure_count == 3
    assert saved == [f"{PID}_ok.jpg"]
    print("✓ Fetch failures counted!")


def test_cancelled_before_start_downloads_nothing():
    """A cancelled token skips every candidate without launching a browser."""
    print("\nTesting cancellation before start...")
    candidates = [candidate("a"), candidate("b")]
    site = FakeSite(images={c.url: b"image" for c in candidates})
    token = CancellationToken()
    token.cancel()

    with tempfile.TemporaryDirectory() as tmp:
        summary, launcher = asyncio.run(run_downloads(site, candidates, tmp, cancel_token=token))
        assert not (Path(tmp) / PID).exists()

    assert summary.skipped_count == 2
    assert summary.success_count == summary.failure_count == 0
    assert summary.cancelled
    assert launcher.launch_count == 0
    print("✓ Nothing downloaded after cancellation!")


def test_cancellation_during_batch():
    """Work finished before cancel counts; nothing after the checkpoint is written."""
    print("\nTesting cancellation mid-batch...")
    candidates = [candidate(str(n)) for n in range(6)]
    images = {c.url: b"image" for c in candidates}
    images[candidates[1].url] = None
    token = CancellationToken()

    def cancel_on_fourth(url):
        if url == candidates[3].url:
            token.cancel()

    site = FakeSite(images=images, on_goto=cancel_on_fourth)

    with tempfile.TemporaryDirectory() as tmp:
        summary, _ = asyncio.run(run_downloads(site, candidates, tmp, cancel_token=token,
                                               max_instances=1))
        saved = sorted(p.name for p in (Path(tmp) / PID).iterdir())

    assert summary.cancelled
    assert summary.success_count == 2
    assert summary.failure_count == 1
    assert summary.skipped_count == 3
    assert summary.success_count + summary.failure_count + summary.skipped_count == len(candidates)
    assert saved == [f"{PID}_0.jpg", f"{PID}_2.jpg"]
    # The fetch already in flight finished, but its result was not written
    assert candidates[3].url in site.visits
    assert candidates[4].url not in site.visits
    print("✓ Mid-batch cancellation works!")


class CancelOnRead(CancellationToken):
    """Token that turns cancelled on its n-th read."""

    def __init__(self, cancel_on_read: int):
        super().__init__()
        self.reads = 0
        self.cancel_on_read = cancel_on_read

    @property
    def cancelled(self) -> bool:
        self.reads += 1
        if self.reads >= self.cancel_on_read:
            self.cancel("cancelled mid-download")
        return super().cancelled


def test_cancellation_checkpoints_before_fetch():
    """Cancelling before or after folder creation skips the fetch."""
    print("\nTesting cancellation checkpoints...")
    item = candidate("front")

    # Reads: before acquire, before mkdir, after mkdir
    for cancel_on_read, folder_created in [(2, False), (3, True)]:
        site = FakeSite(images={item.url: b"image"})
        token = CancelOnRead(cancel_on_read)

        with tempfile.TemporaryDirectory() as tmp:
            summary, launcher = asyncio.run(run_downloads(site, [item], tmp, cancel_token=token))
            assert (Path(tmp) / PID).exists() == folder_created
            assert not list(Path(tmp).glob(f"{PID}/*.jpg"))

        assert summary.skipped_count == 1, f"read {cancel_on_read}: {summary}"
        assert summary.success_count == summary.failure_count == 0
        assert summary.cancelled
        assert launcher.launch_count == 1
        assert item.url not in site.visits
        assert site.opened_pages == 0
        print(f"  Cancelled on read {cancel_on_read}: skipped, folder created={folder_created}")

    print("✓ Cancellation checkpoints work!")


def test_download_one_returns_success_flag():
    """download_one reports whether the file was written."""
    print("\nTesting download_one...")
    good, bad = candidate("good"), candidate("bad")
    site = FakeSite(images={good.url: b"image"})

    async def scenario(folder):
        logger = make_logger()
        async with BrowserPool(PoolConfig(max_instances=1), logger,
                               launcher=FakeLauncher(site)) as pool:
            downloader = ImageDownloader(pool, logger)
            async with pool.session() as session:
                return (await downloader.download_one(session, good, folder),
                        await downloader.download_one(session, bad, folder))

    with tempfile.TemporaryDirectory() as tmp:
        good_ok, bad_ok = asyncio.run(scenario(tmp))

    assert good_ok is True
    assert bad_ok is False
    print("✓ download_one works!")


def main():
    """Run all tests."""
    print("=" * 60)
    print("Image Downloader Tests")
    print("=" * 60)

    try:
        test_collision_avoidance()
        test_download_all_saves_per_product_folders()
        test_second_run_does_not_overwrite()
        test_fetch_failures_are_counted()
        test_cancelled_before_start_downloads_nothing()
        test_cancellation_during_batch()
        test_cancellation_checkpoints_before_fetch()
        test_download_one_returns_success_flag()

        print("\n" + "=" * 60)
        print("ALL TESTS PASSED! ✓")
        print("=" * 60)

    except AssertionError as e:
        print(f"\n✗ Test failed: {e}")
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
