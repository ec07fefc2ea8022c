import asyncio
import errno
import tempfile
import threading
import unittest
from pathlib import Path
from typing import Optional
from unittest.mock import patch

from audio_stage.config import ProcessorSettings
from audio_stage.directory_codes import DirectoryCodeAllocator
from audio_stage.errors import RelocationError, StageError
from audio_stage.fs_utils import safe_move
from audio_stage.models import ReviewStatus, StagingRecord, ValidationReason
from audio_stage.processor import AlbumStatus, Processor
from audio_stage.rate_limit import RateLimiter
from audio_stage.sidecar import read_sidecar
from audio_stage.store import LibraryStore, utcnow

from support import build_catalog, make_track, processor_settings, snapshot

LZ_DIR = "Led Zeppelin/1971 - Led Zeppelin IV"
LZ_STAGED = Path("LZ/Led Zeppelin/1971 - Led Zeppelin IV")


class _FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds


class _RecordingLimiter(RateLimiter):
    def __init__(self, rate: int, clock: _FakeClock) -> None:
        super().__init__(rate, clock=clock, sleep=clock.sleep)
        self.granted: list[float] = []

    def acquire(self, cancel_event: Optional[threading.Event] = None) -> bool:
        allowed = super().acquire(cancel_event)
        self.granted.append(self._clock())
        return allowed


class ProcessorTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name).resolve()
        self.inbound = self.root / "inbound"
        self.staging = self.root / "staging"
        self.allocator = DirectoryCodeAllocator(self.root / "codes.sqlite3")
        self.store = LibraryStore(self.root / "library.sqlite3")
        entries = [
            make_track(self.inbound, f"{LZ_DIR}/01 Black Dog.mp3", title="Black Dog", track=1, year=1971),
            make_track(self.inbound, f"{LZ_DIR}/02 Rock and Roll.mp3", title="Rock and Roll", track=2, year=1971),
            make_track(self.inbound, f"{LZ_DIR}/03 Evermore.mp3", title="The Battle of Evermore", track=3),
            make_track(
                self.inbound,
                "Portishead/1994 - Dummy/01 Mysterons.mp3",
                artist="Portishead",
                album="Dummy",
                title="Mysterons",
                track=1,
                year=1994,
            ),
        ]
        broken = make_track(self.inbound, "Broken/garbage.mp3")
        broken.mark_invalid(ValidationReason.UNREADABLE_CONTAINER, "garbage")
        entries.append(broken)
        self.catalog = build_catalog(self.root / "scans", self.inbound, entries)

    def tearDown(self) -> None:
        self.catalog.close()
        self.allocator.close()
        self.store.close()
        self._tmp.cleanup()

    def _run(self, settings: Optional[ProcessorSettings] = None, store: bool = True):
        processor = Processor(
            settings or processor_settings(self.staging),
            self.catalog,
            self.allocator,
            store=self.store if store else None,
        )
        report = asyncio.run(processor.run())
        return report, {result.album: result for result in report.results}

    def test_albums_are_staged_with_sidecar_and_record(self) -> None:
        report, results = self._run()

        self.assertEqual(report.processed, 2)
        self.assertEqual(report.failed, 0)
        self.assertEqual(report.skipped, 1)
        self.assertEqual(report.tracks_moved, 4)
        album_dir = self.staging / LZ_STAGED
        self.assertEqual(results["Led Zeppelin IV"].staging_path, album_dir)
        self.assertEqual(
            sorted(path.name for path in album_dir.iterdir()),
            ["01 - Black Dog.mp3", "02 - Rock and Roll.mp3", "03 - The Battle of Evermore.mp3", "album.stage.json"],
        )
        self.assertFalse((self.inbound / "Led Zeppelin").exists())
        self.assertTrue((self.inbound / "Broken" / "garbage.mp3").exists())

        records = self.store.list_records(status=ReviewStatus.PENDING_REVIEW)
        self.assertEqual(len(records), 2)
        record = next(r for r in records if r.album_name == "Led Zeppelin IV")
        self.assertEqual(record.track_count, 3)
        self.assertEqual(record.scan_id, self.catalog.scan_id)
        sidecar = read_sidecar(record.metadata_file, record.checksum)
        self.assertEqual(sidecar.artist.directory_code, "LZ")
        self.assertEqual(sidecar.album.year, 1971)
        self.assertEqual([track.file_name for track in sidecar.tracks][0], "01 - Black Dog.mp3")
        self.assertTrue(sidecar.tracks[0].original_path.endswith("01 Black Dog.mp3"))
        self.assertEqual(sidecar.validation.warnings, [])

    def test_dry_run_changes_nothing(self) -> None:
        before_files = snapshot(self.inbound)
        before_store = (self.root / "library.sqlite3").read_bytes()
        before_codes = (self.root / "codes.sqlite3").read_bytes()

        report, results = self._run(processor_settings(self.staging, dry_run=True))

        self.assertTrue(report.dry_run)
        self.assertEqual(report.processed, 2)
        self.assertEqual(results["Led Zeppelin IV"].staging_path, self.staging / LZ_STAGED)
        self.assertEqual(snapshot(self.inbound), before_files)
        self.assertFalse(self.staging.exists())
        self.assertEqual((self.root / "library.sqlite3").read_bytes(), before_store)
        self.assertEqual((self.root / "codes.sqlite3").read_bytes(), before_codes)
        self.assertEqual(self.store.list_records(), [])
        self.assertEqual(self.allocator.mappings(), {})

    def test_conflicting_destination_fails_only_that_album(self) -> None:
        target = self.staging / LZ_STAGED / "01 - Black Dog.mp3"
        target.parent.mkdir(parents=True)
        target.write_bytes(b"a different recording")

        report, results = self._run()

        self.assertEqual(results["Led Zeppelin IV"].status, AlbumStatus.FAILED)
        self.assertIn("different content", results["Led Zeppelin IV"].error)
        self.assertEqual(results["Dummy"].status, AlbumStatus.PROCESSED)
        self.assertTrue((self.inbound / LZ_DIR / "01 Black Dog.mp3").exists())
        self.assertEqual(target.read_bytes(), b"a different recording")
        self.assertEqual([r.album_name for r in self.store.list_records()], ["Dummy"])

    def test_failed_move_rolls_back_album(self) -> None:
        failing = self.inbound / LZ_DIR / "02 Rock and Roll.mp3"

        def flaky_move(src, dst, expected_checksum=None, **kwargs):
            if src == failing:
                raise RelocationError("disk full", src, dst)
            return safe_move(src, dst, expected_checksum, **kwargs)

        before = snapshot(self.inbound / "Led Zeppelin")
        with patch("audio_stage.processor.safe_move", side_effect=flaky_move):
            report, results = self._run()

        self.assertEqual(results["Led Zeppelin IV"].status, AlbumStatus.FAILED)
        self.assertEqual(results["Dummy"].status, AlbumStatus.PROCESSED)
        self.assertEqual(snapshot(self.inbound / "Led Zeppelin"), before)
        self.assertFalse((self.staging / LZ_STAGED).exists())
        self.assertEqual(len(self.store.list_records()), 1)

    def test_failed_album_keeps_sources_of_already_present_tracks(self) -> None:
        source = self.inbound / LZ_DIR / "01 Black Dog.mp3"
        target = self.staging / LZ_STAGED / "01 - Black Dog.mp3"
        target.parent.mkdir(parents=True)
        target.write_bytes(source.read_bytes())
        failing = self.inbound / LZ_DIR / "03 Evermore.mp3"

        def flaky_move(src, dst, expected_checksum=None, **kwargs):
            if src == failing:
                raise RelocationError("disk full", src, dst)
            return safe_move(src, dst, expected_checksum, **kwargs)

        before = snapshot(self.inbound / "Led Zeppelin")
        with patch("audio_stage.processor.safe_move", side_effect=flaky_move):
            report, results = self._run()

        self.assertEqual(results["Led Zeppelin IV"].status, AlbumStatus.FAILED)
        self.assertEqual(snapshot(self.inbound / "Led Zeppelin"), before)
        self.assertEqual(target.read_bytes(), source.read_bytes())

    def test_cancelled_albums_are_counted(self) -> None:
        cancel = threading.Event()
        cancel.set()
        processor = Processor(
            processor_settings(self.staging), self.catalog, self.allocator, store=self.store, cancel_event=cancel
        )
        report = asyncio.run(processor.run())

        summary = report.as_dict()
        self.assertTrue(report.cancelled)
        self.assertEqual(summary["albums_cancelled"], 2)
        self.assertEqual(summary["albums_skipped"], 1)
        self.assertEqual(
            summary["albums_processed"]
            + summary["albums_failed"]
            + summary["albums_skipped"]
            + summary["albums_cancelled"],
            len(summary["albums"]),
        )
        self.assertFalse(self.staging.exists())
        self.assertEqual(self.store.list_records(), [])

    def test_every_move_waits_on_the_shared_rate_limiter(self) -> None:
        clock = _FakeClock()
        limiter = _RecordingLimiter(2, clock)
        settings = ProcessorSettings(staging_root=self.staging, workers=1, rate_limit=2)
        processor = Processor(settings, self.catalog, self.allocator, store=self.store, rate_limiter=limiter)

        report = asyncio.run(processor.run())

        self.assertEqual(report.tracks_moved, 4)
        self.assertEqual(len(limiter.granted), 4)
        self.assertEqual(limiter.granted[:2], [100.0, 100.0])
        self.assertGreaterEqual(limiter.granted[2], 101.0)
        for index, start in enumerate(limiter.granted):
            in_window = [stamp for stamp in limiter.granted[index:] if stamp - start < 1.0]
            self.assertLessEqual(len(in_window), 2)

    def test_interrupted_run_resumes(self) -> None:
        source = self.inbound / LZ_DIR / "01 Black Dog.mp3"
        target = self.staging / LZ_STAGED / "01 - Black Dog.mp3"
        target.parent.mkdir(parents=True)
        target.write_bytes(source.read_bytes())
        stale = target.parent / "02 - Rock and Roll.mp3.partial"
        stale.write_bytes(b"half")

        report, results = self._run()

        result = results["Led Zeppelin IV"]
        self.assertEqual(result.status, AlbumStatus.PROCESSED)
        self.assertEqual(result.strategies, {"resumed": 1, "rename": 2})
        self.assertFalse(source.exists())
        self.assertFalse(stale.exists())

    def test_cross_device_moves_are_verified_copies(self) -> None:
        orig_rename = Path.rename
        inbound = self.inbound

        def rename_side_effect(self_path: Path, target: Path):
            if inbound in self_path.parents:
                raise OSError(errno.EXDEV, "Cross-device link")
            return orig_rename(self_path, target)

        with patch("pathlib.Path.rename", rename_side_effect):
            report, results = self._run()

        self.assertEqual(results["Led Zeppelin IV"].strategies, {"copy": 3})
        self.assertEqual(report.failed, 0)
        self.assertEqual(list((self.staging / LZ_STAGED).glob("*.partial")), [])

    def test_existing_staging_record_blocks_album(self) -> None:
        album_dir = self.staging / LZ_STAGED
        self.store.insert_record(
            StagingRecord(
                scan_id="older_scan",
                staging_path=album_dir,
                metadata_file=album_dir / "album.stage.json",
                artist_name="Led Zeppelin",
                album_name="Led Zeppelin IV",
                track_count=3,
                total_size=1,
                checksum="0" * 64,
                processed_at=utcnow(),
            )
        )
        report, results = self._run()
        self.assertEqual(results["Led Zeppelin IV"].status, AlbumStatus.FAILED)
        self.assertTrue((self.inbound / LZ_DIR / "01 Black Dog.mp3").exists())

    def test_runs_without_store(self) -> None:
        report, results = self._run(store=False)
        self.assertEqual(report.processed, 2)
        self.assertIsNone(results["Dummy"].record_id)
        self.assertTrue((self.staging / LZ_STAGED / "album.stage.json").exists())

    def test_staging_root_is_required(self) -> None:
        with self.assertRaises(StageError):
            Processor(ProcessorSettings(), self.catalog, self.allocator)


if __name__ == "__main__":
    unittest.main()
