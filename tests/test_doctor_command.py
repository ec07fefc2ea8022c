import tempfile
import unittest
from pathlib import Path

from audio_stage.commands.doctor import run
from audio_stage.config import (
    DirectoryCodeSettings,
    ProcessorSettings,
    PromotionSettings,
    ScannerSettings,
    Settings,
    StoreSettings,
)
from audio_stage.models import StagingRecord
from audio_stage.store import LibraryStore, utcnow


def _settings(tmp: Path, **overrides) -> Settings:
    values = dict(
        scanner=ScannerSettings(source_root=tmp / "inbound", catalog_dir=tmp / "scans"),
        processor=ProcessorSettings(staging_root=tmp / "staging"),
        directory_codes=DirectoryCodeSettings(path=tmp / "codes.sqlite3"),
        store=StoreSettings(path=tmp / "library.sqlite3"),
        promotion=PromotionSettings(production_root=tmp / "library"),
    )
    values.update(overrides)
    return Settings(**values)


class TestDoctorCommand(unittest.TestCase):
    def test_reports_store_catalog_and_promotion(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            tmp = Path(tmpdir)
            for name in ("inbound", "staging", "library"):
                (tmp / name).mkdir()
            store = LibraryStore(tmp / "library.sqlite3")
            try:
                store.insert_record(
                    StagingRecord(
                        scan_id="scan_a",
                        staging_path=tmp / "staging" / "LZ",
                        metadata_file=tmp / "staging" / "LZ" / "album.stage.json",
                        artist_name="Led Zeppelin",
                        album_name="Led Zeppelin IV",
                        track_count=8,
                        total_size=100,
                        checksum="0" * 64,
                        processed_at=utcnow(),
                    )
                )
            finally:
                store.close()

            report = run(_settings(tmp), config_path=tmp / "config.yaml")
            self.assertTrue(report.ok)
            joined = "\n".join(report.checks)
            self.assertIn("Config: OK", joined)
            self.assertIn("Catalog dir: WARNING", joined)
            self.assertIn("pending_review=1", joined)
            self.assertIn("Catalog: OK (0 artists, 0 albums, 0 tracks)", joined)
            self.assertIn("Promotion: ENABLED", joined)
            self.assertIn("Rate limit: DISABLED", joined)
            self.assertIn("Interrupted copies: OK", joined)

    def test_reports_error_for_missing_source_root(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            tmp = Path(tmpdir)
            (tmp / "staging").mkdir()
            report = run(_settings(tmp))
            self.assertFalse(report.ok)
            joined = "\n".join(report.checks)
            self.assertIn("Source root: ERROR", joined)
            self.assertIn("Config: WARNING", joined)

    def test_reports_error_without_staging_root(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            tmp = Path(tmpdir)
            (tmp / "inbound").mkdir()
            report = run(_settings(tmp, processor=ProcessorSettings(rate_limit=5)))
            self.assertFalse(report.ok)
            joined = "\n".join(report.checks)
            self.assertIn("Staging root: ERROR", joined)
            self.assertIn("Rate limit: ENABLED (5 files/s)", joined)

    def test_warns_about_interrupted_copies(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            tmp = Path(tmpdir)
            (tmp / "inbound").mkdir()
            album = tmp / "staging" / "LZ" / "Led Zeppelin" / "1971 - Led Zeppelin IV"
            album.mkdir(parents=True)
            (album / "01 - Black Dog.mp3.partial").write_bytes(b"half")
            report = run(_settings(tmp, store=StoreSettings(), promotion=PromotionSettings()))
            self.assertTrue(report.ok)
            joined = "\n".join(report.checks)
            self.assertIn("Interrupted copies: WARNING (1 .partial file(s)", joined)
            self.assertIn("Store: DISABLED", joined)
            self.assertIn("Promotion: DISABLED", joined)

    def test_counts_interrupted_copies_in_production_root(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            tmp = Path(tmpdir)
            for name in ("inbound", "staging"):
                (tmp / name).mkdir()
            album = tmp / "library" / "LZ" / "Led Zeppelin" / "1971 - Led Zeppelin IV"
            album.mkdir(parents=True)
            (album / "02 - Rock and Roll.mp3.partial").write_bytes(b"half")
            report = run(_settings(tmp, store=StoreSettings()))
            joined = "\n".join(report.checks)
            self.assertIn("Interrupted copies: WARNING (1 .partial file(s)", joined)
            self.assertFalse((tmp / "codes.sqlite3").exists())


if __name__ == "__main__":
    unittest.main()
