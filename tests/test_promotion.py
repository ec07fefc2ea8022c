import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from audio_stage.directory_codes import DirectoryCodeAllocator
from audio_stage.errors import PreconditionError, PromotionError, PromotionInProgressError, RecordNotFoundError
from audio_stage.fs_utils import safe_move
from audio_stage.models import ReviewStatus
from audio_stage.promotion import Promoter
from audio_stage.staging import StagingService
from audio_stage.store import LibraryStore

from support import led_zeppelin_tracks, snapshot, stage_albums

ALBUM = Path("LZ/Led Zeppelin/1971 - Led Zeppelin IV")


class PromotionTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name).resolve()
        self.production = self.root / "library"
        self.store = LibraryStore(self.root / "library.sqlite3")
        self.allocator = DirectoryCodeAllocator(self.root / "codes.sqlite3")
        stage_albums(self.root, self.store, self.allocator, led_zeppelin_tracks(self.root / "inbound"))
        self.record = self.store.list_records()[0]
        self.staged = self.root / "staging" / ALBUM
        self.service = StagingService(self.store, Promoter(self.store, self.production))

    def tearDown(self) -> None:
        self.allocator.close()
        self.store.close()
        self._tmp.cleanup()

    def test_approved_record_is_promoted(self) -> None:
        self.service.approve(self.record.id, "alice")
        result = self.service.promote(self.record.id)

        target = self.production / ALBUM
        self.assertEqual(result.production_path, target)
        self.assertEqual(result.tracks, 3)
        self.assertTrue(result.artist_created)
        self.assertEqual(
            sorted(path.name for path in target.iterdir()),
            ["01 - Black Dog.mp3", "02 - Rock and Roll.mp3", "03 - The Battle of Evermore.mp3", "album.stage.json"],
        )
        self.assertEqual(self.store.catalog_counts(), {"artists": 1, "albums": 1, "tracks": 3})
        album = self.store.album_by_directory(str(ALBUM))
        self.assertEqual(album.year, 1971)
        self.assertEqual(
            [track.relative_path for track in self.store.tracks_for_album(album.id)][0],
            str(ALBUM / "01 - Black Dog.mp3"),
        )
        with self.assertRaises(RecordNotFoundError):
            self.store.get_record(self.record.id)
        self.assertFalse((self.root / "staging" / "LZ").exists())
        self.assertTrue((self.root / "staging").exists())

    def test_rejected_record_cannot_be_promoted(self) -> None:
        rejected = self.service.reject(self.record.id, "alice", "wrong year")
        self.assertEqual(rejected.status, ReviewStatus.REJECTED)
        self.assertEqual(rejected.notes, "wrong year")
        before = snapshot(self.staged)

        with self.assertRaises(PreconditionError):
            self.service.promote(self.record.id)

        self.assertEqual(snapshot(self.staged), before)
        self.assertEqual(self.store.catalog_counts(), {"artists": 0, "albums": 0, "tracks": 0})
        self.assertEqual(self.store.get_record(self.record.id).status, ReviewStatus.REJECTED)

    def test_pending_record_cannot_be_promoted(self) -> None:
        with self.assertRaises(PreconditionError):
            self.service.promote(self.record.id)

    def test_failed_move_rolls_back_everything(self) -> None:
        self.service.approve(self.record.id, "alice")
        failing = self.staged / "02 - Rock and Roll.mp3"

        def flaky_move(src, dst, expected_checksum=None, **kwargs):
            if src == failing:
                raise OSError(28, "No space left on device")
            return safe_move(src, dst, expected_checksum, **kwargs)

        before = snapshot(self.staged)
        with patch("audio_stage.promotion.safe_move", side_effect=flaky_move):
            with self.assertRaises(PromotionError):
                self.service.promote(self.record.id)

        self.assertEqual(snapshot(self.staged), before)
        self.assertEqual(snapshot(self.production), {})
        self.assertEqual(self.store.catalog_counts(), {"artists": 0, "albums": 0, "tracks": 0})
        record = self.store.get_record(self.record.id)
        self.assertEqual(record.status, ReviewStatus.APPROVED)
        self.assertIsNone(self.store.claim_of(self.record.id))

        self.service.promote(self.record.id)
        self.assertEqual(self.store.catalog_counts()["tracks"], 3)

    def test_rolled_back_promotion_keeps_tracks_already_in_production(self) -> None:
        self.service.approve(self.record.id, "alice")
        target = self.production / ALBUM
        target.mkdir(parents=True)
        identical = target / "01 - Black Dog.mp3"
        identical.write_bytes((self.staged / "01 - Black Dog.mp3").read_bytes())
        conflicting = target / "02 - Rock and Roll.mp3"
        conflicting.write_bytes(b"a different recording")
        before_staged = snapshot(self.staged)
        before_production = snapshot(self.production)

        with self.assertRaises(PromotionError):
            self.service.promote(self.record.id)

        self.assertEqual(snapshot(self.staged), before_staged)
        self.assertEqual(snapshot(self.production), before_production)
        self.assertEqual(self.store.catalog_counts(), {"artists": 0, "albums": 0, "tracks": 0})
        self.assertEqual(self.store.get_record(self.record.id).status, ReviewStatus.APPROVED)
        self.assertIsNone(self.store.claim_of(self.record.id))

        conflicting.unlink()
        result = self.service.promote(self.record.id)
        self.assertEqual(result.tracks, 3)
        self.assertFalse((self.staged / "01 - Black Dog.mp3").exists())
        self.assertEqual(identical.read_bytes(), before_staged["01 - Black Dog.mp3"])

    def test_interrupted_copies_in_production_are_removed(self) -> None:
        self.service.approve(self.record.id, "alice")
        target = self.production / ALBUM
        target.mkdir(parents=True)
        stale = target / "03 - The Battle of Evermore.mp3.partial"
        stale.write_bytes(b"half")

        self.service.promote(self.record.id)

        self.assertFalse(stale.exists())
        self.assertEqual(
            sorted(path.name for path in target.iterdir()),
            ["01 - Black Dog.mp3", "02 - Rock and Roll.mp3", "03 - The Battle of Evermore.mp3", "album.stage.json"],
        )

    def test_tampered_sidecar_blocks_promotion(self) -> None:
        self.service.approve(self.record.id, "alice")
        sidecar = self.staged / "album.stage.json"
        sidecar.write_text(sidecar.read_text(encoding="utf-8").replace("1971", "1975"), encoding="utf-8")

        with self.assertRaises(PromotionError):
            self.service.promote(self.record.id)

        self.assertEqual(self.store.catalog_counts(), {"artists": 0, "albums": 0, "tracks": 0})
        self.assertTrue((self.staged / "01 - Black Dog.mp3").exists())
        self.assertIsNone(self.store.claim_of(self.record.id))

    def test_concurrent_promotion_is_refused(self) -> None:
        self.service.approve(self.record.id, "alice")
        self.assertTrue(self.store.claim_promotion(self.record.id, "other-worker"))

        with self.assertRaises(PromotionInProgressError):
            self.service.promote(self.record.id)
        with self.assertRaises(PreconditionError):
            self.service.reject(self.record.id, "bob", "changed my mind")
        self.assertEqual(self.store.claim_of(self.record.id), "other-worker")

    def test_album_already_in_catalog(self) -> None:
        self.service.approve(self.record.id, "alice")
        self.service.promote(self.record.id)

        stage_albums(self.root, self.store, self.allocator, led_zeppelin_tracks(self.root / "inbound"))
        second = self.store.list_records()[0]
        self.service.approve(second.id, "alice")
        with self.assertRaises(PromotionError):
            self.service.promote(second.id)
        self.assertEqual(self.store.catalog_counts(), {"artists": 1, "albums": 1, "tracks": 3})
        self.assertTrue((self.staged / "01 - Black Dog.mp3").exists())


if __name__ == "__main__":
    unittest.main()
