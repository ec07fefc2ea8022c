import asyncio
import tempfile
import threading
import unittest
from pathlib import Path

from audio_stage.watchdog_handler import WatchHandler, run_watch


class _Event:
    def __init__(self, src_path, *, is_directory: bool = False, dest_path=None) -> None:
        self.src_path = src_path
        self.is_directory = is_directory
        if dest_path is not None:
            self.dest_path = dest_path


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestWatchHandler(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = _Clock()
        self.handler = WatchHandler([".mp3", ".flac"], clock=self.clock)

    def test_bytes_src_path_is_decoded(self) -> None:
        self.handler.on_created(_Event(b"/inbound/Artist/Album/01.mp3"))  # type: ignore[arg-type]
        self.clock.now = 31.0
        self.assertTrue(self.handler.settled(30.0))

    def test_ignores_partials_and_other_extensions(self) -> None:
        self.handler.on_created(_Event("/inbound/Artist/Album/cover.jpg"))  # type: ignore[arg-type]
        self.handler.on_modified(_Event("/inbound/Artist/Album/01.mp3.partial"))  # type: ignore[arg-type]
        self.clock.now = 100.0
        self.assertFalse(self.handler.settled(30.0))

    def test_settles_once_after_quiet_period(self) -> None:
        self.handler.on_modified(_Event("/inbound/Artist/Album/01.flac"))  # type: ignore[arg-type]
        self.clock.now = 10.0
        self.assertFalse(self.handler.settled(30.0))
        self.handler.on_modified(_Event("/inbound/Artist/Album/02.flac"))  # type: ignore[arg-type]
        self.clock.now = 35.0
        self.assertFalse(self.handler.settled(30.0))
        self.clock.now = 41.0
        self.assertTrue(self.handler.settled(30.0))
        self.assertFalse(self.handler.settled(30.0))

    def test_moved_uses_destination(self) -> None:
        self.handler.on_moved(  # type: ignore[arg-type]
            _Event("/inbound/tmp/01.mp3.partial", dest_path="/inbound/Artist/Album/01.mp3")
        )
        self.assertTrue(self.handler.settled(0.0))

    def test_directory_events_count(self) -> None:
        self.handler.on_created(_Event("/inbound/New Album", is_directory=True))  # type: ignore[arg-type]
        self.assertTrue(self.handler.settled(0.0))


class TestRunWatch(unittest.IsolatedAsyncioTestCase):
    async def test_runs_initial_cycle_and_stops(self) -> None:
        stop = threading.Event()
        cycles: list[int] = []

        async def cycle() -> None:
            cycles.append(len(cycles))
            stop.set()

        with tempfile.TemporaryDirectory() as tmp:
            await asyncio.wait_for(
                run_watch(Path(tmp), [".mp3"], 0.0, cycle, stop_event=stop, poll_seconds=0.01),
                timeout=5.0,
            )
        self.assertEqual(cycles, [0])


if __name__ == "__main__":
    unittest.main()
