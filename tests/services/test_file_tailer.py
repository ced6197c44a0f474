"""Tests for the incremental file tailer.

Content is asserted on the joined callback output rather than on ``check``
return values, since the Watchdog observer may deliver a change before the
direct ``check`` call gets to it.
"""

import os
import threading
import time

import pytest

from terminal_orchestrator.services.file_tailer import MAX_PENDING_BYTES, FileTailer


@pytest.fixture
def tailer():
    tailer = FileTailer()
    yield tailer
    tailer.stop_all()


@pytest.fixture
def log_file(tmp_path):
    path = tmp_path / "pane.log"
    path.write_text("")
    return path


def _append(path, text):
    with open(path, "a") as f:
        f.write(text)


class TestWatch:
    """Tests for starting a tail."""

    def test_missing_file_raises(self, tailer, tmp_path):
        with pytest.raises(FileNotFoundError):
            tailer.watch(str(tmp_path / "missing.log"), lambda text: None)

    def test_existing_content_delivered_from_start(self, tailer, tmp_path):
        path = tmp_path / "existing.log"
        path.write_text("first line\n")
        received = []

        tailer.watch(str(path), received.append)
        tailer.check(str(path))

        assert "".join(received) == "first line\n"

    def test_oversized_file_tailed_from_end(self, tmp_path):
        tailer = FileTailer(max_file_size=10)
        path = tmp_path / "big.log"
        path.write_text("x" * 100 + "\n")
        received = []
        try:
            tailer.watch(str(path), received.append)
            assert tailer.get_offset(str(path)) == 101

            _append(path, "new stuff\n")
            tailer.check(str(path))

            assert "".join(received) == "new stuff\n"
        finally:
            tailer.stop_all()

    def test_watched_files(self, tailer, log_file):
        tailer.watch(str(log_file), lambda text: None)
        assert tailer.watched_files == [os.path.abspath(str(log_file))]
        assert tailer.observer is not None


class TestIncrementalDelivery:
    """Tests for offset tracking."""

    def test_appends_never_redelivered(self, tailer, log_file):
        received = []
        tailer.watch(str(log_file), received.append)

        _append(log_file, "one\n")
        tailer.check(str(log_file))
        _append(log_file, "two\n")
        tailer.check(str(log_file))
        tailer.check(str(log_file))

        assert "".join(received) == "one\ntwo\n"
        assert tailer.get_offset(str(log_file)) == len("one\ntwo\n")

    def test_unchanged_file_is_noop(self, tailer, log_file):
        received = []
        tailer.watch(str(log_file), received.append)

        assert tailer.check(str(log_file)) is False
        assert received == []

    def test_whitespace_only_not_delivered(self, tailer, log_file):
        received = []
        tailer.watch(str(log_file), received.append)

        _append(log_file, "\n\n")
        tailer.check(str(log_file))

        assert received == []
        assert tailer.get_offset(str(log_file)) == 2

    def test_truncation_resets_offset(self, tailer, log_file):
        received = []
        tailer.watch(str(log_file), received.append)
        _append(log_file, "hello world\n")
        tailer.check(str(log_file))

        log_file.write_text("new\n")
        tailer.check(str(log_file))
        tailer.check(str(log_file))

        assert "".join(received) == "hello world\nnew\n"
        assert tailer.get_offset(str(log_file)) == len("new\n")

    def test_independent_offsets(self, tailer, tmp_path):
        first = tmp_path / "a.log"
        second = tmp_path / "b.log"
        first.write_text("")
        second.write_text("")
        got_a, got_b = [], []
        tailer.watch(str(first), got_a.append)
        tailer.watch(str(second), got_b.append)

        _append(first, "aaa\n")
        _append(second, "b\n")
        tailer.check(str(first))
        tailer.check(str(second))

        assert "".join(got_a) == "aaa\n"
        assert "".join(got_b) == "b\n"

    def test_callback_error_is_contained(self, tailer, log_file):
        def explode(text):
            raise RuntimeError("bad consumer")

        tailer.watch(str(log_file), explode)
        _append(log_file, "line\n")
        tailer.check(str(log_file))

        assert tailer.get_offset(str(log_file)) == len("line\n")

    def test_unwatched_file_check(self, tailer, log_file):
        assert tailer.check(str(log_file)) is False


class TestStop:
    """Tests for releasing tails."""

    def test_stop_forgets_offset(self, tailer, log_file):
        tailer.watch(str(log_file), lambda text: None)

        assert tailer.stop(str(log_file)) is True
        assert tailer.get_offset(str(log_file)) is None
        assert tailer.stop(str(log_file)) is False

    def test_stop_all(self, tailer, log_file):
        tailer.watch(str(log_file), lambda text: None)
        tailer.stop_all()

        assert tailer.watched_files == []
        assert tailer.observer is None


class TestSharedSubscriptions:
    """Tests for several consumers tailing one file."""

    def test_late_subscriber_keeps_offset(self, tailer, log_file):
        first, second = [], []
        tailer.watch(str(log_file), first.append)
        _append(log_file, "early\n")
        tailer.check(str(log_file))

        tailer.watch(str(log_file), second.append)
        _append(log_file, "late\n")
        tailer.check(str(log_file))

        assert "".join(first) == "early\nlate\n"
        assert "".join(second) == "late\n"
        assert tailer.get_offset(str(log_file)) == len("early\nlate\n")

    def test_stopping_one_subscription_keeps_the_other(self, tailer, log_file):
        first, second = [], []
        sub_a = tailer.watch(str(log_file), first.append)
        tailer.watch(str(log_file), second.append)
        assert tailer.subscriber_count(str(log_file)) == 2

        assert tailer.stop(str(log_file), sub_a) is True
        _append(log_file, "after\n")
        tailer.check(str(log_file))

        assert tailer.subscriber_count(str(log_file)) == 1
        assert first == []
        assert "".join(second) == "after\n"

    def test_last_subscription_forgets_offset(self, tailer, log_file):
        sub = tailer.watch(str(log_file), lambda text: None)

        assert tailer.stop(str(log_file), sub) is True
        assert tailer.get_offset(str(log_file)) is None
        assert tailer.stop(str(log_file), sub) is False

    def test_unknown_subscription(self, tailer, log_file):
        tailer.watch(str(log_file), lambda text: None)

        assert tailer.stop(str(log_file), 9999) is False
        assert tailer.subscriber_count(str(log_file)) == 1


class TestPartialLines:
    """Tests for holding back incomplete lines."""

    def test_partial_line_held_until_newline(self, tailer, log_file):
        received = []
        tailer.watch(str(log_file), received.append)

        _append(log_file, "error TS2304: Cannot ")
        tailer.check(str(log_file))
        assert received == []

        _append(log_file, "find name 'x'.\n")
        tailer.check(str(log_file))

        assert received == ["error TS2304: Cannot find name 'x'.\n"]

    def test_only_complete_lines_delivered(self, tailer, log_file):
        received = []
        tailer.watch(str(log_file), received.append)

        _append(log_file, "one\ntw")
        tailer.check(str(log_file))
        _append(log_file, "o\n")
        tailer.check(str(log_file))

        assert received == ["one\n", "two\n"]

    def test_split_multibyte_character(self, tailer, log_file):
        encoded = "café failed\n".encode("utf-8")
        split = encoded.index(b"\xa9")
        received = []
        tailer.watch(str(log_file), received.append)

        with open(log_file, "ab") as f:
            f.write(encoded[:split])
        tailer.check(str(log_file))
        with open(log_file, "ab") as f:
            f.write(encoded[split:])
        tailer.check(str(log_file))

        assert "".join(received) == "café failed\n"

    def test_oversized_partial_line_flushed(self, tailer, log_file):
        received = []
        tailer.watch(str(log_file), received.append)

        _append(log_file, "x" * (MAX_PENDING_BYTES + 1))
        tailer.check(str(log_file))

        assert "".join(received) == "x" * (MAX_PENDING_BYTES + 1)

    def test_truncation_drops_partial_line(self, tailer, log_file):
        received = []
        tailer.watch(str(log_file), received.append)
        _append(log_file, "complete\nhalf a li")
        tailer.check(str(log_file))

        log_file.write_text("")
        tailer.check(str(log_file))
        _append(log_file, "fresh\n")
        tailer.check(str(log_file))

        assert received == ["complete\n", "fresh\n"]


class TestSlowConsumer:
    """Tests for watching while a callback is still running."""

    def test_watch_other_directory_during_slow_callback(self, tailer, tmp_path):
        first_dir = tmp_path / "first"
        second_dir = tmp_path / "second"
        first_dir.mkdir()
        second_dir.mkdir()
        first = first_dir / "a.log"
        second = second_dir / "b.log"
        first.write_text("")
        second.write_text("")

        entered = threading.Event()
        release = threading.Event()

        def slow(text):
            entered.set()
            release.wait(timeout=10)

        tailer.watch(str(first), slow)
        _append(first, "build started\n")
        checker = threading.Thread(target=tailer.check, args=(str(first),), daemon=True)
        checker.start()
        assert entered.wait(timeout=5)

        watcher = threading.Thread(
            target=tailer.watch, args=(str(second), lambda text: None), daemon=True
        )
        watcher.start()
        time.sleep(0.2)
        release.set()

        watcher.join(timeout=5)
        checker.join(timeout=5)
        assert not watcher.is_alive()
        assert not checker.is_alive()
        assert os.path.abspath(str(second)) in tailer.watched_files
