"""Tests for process output logs and logging setup."""

import gzip
import sys

import pytest
from loguru import logger

from proccompose.core.log_utils import check_and_rotate, get_log_files, parse_size, rotate_log
from proccompose.core.process import ProcessRunner
from proccompose.logs import setup_logging
from proccompose.models import ProcessSpec


class TestParseSize:
    @pytest.mark.parametrize(
        "value,expected",
        [("1024", 1024), ("10MB", 10 * 1024 * 1024), ("500kb", 500 * 1024), ("1.5 GB", int(1.5 * 1024**3))],
    )
    def test_sizes(self, value, expected):
        assert parse_size(value) == expected

    def test_invalid(self):
        with pytest.raises(ValueError, match="Invalid size"):
            parse_size("ten megs")


class TestLogRotation:
    """Tests for log rotation."""

    def test_rotation_triggered_by_size(self, tmp_path):
        """Log should rotate when size exceeds limit."""
        log_file = tmp_path / "web.log"
        log_file.write_text("x" * 11 * 1024)

        assert check_and_rotate(log_file, "10KB", 5) is True
        assert (tmp_path / "web.log.1").exists()
        assert not log_file.exists()

    def test_small_file_not_rotated(self, tmp_path):
        log_file = tmp_path / "web.log"
        log_file.write_text("small")

        assert check_and_rotate(log_file, "10KB", 5) is False
        assert log_file.exists()

    def test_max_rotated_files(self, tmp_path):
        """Should not keep more than max rotated files."""
        log_file = tmp_path / "web.log"

        for i in range(10):
            log_file.write_text(f"Content {i}")
            rotate_log(log_file, max_files=3)

        rotated = get_log_files(log_file)
        assert [idx for _, idx in rotated] == [1, 2, 3]
        assert (tmp_path / "web.log.1").read_text() == "Content 9"

    def test_zero_files_discards(self, tmp_path):
        log_file = tmp_path / "web.log"
        log_file.write_text("gone")

        assert rotate_log(log_file, max_files=0)
        assert list(tmp_path.iterdir()) == []

    def test_gzip_compression(self, tmp_path):
        """Older rotated files should be gzipped."""
        log_file = tmp_path / "web.log"

        for i in range(4):
            log_file.write_text(f"Content {i}")
            rotate_log(log_file, max_files=5, compress=True)

        gz_files = list(tmp_path.glob("*.gz"))
        assert len(gz_files) == 3

        for gz_file in gz_files:
            with gzip.open(gz_file, "rt") as f:
                assert "Content" in f.read()

    def test_runner_rotates_with_compression(self, tmp_path):
        """Launch-time rotation honours the compress setting."""
        (tmp_path / "web.log").write_text("previous run")
        (tmp_path / "web.log.1").write_text("older run")
        runner = ProcessRunner(
            ProcessSpec(name="web", command="true"),
            1,
            lambda event: None,
            logs_dir=tmp_path,
            log_max_size="1",
            log_compress=True,
        )

        runner._open_logs()
        runner._close_files()

        assert (tmp_path / "web.log.1").read_text() == "previous run"
        with gzip.open(tmp_path / "web.log.2.gz", "rt") as f:
            assert f.read() == "older run"
        assert "Starting process: web" in (tmp_path / "web.log").read_text()


class TestSetupLogging:
    @pytest.fixture(autouse=True)
    def restore_logger(self):
        yield
        logger.remove()
        logger.add(sys.stderr)

    def test_file_sink(self, tmp_path):
        log_file = tmp_path / "logs" / "proccompose.log"
        setup_logging(level="WARNING", log_file=log_file)

        logger.debug("debug goes to the file")

        assert "debug goes to the file" in log_file.read_text()

    def test_verbose_enables_debug(self, capsys):
        setup_logging(verbose=True)

        logger.debug("verbose message")

        assert "verbose message" in capsys.readouterr().err
