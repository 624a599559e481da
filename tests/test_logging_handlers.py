import logging
import os
from datetime import datetime, timedelta
from pathlib import Path

from readaloud.logging_handlers import DailyLogFileHandler, daily_log_path, prune_log_files


def test_daily_log_file_handler_creates_expected_path(tmp_path) -> None:
    current = datetime(2024, 5, 26, 12, 34, 56).astimezone()
    handler = DailyLogFileHandler(
        directory=tmp_path / "reader",
        prefix="reader",
        current_time=current,
    )
    try:
        expected_file = (
            tmp_path / "reader" / "2024-05-26" / "reader_2024-05-26_12-34-56.log"
        ).resolve()
        file_path = Path(handler.baseFilename)
        assert file_path == expected_file
        assert file_path.exists()

        record = logging.LogRecord(
            name="test",
            level=logging.INFO,
            pathname=__file__,
            lineno=0,
            msg="chunk 3 fetched",
            args=(),
            exc_info=None,
        )
        handler.emit(record)

        assert "chunk 3 fetched" in file_path.read_text(encoding="utf-8")
    finally:
        handler.close()


def test_daily_log_path_uses_local_date_folder(tmp_path) -> None:
    current = datetime(2023, 1, 2, 3, 4, 5).astimezone()

    path = daily_log_path(tmp_path, "readaloud", current)

    assert path.parent.name == "2023-01-02"
    assert path.name == "readaloud_2023-01-02_03-04-05.log"


def test_prune_log_files(tmp_path) -> None:
    """Files older than the retention window are deleted, newer ones stay."""
    log_dir = tmp_path / "logs" / "reader"
    log_dir.mkdir(parents=True)
    now = datetime.now()

    old_file = log_dir / "old.log"
    old_file.write_text("old content")
    old_time = (now - timedelta(days=3)).timestamp()
    os.utime(old_file, (old_time, old_time))

    recent_file = log_dir / "recent.log"
    recent_file.write_text("recent content")
    recent_time = (now - timedelta(days=1)).timestamp()
    os.utime(recent_file, (recent_time, recent_time))

    current_file = log_dir / "current.log"
    current_file.write_text("current content")

    deleted = prune_log_files(log_dir, retention_hours=48, now=now)

    assert deleted == 1
    assert not old_file.exists()
    assert recent_file.exists()
    assert current_file.exists()


def test_prune_log_files_disabled(tmp_path) -> None:
    log_dir = tmp_path / "logs"
    log_dir.mkdir()
    old_file = log_dir / "old.log"
    old_file.write_text("content")
    old_time = (datetime.now() - timedelta(days=100)).timestamp()
    os.utime(old_file, (old_time, old_time))

    assert prune_log_files(log_dir, retention_hours=0) == 0
    assert old_file.exists()


def test_prune_log_files_removes_empty_day_directories(tmp_path) -> None:
    log_dir = tmp_path / "logs"
    day_dir = log_dir / "2024-01-01"
    day_dir.mkdir(parents=True)
    old_file = day_dir / "old.log"
    old_file.write_text("content")
    old_time = (datetime.now() - timedelta(days=100)).timestamp()
    os.utime(old_file, (old_time, old_time))

    assert prune_log_files(log_dir, retention_hours=48) == 1
    assert not day_dir.exists()


def test_prune_log_files_missing_directory(tmp_path) -> None:
    assert prune_log_files(tmp_path / "nowhere", retention_hours=24) == 0
