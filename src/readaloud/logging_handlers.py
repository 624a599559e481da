"""File logging under one directory per day, plus retention pruning."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional


def daily_log_path(directory: Path, prefix: str, now: datetime) -> Path:
    """``<directory>/<YYYY-MM-DD>/<prefix>_<YYYY-MM-DD_HH-MM-SS>.log`` in local time."""
    local_time = now.astimezone()
    return (
        directory
        / local_time.strftime("%Y-%m-%d")
        / f"{prefix}_{local_time.strftime('%Y-%m-%d_%H-%M-%S')}.log"
    )


class DailyLogFileHandler(logging.FileHandler):
    """File handler writing to a fresh, date-stamped file for each process run."""

    def __init__(
        self,
        directory: str | Path = "logs/reader",
        *,
        prefix: str = "readaloud",
        encoding: str | None = "utf-8",
        delay: bool = False,
        current_time: Optional[datetime] = None,
    ) -> None:
        log_path = daily_log_path(
            Path(directory).resolve(), prefix, current_time or datetime.now().astimezone()
        )
        log_path.parent.mkdir(parents=True, exist_ok=True)
        super().__init__(log_path, mode="a", encoding=encoding, delay=delay)


def prune_log_files(
    directory: str | Path,
    retention_hours: int,
    logger: logging.Logger | None = None,
    *,
    now: Optional[datetime] = None,
) -> int:
    """Delete ``*.log`` files older than ``retention_hours`` and empty day folders.

    A retention of 0 disables pruning. Returns the number of files deleted.
    """
    if retention_hours <= 0:
        return 0
    root = Path(directory).resolve()
    if not root.exists():
        return 0

    cutoff = (now or datetime.now()).timestamp() - timedelta(hours=retention_hours).total_seconds()
    deleted = 0
    for log_file in root.rglob("*.log"):
        try:
            if log_file.stat().st_mtime < cutoff:
                log_file.unlink()
                deleted += 1
        except OSError as exc:
            if logger:
                logger.warning("Failed to delete %s: %s", log_file, exc)

    for day_dir in root.iterdir():
        if day_dir.is_dir() and not any(day_dir.iterdir()):
            try:
                day_dir.rmdir()
            except OSError as exc:
                if logger:
                    logger.debug("Could not remove %s: %s", day_dir, exc)

    if logger and deleted:
        logger.info("Log cleanup removed %d file(s) from %s", deleted, root)
    return deleted


__all__ = ["DailyLogFileHandler", "daily_log_path", "prune_log_files"]
