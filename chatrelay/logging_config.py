"""
Process-wide logging for the relay.

``setup_logging()`` is called once by the ASGI entrypoint and by the terminal
client. Records of the ``chatrelay`` logger tree are written to one file per
day under ``LOG_DIR``; everything (uvicorn included) is echoed to the console.
"""

import datetime
import logging
from pathlib import Path
from typing import IO, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .settings import settings

LOGGER_NAME = "chatrelay"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
LOG_FILE_PREFIX = "relay"

_configured = False


def _resolve_timezone(name: Optional[str]) -> datetime.tzinfo:
    if name:
        try:
            return ZoneInfo(name)
        except ZoneInfoNotFoundError:
            logging.getLogger(LOGGER_NAME).warning("Unknown LOG_TIMEZONE %r, using local time", name)
    return datetime.datetime.now().astimezone().tzinfo or datetime.timezone.utc


class LocalTimezoneFormatter(logging.Formatter):
    """
    Formatter rendering ``asctime`` as ISO-8601 (milliseconds) in a fixed zone.

    The zone comes from ``LOG_TIMEZONE``; an unset or unknown name means the
    host's local zone.
    """

    def __init__(self, fmt: str = LOG_FORMAT, *, timezone_name: Optional[str] = None) -> None:
        super().__init__(fmt)
        self.tz = _resolve_timezone(timezone_name)

    def formatTime(self, record: logging.LogRecord, datefmt: Optional[str] = None) -> str:
        stamp = datetime.datetime.fromtimestamp(record.created, tz=self.tz)
        return stamp.strftime(datefmt) if datefmt else stamp.isoformat(timespec="milliseconds")


class DailyFileHandler(logging.StreamHandler):
    """
    Writes to ``<log_dir>/<prefix>-YYYY-MM-DD.log`` and switches file when the
    date changes. After each switch only the newest ``backup_count`` files are
    kept (0 keeps everything).
    """

    def __init__(self, log_dir: Path, *, prefix: str = LOG_FILE_PREFIX, backup_count: int = 7) -> None:
        super().__init__(stream=None)
        self.log_dir = Path(log_dir)
        self.prefix = prefix
        self.backup_count = backup_count
        self.day: Optional[datetime.date] = None
        self.stream: Optional[IO[str]] = None

    def path_for(self, day: datetime.date) -> Path:
        return self.log_dir / f"{self.prefix}-{day.isoformat()}.log"

    def _switch_to(self, day: datetime.date) -> None:
        if self.stream is not None:
            self.stream.close()
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.stream = self.path_for(day).open("a", encoding="utf-8")
        self.day = day
        self._prune()

    def _prune(self) -> None:
        if self.backup_count <= 0:
            return
        files = sorted(self.log_dir.glob(f"{self.prefix}-*.log"))
        for stale in files[: -self.backup_count]:
            try:
                stale.unlink()
            except OSError as exc:
                # Logging from inside a handler would recurse into it.
                self.handleError(logging.makeLogRecord({"msg": f"cannot remove {stale}: {exc}"}))

    def emit(self, record: logging.LogRecord) -> None:
        today = datetime.date.today()
        if self.day != today or self.stream is None:
            try:
                self._switch_to(today)
            except OSError:
                self.handleError(record)
                return
        super().emit(record)

    def close(self) -> None:
        self.acquire()
        try:
            if self.stream is not None:
                self.stream.close()
                self.stream = None
        finally:
            self.release()
            logging.Handler.close(self)


def setup_logging() -> None:
    """Install the file and console handlers; later calls are no-ops."""
    global _configured
    if _configured:
        return

    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    formatter = LocalTimezoneFormatter(timezone_name=settings.log_timezone)

    relay_logger = logging.getLogger(LOGGER_NAME)
    relay_logger.setLevel(level)
    file_handler = DailyFileHandler(Path(settings.log_dir), backup_count=settings.log_backup_days)
    file_handler.setFormatter(formatter)
    relay_logger.addHandler(file_handler)

    root = logging.getLogger()
    root.setLevel(level)
    if not any(type(h) is logging.StreamHandler for h in root.handlers):
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        root.addHandler(console)

    _configured = True


logger = logging.getLogger(LOGGER_NAME)


__all__ = ["DailyFileHandler", "LocalTimezoneFormatter", "logger", "setup_logging"]
