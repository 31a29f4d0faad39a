"""
Logging for the gateway.

Records from the "ztoapi" logger go to one file per day under LOG_DIR and,
together with uvicorn's, to the console. Timestamps and the day boundary
both follow LOG_TIMEZONE. Credentials are masked where they are logged,
with `mask_secret` and `sanitize_headers_for_log`.
"""

import datetime
import logging
from collections.abc import Mapping
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .settings import Settings, settings


_LOGGING_CONFIGURED = False

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
LOG_FILE_PREFIX = "ztoapi"

REDACTED = "***REDACTED***"

_SENSITIVE_HEADER_NAMES = {
    "authorization",
    "proxy-authorization",
    "cookie",
    "set-cookie",
    "x-signature",
}


def resolve_timezone(name: str | None) -> datetime.tzinfo:
    """
    LOG_TIMEZONE as a tzinfo; the host zone when unset or unknown.
    """
    if name:
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            pass
    return datetime.datetime.now().astimezone().tzinfo or datetime.timezone.utc


class TimezoneFormatter(logging.Formatter):
    def __init__(self, fmt: str = LOG_FORMAT, *, tz: datetime.tzinfo | None = None) -> None:
        super().__init__(fmt)
        self.tz = tz or resolve_timezone(None)

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        stamp = datetime.datetime.fromtimestamp(record.created, tz=self.tz)
        if datefmt:
            return stamp.strftime(datefmt)
        return stamp.isoformat(timespec="milliseconds")


class DailyFileHandler(logging.StreamHandler):
    """
    Appends to <log_dir>/<prefix>-YYYY-MM-DD.log, switching files when a
    record belongs to a new day in `tz`. Files dated more than `keep_days`
    days back are deleted on each switch. Nothing is opened before the
    first record.
    """

    def __init__(
        self,
        log_dir: Path,
        *,
        prefix: str = LOG_FILE_PREFIX,
        keep_days: int = 7,
        tz: datetime.tzinfo | None = None,
    ) -> None:
        super().__init__()
        self.stream = None
        self.log_dir = Path(log_dir)
        self.prefix = prefix
        self.keep_days = keep_days
        self.tz = tz or resolve_timezone(None)
        self.day: datetime.date | None = None

    def path_for(self, day: datetime.date) -> Path:
        return self.log_dir / f"{self.prefix}-{day.isoformat()}.log"

    def emit(self, record: logging.LogRecord) -> None:
        day = datetime.datetime.fromtimestamp(record.created, tz=self.tz).date()
        if day != self.day:
            try:
                self._switch_to(day)
            except OSError:
                self.handleError(record)
                return
        super().emit(record)

    def _switch_to(self, day: datetime.date) -> None:
        self.log_dir.mkdir(parents=True, exist_ok=True)
        previous = self.setStream(open(self.path_for(day), "a", encoding="utf-8"))
        if previous is not None:
            previous.close()
        self.day = day
        self._prune(day)

    def _prune(self, today: datetime.date) -> None:
        if self.keep_days <= 0:
            return
        oldest_kept = today - datetime.timedelta(days=self.keep_days - 1)
        for path in self.log_dir.glob(f"{self.prefix}-*.log"):
            try:
                day = datetime.date.fromisoformat(path.stem[len(self.prefix) + 1 :])
            except ValueError:
                continue
            if day < oldest_kept:
                try:
                    path.unlink()
                except OSError:
                    continue

    def close(self) -> None:
        self.acquire()
        try:
            if self.stream is not None:
                self.flush()
                self.stream.close()
                self.stream = None
        finally:
            self.release()
        super().close()


def mask_secret(value: str | None) -> str:
    """
    Render a credential for logs: keeps only the last four characters.
    """
    if not value:
        return "<empty>"
    tail = value[-4:] if len(value) > 8 else ""
    return f"***{tail}"


def sanitize_headers_for_log(
    headers: Mapping[str, str],
    *,
    extra_sensitive: tuple[str, ...] = (),
) -> dict[str, str]:
    """
    Copy headers into a plain dict with credentials replaced by REDACTED.

    Header names that look like tokens or keys are masked as well, so the
    per-platform override headers (X-ZAI-Token etc.) never reach the log.
    """
    sensitive = _SENSITIVE_HEADER_NAMES | {h.lower() for h in extra_sensitive}
    sanitized: dict[str, str] = {}
    for name, value in headers.items():
        lower_name = name.lower()
        if lower_name in sensitive or any(
            marker in lower_name for marker in ("token", "key", "secret")
        ):
            sanitized[name] = REDACTED
        else:
            sanitized[name] = value
    return sanitized


def setup_logging(cfg: Settings = settings) -> None:
    """
    Attach the daily file handler to the "ztoapi" logger and make sure the
    root logger has a console handler. Safe to call more than once.
    """
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return

    level = logging.getLevelName(str(cfg.log_level).upper())
    if not isinstance(level, int):
        level = logging.INFO
    tz = resolve_timezone(cfg.log_timezone)
    formatter = TimezoneFormatter(tz=tz)

    file_handler = DailyFileHandler(Path(cfg.log_dir), tz=tz)
    file_handler.setFormatter(formatter)
    app_logger = logging.getLogger("ztoapi")
    app_logger.setLevel(level)
    app_logger.addHandler(file_handler)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    if not any(type(h) is logging.StreamHandler for h in root_logger.handlers):
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        root_logger.addHandler(console)

    _LOGGING_CONFIGURED = True


logger = logging.getLogger("ztoapi")
