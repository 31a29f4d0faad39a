import datetime
import logging

from ztoapi.logging_config import DailyFileHandler, TimezoneFormatter, resolve_timezone

UTC = datetime.timezone.utc


def _record(created: datetime.datetime, msg: str = "hello") -> logging.LogRecord:
    record = logging.LogRecord("ztoapi.test", logging.INFO, __file__, 1, msg, None, None)
    record.created = created.timestamp()
    return record


def test_formatter_renders_configured_timezone():
    formatter = TimezoneFormatter(tz=datetime.timezone(datetime.timedelta(hours=8)))
    record = _record(datetime.datetime(2025, 1, 1, 20, 30, tzinfo=UTC))

    assert formatter.formatTime(record).startswith("2025-01-02T04:30:00.000+08:00")


def test_unknown_timezone_falls_back_to_host_zone():
    assert resolve_timezone("Not/AZone") == resolve_timezone(None)


def test_daily_handler_switches_file_by_record_day(tmp_path):
    handler = DailyFileHandler(tmp_path, tz=UTC)
    handler.setFormatter(logging.Formatter("%(message)s"))
    try:
        handler.handle(_record(datetime.datetime(2025, 3, 1, 23, 59, tzinfo=UTC), "late"))
        handler.handle(_record(datetime.datetime(2025, 3, 2, 0, 1, tzinfo=UTC), "early"))
    finally:
        handler.close()

    assert (tmp_path / "ztoapi-2025-03-01.log").read_text(encoding="utf-8") == "late\n"
    assert (tmp_path / "ztoapi-2025-03-02.log").read_text(encoding="utf-8") == "early\n"


def test_daily_handler_prunes_files_past_retention(tmp_path):
    for day in ("2025-01-01", "2025-01-07", "2025-01-08", "2025-01-09"):
        (tmp_path / f"ztoapi-{day}.log").write_text("old\n", encoding="utf-8")
    (tmp_path / "ztoapi-notes.log").write_text("keep\n", encoding="utf-8")

    handler = DailyFileHandler(tmp_path, keep_days=3, tz=UTC)
    try:
        handler.handle(_record(datetime.datetime(2025, 1, 10, 12, 0, tzinfo=UTC)))
    finally:
        handler.close()

    assert sorted(p.name for p in tmp_path.iterdir()) == [
        "ztoapi-2025-01-08.log",
        "ztoapi-2025-01-09.log",
        "ztoapi-2025-01-10.log",
        "ztoapi-notes.log",
    ]


def test_handler_opens_nothing_before_first_record(tmp_path):
    log_dir = tmp_path / "logs"
    handler = DailyFileHandler(log_dir, tz=UTC)
    handler.close()

    assert not log_dir.exists()
