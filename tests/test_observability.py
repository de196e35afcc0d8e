from __future__ import annotations

from datetime import datetime, timezone
import io
import logging
from pathlib import Path
import sys

import pytest

from reviewloop import observability
from reviewloop.observability import configure_logging, log_event


def test_configure_logging_quiet_mode_is_idempotent() -> None:
    configure_logging(verbose=False)
    logger = logging.getLogger("reviewloop")
    assert logger.propagate is False
    assert logger.level > logging.CRITICAL
    assert len(logger.handlers) == 1
    assert isinstance(logger.handlers[0], logging.NullHandler)

    configure_logging(verbose=None)
    assert len(logger.handlers) == 1


def test_configure_logging_verbose_mode_uses_stderr() -> None:
    configure_logging(verbose=True)
    logger = logging.getLogger("reviewloop")
    assert logger.level == logging.INFO
    assert len(logger.handlers) == 1
    handler = logger.handlers[0]
    assert isinstance(handler, logging.StreamHandler)
    assert handler.stream is sys.stderr
    assert handler.formatter is not None
    assert "%(threadName)s" in handler.formatter._fmt

    configure_logging(verbose=True)
    assert len(logger.handlers) == 1


def test_low_mode_keeps_lifecycle_events_and_warnings(
    capsys: pytest.CaptureFixture[str],
) -> None:
    configure_logging(verbose="low")
    logger = logging.getLogger("reviewloop.tests.low")

    logger.info("event=poll_completed dispatched=0")
    logger.info("event=label_transitioned pr=o/r#1 target=bot-ci-pending")
    logger.info("plain_message=ignored")
    logger.warning("event=review_batch_failed pr_number=1")

    stderr = capsys.readouterr().err
    assert "event=poll_completed" not in stderr
    assert "event=label_transitioned pr=o/r#1" in stderr
    assert "plain_message=ignored" not in stderr
    assert "event=review_batch_failed" in stderr


def test_configure_logging_writes_utc_daily_file(tmp_path: Path) -> None:
    configure_logging(verbose="high", state_dir=tmp_path)
    logging.getLogger("reviewloop.tests.file").info("event=pipeline_dispatched pr_number=2")

    date_key = datetime.now(timezone.utc).strftime("%Y-%m-%d")
    log_path = tmp_path / "logs" / f"{date_key}.log"
    assert log_path.exists()
    assert "event=pipeline_dispatched pr_number=2" in log_path.read_text(encoding="utf-8")


def test_configure_logging_rejects_unknown_mode() -> None:
    with pytest.raises(ValueError, match="Unsupported verbose mode"):
        configure_logging(verbose="noisy")


def test_daily_file_handler_reports_emit_errors(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    handler = observability._UtcDailyFileHandler(base_dir=tmp_path)
    called: dict[str, object] = {}

    def boom() -> None:
        raise RuntimeError("boom")

    monkeypatch.setattr(handler, "_stream_for_current_date", boom)
    monkeypatch.setattr(handler, "handleError", lambda record: called.setdefault("record", record))

    record = logging.LogRecord(
        name="reviewloop.tests",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="event=x",
        args=(),
        exc_info=None,
    )
    handler.emit(record)
    assert "record" in called
    handler.close()


def test_log_event_formats_and_normalizes_fields() -> None:
    logger = logging.getLogger("reviewloop.tests.format")
    logger.handlers.clear()
    stream = io.StringIO()
    logger.addHandler(logging.StreamHandler(stream))
    logger.setLevel(logging.INFO)
    logger.propagate = False

    log_event(
        logger,
        "test_event",
        b=2,
        a="multi\nline value",
        none_value=None,
        bool_value=True,
        empty="   ",
        files=("a.go", "b.go"),
        long_text="x" * 121,
        complex_value={"k": "v"},
    )

    message = stream.getvalue().strip()
    assert message.startswith("event=test_event ")
    assert message.index("a=") < message.index("b=")
    assert 'a="multi line value"' in message
    assert "none_value=null" in message
    assert "bool_value=true" in message
    assert "empty=<empty>" in message
    assert "files=a.go,b.go" in message
    assert "complex_value=<dict>" in message
    assert "..." in message
    logger.handlers.clear()


def test_build_event_message_quotes_values_with_equals() -> None:
    message = observability._build_event_message(event="e", fields={"summary": "a=b"})
    assert message == 'event=e summary="a=b"'
