"""Tests for logger setup and structured output."""

import json
import logging

from utils.logger import ColoredFormatter, setup_logger


def _close_handlers(logger):
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)


def test_setup_logger_writes_text_and_json_lines(tmp_path):
    log_file = tmp_path / "logs" / "scrape.log"
    structured_file = tmp_path / "logs" / "scrape.jsonl"
    logger = setup_logger(
        "scraper-test",
        level="DEBUG",
        log_file=str(log_file),
        console=False,
        structured_file=str(structured_file),
    )

    try:
        logger.info("plain message")
        logger.info(
            "Discovered 3 brands",
            extra={"event_type": "discovery", "event_data": {"discovered": 3}},
        )
    finally:
        _close_handlers(logger)

    text = log_file.read_text(encoding="utf-8")
    assert "[general] - plain message" in text
    assert "[discovery] - Discovered 3 brands" in text

    entries = [json.loads(line) for line in structured_file.read_text(encoding="utf-8").splitlines()]
    assert entries[0]["event_type"] == "general"
    assert entries[1]["event_data"] == {"discovered": 3}
    assert entries[1]["logger"] == "scraper-test"


def test_setup_logger_replaces_existing_handlers(tmp_path):
    first = setup_logger("scraper-dupe", log_file=str(tmp_path / "a.log"), console=False)
    second = setup_logger("scraper-dupe", log_file=str(tmp_path / "b.log"), console=False)

    try:
        assert first is second
        assert len(second.handlers) == 1
    finally:
        _close_handlers(second)


def test_colored_formatter_marks_event_type():
    formatter = ColoredFormatter("%(levelname_colored)s [%(event_type_colored)s] %(message)s")
    record = logging.LogRecord("scraper", logging.INFO, __file__, 1, "queued", None, None)
    record.event_type = "job"

    output = formatter.format(record)

    assert "JOB" in output
    assert output.endswith("queued")
