from __future__ import annotations

import io
import logging

from memochat.core.logging import RedactionFilter, setup_logging


def _record(msg: str, args) -> logging.LogRecord:
    return logging.LogRecord("httpx", logging.INFO, __file__, 1, msg, args, None)


def test_numeric_arguments_keep_their_type():
    record = _record('HTTP Request: %s %s "%s %d %s"', ("POST", "http://x", "HTTP/1.1", 200, "OK"))

    assert RedactionFilter().filter(record) is True

    assert record.args[3] == 200
    assert record.getMessage() == 'HTTP Request: POST http://x "HTTP/1.1 200 OK"'


def test_string_arguments_are_redacted():
    record = _record("calling with %s", ("Authorization: Bearer abcdefghijklmnop",))

    RedactionFilter().filter(record)

    assert record.getMessage() == "calling with Authorization: Bearer ***"


def test_mapping_arguments_stay_a_mapping():
    record = _record("%(key)s used %(count)d times", ({"key": "sk-abcdefghij", "count": 3},))

    RedactionFilter().filter(record)

    assert record.args == {"key": "sk-***", "count": 3}
    assert record.getMessage() == "sk-*** used 3 times"


def test_root_handlers_format_integer_arguments():
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    root = logging.getLogger()
    previous_level = root.level
    root.addHandler(handler)
    try:
        setup_logging("INFO")
        root.setLevel(logging.INFO)
        assert any(isinstance(item, RedactionFilter) for item in handler.filters)
        logging.getLogger("memochat.outbound").info(
            'HTTP Request: %s %s "%s %d %s"', "GET", "http://x", "HTTP/1.1", 404, "Not Found"
        )
    finally:
        root.removeHandler(handler)
        root.setLevel(previous_level)

    assert 'HTTP Request: GET http://x "HTTP/1.1 404 Not Found"' in stream.getvalue()
