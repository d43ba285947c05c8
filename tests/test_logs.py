import json
import logging

from graph_bridge.logs import JSONLogFormatter


def make_record(**extra) -> logging.LogRecord:
    record = logging.LogRecord("graph-bridge.auth", logging.INFO, __file__, 1, "Authentication initialized", None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_event_data_is_merged_into_the_line():
    line = JSONLogFormatter().format(make_record(event_data={"auth_mode": "interactive"}))

    entry = json.loads(line)
    assert entry["level"] == "INFO"
    assert entry["logger"] == "graph-bridge.auth"
    assert entry["message"] == "Authentication initialized"
    assert entry["auth_mode"] == "interactive"


def test_non_json_values_are_stringified():
    line = JSONLogFormatter().format(make_record(event_data={"scopes": {"User.Read"}}))

    assert json.loads(line)["scopes"] == "{'User.Read'}"
