# test_logger_config.py
import json
import logging

from script_variables.models.scope import CharacterScope
from script_variables.utils import logger_config
from script_variables.utils.logger_config import EVENT_COMMANDS, EVENT_ERROR, format_event, log_error


def test_event_carries_script_and_scope():
    entry = json.loads(format_event(EVENT_COMMANDS, {"log_count": 2}, "s1", CharacterScope("alice")))

    assert entry["event_type"] == "VARIABLE_COMMANDS"
    assert entry["script_id"] == "s1"
    assert entry["scope"] == str(CharacterScope("alice"))
    assert entry["details"] == {"log_count": 2}


def test_event_without_scope_omits_keys():
    entry = json.loads(format_event("SNAPSHOT_BACKUP", {"scripts": 1}))
    assert "script_id" not in entry
    assert "scope" not in entry


def test_log_error_writes_event_and_error_line(caplog):
    with caplog.at_level(logging.INFO, logger=logger_config.logger.name):
        log_error("存储不可用", {"key": "global"}, script_id="s1")

    event = json.loads(caplog.records[0].getMessage())
    assert event["event_type"] == EVENT_ERROR
    assert event["script_id"] == "s1"
    assert event["details"]["context"] == {"key": "global"}
    assert caplog.records[1].levelno == logging.ERROR
    assert caplog.records[1].getMessage().startswith("[s1] 存储不可用")
