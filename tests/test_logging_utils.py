import json
import logging

from typerush.logging_utils import JsonFormatter, ColorFormatter, request_id_ctx


def _record(**extra):
    record = logging.LogRecord("typerush.crud", logging.INFO, __file__, 1, "run_redeemed", None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_includes_domain_fields_and_request_id():
    token = request_id_ctx.set("rid-1")
    try:
        line = JsonFormatter().format(_record(run_id="abc", game_mode=15, reason=None))
    finally:
        request_id_ctx.reset(token)
    data = json.loads(line)
    assert data["message"] == "run_redeemed"
    assert data["request_id"] == "rid-1"
    assert data["run_id"] == "abc"
    assert data["game_mode"] == 15
    assert "reason" not in data


def test_color_formatter_without_color_is_plain_text():
    line = ColorFormatter(use_color=False).format(
        _record(method="POST", path="/api/game-results", status=400, duration_ms=3, reason="Run session expired")
    )
    assert "\033[" not in line
    assert "POST /api/game-results 400 3ms" in line
    assert "reason=Run session expired" in line
