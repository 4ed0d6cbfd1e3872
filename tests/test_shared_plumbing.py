import json
import logging

from hybridpos_shared.logging import JsonFormatter


def test_json_formatter_carries_extra_fields():
    rec = logging.LogRecord("pos.sync", logging.WARNING, __file__, 1, "entry %s exhausted", (7,), None)
    rec.local_id = "dev-1"
    out = json.loads(JsonFormatter().format(rec))
    assert out["message"] == "entry 7 exhausted"
    assert out["level"] == "WARNING"
    assert out["logger"] == "pos.sync"
    assert out["local_id"] == "dev-1"
    assert "request_id" not in out
    assert "args" not in out


def test_cors_origins_fall_back_to_dev_server():
    from hybridpos_shared.cors import parse_origins

    assert parse_origins("") == ["http://localhost:5173", "http://127.0.0.1:5173"]
    assert parse_origins(" https://pos.example , ,https://boss.example") == [
        "https://pos.example",
        "https://boss.example",
    ]
