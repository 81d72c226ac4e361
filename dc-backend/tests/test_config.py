import json
import logging

import pytest

from discount_app.config import Settings
from discount_app.utils.request_context import ConnectionIdFilter, JsonFormatter, connection_id_ctx_var


def test_defaults_are_valid():
    settings = Settings(_env_file=None)

    settings.validate_settings()
    assert settings.port == 5001
    assert settings.max_generate_count == 2000
    assert settings.code_lengths == [7, 8]
    assert settings.codes_file == "discountCodes.json"


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("DISCOUNT_PORT", "6001")
    monkeypatch.setenv("DISCOUNT_ALLOWED_CODE_LENGTHS", "6, 10")

    settings = Settings(_env_file=None)

    assert settings.port == 6001
    assert settings.code_lengths == [6, 10]


@pytest.mark.parametrize(
    "overrides",
    [
        {"port": 70000},
        {"store_backend": "redis"},
        {"max_generate_count": 0},
        {"allowed_code_lengths": ""},
        {"allowed_code_lengths": "seven"},
        {"allowed_code_lengths": "7,300"},
        {"environment": "production", "store_backend": "memory"},
    ],
)
def test_invalid_settings_rejected(overrides):
    settings = Settings(_env_file=None, **overrides)

    with pytest.raises(RuntimeError):
        settings.validate_settings()


def test_json_formatter_includes_connection_id():
    record = logging.LogRecord("discount_app.test", logging.INFO, __file__, 1, "hello %s", ("world",), None)
    token = connection_id_ctx_var.set("abc123")
    try:
        ConnectionIdFilter().filter(record)
    finally:
        connection_id_ctx_var.reset(token)

    payload = json.loads(JsonFormatter().format(record))

    assert payload["message"] == "hello world"
    assert payload["connection_id"] == "abc123"
    assert payload["level"] == "INFO"
