from __future__ import annotations

import json
import logging

from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from dm_automation.app_logging import ACCESS_LOGGER_NAME, APP_LOGGER_NAME, JsonFormatter, _scrub, init_logging


def _create_app() -> FastAPI:
    app = FastAPI()

    @app.get("/echo")
    def echo(request: Request) -> dict[str, str]:
        return {"rid": request.state.request_id}

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    init_logging(app, level="DEBUG", skip_paths={"/health"})
    return app


def test_access_log_echoes_request_id_and_scrubs_headers(caplog) -> None:
    client = TestClient(_create_app())

    with caplog.at_level(logging.INFO, logger=ACCESS_LOGGER_NAME):
        response = client.get("/echo", headers={"X-Request-Id": "abc", "Authorization": "Bearer secret"})

        assert response.status_code == 200
        assert response.headers["X-Request-Id"] == "abc"
        assert response.json() == {"rid": "abc"}

        records = [record for record in caplog.records if record.name == ACCESS_LOGGER_NAME]
        data = json.loads(records[0].getMessage())
        assert data["request_id"] == "abc"
        assert data["status"] == 200
        assert data["headers"]["authorization"] == "***"

        caplog.clear()
        client.get("/health")
        assert [record for record in caplog.records if record.name == ACCESS_LOGGER_NAME] == []


def test_generated_request_id_when_header_missing() -> None:
    client = TestClient(_create_app())

    response = client.get("/echo")

    assert len(response.headers["X-Request-Id"]) == 32
    assert response.json()["rid"] == response.headers["X-Request-Id"]


def test_init_logging_sets_level_and_json_formatter() -> None:
    logger = logging.getLogger(APP_LOGGER_NAME)

    init_logging(level="warning", json_logs=True)

    assert logger.level == logging.WARNING
    assert logger.handlers
    assert all(isinstance(handler.formatter, JsonFormatter) for handler in logger.handlers)
    init_logging(level="INFO")
    assert logger.level == logging.INFO


def test_json_formatter_output() -> None:
    record = logging.LogRecord(APP_LOGGER_NAME, logging.WARNING, __file__, 1, "degraded %s", ("timeout",), None)

    data = json.loads(JsonFormatter().format(record))

    assert data["level"] == "WARNING"
    assert data["logger"] == APP_LOGGER_NAME
    assert data["message"] == "degraded timeout"


def test_scrub_masks_nested_sensitive_keys() -> None:
    assert _scrub({"X-Goog-Api-Key": "k", "nested": [{"cookie": "c", "ok": 1}]}) == {
        "X-Goog-Api-Key": "***",
        "nested": [{"cookie": "***", "ok": 1}],
    }
