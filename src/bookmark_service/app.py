from __future__ import annotations

import atexit
import logging
import os
from pathlib import Path
from typing import Any

from flask import Flask, jsonify, request
from werkzeug.exceptions import BadRequest, HTTPException

from .db import BookmarkStore, StorageError, init_db
from .enrichment import (
    DEFAULT_TIMEOUT_SECONDS,
    DEFAULT_USER_AGENT,
    DEFAULT_WHOIS_API_URL,
    MetadataEnricher,
    MetadataError,
    build_client,
)
from .rules_engine import (
    INPUT_INVALID,
    ValidationError,
    prepare_create,
    prepare_guid,
    prepare_list,
    prepare_update,
)

API_PREFIX = "/api/v1/bookmarks"
NOT_FOUND = "ERROR_NOTFOUND"
METADATA_ERROR = "ERROR_METADATA"
DATABASE_ERROR = "DATABASE_ERROR"
BACKEND_ERROR = "BACKEND_ERROR"
HTTP_ERROR = "HTTP_ERROR"


def _db_path(app: Flask) -> Path:
    return Path(app.config["DATABASE_PATH"])


def _configure_observability(app: Flask, app_name: str) -> None:
    app.config["APP_NAME"] = app_name
    level_name = os.environ.get("APP_LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    app.logger.setLevel(level)
    logging.getLogger("bookmark_service").setLevel(level)


def _error_response(code: str, description: str, status: int = 400) -> Any:
    return jsonify({"errors": [{"code": code, "description": description}]}), status


def _validation_response(errors: list[ValidationError]) -> Any:
    return jsonify({"errors": [error.to_dict() for error in errors]}), 400


def _configure_error_handlers(app: Flask) -> None:
    @app.errorhandler(BadRequest)
    def handle_bad_request(error: BadRequest) -> Any:
        app.logger.warning("bad_request", extra={"path": request.path, "method": request.method, "error": str(error)})
        return _error_response(INPUT_INVALID, "invalid request payload")

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException) -> Any:
        app.logger.warning(
            "http_error",
            extra={"path": request.path, "method": request.method, "status_code": error.code, "error": error.description},
        )
        return _error_response(HTTP_ERROR, str(error.description), error.code or 500)

    @app.errorhandler(StorageError)
    def handle_storage_error(error: StorageError) -> Any:
        app.logger.error("database_error", extra={"path": request.path, "method": request.method, "error": str(error)})
        return _error_response(DATABASE_ERROR, str(error))

    @app.errorhandler(MetadataError)
    def handle_metadata_error(error: MetadataError) -> Any:
        app.logger.warning("metadata_error", extra={"path": request.path, "error": str(error)})
        return _error_response(METADATA_ERROR, str(error))

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception) -> Any:
        app.logger.exception("unexpected_error", extra={"path": request.path, "method": request.method})
        return _error_response(BACKEND_ERROR, str(error))


def _json_body() -> dict[str, Any]:
    if not request.get_data(cache=True):
        return {}
    body = request.get_json(force=True, silent=False)
    if body is None:
        return {}
    if not isinstance(body, dict):
        raise BadRequest("JSON body must be an object")
    return body


def _log_validation_failure(app: Flask, errors: list[ValidationError]) -> None:
    app.logger.info(
        "validation_failed",
        extra={
            "path": request.path,
            "method": request.method,
            "codes": [error.code for error in errors],
        },
    )


def create_app(database_path: str | None = None, enricher: MetadataEnricher | None = None) -> Flask:
    app = Flask(__name__)
    _configure_observability(app, "bookmarks")
    _configure_error_handlers(app)
    app.config["DATABASE_PATH"] = database_path or os.environ.get("BOOKMARKS_DB_PATH", "./bookmarks.db")
    app.config["WHOIS_API_URL"] = os.environ.get("WHOIS_API_URL", DEFAULT_WHOIS_API_URL)
    app.config["METADATA_TIMEOUT_SECONDS"] = float(
        os.environ.get("METADATA_TIMEOUT_SECONDS", str(DEFAULT_TIMEOUT_SECONDS))
    )
    app.config["METADATA_USER_AGENT"] = os.environ.get("METADATA_USER_AGENT", DEFAULT_USER_AGENT)
    init_db(_db_path(app))

    store = BookmarkStore(_db_path(app))
    if enricher is None:
        client = build_client(
            timeout_seconds=app.config["METADATA_TIMEOUT_SECONDS"],
            user_agent=app.config["METADATA_USER_AGENT"],
        )
        atexit.register(client.close)
        enricher = MetadataEnricher(client, whois_api_url=app.config["WHOIS_API_URL"])
    app.extensions["bookmark_store"] = store
    app.extensions["bookmark_enricher"] = enricher

    @app.get("/healthz")
    def healthz() -> Any:
        return jsonify({"status": "ok", "app": app.config["APP_NAME"]})

    @app.get(API_PREFIX)
    def list_bookmarks() -> Any:
        outcome = prepare_list(request.args.to_dict())
        if not outcome.ok:
            _log_validation_failure(app, outcome.errors)
            return _validation_response(outcome.errors)
        count, rows = store.find_many(outcome.value)
        return jsonify({"length": count, "data": [row.to_dict() for row in rows]})

    @app.post(API_PREFIX)
    def create_bookmark() -> Any:
        outcome = prepare_create(_json_body())
        if not outcome.ok:
            _log_validation_failure(app, outcome.errors)
            return _validation_response(outcome.errors)
        bookmark = outcome.value
        store.create(bookmark)
        app.logger.info("bookmark_created", extra={"guid": bookmark.guid, "created_at": bookmark.created_at})
        return jsonify({"data": {"guid": bookmark.guid, "createdAt": bookmark.created_at}}), 201

    @app.patch(f"{API_PREFIX}/<guid>")
    def update_bookmark(guid: str) -> Any:
        outcome = prepare_update(guid, _json_body())
        if not outcome.ok:
            _log_validation_failure(app, outcome.errors)
            return _validation_response(outcome.errors)
        update = outcome.value
        if not store.update(update.guid, update.fields):
            return _error_response(NOT_FOUND, "bookmark not found", 404)
        app.logger.info("bookmark_updated", extra={"guid": update.guid, "fields": sorted(update.fields)})
        return jsonify({"status": "ok"})

    @app.delete(f"{API_PREFIX}/<guid>")
    def delete_bookmark(guid: str) -> Any:
        outcome = prepare_guid(guid)
        if not outcome.ok:
            _log_validation_failure(app, outcome.errors)
            return _validation_response(outcome.errors)
        if not store.delete(outcome.value):
            return _error_response(NOT_FOUND, "bookmark not found", 404)
        app.logger.info("bookmark_deleted", extra={"guid": outcome.value})
        return jsonify({"status": "deleted"})

    @app.get(f"{API_PREFIX}/<guid>")
    def bookmark_details(guid: str) -> Any:
        outcome = prepare_guid(guid)
        if not outcome.ok:
            _log_validation_failure(app, outcome.errors)
            return _validation_response(outcome.errors)
        bookmark = store.find_by_key(outcome.value)
        if bookmark is None:
            return _error_response(NOT_FOUND, "bookmark not found", 404)
        return jsonify(enricher.describe(bookmark.link))

    return app
