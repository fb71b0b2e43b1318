"""HTTP surface of the forit server.

Endpoints:

* ``GET /tasks?hostname=H&customer=C&environment=E`` - ordered task list for
  the host, with an ``ETag`` (hex SHA-256 of the body) honouring
  ``If-None-Match``.
* ``GET /playbooks?hostname=H`` - same contract; ``customer`` and
  ``environment`` are optional and all buckets are searched when omitted.
* ``POST /results`` - task results from an agent, one object or a list.
* ``GET /inventory`` - every host that has contacted the server.

There is no authentication and no TLS. Anyone who can reach this port can
make every polling agent run arbitrary shell commands as root. Put the
server behind a reverse proxy that authenticates clients.
"""

from __future__ import annotations

from typing import Optional
import hashlib
import json
import logging

from flask import Flask, Response, jsonify, request
from werkzeug.exceptions import HTTPException

from .corpus import CorpusManager
from .errors import FilesystemError
from .inventory import InventoryStore
from .types import Task, TaskResult

logger = logging.getLogger(__name__)

OUTPUT_PREVIEW = 200


def encode_tasks(tasks: list[Task]) -> bytes:
    """Deterministic JSON body for ``tasks``; identical input gives identical bytes."""

    return json.dumps([task.to_dict() for task in tasks], separators=(",", ":")).encode("utf-8")


def compute_etag(body: bytes) -> str:
    return hashlib.sha256(body).hexdigest()


def etag_matches(header: Optional[str], etag: str) -> bool:
    if not header:
        return False
    for candidate in header.split(","):
        candidate = candidate.strip()
        if candidate.startswith("W/"):
            candidate = candidate[2:]
        candidate = candidate.strip('"')
        if candidate == "*" or candidate == etag:
            return True
    return False


def _truncate(text: str, limit: int = OUTPUT_PREVIEW) -> str:
    text = text.replace("\n", " ").strip()
    return (text[: limit - 3] + "...") if len(text) > limit else text


def _bad_request(message: str):
    return jsonify({"error": message}), 400


def create_app(corpus: CorpusManager, inventory: InventoryStore) -> Flask:
    app = Flask(__name__)

    def register_contact(hostname: str, environment: Optional[str]) -> None:
        remote = request.remote_addr or ""
        port = request.environ.get("REMOTE_PORT")
        if port and ":" not in remote:
            remote = f"{remote}:{port}"
        try:
            inventory.update(hostname, remote, environment)
        except FilesystemError as exc:
            logger.error("Failed to update inventory for %s: %s", hostname, exc)

    def task_response(tasks: list[Task]) -> Response:
        body = encode_tasks(tasks)
        etag = compute_etag(body)
        if etag_matches(request.headers.get("If-None-Match"), etag):
            response = Response(status=304)
        else:
            response = Response(body, status=200, mimetype="application/json")
        response.headers["ETag"] = etag
        return response

    @app.route("/tasks", methods=["GET"])
    def get_tasks():
        params = {key: request.args.get(key, "").strip() for key in ("hostname", "customer", "environment")}
        missing = [key for key, value in params.items() if not value]
        if missing:
            return _bad_request(f"missing required parameter(s): {', '.join(missing)}")
        register_contact(params["hostname"], params["environment"])
        tasks = corpus.tasks_for(params["customer"], params["environment"], params["hostname"])
        return task_response(tasks)

    @app.route("/playbooks", methods=["GET"])
    def get_playbooks():
        hostname = request.args.get("hostname", "").strip()
        if not hostname:
            return _bad_request("hostname parameter required")
        customer = request.args.get("customer", "").strip()
        environment = request.args.get("environment", "").strip()
        register_contact(hostname, environment or None)
        if customer and environment:
            tasks = corpus.tasks_for(customer, environment, hostname)
        else:
            tasks = corpus.tasks_for_host(hostname)
        return task_response(tasks)

    @app.route("/results", methods=["POST"])
    def post_results():
        payload = request.get_json(force=True, silent=True)
        if payload is None:
            return _bad_request("request body must be JSON")
        items = payload if isinstance(payload, list) else [payload]
        results: list[TaskResult] = []
        for index, item in enumerate(items, start=1):
            if not isinstance(item, dict) or not isinstance(item.get("name"), str):
                return _bad_request(f"result {index} must be an object with a name")
            try:
                results.append(TaskResult.from_dict(item))
            except (TypeError, ValueError) as exc:
                return _bad_request(f"result {index}: {exc}")

        hostname = request.args.get("hostname", "").strip()
        if hostname:
            register_contact(hostname, request.args.get("environment", "").strip() or None)
        source = hostname or request.remote_addr or "unknown"
        for result in results:
            logger.info(
                "Result from %s: task=%s changed=%s failed=%s output=%s",
                source,
                result.name,
                result.changed,
                result.failed,
                _truncate(result.output),
            )
            if result.failed and result.error:
                logger.warning("Task error from %s: %s: %s", source, result.name, _truncate(result.error))
        return jsonify({"received": len(results)}), 200

    @app.route("/inventory", methods=["GET"])
    def get_inventory():
        return jsonify([entry.to_dict() for entry in inventory.snapshot()])

    @app.errorhandler(Exception)
    def handle_error(exc: Exception):
        if isinstance(exc, HTTPException):
            response = jsonify({"error": exc.description})
            response.status_code = exc.code
            allow = exc.get_response().headers.get("Allow")
            if allow:
                response.headers["Allow"] = allow
            return response
        logger.error("Unhandled error serving %s %s: %s", request.method, request.path, exc, exc_info=True)
        return jsonify({"error": "internal server error"}), 500

    return app
