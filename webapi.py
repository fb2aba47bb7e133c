from __future__ import annotations

import hmac
import json
import logging
import os
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler
from typing import Any, Mapping, Optional
from urllib.parse import parse_qs, urlsplit

HEALTH_SUFFIX = "/healthz"


def configure_logging() -> None:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO"),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def normalize_path(path: str) -> str:
    raw = (path or "").split("?", 1)[0].strip()
    if not raw:
        return "/"
    normalized = raw.rstrip("/")
    return normalized or "/"


def query_param(path: str, name: str) -> Optional[str]:
    values = parse_qs(urlsplit(path or "").query).get(name)
    if not values:
        return None
    value = values[0].strip()
    return value or None


def is_health_path(path: str) -> bool:
    normalized = normalize_path(path)
    return normalized == "/" or normalized.endswith(HEALTH_SUFFIX)


def has_valid_bearer(authorization: Optional[str], expected_secret: Optional[str]) -> bool:
    expected = (expected_secret or "").strip()
    if not expected or not authorization:
        return False
    scheme, _, token = str(authorization).strip().partition(" ")
    if scheme.lower() != "bearer" or not token:
        return False
    return hmac.compare_digest(expected, token.strip())


def header_value(headers: Optional[Mapping[str, Any]], name: str) -> Optional[str]:
    if headers is None:
        return None
    value = headers.get(name)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class JsonRequestHandler(BaseHTTPRequestHandler):
    """Base for the JSON serverless handlers."""

    logger = logging.getLogger("appliance_finder.api")

    def _write_json(self, status: HTTPStatus, payload: dict[str, Any]) -> None:
        body = json.dumps(payload, default=str).encode("utf-8")
        self.send_response(status.value)
        self.send_header("Content-Type", "application/json; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _read_json_body(self) -> Any:
        content_length_header = self.headers.get("Content-Length") or "0"
        try:
            content_length = int(content_length_header)
        except ValueError:
            content_length = 0

        if content_length <= 0:
            raise ValueError("empty body")

        raw_body = self.rfile.read(content_length)
        try:
            return json.loads(raw_body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ValueError("invalid json") from exc

    def log_message(self, format: str, *args: Any) -> None:  # noqa: A003
        self.logger.info("HTTP %s", format % args)


__all__ = [
    "JsonRequestHandler",
    "configure_logging",
    "has_valid_bearer",
    "header_value",
    "is_health_path",
    "normalize_path",
    "query_param",
]
