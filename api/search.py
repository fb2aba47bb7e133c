from __future__ import annotations

import asyncio
import logging
from http import HTTPStatus
from typing import Any, Mapping, Optional

from models import ANONYMOUS_USER_ID
from search_service import (
    ApplianceSearchService,
    QueryLimitExceededError,
    SearchStageError,
    check_environment,
)
from webapi import JsonRequestHandler, configure_logging, header_value, is_health_path, normalize_path

configure_logging()
LOGGER = logging.getLogger("appliance_finder.search")

SEARCH_PATHS = {"/api/search", "/search"}
USER_ID_HEADER = "X-User-Id"

_SERVICE: Optional[ApplianceSearchService] = None


def _is_search_path(path: str) -> bool:
    normalized = normalize_path(path)
    return normalized in SEARCH_PATHS or normalized.endswith("/search")


def _get_service() -> ApplianceSearchService:
    global _SERVICE
    if _SERVICE is None:
        _SERVICE = ApplianceSearchService.from_env()
    return _SERVICE


def _user_id_from_headers(headers: Optional[Mapping[str, Any]]) -> str:
    return header_value(headers, USER_ID_HEADER) or ANONYMOUS_USER_ID


def run_search(
    payload: Any,
    user_id: str,
    service: Optional[ApplianceSearchService] = None,
) -> tuple[HTTPStatus, dict[str, Any]]:
    if not isinstance(payload, dict):
        return HTTPStatus.BAD_REQUEST, {"ok": False, "error": "Failed to parse request body"}

    try:
        active = service or _get_service()
        result = asyncio.run(active.search(payload.get("query"), user_id))
    except ValueError as exc:
        return HTTPStatus.BAD_REQUEST, {"ok": False, "error": str(exc) or "Query is required"}
    except QueryLimitExceededError as exc:
        return HTTPStatus.FORBIDDEN, {
            "ok": False,
            "error": str(exc),
            "remaining_queries": exc.remaining,
            "query_limit": True,
            "diagnostics": {"errors": exc.diagnostics},
        }
    except SearchStageError as exc:
        LOGGER.error("Search stage failed | stage=%s user_id=%s", exc.stage, user_id)
        return HTTPStatus.INTERNAL_SERVER_ERROR, {
            "ok": False,
            "error": str(exc),
            "stage": exc.stage,
            "diagnostics": {"errors": exc.diagnostics},
        }
    except Exception as exc:  # noqa: BLE001
        LOGGER.exception("Search request failed")
        return HTTPStatus.INTERNAL_SERVER_ERROR, {
            "ok": False,
            "error": "An error occurred while searching for appliances. Please try again later.",
            "diagnostics": {"missing_vars": check_environment(), "error_message": str(exc)},
        }

    return HTTPStatus.OK, {"ok": True, **result}


class handler(JsonRequestHandler):
    logger = LOGGER

    def do_GET(self) -> None:  # noqa: N802
        if is_health_path(self.path):
            self._write_json(
                HTTPStatus.OK,
                {"ok": True, "service": "appliance_finder_search", "path": normalize_path(self.path)},
            )
            return

        if _is_search_path(self.path):
            self._write_json(HTTPStatus.METHOD_NOT_ALLOWED, {"ok": False, "error": "use POST for searches"})
            return

        self._write_json(HTTPStatus.NOT_FOUND, {"ok": False, "error": "not found"})

    def do_POST(self) -> None:  # noqa: N802
        if not _is_search_path(self.path):
            self._write_json(HTTPStatus.NOT_FOUND, {"ok": False, "error": "not found"})
            return

        try:
            payload = self._read_json_body()
        except ValueError as exc:
            self._write_json(HTTPStatus.BAD_REQUEST, {"ok": False, "error": str(exc)})
            return

        status, body = run_search(payload, _user_id_from_headers(self.headers))
        self._write_json(status, body)
