from __future__ import annotations

import logging
from http import HTTPStatus
from typing import Any, Mapping, Optional

from models import ANONYMOUS_USER_ID
from search_service import ApplianceSearchService, FollowUpNotAllowedError
from webapi import JsonRequestHandler, configure_logging, header_value, is_health_path, normalize_path

configure_logging()
LOGGER = logging.getLogger("appliance_finder.followup")

FOLLOWUP_PATHS = {"/api/followup", "/followup"}
USER_ID_HEADER = "X-User-Id"

_SERVICE: Optional[ApplianceSearchService] = None


def _is_followup_path(path: str) -> bool:
    normalized = normalize_path(path)
    return normalized in FOLLOWUP_PATHS or normalized.endswith("/followup")


def _get_service() -> ApplianceSearchService:
    global _SERVICE
    if _SERVICE is None:
        _SERVICE = ApplianceSearchService.from_env()
    return _SERVICE


def _user_id_from_headers(headers: Optional[Mapping[str, Any]]) -> str:
    return header_value(headers, USER_ID_HEADER) or ANONYMOUS_USER_ID


def _first(payload: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if payload.get(key) not in (None, ""):
            return payload[key]
    return None


def run_follow_up(
    payload: Any,
    user_id: str,
    service: Optional[ApplianceSearchService] = None,
) -> tuple[HTTPStatus, dict[str, Any]]:
    if not isinstance(payload, dict):
        return HTTPStatus.BAD_REQUEST, {"ok": False, "error": "Failed to parse request body"}

    details = _first(payload, "applianceDetails", "appliance_details")
    try:
        active = service or _get_service()
        result = active.follow_up(
            user_id,
            _first(payload, "followUpQuestion", "follow_up_question"),
            original_query=_first(payload, "originalQuery", "original_query"),
            appliance_details=details if isinstance(details, dict) else None,
            query_id=_first(payload, "queryId", "query_id"),
        )
    except FollowUpNotAllowedError as exc:
        return HTTPStatus.FORBIDDEN, {"ok": False, "error": str(exc), "subscription_tier": exc.tier}
    except ValueError as exc:
        return HTTPStatus.BAD_REQUEST, {"ok": False, "error": str(exc)}
    except Exception as exc:  # noqa: BLE001
        LOGGER.exception("Follow-up request failed")
        return HTTPStatus.INTERNAL_SERVER_ERROR, {
            "ok": False,
            "error": "Failed to process follow-up question",
            "details": str(exc),
        }

    return HTTPStatus.OK, {"ok": True, **result}


class handler(JsonRequestHandler):
    logger = LOGGER

    def do_GET(self) -> None:  # noqa: N802
        if is_health_path(self.path):
            self._write_json(
                HTTPStatus.OK,
                {"ok": True, "service": "appliance_finder_followup", "path": normalize_path(self.path)},
            )
            return

        if _is_followup_path(self.path):
            self._write_json(HTTPStatus.METHOD_NOT_ALLOWED, {"ok": False, "error": "use POST for follow-up questions"})
            return

        self._write_json(HTTPStatus.NOT_FOUND, {"ok": False, "error": "not found"})

    def do_POST(self) -> None:  # noqa: N802
        if not _is_followup_path(self.path):
            self._write_json(HTTPStatus.NOT_FOUND, {"ok": False, "error": "not found"})
            return

        try:
            payload = self._read_json_body()
        except ValueError as exc:
            self._write_json(HTTPStatus.BAD_REQUEST, {"ok": False, "error": str(exc)})
            return

        status, body = run_follow_up(payload, _user_id_from_headers(self.headers))
        self._write_json(status, body)
