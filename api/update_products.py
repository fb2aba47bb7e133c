from __future__ import annotations

import logging
import os
from http import HTTPStatus
from typing import Any, Mapping, Optional

from catalog import ProductCatalog
from webapi import JsonRequestHandler, configure_logging, has_valid_bearer, header_value

configure_logging()
LOGGER = logging.getLogger("appliance_finder.update_products")

BATCH_SIZE = 20


def _is_authorized(headers: Optional[Mapping[str, Any]]) -> bool:
    if (header_value(headers, "x-vercel-cron") or "").lower() == "true":
        return True
    return has_valid_bearer(header_value(headers, "Authorization"), os.getenv("CRON_SECRET_KEY"))


def run_refresh(catalog: Optional[ProductCatalog] = None) -> tuple[HTTPStatus, dict[str, Any]]:
    try:
        active = catalog or ProductCatalog.from_env()
        summary = active.refresh_due_products(batch_size=BATCH_SIZE)
    except Exception as exc:  # noqa: BLE001
        LOGGER.exception("Product update job failed")
        return HTTPStatus.INTERNAL_SERVER_ERROR, {
            "ok": False,
            "error": "Server error running update products job",
            "details": str(exc),
        }
    return HTTPStatus.OK, {"ok": True, **summary}


class handler(JsonRequestHandler):
    logger = LOGGER

    def do_GET(self) -> None:  # noqa: N802
        if not _is_authorized(self.headers):
            LOGGER.warning("Product update job rejected: missing cron header or bad secret")
            self._write_json(HTTPStatus.UNAUTHORIZED, {"ok": False, "error": "Unauthorized"})
            return

        status, body = run_refresh()
        self._write_json(status, body)
