from __future__ import annotations

import logging
from http import HTTPStatus
from typing import Any, Optional

from catalog import ProductCatalog, ProductUnavailableError
from webapi import JsonRequestHandler, configure_logging, is_health_path, normalize_path, query_param

configure_logging()
LOGGER = logging.getLogger("appliance_finder.products")

_CATALOG: Optional[ProductCatalog] = None


def _get_catalog() -> ProductCatalog:
    global _CATALOG
    if _CATALOG is None:
        _CATALOG = ProductCatalog.from_env()
    return _CATALOG


def handle_post(payload: Any, catalog: Optional[ProductCatalog] = None) -> tuple[HTTPStatus, dict[str, Any]]:
    if not isinstance(payload, dict):
        return HTTPStatus.BAD_REQUEST, {"ok": False, "error": "Valid URL is required"}

    url = payload.get("url")
    llm_data = payload.get("llm_data") or payload.get("llmData")
    try:
        active = catalog or _get_catalog()
        result = active.fetch_product(url, llm_data)
    except ValueError as exc:
        return HTTPStatus.BAD_REQUEST, {"ok": False, "error": str(exc)}
    except ProductUnavailableError as exc:
        LOGGER.warning("Product unavailable | url=%s", exc.url)
        return HTTPStatus.INTERNAL_SERVER_ERROR, {
            "ok": False,
            "error": "Failed to retrieve product data",
            "url": exc.url,
        }
    except Exception as exc:  # noqa: BLE001
        LOGGER.exception("Products POST failed")
        return HTTPStatus.INTERNAL_SERVER_ERROR, {
            "ok": False,
            "error": "Server error processing product data",
            "details": str(exc),
        }

    return HTTPStatus.OK, {"ok": True, **result}


def handle_get(url: Optional[str], catalog: Optional[ProductCatalog] = None) -> tuple[HTTPStatus, dict[str, Any]]:
    if not url:
        return HTTPStatus.BAD_REQUEST, {"ok": False, "error": "URL parameter is required"}

    try:
        active = catalog or _get_catalog()
        product = active.get_product(url)
    except Exception as exc:  # noqa: BLE001
        LOGGER.exception("Products GET failed")
        return HTTPStatus.INTERNAL_SERVER_ERROR, {
            "ok": False,
            "error": "Server error retrieving product data",
            "details": str(exc),
        }

    if not product:
        return HTTPStatus.NOT_FOUND, {"ok": False, "error": "Product not found"}
    return HTTPStatus.OK, {"ok": True, "product": product}


class handler(JsonRequestHandler):
    logger = LOGGER

    def do_GET(self) -> None:  # noqa: N802
        if is_health_path(self.path):
            self._write_json(
                HTTPStatus.OK,
                {"ok": True, "service": "appliance_finder_products", "path": normalize_path(self.path)},
            )
            return

        status, body = handle_get(query_param(self.path, "url"))
        self._write_json(status, body)

    def do_POST(self) -> None:  # noqa: N802
        try:
            payload = self._read_json_body()
        except ValueError as exc:
            self._write_json(HTTPStatus.BAD_REQUEST, {"ok": False, "error": str(exc)})
            return

        status, body = handle_post(payload)
        self._write_json(status, body)
