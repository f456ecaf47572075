"""HTTP client for the business-management API."""

import logging
from typing import Any, Dict, Optional
from urllib.parse import urljoin

import requests

from bizledger.modules.errors import NotFound, TransportError, Unauthorized

logger = logging.getLogger(__name__)


class ApiClient:
    """Wraps the HTTP calls the billing engine makes; retries are the caller's concern."""

    def __init__(self, base_url: str, token: Optional[str] = None, timeout: int = 15,
                 session: Optional[requests.Session] = None) -> None:
        self.base_url = base_url.rstrip("/") + "/"
        self.token = token
        self.timeout = timeout
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls, config) -> "ApiClient":
        api = config.api
        return cls(api.base_url, token=api.token, timeout=api.timeout)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    @staticmethod
    def _error_message(response: requests.Response, fallback: str) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text or fallback
        if isinstance(body, dict) and body.get("message"):
            message = body["message"]
            return ", ".join(message) if isinstance(message, list) else str(message)
        return fallback

    def _request(self, method: str, path: str, **kwargs) -> Any:
        url = urljoin(self.base_url, path.lstrip("/"))
        kwargs.setdefault("timeout", self.timeout)
        headers = kwargs.setdefault("headers", {})
        headers.update(self._headers())
        logger.debug(f"{method} {url}")
        try:
            response = self.session.request(method, url, **kwargs)
        except requests.RequestException as exc:
            raise TransportError(f"{method} {path} failed: {exc}") from exc

        if response.status_code == 401:
            raise Unauthorized(
                self._error_message(response, "Authentication required"),
                status_code=401,
                response=response,
            )
        if response.status_code == 404:
            raise NotFound(self._error_message(response, f"Not found: {path}"), response=response)
        if response.status_code >= 400:
            message = self._error_message(response, f"{method} {path} failed")
            raise TransportError(
                f"API error {response.status_code}: {message}",
                status_code=response.status_code,
                response=response,
            )

        if not response.content:
            return None
        if response.headers.get("Content-Type", "").startswith("application/json"):
            return response.json()
        return response.content

    # ------------------------------------------------------------------
    # Generic verbs
    # ------------------------------------------------------------------
    def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return self._request("GET", path, params=params)

    def post(self, path: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        return self._request("POST", path, json=payload)

    def delete(self, path: str) -> Any:
        return self._request("DELETE", path)

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------
    def generate_report(self, kind: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self.post(f"/reports/{kind}", payload) or {}

    # ------------------------------------------------------------------
    # Invoices & receipts
    # ------------------------------------------------------------------
    def get_invoice(self, invoice_id: str) -> Dict[str, Any]:
        return self.get(f"/invoices/{invoice_id}") or {}

    def create_receipt(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self.post("/receipts", payload) or {}

    def delete_receipt(self, receipt_id: str) -> None:
        self.delete(f"/receipts/{receipt_id}")

    # ------------------------------------------------------------------
    # Lists
    # ------------------------------------------------------------------
    def list_page(self, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        return self.get(path, params=params) or {}


__all__ = ["ApiClient"]
