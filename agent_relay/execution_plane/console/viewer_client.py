"""HTTP client for the interactive viewer's control endpoints."""

from __future__ import annotations

import logging
from typing import Any

import requests

logger = logging.getLogger(__name__)


class ViewerClient:
    """Blocking calls; every failure is reported as ``False`` and never raised."""

    def __init__(self, base_url: str, session: requests.Session | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()

    def select_session(self, session_id: str, directory: str | None = None, timeout: float = 0.75) -> bool:
        body: dict[str, Any] = {"sessionID": session_id}
        if directory:
            body["directory"] = directory
        return self._post("/tui/select-session", body, timeout)

    def show_toast(self, message: str, variant: str = "info", timeout: float = 0.75) -> bool:
        return self._post("/tui/show-toast", {"message": message, "variant": variant}, timeout)

    def _post(self, path: str, body: dict[str, Any], timeout: float) -> bool:
        try:
            response = self.session.post(f"{self.base_url}{path}", json=body, timeout=timeout)
        except requests.RequestException as exc:
            logger.debug("viewer call %s failed: %s", path, exc)
            return False
        if not response.ok:
            logger.debug("viewer call %s returned HTTP %s", path, response.status_code)
            return False
        try:
            data = response.json()
        except ValueError:
            return True
        return data is not False
