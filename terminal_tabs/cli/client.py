"""HTTP client for the Terminal Tabs status API."""

import json
import os
import urllib.error
import urllib.request
from typing import Optional

# Default API endpoint
DEFAULT_API_URL = "http://127.0.0.1:8129"
API_TIMEOUT = 2  # seconds


class TerminalTabsClient:
    """Client for the read-only Terminal Tabs API."""

    def __init__(self, api_url: Optional[str] = None):
        """
        Initialize client.

        Args:
            api_url: Base URL for API (default: http://127.0.0.1:8129)
        """
        self.api_url = (api_url or os.environ.get("TT_API_URL", DEFAULT_API_URL)).rstrip("/")

    def _request(self, method: str, path: str, timeout: Optional[int] = None) -> tuple[Optional[dict], bool, bool]:
        """
        Make an HTTP request.

        Returns:
            Tuple of (response_data, success, unavailable)
            - success=True, unavailable=False: Request succeeded
            - success=False, unavailable=True: Connection error (backend not running)
            - success=False, unavailable=False: API error (4xx, 5xx response)
        """
        url = f"{self.api_url}{path}"
        request_timeout = timeout if timeout is not None else API_TIMEOUT

        try:
            req = urllib.request.Request(url, headers={"Accept": "application/json"}, method=method)
            with urllib.request.urlopen(req, timeout=request_timeout) as response:
                if response.status == 200:
                    return json.loads(response.read().decode()), True, False
                return None, False, False
        except urllib.error.HTTPError:
            # Backend responded with an error status
            return None, False, False
        except (urllib.error.URLError, OSError, ValueError):
            return None, False, True

    def health(self) -> Optional[dict]:
        data, success, _ = self._request("GET", "/health")
        return data if success else None

    def list_terminals(self) -> Optional[list]:
        """List all terminals, or None if the backend is unavailable."""
        data, success, _ = self._request("GET", "/api/terminals")
        if success and data is not None:
            return data.get("terminals", [])
        return None

    def get_terminal(self, terminal_id: str) -> tuple[Optional[dict], bool]:
        """
        Get one terminal.

        Returns:
            Tuple of (terminal, unavailable); terminal is None if not found
        """
        data, success, unavailable = self._request("GET", f"/api/terminals/{terminal_id}")
        return (data if success else None), unavailable

    def list_orphans(self) -> Optional[list]:
        data, success, _ = self._request("GET", "/api/tmux/orphaned-sessions")
        if success and data is not None:
            return data.get("orphanedSessions", [])
        return None
