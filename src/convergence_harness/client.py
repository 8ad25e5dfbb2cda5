"""REST client for a running replica.

Only the narrow slice of the replica API the harness needs: readiness,
identity, per-folder completion, rescans, the folder versioning block of
the configuration, and restart/shutdown.
"""

import logging
from typing import Any, Dict, Optional

import requests

from .constants import API_KEY_HEADER, FULL_COMPLETION
from .core import VersioningConfig
from .errors import ReplicaAPIError, ReplicaUnavailableError

logger = logging.getLogger(__name__)


class ReplicaClient:
    """Talks to one replica over HTTP."""

    def __init__(
        self,
        instance: str,
        port: int,
        api_key: str,
        host: str = "127.0.0.1",
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        self.instance = instance
        self.base_url = f"http://{host}:{port}"
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers[API_KEY_HEADER] = api_key

    def __repr__(self) -> str:
        return f"ReplicaClient({self.instance!r}, {self.base_url!r})"

    def _request(self, method: str, endpoint: str, **kwargs) -> requests.Response:
        try:
            resp = self.session.request(method, self.base_url + endpoint, timeout=self.timeout, **kwargs)
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            raise ReplicaUnavailableError(self.instance, endpoint, str(e)) from e
        except requests.exceptions.RequestException as e:
            raise ReplicaAPIError(self.instance, endpoint, str(e)) from e
        if resp.status_code >= 400:
            raise ReplicaAPIError(self.instance, endpoint, f"HTTP {resp.status_code}: {resp.text[:200]}")
        return resp

    def _get_json(self, endpoint: str, **params) -> Any:
        resp = self._request("GET", endpoint, params=params or None)
        try:
            return resp.json()
        except ValueError as e:
            raise ReplicaAPIError(self.instance, endpoint, f"invalid JSON: {resp.text[:200]}") from e

    # ============= System =============

    def ping(self) -> bool:
        """True if the API answers at all."""
        try:
            self._request("GET", "/rest/system/ping")
        except ReplicaAPIError as e:
            logger.debug("Ping %s failed: %s", self.instance, e.reason)
            return False
        return True

    def system_status(self) -> Dict[str, Any]:
        return self._get_json("/rest/system/status")

    def device_id(self) -> str:
        status = self.system_status()
        try:
            return status["myID"]
        except (KeyError, TypeError) as e:
            raise ReplicaAPIError(self.instance, "/rest/system/status", "response has no myID") from e

    def restart(self) -> None:
        self._request("POST", "/rest/system/restart")

    def shutdown(self) -> None:
        self._request("POST", "/rest/system/shutdown")

    # ============= Folders =============

    def completion(self, folder: str, device: str) -> float:
        """Completion percentage of `folder` on peer `device`, as this replica sees it."""
        data = self._get_json("/rest/db/completion", folder=folder, device=device)
        try:
            return float(data["completion"])
        except (KeyError, TypeError, ValueError) as e:
            raise ReplicaAPIError(self.instance, "/rest/db/completion", f"unexpected response {data!r}") from e

    def outstanding(self, folder: str, device: str) -> float:
        """Percentage of `folder` still to sync on `device`; 0 means in sync."""
        return max(0.0, FULL_COMPLETION - self.completion(folder, device))

    def rescan(self, folder: str) -> None:
        """Ask the replica to re-index a folder now."""
        self._request("POST", "/rest/db/scan", params={"folder": folder})

    def folder_state(self, folder: str) -> str:
        data = self._get_json("/rest/db/status", folder=folder)
        return data.get("state", "")

    # ============= Configuration =============

    def get_config(self) -> Dict[str, Any]:
        return self._get_json("/rest/system/config")

    def set_config(self, config: Dict[str, Any]) -> None:
        self._request("POST", "/rest/system/config", json=config)

    def folder_versioning(self, folder: str) -> VersioningConfig:
        entry = self._folder_entry(self.get_config(), folder)
        versioning = entry.get("versioning") or {}
        return VersioningConfig(type=versioning.get("type", ""), params=versioning.get("params") or {})

    def set_folder_versioning(self, folder: str, versioning: VersioningConfig) -> bool:
        """Replace the versioning block of one folder.

        Returns:
            True if the configuration changed (the replica needs a restart).
        """
        config = self.get_config()
        entry = self._folder_entry(config, folder)
        wanted = {"type": versioning.type, "params": dict(versioning.params)}
        current = entry.get("versioning") or {}
        if current.get("type", "") == wanted["type"] and (current.get("params") or {}) == wanted["params"]:
            return False
        entry["versioning"] = wanted
        self.set_config(config)
        logger.info("Replica %s: folder %s versioning set to %s", self.instance, folder, versioning.label)
        return True

    def _folder_entry(self, config: Dict[str, Any], folder: str) -> Dict[str, Any]:
        for entry in config.get("folders", []):
            if entry.get("id") == folder:
                return entry
        raise ReplicaAPIError(self.instance, "/rest/system/config", f"no folder '{folder}' configured")
