"""
Discovery client: what a service uses to talk to a registry node.

HeartbeatAgent keeps one instance registered: it renews on a fixed cadence
and registers again whenever the registry answers a heartbeat with 404
(after a registry restart or an eviction).
"""

import logging
import threading
from typing import Any, Dict, Optional

import requests

from .errors import InstanceNotFoundError, RegistryError
from .models import (
    Application,
    Applications,
    DeltaResponse,
    InstanceInfo,
    InstanceStatus,
    normalize_app_name,
)

logger = logging.getLogger(__name__)

CLIENT_ID_HEADER = "X-Discovery-Client-Id"


class DiscoveryClient:
    """Thin HTTP client for the registry API."""

    def __init__(
        self,
        base_url: str = "http://localhost:8761",
        client_id: Optional[str] = None,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()
        if client_id:
            self._session.headers[CLIENT_ID_HEADER] = client_id

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        try:
            response = self._session.request(
                method, f"{self.base_url}{path}", timeout=self.timeout, **kwargs
            )
        except requests.RequestException as e:
            raise RegistryError(f"Registry request failed: {method} {path}: {e}") from e
        return response

    def _checked(self, response: requests.Response, app_name: str,
                 instance_id: str) -> Dict[str, Any]:
        if response.status_code == 404:
            raise InstanceNotFoundError(normalize_app_name(app_name), instance_id)
        if response.status_code >= 400:
            raise RegistryError(f"Registry returned {response.status_code}: {response.text}")
        return response.json()

    # =========================================================================
    # Mutations
    # =========================================================================

    def register(self, instance: InstanceInfo,
                 lease_duration_seconds: Optional[int] = None) -> InstanceInfo:
        body = instance.model_dump(mode="json", exclude={"lease", "last_dirty_timestamp"})
        if lease_duration_seconds is not None:
            body["lease_duration_seconds"] = lease_duration_seconds
        response = self._request("POST", f"/apps/{instance.app_name}", json=body)
        return InstanceInfo.model_validate(
            self._checked(response, instance.app_name, instance.instance_id)
        )

    def renew(self, app_name: str, instance_id: str) -> InstanceInfo:
        """
        Send a heartbeat.

        Raises:
            InstanceNotFoundError: The registry forgot the instance, register again.
        """
        response = self._request("PUT", f"/apps/{app_name}/{instance_id}")
        return InstanceInfo.model_validate(self._checked(response, app_name, instance_id))

    def cancel(self, app_name: str, instance_id: str) -> InstanceInfo:
        response = self._request("DELETE", f"/apps/{app_name}/{instance_id}")
        return InstanceInfo.model_validate(self._checked(response, app_name, instance_id))

    def update_status(self, app_name: str, instance_id: str,
                      status: InstanceStatus) -> InstanceInfo:
        response = self._request(
            "PUT", f"/apps/{app_name}/{instance_id}/status", params={"value": status.value}
        )
        return InstanceInfo.model_validate(self._checked(response, app_name, instance_id))

    # =========================================================================
    # Reads
    # =========================================================================

    def get_application(self, app_name: str, consistent: bool = False) -> Application:
        params = {"consistent": "true"} if consistent else None
        response = self._request("GET", f"/apps/{app_name}", params=params)
        response.raise_for_status()
        return Application.model_validate(response.json())

    def get_applications(self) -> Applications:
        response = self._request("GET", "/apps")
        response.raise_for_status()
        return Applications.model_validate(response.json())

    def get_delta(self, since: int) -> DeltaResponse:
        response = self._request("GET", "/apps/delta", params={"since": since})
        response.raise_for_status()
        return DeltaResponse.model_validate(response.json())


class HeartbeatAgent:
    """
    Keeps one instance registered with a registry.

    Usage:
        agent = HeartbeatAgent(client, instance, interval_seconds=30)
        agent.start()
        ...
        agent.stop()  # cancels the registration
    """

    def __init__(
        self,
        client: DiscoveryClient,
        instance: InstanceInfo,
        interval_seconds: int = 30,
        lease_duration_seconds: Optional[int] = None,
    ):
        self.client = client
        self.instance = instance
        self.interval = interval_seconds
        self.lease_duration_seconds = lease_duration_seconds

        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self.registered = False
        self.reregistrations = 0

    def register(self) -> None:
        self.client.register(self.instance, self.lease_duration_seconds)
        self.registered = True
        logger.info(f"Registered {self.instance.app_name}/{self.instance.instance_id}")

    def beat(self) -> None:
        """One heartbeat, re-registering if the registry lost us."""
        try:
            if not self.registered:
                self.register()
                return
            self.client.renew(self.instance.app_name, self.instance.instance_id)
        except InstanceNotFoundError:
            logger.warning(
                f"Registry does not know {self.instance.app_name}/"
                f"{self.instance.instance_id}, registering again"
            )
            self.reregistrations += 1
            self.register()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            logger.warning("Heartbeat thread already running")
            return

        self._stop.clear()

        def heartbeat_loop():
            while True:
                try:
                    self.beat()
                except RegistryError as e:
                    logger.error(f"Heartbeat failed: {e}")
                if self._stop.wait(timeout=self.interval):
                    break

        self._thread = threading.Thread(target=heartbeat_loop, name="heartbeat", daemon=True)
        self._thread.start()

    def stop(self, cancel: bool = True) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=5.0)
            self._thread = None
        if cancel and self.registered:
            try:
                self.client.cancel(self.instance.app_name, self.instance.instance_id)
            except RegistryError as e:
                logger.warning(f"Cancel on shutdown failed: {e}")
            self.registered = False
