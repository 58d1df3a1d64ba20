"""Coolify REST API client.

Thin wrapper over the Coolify v1 application endpoints used by the
watcher: list, inspect, patch the Docker image, and restart.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import requests

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"
REQUEST_TIMEOUT = 30
DEFAULT_TAG = "latest"


class CoolifyAPIError(Exception):
    """Error from the Coolify API (status 0 for transport failures)."""

    def __init__(self, status: int, message: str):
        self.status = status
        self.message = message
        super().__init__(f"Coolify API error {status}: {message}")


class ApplicationNotFound(CoolifyAPIError):
    """The application UUID is unknown to Coolify."""

    def __init__(self, uuid: str):
        self.uuid = uuid
        super().__init__(404, f"application not found: {uuid}")


@dataclass(frozen=True)
class Application:
    """An application as reported by Coolify."""
    uuid: str
    name: str
    docker_image: str
    status: str = ""

    @property
    def image(self) -> str:
        return extract_image_and_tag(self.docker_image)[0]

    @property
    def tag(self) -> str:
        return extract_image_and_tag(self.docker_image)[1]

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Application":
        return cls(
            uuid=data.get('uuid') or '',
            name=data.get('name') or '',
            docker_image=data.get('docker_image') or '',
            status=data.get('status') or '',
        )


def extract_image_and_tag(docker_image: str) -> Tuple[str, str]:
    """Split an image reference into image and tag.

    ``postgres:17.2`` -> (``postgres``, ``17.2``),
    ``registry.example.com:5000/app`` -> (unchanged, ``latest``).
    A colon only separates the tag when nothing after it contains a slash.
    """
    # Digest pins (image:tag@sha256:...) keep only the tag part
    at_pos = docker_image.find('@')
    if at_pos != -1:
        docker_image = docker_image[:at_pos]

    last_colon = docker_image.rfind(':')
    if last_colon == -1 or '/' in docker_image[last_colon + 1:]:
        return docker_image, DEFAULT_TAG
    return docker_image[:last_colon], docker_image[last_colon + 1:]


def build_image_reference(image: str, tag: str) -> str:
    return f"{image}:{tag}"


class CoolifyClient:
    """Client for the Coolify v1 REST API."""

    def __init__(self, base_url: str, token: str, timeout: int = REQUEST_TIMEOUT,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            'Authorization': f"Bearer {token}",
            'Accept': 'application/json',
        })

    def _request(self, method: str, path: str, body: Any = None,
                 not_found: Optional[str] = None,
                 ok_statuses: Tuple[int, ...] = (200,)) -> Any:
        """Send a request and return the decoded JSON body (or None).

        Raises ApplicationNotFound on 404 when *not_found* names the UUID,
        CoolifyAPIError for every other failure including timeouts.
        """
        url = f"{self.base_url}{API_PREFIX}{path}"
        try:
            response = self.session.request(method, url, json=body, timeout=self.timeout)
        except requests.RequestException as e:
            raise CoolifyAPIError(0, f"{method} {path} failed: {e}") from e

        if response.status_code == 404 and not_found is not None:
            raise ApplicationNotFound(not_found)

        if response.status_code not in ok_statuses:
            try:
                msg = response.json().get('message', response.text)
            except (ValueError, AttributeError):
                msg = response.text
            raise CoolifyAPIError(response.status_code, msg or f"{method} {path}")

        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise CoolifyAPIError(response.status_code, f"invalid JSON from {path}: {e}") from e

    def test_connection(self) -> None:
        """Verify URL and token; raises CoolifyAPIError on failure."""
        try:
            self._request("GET", "/applications")
        except CoolifyAPIError as e:
            if e.status == 401:
                raise CoolifyAPIError(401, "authentication failed - check your API token") from e
            raise

    def list_applications(self) -> List[Application]:
        """List all applications visible to the token."""
        result = self._request("GET", "/applications")
        # Older Coolify versions wrap the list in {"data": [...]}
        if isinstance(result, dict):
            result = result.get('data')
        if result is None:
            return []
        if not isinstance(result, list) or not all(isinstance(item, dict) for item in result):
            raise CoolifyAPIError(200, "unexpected applications payload")
        return [Application.from_api(item) for item in result]

    def get_application(self, uuid: str) -> Application:
        result = self._request("GET", f"/applications/{uuid}", not_found=uuid)
        return Application.from_api(result or {})

    def get_current_tag(self, uuid: str) -> str:
        """Tag of the image currently configured for the application."""
        return self.get_application(uuid).tag

    def update_application(self, uuid: str, docker_image: str) -> None:
        """Point the application at a new image reference."""
        self._request(
            "PATCH", f"/applications/{uuid}",
            body={'docker_image': docker_image},
            not_found=uuid,
            ok_statuses=(200, 201, 204),
        )

    def restart_application(self, uuid: str) -> None:
        """Trigger a restart/redeploy of the application."""
        self._request(
            "POST", f"/applications/{uuid}/restart",
            not_found=uuid,
            ok_statuses=(200, 201, 202, 204),
        )
