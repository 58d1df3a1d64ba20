"""Container registry tag listing.

Lists the tags published for an image on Docker Hub (Hub API), GHCR/lscr.io
and any other registry speaking the OCI distribution API.  Pagination and
short ``Retry-After`` waits are handled here; everything else surfaces as a
``RegistryError`` for the caller to treat as a per-application failure.
"""

import logging
import time
from typing import Dict, List, Optional, Tuple

import requests

logger = logging.getLogger(__name__)

DEFAULT_REGISTRY = "registry-1.docker.io"
DOCKER_HUB_ALIASES = ("docker.io", "index.docker.io", "registry-1.docker.io",
                      "registry.hub.docker.com")
DEFAULT_NAMESPACE = "library"
HUB_TAGS_URL = "https://registry.hub.docker.com/v2/repositories/{path}/tags/"
REQUEST_TIMEOUT = 30
USER_AGENT = "coolify-patrol"
MAX_RETRY_AFTER = 300
MAX_RATE_LIMIT_RETRIES = 3
MAX_PAGES = 100


class RegistryError(Exception):
    """Tag listing failed for an image."""


class RegistryUnavailable(RegistryError):
    """Registry could not be reached or answered with an error."""


class RateLimited(RegistryError):
    """Registry kept answering HTTP 429."""


def parse_image_reference(image: str) -> Tuple[str, str]:
    """
    Split an image reference into registry and repository path.

    Args:
        image: Image without tag (e.g., 'postgres', 'n8nio/n8n', 'ghcr.io/owner/app')

    Returns:
        Tuple of (registry, path); Docker Hub official images get 'library/'
    """
    parts = image.split('/', 1)
    first = parts[0]

    # Registry indicators: contains '.', is localhost, or has port ':'
    if len(parts) > 1 and ('.' in first or ':' in first or first == 'localhost'):
        registry, path = first, parts[1]
    else:
        registry, path = DEFAULT_REGISTRY, image

    if registry in DOCKER_HUB_ALIASES:
        registry = DEFAULT_REGISTRY
        if '/' not in path:
            path = f"{DEFAULT_NAMESPACE}/{path}"

    return registry, path


class RegistryClient:
    """Fetches raw tag listings from container registries."""

    def __init__(self, timeout: int = REQUEST_TIMEOUT,
                 session: Optional[requests.Session] = None,
                 sleep=time.sleep):
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers['User-Agent'] = USER_AGENT
        self._sleep = sleep

    def list_tags(self, image: str) -> List[str]:
        """
        List every tag published for an image.

        Args:
            image: Image reference without tag

        Returns:
            Tag names in registry order

        Raises:
            RateLimited: Registry kept answering 429
            RegistryUnavailable: Any other transport or HTTP failure
        """
        registry, path = parse_image_reference(image)
        if registry == DEFAULT_REGISTRY:
            tags = self._list_hub_tags(path)
        else:
            tags = self._list_v2_tags(registry, path)
        logger.debug(f"Fetched {len(tags)} tags for {image}")
        return tags

    def _get(self, url: str, headers: Optional[Dict[str, str]] = None,
             params: Optional[Dict[str, str]] = None) -> requests.Response:
        """GET with timeout, honouring short Retry-After waits on 429."""
        for attempt in range(MAX_RATE_LIMIT_RETRIES + 1):
            try:
                response = self.session.get(url, headers=headers, params=params,
                                            timeout=self.timeout)
            except requests.RequestException as e:
                raise RegistryUnavailable(f"error fetching {url}: {e}") from e

            if response.status_code != 429:
                return response

            retry_after = response.headers.get('Retry-After', '')
            if (attempt < MAX_RATE_LIMIT_RETRIES and retry_after.isdigit()
                    and int(retry_after) <= MAX_RETRY_AFTER):
                logger.warning(f"Rate limited by {url}, retrying in {retry_after}s")
                self._sleep(int(retry_after))
                continue
            break

        raise RateLimited(f"rate limited by registry: {url}")

    def _list_hub_tags(self, path: str) -> List[str]:
        """Docker Hub API v2 tag listing, following 'next' links."""
        tags: List[str] = []
        url: Optional[str] = HUB_TAGS_URL.format(path=path)
        params: Optional[Dict[str, str]] = {'page_size': '100'}
        pages = 0
        while url and pages < MAX_PAGES:
            response = self._get(url, params=params)
            if response.status_code != 200:
                raise RegistryUnavailable(
                    f"Docker Hub API returned status {response.status_code} for {path}"
                )
            try:
                data = response.json()
            except ValueError as e:
                raise RegistryUnavailable(f"invalid Docker Hub response for {path}: {e}") from e

            for result in data.get('results') or []:
                name = result.get('name')
                if name:
                    tags.append(name)
            url = data.get('next')
            params = None  # 'next' already carries the query string
            pages += 1
        return tags

    def _get_token(self, registry: str, path: str) -> Optional[str]:
        """Anonymous pull token for registries that issue one."""
        if registry in ("ghcr.io", "lscr.io"):
            # lscr.io delegates auth to ghcr.io
            auth_url = "https://ghcr.io/token"
            params = {'service': 'ghcr.io', 'scope': f"repository:{path}:pull"}
        else:
            auth_url = f"https://{registry}/v2/auth"
            params = {'service': registry, 'scope': f"repository:{path}:pull"}

        try:
            response = self.session.get(auth_url, params=params, timeout=self.timeout)
            response.raise_for_status()
            return response.json().get('token')
        except (requests.RequestException, ValueError) as e:
            logger.debug(f"No token for {registry}/{path}: {e}")
            return None

    def _list_v2_tags(self, registry: str, path: str) -> List[str]:
        """OCI distribution tag listing, following Link headers."""
        token = self._get_token(registry, path)
        headers = {'Accept': 'application/json'}
        if token:
            headers['Authorization'] = f"Bearer {token}"

        base = f"https://{registry}"
        url: Optional[str] = f"{base}/v2/{path}/tags/list"
        tags: List[str] = []
        pages = 0
        while url and pages < MAX_PAGES:
            response = self._get(url, headers=headers)
            if response.status_code != 200:
                raise RegistryUnavailable(
                    f"{registry} returned status {response.status_code} for {path}"
                )
            try:
                tags.extend(response.json().get('tags') or [])
            except ValueError as e:
                raise RegistryUnavailable(f"invalid response from {registry} for {path}: {e}") from e

            next_link = response.links.get('next', {}).get('url')
            if next_link and next_link.startswith('/'):
                next_link = base + next_link
            url = next_link
            pages += 1
        return tags
