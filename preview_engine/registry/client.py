# preview_engine/registry/client.py
"""Client for the Docker Registry HTTP API V2."""

import logging
import re
from dataclasses import dataclass
from typing import Dict, Optional

import requests

from preview_engine.config import RegistryCredentials
from preview_engine.core.errors import RegistryError
from preview_engine.deployment.strategy import DeploymentStrategy

logger = logging.getLogger(__name__)

DEFAULT_REGISTRY = "docker.io"
DOCKER_HUB_API_HOST = "registry-1.docker.io"

MANIFEST_MEDIA_TYPES = ", ".join([
    "application/vnd.docker.distribution.manifest.list.v2+json",
    "application/vnd.docker.distribution.manifest.v2+json",
    "application/vnd.oci.image.index.v1+json",
    "application/vnd.oci.image.manifest.v1+json",
])

_CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')


@dataclass(frozen=True)
class ImageReference:
    registry: str
    repository: str
    tag: str = "latest"
    digest: Optional[str] = None

    @property
    def api_host(self) -> str:
        if self.registry == DEFAULT_REGISTRY:
            return DOCKER_HUB_API_HOST
        return self.registry


def parse_image_reference(image: str) -> ImageReference:
    """
    Split `registry/repository:tag@digest` into its parts.

    `mariadb:10.3.17` -> docker.io, library/mariadb, 10.3.17
    """
    if not image:
        raise RegistryError("Image reference must not be empty")

    name, _, digest = image.partition("@")

    registry = DEFAULT_REGISTRY
    first, sep, rest = name.partition("/")
    if sep and ("." in first or ":" in first or first == "localhost"):
        registry, name = first, rest

    tag = "latest"
    last_segment = name.rsplit("/", 1)[-1]
    if ":" in last_segment:
        name, tag = name.rsplit(":", 1)

    if registry == DEFAULT_REGISTRY and "/" not in name:
        name = f"library/{name}"

    return ImageReference(registry=registry, repository=name, tag=tag, digest=digest or None)


class RegistryClient:
    """Resolves image references to the digest of their manifest."""

    def __init__(
        self,
        credentials: Optional[Dict[str, RegistryCredentials]] = None,
        timeout: int = 30,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize client.

        Args:
            credentials: Registry host -> credentials
            timeout: Request timeout in seconds
            session: HTTP session, mainly for tests
        """
        self._credentials = credentials or {}
        self.timeout = timeout
        self._session = session or requests.Session()

    def resolve_image_digest(self, image: str) -> str:
        """
        Resolve `image` to the digest of its manifest.

        Raises:
            RegistryError: If the registry cannot be reached or does not
                know the image
        """
        reference = parse_image_reference(image)
        if reference.digest:
            return reference.digest

        url = f"https://{reference.api_host}/v2/{reference.repository}/manifests/{reference.tag}"
        headers = {"Accept": MANIFEST_MEDIA_TYPES}

        try:
            response = self._session.head(url, headers=headers, timeout=self.timeout)

            if response.status_code == 401:
                token = self._fetch_token(reference, response.headers.get("WWW-Authenticate", ""))
                headers["Authorization"] = f"Bearer {token}"
                response = self._session.head(url, headers=headers, timeout=self.timeout)

        except requests.exceptions.Timeout:
            raise RegistryError(f"Registry timeout after {self.timeout}s for {image}")
        except requests.exceptions.ConnectionError:
            raise RegistryError(f"Cannot connect to registry {reference.api_host}")
        except requests.exceptions.RequestException as e:
            logger.error(f"Registry request for {image} failed: {e}")
            raise RegistryError(f"Registry request failed: {e}") from e

        if response.status_code == 404:
            raise RegistryError(f"Image not found: {image}")
        if response.status_code != 200:
            raise RegistryError(f"Registry answered {response.status_code} for {image}")

        digest = response.headers.get("Docker-Content-Digest")
        if not digest:
            raise RegistryError(f"Registry did not return a digest for {image}")

        logger.info(f"Resolved {image} to {digest}")
        return digest

    def strategy_for(self, image: str) -> DeploymentStrategy:
        """Strategy that recreates the service once `image` points to a new digest."""
        return DeploymentStrategy.redeploy_on_image_update(self.resolve_image_digest(image))

    def _fetch_token(self, reference: ImageReference, challenge: str) -> str:
        """Follow a `Bearer realm=...,service=...,scope=...` challenge."""
        if not challenge.lower().startswith("bearer "):
            raise RegistryError(f"Unsupported authentication challenge from {reference.api_host}")

        params = dict(_CHALLENGE_PARAM.findall(challenge))
        realm = params.pop("realm", None)
        if not realm:
            raise RegistryError(f"Authentication challenge without realm from {reference.api_host}")
        params.setdefault("scope", f"repository:{reference.repository}:pull")

        auth = None
        credentials = self._credentials.get(reference.registry)
        if credentials is not None:
            auth = (credentials.username, credentials.password.get_secret_value())

        response = self._session.get(realm, params=params, auth=auth, timeout=self.timeout)
        if response.status_code != 200:
            raise RegistryError(
                f"Token request for {reference.repository} failed with {response.status_code}"
            )

        data = response.json()
        token = data.get("token") or data.get("access_token")
        if not token:
            raise RegistryError(f"No token issued for {reference.repository}")
        return token
