"""Registry collaborators for the image release copier.

This module handles:
- Manifest digest lookup over the OCI distribution HTTP API
- Bearer token negotiation for registries that challenge with 401
- Cross-registry copies through the ``crane`` CLI
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import re
import shlex
import subprocess
import threading
from collections.abc import Mapping
from pathlib import Path

import httpx

from sdk_pipeline.errors import (
    AuthenticationError,
    CopyError,
    PipelineConfigError,
    PipelineError,
)
from sdk_pipeline.types import ImageRef

logger = logging.getLogger(__name__)

# Timeout for registry API requests (seconds)
REGISTRY_TIMEOUT = 30

# Timeout for a single image copy (seconds)
COPY_TIMEOUT = 1800

MANIFEST_ACCEPT = ", ".join(
    [
        "application/vnd.oci.image.index.v1+json",
        "application/vnd.oci.image.manifest.v1+json",
        "application/vnd.docker.distribution.manifest.list.v2+json",
        "application/vnd.docker.distribution.manifest.v2+json",
    ]
)

# Docker Hub is addressed as docker.io but served from another host
DOCKER_HUB_ALIASES = {"docker.io", "index.docker.io", "registry-1.docker.io"}
DOCKER_HUB_API_HOST = "registry-1.docker.io"
DOCKER_HUB_HOST = "docker.io"

_CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')

# crane error output meaning the credentials were rejected: HTTP 401/403
# status lines and the registry API error codes UNAUTHORIZED and DENIED
AUTH_FAILURE_PATTERN = re.compile(
    r"\b(?:40[13] (?:Unauthorized|Forbidden)|status code:? 40[13]|UNAUTHORIZED|DENIED)\b"
    r"|authentication required"
    r"|requested access to the resource is denied"
)

# (username, password) per registry host
Credentials = Mapping[str, tuple[str, str]]


class RegistryError(PipelineError):
    """Transient registry API failure (network error, 5xx)."""

    code = "registry_error"

    def __init__(self, message: str, registry: str) -> None:
        super().__init__(message)
        self.registry = registry


def parse_bearer_challenge(header: str) -> dict[str, str] | None:
    """Parse a ``WWW-Authenticate: Bearer ...`` header.

    Args:
        header: Header value.

    Returns:
        Challenge parameters (realm, service, scope), or None if not Bearer.
    """
    scheme, _, params = header.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return dict(_CHALLENGE_PARAM.findall(params))


def registry_host(registry: str) -> str:
    """Host part of a registry reference, with Docker Hub aliases folded to docker.io.

    Accepts ``docker.io/aptoslabs`` as well as docker config keys such as
    ``https://index.docker.io/v1/``.
    """
    _, _, rest = registry.rpartition("://")
    host = rest.split("/", 1)[0].lower()
    return DOCKER_HUB_HOST if host in DOCKER_HUB_ALIASES else host


def parse_credential(value: str) -> tuple[str, str]:
    """Split ``username:password``; the password may contain colons."""
    username, sep, password = value.partition(":")
    if not sep or not username:
        raise ValueError("credentials must look like 'username:password'")
    return username, password


def load_docker_credentials(path: Path) -> dict[str, tuple[str, str]]:
    """Read the ``auths`` section of a docker config file.

    Only inline ``auth`` entries are read; hosts served by credential helpers
    are left to anonymous token requests.

    Args:
        path: Path to ``config.json``.

    Returns:
        Credentials keyed by registry host (empty if the file does not exist).

    Raises:
        PipelineConfigError: If the file is not valid JSON or an entry is malformed.
    """
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise PipelineConfigError(f"Cannot read docker config {path}: {e}") from e

    credentials: dict[str, tuple[str, str]] = {}
    for key, entry in (data.get("auths") or {}).items():
        encoded = entry.get("auth") if isinstance(entry, dict) else None
        if not encoded:
            continue
        try:
            decoded = base64.b64decode(encoded).decode("utf-8")
            credentials[registry_host(key)] = parse_credential(decoded)
        except (binascii.Error, UnicodeDecodeError, ValueError) as e:
            raise PipelineConfigError(f"Malformed auth for {key} in {path}: {e}") from e
    logger.debug("Loaded docker credentials for %s", ", ".join(sorted(credentials)) or "no hosts")
    return credentials


class RegistryClient:
    """Query image manifests in OCI registries.

    Credentials are keyed by registry host and only sent to the token realm
    of the registry they belong to; other registries get anonymous tokens.
    Thread-safe: tokens are cached per (registry, repository) under a lock.
    """

    def __init__(
        self,
        client: httpx.Client | None = None,
        credentials: Credentials | None = None,
        insecure: bool = False,
        timeout: float = REGISTRY_TIMEOUT,
    ) -> None:
        self.client = client or httpx.Client()
        self.credentials = {registry_host(h): c for h, c in (credentials or {}).items()}
        self.insecure = insecure
        self.timeout = timeout
        self._tokens: dict[tuple[str, str], str] = {}
        self._lock = threading.Lock()

    def close(self) -> None:
        """Close the underlying HTTP client."""
        self.client.close()

    def _base_url(self, registry: str) -> str:
        host = registry.split("/", 1)[0]
        if host in DOCKER_HUB_ALIASES:
            host = DOCKER_HUB_API_HOST
        scheme = "http" if self.insecure else "https"
        return f"{scheme}://{host}"

    @staticmethod
    def _repository_path(image: ImageRef) -> str:
        """Repository path on the registry host, including any namespace."""
        host, _, namespace = image.registry.partition("/")
        path = f"{namespace}/{image.repository}" if namespace else image.repository
        if host in DOCKER_HUB_ALIASES and "/" not in path:
            return f"library/{path}"
        return path

    def _fetch_token(self, registry: str, challenge: dict[str, str], scope: str) -> str:
        realm = challenge.get("realm")
        if not realm:
            raise AuthenticationError(registry, "bearer challenge without realm")

        params = {"scope": challenge.get("scope", scope)}
        if "service" in challenge:
            params["service"] = challenge["service"]
        auth = self.credentials.get(registry_host(registry))

        try:
            response = self.client.get(
                realm, params=params, auth=auth, timeout=self.timeout
            )
        except httpx.RequestError as e:
            raise RegistryError(f"Token request to {realm} failed: {e}", registry) from e

        if response.status_code in (401, 403):
            raise AuthenticationError(registry, f"token endpoint returned {response.status_code}")
        if response.status_code >= 400:
            raise RegistryError(
                f"Token request to {realm} returned {response.status_code}", registry
            )

        body = response.json()
        token = body.get("token") or body.get("access_token")
        if not token:
            raise AuthenticationError(registry, "token endpoint returned no token")
        return str(token)

    def _head_manifest(self, image: ImageRef, token: str | None) -> httpx.Response:
        url = (
            f"{self._base_url(image.registry)}/v2/"
            f"{self._repository_path(image)}/manifests/{image.tag}"
        )
        headers = {"Accept": MANIFEST_ACCEPT}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        try:
            return self.client.head(url, headers=headers, timeout=self.timeout)
        except httpx.RequestError as e:
            raise RegistryError(f"Request to {url} failed: {e}", image.registry) from e

    def get_digest(self, image: ImageRef) -> str | None:
        """Return the manifest digest of ``image``, or None if it does not exist.

        Raises:
            AuthenticationError: If the registry rejects the credentials.
            RegistryError: On network errors or unexpected statuses.
        """
        key = (image.registry, image.repository)
        with self._lock:
            token = self._tokens.get(key)

        response = self._head_manifest(image, token)

        if response.status_code == 401:
            challenge = parse_bearer_challenge(response.headers.get("www-authenticate", ""))
            if challenge is None:
                raise AuthenticationError(image.registry)
            scope = f"repository:{self._repository_path(image)}:pull"
            token = self._fetch_token(image.registry, challenge, scope)
            with self._lock:
                self._tokens[key] = token
            response = self._head_manifest(image, token)

        if response.status_code in (401, 403):
            raise AuthenticationError(image.registry, f"HTTP {response.status_code}")
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise RegistryError(
                f"Manifest lookup for {image} returned HTTP {response.status_code}",
                image.registry,
            )

        digest = response.headers.get("docker-content-digest")
        if not digest:
            raise RegistryError(
                f"Registry returned no digest for {image}", image.registry
            )
        return digest


class CraneCopier:
    """Copy images between registries with ``crane copy``.

    Credentials come from the docker config of the invoking user.
    """

    def __init__(self, crane_bin: str = "crane", timeout: float = COPY_TIMEOUT) -> None:
        self.crane_bin = crane_bin
        self.timeout = timeout

    def copy(self, source: ImageRef, destination: ImageRef) -> None:
        """Copy ``source`` to ``destination``.

        Raises:
            AuthenticationError: If either registry rejected the credentials.
            CopyError: On any other failure.
        """
        cmd = [self.crane_bin, "copy", str(source), str(destination)]
        logger.info("Executing: %s", shlex.join(cmd))
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise CopyError(str(destination), f"timed out after {self.timeout}s") from e
        except OSError as e:
            raise CopyError(str(destination), f"failed to run {self.crane_bin}: {e}") from e

        if result.returncode != 0:
            stderr = result.stderr.strip()
            if AUTH_FAILURE_PATTERN.search(stderr):
                raise AuthenticationError(destination.registry, stderr.splitlines()[-1])
            raise CopyError(str(destination), stderr or f"exit code {result.returncode}")


__all__ = [
    "AUTH_FAILURE_PATTERN",
    "COPY_TIMEOUT",
    "CraneCopier",
    "REGISTRY_TIMEOUT",
    "RegistryClient",
    "RegistryError",
    "load_docker_credentials",
    "parse_bearer_challenge",
    "parse_credential",
    "registry_host",
]
