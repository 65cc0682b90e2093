"""
Docker Registry HTTP API v2 client.

Provides the registry side of a cleanup run: repository/tag inventory,
manifest metadata (digest, creation time, size) and manifest deletion.
Authentication follows the registry's challenge: HTTP basic, or a bearer
token fetched from the realm named in ``WWW-Authenticate``.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urljoin, urlparse

import requests

from regclean.error_utils import create_registry_auth_error, create_registry_connection_error
from regclean.image_ref import ImageRef
from regclean.metadata_cache import ImageMetadata
from regclean.retry_utils import retry_with_backoff

logger = logging.getLogger(__name__)

MANIFEST_V2 = "application/vnd.docker.distribution.manifest.v2+json"
MANIFEST_LIST_V2 = "application/vnd.docker.distribution.manifest.list.v2+json"
OCI_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
OCI_INDEX = "application/vnd.oci.image.index.v1+json"

IMAGE_MANIFEST_TYPES = (MANIFEST_V2, OCI_MANIFEST)
INDEX_MANIFEST_TYPES = (MANIFEST_LIST_V2, OCI_INDEX)

_CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')
_FRACTION = re.compile(r"\.(\d+)")
_REPOSITORY_PATH = re.compile(r"^/v2/(.+?)/(?:manifests|tags|blobs)/")


class RegistryError(Exception):
    """Registry request failed"""

    retryable = False

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ImageNotFoundError(RegistryError):
    """The repository, tag or manifest does not exist in the registry.

    This is a non-retryable condition: the tag was never there or was
    already deleted by a previous run.
    """


class RegistryTransientError(RegistryError):
    """Network failure, rate limiting or server error; worth retrying"""

    retryable = True


class RegistryAuthError(RegistryError):
    """Credentials were rejected or a token could not be obtained"""


class RegistryDeleteNotAllowedError(RegistryError):
    """The registry refuses manifest deletion (storage delete disabled)"""


@dataclass(frozen=True)
class ManifestMetadata:
    """Digest plus the cached facts about a tag"""

    digest: str
    created_at: datetime
    total_size_bytes: int

    @property
    def image_metadata(self) -> ImageMetadata:
        return ImageMetadata(created_at=self.created_at, total_size_bytes=self.total_size_bytes)


def parse_timestamp(value: str) -> datetime:
    """Parse an RFC 3339 timestamp as written in image configs.

    Handles a trailing ``Z`` and nanosecond fractions, which
    ``datetime.fromisoformat`` rejects on older interpreters.
    """
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_challenge(header: str) -> Tuple[str, Dict[str, str]]:
    """Split a WWW-Authenticate header into (scheme, params)"""
    scheme, _, rest = header.strip().partition(" ")
    return scheme.lower(), dict(_CHALLENGE_PARAM.findall(rest))


def _error_detail(response: requests.Response) -> str:
    try:
        errors = response.json().get("errors") or []
        return "; ".join(f"{e.get('code')}: {e.get('message')}" for e in errors) or response.reason
    except (ValueError, AttributeError):
        return response.reason or ""


def _json(response: requests.Response, what: str) -> Dict[str, Any]:
    """Decode a JSON object body, raising RegistryError for anything else"""
    try:
        body = response.json()
    except ValueError as e:
        raise RegistryError(f"{what} is not valid JSON: {e}", status_code=response.status_code) from e
    if not isinstance(body, dict):
        raise RegistryError(f"{what} is not a JSON object", status_code=response.status_code)
    return body


def _access_key(method: str, url: str) -> Tuple[str, str]:
    """(resource, action) that a request needs a bearer token for"""
    path = urlparse(url).path
    match = _REPOSITORY_PATH.match(path)
    resource = match.group(1) if match else path
    return resource, "delete" if method == "DELETE" else "pull"


class RegistryClient:
    """Client for one registry, identified by its base URL"""

    def __init__(
        self,
        url: str,
        username: str = "",
        password: str = "",
        timeout: float = 30.0,
        verify_tls: bool = True,
        retry_settings: Optional[Dict[str, Any]] = None,
        session: Optional[requests.Session] = None,
    ):
        """Initialize RegistryClient.

        Args:
            url: Registry base URL (e.g. "https://registry.example.com:5000")
            username: Registry username (empty for anonymous access)
            password: Registry password or token
            timeout: Per-request timeout in seconds
            verify_tls: Verify the registry's TLS certificate
            retry_settings: Keyword arguments for retry_with_backoff
            session: Optional preconfigured requests session
        """
        self.url = url.rstrip("/")
        self.registry_host = urlparse(self.url).netloc
        self.username = username
        self.password = password
        self.timeout = timeout
        self.verify_tls = verify_tls
        self.session = session or requests.Session()
        # Bearer tokens by challenge scope, and the scope each (resource, action) was challenged with
        self._tokens: Dict[str, str] = {}
        self._scopes: Dict[Tuple[str, str], str] = {}
        self._request = retry_with_backoff(**(retry_settings or {}))(self._request_once)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _basic_auth(self) -> Optional[Tuple[str, str]]:
        if self.username or self.password:
            return self.username, self.password
        return None

    def _send(self, method: str, url: str, headers: Dict[str, str], token: Optional[str]) -> requests.Response:
        headers = dict(headers)
        auth = None
        if token:
            headers["Authorization"] = f"Bearer {token}"
        else:
            auth = self._basic_auth()
        try:
            return self.session.request(
                method, url, headers=headers, auth=auth, timeout=self.timeout, verify=self.verify_tls
            )
        except requests.RequestException as e:
            raise RegistryTransientError(f"{method} {url} failed: {e}") from e

    def _fetch_token(self, params: Dict[str, str]) -> str:
        """Exchange the basic credentials for a bearer token at the challenge realm"""
        realm = params.get("realm")
        if not realm:
            raise RegistryAuthError("bearer challenge without a realm", status_code=401)
        query = {key: params[key] for key in ("service", "scope") if params.get(key)}
        try:
            response = self.session.get(
                realm, params=query, auth=self._basic_auth(), timeout=self.timeout, verify=self.verify_tls
            )
        except requests.RequestException as e:
            raise RegistryTransientError(f"token request to {realm} failed: {e}") from e
        if response.status_code in (401, 403):
            raise RegistryAuthError(f"token request to {realm} rejected", status_code=response.status_code)
        if response.status_code != 200:
            raise RegistryTransientError(
                f"token request to {realm} failed with HTTP {response.status_code}", status_code=response.status_code
            )
        body = _json(response, f"token response from {realm}")
        token = body.get("token") or body.get("access_token")
        if not token:
            raise RegistryAuthError(f"token response from {realm} has no token")
        logger.debug(f"Obtained registry token for scope {params.get('scope', '-')}")
        return token

    def _request_once(self, method: str, path: str, headers: Optional[Dict[str, str]] = None) -> requests.Response:
        url = urljoin(self.url + "/", path.lstrip("/")) if not path.startswith("http") else path
        headers = headers or {}
        key = _access_key(method, url)
        scope = self._scopes.get(key)
        response = self._send(method, url, headers, self._tokens.get(scope) if scope is not None else None)

        if response.status_code == 401:
            scheme, params = parse_challenge(response.headers.get("WWW-Authenticate", ""))
            if scheme == "bearer":
                scope = params.get("scope", "")
                self._tokens[scope] = self._fetch_token(params)
                self._scopes[key] = scope
                response = self._send(method, url, headers, self._tokens[scope])

        self._raise_for_status(method, url, response)
        return response

    @staticmethod
    def _raise_for_status(method: str, url: str, response: requests.Response) -> None:
        status = response.status_code
        if 200 <= status < 300:
            return
        message = f"{method} {url} returned HTTP {status}: {_error_detail(response)}"
        if status == 404:
            raise ImageNotFoundError(message, status_code=status)
        if status in (401, 403):
            raise RegistryAuthError(message, status_code=status)
        if status == 405:
            raise RegistryDeleteNotAllowedError(message, status_code=status)
        if status == 429 or status >= 500:
            raise RegistryTransientError(message, status_code=status)
        raise RegistryError(message, status_code=status)

    def _paginate(self, path: str, field: str) -> List[str]:
        """Collect a list field across Link-paginated responses"""
        items: List[str] = []
        next_path: Optional[str] = path
        while next_path:
            response = self._request("GET", next_path)
            items.extend(_json(response, f"listing {next_path}").get(field) or [])
            next_link = response.links.get("next", {}).get("url")
            next_path = urljoin(self.url + "/", next_link) if next_link else None
        return items

    # ------------------------------------------------------------------
    # Registry operations
    # ------------------------------------------------------------------

    def ping(self) -> None:
        """Check connectivity and credentials against /v2/

        Raises:
            ActionableError: if the registry is unreachable or rejects the credentials
        """
        try:
            self._request("GET", "/v2/")
        except RegistryAuthError as e:
            raise create_registry_auth_error(self.url, e)
        except RegistryError as e:
            raise create_registry_connection_error(self.url, e)
        logger.debug(f"Registry {self.url} is reachable")

    def list_repositories(self) -> List[str]:
        return self._paginate("/v2/_catalog", "repositories")

    def list_tags(self, repository: str) -> List[str]:
        return self._paginate(f"/v2/{repository}/tags/list", "tags")

    def list_repositories_and_tags(self) -> List[Tuple[str, str]]:
        """Full (repository, tag) inventory in registry listing order"""
        inventory: List[Tuple[str, str]] = []
        for repository in self.list_repositories():
            try:
                tags = self.list_tags(repository)
            except ImageNotFoundError:
                # Catalog entries can outlive their last tag
                logger.debug(f"Repository {repository} has no tags")
                continue
            inventory.extend((repository, tag) for tag in tags)
        return inventory

    def list_images(self) -> List[ImageRef]:
        """Registry inventory as ImageRefs carrying this registry's host"""
        return [
            ImageRef(registry_host=self.registry_host, repository=repository, tag=tag)
            for repository, tag in self.list_repositories_and_tags()
        ]

    def get_manifest_digest(self, repository: str, tag: str) -> str:
        """Resolve the digest a tag currently points to"""
        accept = ", ".join(IMAGE_MANIFEST_TYPES + INDEX_MANIFEST_TYPES)
        response = self._request("HEAD", f"/v2/{repository}/manifests/{tag}", headers={"Accept": accept})
        digest = response.headers.get("Docker-Content-Digest")
        if not digest:
            raise RegistryError(f"registry returned no digest for {repository}:{tag}")
        return digest

    def _get_manifest(self, repository: str, reference: str) -> Tuple[Dict[str, Any], str, Optional[str]]:
        accept = ", ".join(IMAGE_MANIFEST_TYPES + INDEX_MANIFEST_TYPES)
        response = self._request("GET", f"/v2/{repository}/manifests/{reference}", headers={"Accept": accept})
        manifest = _json(response, f"manifest {repository}:{reference}")
        media_type = manifest.get("mediaType") or response.headers.get("Content-Type", "").split(";")[0]
        return manifest, media_type, response.headers.get("Docker-Content-Digest")

    def fetch_manifest_metadata(self, repository: str, tag: str) -> ManifestMetadata:
        """Fetch digest, creation time and total size of a tag.

        Size is the config blob plus all layers. For multi-platform indexes
        the first listed platform manifest is measured.

        Raises:
            ImageNotFoundError: the tag or one of its blobs does not exist
            RegistryError: any other registry failure
        """
        manifest, media_type, digest = self._get_manifest(repository, tag)

        if media_type in INDEX_MANIFEST_TYPES or "manifests" in manifest:
            children = manifest.get("manifests") or []
            if not children:
                raise RegistryError(f"manifest index for {repository}:{tag} is empty")
            child_digest = children[0].get("digest") if isinstance(children[0], dict) else None
            if not child_digest:
                raise RegistryError(f"manifest index for {repository}:{tag} lists a platform without a digest")
            manifest, media_type, _ = self._get_manifest(repository, child_digest)

        config = manifest.get("config") or {}
        config_digest = config.get("digest")
        if not config_digest:
            raise RegistryError(f"manifest for {repository}:{tag} has no config ({media_type or 'unknown type'})")

        response = self._request("GET", f"/v2/{repository}/blobs/{config_digest}")
        created = _json(response, f"config for {repository}:{tag}").get("created")
        if not created:
            raise RegistryError(f"config for {repository}:{tag} has no creation time")

        try:
            created_at = parse_timestamp(created)
            total = int(config.get("size", 0))
            for layer in manifest.get("layers") or []:
                total += int(layer.get("size", 0))
        except (AttributeError, TypeError, ValueError) as e:
            raise RegistryError(f"metadata for {repository}:{tag} is malformed: {e}") from e

        if not digest:
            digest = self.get_manifest_digest(repository, tag)

        return ManifestMetadata(digest=digest, created_at=created_at, total_size_bytes=total)

    def delete_manifest(self, repository: str, digest: str) -> None:
        """Delete a manifest by digest. Every tag pointing at it goes with it.

        Raises:
            ImageNotFoundError: the manifest is already gone
            RegistryDeleteNotAllowedError: the registry has deletion disabled
            RegistryError: any other registry failure
        """
        self._request("DELETE", f"/v2/{repository}/manifests/{digest}")
