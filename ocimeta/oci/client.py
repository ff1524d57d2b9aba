from __future__ import annotations

import logging
import re
from collections.abc import Iterator
from contextlib import suppress
from urllib.parse import urljoin, urlparse, urlunparse

import httpx

from ocimeta import __version__

logger = logging.getLogger(__name__)

DOCKER_HUB = "registry-1.docker.io"
USER_AGENT = f"ocimeta/{__version__}"
RETRIES = 3
TIMEOUT = 30.0
MAX_BLOB_SIZE = 4 * 1024 * 1024

MANIFEST_MEDIA_TYPES = (
    "application/vnd.oci.image.manifest.v1+json",
    "application/vnd.oci.image.index.v1+json",
    "application/vnd.docker.distribution.manifest.v2+json",
    "application/vnd.docker.distribution.manifest.list.v2+json",
)

_CHALLENGE_PARAM_RE = re.compile(r'(\w+)="([^"]*)"')


class AuthenticationError(Exception):
    """Raised when authentication fails."""


class ContentError(ValueError):
    """Raised when content served by a registry can not be accepted."""


class RegistryError(httpx.HTTPStatusError):
    """Raised for a non-2xx registry response.

    `errors` holds the decoded error list of the response body, if any.
    ref: https://github.com/opencontainers/distribution-spec/blob/main/spec.md#error-codes
    """

    def __init__(
        self,
        message: str,
        *,
        request: httpx.Request,
        response: httpx.Response,
        errors: list[dict] | None = None,
    ):
        super().__init__(message, request=request, response=response)
        self.errors = errors or []

    @property
    def status_code(self) -> int:
        return self.response.status_code

    @classmethod
    def from_response(cls, response: httpx.Response) -> RegistryError:
        errors = []
        with suppress(ValueError):
            body = response.json()
            if isinstance(body, dict) and isinstance(body.get("errors"), list):
                errors = [e for e in body["errors"] if isinstance(e, dict)]
        message = (
            f"{response.request.method} {response.request.url} "
            f"returned {response.status_code}"
        )
        if errors:
            message += ": " + "; ".join(
                f"{e.get('code', 'UNKNOWN')}: {e.get('message', '')}" for e in errors
            )
        return cls(message, request=response.request, response=response, errors=errors)


def _listing(response: httpx.Response, key: str) -> list:
    """Return the `key` list of a catalog or tags list page"""
    try:
        body = response.json()
    except ValueError as e:
        raise ContentError(f"{response.request.url} returned non-JSON content") from e
    items = body.get(key) if isinstance(body, dict) else ()
    if items is None:
        return []
    if not isinstance(items, list):
        raise ContentError(f"{response.request.url} returned a malformed {key} list")
    return items


def _is_plain_http(registry: str) -> bool:
    host = registry.rsplit(":", 1)[0] if registry.count(":") == 1 else registry
    return host == "localhost"


def _clean_url(registry_url: str) -> str:
    parts = urlparse(registry_url)
    if not parts.scheme:
        parts = parts._replace(scheme="https")
    if parts.netloc == "docker.io":
        parts = parts._replace(netloc=DOCKER_HUB)
    return urlunparse(parts).rstrip("/")


def registry_url(registry: str, plain_http: bool | None = None) -> str:
    """Return the base URL for `registry`

    Registries on localhost are reached over plain HTTP unless `plain_http`
    says otherwise, everything else over HTTPS.
    """
    if not registry:
        raise ValueError("registry name is required")
    if "://" in registry:
        return _clean_url(registry)
    if plain_http is None:
        plain_http = _is_plain_http(registry)
    scheme = "http" if plain_http else "https"
    return _clean_url(f"{scheme}://{registry}")


def _parse_www_auth(www_authenticate: str) -> tuple[str, dict[str, str]]:
    """Parse the WWW-Authenticate header into its scheme and parameters"""
    scheme, _, params = www_authenticate.strip().partition(" ")
    return scheme.lower(), dict(_CHALLENGE_PARAM_RE.findall(params))


class BearerAuth:
    """Attaches HTTP Bearer Authentication to the given Request object."""

    def __init__(self, token: str):
        self.token = token

    def __call__(self, request):
        request.headers["Authorization"] = f"Bearer {self.token}"
        return request


class Client:
    """Client for the read side of the OCI registry API."""

    def __init__(
        self,
        registry_url: str,
        username: str | None = None,
        password: str | None = None,
        transport: httpx.BaseTransport | None = None,
        timeout: float = TIMEOUT,
    ):
        self.registry_url = _clean_url(registry_url)
        self.username = username
        self.password = password
        self.timeout = timeout
        self._transport = transport
        self._session = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @property
    def session(self):
        if self._session is None:
            self._session = httpx.Client(
                transport=self._transport or httpx.HTTPTransport(retries=RETRIES),
                follow_redirects=True,
                max_redirects=5,
                timeout=self.timeout,
                headers={"User-Agent": USER_AGENT},
            )
        return self._session

    def close(self):
        if self._session is not None:
            self._session.close()
            self._session = None

    def url(self, uri: str) -> str:
        if uri.startswith(("http://", "https://")):
            return uri
        return f"{self.registry_url}{uri}"

    def request(self, method: str, uri: str, stream: bool = False, **kwargs):
        """Send a request, answering at most one authentication challenge"""
        request = self.session.build_request(method, self.url(uri), **kwargs)
        response = self.session.send(request, stream=stream)
        if response.status_code == 401 and self.answer_challenge(response):
            response.close()
            request = self.session.build_request(method, self.url(uri), **kwargs)
            response = self.session.send(request, stream=stream)
        return response

    def head(self, uri, **kwargs):
        return self.request("HEAD", uri, **kwargs)

    def get(self, uri, **kwargs):
        return self.request("GET", uri, **kwargs)

    def answer_challenge(self, response: httpx.Response) -> bool:
        """Set up authentication for the challenge in `response`

        Return False if there is no challenge to answer.
        """
        www_authenticate = response.headers.get("WWW-Authenticate")
        if not www_authenticate:
            return False
        scheme, params = _parse_www_auth(www_authenticate)
        logger.debug("Authentication challenge: %s %s", scheme, params)
        if scheme == "basic":
            if not self.password:
                raise AuthenticationError(
                    f"{self.registry_url} requires authentication, "
                    f"provide a username and/or password."
                )
            self.session.auth = (self.username or "", self.password)
            return True
        if scheme == "bearer" and "realm" in params:
            self.authenticate(
                token_url=params["realm"],
                service=params.get("service"),
                scope=params.get("scope"),
            )
            return True
        return False

    def authenticate(self, token_url, service, scope):
        """Use the token api to get a token, anonymously if no password is set

        ref: https://distribution.github.io/distribution/spec/auth/token/
        """
        params = {}
        if service:
            params["service"] = service
        if scope:
            params["scope"] = scope
        auth = None
        if self.password:
            params["client_id"] = self.username
            auth = (self.username or "", self.password)
        response = self.session.get(token_url, params=params, auth=auth)
        if response.status_code in (401, 403):
            raise AuthenticationError(
                f"{self.registry_url} requires authentication, "
                f"provide a username and/or password."
            )
        response.raise_for_status()
        body = response.json()
        token = body.get("token") or body.get("access_token")
        if not token:
            raise AuthenticationError(f"{token_url} did not return a token")
        self.session.auth = BearerAuth(token)

    def raise_for_status(self, response: httpx.Response):
        if response.is_success:
            return
        if not response.is_closed:
            response.read()
        raise RegistryError.from_response(response)

    def pages(self, uri: str, **kwargs) -> Iterator[httpx.Response]:
        """Yield every page of a paginated listing, following `Link` headers

        ref: https://github.com/opencontainers/distribution-spec/blob/main/spec.md#listing-tags
        """
        seen = set()
        while uri is not None:
            response = self.get(uri, **kwargs)
            self.raise_for_status(response)
            seen.add(str(response.url))
            yield response

            next_link = response.links.get("next", {}).get("url")
            if next_link is None:
                return
            uri = urljoin(str(response.url), next_link)
            if uri in seen:
                raise ContentError(f"pagination loop detected at {uri}")
            # The next link carries its own query string
            kwargs.pop("params", None)

    def catalog(self) -> list[str]:
        repositories = []
        for page in self.pages("/v2/_catalog"):
            repositories.extend(_listing(page, "repositories"))
        return repositories

    def list_tags(self, name: str) -> list[str]:
        tags = []
        for page in self.pages(f"/v2/{name}/tags/list"):
            tags.extend(_listing(page, "tags"))
        return tags

    def head_manifest(
        self, name: str, reference: str, media_type: str = ", ".join(MANIFEST_MEDIA_TYPES)
    ) -> httpx.Response:
        response = self.head(
            f"/v2/{name}/manifests/{reference}", headers={"Accept": media_type}
        )
        self.raise_for_status(response)
        return response

    def pull_manifest(
        self, name: str, reference: str, media_type: str = ", ".join(MANIFEST_MEDIA_TYPES)
    ) -> httpx.Response:
        response = self.get(
            f"/v2/{name}/manifests/{reference}", headers={"Accept": media_type}
        )
        if response.status_code == 403:
            logger.debug(response.headers)
        self.raise_for_status(response)
        return response

    def pull_blob(self, name: str, digest: str, max_size: int = MAX_BLOB_SIZE) -> bytes:
        """Download a blob, refusing anything larger than `max_size` bytes"""
        response = self.get(f"/v2/{name}/blobs/{digest}", stream=True)
        try:
            self.raise_for_status(response)
            length = response.headers.get("Content-Length")
            if length is not None and int(length) > max_size:
                raise ContentError(f"blob too large: {length} > {max_size} bytes")
            data = bytearray()
            for chunk in response.iter_bytes():
                data.extend(chunk)
                if len(data) > max_size:
                    raise ContentError(f"blob too large: more than {max_size} bytes")
            return bytes(data)
        finally:
            response.close()

    def referrers(
        self, name: str, digest: str, artifact_type: str | None = None
    ) -> Iterator[httpx.Response]:
        """Yield the pages of the referrers API for `digest`

        ref: https://github.com/opencontainers/distribution-spec/blob/main/spec.md#listing-referrers
        """
        params = {"artifactType": artifact_type} if artifact_type else None
        yield from self.pages(
            f"/v2/{name}/referrers/{digest}",
            params=params,
            headers={"Accept": "application/vnd.oci.image.index.v1+json"},
        )
