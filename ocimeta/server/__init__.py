import base64
import binascii
import logging
from collections.abc import Iterator
from typing import Annotated

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from httpx import BaseTransport, HTTPError

import ocimeta.oci
from ocimeta.oci import (
    AuthenticationError,
    Client,
    ContentError,
    Reference,
    RegistryError,
)

app = FastAPI(title="ocimeta")
logger = logging.getLogger(__name__)


def parse_auth_header(authorization: str) -> tuple[str, str]:
    """Parse the Authorization header into username and password."""
    try:
        decoded = base64.b64decode(
            authorization.removeprefix("Basic ").encode("utf-8"), validate=True
        ).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        raise HTTPException(status_code=400, detail="Malformed Authorization header") from e
    username, sep, password = decoded.partition(":")
    if not sep:
        raise HTTPException(status_code=400, detail="Malformed Authorization header")
    return username, password


def registry_transport() -> BaseTransport | None:
    """Transport for registry clients, None selects the retrying default."""
    return None


def registry_client(
    registry: str,
    transport: Annotated[BaseTransport | None, Depends(registry_transport)],
    authorization: Annotated[str | None, Header()] = None,
    insecure: Annotated[bool, Header(alias="X-OCIMeta-Insecure")] = False,
) -> Iterator[Client]:
    """FastAPI dependency providing a client for the registry in the path.

    Basic credentials in the Authorization header are passed on to the registry.
    """
    username = password = None
    if authorization is not None:
        username, password = parse_auth_header(authorization)
    with Client(
        registry_url=ocimeta.oci.registry_url(registry, plain_http=insecure or None),
        username=username,
        password=password,
        transport=transport,
    ) as client:
        yield client


RegistryClient = Annotated[Client, Depends(registry_client)]


@app.exception_handler(ValueError)
def value_error_handler(request: Request, exc: ValueError):
    # ContentError is a ValueError, but the registry is at fault
    status_code = 502 if isinstance(exc, ContentError) else 400
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


@app.exception_handler(AuthenticationError)
def authentication_error_handler(request: Request, exc: AuthenticationError):
    return JSONResponse(status_code=401, content={"detail": str(exc)})


@app.exception_handler(HTTPError)
def http_error_handler(request: Request, exc: HTTPError):
    if isinstance(exc, RegistryError):
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": str(exc), "errors": exc.errors},
        )
    logger.warning("Registry request failed: %s", exc)
    return JSONResponse(status_code=502, content={"detail": str(exc)})


@app.get("/registries", name="registries")
def list_wellknown_registries():
    return {"registries": ocimeta.oci.list_wellknown_registries()}


@app.get("/reference", name="parse_reference")
def parse_reference(reference: str = ""):
    return ocimeta.oci.parse_reference(reference).as_dict()


@app.get("/{registry}/repositories", name="repositories")
def list_repositories(client: RegistryClient):
    return {"repositories": ocimeta.oci.list_repositories(client=client)}


@app.get("/{registry}/{repository:path}/tags", name="tags")
def list_tags(registry: str, repository: str, client: RegistryClient):
    reference = Reference(registry=registry, repository=repository)
    return {"tags": ocimeta.oci.list_tags(reference=reference, client=client)}


@app.get("/{registry}/{repository:path}/manifests/{reference}", name="manifest")
def fetch_manifest(registry: str, repository: str, reference: str, client: RegistryClient):
    ref = _reference(registry, repository, reference)
    return ocimeta.oci.fetch_manifest(reference=ref, client=client)


@app.get("/{registry}/{repository:path}/blobs/{digest}", name="blob")
def fetch_blob(registry: str, repository: str, digest: str, client: RegistryClient):
    ref = Reference(registry=registry, repository=repository, digest=digest)
    return ocimeta.oci.fetch_blob(reference=ref, client=client)


@app.get("/{registry}/{repository:path}/referrers/{reference}", name="referrers")
def list_referrers(
    registry: str,
    repository: str,
    reference: str,
    client: RegistryClient,
    artifact_type: Annotated[str | None, Query(alias="artifactType")] = None,
):
    ref = _reference(registry, repository, reference)
    return ocimeta.oci.list_referrers(
        reference=ref, client=client, artifact_type=artifact_type or None
    )


def _reference(registry: str, repository: str, reference: str) -> Reference:
    """Build a Reference from a path segment holding either a tag or a digest"""
    if ":" in reference:
        return Reference(registry=registry, repository=repository, digest=reference)
    return Reference(registry=registry, repository=repository, tag=reference)
