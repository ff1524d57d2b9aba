"""OCI registry metadata for Python

This module provides read-only queries against the OCI registry API:
repositories, tags, manifests, blobs and the referrer graph of an artifact.
"""
import logging
import threading
from typing import Any

from ocimeta.oci.client import (
    AuthenticationError,
    Client,
    ContentError,
    RegistryError,
    registry_url,
)
from ocimeta.oci.descriptor import Descriptor
from ocimeta.oci.index import Index
from ocimeta.oci.reference import Reference
from ocimeta.oci.referrers import Cancelled, ReferrerNode, resolve
from ocimeta.oci.repository import Repository

logger = logging.getLogger(__name__)

WELLKNOWN_REGISTRIES = (
    {
        "name": "mcr.microsoft.com",
        "description": "Microsoft Container Registry",
    },
)


def list_wellknown_registries() -> list[dict[str, str]]:
    """List well-known public registries with catalog support"""
    return [dict(registry) for registry in WELLKNOWN_REGISTRIES]


def parse_reference(value: str) -> Reference:
    """Parse a reference string into registry, repository, tag and digest"""
    return Reference.from_string(value)


def list_repositories(client: Client) -> list[str]:
    """List the repositories of the registry `client` talks to"""
    return client.catalog()


def list_tags(reference: Reference, client: Client) -> list[str]:
    """List the tags of a repository"""
    return Repository(client, reference.repository).tags()


def fetch_manifest(reference: Reference, client: Client) -> dict:
    """Fetch the manifest of an image or artifact by tag or digest"""
    target = reference.require_reference()
    logger.info("Fetching manifest %s", reference)
    return Repository(client, reference.repository).fetch_manifest(target)


def fetch_blob(reference: Reference, client: Client) -> Any:
    """Fetch a JSON blob, e.g. an image config, by digest"""
    if reference.digest is None:
        raise ValueError("blob digest is required")
    logger.info("Fetching blob %s", reference)
    return Repository(client, reference.repository).fetch_blob(reference.digest)


def list_referrers(
    reference: Reference,
    client: Client,
    artifact_type: str | None = None,
    cancel: threading.Event | None = None,
) -> dict:
    """List the referrers of an image or artifact, transitively

    :param reference: The image or artifact, by tag or digest.
    :param client: The OCI client to use.
    :param artifact_type: Only list referrers of this artifact type.
    :param cancel: Set to abort the listing.

    Returns the referrer tree, starting at the resolved root.
    """
    target = reference.require_reference()
    repository = Repository(client, reference.repository)
    root = repository.resolve(target)
    logger.info("Listing referrers of %s (%s)", reference, root.digest)
    tree = resolve(root, artifact_type, source=repository, cancel=cancel)
    return tree.as_dict()

