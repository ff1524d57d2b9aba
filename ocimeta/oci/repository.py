import json
import logging
from collections.abc import Iterator
from typing import Any

from pydantic import ValidationError

from ocimeta.oci.client import (
    MAX_BLOB_SIZE,
    Client,
    ContentError,
    RegistryError,
)
from ocimeta.oci.descriptor import (
    Descriptor,
    DIGEST_RE,
    compute_digest,
    validate_digest,
    verify_digest,
)
from ocimeta.oci.index import INDEX_MEDIA_TYPE, Index
from ocimeta.oci.reference import validate_repository

logger = logging.getLogger(__name__)

FILTERS_APPLIED = "OCI-Filters-Applied"


def _media_type(content_type: str | None) -> str:
    if not content_type:
        raise ContentError("registry response is missing a Content-Type")
    return content_type.split(";", 1)[0].strip()


def _decode_index(content: bytes) -> Index:
    try:
        return Index.model_validate_json(content)
    except ValidationError as e:
        raise ContentError(f"malformed referrers index: {e}") from e


def referrers_tag(digest: str) -> str:
    """Return the tag of the referrers index for `digest`

    ref: https://github.com/opencontainers/distribution-spec/blob/main/spec.md#referrers-tag-schema
    """
    algorithm, encoded = digest.split(":", 1)
    return f"{algorithm}-{encoded}"[:128]


class Repository:
    """A single repository of a remote registry

    Resolves references to descriptors, fetches manifests and blobs
    and lists referrers, delegating the wire protocol to `Client`.
    """

    def __init__(self, client: Client, name: str):
        self.client = client
        self.name = validate_repository(name)

    def __repr__(self):
        return f"Repository({self.client.registry_url}/{self.name})"

    def resolve(self, reference: str) -> Descriptor:
        """Resolve a tag or digest into the descriptor of its manifest"""
        response = self.client.head_manifest(name=self.name, reference=reference)
        digest = response.headers.get("Docker-Content-Digest")
        if digest is None:
            logger.debug("No digest header for %s:%s, pulling", self.name, reference)
            response = self.client.pull_manifest(name=self.name, reference=reference)
            self._verify(reference, response.content, response.headers)
            return Descriptor(
                mediaType=_media_type(response.headers.get("Content-Type")),
                digest=reference
                if DIGEST_RE.fullmatch(reference)
                else compute_digest(response.content),
                size=len(response.content),
            )

        if DIGEST_RE.fullmatch(reference) and digest != reference:
            raise ContentError(
                f"{self.name}@{reference} resolved to a different digest: {digest}"
            )
        return Descriptor(
            mediaType=_media_type(response.headers.get("Content-Type")),
            digest=digest,
            size=int(response.headers.get("Content-Length", 0)),
        )

    def fetch_manifest(self, reference: str) -> dict:
        """Fetch and verify the manifest at `reference`"""
        response = self.client.pull_manifest(name=self.name, reference=reference)
        self._verify(reference, response.content, response.headers)
        try:
            return json.loads(response.content)
        except ValueError as e:
            raise ContentError(f"manifest {self.name}:{reference} is not JSON") from e

    def fetch_blob(self, digest: str, max_size: int = MAX_BLOB_SIZE) -> Any:
        """Fetch a JSON blob, verifying it against its digest"""
        validate_digest(digest)
        data = self.client.pull_blob(name=self.name, digest=digest, max_size=max_size)
        if not verify_digest(data, digest):
            raise ContentError(f"digest mismatch for blob {self.name}@{digest}")
        try:
            return json.loads(data)
        except ValueError as e:
            raise ContentError("non-JSON blob is unsupported") from e

    def tags(self) -> list[str]:
        return self.client.list_tags(name=self.name)

    def referrers(
        self, descriptor: Descriptor, artifact_type: str | None = None
    ) -> Iterator[list[Descriptor]]:
        """Yield the referrers of `descriptor`, one batch per page

        Registries without the referrers API are queried through
        the referrers tag schema instead.
        """
        first = True
        try:
            for page in self.client.referrers(
                name=self.name, digest=descriptor.digest, artifact_type=artifact_type
            ):
                first = False
                index = _decode_index(page.content)
                applied = page.headers.get(FILTERS_APPLIED, "").split(",")
                if "artifactType" in (f.strip() for f in applied):
                    yield list(index.manifests)
                else:
                    yield index.filter(artifact_type)
        except RegistryError as e:
            if not (first and e.status_code == 404):
                raise
            logger.debug(
                "Referrers API unavailable for %s, using the tag schema", self.name
            )
            yield from self._referrers_from_tag(descriptor, artifact_type)

    def _referrers_from_tag(
        self, descriptor: Descriptor, artifact_type: str | None
    ) -> Iterator[list[Descriptor]]:
        try:
            response = self.client.pull_manifest(
                name=self.name,
                reference=referrers_tag(descriptor.digest),
                media_type=INDEX_MEDIA_TYPE,
            )
        except RegistryError as e:
            if e.status_code == 404:
                return
            raise
        yield _decode_index(response.content).filter(artifact_type)

    def _verify(self, reference: str, content: bytes, headers) -> None:
        expected = reference if DIGEST_RE.fullmatch(reference) else None
        expected = expected or headers.get("Docker-Content-Digest")
        if expected is not None and not verify_digest(content, expected):
            raise ContentError(f"digest mismatch for manifest {self.name}@{expected}")
