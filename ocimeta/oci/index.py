import logging

from pydantic import BaseModel

from ocimeta.oci.descriptor import Descriptor

logger = logging.getLogger(__name__)

INDEX_MEDIA_TYPE = "application/vnd.oci.image.index.v1+json"


class Index(BaseModel):
    """
    ref: https://github.com/opencontainers/image-spec/blob/main/image-index.md

    The referrers API answers with an index whose `manifests` are the referrers.
    ref: https://github.com/opencontainers/distribution-spec/blob/main/spec.md#listing-referrers
    """

    schemaVersion: int = 2
    mediaType: str = INDEX_MEDIA_TYPE
    artifactType: str | None = None
    manifests: list[Descriptor] = []
    annotations: dict[str, str] | None = None

    def filter(self, artifact_type: str | None) -> list[Descriptor]:
        """Return the manifests matching `artifact_type`, all of them for None"""
        if artifact_type is None:
            return list(self.manifests)
        return [m for m in self.manifests if m.artifactType == artifact_type]
