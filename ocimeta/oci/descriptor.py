import re
from hashlib import sha256, sha512
from typing import Any

from pydantic import BaseModel, Field, field_validator

ALGORITHM_PATTERN = r"[a-z0-9]+(?:[.+_-][a-z0-9]+)*"
ENCODED_PATTERN = r"[a-zA-Z0-9=_-]+"
DIGEST_PATTERN = rf"{ALGORITHM_PATTERN}:{ENCODED_PATTERN}"
DIGEST_RE = re.compile(DIGEST_PATTERN)

# Registered algorithms and the exact form of their encoded part
ALGORITHMS = {
    "sha256": (sha256, re.compile(r"[a-f0-9]{64}")),
    "sha512": (sha512, re.compile(r"[a-f0-9]{128}")),
}


def validate_digest(value: str) -> str:
    """Return `value` if it is a well-formed digest, raise ValueError otherwise

    ref: https://github.com/opencontainers/image-spec/blob/main/descriptor.md#digests
    """
    if not DIGEST_RE.fullmatch(value):
        raise ValueError(f"invalid digest: {value!r}")
    algorithm, encoded = value.split(":", 1)
    if algorithm in ALGORITHMS and not ALGORITHMS[algorithm][1].fullmatch(encoded):
        raise ValueError(f"invalid {algorithm} digest: {value!r}")
    return value


def compute_digest(data: bytes, algorithm: str = "sha256") -> str:
    if algorithm not in ALGORITHMS:
        raise ValueError(f"unsupported digest algorithm: {algorithm}")
    return f"{algorithm}:{ALGORITHMS[algorithm][0](data).hexdigest()}"


def verify_digest(data: bytes, digest: str) -> bool:
    """Check `data` against `digest`"""
    algorithm = digest.split(":", 1)[0]
    return compute_digest(data, algorithm) == digest


class Descriptor(BaseModel):
    """
    ref: https://github.com/opencontainers/image-spec/blob/main/descriptor.md

    Two descriptors are the same object when their digests are equal,
    whatever the other fields say.
    """

    mediaType: str
    digest: str
    size: int = Field(ge=0)
    artifactType: str | None = None
    annotations: dict[str, str] | None = None
    urls: list[str] | None = None
    # Base64 of the content, for descriptors embedding it
    data: str | None = Field(default=None, repr=False)
    platform: dict[str, Any] | None = None

    @field_validator("digest")
    @classmethod
    def _check_digest(cls, value: str) -> str:
        return validate_digest(value)

    def __eq__(self, other):
        if not isinstance(other, Descriptor):
            return NotImplemented
        return self.digest == other.digest

    def __hash__(self):
        return hash(self.digest)

    def dump(self) -> dict:
        """Return the descriptor as a JSON-ready dict, without empty fields"""
        return self.model_dump(mode="json", exclude_none=True)
