import re
from dataclasses import dataclass

from ocimeta.oci.descriptor import DIGEST_PATTERN, validate_digest

# ref: https://github.com/opencontainers/distribution-spec/blob/main/spec.md#pulling-manifests
PATH_COMPONENT_PATTERN = r"[a-z0-9]+(?:(?:[._]|__|[-]+)[a-z0-9]+)*"
REPOSITORY_PATTERN = rf"{PATH_COMPONENT_PATTERN}(?:/{PATH_COMPONENT_PATTERN})*"
TAG_PATTERN = r"[a-zA-Z0-9_][a-zA-Z0-9._-]{0,127}"
REFERENCE_PATTERN = (
    r"^(?P<registry>[^/]+)"
    r"/(?P<repository>[^:@]+)"
    rf"(?::(?P<tag>{TAG_PATTERN}))?"
    rf"(?:@(?P<digest>{DIGEST_PATTERN}))?$"
)
REPOSITORY_RE = re.compile(REPOSITORY_PATTERN)
TAG_RE = re.compile(TAG_PATTERN)
REFERENCE_RE = re.compile(REFERENCE_PATTERN)


def validate_repository(value: str) -> str:
    if not value:
        raise ValueError("repository name is required")
    if not REPOSITORY_RE.fullmatch(value):
        raise ValueError(f"invalid repository name: {value!r}")
    return value


def validate_tag(value: str) -> str:
    if not TAG_RE.fullmatch(value):
        raise ValueError(f"invalid tag: {value!r}")
    return value


@dataclass(slots=True)
class Reference:
    """A reference to a repository, optionally pinned to a tag or digest

    Format: `<registry>/<repository>[:<tag>][@<digest>]`.
    A digest takes precedence over a tag, so when both are present
    only the digest is kept.
    """

    registry: str
    repository: str
    tag: str | None = None
    digest: str | None = None

    def __post_init__(self):
        if not self.registry:
            raise ValueError("registry name is required")
        validate_repository(self.repository)
        if self.digest:
            validate_digest(self.digest)
            self.tag = None
        elif self.tag:
            validate_tag(self.tag)
        self.tag = self.tag or None
        self.digest = self.digest or None

    def __str__(self):
        return f"{self.registry}/{self.repository}{self.suffix}"

    @property
    def suffix(self) -> str:
        if self.digest:
            return f"@{self.digest}"
        if self.tag:
            return f":{self.tag}"
        return ""

    @property
    def reference(self) -> str | None:
        """The tag or digest to resolve in the repository"""
        return self.digest or self.tag

    def require_reference(self) -> str:
        if self.reference is None:
            raise ValueError("either tag or digest is required")
        return self.reference

    def as_dict(self) -> dict[str, str]:
        return {
            key: value
            for key, value in (
                ("registry", self.registry),
                ("repository", self.repository),
                ("tag", self.tag),
                ("digest", self.digest),
            )
            if value
        }

    @classmethod
    def from_string(cls, value: str) -> "Reference":
        """Parse a reference string into a Reference object"""
        if not value:
            raise ValueError("reference string is required")
        match = REFERENCE_RE.fullmatch(value)
        if not match:
            raise ValueError(f"invalid reference string format: {value!r}")
        try:
            return cls(
                registry=match["registry"],
                repository=match["repository"],
                tag=match["tag"],
                digest=match["digest"],
            )
        except ValueError as e:
            raise ValueError(f"invalid reference string format: {e}") from e
