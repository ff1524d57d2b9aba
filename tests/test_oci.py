import threading

import httpx
import pytest

import ocimeta.oci
from ocimeta.oci import Cancelled, Reference, RegistryError
from tests.fakes import MANIFEST_MEDIA_TYPE, REGISTRY, digest_of

ARTIFACT_TYPE = "application/vnd.test"


def referrer(name: str, media_type: str = MANIFEST_MEDIA_TYPE, size: int = 123) -> dict:
    return {
        "mediaType": media_type,
        "digest": digest_of(name),
        "size": size,
        "artifactType": ARTIFACT_TYPE,
    }


def test_list_wellknown_registries():
    assert ocimeta.oci.list_wellknown_registries() == [
        {"name": "mcr.microsoft.com", "description": "Microsoft Container Registry"}
    ]


def test_parse_reference():
    ref = ocimeta.oci.parse_reference("localhost:5000/test-repo:latest")
    assert ref.as_dict() == {
        "registry": "localhost:5000",
        "repository": "test-repo",
        "tag": "latest",
    }


def test_list_repositories(registry, client):
    registry.add_manifest("repo1", tag="v1")
    registry.add_manifest("repo2", tag="v1")
    assert ocimeta.oci.list_repositories(client=client) == ["repo1", "repo2"]


def test_list_tags(registry, client):
    registry.add_manifest("test-repo", tag="v1")
    ref = Reference(registry=REGISTRY, repository="test-repo")
    assert ocimeta.oci.list_tags(reference=ref, client=client) == ["v1"]


def test_list_tags_repository_not_found(client):
    ref = Reference(registry=REGISTRY, repository="missing")
    with pytest.raises(RegistryError) as exc_info:
        ocimeta.oci.list_tags(reference=ref, client=client)
    assert exc_info.value.errors[0]["code"] == "NAME_UNKNOWN"


def test_fetch_manifest(registry, client):
    registry.add_manifest("test-repo", tag="latest")
    ref = Reference(registry=REGISTRY, repository="test-repo", tag="latest")
    assert ocimeta.oci.fetch_manifest(reference=ref, client=client) == {
        "mediaType": MANIFEST_MEDIA_TYPE,
        "schemaVersion": 2,
    }


def test_fetch_manifest_requires_reference(registry, client):
    ref = Reference(registry=REGISTRY, repository="test-repo")
    with pytest.raises(ValueError, match="either tag or digest is required"):
        ocimeta.oci.fetch_manifest(reference=ref, client=client)
    assert registry.requests == []


def test_fetch_blob(registry, client):
    digest = registry.add_blob("test-repo", b'{"os":"linux"}')
    ref = Reference(registry=REGISTRY, repository="test-repo", digest=digest)
    assert ocimeta.oci.fetch_blob(reference=ref, client=client) == {"os": "linux"}


def test_fetch_blob_requires_digest(registry, client):
    ref = Reference(registry=REGISTRY, repository="test-repo", tag="latest")
    with pytest.raises(ValueError, match="blob digest is required"):
        ocimeta.oci.fetch_blob(reference=ref, client=client)
    assert registry.requests == []


def test_list_referrers(registry, client):
    root = registry.add_manifest("test-repo", tag="latest")
    child1 = referrer("child-1", size=123)
    child2 = referrer("child-2", "application/vnd.oci.image.index.v1+json", 456)
    grandchild = referrer("grand-child", size=789)
    registry.add_referrer("test-repo", root["digest"], child1)
    registry.add_referrer("test-repo", root["digest"], child2)
    registry.add_referrer("test-repo", child1["digest"], grandchild)

    ref = Reference(registry=REGISTRY, repository="test-repo", tag="latest")
    tree = ocimeta.oci.list_referrers(
        reference=ref, client=client, artifact_type=ARTIFACT_TYPE
    )

    assert tree == root | {
        "referrers": [
            child1 | {"referrers": [grandchild | {"referrers": []}]},
            child2 | {"referrers": []},
        ]
    }
    assert registry.referrer_paths() == [
        root["digest"],
        child1["digest"],
        grandchild["digest"],
        child2["digest"],
    ]
    assert all(
        r.url.params["artifactType"] == ARTIFACT_TYPE
        for r in registry.requests
        if "/referrers/" in r.url.path
    )


def test_list_referrers_keeps_descriptor_fields(registry, client):
    root = registry.add_manifest("test-repo", tag="latest")
    signature = referrer("signature") | {
        "annotations": {"org.opencontainers.image.created": "2024-01-01T00:00:00Z"},
        "platform": {"architecture": "amd64", "os": "linux"},
        "data": "c2ln",
    }
    registry.add_referrer("test-repo", root["digest"], signature)

    ref = Reference(registry=REGISTRY, repository="test-repo", tag="latest")
    tree = ocimeta.oci.list_referrers(reference=ref, client=client)

    assert tree["referrers"] == [signature | {"referrers": []}]


def test_list_referrers_cycle(registry, client):
    """R -> [A -> [C -> [R]], B]: the back edge to R is dropped"""
    root = registry.add_manifest("test-repo", tag="latest")
    a, b, c = referrer("A"), referrer("B"), referrer("C")
    registry.add_referrer("test-repo", root["digest"], a)
    registry.add_referrer("test-repo", root["digest"], b)
    registry.add_referrer("test-repo", a["digest"], c)
    registry.add_referrer(
        "test-repo", c["digest"], {**root, "artifactType": ARTIFACT_TYPE}
    )

    ref = Reference(registry=REGISTRY, repository="test-repo", tag="latest")
    tree = ocimeta.oci.list_referrers(reference=ref, client=client)

    assert [n["digest"] for n in tree["referrers"]] == [a["digest"], b["digest"]]
    (node_a, node_b) = tree["referrers"]
    assert [n["digest"] for n in node_a["referrers"]] == [c["digest"]]
    assert node_a["referrers"][0]["referrers"] == []
    assert node_b["referrers"] == []
    assert len(registry.referrer_paths()) == 4


def test_list_referrers_resolve_error(client):
    ref = Reference(registry=REGISTRY, repository="test-repo", tag="latest")
    with pytest.raises(RegistryError) as exc_info:
        ocimeta.oci.list_referrers(reference=ref, client=client)
    assert exc_info.value.status_code == 404


def test_list_referrers_referrers_error(registry, client, monkeypatch):
    registry.add_manifest("test-repo", tag="latest")
    handle = registry.handle

    def teapot(request):
        if "/referrers/" in request.url.path:
            return httpx.Response(418)
        return handle(request)

    monkeypatch.setattr(registry, "handle", teapot)
    ref = Reference(registry=REGISTRY, repository="test-repo", tag="latest")
    with pytest.raises(RegistryError) as exc_info:
        ocimeta.oci.list_referrers(
            reference=ref, client=client, artifact_type=ARTIFACT_TYPE
        )
    assert exc_info.value.status_code == 418


def test_list_referrers_cancelled(registry, client):
    registry.add_manifest("test-repo", tag="latest")
    cancel = threading.Event()
    cancel.set()
    ref = Reference(registry=REGISTRY, repository="test-repo", tag="latest")
    with pytest.raises(Cancelled):
        ocimeta.oci.list_referrers(reference=ref, client=client, cancel=cancel)
    assert registry.referrer_paths() == []
