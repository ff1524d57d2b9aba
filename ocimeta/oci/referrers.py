"""Referrer graph resolution

The referrers of an artifact are the artifacts whose manifest declares it as
their `subject`, e.g. signatures, SBOMs and attestations. Referrers can have
referrers of their own, so discovering them all means walking a graph served
by the registry. That graph is untrusted: it may contain cycles or converging
edges, and it may be arbitrarily deep.

ref: https://github.com/opencontainers/distribution-spec/blob/main/spec.md#listing-referrers
"""
from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Protocol

from ocimeta.oci.descriptor import Descriptor

logger = logging.getLogger(__name__)


class Cancelled(Exception):
    """Raised when the caller gave up on a referrer graph resolution."""


class ReferrerSource(Protocol):
    def referrers(
        self, descriptor: Descriptor, artifact_type: str | None = None
    ) -> Iterable[list[Descriptor]]:
        """Return the referrers of `descriptor` in batches, exhausting all pages"""
        ...


@dataclass(slots=True)
class ReferrerNode:
    """A descriptor together with the nodes that refer to it"""

    descriptor: Descriptor
    referrers: list[ReferrerNode] = field(default_factory=list)

    @property
    def digest(self) -> str:
        return self.descriptor.digest

    def as_dict(self) -> dict:
        """Return the tree as a JSON-ready dict

        Every level holds the descriptor fields and a `referrers` list.
        """
        result = self.descriptor.dump() | {"referrers": []}
        stack = [(self, result)]
        while stack:
            node, data = stack.pop()
            for child in node.referrers:
                child_data = child.descriptor.dump() | {"referrers": []}
                data["referrers"].append(child_data)
                stack.append((child, child_data))
        return result

    def walk(self):
        """Yield every node of the tree in pre-order"""
        stack = [self]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.referrers))


def _check(cancel: threading.Event | None):
    if cancel is not None and cancel.is_set():
        raise Cancelled("referrer graph resolution was cancelled")


def resolve(
    root: Descriptor,
    artifact_type: str | None = None,
    *,
    source: ReferrerSource,
    cancel: threading.Event | None = None,
) -> ReferrerNode:
    """Discover all referrers of `root`, transitively

    The graph is walked depth first and left to right in the order the source
    returns referrers. A digest is expanded only the first time it is
    discovered; later edges to it are dropped, which keeps the result a tree
    and makes every digest cost exactly one query.

    Errors raised by the source abort the walk, no partial tree is returned.

    :param root: The descriptor to start from.
    :param artifact_type: Passed unchanged to every query of the source.
    :param source: Where to look up referrers.
    :param cancel: Stop the walk and raise `Cancelled` once this is set.
    """
    tree = ReferrerNode(root)
    visited = {root.digest}
    stack = [tree]
    queries = 0
    while stack:
        _check(cancel)
        current = stack.pop()
        logger.debug("Listing referrers of %s", current.digest)
        queries += 1
        discovered = []
        for batch in source.referrers(current.descriptor, artifact_type):
            for descriptor in batch:
                if descriptor.digest in visited:
                    logger.debug(
                        "Skipping %s under %s, already visited",
                        descriptor.digest,
                        current.digest,
                    )
                    continue
                visited.add(descriptor.digest)
                node = ReferrerNode(descriptor)
                current.referrers.append(node)
                discovered.append(node)
            _check(cancel)
        stack.extend(reversed(discovered))

    logger.info(
        "Found %d referrers of %s in %d queries",
        len(visited) - 1,
        root.digest,
        queries,
    )
    return tree
