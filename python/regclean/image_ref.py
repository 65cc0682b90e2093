"""
Image reference normalization.

Cluster runtimes and registry listings report images in several shapes
(``host/repo:tag``, ``host/repo@sha256:...``, ``host/repo:tag@sha256:...``).
Everything is reduced to an ``ImageRef`` triple so both sides can be
compared by value. Digests never take part in identity.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List

logger = logging.getLogger(__name__)

DEFAULT_REGISTRY_HOST = "docker.io"
DEFAULT_NAMESPACE = "library"


@dataclass(frozen=True)
class ImageRef:
    """Identity of an image: registry host, repository path and tag"""

    registry_host: str
    repository: str
    tag: str

    def __str__(self) -> str:
        name = f"{self.registry_host}/{self.repository}" if self.registry_host else self.repository
        return f"{name}:{self.tag}" if self.tag else name


def _looks_like_host(component: str) -> bool:
    # Same rule the Docker CLI uses to tell a registry host from a namespace
    return "." in component or ":" in component or component == "localhost"


def normalize(raw: str) -> ImageRef:
    """Parse a free-form image string into an ImageRef.

    The digest (everything from the first ``@``) is dropped. The tag is the
    text after the last ``:`` that follows the last ``/``, so a registry port
    is never mistaken for a tag. Digest-only references come back with an
    empty tag. Docker Hub short names get ``docker.io`` and, for single
    component names, the ``library/`` namespace.
    """
    name = raw.strip().split("@", 1)[0]

    tag = ""
    last_slash = name.rfind("/")
    last_colon = name.rfind(":")
    if last_colon > last_slash:
        name, tag = name[:last_colon], name[last_colon + 1:]

    host, sep, remainder = name.partition("/")
    if sep and _looks_like_host(host):
        repository = remainder
    else:
        host = DEFAULT_REGISTRY_HOST
        repository = name
        if "/" not in repository:
            repository = f"{DEFAULT_NAMESPACE}/{repository}"

    if host == "index.docker.io":
        host = DEFAULT_REGISTRY_HOST

    return ImageRef(registry_host=host, repository=repository, tag=tag)


def normalize_all(raw_images: Iterable[str]) -> List[ImageRef]:
    """Normalize and deduplicate image strings, keeping first-occurrence order.

    References without a tag (digest-only) cannot be matched against a
    registry tag listing and are discarded.
    """
    seen = set()
    refs: List[ImageRef] = []
    for raw in raw_images:
        if not raw or not raw.strip():
            continue
        ref = normalize(raw)
        if not ref.tag:
            logger.debug(f"Discarding untagged image reference {raw}")
            continue
        if ref in seen:
            continue
        seen.add(ref)
        refs.append(ref)
    return refs


def dedupe(refs: Iterable[ImageRef]) -> List[ImageRef]:
    """Remove duplicate ImageRefs, keeping first-occurrence order"""
    return list(dict.fromkeys(refs))
