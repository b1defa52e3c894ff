"""
Image Reference Model

Parses and formats `registry/repository:tag@sha256:digest` strings as they
appear in Swarm service specs and container configs.
"""

import re
from dataclasses import dataclass, replace
from typing import Optional

from updates.errors import MalformedReferenceError

DIGEST_SEPARATOR = "@sha256:"
DEFAULT_TAG = "latest"
DEFAULT_REGISTRY = "docker.io"

_DIGEST_BODY_RE = re.compile(r"^[0-9a-f]{64}$")
DIGEST_RE = re.compile(r"^sha256:[0-9a-f]{64}$")


@dataclass(frozen=True)
class ImageReference:
    """
    Immutable image reference.

    Attributes:
        repository: Full repository as written, including registry host
            (e.g. "ghcr.io/acme/app")
        tag: Tag, "latest" when the raw string had none
        digest: "sha256:<64 hex>" or None
    """
    repository: str
    tag: str = DEFAULT_TAG
    digest: Optional[str] = None

    @property
    def registry_host(self) -> str:
        """Registry host, e.g. "ghcr.io" or "localhost:5000" (docker.io when implicit)."""
        first, sep, _ = self.repository.partition("/")
        if sep and _looks_like_host(first):
            return first.lower()
        return DEFAULT_REGISTRY

    @property
    def repository_path(self) -> str:
        """Repository path inside the registry, e.g. "acme/app"."""
        first, sep, rest = self.repository.partition("/")
        if sep and _looks_like_host(first):
            return rest
        return self.repository

    @property
    def tag_reference(self) -> str:
        """`repository:tag` without any digest."""
        return f"{self.repository}:{self.tag}"

    def with_digest(self, digest: str) -> "ImageReference":
        return replace(self, digest=digest)

    def __str__(self) -> str:
        return format_image_reference(self)


def _looks_like_host(component: str) -> bool:
    # Same heuristic the docker CLI uses
    return "." in component or ":" in component or component == "localhost"


def parse_image_reference(raw: str) -> ImageReference:
    """
    Parse an image reference string.

    The digest suffix is removed first, then repository and tag are
    separated on the last colon. A colon followed by a path segment belongs
    to a registry port, not a tag.

    Args:
        raw: Image string (e.g. "ghcr.io/acme/app:v2@sha256:abc...")

    Returns:
        ImageReference

    Raises:
        MalformedReferenceError: digest body is not 64 hex chars, the tag is
            empty, or the repository is empty

    Examples:
        ghcr.io/acme/app → (ghcr.io/acme/app, latest, None)
        ghcr.io/acme/app:v2@sha256:<hex> → (ghcr.io/acme/app, v2, sha256:<hex>)
        localhost:5000/app → (localhost:5000/app, latest, None)
    """
    if raw is None:
        raise MalformedReferenceError("None", "image reference is empty")

    value = raw.strip()
    parts = value.split(DIGEST_SEPARATOR)
    if len(parts) > 2:
        raise MalformedReferenceError(raw, "more than one digest")

    name_and_tag = parts[0]
    digest = None
    if len(parts) == 2:
        body = parts[1]
        if not _DIGEST_BODY_RE.match(body):
            raise MalformedReferenceError(raw, "digest must be 64 lowercase hex characters")
        digest = f"sha256:{body}"

    repository = name_and_tag
    tag = DEFAULT_TAG
    colon = name_and_tag.rfind(":")
    if colon != -1 and "/" not in name_and_tag[colon + 1:]:
        repository = name_and_tag[:colon]
        tag = name_and_tag[colon + 1:]
        if not tag:
            raise MalformedReferenceError(raw, "empty tag")

    if not repository:
        raise MalformedReferenceError(raw, "empty repository")

    return ImageReference(repository=repository, tag=tag, digest=digest)


def format_image_reference(ref: ImageReference) -> str:
    """Serialize back to the canonical `repository:tag[@sha256:hex]` form."""
    if ref.digest:
        return f"{ref.repository}:{ref.tag}@{ref.digest}"
    return ref.tag_reference


def is_valid_digest(digest: Optional[str]) -> bool:
    """True when digest is `sha256:` followed by 64 lowercase hex characters."""
    return bool(digest) and bool(DIGEST_RE.match(digest))
