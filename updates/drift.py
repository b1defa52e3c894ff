"""
Drift comparison between the digest a workload is pinned to and the digest
currently published in the registry.
"""

from updates.image_ref import ImageReference


def has_drift(current: ImageReference, latest_digest: str) -> bool:
    """
    Decide whether a workload needs to move to a new digest.

    A workload without a pinned digest always drifts so that the first pass
    pins it. Comparison is exact and case-sensitive; no prefix matching.

    Args:
        current: Image reference the workload currently runs
        latest_digest: Digest resolved from the registry for the same tag

    Returns:
        True if an update is needed
    """
    if current.digest is None:
        return True
    return current.digest != latest_digest
