"""
Branch name normalization shared by every lookup.
"""

from typing import Iterable, Optional

from buildresolver.constants import BRANCH_RELEASE, BRANCH_SYNONYMS
from buildresolver.log_utils import logger


def normalize_branch(branch: Optional[str]) -> str:
    """
    Map a branch name to its canonical form.

    Matching is case-insensitive and ignores surrounding whitespace. Synonyms
    such as "prerelease" and "pre_release" collapse to "pre-release". Anything
    unrecognized, including an empty value, becomes "release" so legacy callers
    keep working.

    Parameters:
        branch (Optional[str]): Branch name as supplied by the caller.

    Returns:
        str: The canonical branch name.
    """
    key = (branch or "").strip().lower()
    canonical = BRANCH_SYNONYMS.get(key)
    if canonical is None:
        # Lenient fallback; stricter validation may replace this later
        logger.debug("Unknown branch %r; treating as %s", branch, BRANCH_RELEASE)
        return BRANCH_RELEASE
    return canonical


def is_branch_listed(branches: Iterable[str], branch: Optional[str]) -> bool:
    """
    Check whether `branch` appears in an operator-supplied branch list.

    Entries in the list are compared through the same synonym table, but
    unknown entries are compared verbatim instead of collapsing to "release".
    """
    target = normalize_branch(branch)
    for entry in branches:
        key = entry.strip().lower()
        if BRANCH_SYNONYMS.get(key, key) == target:
            return True
    return False
