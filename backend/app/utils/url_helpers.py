"""
URL normalization utilities for repository matching.

GitHub discoveries and PulseMCP directory entries refer to the same
repository in different shapes (https, ssh, with or without .git, mixed
case). normalize_repo_url reduces them to comparable keys.
"""
import re

_SCHEME_PREFIX = re.compile(r"^https?://")
_SSH_PREFIX = re.compile(r"^git@")
_GIT_SUFFIX = re.compile(r"\.git$")
_GITHUB_SEPARATOR = re.compile(r"github\.com[:\\/]")


def normalize_repo_url(url: str) -> str:
    """
    Reduce any repository URL form to ``github.com/owner/repo`` (lowercase).

    Examples:
        >>> normalize_repo_url("https://github.com/Owner/Repo.git")
        'github.com/owner/repo'

        >>> normalize_repo_url("git@github.com:owner/repo.git")
        'github.com/owner/repo'

    Returns an empty string for empty input so two missing URLs never match
    by accident (callers check for emptiness first).
    """
    if not url:
        return ""
    normalized = _SCHEME_PREFIX.sub("", url.strip())
    normalized = _SSH_PREFIX.sub("", normalized)
    normalized = _GIT_SUFFIX.sub("", normalized)
    normalized = _GITHUB_SEPARATOR.sub("github.com/", normalized, count=1)
    return normalized.rstrip("/").lower()
