"""Helpers for turning user input into repository natural keys"""

import re

from truststars.exceptions import ValidationError

# Matches https://github.com/owner/repo, github.com/owner/repo or owner/repo
_REPO_PATTERN = re.compile(r'(?:github\.com/)?([^/\s]+)/([^/\s]+?)(?:\.git|/)?$')
_SEGMENT_PATTERN = re.compile(r'^[A-Za-z0-9_.-]+$')


def parse_repository_name(value: str) -> str:
    """
    Extract the "owner/name" natural key from a URL or a bare key

    Args:
        value: GitHub URL or owner/name string

    Returns:
        Normalized "owner/name" string (case preserved)

    Raises:
        ValidationError: when no owner/name pair can be extracted
    """
    text = (value or "").strip()
    match = _REPO_PATTERN.search(text)
    if not match:
        raise ValidationError(f"Invalid GitHub repository reference: {value!r}",
                              user_message="Invalid GitHub URL format")

    owner, name = match.group(1), match.group(2)
    if owner.endswith(":") or not _SEGMENT_PATTERN.match(owner) or not _SEGMENT_PATTERN.match(name):
        raise ValidationError(f"Invalid GitHub repository reference: {value!r}",
                              user_message="Invalid GitHub URL format")

    return f"{owner}/{name}"


def natural_key(full_name: str) -> str:
    """Case-insensitive lookup key for a repository"""
    return full_name.strip().lower()

