"""Typed wrapper for ID generation."""

import secrets
import string

from coolname import generate_slug  # type: ignore[import-untyped]


def generate_id(num_words: int = 2) -> str:
    """Generate a unique slug-style identifier with a random suffix.

    @param num_words: Number of words to include in the slug
    @return: A hyphenated slug string with a 6-character random suffix
            (e.g., "purple-elephant-a1b2c3")
    """
    random_suffix = "".join(secrets.choice(string.ascii_lowercase + string.digits) for _ in range(6))
    return generate_slug(num_words) + "-" + random_suffix


def generate_job_id(prefix: str) -> str:
    """Generate a job identifier for submissions that carry no business key.

    @param prefix: The stage prefix (e.g., "person", "manual")
    @return: A job ID in the format "<prefix>:<coolname>-<random>"
            (e.g., "person:purple-elephant-a1b2c3")
    """
    return f"{prefix}:{generate_id()}"


def generate_worker_id(queue: str) -> str:
    """Generate a worker identifier used when claiming queued jobs."""

    return f"{queue}/{generate_id()}"
