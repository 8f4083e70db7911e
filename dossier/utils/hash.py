"""Utility functions for computing stable hashes and normalized keys from payload data."""

from collections.abc import Mapping
import hashlib
import json
import re
from typing import Any


def compute_stable_hash(data: Mapping[str, Any]) -> str:
    hash_string = json.dumps(data, sort_keys=True)
    return hashlib.sha256(hash_string.encode("utf-8")).hexdigest()


def normalize_text(value: str | None) -> str:
    """Lowercase, drop parenthesised asides and collapse non-alphanumerics to single spaces."""

    text = (value or "").lower()
    text = re.sub(r"\(.*?\)", " ", text)
    text = re.sub(r"[^a-z0-9]+", " ", text)
    return re.sub(r"\s+", " ", text).strip()


def normalize_postcode(postcode: str | None) -> str:
    return re.sub(r"\s+", "", (postcode or "").upper())


def compute_address_key(address: Mapping[str, Any]) -> str:
    """Compute a deterministic key for a postal address.

    Two addresses that differ only in case, punctuation or spacing produce the same key,
    so re-submitting the same property is recognised as the same unit of work.

    @param address: Mapping with line1, postcode and optional line2, city, country
    @return: "<POSTCODE>:<first 16 hex chars of the address hash>"
    """

    canonical = {
        "line1": normalize_text(address.get("line1")),
        "line2": normalize_text(address.get("line2")),
        "city": normalize_text(address.get("city")),
        "postcode": normalize_postcode(address.get("postcode")),
        "country": normalize_text(address.get("country") or "GB"),
    }
    return f"{canonical['postcode']}:{compute_stable_hash(canonical)[:16]}"


def slugify(text: str | None, max_length: int = 64) -> str:
    """Turn a free-text message into a short snake_case slug (e.g. "Found 3 candidates!" -> "found_3_candidates")."""

    slug = re.sub(r"[^a-z0-9]+", "_", (text or "").lower())
    return slug.strip("_")[:max_length]
