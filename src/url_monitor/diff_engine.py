"""
Checksum and diff engine for monitored item lists.

Computes deterministic fingerprints over item lists, classifies changes
between two lists, and gates remote lists through structural validation
before they may replace the stored snapshot.
"""

import ipaddress
import json
from typing import Any, Iterable, Optional
from urllib.parse import urlparse

import idna

from .exceptions import ValidationError
from .models import ChangeSet, MonitoredItem

# Keys that change on every server-side touch and never indicate a change
VOLATILE_FIELDS = frozenset({"created_at", "updated_at"})

# An item must carry at least one of these to be identifiable
IDENTITY_FIELDS = ("id", "url", "callback_name", "title")

URL_FIELDS = ("url", "callback_url")


def _present(value: Any) -> bool:
    return value is not None and value != ""


def normalize(raw: dict) -> dict:
    """Return a copy of ``raw`` without volatile fields."""
    return {k: v for k, v in raw.items() if k not in VOLATILE_FIELDS}


def canonical_json(value: Any) -> str:
    """Deterministic serialization: sorted keys, compact, ASCII only."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=True)


def rolling_hash(text: str) -> str:
    """
    32-bit ``hash * 31 + code`` rolling hash rendered as hex.

    Arithmetic wraps like a signed 32-bit integer; the absolute value
    of the final result is rendered.
    """
    value = 0
    for ch in text:
        value = (value * 31 + ord(ch)) & 0xFFFFFFFF
    if value >= 0x80000000:
        value -= 0x100000000
    return format(abs(value), "x")


def derive_identity(raw: dict) -> str:
    """
    Derive the stable identity of an item.

    An explicit ``id`` wins. Otherwise the present fields among url,
    callback_name and title form a composite key. An item with none of
    them is identified by a hash of its normalized content.
    """
    if _present(raw.get("id")):
        return f"id:{raw['id']}"

    parts = []
    for key, label in (("url", "url"), ("callback_name", "callback"), ("title", "title")):
        if _present(raw.get(key)):
            parts.append(f"{label}:{raw[key]}")
    if parts:
        return "|".join(parts)

    return f"hash:{rolling_hash(canonical_json(normalize(raw)))}"


def fingerprint(items: Iterable[MonitoredItem]) -> str:
    """
    Compute the order-independent fingerprint of an item list.

    Items are stripped of volatile fields and sorted by identity, then by
    content, so items sharing an identity also have a fixed position.
    """
    entries = sorted(
        (item.identity, canonical_json(normalize(item.to_dict())))
        for item in items
    )
    return rolling_hash("[" + ",".join(serialized for _, serialized in entries) + "]")


def _index(items: Iterable[MonitoredItem]) -> dict[str, MonitoredItem]:
    # Later duplicates overwrite earlier ones
    return {item.identity: item for item in items}


def diff(old: Iterable[MonitoredItem], new: Iterable[MonitoredItem]) -> ChangeSet:
    """
    Classify the changes from ``old`` to ``new``.

    Duplicate identities resolve last-write-wins on both sides. Items
    present in both whose normalized fields differ are modified; items
    that are field-wise equal are omitted.
    """
    old_map = _index(old)
    new_map = _index(new)
    changes = ChangeSet()

    for identity, item in new_map.items():
        previous = old_map.get(identity)
        if previous is None:
            changes.added.append(item)
        elif normalize(previous.to_dict()) != normalize(item.to_dict()):
            changes.modified.append(item)

    for identity, item in old_map.items():
        if identity not in new_map:
            changes.removed.append(item)

    return changes


def _url_problem(value: Any) -> Optional[str]:
    """Return a reason if ``value`` is not an absolute http(s) URL, else None."""
    if not isinstance(value, str):
        return "not a string"
    try:
        parsed = urlparse(value)
    except ValueError as e:
        return str(e)
    if parsed.scheme not in ("http", "https"):
        return "scheme must be http or https"
    host = parsed.hostname
    if not host:
        return "missing host"
    try:
        ipaddress.ip_address(host)
        return None
    except ValueError:
        pass
    try:
        idna.encode(host, uts46=True)
    except idna.IDNAError as e:
        return f"invalid host: {e}"
    return None


def validate_items(raw_items: Any, strict: bool = False) -> None:
    """
    Validate a remote item list before it is accepted.

    The list is rejected as a whole on the first problem found.

    Args:
        raw_items: The decoded list from the remote endpoint
        strict: Reject duplicate identities when True

    Raises:
        ValidationError: If any entry is malformed
    """
    if not isinstance(raw_items, list):
        raise ValidationError(
            code="not_a_list",
            message="Item list must be an array",
        )

    seen: set[str] = set()
    for index, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            raise ValidationError(
                code="invalid_item",
                message=f"Item {index} is not an object",
                details={"index": index},
            )

        if not any(_present(raw.get(key)) for key in IDENTITY_FIELDS):
            raise ValidationError(
                code="missing_identity",
                message=f"Item {index} has no id, url, callback_name or title",
                details={"index": index},
            )

        for key in URL_FIELDS:
            if _present(raw.get(key)):
                problem = _url_problem(raw[key])
                if problem:
                    raise ValidationError(
                        code="invalid_url",
                        message=f"Item {index} has an invalid {key}: {problem}",
                        details={"index": index, "field": key, "value": raw[key]},
                    )

        if strict:
            identity = derive_identity(raw)
            if identity in seen:
                raise ValidationError(
                    code="duplicate_identity",
                    message=f"Item {index} duplicates identity {identity}",
                    details={"index": index, "identity": identity},
                )
            seen.add(identity)


def build_items(raw_items: Iterable[dict]) -> list[MonitoredItem]:
    """Turn validated raw records into items with derived identities."""
    return [MonitoredItem.from_raw(raw, derive_identity(raw)) for raw in raw_items]
