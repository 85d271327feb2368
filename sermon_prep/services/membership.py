"""Ordered membership view over the two series representations.

A series stores its members either as heterogeneous ``items`` or, for
series created before groups existed, as a plain ``sermonIds`` list. The
``items`` list wins whenever it is non-empty; ``sermonIds`` is only read
when ``items`` is empty. Everything that needs "the members of a series, in
order" goes through :func:`resolve_membership`.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from .errors import ValidationError


class MemberType(str, Enum):
    """Kinds of document a series can contain."""

    SERMON = "sermon"
    GROUP = "group"

    @classmethod
    def parse(cls, value: Any) -> "MemberType":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or "").strip().lower())
        except ValueError as error:
            raise ValidationError("Invalid item type") from error


@dataclass(frozen=True)
class MemberRef:
    """One member of a series in its resolved order.

    ``item_id`` is ``None`` for members read from the legacy list.
    """

    member_type: MemberType
    ref_id: str
    item_id: Optional[str] = None

    def __str__(self) -> str:
        return f"{self.member_type.value}:{self.ref_id}"


def new_item_id() -> str:
    return uuid.uuid4().hex


def uses_items(series: Mapping[str, Any]) -> bool:
    return bool(series.get("items"))


def resolve_membership(series: Mapping[str, Any]) -> List[MemberRef]:
    """Return the ordered members of ``series``."""

    items = series.get("items") or []
    if items:
        return [
            MemberRef(MemberType.parse(item.get("type")), str(item["refId"]), item.get("id"))
            for item in items
        ]
    return [MemberRef(MemberType.SERMON, str(sermon_id)) for sermon_id in series.get("sermonIds") or []]


def renumber(items: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Return copies of ``items`` with positions taken from list order (1-based)."""

    return [{**item, "position": index} for index, item in enumerate(items, start=1)]


def make_item(member_type: MemberType, ref_id: str) -> Dict[str, Any]:
    return {"id": new_item_id(), "type": member_type.value, "refId": ref_id, "position": 0}


def materialize_items(series: Mapping[str, Any]) -> List[Dict[str, Any]]:
    """Return the series members as an ``items`` list.

    Legacy series get fresh item ids and keep their sermon order.
    """

    if uses_items(series):
        return [dict(item) for item in series["items"]]
    return renumber(make_item(MemberType.SERMON, str(sermon_id)) for sermon_id in series.get("sermonIds") or [])


def derive_series_kind(items: Sequence[Mapping[str, Any]]) -> str:
    if any(item.get("type") == MemberType.GROUP.value for item in items):
        return "mixed"
    return "sermon"


def clamp_insert_index(position: Optional[int], length: int) -> int:
    """Translate a 1-based ``position`` into a list index clamped to ``[0, length]``."""

    if position is None:
        return length
    return min(max(int(position), 1), length + 1) - 1


def validate_ref_id(ref_id: Any, *, label: str = "refId") -> str:
    if not isinstance(ref_id, str) or not ref_id.strip():
        raise ValidationError(f"{label} is required")
    return ref_id.strip()


def validate_item(item: Mapping[str, Any]) -> Dict[str, Any]:
    """Check one stored item before it is written back."""

    member_type = MemberType.parse(item.get("type"))
    ref_id = validate_ref_id(item.get("refId"))
    item_id = item.get("id") or new_item_id()
    return {"id": str(item_id), "type": member_type.value, "refId": ref_id, "position": item.get("position", 0)}


def validate_permutation(current: Sequence[str], requested: Sequence[str], *, label: str) -> List[str]:
    """Ensure ``requested`` is an exact reordering of ``current``."""

    if not isinstance(requested, (list, tuple)) or not all(isinstance(value, str) for value in requested):
        raise ValidationError(f"{label} must be an array of strings")
    if not requested:
        raise ValidationError(f"{label} cannot be empty")
    if len(set(requested)) != len(requested):
        raise ValidationError(f"{label} contains duplicate identifiers")
    if sorted(requested) != sorted(current):
        raise ValidationError(f"{label} must list every current member exactly once")
    return list(requested)


__all__ = [
    "MemberRef",
    "MemberType",
    "clamp_insert_index",
    "derive_series_kind",
    "make_item",
    "materialize_items",
    "new_item_id",
    "renumber",
    "resolve_membership",
    "uses_items",
    "validate_item",
    "validate_permutation",
    "validate_ref_id",
]
