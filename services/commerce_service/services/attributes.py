"""Pure helpers for the attribute-level stock ledger.

Nothing here touches the database, so the matching and arithmetic rules can
be exercised directly in unit tests.
"""

import re
from collections.abc import Iterable, Mapping, Sequence
from typing import Any, Optional

Selector = tuple[tuple[str, str], ...]

_COMBINATION_PREFIX = "combination-"
_COMBINATION_PAIR = re.compile(r"([^:]+):([^-]+?)(?=-[^:]+:|$)")


def coerce_quantity(value: Any) -> int:
    """Read a stored quantity as a non-negative int; anything malformed is 0."""
    if isinstance(value, bool) or value is None:
        return 0
    if isinstance(value, int):
        return max(value, 0)
    try:
        return max(int(float(str(value).strip())), 0)
    except (TypeError, ValueError, OverflowError):
        return 0


def normalize_selector(attributes: Optional[Mapping[str, Any]]) -> Selector:
    """Turn ``{"color": "Red"}`` into ordered ``(("color", "Red"),)`` pairs.

    Empty keys and empty/None values are dropped.
    """
    if not attributes:
        return ()
    pairs = []
    for name, value in attributes.items():
        if not name or value is None or value == "":
            continue
        pairs.append((str(name), str(value)))
    return tuple(pairs)


def primary_value_matches(primary_value: Mapping[str, Any], selector: Selector) -> bool:
    """A ledger entry matches when the selector names its attribute with its value.

    Selector pairs naming attributes without a ledger entry (non-stock
    attributes such as engraving text) do not prevent a match.
    """
    attribute = primary_value.get("attribute")
    value = primary_value.get("value")
    if attribute is None or value is None:
        return False
    return any(
        name == str(attribute) and wanted == str(value) for name, wanted in selector
    )


def apply_decrement(
    primary_values: Sequence[Mapping[str, Any]],
    selector: Selector,
    quantity: int,
) -> tuple[list[dict], int]:
    """Reduce every matching entry by ``quantity``, floored at 0.

    Returns a fresh list (the input is left untouched) and the number of
    entries that matched.
    """
    updated = []
    matched = 0
    for entry in primary_values:
        entry = dict(entry)
        if primary_value_matches(entry, selector):
            entry["quantity"] = max(0, coerce_quantity(entry.get("quantity")) - quantity)
            matched += 1
        updated.append(entry)
    return updated, matched


def sum_primary_values(ledgers: Iterable[Optional[Sequence[Mapping[str, Any]]]]) -> int:
    """Total quantity across the ledgers of every variant of a product."""
    return sum(
        coerce_quantity(entry.get("quantity"))
        for ledger in ledgers
        for entry in (ledger or ())
    )


def has_primary_values(ledgers: Iterable[Optional[Sequence[Any]]]) -> bool:
    return any(ledger for ledger in ledgers)


def attributes_from_variant_id(variant_id: Optional[str]) -> dict[str, str]:
    """Parse ``combination-color:Red-size:M`` into ``{"color": "Red", "size": "M"}``.

    Other variant ids carry no attributes.
    """
    if not variant_id or not variant_id.startswith(_COMBINATION_PREFIX):
        return {}
    remainder = variant_id[len(_COMBINATION_PREFIX):]
    attributes = {}
    for name, value in _COMBINATION_PAIR.findall(remainder):
        if name.startswith("-"):
            name = name[1:]
        name, value = name.strip(), value.strip()
        if name and value:
            attributes[name] = value
    return attributes


def return_time_phrase(return_time_type: str, return_time_value: int) -> str:
    """``3 days`` / ``1 day``."""
    unit = return_time_type
    if return_time_value == 1 and unit.endswith("s"):
        unit = unit[:-1]
    return f"{return_time_value} {unit}"
