"""
Structural comparison of NOMIS and DPS records.

Provides the difference engine used by the prisoner balance reconciliation
and the key/value set differences used by the prison balance and prison
transaction reconciliations. Nothing here performs I/O.
"""

from __future__ import annotations

from typing import Any, Callable, Hashable, Iterable, List, Optional, Set, Tuple, TypeVar

from pydantic import BaseModel

from models import AccountFields, Difference, effective_hold_balance

K = TypeVar("K", bound=Hashable)
E = TypeVar("E")


def hold_balances_match(dps_hold: Any, nomis_hold: Any) -> bool:
    """
    DPS always reports a hold balance; NOMIS leaves it out when zero.

    Only the NOMIS side is coalesced, so a missing DPS value is still reported.
    """
    if dps_hold is None and nomis_hold is None:
        return True
    if dps_hold is None:
        return False
    return dps_hold == effective_hold_balance(nomis_hold)


# Fields that need something other than plain equality, keyed by owning model.
FIELD_MATCHERS = {
    (AccountFields, "hold_balance"): hold_balances_match,
}


def _sorted(items: List[Any]) -> List[Any]:
    """Sort records that define `sort_key`; anything else keeps its order."""
    if all(callable(getattr(item, "sort_key", None)) for item in items):
        return sorted(items, key=lambda item: item.sort_key())
    return list(items)


def compare_lists(
    dps_list: List[Any], nomis_list: List[Any], parent_property: str
) -> List[Difference]:
    """
    Compare two lists of repeating records.

    A length difference is reported once against the list itself. Otherwise
    both sides are sorted by the elements' sort key so that ordering alone
    never produces a difference.
    """
    if len(dps_list) != len(nomis_list):
        return [Difference(property=parent_property, dps=len(dps_list), nomis=len(nomis_list))]

    differences: List[Difference] = []
    sorted_dps = _sorted(dps_list)
    sorted_nomis = _sorted(nomis_list)
    for index, (dps_item, nomis_item) in enumerate(zip(sorted_dps, sorted_nomis)):
        differences.extend(compare_objects(dps_item, nomis_item, f"{parent_property}[{index}]"))
    return differences


def compare_objects(dps_obj: Any, nomis_obj: Any, parent_property: str) -> List[Difference]:
    """
    Return every field-level difference between two records of the same shape.

    Args:
        dps_obj: Record built from the DPS response
        nomis_obj: Record built from the NOMIS response
        parent_property: Path prefix for reported differences

    Returns:
        Differences in field declaration order, empty when the records match
    """
    if dps_obj is None and nomis_obj is None:
        return []
    if dps_obj is None or nomis_obj is None or type(dps_obj) is not type(nomis_obj):
        return [Difference(property=parent_property, dps=dps_obj, nomis=nomis_obj)]

    if not isinstance(dps_obj, BaseModel):
        if dps_obj != nomis_obj:
            return [Difference(property=parent_property, dps=dps_obj, nomis=nomis_obj)]
        return []

    differences: List[Difference] = []
    model = type(dps_obj)
    for field_name in model.model_fields:
        dps_value = getattr(dps_obj, field_name)
        nomis_value = getattr(nomis_obj, field_name)
        path = f"{parent_property}.{field_name}"

        matcher: Optional[Callable[[Any, Any], bool]] = FIELD_MATCHERS.get((model, field_name))
        if matcher is not None:
            if not matcher(dps_value, nomis_value):
                differences.append(Difference(property=path, dps=dps_value, nomis=nomis_value))
        elif isinstance(dps_value, list) and isinstance(nomis_value, list):
            differences.extend(compare_lists(dps_value, nomis_value, path))
        elif isinstance(dps_value, BaseModel):
            differences.extend(compare_objects(dps_value, nomis_value, path))
        elif dps_value != nomis_value:
            differences.append(Difference(property=path, dps=dps_value, nomis=nomis_value))

    return differences


def find_missing(
    key_of: Callable[[E], K], source_a: Iterable[E], source_b: Iterable[E]
) -> Tuple[Set[K], Set[K]]:
    """
    Return (keys only in B, keys only in A).

    Duplicate keys collapse; only presence matters. The sets are unordered,
    so sort them before reporting.
    """
    keys_a = {key_of(item) for item in source_a}
    keys_b = {key_of(item) for item in source_b}
    return keys_b - keys_a, keys_a - keys_b


def find_missing_by_equality(list_a: Iterable[E], list_b: Iterable[E]) -> List[E]:
    """Elements of `list_a` with no structurally equal element in `list_b`."""
    others = list(list_b)
    return [item for item in list_a if item not in others]
