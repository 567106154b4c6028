"""Category assignment: pick the award category a runner competes in.

A category matches a runner when its distance equals the runner's distance,
its sex filter is ``ALL`` or equal to the runner's sex, and the runner's age
lies within its inclusive age bounds. When several active categories match,
the narrowest age bracket wins; equal spans keep the first candidate in the
order given (the datastore returns categories ordered by id).
"""

from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, List, Optional

# Missing age bounds count as the widest possible bracket.
AGE_FLOOR = 0
AGE_CEILING = 200


def age_span(category: Dict[str, Any]) -> int:
    """Return ``age_max - age_min`` with missing bounds widened to 0..200."""
    lo = category.get("age_min")
    hi = category.get("age_max")
    lo = AGE_FLOOR if lo is None else int(lo)
    hi = AGE_CEILING if hi is None else int(hi)
    return hi - lo


def category_matches(runner: Dict[str, Any], category: Dict[str, Any]) -> bool:
    if not category.get("is_active"):
        return False

    distance = category.get("distance_km")
    if distance is None or runner.get("distance_km") is None:
        return False
    if float(distance) != float(runner["distance_km"]):
        return False

    sex_filter = category.get("sex_filter")
    if sex_filter != "ALL" and sex_filter != runner.get("sex"):
        return False

    age = runner.get("age")
    lo = category.get("age_min")
    hi = category.get("age_max")
    if (lo is not None or hi is not None) and age is None:
        return False
    if lo is not None and age < lo:
        return False
    if hi is not None and age > hi:
        return False
    return True


def matching_categories(runner: Dict[str, Any], categories: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Return every active category matching ``runner``, in input order."""
    return [c for c in categories if category_matches(runner, c)]


def assign_category(runner: Dict[str, Any], categories: Iterable[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Select the best matching category for ``runner`` or ``None``.

    No category is ever forced: a runner without a match stays
    uncategorized.
    """
    best: Optional[Dict[str, Any]] = None
    best_span: Optional[int] = None
    for cat in matching_categories(runner, categories):
        span = age_span(cat)
        # strict comparison keeps the first candidate on equal spans
        if best_span is None or span < best_span:
            best, best_span = cat, span
    return best


def is_ambiguous(runner: Dict[str, Any], categories: Iterable[Dict[str, Any]]) -> bool:
    return len(matching_categories(runner, categories)) > 1


def has_matcher_inputs(participant: Dict[str, Any]) -> bool:
    return (
        participant.get("age") is not None
        and participant.get("distance_km") is not None
        and bool(participant.get("sex"))
    )


def plan_category_updates(
    participants: Iterable[Dict[str, Any]],
    categories: Iterable[Dict[str, Any]],
) -> Dict[str, Any]:
    """Work out which participants need a new ``category_id``.

    Participants lacking age, distance or sex are skipped and left as they
    are. Returns a dict with ``changes`` (one entry per participant whose
    stored category differs from the computed one) plus the ids of skipped,
    unchanged, unmatched and ambiguous participants.
    """
    cats = [c for c in categories if c.get("is_active")]
    plan: Dict[str, Any] = {
        "checked": 0,
        "changes": [],
        "skipped": [],
        "unchanged": [],
        "unmatched": [],
        "ambiguous": [],
    }
    for p in participants:
        pid = p.get("id")
        if not has_matcher_inputs(p):
            plan["skipped"].append(pid)
            continue
        plan["checked"] += 1
        runner = {"sex": p.get("sex"), "age": p.get("age"), "distance_km": p.get("distance_km")}
        matches = matching_categories(runner, cats)
        chosen = assign_category(runner, matches)
        new_id = chosen.get("id") if chosen else None
        if chosen is None:
            plan["unmatched"].append(pid)
        if len(matches) > 1:
            plan["ambiguous"].append(pid)
        old_id = p.get("category_id")
        if old_id == new_id:
            plan["unchanged"].append(pid)
            continue
        plan["changes"].append(
            {
                "participant_id": pid,
                "old_category_id": old_id,
                "new_category_id": new_id,
                "ambiguous": len(matches) > 1,
            }
        )
    return plan


def apply_category_updates(
    changes: Iterable[Dict[str, Any]],
    update: Callable[[Any, Optional[int]], Any],
    on_error: Optional[Callable[[Dict[str, Any], Exception], None]] = None,
) -> Dict[str, Any]:
    """Write each planned change through ``update(participant_id, category_id)``.

    Every row is attempted independently; a rejected write is recorded in
    ``failed`` and the remaining rows are still processed.
    """
    updated: List[Any] = []
    failed: List[Dict[str, Any]] = []
    for change in changes:
        pid = change["participant_id"]
        try:
            update(pid, change["new_category_id"])
        except Exception as exc:  # pylint: disable=broad-except
            if on_error is not None:
                on_error(change, exc)
            failed.append({"participant_id": pid, "error": str(exc)})
            continue
        updated.append(pid)
    return {"updated": updated, "failed": failed}


def recalculate_summary(plan: Dict[str, Any], outcome: Dict[str, Any]) -> Dict[str, Any]:
    """Combine a plan and its write outcome into the operator-facing report."""
    return {
        "checked": plan["checked"],
        "skipped": len(plan["skipped"]),
        "unchanged": len(plan["unchanged"]),
        "updated": len(outcome["updated"]),
        "failed": outcome["failed"],
        "unmatched": list(plan["unmatched"]),
        "ambiguous": list(plan["ambiguous"]),
        "updated_ids": list(outcome["updated"]),
    }


__all__ = [
    "age_span",
    "apply_category_updates",
    "assign_category",
    "category_matches",
    "has_matcher_inputs",
    "is_ambiguous",
    "matching_categories",
    "plan_category_updates",
    "recalculate_summary",
]
