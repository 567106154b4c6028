"""Results ranking from timing punches."""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Union

from .models import PUNCH_FINISH

ALL_CATEGORIES = "ALL"

MS_PER_SECOND = 1000
MS_PER_MINUTE = 60 * MS_PER_SECOND
MS_PER_HOUR = 60 * MS_PER_MINUTE


def rank_results(punches: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Reduce punches to one best finish per participant, fastest first.

    Only ``finish`` punches with a resolvable participant and an elapsed
    value take part. Double scans are expected: the lowest ``elapsed_ms``
    per participant is kept and the first one seen wins a tie. The
    ``position`` of each entry is its 1-based index in the returned list.

    Args:
        punches: Normalized punches as produced by
            :func:`crono.models.normalize_punch`.

    Returns:
        A new list of result dicts sorted by ``best_elapsed_ms``.
    """
    best: Dict[Any, Dict[str, Any]] = {}
    for punch in punches:
        if punch.get("type") != PUNCH_FINISH:
            continue
        runner = punch.get("participant")
        if not runner:
            continue
        elapsed = punch.get("elapsed_ms")
        if elapsed is None:
            continue
        pid = punch.get("participant_id")
        current = best.get(pid)
        if current is not None and not elapsed < current["best_elapsed_ms"]:
            continue
        best[pid] = {
            "participant_id": pid,
            "bib_number": runner.get("bib_number"),
            "first_name": runner.get("first_name") or "",
            "last_name": runner.get("last_name") or "",
            "sex": runner.get("sex") or "",
            "distance_km": runner.get("distance_km"),
            "category_id": runner.get("category_id"),
            "category_name": runner.get("category_name"),
            "best_elapsed_ms": elapsed,
        }

    # dict preserves first-seen order, sorted() is stable
    results = sorted(best.values(), key=lambda r: r["best_elapsed_ms"])
    for position, entry in enumerate(results, start=1):
        entry["position"] = position
    return results


def filter_by_category(
    results: List[Dict[str, Any]],
    category_id: Optional[Union[int, str]],
) -> List[Dict[str, Any]]:
    """Keep only results in ``category_id``; ``"ALL"`` keeps everything."""
    if category_id is None or category_id == ALL_CATEGORIES:
        return results
    try:
        wanted = int(category_id)
    except (TypeError, ValueError):
        return []
    return [r for r in results if r.get("category_id") == wanted]


def format_elapsed_ms(ms: Union[int, float]) -> str:
    """Format milliseconds as ``HH:MM:SS.mmm``."""
    remaining = int(ms)
    sign = ""
    if remaining < 0:
        sign = "-"
        remaining = -remaining
    hours, remaining = divmod(remaining, MS_PER_HOUR)
    minutes, remaining = divmod(remaining, MS_PER_MINUTE)
    seconds, millis = divmod(remaining, MS_PER_SECOND)
    return f"{sign}{hours:02d}:{minutes:02d}:{seconds:02d}.{millis:03d}"


def relative_times(results: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Return display copies of ``results`` timed against the leader.

    Without a gun-start reference the raw ``elapsed_ms`` values are wall
    clock readings, so the display shows each runner's gap to the fastest
    entry of the list (the leader reads ``00:00:00.000``). The raw value is
    left untouched in ``best_elapsed_ms``.
    """
    if not results:
        return []
    base = results[0]["best_elapsed_ms"]
    rows: List[Dict[str, Any]] = []
    for idx, entry in enumerate(results, start=1):
        gap_ms = entry["best_elapsed_ms"] - base
        rows.append({
            **entry,
            "display_position": idx,
            "gap_ms": gap_ms,
            "gap": format_elapsed_ms(gap_ms),
        })
    return rows


__all__ = [
    "ALL_CATEGORIES",
    "filter_by_category",
    "format_elapsed_ms",
    "rank_results",
    "relative_times",
]
