"""Order independent merge of per-capability provider results."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from shared.enums import Capability


def has_all_results(results: dict[str, Any], capabilities: Iterable[Capability]) -> bool:
    return all(Capability(capability).value in results for capability in capabilities)


def consolidate_results(results: dict[str, Any], capabilities: Iterable[Capability]) -> dict[str, Any]:
    """Merge results keyed by capability.

    The output depends only on the set of results, never on the order in which
    they arrived. Overall confidence is the lowest reported one.
    """
    ordered = sorted({Capability(capability).value for capability in capabilities})
    merged: dict[str, Any] = {}
    confidences: list[float] = []
    for capability in ordered:
        entry = results.get(capability)
        if entry is None:
            continue
        merged[capability] = {
            "result_ref": entry.get("result_ref"),
            "confidence": entry.get("confidence"),
            "detail": entry.get("detail") or {},
        }
        if entry.get("confidence") is not None:
            confidences.append(float(entry["confidence"]))

    return {
        "capabilities": merged,
        "result_refs": [merged[capability]["result_ref"] for capability in merged],
        "confidence": min(confidences) if confidences else None,
        "missing": [capability for capability in ordered if capability not in merged],
    }


def needs_review(consolidated: dict[str, Any], threshold: float) -> bool:
    confidence = consolidated.get("confidence")
    return confidence is not None and confidence < threshold
