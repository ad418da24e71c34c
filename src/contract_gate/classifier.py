from __future__ import annotations

from collections.abc import Iterable, Mapping

from contract_gate.models import (
    BaselineEntry,
    ClassifiedItem,
    ClassifiedResult,
    DeferEntry,
    Label,
    ScanWarning,
    Status,
)


def classify(
    observations: Mapping[str, Status],
    baseline: Mapping[str, BaselineEntry],
    defers: Iterable[DeferEntry] = (),
) -> ClassifiedResult:
    """Label each observation against its last known status.

    A failure that was already failing only counts as known when a deferral
    with a tracking reference names it; otherwise it blocks the gate the same
    way a brand new failure does.
    """
    deferred = {entry.id: entry for entry in defers}
    items: list[ClassifiedItem] = []
    warnings: list[ScanWarning] = []

    for test_id in sorted(observations):
        current = Status(observations[test_id])
        previous_entry = baseline.get(test_id)
        previous = previous_entry.last_status if previous_entry else None
        tracking = None

        if current is Status.PASS:
            label = Label.FIXED if previous is Status.FAIL else Label.PASS
        elif previous is None:
            label = Label.NEW_FAILURE
        elif previous is Status.PASS:
            label = Label.REGRESSION
        elif test_id in deferred:
            label = Label.KNOWN_FAILURE
            tracking = deferred[test_id].tracking_reference
        else:
            label = Label.NEW_FAILURE
            warnings.append(
                ScanWarning(
                    code="UNDEFERRED_FAILURE",
                    message=(
                        f"{test_id} is still failing (last seen failing in {previous_entry.last_run_ref}) "
                        "without a deferral; add a defer entry with a tracking reference or fix it"
                    ),
                    rule_id=test_id,
                )
            )

        items.append(
            ClassifiedItem(
                test_id=test_id,
                label=label,
                current_status=current,
                previous_status=previous,
                tracking_reference=tracking,
            )
        )

    for defer_id in sorted(deferred):
        if defer_id not in observations and defer_id not in baseline:
            warnings.append(
                ScanWarning(
                    code="UNKNOWN_DEFER",
                    message=f"Defer entry {defer_id} ({deferred[defer_id].tracking_reference}) matches no known test",
                    rule_id=defer_id,
                )
            )

    warnings.sort(key=lambda item: item.sort_key())
    return ClassifiedResult(items=tuple(items), warnings=tuple(warnings))


def baseline_updates(result: ClassifiedResult) -> dict[str, Status]:
    return {item.test_id: item.current_status for item in result.items}
