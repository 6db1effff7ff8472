from typing import List

from .flatten import OperationRecord


def allocate(records: List[OperationRecord], aggregate_ms: float) -> List[OperationRecord]:
    """
    Spread one measured duration over the records in traversal order,
    proportionally to each record's cost. This is a synthetic timeline,
    not a per-operation measurement.

    Windows are contiguous: each record starts where the previous one ended.
    Records are updated in place and returned.
    """
    cursor = 0.0
    for rec in records:
        end = cursor + aggregate_ms * rec.cost
        rec.start_time = cursor
        rec.end_time = end
        rec.op_time = end - cursor
        cursor = end
    return records
