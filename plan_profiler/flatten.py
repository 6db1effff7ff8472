"""
Flatten a compute plan's program tree into ordered operation records.

Traversal is depth-first pre-order over functions -> blocks -> operations.
One counter is shared across the whole program; it advances only when an
operation is kept (the cost oracle returned a weight), so op_number stays
dense even when operations are dropped or nested inside control flow.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .devices import Device, DeviceUsage
from .plan import Block, CostOracle, DeviceOracle, Function, Operation, Program

MINIMAL_COLUMNS = (
    "op_number", "operator_id", "operator_name", "cost",
    "preferred_device", "supported_devices",
)
TIMING_COLUMNS = ("start_time", "end_time", "op_time")
FULL_COLUMNS = MINIMAL_COLUMNS + TIMING_COLUMNS
VALIDATION_COLUMN = "validation_message"


@dataclass
class OperationRecord:
    op_number: int
    operator_id: str
    operator_name: str
    cost: float
    preferred_device: str = ""
    supported_devices: str = ""
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    op_time: Optional[float] = None

    @property
    def has_timing(self) -> bool:
        return self.start_time is not None

    def to_dict(self, full_profile: bool = False) -> Dict[str, Any]:
        columns = FULL_COLUMNS if full_profile else MINIMAL_COLUMNS
        return {c: getattr(self, c) for c in columns}


@dataclass
class OperationNode:
    record: OperationRecord
    inputs: Dict[str, List[str]] = field(default_factory=dict)
    outputs: List[Dict[str, str]] = field(default_factory=list)
    blocks: List["BlockNode"] = field(default_factory=list)

    def to_dict(self, full_profile: bool = False) -> Dict[str, Any]:
        rec = self.record
        d = {
            "op_number": rec.op_number,
            "operator_id": rec.operator_id,
            "operator_name": rec.operator_name,
            "inputs": [{"name": k, "bindings": list(v)} for k, v in self.inputs.items()],
            "outputs": list(self.outputs),
            "blocks": [b.to_dict(full_profile) for b in self.blocks],
            "cost": rec.cost,
            "preferred_device": rec.preferred_device,
            "supported_devices": rec.supported_devices,
        }
        if full_profile:
            for c in TIMING_COLUMNS:
                d[c] = getattr(rec, c)
        return d


@dataclass
class BlockNode:
    inputs: List[Dict[str, str]] = field(default_factory=list)
    outputs: List[str] = field(default_factory=list)
    operations: List[OperationNode] = field(default_factory=list)

    def to_dict(self, full_profile: bool = False) -> Dict[str, Any]:
        return {
            "inputs": list(self.inputs),
            "outputs": list(self.outputs),
            "operations": [op.to_dict(full_profile) for op in self.operations],
        }


@dataclass
class FlattenResult:
    records: List[OperationRecord]
    structure: Dict[str, Dict[str, Any]]

    def structure_dict(self, full_profile: bool = False) -> Dict[str, Any]:
        out = {}
        for fn_name, fn in self.structure.items():
            out[fn_name] = {
                "inputs": list(fn["inputs"]),
                "block": fn["block"].to_dict(full_profile),
            }
        return out


class GraphFlattener:
    def __init__(self, cost_of: CostOracle, device_usage_of: DeviceOracle):
        self.cost_of = cost_of
        self.device_usage_of = device_usage_of
        self._count = 0
        self._records: List[OperationRecord] = []

    def flatten(self, program: Program) -> FlattenResult:
        self._count = 0
        self._records = []
        structure = {}
        for fn_name, fn in program.functions.items():
            structure[fn_name] = self._function(fn)
        return FlattenResult(records=self._records, structure=structure)

    def _function(self, fn: Function) -> Dict[str, Any]:
        return {
            "inputs": [v.to_dict() for v in fn.inputs],
            "block": self._block(fn.block),
        }

    def _block(self, block: Block) -> BlockNode:
        node = BlockNode(
            inputs=[v.to_dict() for v in block.inputs],
            outputs=list(block.output_names),
        )
        for op in block.operations:
            op_node = self._operation(op)
            if op_node is not None:
                node.operations.append(op_node)
        return node

    def _operation(self, op: Operation) -> Optional[OperationNode]:
        cost = self.cost_of(op)
        if cost is None:
            return None

        self._count += 1
        usage = self.device_usage_of(op) or DeviceUsage(Device.UNKNOWN, [])
        record = OperationRecord(
            op_number=self._count,
            operator_id=op.operator_id,
            operator_name=op.operator_name,
            cost=float(cost),
            preferred_device=usage.preferred_label,
            supported_devices=usage.supported_label,
        )
        # parent row precedes the rows of its nested blocks
        self._records.append(record)

        node = OperationNode(
            record=record,
            inputs={k: list(v) for k, v in op.inputs.items()},
            outputs=[v.to_dict() for v in op.outputs],
        )
        node.blocks = [self._block(b) for b in op.blocks]
        return node


def flatten_program(program: Program, cost_of: CostOracle, device_usage_of: DeviceOracle) -> FlattenResult:
    return GraphFlattener(cost_of, device_usage_of).flatten(program)
