"""
Engine-neutral compute plan: a program of functions, each owning a block of
operations, where an operation may own nested blocks (control-flow bodies).

The model engine builds a Program and pairs it with two oracles:
  cost_of(op)         -> Optional[float]        fraction of total cost
  device_usage_of(op) -> Optional[DeviceUsage]  preferred / supported devices
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .devices import DeviceUsage


@dataclass
class Value:
    name: str
    type: str = ""

    def to_dict(self) -> dict:
        return {"name": self.name, "type": self.type}


@dataclass
class Operation:
    operator_name: str
    inputs: Dict[str, List[str]] = field(default_factory=dict)
    outputs: List[Value] = field(default_factory=list)
    blocks: List["Block"] = field(default_factory=list)
    handle: Any = None

    @property
    def operator_id(self) -> str:
        for out in self.outputs:
            if out.name:
                return out.name
        return "Unknown"


@dataclass
class Block:
    inputs: List[Value] = field(default_factory=list)
    output_names: List[str] = field(default_factory=list)
    operations: List[Operation] = field(default_factory=list)


@dataclass
class Function:
    inputs: List[Value] = field(default_factory=list)
    block: Block = field(default_factory=Block)


@dataclass
class Program:
    functions: Dict[str, Function] = field(default_factory=dict)

    def iter_operations(self):
        def walk(block: Block):
            for op in block.operations:
                yield op
                for sub in op.blocks:
                    yield from walk(sub)
        for fn in self.functions.values():
            yield from walk(fn.block)


CostOracle = Callable[[Operation], Optional[float]]
DeviceOracle = Callable[[Operation], Optional[DeviceUsage]]


@dataclass
class ComputePlan:
    program: Program
    cost_of: CostOracle
    device_usage_of: DeviceOracle
