"""
Compute plan profiler: timing statistics for compile/load/predict, a flat
per-operation table of a model's compute plan (cost, preferred and supported
devices, synthetic timeline) and backend validation messages joined from the
accelerator diagnostics log.
"""

__version__ = "0.1.0"

from .devices import ComputeUnits, Device, DeviceUsage
from .errors import (
    ArtifactWriteError,
    DiagnosticsUnavailable,
    EngineFailure,
    InvalidInput,
    PlanUnavailable,
    ProfilerError,
    StructuralError,
)
from .flatten import GraphFlattener, OperationRecord, flatten_program
from .plan import Block, ComputePlan, Function, Operation, Program, Value
from .runner import LogBuffer, ProfileResult, ProfileRunner, RunState
from .table import ComputeUnitCounts, OperationTable
from .timing import SampleSet, TimingSampler

__all__ = [
    "ArtifactWriteError", "Block", "ComputePlan", "ComputeUnitCounts", "ComputeUnits", "Device", "DeviceUsage",
    "DiagnosticsUnavailable", "EngineFailure", "Function", "GraphFlattener", "InvalidInput",
    "LogBuffer", "Operation", "OperationRecord", "OperationTable", "PlanUnavailable",
    "ProfileResult", "ProfileRunner", "ProfilerError", "Program", "RunState", "SampleSet",
    "StructuralError", "TimingSampler", "Value", "flatten_program",
]
