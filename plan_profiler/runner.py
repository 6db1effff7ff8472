import json
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol

from . import diagnostics, timeline
from .config import COMPUTE_PLAN_FILE, OPERATION_TABLE_FILE, ProfileConfig
from .devices import ComputeUnits
from .errors import ArtifactWriteError, DiagnosticsUnavailable, EngineFailure, InvalidInput, PlanUnavailable
from .flatten import GraphFlattener
from .plan import ComputePlan
from .table import ComputeUnitCounts, OperationTable
from .timing import SampleSet, TimingSampler

LogSink = Callable[[str], None]


class ModelEngine(Protocol):
    def compile(self, source_path: str) -> Any: ...
    def load(self, compiled: Any, units: ComputeUnits) -> Any: ...
    def predict(self, model: Any, feed: Any) -> Any: ...
    def get_compute_plan(self, compiled: Any, units: ComputeUnits) -> Optional[ComputePlan]: ...


class InputGenerator(Protocol):
    def generate(self, model: Any) -> Optional[Any]: ...


class RunState(Enum):
    IDLE = "Idle"
    VALIDATING = "Validating"
    COMPILING = "Compiling"
    LOADING = "Loading"
    PREDICTING = "Predicting"
    PLAN_LOADING = "PlanLoading"
    FLATTENING = "Flattening"
    TIMELINE_ALLOCATING = "TimelineAllocating"
    TABLE_BUILDING = "TableBuilding"
    DIAGNOSTICS_JOINING = "DiagnosticsJoining"
    DONE = "Done"
    FAILED = "Failed"


class LogBuffer:
    """Append-only log sink owned by the caller."""

    def __init__(self):
        self.lines: List[str] = []

    def __call__(self, message: str):
        self.lines.append(message)

    @property
    def text(self) -> str:
        return "".join(line + "\n" for line in self.lines)


@dataclass
class ProfileResult:
    table: OperationTable
    counts: ComputeUnitCounts
    timings: Dict[str, SampleSet] = field(default_factory=dict)
    plan_available: bool = False
    diagnostics_joined: bool = False
    written: List[str] = field(default_factory=list)

    def __iter__(self):
        yield self.table
        yield self.counts

    def to_dict(self, stat: str = "median") -> dict:
        return {
            "counts": self.counts.to_dict(),
            "timings": {
                phase: dict(s.summary(), selected=s.pick(stat))
                for phase, s in self.timings.items()
            },
            "plan_available": self.plan_available,
            "diagnostics_joined": self.diagnostics_joined,
            "written": list(self.written),
            "operations": self.table.records(),
        }


class ProfileRunner:
    """
    One profiling run, strictly sequential:

    Validating -> Compiling (source artifacts only) -> Loading
      -> Predicting (full profile) -> PlanLoading -> Flattening
      -> TimelineAllocating (full profile) -> TableBuilding
      -> DiagnosticsJoining (when a diagnostics directory is configured) -> Done

    Any fatal error moves the run to Failed and propagates; no partial table
    is returned.
    """

    def __init__(self, engine: ModelEngine, input_generator: Optional[InputGenerator] = None,
                 config: Optional[ProfileConfig] = None, sink: Optional[LogSink] = None,
                 diagnostics_source: Optional[diagnostics.DiagnosticsSource] = None,
                 sampler: Optional[TimingSampler] = None):
        self.engine = engine
        self.input_generator = input_generator
        self.config = config or ProfileConfig()
        self.sink = sink
        self.sampler = sampler or TimingSampler()
        if diagnostics_source is None and self.config.diagnostics_dir:
            diagnostics_source = diagnostics.DiagnosticsSource(
                self.config.diagnostics_dir, self.config.diagnostics_suffix)
        self.diagnostics_source = diagnostics_source
        self.state = RunState.IDLE
        self.history: List[RunState] = []
        self.logger = logging.getLogger(__name__)

    def log(self, message: str, level: int = logging.INFO):
        self.logger.log(level, message)
        if self.sink is not None:
            self.sink(message)

    def _enter(self, state: RunState):
        self.state = state
        self.history.append(state)
        self.logger.debug("state -> %s", state.value)

    # ==================== Phases ====================
    def _validate(self, model_path: str, device_selector) -> ComputeUnits:
        units = ComputeUnits.from_selector(device_selector)
        cfg = self.config
        if not (model_path.endswith(cfg.source_suffix) or model_path.endswith(cfg.compiled_suffix)):
            raise InvalidInput(
                f"Invalid file type. Load a model file with {cfg.source_suffix} or {cfg.compiled_suffix} extension.")
        return units

    def _measure(self, phase: str, operation: Callable[[], Any]):
        try:
            value, samples = self.sampler.sample(phase, operation, self.config.repetitions)
        except InvalidInput:
            raise
        except Exception as e:
            self.log(str(e), logging.ERROR)
            raise EngineFailure(str(e)) from e
        return value, samples

    def _predict_duration(self, model, timings: Dict[str, SampleSet]) -> float:
        feed = None
        if self.input_generator is not None:
            try:
                feed = self.input_generator.generate(model)
            except Exception as e:
                self.log(f"Failed to generate synthetic input: {e}", logging.WARNING)
                feed = None
        if feed is None:
            self.log("No synthetic input available; skipping prediction timing.", logging.WARNING)
            return 0.0

        self._enter(RunState.PREDICTING)
        _, samples = self._measure("predict", lambda: self.engine.predict(model, feed))
        timings["predict"] = samples
        self.log(f"Prediction times: {list(samples.samples)} ms")
        self.log(f"Time taken to predict (median): {samples.median} ms")
        return samples.median

    def _load_plan(self, compiled, units: ComputeUnits) -> ComputePlan:
        try:
            plan = self.engine.get_compute_plan(compiled, units)
        except Exception as e:
            raise PlanUnavailable(f"Failed to load the compute plan: {e}") from e
        if plan is None:
            raise PlanUnavailable("Failed to load the compute plan.")
        return plan

    def _write_json(self, obj, file_name: str) -> str:
        path = Path(self.config.artifact_path(file_name))
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(obj, indent=2, ensure_ascii=False), encoding="utf-8")
        except OSError as e:
            raise ArtifactWriteError(f"Failed to write {path}: {e}") from e
        self.log(f"JSON saved to {path}")
        return str(path)

    def _write_artifacts(self, structure, table: OperationTable) -> List[str]:
        written: List[str] = []
        try:
            written.append(self._write_json(structure, COMPUTE_PLAN_FILE))
            written.append(self._write_json(table.records(), OPERATION_TABLE_FILE))
        except ArtifactWriteError:
            # a failed run leaves neither file behind
            for path in written:
                Path(path).unlink(missing_ok=True)
            raise
        return written

    def _join_diagnostics(self, table: OperationTable) -> Optional[OperationTable]:
        if self.diagnostics_source is None:
            return None
        self._enter(RunState.DIAGNOSTICS_JOINING)
        try:
            records = self.diagnostics_source.load()
        except DiagnosticsUnavailable as e:
            self.log(f"{e}; validation messages left empty.", logging.WARNING)
            return None
        return diagnostics.join(table, records)

    # ==================== Run ====================
    def run(self, model_path: str, device_selector: int = 0, full_profile: bool = False) -> ProfileResult:
        self.history = []
        try:
            return self._run(os.fspath(model_path), device_selector, full_profile)
        except Exception:
            self._enter(RunState.FAILED)
            raise

    def _run(self, model_path: str, device_selector, full_profile: bool) -> ProfileResult:
        self._enter(RunState.VALIDATING)
        units = self._validate(model_path, device_selector)
        self.log(f"Processing Unit Selected: {units.label}")
        timings: Dict[str, SampleSet] = {}

        if model_path.endswith(self.config.source_suffix):
            self._enter(RunState.COMPILING)
            compiled, samples = self._measure("compile", lambda: self.engine.compile(model_path))
            timings["compile"] = samples
            self.log(f"Model compiled successfully at {compiled}")
            self.log(f"Compilation times: {list(samples.samples)} ms")
            self.log(f"Time taken to compile model (median): {samples.median} ms")
        else:
            compiled = model_path
            self.log("Model is already compiled; skipping compilation.")

        self._enter(RunState.LOADING)
        model, samples = self._measure("load", lambda: self.engine.load(compiled, units))
        timings["load"] = samples
        self.log(f"Load times: {list(samples.samples)} ms")
        self.log(f"Time taken to load model (median): {samples.median} ms")

        aggregate_ms = 0.0
        if full_profile:
            aggregate_ms = self._predict_duration(model, timings)

        self._enter(RunState.PLAN_LOADING)
        try:
            plan = self._load_plan(compiled, units)
        except PlanUnavailable as e:
            self.log(str(e), logging.WARNING)
            self._enter(RunState.DONE)
            return ProfileResult(
                table=OperationTable.empty(full_profile),
                counts=ComputeUnitCounts.zero(),
                timings=timings,
                plan_available=False,
            )

        self._enter(RunState.FLATTENING)
        flat = GraphFlattener(plan.cost_of, plan.device_usage_of).flatten(plan.program)

        if full_profile:
            self._enter(RunState.TIMELINE_ALLOCATING)
            timeline.allocate(flat.records, aggregate_ms)

        self._enter(RunState.TABLE_BUILDING)
        intermediate = json.dumps([r.to_dict(full_profile) for r in flat.records])
        table = OperationTable.from_json(intermediate, full_profile=full_profile)

        joined = self._join_diagnostics(table)
        if joined is not None:
            table = joined

        written = self._write_artifacts(flat.structure_dict(full_profile), table)
        counts = table.device_counts()
        self.log(f"Operations: {counts.total_operations} (CPU {counts.total_cpu}, "
                 f"GPU {counts.total_gpu}, ANE {counts.total_ane})")

        self._enter(RunState.DONE)
        return ProfileResult(
            table=table,
            counts=counts,
            timings=timings,
            plan_available=True,
            diagnostics_joined=joined is not None,
            written=written,
        )
