from typing import Dict, List, Optional

from plan_profiler.devices import ComputeUnits, Device, DeviceUsage
from plan_profiler.plan import Block, ComputePlan, Function, Operation, Program, Value


def op(name: str, kind: str, blocks: Optional[List[Block]] = None) -> Operation:
    return Operation(
        operator_name=kind,
        inputs={"x": [f"{name}_in"]},
        outputs=[Value(name, "tensor<fp32, [1, 4]>")] if name else [],
        blocks=blocks or [],
    )


def program_of(*operations: Operation) -> Program:
    return Program(functions={
        "main": Function(
            inputs=[Value("x", "tensor<fp32, [1, 4]>")],
            block=Block(inputs=[Value("x")], output_names=["out"], operations=list(operations)),
        )
    })


def plan_for(program: Program, costs: Dict[str, Optional[float]],
             devices: Optional[Dict[str, DeviceUsage]] = None,
             units: ComputeUnits = ComputeUnits.ALL) -> ComputePlan:
    devices = devices or {}

    def cost_of(o: Operation):
        return costs.get(o.operator_id)

    def device_usage_of(o: Operation):
        usage = devices.get(o.operator_id)
        if usage is None:
            return None
        supported = [d for d in usage.supported if units.allows(d)]
        preferred = usage.preferred if units.allows(usage.preferred) else (supported[0] if supported else Device.UNKNOWN)
        return DeviceUsage(preferred, supported)

    return ComputePlan(program=program, cost_of=cost_of, device_usage_of=device_usage_of)


def ten_op_program():
    ops = [op(f"v{i}", "conv" if i % 2 else "relu") for i in range(1, 11)]
    return program_of(*ops)


class FakeEngine:
    def __init__(self, program: Optional[Program] = None, costs=None, devices=None,
                 fail_on: Optional[str] = None, plan_missing: bool = False):
        self.program = program if program is not None else ten_op_program()
        self.costs = costs if costs is not None else {f"v{i}": 0.1 for i in range(1, 11)}
        self.devices = devices if devices is not None else {
            f"v{i}": DeviceUsage(Device.ANE, [Device.ANE, Device.GPU, Device.CPU]) for i in range(1, 11)
        }
        self.fail_on = fail_on
        self.plan_missing = plan_missing
        self.calls: Dict[str, int] = {"compile": 0, "load": 0, "predict": 0, "plan": 0}

    def _tick(self, phase: str):
        self.calls[phase] += 1
        if self.fail_on == phase:
            raise RuntimeError(f"{phase} exploded")

    def compile(self, source_path):
        self._tick("compile")
        return f"{source_path}.compiled#{self.calls['compile']}"

    def load(self, compiled, units):
        self._tick("load")
        return {"compiled": compiled, "units": units}

    def predict(self, model, feed):
        self._tick("predict")
        return {"out": feed}

    def get_compute_plan(self, compiled, units):
        self._tick("plan")
        if self.plan_missing:
            return None
        return plan_for(self.program, self.costs, self.devices, units)


class FakeInputs:
    def __init__(self, feed=None, fail: bool = False):
        self.feed = {"x": [0.0] * 4} if feed is None else feed
        self.fail = fail

    def generate(self, model):
        if self.fail:
            raise RuntimeError("unsupported input type")
        return self.feed


class NoInputs:
    def generate(self, model):
        return None
