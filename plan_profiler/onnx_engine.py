"""
ONNX Runtime backed model engine.

compile  -> optimized ONNX graph written by an ONNX Runtime session
load     -> InferenceSession on the execution providers of the compute units
predict  -> session.run
plan     -> program tree of the ONNX graph + FLOP-share cost + static device
            capability tables
"""

import logging
import os
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import numpy as np
import onnx
import onnxruntime as ort
from onnx import helper as onnx_helper
from onnx import shape_inference

from .config import OPT_LEVEL, OPT_LEVELS
from .costs import get_value_info_map, iter_graphs, node_flops
from .devices import ComputeUnits, Device, DeviceUsage
from .errors import InvalidInput
from .plan import Block, ComputePlan, Function, Operation, Program, Value

logger = logging.getLogger(__name__)

# ==================== Devices / providers ====================
PROVIDERS_BY_DEVICE = {
    Device.ANE: ("CoreMLExecutionProvider",),
    Device.GPU: ("CUDAExecutionProvider", "ROCMExecutionProvider", "DmlExecutionProvider"),
    Device.CPU: ("CPUExecutionProvider",),
}
DEVICE_PRIORITY = (Device.ANE, Device.GPU, Device.CPU)

DEFAULT_DOMAINS = ("", "ai.onnx")
GPU_UNSUPPORTED_DOMAINS = {"ai.onnx.ml"}
GPU_UNSUPPORTED_OPS = {
    "StringNormalizer", "TfIdfVectorizer", "Tokenizer",
    "RegexFullMatch", "StringConcat", "StringSplit",
}
# ops the Core ML execution provider can place on the neural engine
ANE_SUPPORTED_OPS = {
    "Add", "ArgMax", "AveragePool", "BatchNormalization", "Cast", "Clip", "Concat",
    "Conv", "ConvTranspose", "DepthToSpace", "Div", "Erf", "Gelu", "Gemm",
    "GlobalAveragePool", "GlobalMaxPool", "GridSample", "GroupNormalization",
    "InstanceNormalization", "LayerNormalization", "LeakyRelu", "MatMul", "MaxPool",
    "Mul", "PRelu", "Pad", "Pow", "Reciprocal", "ReduceMean", "ReduceSum", "Relu",
    "Reshape", "Resize", "Round", "Shape", "Sigmoid", "Slice", "Softmax", "Split",
    "Sqrt", "Squeeze", "Sub", "Tanh", "Transpose", "Unsqueeze",
}

GRAPH_OPT_LEVELS = {
    "basic": ort.GraphOptimizationLevel.ORT_ENABLE_BASIC,
    "extended": ort.GraphOptimizationLevel.ORT_ENABLE_EXTENDED,
    "all": ort.GraphOptimizationLevel.ORT_ENABLE_ALL,
}


def installed_devices(available: Sequence[str]) -> List[Device]:
    out = [Device.CPU]
    for dev in (Device.GPU, Device.ANE):
        if any(p in available for p in PROVIDERS_BY_DEVICE[dev]):
            out.append(dev)
    return out


def build_providers(units: ComputeUnits, available: Sequence[str]) -> List[str]:
    providers = []
    for dev in DEVICE_PRIORITY:
        if not units.allows(dev):
            continue
        for p in PROVIDERS_BY_DEVICE[dev]:
            if p in available and p not in providers:
                providers.append(p)
    if "CPUExecutionProvider" not in providers:
        providers.append("CPUExecutionProvider")
    return providers


def capable_devices(op_type: str, domain: str) -> List[Device]:
    devs = [Device.CPU]
    if domain not in GPU_UNSUPPORTED_DOMAINS and op_type not in GPU_UNSUPPORTED_OPS:
        devs.append(Device.GPU)
    if domain in DEFAULT_DOMAINS and op_type in ANE_SUPPORTED_OPS:
        devs.append(Device.ANE)
    return devs


# ==================== Program tree ====================
def _type_str(vi) -> str:
    if vi is None:
        return ""
    try:
        return onnx_helper.printable_type(vi.type)
    except Exception:
        return ""


def _operator_name(node) -> str:
    if node.domain in DEFAULT_DOMAINS:
        return node.op_type
    return f"{node.domain}.{node.op_type}"


class ProgramBuilder:
    def __init__(self, model):
        self.model = model
        graphs = list(iter_graphs(model.graph))
        self.vi_map = get_value_info_map(graphs)
        self.vi_by_name = {}
        self.constants = set()
        for g in graphs:
            for vi in list(g.input) + list(g.output) + list(g.value_info):
                self.vi_by_name[vi.name] = vi
            self.constants.update(init.name for init in g.initializer)
            for node in g.node:
                if node.op_type == "Constant":
                    self.constants.update(o for o in node.output if o)

    def build(self) -> Program:
        graph = self.model.graph
        inits = {init.name for init in graph.initializer}
        program = Program()
        program.functions["main"] = Function(
            inputs=[Value(vi.name, _type_str(vi)) for vi in graph.input if vi.name not in inits],
            block=self._graph_block(graph),
        )
        for fn in self.model.functions:
            key = f"{fn.domain}.{fn.name}" if fn.domain else fn.name
            inputs = [Value(n) for n in fn.input]
            program.functions[key] = Function(
                inputs=inputs,
                block=Block(
                    inputs=list(inputs),
                    output_names=list(fn.output),
                    operations=[self._operation(n) for n in fn.node],
                ),
            )
        return program

    def _graph_block(self, graph) -> Block:
        return Block(
            inputs=[Value(vi.name, _type_str(vi)) for vi in graph.input],
            output_names=[o.name for o in graph.output],
            operations=[self._operation(n) for n in graph.node],
        )

    def _operation(self, node) -> Operation:
        inputs: Dict[str, List[str]] = {}
        for i, name in enumerate(node.input):
            if not name:
                continue
            inputs[f"input_{i}"] = ["value" if name in self.constants else name]
        blocks = []
        for attr in node.attribute:
            if attr.type == onnx.AttributeProto.GRAPH:
                blocks.append(self._graph_block(attr.g))
            elif attr.type == onnx.AttributeProto.GRAPHS:
                blocks.extend(self._graph_block(g) for g in attr.graphs)
        return Operation(
            operator_name=_operator_name(node),
            inputs=inputs,
            outputs=[Value(o, _type_str(self.vi_by_name.get(o))) for o in node.output if o],
            blocks=blocks,
            handle=node,
        )


def build_compute_plan(model, units: ComputeUnits, available: Sequence[str]) -> ComputePlan:
    builder = ProgramBuilder(model)
    program = builder.build()

    flops: Dict[int, Optional[int]] = {}
    for op in program.iter_operations():
        flops[id(op)] = node_flops(op.handle, builder.vi_map)
    total = sum(f for f in flops.values() if f is not None)

    def cost_of(op: Operation) -> Optional[float]:
        f = flops.get(id(op))
        if f is None:
            return None
        return f / total if total > 0 else 0.0

    installed = installed_devices(available)

    def device_usage_of(op: Operation) -> Optional[DeviceUsage]:
        node = op.handle
        capable = capable_devices(node.op_type, node.domain)
        supported = [d for d in DEVICE_PRIORITY if d in capable and units.allows(d) and d in installed]
        preferred = supported[0] if supported else Device.UNKNOWN
        return DeviceUsage(preferred, supported)

    return ComputePlan(program=program, cost_of=cost_of, device_usage_of=device_usage_of)


# ==================== Engine ====================
class OnnxRuntimeEngine:
    def __init__(self, work_dir: Optional[str] = None, opt_level: str = OPT_LEVEL,
                 available_providers: Optional[Sequence[str]] = None):
        if opt_level not in OPT_LEVELS:
            raise InvalidInput(f"Unknown optimization level '{opt_level}' (choose from {', '.join(OPT_LEVELS)})")
        self.work_dir = work_dir or os.getcwd()
        self.opt_level = opt_level
        self.available = list(available_providers) if available_providers is not None else ort.get_available_providers()

    def _session_options(self):
        so = ort.SessionOptions()
        so.graph_optimization_level = GRAPH_OPT_LEVELS[self.opt_level]
        return so

    def compile(self, source_path: str) -> str:
        out = Path(self.work_dir) / f"{Path(source_path).stem}.optimized.onnx"
        out.parent.mkdir(parents=True, exist_ok=True)
        so = self._session_options()
        so.optimized_model_filepath = str(out)
        ort.InferenceSession(source_path, sess_options=so, providers=["CPUExecutionProvider"])
        return str(out)

    def load(self, compiled_path: str, units: ComputeUnits):
        providers = build_providers(units, self.available)
        return ort.InferenceSession(compiled_path, sess_options=self._session_options(), providers=providers)

    def predict(self, session, feed):
        return session.run(None, feed)

    def get_compute_plan(self, compiled_path: str, units: ComputeUnits) -> Optional[ComputePlan]:
        try:
            model = onnx.load(compiled_path)
        except Exception as e:
            logger.warning("compute plan unavailable for %s: %s", compiled_path, e)
            return None
        try:
            model = shape_inference.infer_shapes(model, strict_mode=False)
        except Exception as e:
            logger.warning("shape inference failed, costs use declared shapes only: %s", e)
        return build_compute_plan(model, units, self.available)


# ==================== Synthetic inputs ====================
ORT_TENSOR_TYPES = {
    "tensor(float)": np.float32,
    "tensor(float16)": np.float16,
    "tensor(double)": np.float64,
    "tensor(int64)": np.int64,
    "tensor(int32)": np.int32,
    "tensor(int16)": np.int16,
    "tensor(int8)": np.int8,
    "tensor(uint8)": np.uint8,
    "tensor(bool)": np.bool_,
}
INT_TYPES = (np.int64, np.int32, np.int16, np.int8, np.uint8)


class SyntheticInputGenerator:
    def __init__(self, batch: int = 1, seq: int = 128, vocab: int = 50257, seed: Optional[int] = None):
        self.batch = batch
        self.seq = seq
        self.vocab = vocab
        self.rng = np.random.default_rng(seed)

    def _shape(self, declared) -> List[int]:
        shape = []
        for i, d in enumerate(declared or []):
            if isinstance(d, int) and d >= 0:
                shape.append(d)
            else:
                shape.append(self.batch if i == 0 else self.seq)
        return shape

    def make_tensor(self, name: str, type_str: str, declared_shape):
        np_dtype = ORT_TENSOR_TYPES.get(type_str)
        if np_dtype is None:
            return None
        lname = name.lower()
        shape = tuple(self._shape(declared_shape))
        if np_dtype in INT_TYPES:
            if "mask" in lname:
                return np.ones(shape, dtype=np_dtype)
            if "position_ids" in lname and len(shape) == 2:
                b, s = shape
                return np.tile(np.arange(s, dtype=np_dtype), (b, 1))
            high = int(self.vocab) if self.vocab and self.vocab > 0 else 1000
            high = min(high, int(np.iinfo(np_dtype).max))
            return self.rng.integers(0, high, size=shape).astype(np_dtype)
        if np_dtype == np.bool_:
            return self.rng.integers(0, 2, size=shape) > 0
        return np.zeros(shape, dtype=np_dtype)

    def generate(self, session) -> Optional[Dict[str, np.ndarray]]:
        feed = {}
        for inp in session.get_inputs():
            arr = self.make_tensor(inp.name, inp.type, inp.shape)
            if arr is None:
                logger.info("cannot synthesize input '%s' of type %s", inp.name, inp.type)
                return None
            feed[inp.name] = arr
        return feed
