"""
Per-node FLOP estimates for ONNX graphs, used as operation cost weights.

Shapes come from shape inference; unknown symbolic dims count as 1. A rule
returns None when it cannot resolve the shapes it needs, which the compute
plan reports as "no cost" for that node.
"""

from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np
from onnx import helper as onnx_helper

MAC2FLOP = 2

ValueInfoMap = Dict[str, Tuple[List[int], int]]


def prod(xs):
    p = 1
    for x in xs:
        p *= int(x)
    return int(p)


def np_bytes_from_onnx_dtype(tensor_type: int, default_bytes: int) -> int:
    try:
        npdtype = onnx_helper.tensor_dtype_to_np_dtype(tensor_type)
        return np.dtype(npdtype).itemsize
    except Exception:
        return default_bytes


def shape_from_vi(vi) -> Tuple[Optional[List[int]], Optional[int]]:
    if vi is None or not vi.type.HasField("tensor_type"):
        return None, None
    tt = vi.type.tensor_type
    dtype_bytes = np_bytes_from_onnx_dtype(tt.elem_type, 4)
    if not tt.HasField("shape"):
        return None, dtype_bytes
    dims = []
    for d in tt.shape.dim:
        if d.HasField("dim_value"):
            dims.append(int(d.dim_value))
        else:
            dims.append(1)
    return dims, dtype_bytes


def iter_graphs(graph):
    yield graph
    for node in graph.node:
        for attr in node.attribute:
            if attr.HasField("g"):
                yield from iter_graphs(attr.g)
            for g in attr.graphs:
                yield from iter_graphs(g)


def get_value_info_map(graphs: Iterable) -> ValueInfoMap:
    mp: ValueInfoMap = {}
    for graph in graphs:
        for vi in list(graph.input) + list(graph.output) + list(graph.value_info):
            shp, b = shape_from_vi(vi)
            if shp is not None:
                mp[vi.name] = (shp, b)
        for init in graph.initializer:
            mp[init.name] = (list(init.dims), np_bytes_from_onnx_dtype(init.data_type, 4))
    return mp


def tensor_elems(name, vi_map: ValueInfoMap) -> Optional[int]:
    if not name or name not in vi_map:
        return None
    shp, _ = vi_map[name]
    if len(shp) == 0:
        return 1
    return prod(shp)


# ==================== FLOP rules ====================
def flops_conv(node, vi_map):
    out_name = node.output[0] if node.output else None
    if not out_name or out_name not in vi_map:
        return None
    out_shape, _ = vi_map[out_name]
    if len(out_shape) < 3:
        return None
    W_name = node.input[1] if len(node.input) > 1 else None
    if not W_name or W_name not in vi_map:
        return None
    W_shape, _ = vi_map[W_name]
    if len(W_shape) < 3:
        return None
    N, Cout = out_shape[:2]
    spatial_out = prod(out_shape[2:])
    Cin_per_g = W_shape[1]
    kernel = prod(W_shape[2:])
    macs = N * Cout * spatial_out * Cin_per_g * kernel
    return macs * MAC2FLOP


def matmul_shapes(node, vi_map):
    a = node.input[0] if node.input else None
    b = node.input[1] if len(node.input) > 1 else None
    if not a or not b or a not in vi_map or b not in vi_map:
        return None
    Ashp, _ = vi_map[a]
    Bshp, _ = vi_map[b]
    if len(Ashp) < 2 or len(Bshp) < 2:
        return None
    M, K = Ashp[-2], Ashp[-1]
    N = Bshp[-1]
    batch = prod(Ashp[:-2]) if len(Ashp) > 2 else 1
    return batch, M, K, N


def flops_matmul(node, vi_map):
    shp = matmul_shapes(node, vi_map)
    if not shp:
        return None
    batch, M, K, N = shp
    return batch * M * N * K * MAC2FLOP


def flops_elementwise_relaxed(node, vi_map, cost_per_elem=1):
    out_elems = 0
    for o in node.output:
        e = tensor_elems(o, vi_map)
        if e is not None and e > 0:
            out_elems = max(out_elems, int(e))
    if out_elems == 0:
        for i in node.input:
            e = tensor_elems(i, vi_map)
            if e is not None and e > 0:
                out_elems = max(out_elems, int(e))
    if out_elems == 0:
        out_elems = 1
    return out_elems * cost_per_elem


def flops_softmax(node, vi_map):
    elems = tensor_elems(node.output[0] if node.output else None, vi_map)
    if elems is None:
        return None
    return elems * 5


def flops_reduce(node, vi_map):
    in_elems = tensor_elems(node.input[0] if node.input else None, vi_map)
    out_elems = tensor_elems(node.output[0] if node.output else None, vi_map)
    if in_elems is None:
        return None
    return int(in_elems) + int(out_elems or 0)


def flops_copy_relaxed(node, vi_map, per_elem=1, view_only=False):
    if view_only:
        return 0
    return flops_elementwise_relaxed(node, vi_map, per_elem)


def flops_noop(node, vi_map):
    return 0


def _ew(cost):
    return lambda n, vi: flops_elementwise_relaxed(n, vi, cost)


def _copy(view_only=False):
    return lambda n, vi: flops_copy_relaxed(n, vi, 1, view_only)


OP_FLOP_RULES = {
    "Conv": flops_conv, "ConvTranspose": flops_conv,
    "Gemm": flops_matmul, "MatMul": flops_matmul,
    "BatchNormalization": _ew(2), "LayerNormalization": _ew(5), "InstanceNormalization": _ew(4),
    "Relu": _ew(1), "LeakyRelu": _ew(1), "Sigmoid": _ew(4), "Tanh": _ew(4), "Gelu": _ew(6),
    "Add": _ew(1), "Sub": _ew(1), "Mul": _ew(1), "Div": _ew(1),
    "Equal": _ew(1), "Less": _ew(1), "Greater": _ew(1),
    "Sqrt": _ew(2), "Pow": _ew(4),
    "Softmax": flops_softmax,
    "ReduceMean": flops_reduce, "ReduceSum": flops_reduce,
    "Transpose": _copy(), "Concat": _copy(), "Slice": _copy(), "Pad": _copy(),
    "Gather": _copy(), "Split": _copy(), "Expand": _copy(), "Cast": _copy(),
    "Where": _copy(), "Range": _copy(), "ConstantOfShape": _copy(),
    "Reshape": _copy(True), "Flatten": _copy(True), "Squeeze": _copy(True), "Unsqueeze": _copy(True),
    "Identity": _copy(True),
    "Shape": flops_noop, "Constant": flops_noop,
    "If": flops_noop, "Loop": flops_noop, "Scan": flops_noop,
}


def node_flops(node, vi_map: ValueInfoMap) -> Optional[int]:
    rule = OP_FLOP_RULES.get(node.op_type)
    if rule is None:
        return flops_elementwise_relaxed(node, vi_map, 1)
    flops = rule(node, vi_map)
    return None if flops is None else int(flops)
