import os
import tempfile
import unittest
from types import SimpleNamespace

import numpy as np
import onnx
from onnx import TensorProto
from onnx import helper as onnx_helper

from plan_profiler.config import ProfileConfig
from plan_profiler.costs import get_value_info_map, iter_graphs, node_flops
from plan_profiler.devices import ComputeUnits, Device
from plan_profiler.errors import InvalidInput
from plan_profiler.flatten import flatten_program
from plan_profiler.onnx_engine import (
    OnnxRuntimeEngine,
    SyntheticInputGenerator,
    build_compute_plan,
    build_providers,
    capable_devices,
    installed_devices,
)
from plan_profiler.runner import ProfileRunner

COREML_CPU = ["CoreMLExecutionProvider", "CPUExecutionProvider"]


def _finish(graph):
    model = onnx_helper.make_model(graph, opset_imports=[onnx_helper.make_opsetid("", 13)])
    # keep the IR version loadable by older onnxruntime releases
    model.ir_version = 8
    return model


def _weights():
    w = onnx_helper.make_tensor("W", TensorProto.FLOAT, [4, 4], np.eye(4, dtype=np.float32).flatten().tolist())
    b = onnx_helper.make_tensor("B", TensorProto.FLOAT, [4], [0.5, -0.5, 0.0, 1.0])
    return [w, b]


def mlp_model():
    nodes = [
        onnx_helper.make_node("MatMul", ["x", "W"], ["y"]),
        onnx_helper.make_node("Add", ["y", "B"], ["z"]),
        onnx_helper.make_node("Relu", ["z"], ["out"]),
    ]
    graph = onnx_helper.make_graph(
        nodes, "mlp",
        [onnx_helper.make_tensor_value_info("x", TensorProto.FLOAT, [1, 4])],
        [onnx_helper.make_tensor_value_info("out", TensorProto.FLOAT, [1, 4])],
        initializer=_weights(),
    )
    return _finish(graph)


def branching_model():
    then_graph = onnx_helper.make_graph(
        [onnx_helper.make_node("Relu", ["z"], ["t_out"])], "then_body", [],
        [onnx_helper.make_tensor_value_info("t_out", TensorProto.FLOAT, [1, 4])],
    )
    else_graph = onnx_helper.make_graph(
        [onnx_helper.make_node("Neg", ["z"], ["e_out"])], "else_body", [],
        [onnx_helper.make_tensor_value_info("e_out", TensorProto.FLOAT, [1, 4])],
    )
    nodes = [
        onnx_helper.make_node("MatMul", ["x", "W"], ["y"]),
        onnx_helper.make_node("Add", ["y", "B"], ["z"]),
        onnx_helper.make_node("If", ["cond"], ["out"], then_branch=then_graph, else_branch=else_graph),
    ]
    graph = onnx_helper.make_graph(
        nodes, "branching",
        [
            onnx_helper.make_tensor_value_info("x", TensorProto.FLOAT, [1, 4]),
            onnx_helper.make_tensor_value_info("cond", TensorProto.BOOL, []),
        ],
        [onnx_helper.make_tensor_value_info("out", TensorProto.FLOAT, [1, 4])],
        initializer=_weights(),
        value_info=[
            onnx_helper.make_tensor_value_info("y", TensorProto.FLOAT, [1, 4]),
            onnx_helper.make_tensor_value_info("z", TensorProto.FLOAT, [1, 4]),
        ],
    )
    return _finish(graph)


class TestCosts(unittest.TestCase):
    def test_conv(self):
        node = onnx_helper.make_node("Conv", ["x", "w"], ["y"])
        vi = {"y": ([1, 8, 4, 4], 4), "w": ([8, 3, 3, 3], 4)}
        self.assertEqual(node_flops(node, vi), 1 * 8 * 16 * 3 * 9 * 2)

    def test_matmul_needs_shapes(self):
        node = onnx_helper.make_node("MatMul", ["a", "b"], ["c"])
        self.assertIsNone(node_flops(node, {}))
        vi = {"a": ([2, 3, 5], 4), "b": ([5, 7], 4)}
        self.assertEqual(node_flops(node, vi), 2 * 3 * 7 * 5 * 2)

    def test_views_and_unknown_ops(self):
        vi = {"x": ([2, 6], 4), "y": ([3, 4], 4)}
        self.assertEqual(node_flops(onnx_helper.make_node("Reshape", ["x", "s"], ["y"]), vi), 0)
        self.assertEqual(node_flops(onnx_helper.make_node("Erfc", ["x"], ["y"]), vi), 12)
        self.assertEqual(node_flops(onnx_helper.make_node("Sigmoid", ["x"], ["y"]), vi), 48)
        self.assertIsNone(node_flops(onnx_helper.make_node("Softmax", ["x"], ["missing"]), vi))

    def test_subgraphs_are_walked(self):
        model = branching_model()
        graphs = list(iter_graphs(model.graph))
        self.assertEqual(len(graphs), 3)
        vi = get_value_info_map(graphs)
        self.assertEqual(vi["t_out"][0], [1, 4])
        self.assertEqual(vi["W"][0], [4, 4])


class TestDevices(unittest.TestCase):
    def test_installed_devices(self):
        self.assertEqual(installed_devices(["CPUExecutionProvider"]), [Device.CPU])
        self.assertEqual(installed_devices(["CUDAExecutionProvider"] + COREML_CPU),
                         [Device.CPU, Device.GPU, Device.ANE])

    def test_build_providers(self):
        available = ["CUDAExecutionProvider"] + COREML_CPU
        self.assertEqual(build_providers(ComputeUnits.ALL, available),
                         ["CoreMLExecutionProvider", "CUDAExecutionProvider", "CPUExecutionProvider"])
        self.assertEqual(build_providers(ComputeUnits.CPU_AND_GPU, available),
                         ["CUDAExecutionProvider", "CPUExecutionProvider"])
        self.assertEqual(build_providers(ComputeUnits.CPU_ONLY, available), ["CPUExecutionProvider"])
        self.assertEqual(build_providers(ComputeUnits.ALL, []), ["CPUExecutionProvider"])

    def test_capable_devices(self):
        self.assertEqual(capable_devices("Conv", ""), [Device.CPU, Device.GPU, Device.ANE])
        self.assertEqual(capable_devices("Neg", ""), [Device.CPU, Device.GPU])
        self.assertEqual(capable_devices("LabelEncoder", "ai.onnx.ml"), [Device.CPU])
        self.assertEqual(capable_devices("FusedConv", "com.microsoft"), [Device.CPU, Device.GPU])

    def test_selector_bounds(self):
        self.assertIs(ComputeUnits.from_selector(3), ComputeUnits.CPU_AND_NEURAL_ENGINE)
        for bad in (-1, 4, 5, "0", None, True, 1.0):
            with self.assertRaises(InvalidInput):
                ComputeUnits.from_selector(bad)


class TestComputePlan(unittest.TestCase):
    def flatten(self, units, available):
        plan = build_compute_plan(branching_model(), units, available)
        return plan, flatten_program(plan.program, plan.cost_of, plan.device_usage_of)

    def test_program_tree(self):
        plan, _ = self.flatten(ComputeUnits.ALL, COREML_CPU)
        main = plan.program.functions["main"]
        self.assertEqual([v.name for v in main.inputs], ["x", "cond"])
        ops = main.block.operations
        self.assertEqual([o.operator_name for o in ops], ["MatMul", "Add", "If"])
        self.assertEqual(ops[0].inputs, {"input_0": ["x"], "input_1": ["value"]})
        self.assertEqual(len(ops[2].blocks), 2)
        self.assertTrue(ops[0].outputs[0].type)

    def test_costs_are_flop_shares(self):
        _, flat = self.flatten(ComputeUnits.ALL, COREML_CPU)
        by_id = {r.operator_id: r for r in flat.records}
        self.assertEqual([r.operator_id for r in flat.records[:3]], ["y", "z", "out"])
        self.assertEqual(set(by_id), {"y", "z", "out", "t_out", "e_out"})
        self.assertEqual([r.op_number for r in flat.records], [1, 2, 3, 4, 5])
        # MatMul 32, Add 4, If 0, Relu 4, Neg 4
        self.assertAlmostEqual(by_id["y"].cost, 32 / 44)
        self.assertAlmostEqual(by_id["out"].cost, 0.0)
        self.assertAlmostEqual(sum(r.cost for r in flat.records), 1.0)

    def test_device_usage_respects_units_and_providers(self):
        _, flat = self.flatten(ComputeUnits.ALL, COREML_CPU)
        by_id = {r.operator_id: r for r in flat.records}
        self.assertEqual((by_id["y"].preferred_device, by_id["y"].supported_devices), ("ANE", "ANE, CPU"))
        self.assertEqual((by_id["e_out"].preferred_device, by_id["e_out"].supported_devices), ("CPU", "CPU"))

        _, flat = self.flatten(ComputeUnits.CPU_ONLY, COREML_CPU)
        self.assertEqual({r.preferred_device for r in flat.records}, {"CPU"})

        _, flat = self.flatten(ComputeUnits.CPU_AND_GPU, ["CUDAExecutionProvider", "CPUExecutionProvider"])
        by_id = {r.operator_id: r for r in flat.records}
        self.assertEqual(by_id["y"].supported_devices, "GPU, CPU")


class TestSyntheticInputs(unittest.TestCase):
    def setUp(self):
        self.gen = SyntheticInputGenerator(batch=2, seq=8, vocab=100, seed=0)

    def test_token_inputs(self):
        ids = self.gen.make_tensor("input_ids", "tensor(int64)", ["batch", "sequence"])
        self.assertEqual(ids.shape, (2, 8))
        self.assertEqual(ids.dtype, np.int64)
        self.assertTrue((ids >= 0).all() and (ids < 100).all())
        mask = self.gen.make_tensor("attention_mask", "tensor(int64)", [None, None])
        self.assertTrue((mask == 1).all())
        pos = self.gen.make_tensor("position_ids", "tensor(int64)", [None, None])
        self.assertEqual(pos[1].tolist(), list(range(8)))

    def test_float_and_bool(self):
        x = self.gen.make_tensor("pixel_values", "tensor(float)", [None, 3, 4])
        self.assertEqual(x.shape, (2, 3, 4))
        self.assertEqual(x.dtype, np.float32)
        flag = self.gen.make_tensor("cond", "tensor(bool)", [])
        self.assertEqual(flag.dtype, np.bool_)
        self.assertEqual(flag.shape, ())

    def test_unsupported_type(self):
        self.assertIsNone(self.gen.make_tensor("text", "tensor(string)", [1]))
        session = SimpleNamespace(get_inputs=lambda: [
            SimpleNamespace(name="x", type="tensor(float)", shape=[1, 4]),
            SimpleNamespace(name="text", type="tensor(string)", shape=[1]),
        ])
        self.assertIsNone(self.gen.generate(session))


class TestOnnxRuntimeEngine(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.dir = self._tmp.name
        self.model_path = os.path.join(self.dir, "mlp.onnx")
        onnx.save(mlp_model(), self.model_path)
        self.engine = OnnxRuntimeEngine(work_dir=self.dir, available_providers=["CPUExecutionProvider"])

    def tearDown(self):
        self._tmp.cleanup()

    def test_unknown_opt_level(self):
        with self.assertRaises(InvalidInput):
            OnnxRuntimeEngine(opt_level="turbo")

    def test_compile_load_predict(self):
        compiled = self.engine.compile(self.model_path)
        self.assertTrue(compiled.endswith("mlp.optimized.onnx"))
        self.assertTrue(os.path.exists(compiled))
        session = self.engine.load(compiled, ComputeUnits.CPU_ONLY)
        feed = {"x": np.ones((1, 4), dtype=np.float32)}
        out = self.engine.predict(session, feed)[0]
        np.testing.assert_allclose(out, np.array([[1.5, 0.5, 1.0, 2.0]], dtype=np.float32))

    def test_plan_unavailable_for_unreadable_artifact(self):
        missing = os.path.join(self.dir, "missing.ort")
        self.assertIsNone(self.engine.get_compute_plan(missing, ComputeUnits.CPU_ONLY))

    def test_end_to_end_profile(self):
        config = ProfileConfig(repetitions=2, output_dir=self.dir, diagnostics_dir=None)
        runner = ProfileRunner(self.engine, input_generator=SyntheticInputGenerator(), config=config)
        result = runner.run(self.model_path, device_selector=1, full_profile=True)
        self.assertTrue(result.plan_available)
        self.assertEqual(sorted(result.timings), ["compile", "load", "predict"])
        self.assertEqual(result.timings["predict"].count, 2)
        self.assertGreaterEqual(result.counts.total_operations, 1)
        self.assertEqual(result.counts.total_cpu, result.counts.total_operations)
        self.assertEqual(result.table.row_count(), result.counts.total_operations)
        self.assertAlmostEqual(sum(r["cost"] for r in result.table.records()), 1.0)
        self.assertEqual(len(result.written), 2)
        for path in result.written:
            self.assertTrue(os.path.exists(path))


if __name__ == "__main__":
    unittest.main()
