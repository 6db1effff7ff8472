#!/usr/bin/env python3

import argparse
import logging
import sys

from . import __version__
from .config import DEFAULT_REPETITIONS, DIAGNOSTICS_DIR, DIAGNOSTICS_SUFFIX, OPT_LEVEL, OPT_LEVELS, OUTPUT_DIR, ProfileConfig
from .devices import DEVICE_SELECTORS
from .errors import InvalidInput, ProfilerError
from .runner import ProfileRunner
from .timing import STAT_OPTIONS


def build_parser() -> argparse.ArgumentParser:
    units_help = ", ".join(f"{k}={v}" for k, v in DEVICE_SELECTORS.items())
    ap = argparse.ArgumentParser(
        prog="plan-profiler",
        description="Profile an ONNX model: compile/load/predict timings + per-operation compute plan table",
    )
    ap.add_argument("--model", required=True, help="Path to model (.onnx source | .ort precompiled)")
    ap.add_argument("--device", type=int, default=0, help=f"Compute units ({units_help})")
    ap.add_argument("--full", action="store_true", help="Also time predictions and synthesize per-op timeline")
    ap.add_argument("--repetitions", type=int, default=DEFAULT_REPETITIONS, help="Samples per phase")
    ap.add_argument("--out-dir", type=str, default=OUTPUT_DIR, help="Directory for compute_plan*.json")
    ap.add_argument("--diagnostics-dir", type=str, default=DIAGNOSTICS_DIR,
                    help="Directory holding backend diagnostic logs (latest one is joined)")
    ap.add_argument("--diagnostics-suffix", type=str, default=DIAGNOSTICS_SUFFIX)
    ap.add_argument("--opt-level", choices=list(OPT_LEVELS), default=OPT_LEVEL)
    ap.add_argument("--stat", choices=list(STAT_OPTIONS), default="median", help="Figure printed per phase")
    ap.add_argument("--batch", type=int, default=1, help="Batch size for synthetic inputs")
    ap.add_argument("--seq", type=int, default=128, help="Length used for dynamic non-batch dims")
    ap.add_argument("-v", "--verbose", action="store_true")
    ap.add_argument("-V", "--version", action="version", version=f"%(prog)s {__version__}")
    return ap


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format="%(levelname)s %(name)s: %(message)s")

    from .onnx_engine import OnnxRuntimeEngine, SyntheticInputGenerator

    config = ProfileConfig(
        repetitions=args.repetitions,
        output_dir=args.out_dir,
        diagnostics_dir=args.diagnostics_dir,
        diagnostics_suffix=args.diagnostics_suffix,
    )
    try:
        engine = OnnxRuntimeEngine(work_dir=args.out_dir, opt_level=args.opt_level)
        runner = ProfileRunner(
            engine,
            input_generator=SyntheticInputGenerator(batch=args.batch, seq=args.seq),
            config=config,
            sink=lambda msg: print(f"[info] {msg}"),
        )
        result = runner.run(args.model, device_selector=args.device, full_profile=args.full)
    except InvalidInput as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        return 2
    except ProfilerError as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        return 1

    for phase, samples in result.timings.items():
        print(f"[info] {phase:<8} {args.stat}: {samples.pick(args.stat):.3f} ms")
    c = result.counts
    print(f"[info] operations={c.total_operations} cpu={c.total_cpu} gpu={c.total_gpu} ane={c.total_ane}")
    if not result.plan_available:
        print("[warn] compute plan unavailable; table is empty")
    for path in result.written:
        print(f"[done] {path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
