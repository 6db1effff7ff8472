import os
from dataclasses import dataclass, field
from typing import Optional

# ==================== Configuration ====================
DEFAULT_REPETITIONS = int(os.environ.get("PROFILER_REPETITIONS", "10"))
OUTPUT_DIR = os.environ.get("PROFILER_OUTPUT_DIR") or os.getcwd()
DIAGNOSTICS_DIR = os.environ.get("PROFILER_DIAGNOSTICS_DIR") or None
DIAGNOSTICS_SUFFIX = os.environ.get("PROFILER_DIAGNOSTICS_SUFFIX", ".mil")
OPT_LEVEL = os.environ.get("PROFILER_OPT_LEVEL", "basic")

PROFILER_HOST = os.environ.get("PROFILER_HOST", "0.0.0.0")
PROFILER_PORT = int(os.environ.get("PROFILER_PORT", "7070"))

COMPUTE_PLAN_FILE = "compute_plan.json"
OPERATION_TABLE_FILE = "compute_plan_operation_table.json"

SOURCE_SUFFIX = ".onnx"
COMPILED_SUFFIX = ".ort"

OPT_LEVELS = ("basic", "extended", "all")


@dataclass
class ProfileConfig:
    repetitions: int = DEFAULT_REPETITIONS
    output_dir: str = field(default_factory=lambda: OUTPUT_DIR)
    diagnostics_dir: Optional[str] = DIAGNOSTICS_DIR
    diagnostics_suffix: str = DIAGNOSTICS_SUFFIX
    source_suffix: str = SOURCE_SUFFIX
    compiled_suffix: str = COMPILED_SUFFIX

    def artifact_path(self, file_name: str) -> str:
        return os.path.abspath(os.path.join(self.output_dir, file_name))
