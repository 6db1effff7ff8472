"""
Backend-selection diagnostics: parse the annotated program log emitted by the
accelerator compiler and attach its ANE validation message to each row of the
operation table.

A statement looks like

    tensor<fp16, [1, 64]> conv_0 = conv(x = x, weight = w)[
        EstimatedRuntime = {"ane": 0.0012, "cpu": 0.0041},
        SelectedBackend = "ane",
        name = string("conv_0"),
        ValidationMessages = {"gpu": "Unsupported \\"dtype\\""}];

Statements end with ';'. Each field is extracted on its own; a field that
does not match takes its fallback value instead of failing the statement.

The join to the operation table is positional. The log carries no operation
number, so after dropping the header statement and up to five leading
constant declarations, diagnostic row i is paired with table row i. If the
two sequences diverge the messages land on the wrong operations.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import pandas as pd

from .config import DIAGNOSTICS_SUFFIX
from .errors import DiagnosticsUnavailable
from .flatten import VALIDATION_COLUMN
from .table import OperationTable

logger = logging.getLogger(__name__)

NOT_FOUND = "Not found"
STATEMENT_TERMINATOR = ";"
MARKER = " = "
NOISE_MARKER = "const"
MAX_NOISE_RECORDS = 5
VALIDATION_BACKEND = "ane"

_QUOTED = r'"((?:[^"\\]|\\.)*)"'

RE_OPCODE = re.compile(r'=\s*([A-Za-z_][\w.]*)\s*\(')
RE_RUNTIMES = re.compile(r'EstimatedRuntime\s*=\s*\{(.*?)\}', re.S)
RE_RUNTIME_PAIR = re.compile(r'"([^"]+)"\s*:\s*([-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?)')
RE_BACKEND = re.compile(r'SelectedBackend\s*=\s*(?:string\()?"([^"]*)"')
RE_NAME = re.compile(r'\bname\s*=\s*(?:string\()?' + _QUOTED)
RE_MESSAGES = re.compile(r'ValidationMessages\s*=\s*\{((?:[^{}"]|"(?:[^"\\]|\\.)*")*)\}', re.S)
RE_MESSAGE_PAIR = re.compile(r'"([^"]+)"\s*:\s*' + _QUOTED, re.S)


@dataclass
class DiagnosticRecord:
    operation_kind: str = NOT_FOUND
    runtimes: Dict[str, float] = field(default_factory=dict)
    selected_backend: str = NOT_FOUND
    name: Optional[str] = None
    validation_messages: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "operation": self.operation_kind,
            "runtimes": dict(self.runtimes),
            "selected_backend": self.selected_backend,
            "name": self.name if self.name is not None else "Unknown",
            "validation_messages": dict(self.validation_messages),
        }


def _unescape(s: str) -> str:
    return s.replace('\\"', '"').replace("\\\\", "\\")


def parse_segment(segment: str) -> DiagnosticRecord:
    rec = DiagnosticRecord()

    m = RE_OPCODE.search(segment)
    if m:
        rec.operation_kind = m.group(1)

    m = RE_RUNTIMES.search(segment)
    if m:
        for backend, value in RE_RUNTIME_PAIR.findall(m.group(1)):
            rec.runtimes[backend] = float(value)

    m = RE_BACKEND.search(segment)
    if m:
        rec.selected_backend = m.group(1)

    m = RE_NAME.search(segment)
    if m:
        rec.name = _unescape(m.group(1))

    m = RE_MESSAGES.search(segment)
    if m:
        for backend, msg in RE_MESSAGE_PAIR.findall(m.group(1)):
            rec.validation_messages[backend] = _unescape(msg)

    return rec


def parse(raw_text: str) -> List[DiagnosticRecord]:
    records = []
    for segment in raw_text.split(STATEMENT_TERMINATOR):
        if MARKER not in segment:
            continue
        records.append(parse_segment(segment))
    return records


def operation_records(records: List[DiagnosticRecord]) -> List[DiagnosticRecord]:
    """Drop the header statement, then up to five leading constant declarations."""
    remaining = list(records[1:])
    skipped = 0
    while remaining and skipped < MAX_NOISE_RECORDS and NOISE_MARKER in remaining[0].operation_kind:
        remaining.pop(0)
        skipped += 1
    return remaining


def frame(records: List[DiagnosticRecord]) -> pd.DataFrame:
    columns = ["operation", "runtimes", "selected_backend", "name", "validation_messages"]
    return pd.DataFrame([r.to_dict() for r in records], columns=columns)


def join(table: OperationTable, records: List[DiagnosticRecord]) -> OperationTable:
    diag = frame(operation_records(records))
    if len(diag) != table.row_count():
        logger.warning("diagnostics rows (%d) and operation rows (%d) differ; positional join may misattribute",
                       len(diag), table.row_count())

    messages = []
    for i in range(table.row_count()):
        if i < len(diag):
            msgs = diag.iloc[i]["validation_messages"] or {}
            messages.append(msgs.get(VALIDATION_BACKEND, ""))
        else:
            messages.append("")
    return table.with_column(VALIDATION_COLUMN, messages)


# ==================== Log source ====================
class DiagnosticsSource:
    def __init__(self, directory: Optional[str], suffix: str = DIAGNOSTICS_SUFFIX):
        self.directory = directory
        self.suffix = suffix

    def find_latest(self) -> Optional[str]:
        if not self.directory or not os.path.isdir(self.directory):
            return None
        candidates = [p for p in Path(self.directory).iterdir() if p.is_file() and p.name.endswith(self.suffix)]
        if not candidates:
            return None
        return str(max(candidates, key=lambda p: p.stat().st_mtime))

    def read_text(self, path: str) -> str:
        return Path(path).read_text(encoding="utf-8", errors="replace")

    def load(self) -> List[DiagnosticRecord]:
        path = self.find_latest()
        if path is None:
            raise DiagnosticsUnavailable(f"No '*{self.suffix}' diagnostics found in {self.directory!r}")
        try:
            text = self.read_text(path)
        except OSError as e:
            raise DiagnosticsUnavailable(f"Cannot read diagnostics {path}: {e}") from e
        records = parse(text)
        if not operation_records(records):
            raise DiagnosticsUnavailable(f"No usable diagnostic statements in {path}")
        logger.info("parsed %d diagnostic statements from %s", len(records), path)
        return records
