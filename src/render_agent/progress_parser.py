"""
Incremental parser for Blender command-line output.

`parse_line` is a pure function: it takes the current `ParserContext` and
one output line and returns the next context plus the events that line
produced. `ProgressParser` wraps it for a single render session.

Typical engine lines:

    Fra:12 Mem:512.00M (Peak 1.20G) | Time:00:04.21 | Rendering 1 / 64 samples
    Fra:12 Mem:512.00M (Peak 1.20G) | Time:00:04.21 | Sample 30/200
    Fra:12 Mem:640.12M (Peak 1.20G) | Time:00:09.02 | Compositing | Tile 3-4
    Blender quit
"""

import re
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Tuple, Union

from .models import ProgressSnapshot

_FRAME_RE = re.compile(r"Fra:\s*(\d+)")
_MEMORY_RE = re.compile(r"Mem:\s*([\d.]+)([MG]).*?Peak\s+([\d.]+)([MG])")
_SAMPLE_RE = re.compile(r"Sample\s+(\d+)\s*/\s*(\d+)")
_COMPOSITING_RE = re.compile(r"Compositing\s*\|\s*([^|]*)")
_QUIT_RE = re.compile(r"\bBlender quit\b")

COMPOSITING_MARKER = "Compositing"

CRITICAL_PHRASES = (
    "no camera found in scene",
    "process exited unexpectedly",
    "failed to start blender",
    "invalid command",
    "segmentation fault",
    "access violation",
    "fatal error",
    "exception",
    "terminated unexpectedly",
    "possible crash",
)


def is_critical_error(text: str) -> bool:
    """True if the text contains one of the fatal engine phrases."""
    lowered = text.lower()
    return any(phrase in lowered for phrase in CRITICAL_PHRASES)


def frame_percentage(current_frame: int, start_frame: int, end_frame: int) -> float:
    span = max(end_frame - start_frame, 1)
    percent = (current_frame - start_frame) / span * 100.0
    return max(0.0, min(100.0, percent))


def to_megabytes(value: float, unit: str) -> float:
    return value * 1024.0 if unit == "G" else value


# ======================== Events ========================

@dataclass(frozen=True)
class ProgressUpdate:
    """Partial snapshot fields changed by one line."""
    fields: Dict[str, Any]


@dataclass(frozen=True)
class ErrorDetected:
    """Error text seen in the output; `critical` marks fatal phrases."""
    message: str
    critical: bool
    stream: str = "stdout"


@dataclass(frozen=True)
class LogNoise:
    """Benign stderr text, forwarded for display only."""
    message: str


@dataclass(frozen=True)
class QuitHint:
    """The engine announced it is quitting. Advisory only."""
    line: str


ParserEvent = Union[ProgressUpdate, ErrorDetected, LogNoise, QuitHint]


@dataclass(frozen=True)
class ParserContext:
    start_frame: int = 1
    end_frame: int = 1
    snapshot: ProgressSnapshot = field(default_factory=ProgressSnapshot)
    quit_seen: bool = False

    @classmethod
    def initial(cls, start_frame: int = 1, end_frame: int = 1) -> "ParserContext":
        return cls(
            start_frame=start_frame,
            end_frame=end_frame,
            snapshot=ProgressSnapshot.for_range(start_frame, end_frame),
        )


# ======================== Parsing ========================

def _progress_fields(context: ParserContext, line: str) -> Dict[str, Any]:
    changes: Dict[str, Any] = {}

    frame_match = _FRAME_RE.search(line)
    if frame_match:
        current = int(frame_match.group(1))
        changes["current_frame"] = current
        changes["total_frames"] = context.end_frame
        changes["percentage"] = frame_percentage(current, context.start_frame, context.end_frame)

    mem_match = _MEMORY_RE.search(line)
    if mem_match:
        changes["memory_mb"] = to_megabytes(float(mem_match.group(1)), mem_match.group(2))
        changes["peak_memory_mb"] = to_megabytes(float(mem_match.group(3)), mem_match.group(4))

    sample_match = _SAMPLE_RE.search(line)
    if sample_match:
        changes["current_sample"] = int(sample_match.group(1))
        changes["total_samples"] = int(sample_match.group(2))

    if COMPOSITING_MARKER in line:
        changes["in_compositing"] = True
        comp_match = _COMPOSITING_RE.search(line)
        if comp_match:
            changes["compositing_operation"] = comp_match.group(1).strip()

    return changes


def parse_line(
    context: ParserContext,
    line: str,
    stream: str = "stdout",
) -> Tuple[ParserContext, List[ParserEvent]]:
    """Advance the parser by one output line."""
    events: List[ParserEvent] = []
    text = line.rstrip("\r\n")
    if not text.strip():
        return context, events

    if stream == "stderr":
        if is_critical_error(text):
            events.append(ErrorDetected(text, critical=True, stream=stream))
        else:
            events.append(LogNoise(text))
        return context, events

    changes = _progress_fields(context, text)
    if changes:
        context = replace(context, snapshot=replace(context.snapshot, **changes))
        events.append(ProgressUpdate(changes))

    lowered = text.lower()
    if "error" in lowered or "exception" in lowered:
        events.append(ErrorDetected(text, critical=is_critical_error(text), stream=stream))

    if _QUIT_RE.search(text) and not context.quit_seen:
        context = replace(context, quit_seen=True)
        events.append(QuitHint(text))

    return context, events


class ProgressParser:
    """Stateful wrapper over `parse_line` owned by one render session."""

    def __init__(self, start_frame: int = 1, end_frame: int = 1):
        self.context = ParserContext.initial(start_frame, end_frame)

    @property
    def snapshot(self) -> ProgressSnapshot:
        return self.context.snapshot

    def feed(self, line: str, stream: str = "stdout") -> List[ParserEvent]:
        self.context, events = parse_line(self.context, line, stream)
        return events

    def feed_many(self, lines: List[str], stream: str = "stdout") -> List[ParserEvent]:
        events: List[ParserEvent] = []
        for line in lines:
            events.extend(self.feed(line, stream))
        return events

