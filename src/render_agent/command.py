"""
Command assembly helpers for Blender invocations.

Turns a flat parameter set into one command string, reads the declared
frame range back out of a command, and rewrites the output path when the
first rendered file would overwrite an existing one.
"""
import logging
import os
import re
import shlex
import subprocess
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


# (parameter key, flag) in the order Blender must see them: the output and
# frame settings have to precede -a / -f because Blender applies arguments
# left to right.
_VALUE_FLAGS: List[Tuple[str, str]] = [
    ("engine", "-E"),
    ("output_format", "-F"),
    ("output_path", "-o"),
    ("scene", "-S"),
    ("frame_start", "-s"),
    ("frame_end", "-e"),
    ("frame_jump", "-j"),
    ("threads", "-t"),
]

_TRAILING_FLAGS: List[Tuple[str, str]] = [
    ("resolution_x", "--resolution-x"),
    ("resolution_y", "--resolution-y"),
    ("resolution_percentage", "--resolution-percentage"),
    ("samples", "--cycles-samples"),
]

_FORMAT_EXTENSIONS = {
    "JPEG": ".jpg",
    "OPEN_EXR": ".exr",
    "OPEN_EXR_MULTILAYER": ".exr",
    "TIFF": ".tif",
}

_OUTPUT_RE = re.compile(r'(?<!\S)-o\s+("[^"]*"|\S+)')
_FORMAT_RE = re.compile(r"(?<!\S)-F\s+(\S+)")
_START_RE = re.compile(r"(?<!\S)(?:-s|--frame-start)[\s=]+(-?\d+)")
_END_RE = re.compile(r"(?<!\S)(?:-e|--frame-end)[\s=]+(-?\d+)")
_SINGLE_RE = re.compile(r"(?<!\S)(?:-f|--render-frame)[\s=]+(-?\d+)")


def quote_arg(value: str) -> str:
    text = str(value)
    if not text or any(ch.isspace() for ch in text) or '"' in text:
        return '"' + text.replace('"', '\\"') + '"'
    return text


def assemble_command(engine_path: str, parameters: Dict[str, Any]) -> str:
    """Build a background-mode Blender command string from parameters."""
    if not engine_path:
        raise ValueError("engine_path is required")

    parts: List[str] = [quote_arg(engine_path), "-b"]

    blend_file = parameters.get("blend_file")
    if blend_file:
        parts.append(quote_arg(blend_file))

    for key, flag in _VALUE_FLAGS:
        value = parameters.get(key)
        if value is None or value == "":
            continue
        parts += [flag, quote_arg(str(value))]

    if parameters.get("use_extension") is not None:
        parts += ["-x", "1" if parameters["use_extension"] else "0"]

    if parameters.get("render_frame") is not None:
        parts += ["-f", str(int(parameters["render_frame"]))]
    elif parameters.get("render_animation"):
        parts.append("-a")

    trailing: List[str] = []
    for key, flag in _TRAILING_FLAGS:
        value = parameters.get(key)
        if value is None or value == "":
            continue
        trailing += [flag, str(value)]

    for extra in parameters.get("extra_args") or []:
        extra_text = str(extra).strip()
        if extra_text:
            trailing.append(extra_text)

    if trailing:
        parts.append("--")
        parts += trailing

    return " ".join(parts)


def split_command(command: str) -> List[str]:
    """Split a command string into argv without going through a shell."""
    if sys.platform == "win32":
        argv = shlex.split(command, posix=False)
        return [arg[1:-1] if len(arg) >= 2 and arg[0] == arg[-1] == '"' else arg for arg in argv]
    return shlex.split(command)


def join_command(argv: List[str]) -> str:
    if sys.platform == "win32":
        return subprocess.list2cmdline(argv)
    return shlex.join(argv)


def frame_range_from_command(command: str) -> Tuple[int, int]:
    """
    Return the declared (start, end) frame range of a command.

    A single-frame render (-f N) yields (N, N); missing flags yield (1, 1).
    """
    single = _SINGLE_RE.search(command)
    start = _START_RE.search(command)
    end = _END_RE.search(command)

    if start and end:
        return int(start.group(1)), int(end.group(1))
    if single:
        frame = int(single.group(1))
        return frame, frame
    return 1, 1


def _output_extension(command: str) -> str:
    format_match = _FORMAT_RE.search(command)
    if not format_match:
        return ".png"
    fmt = format_match.group(1).strip('"').upper()
    return _FORMAT_EXTENSIONS.get(fmt, f".{fmt.lower()}")


def _first_frame(command: str) -> Optional[int]:
    single = _SINGLE_RE.search(command)
    if single:
        return int(single.group(1))
    start = _START_RE.search(command)
    if start:
        return int(start.group(1))
    return None


def ensure_unique_output(command: str) -> str:
    """
    Rewrite `-o <base>` so the first frame does not overwrite an existing file.

    The predicted path is `<base><frame:04d><ext>`; while it exists a numeric
    suffix is appended to the base (`<base>_1`, `<base>_2`, ...).
    """
    output_match = _OUTPUT_RE.search(command)
    frame = _first_frame(command)
    if not output_match or frame is None:
        return command

    base = output_match.group(1).strip('"')
    padded = f"{frame:04d}"
    extension = _output_extension(command)

    if not Path(f"{base}{padded}{extension}").exists():
        return command

    separator = "" if base.endswith(("_", os.sep, "/")) else "_"
    counter = 1
    while True:
        new_base = f"{base}{separator}{counter}"
        if not Path(f"{new_base}{padded}{extension}").exists():
            break
        counter += 1

    new_output = f'-o "{new_base}"'
    logger.info(f"[RENDER-OUTPUT] {base}{padded}{extension} exists, rendering to {new_output}")
    return command[:output_match.start()] + new_output + command[output_match.end():]
