"""
Locate Blender executables and query their version.
"""
import asyncio
import logging
import os
import re
import shutil
import sys
from pathlib import Path
from typing import Iterable, List, Optional

from .errors import SpawnError

logger = logging.getLogger(__name__)

_VERSION_RE = re.compile(r"Blender\s+([\d.]+)")


def _dedupe_existing(paths: Iterable[Path]) -> List[Path]:
    seen = set()
    out: List[Path] = []
    for p in paths:
        rp = Path(os.path.expandvars(str(p.expanduser())))
        key = str(rp)
        if sys.platform == "win32":
            key = key.lower()
        if key in seen:
            continue
        if rp.is_file():
            seen.add(key)
            out.append(rp)
    return out


def discover_engine_candidates(platform: Optional[str] = None) -> List[Path]:
    """
    Return plausible Blender executables in priority order.
    This does not log; it only discovers.
    """
    platform = platform or sys.platform
    candidates: List[Path] = []

    # 1) Explicit env var
    env_path = os.environ.get("BLENDER_PATH")
    if env_path:
        candidates.append(Path(env_path))

    # 2) PATH
    for exe in ("blender", "blender.exe"):
        found = shutil.which(exe)
        if found:
            candidates.append(Path(found))

    # 3) OS defaults
    if platform == "win32":
        roots = []
        for env in ("ProgramW6432", "ProgramFiles", "ProgramFiles(x86)"):
            value = os.environ.get(env)
            if value:
                roots.append(Path(value))
        if not roots:
            roots = [Path(r"C:\Program Files")]

        # Typical: C:\Program Files\Blender Foundation\Blender 4.2\blender.exe
        for root in roots:
            foundation = root / "Blender Foundation"
            if foundation.exists():
                candidates.extend(sorted(foundation.glob("*/blender.exe"), reverse=True))

    elif platform == "darwin":
        for apps in (Path("/Applications"), Path.home() / "Applications"):
            if apps.exists():
                candidates.extend(sorted(apps.glob("Blender*.app/Contents/MacOS/Blender"), reverse=True))

    else:
        for directory in (Path("/usr/bin"), Path("/usr/local/bin"), Path.home() / ".local" / "bin"):
            candidates.append(directory / "blender")
        opt = Path("/opt")
        if opt.exists():
            candidates.extend(sorted(opt.glob("blender*/blender"), reverse=True))

    return _dedupe_existing(candidates)


def resolve_engine_path(engine_path: Optional[str] = None) -> Optional[str]:
    """Resolve the engine path from explicit config, env or auto-discovery."""
    if engine_path and engine_path.strip():
        p = Path(os.path.expandvars(os.path.expanduser(engine_path.strip())))
        if p.exists():
            logger.info(f"Using Blender executable: {p}")
            return str(p)
        logger.warning(f"Configured Blender path does not exist: {p}")

    for candidate in discover_engine_candidates():
        logger.info(f"Auto-located Blender: {candidate}")
        return str(candidate)

    return None


def parse_engine_version(output: str) -> str:
    match = _VERSION_RE.search(output)
    return match.group(1) if match else "Unknown"


async def query_engine_version(engine_path: str, timeout: float = 10.0) -> str:
    """Run `<engine> --version` and return the reported version string."""
    try:
        process = await asyncio.create_subprocess_exec(
            engine_path,
            "--version",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except OSError as e:
        raise SpawnError(f"Failed to start Blender: {e}", command=engine_path) from e

    try:
        stdout, _ = await asyncio.wait_for(process.communicate(), timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise SpawnError(f"Blender --version did not finish within {timeout}s", command=engine_path)

    if process.returncode != 0:
        raise SpawnError(
            f"Blender --version exited with code {process.returncode}",
            command=engine_path,
        )

    return parse_engine_version(stdout.decode("utf-8", errors="replace"))
