#!/usr/bin/env python3
"""
CLI for the Render Agent.

Stable entrypoint that can be packaged as an exe (`render-agent.exe`),
while still being runnable in dev via:

  python -m src.render_agent <command> [args...]

Commands:
  service   Run the HTTP service that owns the render queue
  render    Render one command locally and print progress (no queue)
  engine    Locate the Blender executable and print its version
  add, list, cancel, start, stop, status, history
            Drive a running service over HTTP
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


def _setup_logging(log_root: str, log_name: str, level: int = logging.INFO) -> None:
    log_dir = Path(log_root)
    log_dir.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(log_dir / log_name, encoding="utf-8"),
        ],
        force=True,
    )


def _parse_params(items: List[str]) -> Dict[str, Any]:
    """KEY=VALUE pairs; values are decoded as JSON when possible."""
    params: Dict[str, Any] = {}
    for item in items:
        key, sep, raw = item.partition("=")
        if not sep or not key:
            raise ValueError(f"Expected KEY=VALUE, got: {item}")
        try:
            params[key] = json.loads(raw)
        except json.JSONDecodeError:
            params[key] = raw
    return params


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False))


# ======================== Local commands ========================

def _cmd_service(args: argparse.Namespace) -> int:
    from .config import AgentConfig
    from .service import run_service

    config = AgentConfig.load(args.config)
    _setup_logging(config.log_root, "service.log")

    run_service(config, host=args.host, port=args.port)
    return 0


def _resolve_render_command(args: argparse.Namespace, engine_path: Optional[str]) -> str:
    from .command import assemble_command, join_command

    if args.argv:
        argv = args.argv[1:] if args.argv[0] == "--" else args.argv
        if argv:
            return join_command(argv)

    if args.blend_file or args.param:
        if not engine_path:
            raise ValueError("Blender executable not found; pass --engine or set BLENDER_PATH")
        params = _parse_params(args.param or [])
        if args.blend_file:
            params["blend_file"] = args.blend_file
        params.setdefault("render_animation", True)
        return assemble_command(engine_path, params)

    raise ValueError("Nothing to render: give --blend-file/--param or a command after --")


async def _render_once(command: str, terminate_timeout: float) -> int:
    from .command import ensure_unique_output
    from .events import EventBus
    from .process_supervisor import ProcessSupervisor
    from .session import RenderSession

    supervisor = ProcessSupervisor(terminate_timeout=terminate_timeout)
    session = RenderSession("local", ensure_unique_output(command), supervisor, EventBus())

    def _on_progress(event):
        snapshot = session.snapshot
        line = f"Frame {snapshot.current_frame}/{snapshot.total_frames} ({snapshot.percentage:.1f}%)"
        if snapshot.total_samples:
            line += f" sample {snapshot.current_sample}/{snapshot.total_samples}"
        if snapshot.peak_memory_mb:
            line += f" peak {snapshot.peak_memory_mb:.1f}M"
        logger.info(line)

    def _on_error(event):
        level = logging.ERROR if event.data.get("critical") else logging.WARNING
        logger.log(level, event.data.get("message", ""))

    session.subscribe("progress", _on_progress)
    session.subscribe("error", _on_error)

    if await session.start() is None:
        return 1

    try:
        outcome = await session.wait()
    except asyncio.CancelledError:
        await session.stop()
        raise

    if outcome.succeeded:
        logger.info(f"Render complete in {outcome.duration:.1f}s")
        return 0

    logger.error(f"Render failed: {outcome.error or 'stopped'}")
    return 1


def _cmd_render(args: argparse.Namespace) -> int:
    from .config import AgentConfig
    from .discovery import resolve_engine_path

    config = AgentConfig.load(args.config)
    _setup_logging(config.log_root, "render.log")

    try:
        command = _resolve_render_command(args, resolve_engine_path(args.engine or config.engine.engine_path))
    except ValueError as e:
        logger.error(str(e))
        return 2

    try:
        return asyncio.run(_render_once(command, config.queue.terminate_timeout))
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")
        return 130


def _cmd_engine(args: argparse.Namespace) -> int:
    from .config import AgentConfig
    from .discovery import discover_engine_candidates, query_engine_version, resolve_engine_path
    from .errors import SpawnError

    config = AgentConfig.load(args.config)
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s - %(message)s")

    if args.all:
        for candidate in discover_engine_candidates():
            print(candidate)
        return 0

    engine_path = resolve_engine_path(args.engine or config.engine.engine_path)
    if engine_path is None:
        print("Blender executable not found")
        return 1

    try:
        version = asyncio.run(query_engine_version(engine_path, timeout=config.engine.version_timeout))
    except SpawnError as e:
        print(f"{engine_path}: {e.message}")
        return 1

    print(f"{engine_path} (Blender {version})")
    return 0


# ======================== Remote commands ========================

def _client(args: argparse.Namespace):
    from .client import RenderQueueClient
    return RenderQueueClient(args.url)


def _remote(func):
    """Run a client call, turning HTTP failures into exit code 1."""
    def wrapper(args: argparse.Namespace) -> int:
        import requests

        logging.basicConfig(level=logging.INFO, format="%(levelname)s - %(message)s")
        try:
            return func(args)
        except requests.HTTPError as e:
            detail = e.response.text if e.response is not None else str(e)
            logger.error(f"Request failed: {detail}")
            return 1
        except requests.RequestException as e:
            logger.error(f"Cannot connect to Render Agent at {args.url}: {e}")
            return 1
    return wrapper


@_remote
def _cmd_add(args: argparse.Namespace) -> int:
    try:
        params = _parse_params(args.param or [])
    except ValueError as e:
        logger.error(str(e))
        return 2
    if args.blend_file:
        params["blend_file"] = args.blend_file
    if params:
        params.setdefault("render_animation", True)

    if not args.command_string and not params:
        logger.error("Give --command or --blend-file/--param")
        return 2

    job = _client(args).add_job(
        command=args.command_string,
        parameters=params or None,
        name=args.name,
        priority=args.priority,
        dependencies=args.depends_on or [],
        scheduled_time=datetime.fromisoformat(args.at) if args.at else None,
    )
    print(job["job_id"])
    return 0


@_remote
def _cmd_list(args: argparse.Namespace) -> int:
    for job in _client(args).list_jobs(args.status):
        progress = job.get("progress") or {}
        held = " (held)" if job.get("held") else ""
        print(
            f"{job['job_id']}  {job['status']:<9}{held}  p={job['priority']:<3} "
            f"{progress.get('percentage', 0.0):5.1f}%  {job['name']}"
        )
    return 0


@_remote
def _cmd_cancel(args: argparse.Namespace) -> int:
    job = _client(args).cancel_job(args.job_id)
    print(f"{job['job_id']} {job['status']}")
    return 0


@_remote
def _cmd_start(args: argparse.Namespace) -> int:
    _print_json(_client(args).start_queue())
    return 0


@_remote
def _cmd_stop(args: argparse.Namespace) -> int:
    _print_json(_client(args).stop_queue())
    return 0


@_remote
def _cmd_status(args: argparse.Namespace) -> int:
    _print_json(_client(args).get_status())
    return 0


@_remote
def _cmd_history(args: argparse.Namespace) -> int:
    client = _client(args)
    if args.clear:
        client.clear_history()
        return 0
    for record in client.get_history(args.limit):
        print(
            f"{record['endTime']}  {record['status']:<9} {record['duration']:8.1f}s  "
            f"{record['name']}" + (f"  ({record['error']})" if record.get("error") else "")
        )
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    from .client import DEFAULT_SERVICE_URL

    parser = argparse.ArgumentParser(
        prog="render-agent",
        description="Local render queue and process supervisor for Blender",
    )
    parser.add_argument("--config", default=None, help="Path to a JSON config file")
    parser.add_argument("--url", default=DEFAULT_SERVICE_URL, help="Service URL for queue commands")

    subparsers = parser.add_subparsers(dest="command")

    service_parser = subparsers.add_parser("service", help="Run the render queue HTTP service")
    service_parser.add_argument("--host", default=None)
    service_parser.add_argument("--port", type=int, default=None)
    service_parser.set_defaults(func=_cmd_service)

    render_parser = subparsers.add_parser("render", help="Render once locally and report progress")
    render_parser.add_argument("--engine", default=None, help="Blender executable")
    render_parser.add_argument("--blend-file", default=None)
    render_parser.add_argument("--param", action="append", metavar="KEY=VALUE")
    render_parser.add_argument("argv", nargs=argparse.REMAINDER, help="Full command after --")
    render_parser.set_defaults(func=_cmd_render)

    engine_parser = subparsers.add_parser("engine", help="Locate Blender and print its version")
    engine_parser.add_argument("--engine", default=None)
    engine_parser.add_argument("--all", action="store_true", help="List every candidate found")
    engine_parser.set_defaults(func=_cmd_engine)

    add_parser = subparsers.add_parser("add", help="Queue a render job")
    add_parser.add_argument("--command", dest="command_string", default=None)
    add_parser.add_argument("--blend-file", default=None)
    add_parser.add_argument("--param", action="append", metavar="KEY=VALUE")
    add_parser.add_argument("--name", default="")
    add_parser.add_argument("--priority", type=int, default=None)
    add_parser.add_argument("--depends-on", action="append", metavar="JOB_ID")
    add_parser.add_argument("--at", default=None, help="ISO start time")
    add_parser.set_defaults(func=_cmd_add)

    list_parser = subparsers.add_parser("list", help="List queued jobs")
    list_parser.add_argument("--status", default=None)
    list_parser.set_defaults(func=_cmd_list)

    cancel_parser = subparsers.add_parser("cancel", help="Stop a running job")
    cancel_parser.add_argument("job_id")
    cancel_parser.set_defaults(func=_cmd_cancel)

    subparsers.add_parser("start", help="Start queue processing").set_defaults(func=_cmd_start)
    subparsers.add_parser("stop", help="Stop queue processing").set_defaults(func=_cmd_stop)
    subparsers.add_parser("status", help="Show queue status").set_defaults(func=_cmd_status)

    history_parser = subparsers.add_parser("history", help="Show render history")
    history_parser.add_argument("--limit", type=int, default=20)
    history_parser.add_argument("--clear", action="store_true")
    history_parser.set_defaults(func=_cmd_history)

    args = parser.parse_args(argv)
    if not getattr(args, "command", None):
        parser.print_help()
        return 1

    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
