#!/usr/bin/env python3
"""PyInstaller entrypoint for render-agent."""

from src.render_agent.cli import main


if __name__ == "__main__":
    raise SystemExit(main())
