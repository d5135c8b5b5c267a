#!/usr/bin/env python3
"""
render-agent CLI entry point.

Usage:
    python -m src.render_agent service --port 9200
    python -m src.render_agent render --command "blender -b scene.blend -s 1 -e 10 -a"
"""

import sys
from .cli import main

if __name__ == "__main__":
    sys.exit(main())
