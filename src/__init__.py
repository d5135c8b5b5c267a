# Render Agent - local render queue for command-line render engines
"""
This package drives a command-line render engine (Blender) from a desktop
application.

Architecture:
- Process Supervisor spawns one engine process per render attempt and
  streams its output line by line
- Progress Parser turns those lines into frame/sample/memory progress
- Queue Scheduler orders jobs by priority and dependencies and runs up to
  max_concurrent Render Sessions at once
- An HTTP service exposes the queue to the desktop UI
"""

__version__ = "0.1.0"
