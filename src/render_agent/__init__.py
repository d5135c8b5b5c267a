"""
Render Agent

This package contains the execution side of the desktop render queue:

- Process supervision and platform-specific process-tree termination
- Incremental parsing of engine output into progress snapshots
- The dependency- and priority-aware queue scheduler
- A local HTTP service and CLI on top of the scheduler
"""

__all__ = [
    "__version__",
]

__version__ = "0.1.0"
