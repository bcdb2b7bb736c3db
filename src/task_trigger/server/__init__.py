"""FastAPI server adapter for task-trigger.

This module exposes a REST API over a task library.

Design intent:
- Keep dispatch logic in `task_trigger.dispatcher`
- Keep server-specific concerns (routing, auth, error mapping) here
"""

from __future__ import annotations

__all__ = ["create_app"]

from task_trigger.server.app import create_app
