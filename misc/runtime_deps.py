from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable


@dataclass(frozen=True)
class RuntimeDeps:
    # core
    bottle_service: Any
    command_prefix: str
    prompt_timeout_seconds: float


@dataclass(frozen=True)
class RuntimeBootDeps:
    backfill_comment_counts_func: Callable
    broadcast_enabled: bool
    broadcast_loop_func: Callable
