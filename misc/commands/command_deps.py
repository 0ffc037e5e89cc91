from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from typing import Callable


def _default_false(*args, **kwargs) -> bool:
    return False


@dataclass(frozen=True)
class CommandDeps:
    # Core/shared
    send_chunked: Callable | None = None
    command_prefix: str = "!"
    prompt_timeout_seconds: float = 30

    # Bottles
    bottle_service: Any = None
    make_confirm: Callable | None = None


@dataclass(frozen=True)
class CommandGates:
    user_is_operator: Callable[[Any], bool] = _default_false
