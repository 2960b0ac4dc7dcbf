from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import ParamSpec, TypeVar

from tenacity import RetryCallState

P = ParamSpec("P")
R = TypeVar("R")

# tenacity before / after / before_sleep hook; may be sync or async.
type RetryHook = Callable[[RetryCallState], Awaitable[None] | None]
