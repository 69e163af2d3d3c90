import inspect
from collections.abc import Callable
from typing import Any


async def call_hook(hook: Callable[..., Any], *args: Any) -> Any:
    """Invoke a collaborator callback that may be sync or async."""
    result = hook(*args)
    if inspect.isawaitable(result):
        result = await result
    return result
