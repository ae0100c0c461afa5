from __future__ import annotations

import functools
import inspect
import logging
from collections.abc import Callable

from fastapi import FastAPI

log = logging.getLogger("clinicdesk.lifecycle")


def _logged(event: str, func: Callable) -> Callable:
    name = getattr(func, "__qualname__", repr(func))

    if inspect.iscoroutinefunction(func):

        @functools.wraps(func)
        async def run_async():
            log.info("running %s hook %s", event, name)
            await func()

        return run_async

    @functools.wraps(func)
    def run():
        log.info("running %s hook %s", event, name)
        func()

    return run


def _register(app: FastAPI, event: str) -> Callable[[Callable], Callable]:
    hooks = app.router.on_startup if event == "startup" else app.router.on_shutdown

    def decorator(func: Callable) -> Callable:
        hooks.append(_logged(event, func))
        return func

    return decorator


def register_startup(app: FastAPI) -> Callable[[Callable], Callable]:
    """
    Decorator form of a startup hook, in place of ``@app.on_event``. Each run
    is logged under the hook's name. The decorated function is returned as is.
    """
    return _register(app, "startup")


def register_shutdown(app: FastAPI) -> Callable[[Callable], Callable]:
    return _register(app, "shutdown")
