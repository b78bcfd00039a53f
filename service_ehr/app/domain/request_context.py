"""
Request-scoped credential propagation.

Each inbound request gets its own ``RequestContext`` stored in a
``ContextVar``. asyncio tasks copy the current context when they are
created, so every coroutine spawned while serving a request sees that
request's record and never another one's. The record itself is mutable so
that values set deeper in the call stack (e.g. by the authentication
dependency) are visible to the rest of the request.
"""

from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterator, Optional, TypeVar

from shared.logging import clear_context

T = TypeVar("T")


@dataclass
class RequestContext:
    """Credentials of the caller currently being served."""

    token: Optional[str] = None
    user: Optional[Dict[str, Any]] = None


_current_context: ContextVar[Optional[RequestContext]] = ContextVar("ehr_request_context", default=None)


@contextmanager
def request_scope() -> Iterator[RequestContext]:
    """Open a fresh, isolated scope for the duration of the block."""
    context = RequestContext()
    reset_token = _current_context.set(context)
    try:
        yield context
    finally:
        _current_context.reset(reset_token)


async def run(fn: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
    """Await ``fn`` inside a fresh scope."""
    with request_scope():
        return await fn(*args, **kwargs)


def get_context() -> Optional[RequestContext]:
    return _current_context.get()


def set_token(token: Optional[str]) -> None:
    context = _current_context.get()
    if context is not None:
        context.token = token


def get_token() -> Optional[str]:
    context = _current_context.get()
    return context.token if context is not None else None


def set_user(user: Optional[Dict[str, Any]]) -> None:
    context = _current_context.get()
    if context is not None:
        context.user = user


def get_user() -> Optional[Dict[str, Any]]:
    context = _current_context.get()
    return context.user if context is not None else None


def get_auth_header() -> Dict[str, str]:
    """Return the bearer header for the active caller, or ``{}``."""
    token = get_token()
    if not token:
        return {}
    return {"Authorization": f"Bearer {token}"}


class RequestContextMiddleware:
    """ASGI middleware opening one request scope per HTTP request."""

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        try:
            with request_scope():
                await self.app(scope, receive, send)
        finally:
            clear_context()
