"""
Unit tests for request-scoped credential propagation.
"""

import asyncio

import pytest

from service_ehr.app.domain import request_context
from service_ehr.app.domain.request_context import (
    RequestContextMiddleware,
    get_auth_header,
    get_context,
    get_token,
    get_user,
    request_scope,
    set_token,
    set_user,
)


class TestRequestContext:
    """Test cases for the request context."""

    def test_accessors_outside_scope_degrade_to_no_value(self):
        """Outside any scope getters return None and setters are no-ops."""
        set_token("ignored")
        set_user({"id": "ignored"})

        assert get_context() is None
        assert get_token() is None
        assert get_user() is None
        assert get_auth_header() == {}

    def test_auth_header_from_token(self):
        with request_scope():
            assert get_auth_header() == {}
            set_token("abc")
            assert get_auth_header() == {"Authorization": "Bearer abc"}

        assert get_token() is None

    def test_nested_scope_is_isolated(self):
        with request_scope():
            set_token("outer")
            with request_scope():
                assert get_token() is None
                set_token("inner")
            assert get_token() == "outer"

    @pytest.mark.asyncio
    async def test_run_opens_fresh_scope(self):
        async def handler():
            set_token("t1")
            set_user({"id": "u1"})
            return get_token(), get_user()

        token, user = await request_context.run(handler)

        assert token == "t1"
        assert user == {"id": "u1"}
        assert get_token() is None

    @pytest.mark.asyncio
    async def test_concurrent_requests_never_see_each_other(self):
        """Interleaved requests each read back only their own token."""
        async def handle(token: str, delay: float):
            set_token(token)
            await asyncio.sleep(delay)
            first = get_token()
            await asyncio.sleep(0)
            return first, get_auth_header()

        results = await asyncio.gather(
            request_context.run(handle, "token-a", 0.02),
            request_context.run(handle, "token-b", 0.0),
            request_context.run(handle, "token-c", 0.01),
        )

        assert results == [
            ("token-a", {"Authorization": "Bearer token-a"}),
            ("token-b", {"Authorization": "Bearer token-b"}),
            ("token-c", {"Authorization": "Bearer token-c"}),
        ]

    @pytest.mark.asyncio
    async def test_child_tasks_share_the_request_record(self):
        """Tasks spawned by a request see values set later in the same request."""
        async def child(started: asyncio.Event):
            await started.wait()
            return get_token()

        async def handler():
            started = asyncio.Event()
            task = asyncio.create_task(child(started))
            set_token("late")
            started.set()
            return await task

        assert await request_context.run(handler) == "late"

    @pytest.mark.asyncio
    async def test_middleware_opens_one_scope_per_http_request(self):
        seen = []

        async def app(scope, receive, send):
            seen.append(get_context())
            set_token("leaked?")

        middleware = RequestContextMiddleware(app)
        await middleware({"type": "http"}, None, None)
        await middleware({"type": "http"}, None, None)
        await middleware({"type": "lifespan"}, None, None)

        assert seen[0] is not None and seen[1] is not None
        assert seen[0] is not seen[1]
        assert seen[2] is None
        assert get_token() is None
