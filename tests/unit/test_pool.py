"""
Unit Tests for Sandbox Pool
===========================

Tests for sandbox context processes: the execution round trip, deadline and
cancellation enforcement, crash detection, recycling and pool lifecycle.
These tests start real worker processes.
"""

import marshal
import textwrap
import threading
from typing import Generator

import pytest

from ssr_gateway.core.rendering.elements import Element, Text
from ssr_gateway.core.sandbox.pool import (
    SandboxCancelled,
    SandboxCrashed,
    SandboxPool,
    SandboxPoolClosed,
    SandboxTimeout,
)
from ssr_gateway.core.sandbox.worker import ExecutionRequest


def make_request(source: str, props=None) -> ExecutionRequest:
    """Build a single-module request for ``page.py``."""
    code = compile(textwrap.dedent(source).lstrip(), "page.py", "exec")
    return ExecutionRequest(
        module_id="page.py",
        entry="render",
        modules={"page.py": marshal.dumps(code)},
        links={"page.py": {}},
        props=props or {},
    )


GREETING = make_request(
    """
    def render(props):
        return h("p", None, "hi ", props.name)
    """,
    props={"name": "Ada"},
)

INFINITE_LOOP = make_request(
    """
    def render(props):
        while True:
            pass
    """
)


@pytest.fixture
def pool() -> Generator[SandboxPool, None, None]:
    """Single-context sandbox pool."""
    instance = SandboxPool(size=1, startup_timeout=30.0)
    yield instance
    instance.close()


class TestSandboxContext:
    """Test a single context round trip."""

    def test_execute(self, pool):
        """Test a render returns the element tree from the worker process."""
        with pool.context() as context:
            response = context.execute(GREETING, timeout=10.0)

        assert response.ok
        assert response.tree == Element("p", {}, (Text("hi "), Text("Ada")))

    def test_context_is_reused(self, pool):
        """Test healthy contexts go back to the pool."""
        with pool.context() as first:
            first.execute(GREETING, timeout=10.0)
        with pool.context() as second:
            second.execute(GREETING, timeout=10.0)

        assert first is second
        stats = pool.stats()
        assert stats.spawned == 1
        assert stats.idle == 1
        assert stats.busy == 0

    def test_failure_response_keeps_context(self, pool):
        """Test page exceptions do not retire the context."""
        failing = make_request("def render(props):\n    raise KeyError('missing')\n")
        with pool.context() as context:
            response = context.execute(failing, timeout=10.0)

        assert not response.ok
        assert response.error == "KeyError: 'missing'"
        assert pool.stats().killed == 0


class TestDeadlines:
    """Test timeout and cancellation enforcement."""

    def test_timeout_kills_context(self, pool):
        """Test a runaway render is stopped and its context discarded."""
        with pytest.raises(SandboxTimeout):
            with pool.context() as context:
                context.execute(INFINITE_LOOP, timeout=0.3)

        assert not context.alive
        stats = pool.stats()
        assert stats.killed == 1
        assert stats.live == 0

        # The pool replaces the context on demand
        with pool.context() as replacement:
            response = replacement.execute(GREETING, timeout=10.0)
        assert response.ok
        assert pool.stats().spawned == 2

    def test_cancellation_kills_context(self, pool):
        """Test setting the cancel event abandons the render."""
        cancel_event = threading.Event()
        timer = threading.Timer(0.2, cancel_event.set)
        timer.start()
        try:
            with pytest.raises(SandboxCancelled):
                with pool.context() as context:
                    context.execute(INFINITE_LOOP, timeout=30.0, cancel_event=cancel_event)
        finally:
            timer.cancel()

        assert not context.alive
        assert pool.stats().killed == 1

    def test_crashed_process_detected(self, pool):
        """Test a worker that died is reported as crashed."""
        with pytest.raises(SandboxCrashed):
            with pool.context() as context:
                context.process.kill()
                context.process.join()
                context.execute(GREETING, timeout=10.0)

        assert pool.stats().killed == 1


class TestPoolLifecycle:
    """Test pool sizing, recycling and shutdown."""

    def test_warm(self):
        """Test warm() starts contexts up to the pool size."""
        pool = SandboxPool(size=2)
        try:
            assert pool.warm() == 2
            assert pool.warm() == 0
            stats = pool.stats()
            assert stats.live == 2
            assert stats.idle == 2
        finally:
            pool.close()

    def test_recycle_after_max_renders(self):
        """Test contexts are retired after their render budget."""
        pool = SandboxPool(size=1, max_renders_per_context=1)
        try:
            with pool.context() as first:
                first.execute(GREETING, timeout=10.0)
            with pool.context() as second:
                second.execute(GREETING, timeout=10.0)

            assert first is not second
            stats = pool.stats()
            assert stats.recycled == 2
            assert stats.spawned == 2
        finally:
            pool.close()

    def test_context_retired_after_shared_state_change(self, pool):
        """Test a render that modifies an imported class retires its context."""
        request = make_request(
            """
            import json

            def render(props):
                json.JSONEncoder.last_seen = props.name
                return h("p", None, props.name)
            """,
            props={"name": "Ada"},
        )
        request.allowed_imports = ("json",)

        with pool.context() as first:
            response = first.execute(request, timeout=10.0)
        assert response.ok
        assert not response.reusable
        assert first.retired

        with pool.context() as second:
            assert second.execute(GREETING, timeout=10.0).reusable
        assert second is not first
        assert pool.stats().recycled == 1
        assert pool.stats().killed == 0

    def test_dead_idle_context_replaced(self, pool):
        """Test idle contexts that died are discarded on acquire."""
        pool.warm()
        with pool.context() as context:
            pass
        context.process.kill()
        context.process.join()

        with pool.context() as replacement:
            response = replacement.execute(GREETING, timeout=10.0)

        assert replacement is not context
        assert response.ok
        assert pool.stats().killed == 1

    def test_waiters_get_released_context(self, pool):
        """Test a caller blocks until a context is released."""
        results = []
        context = pool.acquire()

        def waiter() -> None:
            with pool.context() as leased:
                results.append(leased)

        thread = threading.Thread(target=waiter)
        thread.start()
        thread.join(0.3)
        assert thread.is_alive()

        pool.release(context)
        thread.join(10.0)
        assert results == [context]

    def test_close(self, pool):
        """Test a closed pool refuses new leases."""
        pool.warm()
        pool.close()

        stats = pool.stats()
        assert stats.closed
        assert stats.live == 0
        with pytest.raises(SandboxPoolClosed):
            pool.acquire()
