"""
Sandbox Pool
============

Pool of sandbox context processes. A context serves one render at a time;
callers block until a context is free. A context that times out, is
cancelled or crashes is killed and never reused; healthy contexts are
recycled after a configurable number of renders, or right away when a
render changed state shared with later renders.
"""

from contextlib import contextmanager
from typing import Any, Iterator, List, Optional
import itertools
import multiprocessing
import threading
import time

from ssr_gateway.config.logging import get_logger
from ssr_gateway.core.sandbox.worker import READY, ExecutionRequest, ExecutionResponse, serve
from ssr_gateway.models.schemas import PoolStats

logger = get_logger(__name__)

# Granularity of deadline and cancellation checks while waiting on a context
POLL_INTERVAL = 0.05
STOP_GRACE_PERIOD = 1.0


class SandboxError(Exception):
    """Base class for sandbox context failures."""


class SandboxTimeout(SandboxError):
    """The context did not answer before the deadline."""


class SandboxCancelled(SandboxError):
    """The caller abandoned the render."""


class SandboxCrashed(SandboxError):
    """The context process died or could not be started."""


class SandboxPoolClosed(SandboxError):
    """The pool no longer hands out contexts."""


class SandboxContext:
    """One sandbox worker process and the parent end of its pipe."""

    _ids = itertools.count(1)

    def __init__(self, mp_context: Any) -> None:
        self.context_id = next(self._ids)
        self.renders = 0
        self.retired = False
        self._conn, self._child_conn = mp_context.Pipe(duplex=True)
        self.process = mp_context.Process(
            target=serve,
            args=(self._child_conn,),
            name=f"ssr-sandbox-{self.context_id}",
            daemon=True,
        )

    @property
    def alive(self) -> bool:
        return self.process.is_alive()

    def start(self, startup_timeout: float) -> None:
        """Start the process and wait for its ready handshake."""
        self.process.start()
        self._child_conn.close()

        try:
            if not self._conn.poll(startup_timeout):
                raise SandboxCrashed(f"sandbox context did not start within {startup_timeout:g}s")
            message = self._conn.recv()
        except (EOFError, OSError):
            self.terminate()
            raise SandboxCrashed("sandbox context exited during startup") from None
        except SandboxCrashed:
            self.terminate()
            raise

        if message != READY:
            self.terminate()
            raise SandboxCrashed(f"unexpected handshake from sandbox context: {message!r}")

    def execute(
        self,
        request: ExecutionRequest,
        timeout: float,
        cancel_event: Optional[threading.Event] = None,
    ) -> ExecutionResponse:
        """
        Run one render in this context.

        Args:
            request: Module code, links and props for the render
            timeout: Seconds to wait for the answer
            cancel_event: Set by the caller to abandon the render

        Returns:
            ExecutionResponse from the worker

        Raises:
            SandboxTimeout: If the deadline passes
            SandboxCancelled: If ``cancel_event`` is set while waiting
            SandboxCrashed: If the process dies or the pipe breaks
        """
        self.renders += 1
        deadline = time.monotonic() + timeout

        try:
            self._conn.send(request)
        except (EOFError, OSError) as e:
            raise SandboxCrashed(f"sandbox context is not accepting work: {e}") from None

        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise SandboxTimeout(f"no answer within {timeout:g}s")
            if self._conn.poll(min(remaining, POLL_INTERVAL)):
                break
            if cancel_event is not None and cancel_event.is_set():
                raise SandboxCancelled("render cancelled by caller")

        try:
            response = self._conn.recv()
        except (EOFError, OSError):
            raise SandboxCrashed(
                f"sandbox context exited unexpectedly (exit code {self.process.exitcode})"
            ) from None

        if not isinstance(response, ExecutionResponse):
            raise SandboxCrashed(f"unexpected message from sandbox context: {type(response).__name__}")
        if not response.reusable:
            self.retired = True
        return response

    def stop(self) -> None:
        """Ask the worker to exit, killing it if it does not."""
        try:
            self._conn.send(None)
        except (EOFError, OSError):
            pass
        self.process.join(STOP_GRACE_PERIOD)
        self.terminate()

    def terminate(self) -> None:
        """Kill the worker process immediately."""
        if self.process.is_alive():
            self.process.kill()
        self.process.join()
        self._conn.close()


class SandboxPool:
    """Bounded pool of sandbox contexts."""

    def __init__(
        self,
        size: int = 4,
        start_method: str = "spawn",
        max_renders_per_context: int = 500,
        startup_timeout: float = 30.0,
    ) -> None:
        self.size = size
        self.start_method = start_method
        self.max_renders_per_context = max_renders_per_context
        self.startup_timeout = startup_timeout
        self.logger: Any = logger.bind(component="sandbox_pool")  # structlog.BoundLoggerBase

        self._mp_context = multiprocessing.get_context(start_method)
        self._condition = threading.Condition()
        self._idle: List[SandboxContext] = []
        self._live = 0
        self._busy = 0
        self._spawned = 0
        self._recycled = 0
        self._killed = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _spawn(self) -> SandboxContext:
        context = SandboxContext(self._mp_context)
        started = time.perf_counter()
        context.start(self.startup_timeout)

        with self._condition:
            self._spawned += 1
        self.logger.debug(
            "Sandbox context started",
            context_id=context.context_id,
            pid=context.process.pid,
            startup_time=round(time.perf_counter() - started, 4),
        )
        return context

    def _discard_dead(self, context: SandboxContext) -> None:
        # Caller holds the condition
        self._live -= 1
        self._killed += 1
        self.logger.warning("Discarding dead sandbox context", context_id=context.context_id)

    def acquire(self) -> SandboxContext:
        """Take an idle context, starting a new one while below the pool size."""
        with self._condition:
            while True:
                if self._closed:
                    raise SandboxPoolClosed("sandbox pool is closed")

                while self._idle:
                    context = self._idle.pop()
                    if context.alive:
                        self._busy += 1
                        return context
                    self._discard_dead(context)
                    context.terminate()

                if self._live < self.size:
                    self._live += 1
                    self._busy += 1
                    break

                self._condition.wait()

        try:
            return self._spawn()
        except BaseException:
            with self._condition:
                self._live -= 1
                self._busy -= 1
                self._condition.notify()
            raise

    def release(self, context: SandboxContext, healthy: bool = True) -> None:
        """Return a context; unhealthy or worn-out contexts are shut down."""
        with self._condition:
            self._busy -= 1
            keep = (
                healthy
                and not self._closed
                and context.alive
                and not context.retired
                and context.renders < self.max_renders_per_context
            )
            if keep:
                self._idle.append(context)
            else:
                self._live -= 1
                if healthy:
                    self._recycled += 1
                else:
                    self._killed += 1
            self._condition.notify()

        if keep:
            return
        if healthy:
            self.logger.debug(
                "Recycling sandbox context",
                context_id=context.context_id,
                renders=context.renders,
                retired=context.retired,
            )
            context.stop()
        else:
            self.logger.warning("Killing sandbox context", context_id=context.context_id)
            context.terminate()

    @contextmanager
    def context(self) -> Iterator[SandboxContext]:
        """Lease a context; it is killed if the render fails at the sandbox level."""
        context = self.acquire()
        healthy = True
        try:
            yield context
        except SandboxError:
            healthy = False
            raise
        finally:
            self.release(context, healthy)

    def warm(self) -> int:
        """Start contexts until the pool is full. Returns how many were started."""
        started = 0
        while True:
            with self._condition:
                if self._closed or self._live >= self.size:
                    break
                self._live += 1

            try:
                context = self._spawn()
            except BaseException:
                with self._condition:
                    self._live -= 1
                    self._condition.notify()
                raise

            with self._condition:
                closed = self._closed
                if closed:
                    self._live -= 1
                else:
                    self._idle.append(context)
                    self._condition.notify()
            if closed:
                context.stop()
                break
            started += 1

        if started:
            self.logger.info("Sandbox pool warmed", started=started, pool_size=self.size)
        return started

    def close(self) -> None:
        """Stop idle contexts and refuse further leases. Busy contexts stop on release."""
        with self._condition:
            if self._closed:
                return
            self._closed = True
            idle, self._idle = self._idle, []
            self._live -= len(idle)
            self._condition.notify_all()

        for context in idle:
            context.stop()
        self.logger.info("Sandbox pool closed", stopped=len(idle))

    def stats(self) -> PoolStats:
        """Snapshot of pool counters."""
        with self._condition:
            return PoolStats(
                size=self.size,
                live=self._live,
                idle=len(self._idle),
                busy=self._busy,
                spawned=self._spawned,
                recycled=self._recycled,
                killed=self._killed,
                closed=self._closed,
            )
