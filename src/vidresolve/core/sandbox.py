"""Compile and evaluate cipher fragments inside an embedded JS interpreter.

Every evaluation runs in a fresh dukpy interpreter, so no state survives
between calls. Compiled programs are shared across resolutions through
`CipherCache`, keyed by player version.
"""

import asyncio
import functools
import logging
import re
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Optional, Tuple

import dukpy

from .errors import CompileFailed, EvalFailed
from .models import CipherFragments, PlayerVersionKey, ScriptFragment

logger = logging.getLogger(__name__)

# Removes the host bridges dukpy installs (python callbacks and module loading).
_PRELUDE = (
    "call_python = undefined;"
    "if (typeof Duktape !== 'undefined') { Duktape.modSearch = undefined; }"
    "require = undefined;"
)

_PLAUSIBLE_OUTPUT = re.compile(r"[A-Za-z0-9_\-=.%]{1,1024}")
_EXCEPTION_MARKER = "enhanced_except_"


@dataclass(frozen=True)
class CompiledScript:
    """A fragment that loaded cleanly and exposes `entry` as a function."""
    entry: str
    source: str


class ScriptSandbox:
    """`compile(fragment) -> handle` and `evaluate(handle, input) -> output` over dukpy."""

    def compile(self, fragment: ScriptFragment) -> CompiledScript:
        if not fragment.source.strip():
            raise CompileFailed(f"fragment for {fragment.entry} is empty")
        try:
            kind = dukpy.evaljs([_PRELUDE, fragment.source, f"typeof {fragment.entry}"])
        except dukpy.JSRuntimeError as exc:
            raise CompileFailed(f"fragment for {fragment.entry} failed to load: {exc}") from exc
        if kind != "function":
            raise CompileFailed(f"fragment does not define {fragment.entry} as a function (got {kind})")
        return CompiledScript(entry=fragment.entry, source=fragment.source)

    def evaluate(self, compiled: CompiledScript, value: str) -> str:
        try:
            result = dukpy.evaljs(
                [_PRELUDE, compiled.source, f"{compiled.entry}(dukpy['input'])"], input=value)
        except dukpy.JSRuntimeError as exc:
            raise EvalFailed(f"{compiled.entry} raised: {exc}") from exc
        if not isinstance(result, str):
            raise EvalFailed(f"{compiled.entry} returned {type(result).__name__}, expected a string")
        if _EXCEPTION_MARKER in result or not _PLAUSIBLE_OUTPUT.fullmatch(result):
            raise EvalFailed(f"{compiled.entry} returned an implausible value {result[:40]!r}")
        return result

    def compile_program(self, key: PlayerVersionKey, fragments: CipherFragments) -> "CipherProgram":
        started = time.perf_counter()
        program = CipherProgram(
            key=key,
            signature=self.compile(fragments.signature),
            n_transform=self.compile(fragments.n_transform),
            sandbox=self,
        )
        logger.debug(f"Compiled cipher program for {key} in {time.perf_counter() - started:.3f}s")
        return program


@dataclass(frozen=True)
class CipherProgram:
    """Compiled signature and n transforms for one player version. Read-only and shareable."""
    key: PlayerVersionKey
    signature: CompiledScript
    n_transform: CompiledScript
    sandbox: ScriptSandbox = field(compare=False, repr=False)

    def decode_signature(self, ciphertext: str) -> str:
        return self.sandbox.evaluate(self.signature, ciphertext)

    def decode_n(self, value: str) -> str:
        return self.sandbox.evaluate(self.n_transform, value)


class _Flight:
    """A build in progress and the number of callers awaiting it."""

    def __init__(self, task: "asyncio.Future"):
        self.task = task
        self.waiters = 0
        self.abandoned = False


class CipherCache:
    """LRU cache of compiled programs with single-flight builds and short-lived failures."""

    def __init__(self, capacity: int = 16, failure_ttl: float = 30.0,
                 clock: Callable[[], float] = time.monotonic):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.failure_ttl = failure_ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._programs: "OrderedDict[PlayerVersionKey, CipherProgram]" = OrderedDict()
        self._failures: Dict[PlayerVersionKey, Tuple[BaseException, float]] = {}
        self._inflight: Dict[PlayerVersionKey, _Flight] = {}
        self.hits = 0
        self.failure_hits = 0
        self.misses = 0
        self.builds = 0

    def __len__(self):
        with self._lock:
            return len(self._programs)

    def __contains__(self, key):
        with self._lock:
            return key in self._programs

    def peek(self, key: PlayerVersionKey) -> Optional[CipherProgram]:
        with self._lock:
            return self._programs.get(key)

    async def get(self, key: PlayerVersionKey,
                  build: Callable[[], Awaitable[CipherProgram]]) -> CipherProgram:
        """Return the program for `key`, building it at most once across concurrent callers."""
        with self._lock:
            program = self._programs.get(key)
            if program is not None:
                self._programs.move_to_end(key)
                self.hits += 1
                return program
            failure = self._failures.get(key)
            if failure is not None:
                error, expires = failure
                if self._clock() < expires:
                    self.failure_hits += 1
                    raise error
                del self._failures[key]
            flight = self._inflight.get(key)
            if flight is None or flight.abandoned:
                self.misses += 1
                self.builds += 1
                flight = _Flight(asyncio.ensure_future(build()))
                self._inflight[key] = flight
                flight.task.add_done_callback(functools.partial(self._settle, key, flight))
                logger.debug(f"Building cipher program for {key}")
            else:
                logger.debug(f"Waiting on in-flight build for {key}")
            flight.waiters += 1

        try:
            return await asyncio.shield(flight.task)
        finally:
            with self._lock:
                flight.waiters -= 1
                abandon = flight.waiters == 0 and not flight.task.done()
                if abandon:
                    flight.abandoned = True
            if abandon:
                logger.debug(f"All callers for {key} went away, cancelling build")
                flight.task.cancel()

    def _settle(self, key: PlayerVersionKey, flight: _Flight, task: "asyncio.Future"):
        with self._lock:
            if self._inflight.get(key) is flight:
                del self._inflight[key]
            if task.cancelled():
                return
            error = task.exception()
            if error is not None:
                now = self._clock()
                self._failures = {k: v for k, v in self._failures.items() if v[1] > now}
                self._failures[key] = (error, now + self.failure_ttl)
                logger.warning(f"Cipher program for {key} failed, retry allowed in {self.failure_ttl}s: {error}")
                return
            self._programs[key] = task.result()
            self._programs.move_to_end(key)
            while len(self._programs) > self.capacity:
                evicted, _ = self._programs.popitem(last=False)
                logger.debug(f"Evicted cipher program for {evicted}")

    def evict(self, key: PlayerVersionKey) -> bool:
        with self._lock:
            self._failures.pop(key, None)
            return self._programs.pop(key, None) is not None

    def reset(self):
        """Drop every program and cached failure. In-flight builds still complete."""
        with self._lock:
            self._programs.clear()
            self._failures.clear()
