"""Search tool subprocess lifecycle, keyed by query id."""

import asyncio
import os
from typing import Callable, List, Optional, Sequence, Set

from loguru import logger

from .bus import Event, EventBus
from .errors import ProtocolError, SpawnError
from .models import CaseMode, QuerySpec, Summary
from .protocol import ParsedBatch, ProtocolParser

# Exit codes the tool uses for "matches found" and "no match"
OK_EXIT_CODES = (0, 1)


def build_args(spec: QuerySpec, extra_args: Sequence[str] = ()) -> List[str]:
    """Translate a query into the tool's argument vector (without the command)."""
    args = ["--json"]
    if spec.case_mode is CaseMode.SMART:
        args.append("--smart-case")
    elif spec.case_mode is CaseMode.IGNORE:
        args.append("--ignore-case")
    if not spec.regex:
        args.append("--fixed-strings")
    if spec.word:
        args.append("--word-regexp")
    args.extend(extra_args)

    # Search roots relative to cwd; searching just cwd needs no argument
    dirs = [os.path.relpath(d, spec.cwd) or "." for d in spec.directories]
    if dirs == ["."]:
        dirs = []

    # Pattern stays positional even when it starts with a dash
    return [*args, "--", spec.pattern, *dirs]


class SearchProcess:
    """Handle for one running search tool process."""

    def __init__(self, query_id: int, spec: QuerySpec, proc: asyncio.subprocess.Process):
        self.query_id = query_id
        self.spec = spec
        self.proc = proc
        self.killed = False
        self.summary_seen = False
        self.stderr = bytearray()
        self.reader: Optional[asyncio.Task] = None

    @property
    def pid(self) -> int:
        return self.proc.pid

    @property
    def returncode(self) -> Optional[int]:
        return self.proc.returncode

    @property
    def is_live(self) -> bool:
        """Running and not yet asked to die."""
        return not self.killed and self.proc.returncode is None

    def stderr_text(self) -> str:
        return self.stderr.decode("utf-8", errors="replace")

    def kill(self) -> None:
        """Best-effort kill; does not wait for the process to exit."""
        if self.killed or self.proc.returncode is not None:
            self.killed = True
            return
        self.killed = True
        try:
            self.proc.kill()
            logger.debug(f"Killed search process {self.pid} (query {self.query_id})")
        except ProcessLookupError:
            pass


class QueryProcessManager:
    """
    Owns the single "current" search process slot.

    Every process is spawned under a query id. Output is decoded by a
    reader task and forwarded to the event bus tagged with that id; the
    session drops anything whose id is no longer current. Failures to
    spawn, decode or run the tool are reported as ``error`` summaries
    instead of being raised.
    """

    def __init__(
        self,
        event_bus: EventBus,
        is_current: Callable[[int], bool],
        command: Sequence[str] = ("rg",),
        extra_args: Sequence[str] = (),
        read_chunk_bytes: int = 65536
    ):
        self.event_bus = event_bus
        self._is_current = is_current
        self.command = list(command)
        self.extra_args = list(extra_args)
        self.read_chunk_bytes = read_chunk_bytes

        self._current: Optional[SearchProcess] = None
        self._handles: Set[SearchProcess] = set()

        self.stats = {
            "spawned": 0,
            "spawn_errors": 0,
            "protocol_errors": 0,
            "killed_stale": 0
        }

    @property
    def current(self) -> Optional[SearchProcess]:
        return self._current

    @property
    def live_count(self) -> int:
        return sum(1 for h in self._handles if h.is_live)

    async def spawn(self, spec: QuerySpec, query_id: int) -> Optional[SearchProcess]:
        """Start the tool for a query; returns None if it could not be started."""
        argv = [*self.command, *build_args(spec, self.extra_args)]
        logger.debug(f"Query {query_id}: spawning {argv} in {spec.cwd}")

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(spec.cwd),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
        except OSError as e:
            error = SpawnError(self.command[0], e)
            logger.warning(f"Query {query_id}: {error}")
            self.stats["spawn_errors"] += 1
            await self._emit_summary(Summary.error(str(error)), query_id)
            return None

        self.stats["spawned"] += 1
        handle = SearchProcess(query_id, spec, proc)
        self._handles.add(handle)
        handle.reader = asyncio.create_task(self._pump(handle))
        self.manage(handle, query_id)
        return handle

    def manage(self, handle: SearchProcess, query_id: int) -> None:
        """Register a process as current, or kill it if its query is stale."""
        if not self._is_current(query_id):
            logger.debug(f"Query {query_id} superseded before registration")
            self.stats["killed_stale"] += 1
            handle.kill()
            return

        if self._current is not None and self._current is not handle:
            self._current.kill()
        self._current = handle

    def kill_current(self) -> None:
        """Kill the current process without waiting for it to exit."""
        if self._current is not None:
            self._current.kill()
            self._current = None

    async def close(self) -> None:
        """Kill every process and wait for the readers to finish."""
        self.kill_current()
        for handle in list(self._handles):
            handle.kill()
        readers = [h.reader for h in self._handles if h.reader is not None]
        if readers:
            await asyncio.gather(*readers, return_exceptions=True)
        self._handles.clear()

    async def _pump(self, handle: SearchProcess) -> None:
        """Read stdout, decode and forward events until the process exits."""
        query_id = handle.query_id
        proc = handle.proc
        parser = ProtocolParser()
        stderr_task = asyncio.create_task(self._drain_stderr(handle))

        try:
            while True:
                chunk = await proc.stdout.read(self.read_chunk_bytes)
                if not self._is_current(query_id):
                    # manage() normally got here first
                    handle.kill()
                    break
                if not chunk:
                    if not await self._forward(handle, parser.close):
                        handle.kill()
                    break
                if not await self._forward(handle, lambda: parser.feed(chunk)):
                    handle.kill()
                    break

            returncode = await proc.wait()
            await stderr_task
            logger.debug(f"Query {query_id}: process exited with {returncode}")

            if (
                returncode not in OK_EXIT_CODES
                and not handle.killed
                and not handle.summary_seen
            ):
                stderr = handle.stderr_text().strip()
                await self._emit_summary(
                    Summary.error(f"Search exited with code {returncode}.\n\nstderr:\n{stderr}"),
                    query_id
                )

            await self.event_bus.emit(Event(
                type="search.exited",
                data={"returncode": returncode, "killed": handle.killed},
                query_id=query_id,
                source="process_manager"
            ))
        except asyncio.CancelledError:
            handle.kill()
            stderr_task.cancel()
            raise
        finally:
            self._handles.discard(handle)
            if self._current is handle:
                self._current = None

    async def _forward(self, handle: SearchProcess, decode: Callable[[], ParsedBatch]) -> bool:
        """Decode a chunk and emit its events; False on a protocol error."""
        try:
            batch = decode()
        except ProtocolError as e:
            logger.error(f"Query {handle.query_id}: protocol error: {e}")
            self.stats["protocol_errors"] += 1
            if e.partial:
                await self._emit_batch(handle, e.partial)
            handle.summary_seen = True
            await self._emit_summary(Summary.error(f"Protocol error: {e}"), handle.query_id)
            return False

        await self._emit_batch(handle, batch)
        return True

    async def _emit_batch(self, handle: SearchProcess, batch: ParsedBatch) -> None:
        if batch.matches:
            await self.event_bus.emit(Event(
                type="search.matches",
                data={"records": batch.matches},
                query_id=handle.query_id,
                source="process_manager"
            ))
        if batch.summary is not None:
            handle.summary_seen = True
            await self._emit_summary(batch.summary, handle.query_id)

    async def _drain_stderr(self, handle: SearchProcess) -> None:
        while True:
            data = await handle.proc.stderr.read(4096)
            if not data:
                break
            handle.stderr.extend(data)

    async def _emit_summary(self, summary: Summary, query_id: int) -> None:
        await self.event_bus.emit(Event(
            type="search.summary",
            data={"summary": summary},
            query_id=query_id,
            source="process_manager"
        ))
