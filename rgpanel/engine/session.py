"""Interactive search session controller.

A session owns the query text, directory/mode settings, the query id
sequence, the accumulated results and the focus index. Every
semantically new query bumps the query id; the previous search process
is killed without waiting, and any late output it produces is dropped
because its events carry the old id.
"""

import asyncio
from collections import deque
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

import psutil
import ulid
from loguru import logger

from .bus import Event, EventBus
from .config import Config
from .errors import ErrorEvent, ModeResolutionError
from .models import (
    Direction,
    DirOrigin,
    MatchRecord,
    ModeToggle,
    RequestingDocument,
    SessionMode,
    SessionState,
    StartOptions,
    Summary,
    SummaryKind,
)
from .process import QueryProcessManager
from .render import (
    FIRST_RESULT_LINE,
    HIGHLIGHT_FOCUS,
    HighlightRange,
    RenderBuffer,
    RenderSink,
)


class SearchSession:
    """Controller for one interactive search, from start to commit/quit."""

    def __init__(
        self,
        sink: RenderSink,
        config: Optional[Config] = None,
        event_bus: Optional[EventBus] = None
    ):
        self.config = config or Config()
        self.session_id = str(ulid.ULID())
        self.sink = sink

        self._owns_bus = event_bus is None
        self.event_bus = event_bus or EventBus()

        self.state = SessionState.IDLE
        self.mode: Optional[SessionMode] = None
        self.document: Optional[RequestingDocument] = None

        self._query_id = 0
        self._query = ""
        self._rejecting = False
        self._settled = asyncio.Event()

        self.matches: List[MatchRecord] = []
        self.omitted = False
        self.omitted_count = 0
        self.focus: Optional[int] = None
        self.last_summary: Optional[Summary] = None

        self.errors: deque = deque(maxlen=50)
        self.stale_drops = 0

        search = self.config.search
        self.processes = QueryProcessManager(
            self.event_bus,
            self.is_query_id,
            command=search.command,
            extra_args=search.extra_args,
            read_chunk_bytes=search.read_chunk_bytes
        )
        self.render = RenderBuffer(
            sink,
            interval=self.config.throttle.interval,
            initial_delay=self.config.throttle.initial_delay,
            on_flushed=self._after_flush
        )

        for pattern, handler in self._subscriptions():
            self.event_bus.subscribe(pattern, handler)

    def _subscriptions(self):
        return [
            ("search.matches", self._on_matches_event),
            ("search.summary", self._on_summary_event),
            ("search.exited", self._on_exited_event),
        ]

    # -- query identity --------------------------------------------------

    @property
    def query_id(self) -> int:
        return self._query_id

    @property
    def query(self) -> str:
        return self._query

    def is_query_id(self, query_id: int) -> bool:
        return query_id == self._query_id and self.state is not SessionState.CLOSED

    @property
    def focused_match(self) -> Optional[MatchRecord]:
        if self.focus is None:
            return None
        return self.matches[self.focus]

    # -- lifecycle -------------------------------------------------------

    def init(
        self,
        document: RequestingDocument,
        directory_origin: Optional[DirOrigin] = None
    ) -> SessionMode:
        """Compute the initial mode from the requesting document."""
        doc_dir = Path(document.path).resolve().parent if document.path else None
        workspace_root = Path(document.workspace_root).resolve() if document.workspace_root else None

        origin = directory_origin or self.config.defaults.directory_origin
        roots = {DirOrigin.DOC: doc_dir, DirOrigin.WORKSPACE: workspace_root}
        if roots[origin] is None:
            origin = origin.other()
        cwd = roots[origin]
        if cwd is None:
            msg = "Unable to get cwd: both workspace and current folder are undefined"
            logger.error(msg)
            raise ModeResolutionError(msg)

        defaults = self.config.defaults
        self.document = document
        self.mode = SessionMode(
            cwd=cwd,
            doc_dir=doc_dir,
            workspace_root=workspace_root,
            dir_origin=origin,
            case_mode=defaults.case_mode,
            regex=defaults.regex,
            word=defaults.word
        )
        self._query = ""
        self.state = SessionState.INITIALIZED
        return self.mode

    async def start(
        self,
        document: RequestingDocument,
        initial_selection_text: str = "",
        options: Optional[StartOptions] = None
    ) -> None:
        """Open the session surface and run the seed query, if any."""
        options = options or StartOptions()
        self.init(document, options.directory_origin)

        lines = (initial_selection_text or "").splitlines()
        query = lines[0] if lines else ""
        if not query and options.seed_from_word_under_cursor:
            query = document.word_under_cursor or ""

        if not self.event_bus.running:
            await self.event_bus.start()

        await self.sink.replace_region(0, None, f"{self.config.display.prompt}{query}\n")
        logger.info(f"Session {self.session_id} started in {self.mode.cwd}")

        if query:
            await self.set_query(query)

    async def quit(self, return_to_origin: bool = False) -> None:
        """Kill the search, close the surface and optionally restore the origin view."""
        if self.state is SessionState.CLOSED:
            return

        # Output arriving during teardown no longer counts as current
        self.state = SessionState.CLOSED
        self._settled.set()
        for pattern, handler in self._subscriptions():
            self.event_bus.unsubscribe(pattern, handler)

        self.processes.kill_current()
        await self.render.close()

        steps = [self.sink.close]
        if return_to_origin:
            steps.append(self.sink.restore_origin)
        for step in steps:
            try:
                await step()
            except Exception as e:
                logger.warning(f"Session teardown step {step.__name__} failed: {e}")

        await self.processes.close()
        if self._owns_bus:
            await self.event_bus.stop()
        logger.info(f"Session {self.session_id} closed")

    async def commit(self) -> Optional[MatchRecord]:
        """Open the focused match in the original view, then tear down."""
        if self.state is SessionState.CLOSED:
            return None

        record = self.focused_match
        if record is not None:
            try:
                await self.sink.open_file(self._resolve(record), record.line_number, focus=True)
            except Exception as e:
                logger.warning(f"Failed to open {record.file_path}: {e}")
        await self.quit(return_to_origin=False)
        return record

    # -- query changes ---------------------------------------------------

    async def on_edited_query_text(self, text: str) -> Optional[int]:
        """Handle an edit of the document's query line, prompt included."""
        prompt = self.config.display.prompt
        if prompt and text.startswith(prompt):
            text = text[len(prompt):]
        return await self.set_query(text)

    async def set_query(self, text: str) -> Optional[int]:
        """Search for ``text`` as typed; returns the new query id if any."""
        if self.mode is None or self.state is SessionState.CLOSED:
            return None
        if text == self._query:
            return None
        return await self.new_query(text)

    async def new_query(self, text: Optional[str] = None) -> Optional[int]:
        """Start a new query generation, discarding all previous output."""
        if self.mode is None or self.state is SessionState.CLOSED:
            return None
        if text is not None:
            self._query = text

        self._query_id += 1
        query_id = self._query_id
        self.processes.kill_current()

        self.matches = []
        self.omitted = False
        self.omitted_count = 0
        self.focus = None
        self.last_summary = None
        self._rejecting = False
        self._settled.clear()

        self.render.reset(Summary.start(self._query, str(self.mode.cwd)))
        self.render.schedule()
        logger.debug(f"Query {query_id}: [{self._query}] in {self.mode.cwd}")

        if self._query:
            self.state = SessionState.QUERYING
            await self.processes.spawn(self.mode.to_query(self._query), query_id)
        else:
            self.state = SessionState.SETTLED
            self._settled.set()
        return query_id

    async def toggle_mode(self, which: Union[ModeToggle, str]) -> Optional[int]:
        if self.mode is None or self.state is SessionState.CLOSED:
            return None

        which = ModeToggle(which)
        if which is ModeToggle.CASE:
            self.mode.case_mode = self.mode.case_mode.next()
        elif which is ModeToggle.REGEX:
            self.mode.regex = not self.mode.regex
        else:
            self.mode.word = not self.mode.word
        return await self.new_query()

    async def toggle_directory(self) -> Optional[int]:
        """Switch cwd between the document directory and the workspace root."""
        if self.mode is None or self.state is SessionState.CLOSED:
            return None

        origin = self.mode.dir_origin.other()
        target = self.mode.root_for(origin)
        if target is None or target == self.mode.cwd:
            return None
        self.mode.dir_origin = origin
        self.mode.cwd = target
        return await self.new_query()

    async def navigate_directory_up(self) -> Optional[int]:
        if self.mode is None or self.state is SessionState.CLOSED:
            return None

        parent = self.mode.cwd.parent
        if parent == self.mode.cwd:
            return None
        self.mode.cwd = parent
        return await self.new_query()

    async def navigate_directory_down(self) -> Optional[int]:
        """Descend one segment toward a root that lies below cwd."""
        if self.mode is None or self.state is SessionState.CLOSED:
            return None

        mode = self.mode
        for origin in (mode.dir_origin.other(), mode.dir_origin):
            root = mode.root_for(origin)
            if root is None or root == mode.cwd:
                continue
            try:
                rel = root.relative_to(mode.cwd)
            except ValueError:
                continue
            mode.cwd = mode.cwd / rel.parts[0]
            return await self.new_query()
        return None

    # -- results ---------------------------------------------------------

    def on_match_events(self, records: Sequence[MatchRecord], query_id: int) -> None:
        if not self.is_query_id(query_id):
            self.stale_drops += 1
            return
        if self._rejecting:
            return
        if self.omitted:
            self.omitted_count += len(records)
            return

        cap = self.config.display.max_results
        for i, record in enumerate(records):
            if len(self.matches) >= cap:
                self.omitted = True
                self.omitted_count += len(records) - i
                self.render.append(self.config.display.omitted_marker)
                break
            line = FIRST_RESULT_LINE + len(self.matches)
            offset = len(record.prefix)
            ranges = [
                HighlightRange(line, offset + s.start, offset + s.end)
                for s in record.submatches
            ]
            self.render.append(record.display_line(), ranges)
            self.matches.append(record)
        self.render.schedule()

    def on_summary(self, summary: Summary, query_id: int) -> None:
        if not self.is_query_id(query_id):
            self.stale_drops += 1
            return

        if summary.kind is SummaryKind.ERROR:
            self._rejecting = True
            self.errors.append(ErrorEvent(
                source="search",
                error_type="SearchError",
                message=summary.message or "",
                query_id=query_id,
                context={"query": self._query, "cwd": str(self.mode.cwd)}
            ))

        self.last_summary = summary
        self.render.set_summary(summary)
        self.render.schedule()
        if summary.is_final:
            self.state = SessionState.SETTLED
            self._settled.set()

    def _on_matches_event(self, event: Event) -> None:
        self.on_match_events(event.data["records"], event.query_id)

    def _on_summary_event(self, event: Event) -> None:
        self.on_summary(event.data["summary"], event.query_id)

    def _on_exited_event(self, event: Event) -> None:
        if not self.is_query_id(event.query_id):
            return
        # Tool ended without a summary record
        if self.state is SessionState.QUERYING:
            self.state = SessionState.SETTLED
            self._settled.set()

    # -- focus -----------------------------------------------------------

    async def move_focus(self, direction: Union[Direction, str]) -> Optional[int]:
        """Move focus, clamped to the result list; no-op without results."""
        if not self.matches:
            return None

        direction = Direction(direction)
        current = self.focus if self.focus is not None else 0
        target = max(0, min(len(self.matches) - 1, current + direction.step))
        await self._set_focus(target)
        return self.focus

    async def _set_focus(self, index: int) -> None:
        if not 0 <= index < len(self.matches):
            return
        self.focus = index

        line = FIRST_RESULT_LINE + index
        await self.sink.set_highlight_ranges(HIGHLIGHT_FOCUS, [HighlightRange(line)])
        await self.sink.reveal_line(line)

        record = self.matches[index]
        await self.sink.open_file(self._resolve(record), record.line_number, focus=False)

    async def _after_flush(self) -> None:
        if self.state is SessionState.CLOSED:
            return
        if self.focus is None and self.matches:
            await self._set_focus(0)

    def _resolve(self, record: MatchRecord) -> str:
        return str(self.mode.cwd / record.file_path)

    # -- waiting & diagnostics -------------------------------------------

    async def wait_settled(self, timeout: Optional[float] = None) -> bool:
        """Wait for the current query to finish; False on timeout."""
        try:
            await asyncio.wait_for(self._settled.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def drain(self) -> None:
        """Wait until queued events are handled and pending output is flushed."""
        if self.event_bus.running:
            await self.event_bus.join()
        await self.render.wait_idle()

    def get_status(self) -> Dict[str, Any]:
        process = None
        current = self.processes.current
        if current is not None and current.is_live:
            try:
                info = psutil.Process(current.pid)
                process = {"pid": current.pid, "status": info.status()}
            except psutil.NoSuchProcess:
                process = {"pid": current.pid, "status": "exited"}

        mode = self.mode
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            "query_id": self._query_id,
            "query": self._query,
            "cwd": str(mode.cwd) if mode else None,
            "dir_origin": mode.dir_origin.value if mode else None,
            "modes": {
                "case": mode.case_mode.value,
                "regex": mode.regex,
                "word": mode.word
            } if mode else None,
            "results": len(self.matches),
            "omitted": self.omitted_count,
            "focus": self.focus,
            "stale_drops": self.stale_drops,
            "process": process,
            "errors": [e.to_dict() for e in self.errors]
        }
