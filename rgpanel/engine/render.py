"""Incremental, throttled rendering of search results into a display sink.

The session document has a fixed layout::

    line 0   <prompt><query>
    line 1   status line
    line 2+  one line per result, "<file>:<line>:<text>"
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

from loguru import logger

from .models import Summary
from .throttle import Throttle

QUERY_LINE = 0
STATUS_LINE = 1
FIRST_RESULT_LINE = 2

HIGHLIGHT_MATCH = "match"
HIGHLIGHT_FOCUS = "focus"


@dataclass(frozen=True)
class HighlightRange:
    """Span on a document line; ``end=None`` means to the end of the line."""
    line: int
    start: int = 0
    end: Optional[int] = None


class RenderSink(ABC):
    """
    Display surface a session renders into.

    Line-oriented: ``replace_region`` swaps lines ``[from_line, to_line)``
    (``to_line=None`` meaning through the end of the document) for the
    lines of ``text``; an empty ``text`` removes them. ``insert_at_end``
    appends raw text to the last line, so text starting with a newline
    opens new lines.
    """

    @abstractmethod
    async def replace_region(self, from_line: int, to_line: Optional[int], text: str) -> None:
        ...

    @abstractmethod
    async def insert_at_end(self, text: str) -> None:
        ...

    @abstractmethod
    async def set_highlight_ranges(self, kind: str, ranges: List[HighlightRange]) -> None:
        ...

    @abstractmethod
    async def reveal_line(self, line: int) -> None:
        ...

    @abstractmethod
    async def open_file(self, path: str, line: int, focus: bool) -> None:
        ...

    async def close(self) -> None:
        """Close the session surface."""

    async def restore_origin(self) -> None:
        """Give focus back to the view the session was started from."""


class MemorySink(RenderSink):
    """Sink that keeps the document and highlights in memory."""

    def __init__(self):
        self.lines: List[str] = [""]
        self.highlights: Dict[str, List[HighlightRange]] = {}
        self.revealed: Optional[int] = None
        self.opened: List[tuple] = []
        self.closed = False
        self.restored = False

    @property
    def text(self) -> str:
        return "\n".join(self.lines)

    async def replace_region(self, from_line: int, to_line: Optional[int], text: str) -> None:
        new_lines = text.split("\n") if text else []
        end = len(self.lines) if to_line is None else to_line
        self.lines[from_line:end] = new_lines
        if not self.lines:
            self.lines = [""]

    async def insert_at_end(self, text: str) -> None:
        tail = self.lines.pop() + text
        self.lines.extend(tail.split("\n"))

    async def set_highlight_ranges(self, kind: str, ranges: List[HighlightRange]) -> None:
        self.highlights[kind] = list(ranges)

    async def reveal_line(self, line: int) -> None:
        self.revealed = line

    async def open_file(self, path: str, line: int, focus: bool) -> None:
        self.opened.append((path, line, focus))

    async def close(self) -> None:
        self.closed = True

    async def restore_origin(self) -> None:
        self.restored = True


class RenderBuffer:
    """
    Accumulates result lines and a status summary between flushes.

    All mutation happens on the session's event loop; the sink is only
    touched from the throttled ``flush``.
    """

    def __init__(
        self,
        sink: RenderSink,
        interval: float = 0.2,
        initial_delay: float = 0.01,
        on_flushed: Optional[Callable[[], Awaitable[None]]] = None
    ):
        self.sink = sink
        self.on_flushed = on_flushed
        self._throttle = Throttle(self.flush, interval=interval, initial_delay=initial_delay)

        self._pending_lines: List[str] = []
        self._pending_summary: Optional[Summary] = None
        self._refresh = False
        self._match_ranges: List[HighlightRange] = []
        self._generation = 0
        self.flushes = 0

    @property
    def has_pending(self) -> bool:
        return bool(self._pending_lines) or self._pending_summary is not None or self._refresh

    def reset(self, summary: Summary) -> None:
        """Forget everything pending; the next flush replaces all results."""
        self._generation += 1
        self._refresh = True
        self._pending_lines = []
        self._match_ranges = []
        self._pending_summary = summary

    def append(self, line: str, ranges: List[HighlightRange] = ()) -> None:
        self._pending_lines.append(line)
        self._match_ranges.extend(ranges)

    def set_summary(self, summary: Summary) -> None:
        self._pending_summary = summary

    def schedule(self) -> None:
        """Request a throttled flush."""
        self._throttle.invoke()

    async def wait_idle(self) -> None:
        await self._throttle.wait_idle()

    async def close(self) -> None:
        await self._throttle.close()

    async def flush(self) -> None:
        """Apply pending lines, status and highlights to the sink in one pass."""
        if not self.has_pending:
            return

        body = "".join(f"\n{line}" for line in self._pending_lines)
        added = len(self._pending_lines)
        self._pending_lines = []
        summary, self._pending_summary = self._pending_summary, None
        refresh, self._refresh = self._refresh, False
        generation = self._generation
        ranges = list(self._match_ranges)

        if refresh:
            await self.sink.replace_region(FIRST_RESULT_LINE, None, "")
            await self.sink.set_highlight_ranges(HIGHLIGHT_FOCUS, [])
        if body:
            await self.sink.insert_at_end(body)
        if summary is not None:
            await self.sink.replace_region(STATUS_LINE, STATUS_LINE + 1, summary.status_text())

        self.flushes += 1
        if generation != self._generation:
            # Reset while writing; ranges and focus belong to the next refresh
            logger.debug(f"Flushed {added} lines for a superseded generation")
            return

        await self.sink.set_highlight_ranges(HIGHLIGHT_MATCH, ranges)
        logger.debug(f"Flushed {added} lines (refresh={refresh})")

        if self.on_flushed is not None:
            await self.on_flushed()
