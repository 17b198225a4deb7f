"""Data models for rgpanel search sessions."""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple


class CaseMode(Enum):
    """Case sensitivity of the search tool."""
    SMART = "smart"
    IGNORE = "ignore"
    STRICT = "strict"

    def next(self) -> "CaseMode":
        """Cycle smart -> ignore -> strict -> smart."""
        order = [CaseMode.SMART, CaseMode.IGNORE, CaseMode.STRICT]
        return order[(order.index(self) + 1) % len(order)]


class DirOrigin(Enum):
    """Which root the working directory was derived from."""
    DOC = "doc"
    WORKSPACE = "workspace"

    def other(self) -> "DirOrigin":
        return DirOrigin.WORKSPACE if self is DirOrigin.DOC else DirOrigin.DOC


class ModeToggle(Enum):
    CASE = "case"
    REGEX = "regex"
    WORD = "word"


class Direction(Enum):
    UP = "up"
    DOWN = "down"
    UP5 = "up5"
    DOWN5 = "down5"

    @property
    def step(self) -> int:
        return {
            Direction.UP: -1,
            Direction.DOWN: 1,
            Direction.UP5: -5,
            Direction.DOWN5: 5,
        }[self]


class SessionState(Enum):
    IDLE = "idle"
    INITIALIZED = "initialized"
    QUERYING = "querying"
    SETTLED = "settled"
    CLOSED = "closed"


class SummaryKind(Enum):
    START = "start"
    DONE = "done"
    ERROR = "error"


@dataclass(frozen=True)
class QuerySpec:
    """Everything the search tool needs for one query. Never mutated."""
    pattern: str
    cwd: Path
    directories: Tuple[Path, ...] = ()
    case_mode: CaseMode = CaseMode.SMART
    regex: bool = True
    word: bool = False


@dataclass(frozen=True)
class Submatch:
    """Highlighted span, in characters, within a match's line text."""
    start: int
    end: int


@dataclass
class MatchRecord:
    """A single matching line reported by the search tool."""
    file_path: str
    line_number: int
    line_text: str
    submatches: List[Submatch] = field(default_factory=list)

    @property
    def prefix(self) -> str:
        return f"{self.file_path}:{self.line_number}:"

    def display_line(self) -> str:
        return f"{self.prefix}{self.line_text}"


@dataclass
class Summary:
    """Status line content for a query."""
    kind: SummaryKind
    query: Optional[str] = None
    cwd: Optional[str] = None
    matches: int = 0
    elapsed: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def start(cls, query: str, cwd: Optional[str] = None) -> "Summary":
        return cls(kind=SummaryKind.START, query=query, cwd=cwd)

    @classmethod
    def done(cls, matches: int, elapsed: str) -> "Summary":
        return cls(kind=SummaryKind.DONE, matches=matches, elapsed=elapsed)

    @classmethod
    def error(cls, message: str) -> "Summary":
        return cls(kind=SummaryKind.ERROR, message=message)

    @property
    def is_final(self) -> bool:
        return self.kind is not SummaryKind.START

    def status_text(self) -> str:
        if self.kind is SummaryKind.DONE:
            return f"Done: {self.matches} matches found in {self.elapsed}"
        if self.kind is SummaryKind.ERROR:
            return f"ERROR: {self.message}"
        if self.cwd:
            return f"Processing query [{self.query}] on [{self.cwd}]"
        return f"Processing query [{self.query}]"


@dataclass
class SessionMode:
    """Directory and toggle settings; only changed by explicit operations."""
    cwd: Path
    doc_dir: Optional[Path] = None
    workspace_root: Optional[Path] = None
    dir_origin: DirOrigin = DirOrigin.DOC
    case_mode: CaseMode = CaseMode.SMART
    regex: bool = True
    word: bool = False

    def root_for(self, origin: DirOrigin) -> Optional[Path]:
        return self.doc_dir if origin is DirOrigin.DOC else self.workspace_root

    def to_query(self, pattern: str) -> QuerySpec:
        return QuerySpec(
            pattern=pattern,
            cwd=self.cwd,
            directories=(self.cwd,),
            case_mode=self.case_mode,
            regex=self.regex,
            word=self.word,
        )


@dataclass
class RequestingDocument:
    """The editor document a session was started from."""
    path: Optional[Path] = None
    workspace_root: Optional[Path] = None
    word_under_cursor: Optional[str] = None
    view_id: Optional[str] = None


@dataclass
class StartOptions:
    directory_origin: Optional[DirOrigin] = None
    seed_from_word_under_cursor: bool = False
