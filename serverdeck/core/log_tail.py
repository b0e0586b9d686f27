"""Log tail: bounded console buffer fed by an incremental pull loop."""

from __future__ import annotations

import logging
import re
from collections import deque
from typing import Awaitable, Callable, Iterator

from ..types import EntryKind, LogEntry, LogLevel, LogTailConfig, ServerDeckError
from .scheduler import PeriodicTask

logger = logging.getLogger(__name__)

_LEVEL_PATTERNS: list[tuple[LogLevel, re.Pattern]] = [
    (LogLevel.ERROR, re.compile(r"error|exception|fatal|failed", re.IGNORECASE)),
    (LogLevel.WARN, re.compile(r"warn", re.IGNORECASE)),
    (LogLevel.DEBUG, re.compile(r"debug|trace", re.IGNORECASE)),
]


def classify_level(line: str) -> LogLevel:
    """Severity by keyword; first match wins in error > warn > debug order."""
    for level, pattern in _LEVEL_PATTERNS:
        if pattern.search(line):
            return level
    return LogLevel.INFO


def highlight(text: str, query: str) -> list[tuple[str, bool]]:
    """Split *text* into ``(segment, matched)`` pairs for case-insensitive *query*."""
    if not query:
        return [(text, False)] if text else []
    parts: list[tuple[str, bool]] = []
    pos = 0
    for m in re.finditer(re.escape(query), text, re.IGNORECASE):
        if m.start() > pos:
            parts.append((text[pos:m.start()], False))
        parts.append((m.group(0), True))
        pos = m.end()
    if pos < len(text):
        parts.append((text[pos:], False))
    return parts


def entry_filter(
    level: LogLevel | str | None = None,
    search: str | None = None,
) -> Callable[[LogEntry], bool]:
    """Predicate for the level filter and case-insensitive substring search."""
    wanted = LogLevel(level) if level else None
    needle = search.lower() if search else None

    def matches(entry: LogEntry) -> bool:
        if wanted is not None and entry.level is not wanted:
            return False
        return needle is None or needle in entry.text.lower()

    return matches


def _find_after(lines: list[str], anchor: list[str]) -> int | None:
    """Index just past the last occurrence of *anchor* in *lines*, or None."""
    n = len(anchor)
    for end in range(len(lines), n - 1, -1):
        if lines[end - n:end] == anchor:
            return end
    return None


class LogBuffer:
    """FIFO-capped console entries plus the remote-tail cursor.

    ``seen_count`` is how far into the remote tail window lines have been
    consumed; it never decreases.
    """

    def __init__(self, max_entries: int = 500) -> None:
        self.max_entries = max_entries
        self._entries: deque[LogEntry] = deque(maxlen=max_entries)
        self.seen_count = 0
        self.evicted = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[LogEntry]:
        return iter(list(self._entries))

    def entries(self) -> list[LogEntry]:
        return list(self._entries)

    def append(self, entry: LogEntry) -> None:
        if len(self._entries) == self.max_entries:
            self.evicted += 1
        self._entries.append(entry)

    def extend(self, entries: list[LogEntry]) -> None:
        for entry in entries:
            self.append(entry)

    def advance(self, seen_count: int) -> None:
        if seen_count > self.seen_count:
            self.seen_count = seen_count

    def view(
        self,
        level: LogLevel | str | None = None,
        search: str | None = None,
    ) -> list[LogEntry]:
        """Entries filtered by level and case-insensitive substring. No I/O."""
        matches = entry_filter(level, search)
        return [entry for entry in self._entries if matches(entry)]


FetchLines = Callable[[int], Awaitable[list[str]]]
RunCommand = Callable[[str], Awaitable[str]]


class LogTailController:
    """Bootstrap a log window, then append only unseen lines while active.

    Polls never overlap: a tick that finds a fetch still in flight does
    nothing. After ``close()`` results of in-flight fetches are dropped
    and no further tick runs.

    With ``gap_detection`` on, the count cursor is checked against the
    last few consumed raw lines. If they no longer sit right before the
    cursor the window has shifted, and the tail realigns on them. If they
    are gone from a full window, more lines arrived than one poll can
    see; the loss is counted in ``gaps`` and marked in the buffer.
    """

    def __init__(
        self,
        fetch_lines: FetchLines,
        config: LogTailConfig | None = None,
        run_command: RunCommand | None = None,
        name: str = "",
    ) -> None:
        self.config = config or LogTailConfig()
        self.name = name
        self.buffer = LogBuffer(self.config.max_entries)
        self._fetch_lines = fetch_lines
        self._run_command = run_command
        self._fetching = False
        self._closed = False
        self._anchor: list[str] = []
        self._listeners: list[Callable[[], None]] = []
        self._task = PeriodicTask(
            self.poll_once, self.config.poll_interval, name=f"log-tail:{name}",
        )
        self.gaps = 0
        self.polls = 0

    @property
    def active(self) -> bool:
        return self._task.running

    @property
    def fetching(self) -> bool:
        return self._fetching

    @property
    def closed(self) -> bool:
        return self._closed

    def on_change(self, callback: Callable[[], None]) -> None:
        self._listeners.append(callback)

    def _notify(self) -> None:
        for callback in list(self._listeners):
            try:
                callback()
            except Exception:
                logger.exception("Log tail listener failed")

    # -- lifecycle --

    def set_active(self, active: bool) -> None:
        """Start or stop incremental polling (e.g. console view shown/hidden)."""
        if self._closed:
            return
        if active:
            self._task.start()
        else:
            self._task.stop()

    def close(self) -> None:
        """Stop polling for good; in-flight results are discarded."""
        self._closed = True
        self._task.stop()
        self._listeners.clear()

    async def wait_closed(self) -> None:
        await self._task.wait_stopped()

    # -- fetching --

    async def bootstrap(self) -> int:
        """Seed the buffer with the initial window. Returns lines added."""
        lines = await self._fetch_lines(self.config.bootstrap_lines)
        if self._closed:
            return 0
        self.buffer.extend(self._to_entries(lines))
        self.buffer.advance(len(lines))
        self._remember(lines)
        logger.debug("Log tail %s bootstrapped with %d lines", self.name, len(lines))
        self._notify()
        return len(lines)

    async def poll_once(self) -> int:
        """Fetch the poll window and append unseen lines. Returns lines added."""
        if self._fetching or self._closed:
            return 0
        self._fetching = True
        try:
            lines = await self._fetch_lines(self.config.poll_lines)
        except ServerDeckError as e:
            logger.debug("Log tail %s poll failed, retrying next tick: %s", self.name, e)
            return 0
        finally:
            self._fetching = False

        if self._closed:
            return 0
        self.polls += 1

        new_lines, gap = self._unseen(lines)
        if gap:
            self.gaps += 1
            logger.warning(
                "Log tail %s fell behind: more than %d lines arrived between polls",
                self.name, self.config.poll_lines,
            )
            self.buffer.append(LogEntry(
                kind=EntryKind.ERROR,
                text=f"... log lines skipped: more than {self.config.poll_lines} "
                     f"lines arrived since the last refresh ...",
                level=LogLevel.ERROR,
            ))
        self.buffer.extend(self._to_entries(new_lines))
        self.buffer.advance(len(lines))
        if new_lines:
            self._remember(lines)
        if new_lines or gap:
            self._notify()
        return len(new_lines)

    def _unseen(self, lines: list[str]) -> tuple[list[str], bool]:
        seen = self.buffer.seen_count
        anchor = self._anchor
        if not self.config.gap_detection or not anchor:
            return lines[seen:], False

        if seen >= len(anchor) and lines[seen - len(anchor):seen] == anchor:
            return lines[seen:], False

        after = _find_after(lines, anchor)
        if after is not None:
            return lines[after:], False

        if len(lines) >= self.config.poll_lines:
            return lines, True

        logger.info("Log tail %s: remote log restarted", self.name)
        return lines, False

    def _remember(self, lines: list[str]) -> None:
        if lines:
            self._anchor = list(lines[-self.config.anchor_lines:])

    @staticmethod
    def _to_entries(lines: list[str]) -> list[LogEntry]:
        return [
            LogEntry(kind=EntryKind.LOG, text=line, level=classify_level(line))
            for line in lines
        ]

    # -- console --

    async def execute_command(self, command: str) -> str | None:
        """Run a console command, recording it and its outcome in the buffer."""
        command = command.strip()
        if not command or self._run_command is None:
            return None
        self.buffer.append(LogEntry(kind=EntryKind.COMMAND, text=command))
        self._notify()
        try:
            result = await self._run_command(command)
        except ServerDeckError as e:
            if not self._closed:
                self.buffer.append(LogEntry(kind=EntryKind.ERROR, text=str(e), level=LogLevel.ERROR))
                self._notify()
            return None
        if self._closed:
            return result
        self.buffer.append(LogEntry(
            kind=EntryKind.RESULT,
            text=result or "Command executed successfully",
        ))
        self._notify()
        return result

    # -- views --

    def view(self, level: LogLevel | str | None = None, search: str | None = None) -> list[LogEntry]:
        return self.buffer.view(level=level, search=search)
