#!/usr/bin/env python3
"""
Strata Lens - Derived Views over Git File Lifecycle Datasets (v1.0.0)

Turns the flat datasets written by the code-strata analyzer into the
queryable structures the visualization front-ends consume:

- Directory tree with per-node event and file counts (single pass)
- Activity grid: directory x time-bin matrix (day/week/month/quarter/year)
- Coupling index: bidirectional co-change adjacency with top-K queries
- Health scores: churn, author diversity and dormancy in one 0-100 score
- Temporal view: "visible as of time T" for timeline scrubbing

Everything is recomputed per dataset load. Long stages check a cancellation
token every 100 records, and PipelineRunner keeps only the latest request.

Author: Git Lifecycle Team
Version: 1.0.0
"""

import hashlib
import json
import logging
import math
import os
import sys
import threading
import time
from collections import Counter, defaultdict
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta, timezone
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import click
import psutil
import yaml
from colorama import Fore, Style, init as colorama_init
from tqdm import tqdm

colorama_init(autoreset=True)

logger = logging.getLogger(__name__)

# Version information
VERSION = "1.0.0"
SCHEMA_VERSION = "1.0.0"

# Cooperative cancellation is checked once per this many records
CANCEL_CHECK_INTERVAL = 100


# ============================================================================
# ERRORS
# ============================================================================


class StrataLensError(Exception):
    """Base class for all pipeline errors"""


class InvalidTimestamp(StrataLensError, ValueError):
    """A date or timestamp could not be parsed"""


class MissingDirectoryMapping(StrataLensError, KeyError):
    """An activity record references a directory id the tree does not know"""


class DataAmbiguity(StrataLensError):
    """A path is used both as a file and as a directory"""


class Aborted(StrataLensError):
    """A run was cancelled before it produced a consistent result"""


class DatasetShapeError(StrataLensError):
    """A dataset does not have the structure its adapter expects"""


# ============================================================================
# PROGRESS REPORTING
# ============================================================================


class ProgressReporter:
    """
    Console progress reporting for the CLI.
    - Color-coded output (colorama)
    - Progress bars with ETA (tqdm)
    - Quiet and verbose modes
    """

    def __init__(
        self, quiet: bool = False, verbose: bool = False, use_colors: bool = True
    ):
        self.quiet = quiet
        self.verbose = verbose
        self.use_colors = use_colors
        self.start_time = time.time()
        self.stage_times = {}

    def _colorize(self, text: str, color: str) -> str:
        """Apply color if enabled"""
        if self.use_colors:
            return f"{color}{text}{Style.RESET_ALL}"
        return text

    def stage_start(self, stage_name: str, message: str = ""):
        """Mark the start of a processing stage"""
        if self.quiet:
            return
        self.stage_times[stage_name] = time.time()

        separator = self._colorize("=" * 70, Fore.CYAN)
        print(f"\n{separator}")
        print(self._colorize(f"🔄 {stage_name}", Fore.BLUE + Style.BRIGHT))
        if message:
            print(f"   {message}")
        print(separator)

    def stage_complete(self, stage_name: str, stats: Optional[Dict] = None):
        """Mark completion of a processing stage"""
        if self.quiet:
            return
        elapsed = time.time() - self.stage_times.get(stage_name, time.time())
        print(
            self._colorize(
                f"✅ {stage_name} complete ({elapsed:.2f}s)", Fore.GREEN + Style.BRIGHT
            )
        )
        if stats and self.verbose:
            for key, value in stats.items():
                print(f"   {key}: {value}")

    def create_progress_bar(
        self, total: int, desc: str = "Processing", unit: str = " records"
    ) -> Optional[tqdm]:
        """Create a progress bar with ETA, or None when quiet"""
        if self.quiet:
            return None
        return tqdm(
            total=total,
            desc=self._colorize(desc, Fore.CYAN),
            unit=unit,
            ncols=100,
            bar_format="{l_bar}{bar}| {n_fmt}/{total_fmt} [{elapsed}<{remaining}, {rate_fmt}]",
        )

    def info(self, message: str):
        if not self.quiet:
            print(f"{self._colorize('ℹ️  ', Fore.BLUE)}{message}")

    def warning(self, message: str):
        if not self.quiet:
            print(f"{self._colorize('⚠️  ', Fore.YELLOW + Style.BRIGHT)}{message}")

    def error(self, message: str):
        """Display error message (always shown)"""
        print(
            self._colorize(f"❌ ERROR: {message}", Fore.RED + Style.BRIGHT),
            file=sys.stderr,
        )

    def success(self, message: str):
        if not self.quiet:
            print(self._colorize(f"✨ {message}", Fore.GREEN + Style.BRIGHT))

    def summary(self, stats: Dict[str, Any]):
        """Display final summary"""
        if self.quiet:
            return
        elapsed = time.time() - self.start_time

        separator = self._colorize("=" * 70, Fore.CYAN)
        print(f"\n{separator}")
        print(self._colorize("📊 VIEW SUMMARY", Fore.MAGENTA + Style.BRIGHT))
        print(separator)
        for key, value in stats.items():
            print(f"   {key}: {value}")
        print(f"\n{self._colorize(f'⏱️  Total time: {elapsed:.2f}s', Fore.YELLOW)}")
        print(f"{separator}\n")


# ============================================================================
# TIME BINNING
# ============================================================================

GRANULARITIES = ("day", "week", "month", "quarter", "year")

_MONTH_ABBR = (
    "Jan", "Feb", "Mar", "Apr", "May", "Jun",
    "Jul", "Aug", "Sep", "Oct", "Nov", "Dec",
)


def _check_granularity(granularity: str):
    if granularity not in GRANULARITIES:
        raise ValueError(
            f"Unknown granularity: {granularity!r} (expected one of {', '.join(GRANULARITIES)})"
        )


@lru_cache(maxsize=10000)
def _parse_iso(dt_string: str) -> datetime:
    """
    Parse an ISO 8601 string into an aware UTC datetime.
    Cached since commit dates repeat heavily across events.
    """
    text = dt_string.strip()
    if not text:
        raise InvalidTimestamp("Empty date string")
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    elif text.endswith("+0000"):
        text = text[:-5] + "+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError as e:
        raise InvalidTimestamp(f"Unparseable date: {dt_string!r}") from e
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    """
    Normalize a timestamp to an aware UTC datetime.

    Args:
        value: datetime (naive values are taken as UTC), date, epoch seconds,
            or an ISO 8601 string

    Raises:
        InvalidTimestamp: NaN/inf numbers, booleans, None and unparseable strings
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, bool) or value is None:
        raise InvalidTimestamp(f"Not a timestamp: {value!r}")
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            raise InvalidTimestamp(f"Non-finite timestamp: {value!r}")
        try:
            return datetime.fromtimestamp(value, timezone.utc)
        except (OverflowError, OSError, ValueError) as e:
            raise InvalidTimestamp(f"Timestamp out of range: {value!r}") from e
    if isinstance(value, str):
        return _parse_iso(value)
    raise InvalidTimestamp(f"Unsupported timestamp type: {type(value).__name__}")


def bin_start(timestamp: Any, granularity: str) -> datetime:
    """
    Return the canonical start of the bin containing ``timestamp``.

    Weeks start on Monday, quarters on Jan/Apr/Jul/Oct 1. All bins are UTC.
    """
    _check_granularity(granularity)
    dt = parse_timestamp(timestamp)
    day = dt.replace(hour=0, minute=0, second=0, microsecond=0)

    if granularity == "day":
        return day
    if granularity == "week":
        return day - timedelta(days=day.weekday())
    if granularity == "month":
        return day.replace(day=1)
    if granularity == "quarter":
        return day.replace(month=((day.month - 1) // 3) * 3 + 1, day=1)
    return day.replace(month=1, day=1)


def advance_bin(start: datetime, granularity: str) -> datetime:
    """Return the start of the bin following ``start`` (which must be a bin start)"""
    _check_granularity(granularity)
    if granularity == "day":
        return start + timedelta(days=1)
    if granularity == "week":
        return start + timedelta(weeks=1)
    if granularity == "year":
        return start.replace(year=start.year + 1)

    step = 1 if granularity == "month" else 3
    month_index = start.month - 1 + step
    return start.replace(year=start.year + month_index // 12, month=month_index % 12 + 1)


def bin_label(start: datetime, granularity: str) -> str:
    """Human label for a bin, e.g. 'Jan 15, 2024', 'W3, 2024' or 'Q1 2024'"""
    _check_granularity(granularity)
    month = _MONTH_ABBR[start.month - 1]

    if granularity == "day":
        return f"{month} {start.day}, {start.year}"
    if granularity == "week":
        iso_year, iso_week, _ = start.isocalendar()
        return f"W{iso_week}, {iso_year}"
    if granularity == "month":
        return f"{month} {start.year}"
    if granularity == "quarter":
        return f"Q{(start.month - 1) // 3 + 1} {start.year}"
    return str(start.year)


def enumerate_bins(start: Any, end: Any, granularity: str) -> List[datetime]:
    """
    Every bin start between two dates inclusive, ascending and without gaps.

    Raises:
        ValueError: if ``start`` is after ``end``
    """
    first = bin_start(start, granularity)
    last = bin_start(end, granularity)
    if first > last:
        raise ValueError(f"Bin range start {first.isoformat()} is after end {last.isoformat()}")

    bins = []
    current = first
    while current <= last:
        bins.append(current)
        current = advance_bin(current, granularity)
    return bins


# ============================================================================
# CANCELLATION
# ============================================================================


class CancellationToken:
    """
    Cooperative cancellation flag shared between a run and its caller.
    Stages call checkpoint() in their loops; the flag is only read every
    CANCEL_CHECK_INTERVAL iterations to keep the overhead bounded.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise Aborted("Run cancelled")

    def checkpoint(self, iteration: int):
        if iteration % CANCEL_CHECK_INTERVAL == 0:
            self.raise_if_cancelled()


def _checkpoint(token: Optional[CancellationToken], iteration: int):
    if token is not None:
        token.checkpoint(iteration)


# ============================================================================
# FILE CHANGE EVENTS
# ============================================================================

# Git status letters as written by `git log --diff-filter=AMDRTC`
STATUS_BY_OPERATION = {
    "A": "added",
    "M": "modified",
    "D": "deleted",
    "R": "renamed",
    "C": "copied",
    "T": "type_changed",
}
CHANGE_STATUSES = frozenset(STATUS_BY_OPERATION.values())


@dataclass(frozen=True)
class FileChangeEvent:
    """One (file, commit) pair from the lifecycle stream"""

    file_path: str
    status: str
    commit_hash: str
    timestamp: datetime
    author_name: str = ""
    author_email: str = ""
    commit_subject: str = ""
    old_path: Optional[str] = None
    similarity: Optional[int] = None

    @property
    def operation(self) -> str:
        """Single-letter git status (A/M/D/R/C/T)"""
        for letter, status in STATUS_BY_OPERATION.items():
            if status == self.status:
                return letter
        return "M"

    @property
    def author(self) -> str:
        return self.author_email or self.author_name or "unknown"


def normalize_status(value: str) -> str:
    """Accept either a git status letter (optionally with similarity, R100) or a status name"""
    if not value:
        raise ValueError("Empty change status")
    if value in CHANGE_STATUSES:
        return value
    letter = value[0].upper()
    if letter in STATUS_BY_OPERATION:
        return STATUS_BY_OPERATION[letter]
    raise ValueError(f"Unknown change status: {value!r}")


# ============================================================================
# DIRECTORY TREE
# ============================================================================


class PathSplitCache:
    """
    Memoized path splitting, owned by a single build run.
    A fresh cache per run keeps concurrent runs independent.
    """

    def __init__(self):
        self._parts: Dict[str, Tuple[str, ...]] = {}
        self.hits = 0
        self.misses = 0

    def split(self, path: str) -> Tuple[str, ...]:
        parts = self._parts.get(path)
        if parts is not None:
            self.hits += 1
            return parts
        self.misses += 1
        parts = tuple(p for p in path.split("/") if p)
        self._parts[path] = parts
        return parts

    def __len__(self):
        return len(self._parts)


@dataclass
class DirectoryNode:
    """A directory or file in the tree, identified by a stable integer id"""

    id: int
    name: str
    path: str
    level: int
    is_directory: bool
    parent_id: Optional[int] = None
    children: List[int] = field(default_factory=list)
    event_count: int = 0
    file_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "path": self.path,
            "type": "directory" if self.is_directory else "file",
            "level": self.level,
            "event_count": self.event_count,
            "file_count": self.file_count,
        }


@dataclass
class DirectoryTree:
    """
    Result of DirectoryTreeBuilder.build().
    ``nodes`` is indexed by node id; the root is node 0 with path "".
    """

    nodes: List[DirectoryNode]
    path_to_id: Dict[str, int]
    ambiguous_paths: List[str] = field(default_factory=list)
    warnings: Counter = field(default_factory=Counter)

    ROOT_ID = 0

    @property
    def root(self) -> DirectoryNode:
        return self.nodes[self.ROOT_ID]

    @property
    def node_count(self) -> int:
        return len(self.nodes)

    @property
    def total_files(self) -> int:
        return self.root.file_count

    def node(self, node_id: int) -> DirectoryNode:
        return self.nodes[node_id]

    def get(self, path: str) -> Optional[DirectoryNode]:
        """Node for a path, with empty segments dropped as the builder drops them"""
        node_id = self.path_to_id.get("/".join(p for p in path.split("/") if p))
        return self.nodes[node_id] if node_id is not None else None

    def children(self, node: DirectoryNode) -> List[DirectoryNode]:
        return [self.nodes[child_id] for child_id in node.children]

    def directories(self, include_root: bool = False) -> List[DirectoryNode]:
        return [
            n
            for n in self.nodes
            if n.is_directory and (include_root or n.id != self.ROOT_ID)
        ]

    def directory_paths_by_id(self) -> Dict[int, str]:
        """id -> path for every non-root directory (the aggregator's lookup)"""
        return {n.id: n.path for n in self.directories()}

    def ancestor_ids(self, node_id: int) -> List[int]:
        """Ids of the node's directories from the top level down, root excluded"""
        chain = []
        parent = self.nodes[node_id].parent_id
        while parent is not None and parent != self.ROOT_ID:
            chain.append(parent)
            parent = self.nodes[parent].parent_id
        chain.reverse()
        return chain

    def top_directories(self, max_count: int = 20) -> List[DirectoryNode]:
        """Non-root directories by event count descending, ties by path"""
        ranked = sorted(self.directories(), key=lambda n: (-n.event_count, n.path))
        return ranked[:max_count]

    def to_dict(self) -> Dict[str, Any]:
        """Nested JSON form (children inline), built without recursion"""
        rendered = {n.id: dict(n.to_dict(), children=[]) for n in self.nodes}
        for n in self.nodes:
            if n.parent_id is not None:
                rendered[n.parent_id]["children"].append(rendered[n.id])
        for n in self.nodes:
            if not n.is_directory:
                del rendered[n.id]["children"]

        return {
            "schema_version": SCHEMA_VERSION,
            "total_nodes": self.node_count,
            "total_files": self.total_files,
            "ambiguous_paths": list(self.ambiguous_paths),
            "tree": rendered[self.ROOT_ID],
        }


class DirectoryTreeBuilder:
    """
    Build the directory tree and its event counts in one walk per unique path.

    Occurrences are counted per path first, then each unique path is split
    once and its node chain walked once, adding that path's event count to
    every node on the way. Cost is linear in unique path segments plus events.

    A path used both as a file and as a directory is kept as a directory and
    flagged; with ``strict=True`` it raises DataAmbiguity instead.
    """

    def __init__(self, reporter: Optional[ProgressReporter] = None, strict: bool = False):
        self.reporter = reporter or ProgressReporter(quiet=True)
        self.strict = strict
        # Split cache of the most recent build; each build gets a fresh one
        self.last_cache: Optional[PathSplitCache] = None

    def build(
        self,
        paths: Iterable[Any],
        token: Optional[CancellationToken] = None,
    ) -> DirectoryTree:
        """
        Args:
            paths: file paths, or FileChangeEvents (one per event, in order)
            token: optional cancellation token

        Returns:
            DirectoryTree with bottom-up file counts
        """
        cache = self.last_cache = PathSplitCache()
        occurrences: Counter = Counter()
        for i, item in enumerate(paths):
            _checkpoint(token, i)
            path = item.file_path if isinstance(item, FileChangeEvent) else item
            occurrences[path] += 1

        root = DirectoryNode(id=0, name="root", path="", level=0, is_directory=True)
        nodes = [root]
        path_to_id = {"": 0}
        ambiguous: List[str] = []
        seen_ambiguous = set()
        warnings: Counter = Counter()

        def flag(path: str):
            if self.strict:
                raise DataAmbiguity(f"Path used as both file and directory: {path}")
            if path not in seen_ambiguous:
                seen_ambiguous.add(path)
                ambiguous.append(path)
                warnings["data_ambiguity"] += 1
                logger.warning("Path used as both file and directory: %s", path)
                self.reporter.warning(
                    f"Path used as both file and directory, treating as directory: {path}"
                )

        for i, (raw_path, count) in enumerate(occurrences.items()):
            _checkpoint(token, i)
            parts = cache.split(raw_path)
            if not parts:
                warnings["empty_path"] += count
                continue

            root.event_count += count
            current = root
            current_path = ""
            last = len(parts) - 1
            for depth, part in enumerate(parts):
                current_path = f"{current_path}/{part}" if current_path else part
                is_leaf = depth == last

                node_id = path_to_id.get(current_path)
                if node_id is None:
                    node = DirectoryNode(
                        id=len(nodes),
                        name=part,
                        path=current_path,
                        level=depth + 1,
                        is_directory=not is_leaf,
                        parent_id=current.id,
                    )
                    nodes.append(node)
                    path_to_id[current_path] = node.id
                    current.children.append(node.id)
                else:
                    node = nodes[node_id]
                    if not is_leaf and not node.is_directory:
                        # A file gains descendants: directory wins
                        node.is_directory = True
                        flag(current_path)
                    elif is_leaf and node.is_directory:
                        flag(current_path)

                node.event_count += count
                current = node

        # Children always have larger ids than their parents
        for node in nodes:
            node.file_count = 0 if node.is_directory else 1
        for node in reversed(nodes):
            if node.parent_id is not None:
                nodes[node.parent_id].file_count += node.file_count

        logger.debug(
            "Built directory tree: %d nodes, %d files, %d ambiguous paths",
            len(nodes),
            root.file_count,
            len(ambiguous),
        )
        return DirectoryTree(
            nodes=nodes,
            path_to_id=path_to_id,
            ambiguous_paths=ambiguous,
            warnings=warnings,
        )


# ============================================================================
# ACTIVITY AGGREGATION
# ============================================================================

# Metrics a grid can be scaled by; each names an ActivityCell counter
METRICS = ("events", "commits", "authors")

# Which grid counter each change status feeds
_ADDED_STATUSES = frozenset({"added", "copied"})
_DELETED_STATUSES = frozenset({"deleted"})


@dataclass(frozen=True)
class ActivityRecord:
    """
    One row of the pre-bucketed activity feed: a directory's counts for one date.
    ``date`` is left as received so the aggregator can count unparseable values.
    """

    date: Any
    directory_id: int
    added: int = 0
    modified: int = 0
    deleted: int = 0
    unique_authors: int = 0
    commits: int = 0
    top_contributors: Tuple[str, ...] = ()
    top_files: Tuple[str, ...] = ()

    @property
    def events(self) -> int:
        return self.added + self.modified + self.deleted

    @classmethod
    def from_dict(cls, row: Mapping[str, Any]) -> "ActivityRecord":
        """
        Build from a feed row. Accepts the compact keys (d, id, a, m, del, au,
        c, tc, tf) as well as the long names.
        """

        def pick(long_key, short_key, default=None):
            if long_key in row:
                return row[long_key]
            return row.get(short_key, default)

        directory_id = pick("directory_id", "id")
        if directory_id is None:
            raise KeyError("Activity record has no directory id")

        return cls(
            date=pick("date", "d"),
            directory_id=int(directory_id),
            added=int(pick("added", "a", 0) or 0),
            modified=int(pick("modified", "m", 0) or 0),
            deleted=int(pick("deleted", "del", 0) or 0),
            unique_authors=int(pick("unique_authors", "au", 0) or 0),
            commits=int(pick("commits", "c", 0) or 0),
            top_contributors=tuple(pick("top_contributors", "tc", ()) or ()),
            top_files=tuple(pick("top_files", "tf", ()) or ()),
        )


@dataclass(frozen=True)
class ActivityCell:
    """Counts for one (directory, time bin) pair of the grid"""

    directory: str
    time_bin: datetime
    events: int = 0
    commits: int = 0
    authors: int = 0
    creations: int = 0
    deletions: int = 0
    modifications: int = 0
    value: int = 0
    top_contributors: Tuple[str, ...] = ()
    top_files: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "directory": self.directory,
            "time_bin": self.time_bin.isoformat(),
            "events": self.events,
            "commits": self.commits,
            "authors": self.authors,
            "creations": self.creations,
            "deletions": self.deletions,
            "modifications": self.modifications,
            "value": self.value,
            "top_contributors": list(self.top_contributors),
            "top_files": list(self.top_files),
        }


class _CellAccumulator:
    """Mutable counters for one cell while records are folded in"""

    __slots__ = (
        "commits",
        "authors",
        "creations",
        "deletions",
        "modifications",
        "contributors",
        "files",
    )

    def __init__(self):
        self.commits = 0
        self.authors = 0
        self.creations = 0
        self.deletions = 0
        self.modifications = 0
        self.contributors = Counter()
        self.files = Counter()

    def fold(self, record: ActivityRecord):
        self.commits += record.commits
        self.creations += record.added
        self.modifications += record.modified
        self.deletions += record.deleted
        # Author counts are already distinct per record and cannot be summed
        # without double counting, so the cell keeps the high-water mark.
        self.authors = max(self.authors, record.unique_authors)
        self.contributors.update(record.top_contributors)
        self.files.update(record.top_files)


def _top_items(counts: Counter, limit: int) -> Tuple[str, ...]:
    ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    return tuple(name for name, _ in ranked[:limit])


@dataclass(frozen=True)
class ActivityGrid:
    """
    Dense directory x time-bin matrix: ``cells[i][j]`` is the cell for
    ``directories[i]`` in ``time_bins[j]``. Every pair is present.
    """

    directories: Tuple[str, ...]
    directory_ids: Tuple[int, ...]
    time_bins: Tuple[datetime, ...]
    cells: Tuple[Tuple[ActivityCell, ...], ...]
    max_value: int
    metric: str
    granularity: str
    warnings: Dict[str, int] = field(default_factory=dict)

    @property
    def labels(self) -> List[str]:
        return [bin_label(b, self.granularity) for b in self.time_bins]

    @property
    def is_empty(self) -> bool:
        return not self.directories or not self.time_bins

    def row(self, directory: str) -> Tuple[ActivityCell, ...]:
        if directory not in self.directories:
            raise MissingDirectoryMapping(directory)
        return self.cells[self.directories.index(directory)]

    def cell(self, directory: str, time_bin: Any) -> ActivityCell:
        """Look up a cell by directory path and any timestamp inside the bin"""
        start = bin_start(time_bin, self.granularity)
        return self.row(directory)[self.time_bins.index(start)]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema_version": SCHEMA_VERSION,
            "granularity": self.granularity,
            "metric": self.metric,
            "max_value": self.max_value,
            "directories": list(self.directories),
            "directory_ids": list(self.directory_ids),
            "time_bins": [b.isoformat() for b in self.time_bins],
            "labels": self.labels,
            "cells": [[cell.to_dict() for cell in row] for row in self.cells],
            "warnings": dict(self.warnings),
        }

    def to_dataframe(self):
        """Long-format pandas DataFrame, one row per cell"""
        import pandas as pd

        columns = [
            "directory",
            "time_bin",
            "events",
            "commits",
            "authors",
            "creations",
            "deletions",
            "modifications",
            "value",
        ]
        rows = [
            [getattr(cell, name) for name in columns]
            for row in self.cells
            for cell in row
        ]
        return pd.DataFrame(rows, columns=columns)


class ActivityAggregator:
    """
    Fold activity records into a dense (directory x time-bin) grid.

    Steps:
    1. Resolve record directories; unknown ids are dropped and counted
    2. Pick the top N directories by total activity (ties by path)
    3. Fold records into (directory, bin) cells, max-ing author counts
    4. Sort the observed bins (or the full range with fill_gaps)
    5. Fill every (directory, bin) pair and record the metric maximum
    """

    def __init__(
        self,
        granularity: str = "week",
        metric: str = "events",
        top_n: int = 20,
        top_items: int = 5,
        fill_gaps: bool = False,
        reporter: Optional[ProgressReporter] = None,
    ):
        _check_granularity(granularity)
        if metric not in METRICS:
            raise ValueError(
                f"Unknown metric: {metric!r} (expected one of {', '.join(METRICS)})"
            )
        if top_n < 1:
            raise ValueError("top_n must be at least 1")

        self.granularity = granularity
        self.metric = metric
        self.top_n = top_n
        self.top_items = top_items
        self.fill_gaps = fill_gaps
        self.reporter = reporter or ProgressReporter(quiet=True)

    def records_from_events(
        self,
        events: Sequence[FileChangeEvent],
        tree: DirectoryTree,
        token: Optional[CancellationToken] = None,
        warnings: Optional[Counter] = None,
    ) -> List[ActivityRecord]:
        """
        Pre-bucket raw events into daily records for every ancestor directory
        of each file, so raw events and the activity feed fold the same way.
        Events the tree does not know, or with bad timestamps, are counted in
        ``warnings`` and skipped.
        """
        if warnings is None:
            warnings = Counter()
        buckets = defaultdict(
            lambda: {
                "added": 0,
                "modified": 0,
                "deleted": 0,
                "authors": set(),
                "commits": set(),
                "contributors": Counter(),
                "files": Counter(),
            }
        )
        chains: Dict[int, List[int]] = {}

        for i, event in enumerate(events):
            _checkpoint(token, i)
            node = tree.get(event.file_path)
            if node is None:
                warnings["missing_directory_mapping"] += 1
                logger.debug("Dropping event for unknown path %s", event.file_path)
                continue
            try:
                day = bin_start(event.timestamp, "day")
            except InvalidTimestamp:
                warnings["invalid_timestamp"] += 1
                logger.debug("Dropping event with bad timestamp %r", event.timestamp)
                continue

            chain = chains.get(node.id)
            if chain is None:
                chain = tree.ancestor_ids(node.id)
                if node.is_directory:
                    chain.append(node.id)
                chains[node.id] = chain

            for directory_id in chain:
                bucket = buckets[(directory_id, day)]
                if event.status in _ADDED_STATUSES:
                    bucket["added"] += 1
                elif event.status in _DELETED_STATUSES:
                    bucket["deleted"] += 1
                else:
                    bucket["modified"] += 1
                bucket["authors"].add(event.author)
                bucket["commits"].add(event.commit_hash)
                bucket["contributors"][event.author_name or event.author] += 1
                bucket["files"][event.file_path] += 1

        records = []
        for (directory_id, day), bucket in sorted(
            buckets.items(), key=lambda item: (item[0][1], item[0][0])
        ):
            records.append(
                ActivityRecord(
                    date=day,
                    directory_id=directory_id,
                    added=bucket["added"],
                    modified=bucket["modified"],
                    deleted=bucket["deleted"],
                    unique_authors=len(bucket["authors"]),
                    commits=len(bucket["commits"]),
                    top_contributors=_top_items(bucket["contributors"], self.top_items),
                    top_files=_top_items(bucket["files"], self.top_items),
                )
            )
        return records

    def aggregate(
        self,
        records: Iterable[ActivityRecord],
        id_to_path: Mapping[int, str],
        token: Optional[CancellationToken] = None,
        ranking: Optional[Mapping[str, float]] = None,
        warnings: Optional[Mapping[str, int]] = None,
    ) -> ActivityGrid:
        """
        Args:
            records: pre-bucketed activity records
            id_to_path: directory id -> path (DirectoryTree.directory_paths_by_id)
            token: optional cancellation token; cancellation raises Aborted
            ranking: optional path -> score used instead of record totals to
                choose the top directories (e.g. directory_stats activity_score)
            warnings: counts already collected upstream, carried into the grid

        Returns:
            ActivityGrid with zero-valued cells wherever no record landed
        """
        warnings = Counter(warnings or {})
        resolved: List[Tuple[str, datetime, ActivityRecord]] = []
        totals: Counter = Counter()

        for i, record in enumerate(records):
            _checkpoint(token, i)
            path = id_to_path.get(record.directory_id)
            if path is None:
                warnings["missing_directory_mapping"] += 1
                logger.debug("Dropping activity for unknown directory id %s", record.directory_id)
                continue
            try:
                when = parse_timestamp(record.date)
            except InvalidTimestamp:
                warnings["invalid_timestamp"] += 1
                logger.debug("Dropping activity with bad date %r", record.date)
                continue
            resolved.append((path, when, record))
            totals[path] += self._activity_weight(record)

        directories = self._select_directories(totals, id_to_path, ranking)
        selected = set(directories)

        accumulators: Dict[Tuple[str, datetime], _CellAccumulator] = {}
        observed = set()
        for i, (path, when, record) in enumerate(resolved):
            _checkpoint(token, i)
            if path not in selected:
                continue
            start = bin_start(when, self.granularity)
            observed.add(start)
            key = (path, start)
            acc = accumulators.get(key)
            if acc is None:
                acc = accumulators[key] = _CellAccumulator()
            acc.fold(record)

        if observed and self.fill_gaps:
            time_bins = enumerate_bins(min(observed), max(observed), self.granularity)
        else:
            time_bins = sorted(observed)

        if token is not None:
            token.raise_if_cancelled()

        path_to_id = {path: directory_id for directory_id, path in id_to_path.items()}
        max_value = 0
        rows = []
        for path in directories:
            row = []
            for start in time_bins:
                cell = self._make_cell(path, start, accumulators.get((path, start)))
                max_value = max(max_value, cell.value)
                row.append(cell)
            rows.append(tuple(row))

        if warnings:
            self.reporter.warning(
                f"Activity aggregation skipped {sum(warnings.values())} record(s): "
                + ", ".join(f"{k}={v}" for k, v in sorted(warnings.items()))
            )

        return ActivityGrid(
            directories=tuple(directories),
            directory_ids=tuple(path_to_id[path] for path in directories),
            time_bins=tuple(time_bins),
            cells=tuple(rows),
            max_value=max_value,
            metric=self.metric,
            granularity=self.granularity,
            warnings=dict(warnings),
        )

    def aggregate_events(
        self,
        events: Sequence[FileChangeEvent],
        tree: DirectoryTree,
        token: Optional[CancellationToken] = None,
        ranking: Optional[Mapping[str, float]] = None,
    ) -> ActivityGrid:
        """Convenience: pre-bucket raw events then aggregate them"""
        warnings: Counter = Counter()
        records = self.records_from_events(events, tree, token=token, warnings=warnings)
        return self.aggregate(
            records,
            tree.directory_paths_by_id(),
            token=token,
            ranking=ranking,
            warnings=warnings,
        )

    def _activity_weight(self, record: ActivityRecord) -> int:
        """Ranking weight of a record: its change count, else the metric's counter"""
        if record.events:
            return record.events
        # Weekly activity maps only carry commit and author counts
        if self.metric == "authors":
            return record.unique_authors
        return record.commits

    def _select_directories(
        self,
        totals: Mapping[str, int],
        id_to_path: Mapping[int, str],
        ranking: Optional[Mapping[str, float]],
    ) -> List[str]:
        if ranking:
            known = set(id_to_path.values())
            scored = [(path, score) for path, score in ranking.items() if path in known]
        else:
            scored = list(totals.items())
        scored.sort(key=lambda item: (-item[1], item[0]))
        return [path for path, _ in scored[: self.top_n]]

    def _make_cell(
        self, path: str, start: datetime, acc: Optional[_CellAccumulator]
    ) -> ActivityCell:
        if acc is None:
            return ActivityCell(directory=path, time_bin=start)

        events = acc.creations + acc.modifications + acc.deletions
        values = {"events": events, "commits": acc.commits, "authors": acc.authors}
        return ActivityCell(
            directory=path,
            time_bin=start,
            events=events,
            commits=acc.commits,
            authors=acc.authors,
            creations=acc.creations,
            deletions=acc.deletions,
            modifications=acc.modifications,
            value=values[self.metric],
            top_contributors=_top_items(acc.contributors, self.top_items),
            top_files=_top_items(acc.files, self.top_items),
        )


# ============================================================================
# COUPLING INDEX
# ============================================================================

STRONG_COUPLING_THRESHOLD = 0.5


@dataclass(frozen=True)
class CouplingEdge:
    """Undirected co-change edge between two files"""

    source: str
    target: str
    strength: float
    cochange_count: int = 0


@dataclass(frozen=True)
class CouplingPartner:
    """Directed view of an edge, as seen from one file"""

    file_path: str
    strength: float
    cochange_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.file_path,
            "strength": self.strength,
            "cochange_count": self.cochange_count,
        }


@dataclass(frozen=True)
class CouplingMetrics:
    max_strength: float = 0.0
    avg_strength: float = 0.0
    total_partners: int = 0
    strong_partner_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_strength": round(self.max_strength, 4),
            "avg_strength": round(self.avg_strength, 4),
            "total_partners": self.total_partners,
            "strong_partner_count": self.strong_partner_count,
        }


_ZERO_METRICS = CouplingMetrics()


class CouplingIndex:
    """
    Read-only adjacency index produced by CouplingIndexer.build().
    Partner lists are sorted once (strength descending, then path) and metrics
    are precomputed, so queries only slice.
    """

    def __init__(
        self,
        partners: Dict[str, Tuple[CouplingPartner, ...]],
        metrics: Dict[str, CouplingMetrics],
        warnings: Optional[Mapping[str, int]] = None,
        strong_threshold: float = STRONG_COUPLING_THRESHOLD,
    ):
        self._partners = partners
        self._metrics = metrics
        self.warnings = dict(warnings or {})
        self.strong_threshold = strong_threshold

    def __contains__(self, file_path: str) -> bool:
        return file_path in self._partners

    def __len__(self) -> int:
        return len(self._partners)

    @property
    def files(self) -> List[str]:
        return sorted(self._partners)

    def top_partners(self, file_path: str, k: Optional[int] = None) -> List[CouplingPartner]:
        """First k partners by strength; every partner when k is None"""
        partners = self._partners.get(file_path, ())
        if k is None:
            return list(partners)
        return list(partners[: max(k, 0)])

    def partners_above(self, file_path: str, min_strength: float = 0.0) -> List[CouplingPartner]:
        """Partners at or above a strength threshold (lists are sorted, so stop early)"""
        result = []
        for partner in self._partners.get(file_path, ()):
            if partner.strength < min_strength:
                break
            result.append(partner)
        return result

    def metrics(self, file_path: str) -> CouplingMetrics:
        """Cached metrics; isolated and unknown files get an all-zero record"""
        return self._metrics.get(file_path, _ZERO_METRICS)

    def has_strong_coupling(self, file_path: str, threshold: Optional[float] = None) -> bool:
        limit = self.strong_threshold if threshold is None else threshold
        return self.metrics(file_path).max_strength >= limit

    def filter_files(
        self,
        file_paths: Iterable[str],
        min_max_strength: float = 0.0,
        min_avg_strength: float = 0.0,
        min_partners: int = 0,
    ) -> List[str]:
        """Keep files meeting every coupling criterion"""
        kept = []
        for path in file_paths:
            m = self.metrics(path)
            if (
                m.max_strength >= min_max_strength
                and m.avg_strength >= min_avg_strength
                and m.total_partners >= min_partners
            ):
                kept.append(path)
        return kept

    def network_stats(self) -> Dict[str, Any]:
        if not self._metrics:
            return {
                "total_files": 0,
                "total_edges": 0,
                "avg_partners_per_file": 0.0,
                "max_partners_per_file": 0,
                "strongly_coupled_files": 0,
            }

        partner_counts = [m.total_partners for m in self._metrics.values()]
        return {
            "total_files": len(self._metrics),
            # each undirected edge appears in two partner lists
            "total_edges": sum(partner_counts) // 2,
            "avg_partners_per_file": round(sum(partner_counts) / len(partner_counts), 4),
            "max_partners_per_file": max(partner_counts),
            "strongly_coupled_files": sum(
                1 for m in self._metrics.values() if m.max_strength > self.strong_threshold
            ),
        }

    def to_dict(self, max_partners: Optional[int] = None) -> Dict[str, Any]:
        return {
            "schema_version": SCHEMA_VERSION,
            "strong_threshold": self.strong_threshold,
            "statistics": self.network_stats(),
            "warnings": dict(self.warnings),
            "files": {
                path: {
                    "metrics": self.metrics(path).to_dict(),
                    "partners": [p.to_dict() for p in self.top_partners(path, max_partners)],
                }
                for path in self.files
            },
        }


class CouplingIndexer:
    """
    Build a CouplingIndex from co-change edges.
    Both directions of every edge are inserted; partner lists are sorted and
    metrics computed once per file.
    """

    def __init__(
        self,
        strong_threshold: float = STRONG_COUPLING_THRESHOLD,
        reporter: Optional[ProgressReporter] = None,
    ):
        self.strong_threshold = strong_threshold
        self.reporter = reporter or ProgressReporter(quiet=True)

    def build(
        self,
        edges: Iterable[CouplingEdge],
        token: Optional[CancellationToken] = None,
    ) -> CouplingIndex:
        warnings: Counter = Counter()
        strongest: Dict[Tuple[str, str], CouplingEdge] = {}

        for i, edge in enumerate(edges):
            _checkpoint(token, i)
            problem = self._validate(edge)
            if problem:
                warnings[problem] += 1
                logger.debug("Skipping coupling edge %r: %s", edge, problem)
                continue

            pair = (edge.source, edge.target) if edge.source < edge.target else (edge.target, edge.source)
            seen = strongest.get(pair)
            if seen is not None:
                warnings["duplicate_edge"] += 1
                if seen.strength >= edge.strength:
                    continue
            strongest[pair] = edge

        adjacency: Dict[str, List[CouplingPartner]] = defaultdict(list)
        for i, edge in enumerate(strongest.values()):
            _checkpoint(token, i)
            strength = float(edge.strength)
            adjacency[edge.source].append(
                CouplingPartner(edge.target, strength, edge.cochange_count)
            )
            adjacency[edge.target].append(
                CouplingPartner(edge.source, strength, edge.cochange_count)
            )

        partners: Dict[str, Tuple[CouplingPartner, ...]] = {}
        metrics: Dict[str, CouplingMetrics] = {}
        for i, (path, entries) in enumerate(adjacency.items()):
            _checkpoint(token, i)
            entries.sort(key=lambda p: (-p.strength, p.file_path))
            partners[path] = tuple(entries)
            strengths = [p.strength for p in entries]
            metrics[path] = CouplingMetrics(
                max_strength=strengths[0],
                avg_strength=sum(strengths) / len(strengths),
                total_partners=len(strengths),
                strong_partner_count=sum(1 for s in strengths if s > self.strong_threshold),
            )

        if warnings:
            self.reporter.warning(
                f"Coupling index skipped {sum(warnings.values())} edge(s): "
                + ", ".join(f"{k}={v}" for k, v in sorted(warnings.items()))
            )

        return CouplingIndex(
            partners, metrics, warnings=warnings, strong_threshold=self.strong_threshold
        )

    @staticmethod
    def _validate(edge: CouplingEdge) -> Optional[str]:
        if not edge.source or not edge.target:
            return "invalid_edge"
        if edge.source == edge.target:
            return "self_loop"
        try:
            strength = float(edge.strength)
        except (TypeError, ValueError):
            return "invalid_edge"
        if not math.isfinite(strength) or not 0.0 <= strength <= 1.0:
            return "invalid_edge"
        return None


def cochange_edges_from_events(
    events: Iterable[FileChangeEvent],
    min_cochange_count: int = 2,
    max_pairs: Optional[int] = None,
) -> List[CouplingEdge]:
    """
    Derive co-change edges from raw events: files changed in the same commit.
    Strength is the pair's co-change count over the number of commits that
    touched two or more files.
    """
    commit_files: Dict[str, set] = defaultdict(set)
    for event in events:
        commit_files[event.commit_hash].add(event.file_path)

    multi_file_commits = [sorted(files) for files in commit_files.values() if len(files) >= 2]
    if not multi_file_commits:
        return []

    cochange_pairs: Counter = Counter()
    pair_count = 0
    for files in multi_file_commits:
        for i, file1 in enumerate(files):
            for file2 in files[i + 1 :]:
                cochange_pairs[(file1, file2)] += 1
                pair_count += 1
                if max_pairs and pair_count >= max_pairs:
                    break
            if max_pairs and pair_count >= max_pairs:
                break
        if max_pairs and pair_count >= max_pairs:
            break

    total = len(multi_file_commits)
    edges = [
        CouplingEdge(file1, file2, round(count / total, 4), count)
        for (file1, file2), count in cochange_pairs.items()
        if count >= min_cochange_count
    ]
    edges.sort(key=lambda e: (-e.strength, e.source, e.target))
    return edges


# ============================================================================
# HEALTH SCORING
# ============================================================================


@dataclass(frozen=True)
class HealthScoreInputs:
    total_commits: int
    unique_authors: int
    operations: Mapping[str, int]
    age_days: float = 0.0
    days_since_last_modified: Optional[float] = None


@dataclass(frozen=True)
class HealthFactor:
    """
    One weighted component of the composite score.
    ``value`` is the raw input: churn rate, author count, or file age in days.
    The age score itself is computed from days since the last modification.
    """

    value: float
    score: float
    weight: float

    def to_dict(self) -> Dict[str, float]:
        return {"value": self.value, "score": round(self.score, 2), "weight": self.weight}


@dataclass(frozen=True)
class HealthScoreResult:
    score: int
    category: str
    churn_rate: float
    bus_factor: str
    churn: HealthFactor
    authors: HealthFactor
    age: HealthFactor

    @property
    def factors(self) -> Dict[str, HealthFactor]:
        return {"churn": self.churn, "authors": self.authors, "age": self.age}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "category": self.category,
            "churn_rate": round(self.churn_rate, 4),
            "bus_factor": self.bus_factor,
            "factors": {name: f.to_dict() for name, f in self.factors.items()},
            "insight": HealthScorer.insight(self),
        }


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


class HealthScorer:
    """
    Composite 0-100 file health score.

    Factors:
    - Churn rate (40%): share of operations that are modifications; low is healthy
    - Author diversity (30%): more contributors is healthier, with diminishing returns
    - Age (30%): penalty for days since the last modification

    Categories: 0-30 critical, 31-60 medium, 61-100 healthy.
    """

    WEIGHTS = {"churn": 0.4, "authors": 0.3, "age": 0.3}

    DORMANT_THRESHOLD_DAYS = 180
    VERY_DORMANT_THRESHOLD_DAYS = 365

    CRITICAL_MAX = 30
    MEDIUM_MAX = 60

    @classmethod
    def calculate(cls, inputs: HealthScoreInputs) -> HealthScoreResult:
        churn_rate = cls.churn_rate(inputs.operations)
        churn_score = cls.score_churn(churn_rate)
        author_score = cls.score_authors(inputs.unique_authors)
        dormant_days = inputs.days_since_last_modified or 0
        age_score = cls.score_age(dormant_days)

        total = _round_half_up(
            churn_score * cls.WEIGHTS["churn"]
            + author_score * cls.WEIGHTS["authors"]
            + age_score * cls.WEIGHTS["age"]
        )
        score = max(0, min(100, total))

        return HealthScoreResult(
            score=score,
            category=cls.categorize(score),
            churn_rate=churn_rate,
            bus_factor=cls.bus_factor(inputs.unique_authors),
            churn=HealthFactor(churn_rate, churn_score, cls.WEIGHTS["churn"]),
            authors=HealthFactor(inputs.unique_authors, author_score, cls.WEIGHTS["authors"]),
            age=HealthFactor(inputs.age_days, age_score, cls.WEIGHTS["age"]),
        )

    @classmethod
    def batch_calculate(cls, inputs: Iterable[HealthScoreInputs]) -> List[HealthScoreResult]:
        return [cls.calculate(item) for item in inputs]

    @staticmethod
    def churn_rate(operations: Mapping[str, int]) -> float:
        """M / (M + A + D + R); 0 when nothing was recorded"""
        m = operations.get("M", 0) or 0
        total = m + sum(operations.get(op, 0) or 0 for op in ("A", "D", "R"))
        if total <= 0:
            return 0.0
        return m / total

    @staticmethod
    def score_churn(churn_rate: float) -> float:
        """
        Inverse piecewise-linear curve:
        - 0-30% churn: 90-100 (mostly additions)
        - 30-50% churn: 70-90 (normal maintenance)
        - 50-70% churn: 40-70 (high maintenance)
        - 70-100% churn: 0-40 (constant rewrites)
        """
        if churn_rate <= 0.3:
            return 90 + (0.3 - churn_rate) * 33
        if churn_rate <= 0.5:
            return 70 + (0.5 - churn_rate) * 100
        if churn_rate <= 0.7:
            return 40 + (0.7 - churn_rate) * 150
        return max(0.0, 40 - (churn_rate - 0.7) * 133)

    @staticmethod
    def score_authors(unique_authors: int) -> float:
        """
        - 0 authors: 0
        - 1 author: 30 (bus factor risk)
        - 2 authors: 60
        - 3-5 authors: linear 60-90
        - more than 5: 90 + 10*log10(n - 4), capped at 100
        """
        if unique_authors <= 0:
            return 0.0
        if unique_authors == 1:
            return 30.0
        if unique_authors == 2:
            return 60.0
        if unique_authors <= 5:
            return 60 + ((unique_authors - 2) / 3) * 30
        return min(100.0, 90 + math.log10(unique_authors - 4) * 10)

    @classmethod
    def score_age(cls, dormant_days: float) -> float:
        """
        - not dormant: 100
        - up to 180 days: 100 -> 90
        - 180-365 days: 90 -> 80
        - beyond 365 days: 80 -> 70 over the following year, floor 70
        """
        dormant_days = max(0.0, dormant_days)
        if dormant_days == 0:
            return 100.0
        if dormant_days <= cls.DORMANT_THRESHOLD_DAYS:
            return 100 - (dormant_days / cls.DORMANT_THRESHOLD_DAYS) * 10
        if dormant_days <= cls.VERY_DORMANT_THRESHOLD_DAYS:
            span = cls.VERY_DORMANT_THRESHOLD_DAYS - cls.DORMANT_THRESHOLD_DAYS
            return 90 - ((dormant_days - cls.DORMANT_THRESHOLD_DAYS) / span) * 10
        excess_days = dormant_days - cls.VERY_DORMANT_THRESHOLD_DAYS
        return max(70.0, 80 - min(excess_days / 365, 1) * 10)

    @classmethod
    def categorize(cls, score: float) -> str:
        if score <= cls.CRITICAL_MAX:
            return "critical"
        if score <= cls.MEDIUM_MAX:
            return "medium"
        return "healthy"

    @staticmethod
    def bus_factor(unique_authors: int) -> str:
        if unique_authors < 2:
            return "high-risk"
        if unique_authors < 4:
            return "medium-risk"
        return "low-risk"

    @staticmethod
    def insight(result: HealthScoreResult) -> str:
        """Canned explanation; rules are checked in order and the first match wins"""
        if result.category == "critical":
            if result.churn_rate > 0.7 and result.bus_factor == "high-risk":
                return (
                    "Critical technical debt detected. High churn with low contributor "
                    "diversity suggests reactive maintenance rather than planned evolution."
                )
            if result.churn_rate > 0.7:
                return (
                    "High instability detected. Frequent rewrites indicate the file may "
                    "need refactoring or has unclear requirements."
                )
            if result.bus_factor == "high-risk":
                return (
                    "Knowledge silo detected. Single contributor creates organizational "
                    "risk if they leave the project."
                )
            return "This file requires immediate attention. Consider refactoring or increasing test coverage."

        if result.category == "medium":
            if result.age.score < 70:
                return (
                    "File has been dormant for extended period. May be stable/complete, "
                    "or candidate for deprecation review."
                )
            if result.churn_rate > 0.5:
                return "Moderate instability. Monitor for patterns - may need architectural improvements."
            return (
                "File is in acceptable condition but could benefit from additional "
                "contributors or refactoring."
            )

        return "Healthy file with good maintenance patterns. Continue current practices."


# ============================================================================
# TEMPORAL ENRICHMENT
# ============================================================================

DORMANCY_THRESHOLD_DAYS = 180


@dataclass(frozen=True)
class DateRange:
    """Global first/last activity dates of a dataset"""

    start: datetime
    end: datetime

    def __post_init__(self):
        object.__setattr__(self, "start", parse_timestamp(self.start))
        object.__setattr__(self, "end", parse_timestamp(self.end))

    @property
    def span_seconds(self) -> float:
        return (self.end - self.start).total_seconds()

    @classmethod
    def from_temporal_daily(cls, data: Mapping[str, Any]) -> "DateRange":
        """
        Range of a temporal_daily dataset. ``days`` may be the dict written by
        the analyzer (keyed by date) or a plain list of day rows.

        Raises:
            DatasetShapeError: no usable dates
        """
        if not isinstance(data, Mapping):
            raise DatasetShapeError("temporal_daily must be a JSON object")
        days = data.get("days")
        if isinstance(days, Mapping):
            rows = list(days.values())
        elif isinstance(days, list):
            rows = days
        else:
            raise DatasetShapeError("temporal_daily has no 'days' collection")

        dates = []
        for row in rows:
            value = row.get("date") if isinstance(row, Mapping) else None
            try:
                dates.append(parse_timestamp(value))
            except InvalidTimestamp:
                logger.debug("Ignoring temporal_daily row with bad date %r", value)
        if not dates:
            raise DatasetShapeError("temporal_daily contains no dates")
        return cls(min(dates), max(dates))

    @classmethod
    def from_files(cls, files: Iterable["EnrichedFile"]) -> "DateRange":
        """Fallback range spanning every file's first and last change"""
        starts = []
        ends = []
        for f in files:
            starts.append(f.first_seen)
            ends.append(f.last_modified)
        if not starts:
            raise DatasetShapeError("Cannot derive a date range from zero files")
        return cls(min(starts), max(ends))


@dataclass(frozen=True)
class EnrichedFile:
    """Per-file summary with whatever health and coupling data is available"""

    path: str
    first_seen: datetime
    last_modified: datetime
    total_commits: int = 0
    unique_authors: int = 0
    operations: Mapping[str, int] = field(default_factory=dict)
    age_days: float = 0.0
    health: Optional[HealthScoreResult] = None
    coupling: Optional[CouplingMetrics] = None

    def health_inputs(self, days_since_last_modified: Optional[float] = None) -> HealthScoreInputs:
        return HealthScoreInputs(
            total_commits=self.total_commits,
            unique_authors=self.unique_authors,
            operations=self.operations,
            age_days=self.age_days,
            days_since_last_modified=days_since_last_modified,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "first_seen": self.first_seen.isoformat(),
            "last_modified": self.last_modified.isoformat(),
            "total_commits": self.total_commits,
            "unique_authors": self.unique_authors,
            "operations": dict(self.operations),
            "age_days": self.age_days,
            "health": self.health.to_dict() if self.health else None,
            "coupling": self.coupling.to_dict() if self.coupling else None,
        }


@dataclass(frozen=True)
class TemporalFileView:
    """A file as seen from one scrubber position; rebuilt whenever it moves"""

    file: EnrichedFile
    created_position: float
    dormancy_days: int
    is_dormant: bool
    is_visible: bool

    def to_dict(self) -> Dict[str, Any]:
        data = self.file.to_dict()
        data.update(
            {
                "created_position": round(self.created_position, 4),
                "dormancy_days": self.dormancy_days,
                "is_dormant": self.is_dormant,
                "is_visible": self.is_visible,
            }
        )
        return data


def _check_scrubber(position: float) -> float:
    try:
        value = float(position)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Scrubber position must be a number: {position!r}") from e
    if math.isnan(value):
        raise ValueError("Scrubber position is NaN")
    return max(0.0, min(100.0, value))


class TemporalEnricher:
    """
    Derive scrubber-relative fields for enriched files.

    Creation position is measured against the dataset range; dormancy is
    measured against wall-clock ``now``, not the scrubbed time. Passing
    ``now`` pins the clock so repeated calls give identical output.
    """

    def __init__(self, now: Optional[datetime] = None):
        self.now = parse_timestamp(now) if now is not None else None

    def reference_time(self) -> datetime:
        return self.now or datetime.now(timezone.utc)

    def dormancy_days(self, last_modified: Any, now: Optional[datetime] = None) -> int:
        """Whole days since the last modification, never negative"""
        reference = parse_timestamp(now) if now is not None else self.reference_time()
        elapsed = reference - parse_timestamp(last_modified)
        return max(0, elapsed.days)

    @staticmethod
    def created_position(created: Any, date_range: DateRange) -> float:
        """0-100 position of ``created`` within the range, clamped"""
        span = date_range.span_seconds
        if span <= 0:
            return 0.0
        offset = (parse_timestamp(created) - date_range.start).total_seconds()
        return max(0.0, min(100.0, offset / span * 100))

    def enrich(
        self,
        files: Iterable[EnrichedFile],
        date_range: DateRange,
        scrubber_position: float,
    ) -> List[TemporalFileView]:
        scrubber = _check_scrubber(scrubber_position)
        now = self.reference_time()

        views = []
        for f in files:
            position = self.created_position(f.first_seen, date_range)
            dormancy = self.dormancy_days(f.last_modified, now)
            views.append(
                TemporalFileView(
                    file=f,
                    created_position=position,
                    dormancy_days=dormancy,
                    is_dormant=dormancy > DORMANCY_THRESHOLD_DAYS,
                    is_visible=position <= scrubber,
                )
            )
        return views

    @staticmethod
    def position_to_datetime(date_range: DateRange, position: float) -> datetime:
        """Inverse of created_position: the moment a scrubber position stands for"""
        fraction = _check_scrubber(position) / 100
        return date_range.start + timedelta(seconds=date_range.span_seconds * fraction)

    @staticmethod
    def temporal_stats(views: Sequence[TemporalFileView]) -> Dict[str, Any]:
        dormant = sum(1 for v in views if v.is_dormant)
        visible = sum(1 for v in views if v.is_visible)
        avg_age = sum(v.file.age_days for v in views) / len(views) if views else 0
        return {
            "total_files": len(views),
            "total_dormant": dormant,
            "total_active": len(views) - dormant,
            "total_visible": visible,
            "avg_age_days": _round_half_up(avg_age),
        }


# ============================================================================
# DATASET LOADING
# ============================================================================

# Dataset id -> location inside a code-strata output directory
DATASET_PATHS = {
    "file_lifecycle": "file_lifecycle.json",
    "file_index": "metadata/file_index.json",
    "temporal_daily": "aggregations/temporal_daily.json",
    "directory_stats": "aggregations/directory_stats.json",
    "cochange_network": "networks/cochange_network.json",
    "author_network": "networks/author_network.json",
    "temporal_activity_map": "frontend/temporal_activity_map.json",
}


class DatasetLoader:
    """
    Resolve dataset ids against an analyzer output directory.
    Parsed JSON is cached per id; the pipeline itself never caches.
    """

    def __init__(self, base_dir: str):
        self.base_dir = Path(base_dir)
        self._cache: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def path_for(self, dataset_id: str) -> Path:
        if dataset_id not in DATASET_PATHS:
            raise KeyError(f"Unknown dataset id: {dataset_id}")
        return self.base_dir / DATASET_PATHS[dataset_id]

    def exists(self, dataset_id: str) -> bool:
        return self.path_for(dataset_id).is_file()

    def available(self) -> List[str]:
        return [dataset_id for dataset_id in DATASET_PATHS if self.exists(dataset_id)]

    def load(self, dataset_id: str, required: bool = True) -> Optional[Any]:
        """
        Parsed contents of a dataset, or None for a missing optional one.

        Raises:
            FileNotFoundError: a required dataset is missing
            DatasetShapeError: the file is not valid JSON
        """
        with self._lock:
            if dataset_id in self._cache:
                return self._cache[dataset_id]

        path = self.path_for(dataset_id)
        if not path.is_file():
            if required:
                raise FileNotFoundError(f"Dataset not found: {path}")
            return None

        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise DatasetShapeError(f"{dataset_id}: invalid JSON in {path}: {e}") from e

        logger.debug("Loaded dataset %s from %s", dataset_id, path)
        with self._lock:
            self._cache[dataset_id] = data
        return data

    def clear(self):
        with self._lock:
            self._cache.clear()


def _require_mapping(data: Any, key: str, dataset_id: str) -> Any:
    if not isinstance(data, Mapping) or key not in data:
        raise DatasetShapeError(f"{dataset_id}: expected an object with '{key}'")
    return data[key]


def events_from_lifecycle(
    data: Mapping[str, Any], warnings: Optional[Counter] = None
) -> List[FileChangeEvent]:
    """
    FileChangeEvents from file_lifecycle.json, ordered by commit time.

    Raises:
        DatasetShapeError: ``files`` is missing or not an object
    """
    if warnings is None:
        warnings = Counter()
    files = _require_mapping(data, "files", "file_lifecycle")
    if not isinstance(files, Mapping):
        raise DatasetShapeError("file_lifecycle: 'files' must be an object")

    events = []
    for file_path, history in files.items():
        if not isinstance(history, list):
            warnings["invalid_event"] += 1
            continue
        for row in history:
            if not isinstance(row, Mapping):
                warnings["invalid_event"] += 1
                continue
            try:
                when = parse_timestamp(row.get("timestamp", row.get("datetime")))
            except InvalidTimestamp:
                warnings["invalid_timestamp"] += 1
                logger.debug("Skipping %s event with bad timestamp", file_path)
                continue
            try:
                status = normalize_status(row.get("operation") or row.get("status") or "")
            except ValueError:
                warnings["invalid_event"] += 1
                logger.debug("Skipping %s event with bad operation", file_path)
                continue
            events.append(
                FileChangeEvent(
                    file_path=file_path,
                    status=status,
                    commit_hash=row.get("commit_hash", ""),
                    timestamp=when,
                    author_name=row.get("author_name", ""),
                    author_email=row.get("author_email", ""),
                    commit_subject=row.get("commit_subject", ""),
                    old_path=row.get("old_path"),
                    similarity=row.get("similarity"),
                )
            )

    events.sort(key=lambda e: e.timestamp)
    return events


def files_from_file_index(
    data: Mapping[str, Any], warnings: Optional[Counter] = None
) -> List[EnrichedFile]:
    """EnrichedFiles (without health or coupling) from metadata/file_index.json"""
    if warnings is None:
        warnings = Counter()
    files = _require_mapping(data, "files", "file_index")
    if not isinstance(files, Mapping):
        raise DatasetShapeError("file_index: 'files' must be an object")

    result = []
    for path, row in files.items():
        if not isinstance(row, Mapping):
            warnings["invalid_file"] += 1
            continue
        try:
            first_seen = parse_timestamp(row.get("first_seen"))
            last_modified = parse_timestamp(row.get("last_modified"))
        except InvalidTimestamp:
            warnings["invalid_timestamp"] += 1
            logger.debug("Skipping file %s with bad dates", path)
            continue
        result.append(
            EnrichedFile(
                path=path,
                first_seen=first_seen,
                last_modified=last_modified,
                total_commits=int(row.get("total_commits", 0) or 0),
                unique_authors=int(row.get("unique_authors", 0) or 0),
                operations=dict(row.get("operations") or {}),
                age_days=float(row.get("age_days", 0) or 0),
            )
        )
    return result


def edges_from_cochange_network(
    data: Mapping[str, Any], warnings: Optional[Counter] = None
) -> List[CouplingEdge]:
    """CouplingEdges from networks/cochange_network.json"""
    if warnings is None:
        warnings = Counter()
    rows = _require_mapping(data, "edges", "cochange_network")
    if not isinstance(rows, list):
        raise DatasetShapeError("cochange_network: 'edges' must be a list")

    edges = []
    for row in rows:
        try:
            edges.append(
                CouplingEdge(
                    source=row["source"],
                    target=row["target"],
                    strength=float(row.get("coupling_strength", row.get("strength"))),
                    cochange_count=int(row.get("cochange_count", 0) or 0),
                )
            )
        except (KeyError, TypeError, ValueError, AttributeError):
            warnings["invalid_edge"] += 1
    return edges


def _week_key_to_date(key: str) -> date:
    year, week = key.split("-W")
    return date.fromisocalendar(int(year), int(week), 1)


def activity_records_from_feed(
    data: Any,
    path_to_id: Optional[Mapping[str, int]] = None,
    warnings: Optional[Counter] = None,
) -> List[ActivityRecord]:
    """
    ActivityRecords from a pre-bucketed feed.

    Accepts a list of feed rows (or ``{"records": [...]}``), or the analyzer's
    temporal_activity_map (``{"meta": ..., "data": {dir: {"2024-W03": [commits,
    lines_changed, unique_authors]}}}``), whose directory paths are resolved
    through ``path_to_id``. That map carries no add/modify/delete split, so
    its rows only fill the commit and author counters.
    """
    if warnings is None:
        warnings = Counter()

    if isinstance(data, Mapping) and "data" in data and "meta" in data:
        if path_to_id is None:
            raise DatasetShapeError("temporal_activity_map needs a path -> id mapping")
        records = []
        for dir_path, weeks in data["data"].items():
            directory_id = path_to_id.get(dir_path)
            if directory_id is None:
                warnings["missing_directory_mapping"] += len(weeks)
                continue
            for week_key, values in weeks.items():
                try:
                    commits, _, authors = values
                    when = _week_key_to_date(week_key)
                except (TypeError, ValueError):
                    warnings["invalid_record"] += 1
                    continue
                records.append(
                    ActivityRecord(
                        date=when,
                        directory_id=directory_id,
                        commits=int(commits),
                        unique_authors=int(authors),
                    )
                )
        return records

    rows = data.get("records") if isinstance(data, Mapping) else data
    if not isinstance(rows, list):
        raise DatasetShapeError("Activity feed must be a list of records")

    records = []
    for row in rows:
        try:
            records.append(ActivityRecord.from_dict(row))
        except (KeyError, TypeError, ValueError, AttributeError):
            warnings["invalid_record"] += 1
    return records


def directory_ranking_from_stats(data: Mapping[str, Any]) -> Dict[str, float]:
    """path -> activity_score from aggregations/directory_stats.json"""
    directories = _require_mapping(data, "directories", "directory_stats")
    if not isinstance(directories, Mapping):
        raise DatasetShapeError("directory_stats: 'directories' must be an object")
    return {
        path: float(row.get("activity_score", 0) or 0)
        for path, row in directories.items()
        if isinstance(row, Mapping)
    }


def files_from_events(events: Iterable[FileChangeEvent]) -> List[EnrichedFile]:
    """
    Per-file summaries straight from the event stream, for datasets without a
    file_index. Mirrors the analyzer's file metadata aggregation.
    """
    stats = defaultdict(
        lambda: {
            "first_seen": None,
            "last_modified": None,
            "commits": set(),
            "authors": set(),
            "operations": Counter(),
        }
    )
    for event in events:
        s = stats[event.file_path]
        if s["first_seen"] is None or event.timestamp < s["first_seen"]:
            s["first_seen"] = event.timestamp
        if s["last_modified"] is None or event.timestamp > s["last_modified"]:
            s["last_modified"] = event.timestamp
        s["commits"].add(event.commit_hash)
        s["authors"].add(event.author)
        s["operations"][event.operation] += 1

    files = []
    for path in sorted(stats):
        s = stats[path]
        age_days = (s["last_modified"] - s["first_seen"]).total_seconds() / 86400
        files.append(
            EnrichedFile(
                path=path,
                first_seen=s["first_seen"],
                last_modified=s["last_modified"],
                total_commits=len(s["commits"]),
                unique_authors=len(s["authors"]),
                operations=dict(s["operations"]),
                age_days=round(age_days, 2),
            )
        )
    return files


# ============================================================================
# PIPELINE
# ============================================================================


@dataclass
class PipelineMetrics:
    """
    Timing and resource figures for one pipeline run
    - Per-stage wall time
    - Peak resident memory
    - Path split cache hit rate
    """

    events_processed: int = 0
    files_scored: int = 0
    stage_times: Dict[str, float] = field(default_factory=dict)
    memory_peak_mb: float = 0.0
    total_time: float = 0.0
    cache_hits: int = 0
    cache_misses: int = 0

    def to_dict(self) -> Dict:
        cache_total = self.cache_hits + self.cache_misses
        cache_hit_rate = (self.cache_hits / cache_total * 100) if cache_total > 0 else 0

        return {
            "events_processed": self.events_processed,
            "files_scored": self.files_scored,
            "stage_times": {k: round(v, 4) for k, v in self.stage_times.items()},
            "memory_peak_mb": round(self.memory_peak_mb, 2),
            "total_time_seconds": round(self.total_time, 2),
            "cache_statistics": {
                "hits": self.cache_hits,
                "misses": self.cache_misses,
                "hit_rate_percent": round(cache_hit_rate, 1),
            },
        }


class MemoryMonitor:
    """Monitor memory usage and enforce limits"""

    def __init__(self, limit_mb: Optional[float] = None):
        self.limit_mb = limit_mb
        self.peak_mb = 0.0
        self._process = psutil.Process(os.getpid())

    def check_memory(self) -> float:
        """Current resident memory in MB; raises MemoryError past the limit"""
        memory_mb = self._process.memory_info().rss / 1024 / 1024
        self.peak_mb = max(self.peak_mb, memory_mb)

        if self.limit_mb and memory_mb > self.limit_mb:
            raise MemoryError(
                f"Memory limit exceeded: {memory_mb:.1f}MB > {self.limit_mb}MB"
            )
        return memory_mb

    def get_peak(self) -> float:
        return self.peak_mb


@dataclass(frozen=True)
class PipelineInputs:
    """
    One consistent snapshot of the loaded datasets.

    ``activity_feed`` is optional: a list of ActivityRecords, raw feed rows,
    or a temporal_activity_map. Without it the grid is built from ``events``.
    Without ``files`` the per-file summaries are derived from ``events``.
    """

    events: Sequence[FileChangeEvent] = ()
    edges: Sequence[CouplingEdge] = ()
    files: Sequence[EnrichedFile] = ()
    activity_feed: Optional[Any] = None
    date_range: Optional[DateRange] = None
    directory_ranking: Optional[Mapping[str, float]] = None
    warnings: Mapping[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class PipelineConfig:
    granularity: str = "week"
    metric: str = "events"
    top_n: int = 20
    top_items: int = 5
    fill_gaps: bool = False
    scrubber_position: float = 100.0
    coupling_threshold: float = STRONG_COUPLING_THRESHOLD
    derive_coupling: bool = True
    min_cochange_count: int = 2
    max_partners: Optional[int] = None
    memory_limit_mb: Optional[float] = None
    now: Optional[datetime] = None


@dataclass(frozen=True)
class PipelineResult:
    tree: DirectoryTree
    grid: ActivityGrid
    coupling: CouplingIndex
    files: Tuple[EnrichedFile, ...]
    temporal: Tuple[TemporalFileView, ...]
    date_range: Optional[DateRange]
    warnings: Dict[str, int]
    metrics: PipelineMetrics

    @property
    def health(self) -> Dict[str, HealthScoreResult]:
        return {f.path: f.health for f in self.files if f.health is not None}

    @property
    def warning_count(self) -> int:
        return sum(self.warnings.values())

    def health_summary(self) -> Dict[str, int]:
        counts = Counter(result.category for result in self.health.values())
        return {category: counts.get(category, 0) for category in ("critical", "medium", "healthy")}

    def views(self, max_partners: Optional[int] = None) -> Dict[str, Dict[str, Any]]:
        """JSON-ready view documents keyed by output file stem"""
        return {
            "directory_tree": self.tree.to_dict(),
            "activity_grid": self.grid.to_dict(),
            "coupling_index": self.coupling.to_dict(max_partners=max_partners),
            "health_scores": {
                "schema_version": SCHEMA_VERSION,
                "total_files": len(self.health),
                "summary": self.health_summary(),
                "files": {path: result.to_dict() for path, result in sorted(self.health.items())},
            },
            "temporal_view": {
                "schema_version": SCHEMA_VERSION,
                "date_range": (
                    {
                        "start": self.date_range.start.isoformat(),
                        "end": self.date_range.end.isoformat(),
                    }
                    if self.date_range
                    else None
                ),
                "statistics": TemporalEnricher.temporal_stats(self.temporal),
                "files": [view.to_dict() for view in self.temporal],
            },
        }


def _merge_warnings(target: Counter, source: Optional[Mapping[str, int]]):
    for key, value in (source or {}).items():
        target[key] += value


def run_pipeline(
    inputs: PipelineInputs,
    config: Optional[PipelineConfig] = None,
    token: Optional[CancellationToken] = None,
    reporter: Optional[ProgressReporter] = None,
) -> PipelineResult:
    """
    Run every stage in order on the calling thread.

    Stages: directory tree, activity grid, coupling index, health scores,
    temporal view. Each consumes the previous stages' immutable output.

    Raises:
        Aborted: the token was cancelled; no partial result is returned
        MemoryError: the configured memory limit was exceeded
    """
    config = config or PipelineConfig()
    reporter = reporter or ProgressReporter(quiet=True)
    metrics = PipelineMetrics(events_processed=len(inputs.events))
    monitor = MemoryMonitor(config.memory_limit_mb)
    warnings: Counter = Counter(inputs.warnings)
    started = time.time()

    def between_stages(name: str, stage_started: float):
        metrics.stage_times[name] = time.time() - stage_started
        monitor.check_memory()
        if token is not None:
            token.raise_if_cancelled()

    try:
        if token is not None:
            token.raise_if_cancelled()

        files = list(inputs.files) or files_from_events(inputs.events)

        # Directory tree
        stage_started = time.time()
        reporter.stage_start("Directory Tree", "Building directory hierarchy...")
        builder = DirectoryTreeBuilder(reporter)
        tree = builder.build(inputs.events or [f.path for f in files], token=token)
        metrics.cache_hits = builder.last_cache.hits
        metrics.cache_misses = builder.last_cache.misses
        _merge_warnings(warnings, tree.warnings)
        reporter.stage_complete(
            "Directory Tree", {"Nodes": f"{tree.node_count:,}", "Files": f"{tree.total_files:,}"}
        )
        between_stages("directory_tree", stage_started)

        # Activity grid
        stage_started = time.time()
        reporter.stage_start("Activity Grid", f"Binning activity by {config.granularity}...")
        aggregator = ActivityAggregator(
            granularity=config.granularity,
            metric=config.metric,
            top_n=config.top_n,
            top_items=config.top_items,
            fill_gaps=config.fill_gaps,
            reporter=reporter,
        )
        if inputs.activity_feed is None:
            grid = aggregator.aggregate_events(
                inputs.events, tree, token=token, ranking=inputs.directory_ranking
            )
        else:
            feed_warnings: Counter = Counter()
            feed = inputs.activity_feed
            if isinstance(feed, (list, tuple)) and all(isinstance(r, ActivityRecord) for r in feed):
                records = list(feed)
            else:
                records = activity_records_from_feed(feed, tree.path_to_id, feed_warnings)
            grid = aggregator.aggregate(
                records,
                tree.directory_paths_by_id(),
                token=token,
                ranking=inputs.directory_ranking,
                warnings=feed_warnings,
            )
        _merge_warnings(warnings, grid.warnings)
        reporter.stage_complete(
            "Activity Grid",
            {"Directories": len(grid.directories), "Time bins": len(grid.time_bins)},
        )
        between_stages("activity_grid", stage_started)

        # Coupling index
        stage_started = time.time()
        reporter.stage_start("Coupling Index", "Indexing co-change partners...")
        edges = list(inputs.edges)
        if not edges and config.derive_coupling and inputs.events:
            edges = cochange_edges_from_events(
                inputs.events, min_cochange_count=config.min_cochange_count
            )
        coupling = CouplingIndexer(config.coupling_threshold, reporter).build(edges, token=token)
        _merge_warnings(warnings, coupling.warnings)
        reporter.stage_complete("Coupling Index", {"Files": f"{len(coupling):,}"})
        between_stages("coupling_index", stage_started)

        # Health scores
        stage_started = time.time()
        reporter.stage_start("Health Scores", "Scoring files...")
        enricher = TemporalEnricher(now=config.now)
        now = enricher.reference_time()
        scored = []
        pbar = reporter.create_progress_bar(len(files), "Scoring", unit=" files")
        try:
            for i, f in enumerate(files):
                _checkpoint(token, i)
                dormancy = enricher.dormancy_days(f.last_modified, now)
                scored.append(
                    replace(
                        f,
                        health=HealthScorer.calculate(f.health_inputs(dormancy)),
                        coupling=coupling.metrics(f.path),
                    )
                )
                if pbar:
                    pbar.update(1)
        finally:
            if pbar:
                pbar.close()
        metrics.files_scored = len(scored)
        reporter.stage_complete("Health Scores", {"Files": f"{len(scored):,}"})
        between_stages("health_scores", stage_started)

        # Temporal view
        stage_started = time.time()
        reporter.stage_start("Temporal View", "Placing files on the timeline...")
        date_range = inputs.date_range
        if date_range is None and scored:
            date_range = DateRange.from_files(scored)
        if date_range is not None:
            temporal = enricher.enrich(scored, date_range, config.scrubber_position)
        else:
            temporal = []
        reporter.stage_complete("Temporal View", TemporalEnricher.temporal_stats(temporal))
        between_stages("temporal_view", stage_started)

    except Aborted:
        logger.warning("Pipeline run aborted")
        raise

    metrics.memory_peak_mb = monitor.get_peak()
    metrics.total_time = time.time() - started

    return PipelineResult(
        tree=tree,
        grid=grid,
        coupling=coupling,
        files=tuple(scored),
        temporal=tuple(temporal),
        date_range=date_range,
        warnings=dict(warnings),
        metrics=metrics,
    )


class PipelineRunner:
    """
    Runs the pipeline on a single worker thread, latest request wins.

    submit() cancels the token of the previous run before queuing a new one,
    so a superseded run's future resolves with Aborted instead of racing the
    newer run.
    """

    def __init__(self, reporter: Optional[ProgressReporter] = None):
        self.reporter = reporter or ProgressReporter(quiet=True)
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="strata-lens")
        self._lock = threading.Lock()
        self._current: Optional[CancellationToken] = None

    def submit(self, inputs: PipelineInputs, config: Optional[PipelineConfig] = None) -> Future:
        token = CancellationToken()
        with self._lock:
            if self._current is not None:
                self._current.cancel()
            self._current = token
            return self._executor.submit(run_pipeline, inputs, config, token, self.reporter)

    def cancel(self):
        with self._lock:
            if self._current is not None:
                self._current.cancel()

    def shutdown(self, wait: bool = True):
        self.cancel()
        self._executor.shutdown(wait=wait)

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.shutdown()


# ============================================================================
# CONFIGURATION FILE SUPPORT
# ============================================================================

CONFIG_FILE_NAMES = (
    ".strata-lens.yaml",
    ".strata-lens.yml",
    ".strata-lens.json",
)

PRESETS = {
    "standard": {"granularity": "week", "top_n": 20},
    "overview": {"granularity": "month", "top_n": 10},
    "detailed": {"granularity": "day", "top_n": 40, "fill_gaps": True},
    "quarterly": {"granularity": "quarter", "top_n": 20},
}


def load_config_file(config_path: str) -> Dict[str, Any]:
    """Load configuration from a YAML or JSON file"""
    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    file_ext = os.path.splitext(config_path)[1].lower()

    with open(config_path, "r", encoding="utf-8") as f:
        if file_ext in [".yaml", ".yml"]:
            data = yaml.safe_load(f)
        elif file_ext == ".json":
            data = json.load(f)
        else:
            raise ValueError(f"Unsupported config file format: {file_ext}")

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Configuration must be a mapping: {config_path}")
    return data


def find_config_file(dataset_dir: str) -> Optional[str]:
    """
    Auto-discover a configuration file in the dataset directory or the
    current directory.
    """
    for search_dir in (dataset_dir, os.getcwd()):
        for config_name in CONFIG_FILE_NAMES:
            config_path = os.path.join(search_dir, config_name)
            if os.path.exists(config_path):
                return config_path
    return None


class ConfigResolver:
    """
    Resolve configuration with precedence: CLI > Config File > Preset > Defaults
    """

    def __init__(
        self,
        cli_args: Dict[str, Any],
        config_path: Optional[str],
        preset_name: Optional[str],
        dataset_dir: str,
    ):
        self.cli = {k: v for k, v in cli_args.items() if v is not None}
        self.config = {}
        self.preset = {}
        self.config_source = config_path

        # 1. Load Config File (if provided or auto-discovered)
        if config_path:
            self.config = load_config_file(config_path)
        else:
            auto_path = find_config_file(dataset_dir)
            if auto_path:
                try:
                    self.config = load_config_file(auto_path)
                    self.config_source = auto_path
                    logger.info("Auto-discovered configuration: %s", auto_path)
                except (OSError, ValueError, yaml.YAMLError) as e:
                    print(
                        f"Warning: Found config file but failed to load: {e}",
                        file=sys.stderr,
                    )

        # Normalize config keys (kebab-case to snake_case)
        self.config = {k.replace("-", "_"): v for k, v in self.config.items()}

        # 2. CLI preset overrides config preset
        final_preset_name = preset_name or self.config.get("preset")
        self.preset = self._get_preset(final_preset_name)

    def _get_preset(self, name: Optional[str]) -> Dict[str, Any]:
        if not name:
            return {}
        if name not in PRESETS:
            raise ValueError(
                f"Unknown preset: {name!r} (expected one of {', '.join(PRESETS)})"
            )
        return PRESETS[name]

    def get(self, key: str, default: Any = None) -> Any:
        """Resolve value based on precedence"""
        if key in self.cli:
            return self.cli[key]
        if key in self.config:
            return self.config[key]
        if key in self.preset:
            return self.preset[key]
        return default

    def pipeline_config(self) -> PipelineConfig:
        defaults = PipelineConfig()
        return PipelineConfig(
            granularity=self.get("granularity", defaults.granularity),
            metric=self.get("metric", defaults.metric),
            top_n=int(self.get("top_n", defaults.top_n)),
            top_items=int(self.get("top_items", defaults.top_items)),
            fill_gaps=bool(self.get("fill_gaps", defaults.fill_gaps)),
            scrubber_position=float(self.get("scrubber", defaults.scrubber_position)),
            coupling_threshold=float(
                self.get("coupling_threshold", defaults.coupling_threshold)
            ),
            derive_coupling=bool(self.get("derive_coupling", defaults.derive_coupling)),
            min_cochange_count=int(
                self.get("min_cochange_count", defaults.min_cochange_count)
            ),
            max_partners=self.get("max_partners", defaults.max_partners),
            memory_limit_mb=self.get("memory_limit", defaults.memory_limit_mb),
        )


# ============================================================================
# OUTPUT & MANIFEST
# ============================================================================


def write_json(output_path: str, data: Any):
    os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)
    with open(output_path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)


def generate_manifest(
    output_dir: str,
    dataset_dir: str,
    result: PipelineResult,
    views: Dict[str, str],
    config_source: Optional[str] = None,
) -> Dict[str, Any]:
    """Write manifest.json describing every generated view"""
    manifest = {
        "generator_version": VERSION,
        "schema_version": SCHEMA_VERSION,
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "dataset_dir": dataset_dir,
        "config_file": config_source,
        "performance_metrics": result.metrics.to_dict(),
        "warnings": dict(sorted(result.warnings.items())),
        "views": {},
    }

    for view_name, file_path in views.items():
        full_path = os.path.join(output_dir, file_path)
        if os.path.exists(full_path):
            with open(full_path, "rb") as f:
                data = f.read()
                sha256 = hashlib.sha256(data).hexdigest()

            manifest["views"][view_name] = {
                "file": file_path,
                "schema_version": SCHEMA_VERSION,
                "file_size_bytes": len(data),
                "sha256": sha256,
            }

    write_json(os.path.join(output_dir, "manifest.json"), manifest)
    return manifest


def load_pipeline_inputs(
    loader: DatasetLoader,
    activity_source: str = "events",
    reporter: Optional[ProgressReporter] = None,
) -> PipelineInputs:
    """
    Read whatever datasets exist and adapt them to PipelineInputs.

    Raises:
        FileNotFoundError: neither file_lifecycle nor file_index is present
    """
    reporter = reporter or ProgressReporter(quiet=True)
    warnings: Counter = Counter()

    lifecycle = loader.load("file_lifecycle", required=False)
    file_index = loader.load("file_index", required=False)
    if lifecycle is None and file_index is None:
        raise FileNotFoundError(
            f"No file_lifecycle.json or metadata/file_index.json under {loader.base_dir}"
        )

    events = events_from_lifecycle(lifecycle, warnings) if lifecycle is not None else []
    files = files_from_file_index(file_index, warnings) if file_index is not None else []

    cochange = loader.load("cochange_network", required=False)
    edges = edges_from_cochange_network(cochange, warnings) if cochange is not None else []

    stats = loader.load("directory_stats", required=False)
    ranking = directory_ranking_from_stats(stats) if stats is not None else None

    date_range = None
    temporal_daily = loader.load("temporal_daily", required=False)
    if temporal_daily is not None:
        try:
            date_range = DateRange.from_temporal_daily(temporal_daily)
        except DatasetShapeError as e:
            reporter.warning(f"{e}; using file dates for the timeline range")

    activity_feed = None
    if activity_source == "map":
        activity_feed = loader.load("temporal_activity_map")

    return PipelineInputs(
        events=tuple(events),
        edges=tuple(edges),
        files=tuple(files),
        activity_feed=activity_feed,
        date_range=date_range,
        directory_ranking=ranking,
        warnings=dict(warnings),
    )


# ============================================================================
# CLI INTERFACE
# ============================================================================

VIEW_FILES = {
    "directory_tree": "views/directory_tree.json",
    "activity_grid": "views/activity_grid.json",
    "coupling_index": "views/coupling_index.json",
    "health_scores": "views/health_scores.json",
    "temporal_view": "views/temporal_view.json",
}


@click.command(context_settings=dict(help_option_names=["-h", "--help"]))
@click.argument(
    "dataset_dir",
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
)
@click.option(
    "-o",
    "--output",
    type=click.Path(file_okay=False),
    help="Output directory (default: DATASET_DIR)",
)
@click.option(
    "--config",
    type=click.Path(exists=True, dir_okay=False),
    help="Configuration file path (.yaml or .json)",
)
@click.option(
    "--preset",
    type=click.Choice(list(PRESETS)),
    help="Use predefined view configuration",
)
# View options
@click.option("--granularity", type=click.Choice(GRANULARITIES), help="Time bin size")
@click.option("--metric", type=click.Choice(METRICS), help="Activity grid scaling metric")
@click.option("--top-n", type=int, help="Directories kept in the activity grid")
@click.option("--scrubber", type=float, help="Timeline position 0-100 (default: 100)")
@click.option("--coupling-threshold", type=float, help="Strong coupling threshold")
@click.option(
    "--fill-gaps",
    is_flag=True,
    default=None,
    help="Include empty time bins between the first and last observed bin",
)
@click.option(
    "--activity-source",
    type=click.Choice(["events", "map"]),
    help="Build the grid from lifecycle events or frontend/temporal_activity_map.json",
)
@click.option("--csv", is_flag=True, default=None, help="Also export the grid as CSV")
# Performance
@click.option("--memory-limit", type=float, help="Memory limit in MB")
# Output Control
@click.option(
    "-q", "--quiet", is_flag=True, default=None, help="Suppress progress output"
)
@click.option(
    "-v",
    "--verbose",
    is_flag=True,
    default=None,
    help="Show detailed progress information",
)
@click.option("--no-color", is_flag=True, default=None, help="Disable colored output")
@click.option(
    "--dry-run",
    is_flag=True,
    help="Show what would be generated without computing views",
)
@click.version_option(version=VERSION)
def main(dataset_dir, output, config, preset, **kwargs):
    """
    Strata Lens v1.0.0 - derived views over a code-strata dataset directory

    Reads file_lifecycle.json and the optional metadata/aggregation/network
    datasets, then writes directory tree, activity grid, coupling index,
    health score and temporal views plus a manifest.
    """
    try:
        resolver = ConfigResolver(kwargs, config, preset, dataset_dir)
    except (OSError, ValueError, yaml.YAMLError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(2)

    quiet = resolver.get("quiet", False)
    verbose = resolver.get("verbose", False)
    no_color = resolver.get("no_color", False)
    dry_run = resolver.get("dry_run", False)

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.ERROR,
        format="%(levelname)s %(name)s: %(message)s",
    )

    reporter = ProgressReporter(quiet=quiet, verbose=verbose, use_colors=not no_color)

    try:
        pipeline_config = resolver.pipeline_config()
        # Fail fast on bad values before reading any dataset
        ActivityAggregator(
            granularity=pipeline_config.granularity,
            metric=pipeline_config.metric,
            top_n=pipeline_config.top_n,
        )
        _check_scrubber(pipeline_config.scrubber_position)
    except (TypeError, ValueError) as e:
        reporter.error(f"Invalid configuration: {e}")
        sys.exit(2)

    activity_source = resolver.get("activity_source", "events")
    export_csv = resolver.get("csv", False)
    output_dir = output or dataset_dir
    loader = DatasetLoader(dataset_dir)

    if dry_run:
        reporter.info("DRY RUN MODE - No views will be computed")
        reporter.info(f"Dataset directory: {dataset_dir}")
        if resolver.config_source:
            reporter.info(f"Configuration: {resolver.config_source}")
        reporter.info(f"Granularity: {pipeline_config.granularity}")
        reporter.info(f"Metric: {pipeline_config.metric}")
        reporter.info(f"Top directories: {pipeline_config.top_n}")
        reporter.info(f"Scrubber position: {pipeline_config.scrubber_position}")
        reporter.info(f"Activity source: {activity_source}")
        if pipeline_config.memory_limit_mb:
            reporter.info(f"Memory limit: {pipeline_config.memory_limit_mb} MB")
        reporter.info("\nDatasets found:")
        for dataset_id in DATASET_PATHS:
            mark = "✓" if loader.exists(dataset_id) else "✗"
            reporter.info(f"  {mark} {DATASET_PATHS[dataset_id]}")
        reporter.info("\nViews to generate:")
        for file_path in VIEW_FILES.values():
            reporter.info(f"  ✓ {file_path}")
        if export_csv:
            reporter.info("  ✓ views/activity_grid.csv")
        return

    try:
        reporter.stage_start("Loading", f"Reading datasets from: {dataset_dir}")
        inputs = load_pipeline_inputs(loader, activity_source, reporter)
        reporter.stage_complete(
            "Loading",
            {
                "Events": f"{len(inputs.events):,}",
                "Files": f"{len(inputs.files):,}",
                "Edges": f"{len(inputs.edges):,}",
            },
        )

        result = run_pipeline(inputs, pipeline_config, CancellationToken(), reporter)

        reporter.stage_start("Export", f"Writing views to: {output_dir}")
        views = result.views(max_partners=pipeline_config.max_partners)
        written = {}
        for view_name, file_path in VIEW_FILES.items():
            write_json(os.path.join(output_dir, file_path), views[view_name])
            written[view_name] = file_path

        if export_csv:
            csv_path = "views/activity_grid.csv"
            result.grid.to_dataframe().to_csv(os.path.join(output_dir, csv_path), index=False)
            written["activity_grid_csv"] = csv_path

        generate_manifest(output_dir, dataset_dir, result, written, resolver.config_source)
        reporter.stage_complete("Export", {"Views": len(written)})

        if result.warnings:
            reporter.warning(
                f"{result.warning_count} record(s) skipped: "
                + ", ".join(f"{k}={v}" for k, v in sorted(result.warnings.items()))
            )

        health = result.health_summary()
        summary_stats = {
            "Dataset directory": dataset_dir,
            "Output directory": output_dir,
            "Events": f"{len(inputs.events):,}",
            "Tree nodes": f"{result.tree.node_count:,}",
            "Grid": f"{len(result.grid.directories)} directories x {len(result.grid.time_bins)} {pipeline_config.granularity} bins",
            "Coupled files": f"{len(result.coupling):,}",
            "Health": f"{health['critical']} critical, {health['medium']} medium, {health['healthy']} healthy",
            "Views generated": len(written),
        }
        reporter.summary(summary_stats)
        reporter.success(f"Views saved to: {os.path.join(output_dir, 'views')}")

    except Exception as e:
        reporter.error(f"View generation failed: {str(e)}")
        if verbose:
            import traceback

            traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
