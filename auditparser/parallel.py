#!python3
"""
Batch orchestration for auditparser.

This module runs the per-file pipeline over a whole input directory:
- File enumeration with select/avoid filters
- Resumability through the parse cache (skip files already handled)
- Hand-off of oversized files to an external splitter
- Dynamic worker count based on available memory
- Memory-aware throttling of new submissions
- LPT (Longest Processing Time) scheduling for better load balancing
- Thread-based parallelism with a single coordinator owning the cache
"""

import logging
import os
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor, wait, FIRST_COMPLETED
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import psutil

from rich.progress import (
    Progress, SpinnerColumn, TextColumn, BarColumn,
    MofNCompleteColumn, TimeElapsedColumn
)

from . import __version__
from .cache import ParseCache
from .config import BatchConfig, ParseOptions
from .config_loader import SchemaConfig
from .console import build_failure_tree, build_summary_table, console, is_quiet
from .output import TEMP_SUFFIX
from .processing import FileTask, ParseResult, ParseStatus, ProcessingContext, process_file
from .utils import SPLIT_MARKER, avoid_files, format_size, list_files, select_files


# Files whose name contains one of these are never handed to the splitter
SPLIT_EXCLUDED_MARKERS = (SPLIT_MARKER, "stateagentinspector", "eventbuffer")

# Files removed from the output directory by wipe_output
WIPED_SUFFIXES = (".csv", ".csv" + TEMP_SUFFIX)

Splitter = Callable[[Path], List[Path]]

# Rows of a parsed file take roughly this many times its size in memory
PARSED_SIZE_FACTOR = 6
MEMORY_HEADROOM = 0.8
MAX_WORKERS = 32


# ============================================================================
# WORKER CALCULATION
# ============================================================================

def calculate_optimal_workers(
    file_sizes: List[int],
    available_memory_mb: float,
    cpu_count: int,
    *,
    max_workers: Optional[int] = None,
) -> int:
    """
    Size the thread pool for a batch of audit files.

    A worker holds every row of the file it parses until its CSV tables are
    written, so the pool only grows while the largest files, each weighted
    by ``PARSED_SIZE_FACTOR``, still fit in the usable share of free memory.
    The pool is also capped by the CPU count and the file count.

    Args:
        file_sizes: Input file sizes in bytes.
        available_memory_mb: Free system memory in megabytes.
        cpu_count: Number of logical CPUs.
        max_workers: Explicit pool size; only clamped to the file count.

    Returns:
        Worker count, at least 1.
    """
    if not file_sizes:
        return 1
    if max_workers is not None:
        return max(1, min(max_workers, len(file_sizes)))

    budget = available_memory_mb * MEMORY_HEADROOM * 1024 * 1024
    limit = min(len(file_sizes), max(cpu_count, 1), MAX_WORKERS)

    workers = 0
    reserved = 0
    for size in sorted(file_sizes, reverse=True)[:limit]:
        reserved += size * PARSED_SIZE_FACTOR
        # The first file always gets a worker, even when it does not fit
        if workers and reserved > budget:
            break
        workers += 1
    return max(1, workers)


# ============================================================================
# STATISTICS
# ============================================================================

@dataclass
class BatchStats:
    """Statistics from one batch run."""
    total_files: int = 0
    parsed: int = 0
    failed: int = 0
    cached: int = 0
    empty: int = 0
    issues: int = 0
    split: int = 0
    processing_time_seconds: float = 0.0
    workers_used: int = 0
    throttle_events: int = 0
    cache_flushes: int = 0
    failures: List[Dict[str, Any]] = field(default_factory=list)
    results: List[ParseResult] = field(default_factory=list)

    def count(self, counter: str, amount: int = 1):
        setattr(self, counter, getattr(self, counter) + amount)

    def counts(self) -> Dict[str, int]:
        return {
            "parsed": self.parsed,
            "cached": self.cached,
            "empty": self.empty,
            "issues": self.issues,
            "split": self.split,
            "failed": self.failed,
        }

    @property
    def handled_files(self) -> int:
        return sum(self.counts().values())


# ============================================================================
# ORCHESTRATOR
# ============================================================================

class BatchOrchestrator:
    """
    Runs the parse pipeline over every file of an input path.

    Workers only call :func:`process_file` and return a ``ParseResult``;
    the thread running :meth:`run` is the only one that touches the parse
    cache and the counters.
    """

    def __init__(
        self,
        config: Optional[BatchConfig] = None,
        options: Optional[ParseOptions] = None,
        schema: Optional[SchemaConfig] = None,
        *,
        splitter: Optional[Splitter] = None,
        logger: Optional[logging.Logger] = None
    ):
        self.config = config or BatchConfig()
        self.options = options or ParseOptions()
        self.schema = schema or SchemaConfig()
        self.splitter = splitter
        self.logger = logger or logging.getLogger(__name__)
        self.stats = BatchStats()

    # ------------------------------------------------------------------
    # Memory helpers
    # ------------------------------------------------------------------

    def get_available_memory_mb(self) -> float:
        """Get available system memory in MB."""
        try:
            return psutil.virtual_memory().available / (1024 * 1024)
        except (OSError, psutil.Error):
            return 4096

    def get_memory_percent(self) -> float:
        """Get current memory usage as percentage of total."""
        try:
            return psutil.virtual_memory().percent
        except (OSError, psutil.Error):
            return 50.0

    def should_throttle(self) -> bool:
        """Check if new submissions should wait because memory usage is high."""
        return self.get_memory_percent() > self.config.memory_limit_percent

    def resolve_worker_count(self, tasks: List[FileTask]) -> int:
        """Pool size: 1 in debug mode, the configured count, or sized from CPU and memory."""
        if self.config.debug:
            return 1
        return calculate_optimal_workers(
            file_sizes=[task.size for task in tasks],
            available_memory_mb=self.get_available_memory_mb(),
            cpu_count=os.cpu_count() or 4,
            max_workers=self.config.threads,
        )

    # ------------------------------------------------------------------
    # Enumeration
    # ------------------------------------------------------------------

    @staticmethod
    def input_root(input_path: Union[str, Path]) -> Path:
        """Directory holding the inputs (and the parse cache)."""
        input_path = Path(input_path)
        return input_path if input_path.is_dir() else input_path.parent

    def enumerate_tasks(self, input_path: Union[str, Path]) -> List[FileTask]:
        """
        List the files to process under ``input_path``.

        Split pieces in the ``xmlsplit`` sub-directory are included even in
        non-recursive mode.

        Raises:
            FileNotFoundError: If the input path does not exist
        """
        input_path = Path(input_path)
        if not input_path.exists():
            raise FileNotFoundError(f"Input path not found: {input_path}")
        root = self.input_root(input_path)
        excluded = self.config.excluded_suffixes

        paths = list_files(input_path, self.config.recursive, excluded)
        split_dir = root / self.config.split_dir_name
        if input_path.is_dir() and not self.config.recursive and split_dir.is_dir():
            paths.extend(list_files(split_dir, False, excluded))

        names = {self._task_name(p, root): p for p in paths}
        cache_name = self.config.cache_file_name.lower()
        selected = [n for n in names if Path(n).name.lower() != cache_name]
        selected = select_files(selected, self.config.select)
        selected = avoid_files(selected, self.config.avoid)

        tasks = []
        for name in sorted(selected):
            path = names[name]
            try:
                size = path.stat().st_size
            except OSError:
                size = 0
            tasks.append(FileTask(path, size, name))
        return tasks

    @staticmethod
    def _task_name(path: Path, root: Path) -> str:
        try:
            return path.relative_to(root).as_posix()
        except ValueError:
            return path.name

    def prepare_output_dir(self, output_dir: Union[str, Path], input_root: Optional[Path] = None) -> Path:
        """
        Create the output directory.

        When ``wipe_output`` is set, the CSV tables (and leftover
        ``.incomplete`` files) directly inside it are deleted first.
        Sub-directories and any other file are left alone.

        Raises:
            ValueError: If the input directory is the output directory or lies inside it
            OSError: If the directory cannot be created or a table cannot be deleted
        """
        output_dir = Path(output_dir)
        if self.config.wipe_output and output_dir.is_dir():
            if input_root is not None:
                resolved = output_dir.resolve()
                input_resolved = input_root.resolve()
                if resolved == input_resolved or resolved in input_resolved.parents:
                    raise ValueError(f"Refusing to wipe {output_dir}: it contains the input directory {input_root}")
            wiped = 0
            for entry in output_dir.iterdir():
                if entry.is_file() and entry.name.lower().endswith(WIPED_SUFFIXES):
                    entry.unlink()
                    wiped += 1
            self.logger.info(f"[+] Wiped [magenta]{wiped}[/] tables from [cyan]{output_dir}[/]")
        output_dir.mkdir(parents=True, exist_ok=True)
        return output_dir

    # ------------------------------------------------------------------
    # Split hand-off
    # ------------------------------------------------------------------

    def needs_split(self, task: FileTask) -> bool:
        threshold = self.config.split_threshold
        if threshold is None or task.size < threshold:
            return False
        lowered = task.name.lower()
        return not any(marker in lowered for marker in SPLIT_EXCLUDED_MARKERS)

    def split_task(self, task: FileTask, root: Path) -> Tuple[ParseResult, List[FileTask]]:
        """Hand an oversized file to the splitter and return its outcome plus the pieces to queue."""
        if self.splitter is None:
            return ParseResult(
                task, ParseStatus.SPLIT_PENDING,
                message=f"File is {format_size(task.size)}, above the split threshold, and no splitter is configured",
            ), []
        try:
            piece_tasks = []
            for piece in self.splitter(task.path):
                piece = Path(piece)
                piece_tasks.append(FileTask(piece, piece.stat().st_size, self._task_name(piece, root)))
        except OSError as e:
            return ParseResult(task, ParseStatus.FAILED_ERROR, message=f"Split failed: {e}"), []

        self.logger.debug(f"Split [cyan]{task.name}[/] into [magenta]{len(piece_tasks)}[/] pieces")
        return ParseResult(task, ParseStatus.SPLIT, tuple(t.path for t in piece_tasks)), piece_tasks

    # ------------------------------------------------------------------
    # Main processing loop
    # ------------------------------------------------------------------

    def run(
        self,
        input_path: Union[str, Path],
        output_dir: Union[str, Path],
        tasks: Optional[List[FileTask]] = None,
    ) -> BatchStats:
        """
        Parse every file of ``input_path`` (or the given ``tasks``) into ``output_dir``.

        Raises:
            FileNotFoundError: If the input path does not exist
            ValueError: If the parse cache document is corrupt
            OSError: If the output directory or the cache cannot be written
        """
        start_time = time.time()
        self.stats = BatchStats()
        root = self.input_root(input_path)
        if tasks is None:
            tasks = self.enumerate_tasks(input_path)
        self.stats.total_files = len(tasks)
        output_dir = self.prepare_output_dir(output_dir, root)

        cache = ParseCache.load(
            root / self.config.cache_file_name, output_dir,
            version=__version__, logger=self.logger,
        )
        self.logger.info(
            f"[+] Found [cyan]{len(tasks)}[/] files in [cyan]{input_path}[/] "
            f"([magenta]{format_size(sum(t.size for t in tasks))}[/])"
        )

        pending = self._filter_cached(tasks, cache)

        # Split hand-off happens before any parsing so pieces join the same queue
        queue_tasks: List[FileTask] = []
        for task in pending:
            if self.needs_split(task):
                result, pieces = self.split_task(task, root)
                self._record(result, cache)
                self.stats.total_files += len(pieces)
                queue_tasks.extend(self._filter_cached(pieces, cache))
            else:
                queue_tasks.append(task)

        if self.config.sort_by_size:
            queue_tasks.sort(key=lambda t: t.size, reverse=True)

        if queue_tasks:
            self._process_queue(queue_tasks, cache, output_dir, root)

        if cache.dirty:
            cache.save()
            self.stats.cache_flushes += 1
        self.stats.processing_time_seconds = time.time() - start_time
        self._log_summary()
        return self.stats

    def _filter_cached(self, tasks: List[FileTask], cache: ParseCache) -> List[FileTask]:
        """Count and drop the tasks the cache says are already handled."""
        if self.config.force_reparse:
            return list(tasks)
        remaining = []
        for task in tasks:
            entry = cache.get(task.name, task.size)
            if entry is not None and entry.skip_counter is not None:
                self.stats.count(entry.skip_counter)
                continue
            remaining.append(task)
        skipped = len(tasks) - len(remaining)
        if skipped:
            self.logger.debug(f"Skipping [magenta]{skipped}[/] files already in the parse cache")
        return remaining

    def _record(self, result: ParseResult, cache: ParseCache):
        self.stats.results.append(result)
        self.stats.count(result.status.counter)
        cache.record(result.task.name, result.task.size, result.status.cache_status)
        if result.status.is_failure:
            self.stats.failures.append({
                "name": result.task.name,
                "status": result.status.cache_status,
                "message": result.message,
            })

    def _process_queue(self, tasks: List[FileTask], cache: ParseCache, output_dir: Path, root: Path):
        num_workers = self.resolve_worker_count(tasks)
        self.stats.workers_used = num_workers
        ctx = ProcessingContext(
            output_dir=output_dir,
            options=self.options,
            schema=self.schema,
            input_dir=root,
            split_dir_name=self.config.split_dir_name,
            force=self.config.force_reparse,
            logger=self.logger,
        )

        # Use a deque so throttled files remain available for later submission
        file_queue: deque = deque(tasks)
        bytes_since_flush = 0

        progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(bar_width=40),
            MofNCompleteColumn(),
            TextColumn("•"),
            TextColumn("[yellow]{task.fields[workers]}[/] workers"),
            TextColumn("•"),
            TimeElapsedColumn(),
            console=console,
            transient=True,
            disable=self.config.disable_progress or self.config.debug
        )

        with progress:
            progress_id = progress.add_task("Parsing", total=len(tasks), workers=num_workers)

            with ThreadPoolExecutor(max_workers=num_workers) as executor:
                active_futures: dict = {}

                for _ in range(min(num_workers, len(file_queue))):
                    task = file_queue.popleft()
                    active_futures[executor.submit(process_file, task, ctx)] = task

                while active_futures:
                    done, _ = wait(active_futures, return_when=FIRST_COMPLETED)

                    for future in done:
                        task = active_futures.pop(future)
                        try:
                            result = future.result()
                        except Exception as e:
                            self.logger.exception(f"[-] Worker crashed on {task.name}")
                            result = ParseResult(task, ParseStatus.FAILED_ERROR, message=str(e))
                        self._record(result, cache)
                        progress.update(progress_id, advance=1)

                        bytes_since_flush += task.size
                        if bytes_since_flush >= self.config.cache_flush_bytes and cache.dirty:
                            cache.save()
                            self.stats.cache_flushes += 1
                            bytes_since_flush = 0

                        if file_queue:
                            if self.should_throttle():
                                self.stats.throttle_events += 1
                            else:
                                next_task = file_queue.popleft()
                                active_futures[executor.submit(process_file, next_task, ctx)] = next_task

                    # Keep making progress when every slot drained during throttling
                    if not active_futures and file_queue:
                        next_task = file_queue.popleft()
                        active_futures[executor.submit(process_file, next_task, ctx)] = next_task

    def _log_summary(self):
        """Log processing summary with clean formatting using Rich markup."""
        files_str = f"[cyan]{self.stats.handled_files}[/] files"
        time_str = f"[yellow]{self.stats.processing_time_seconds:.1f}s[/]"
        workers_str = f"[yellow]{self.stats.workers_used}[/] workers"
        self.logger.info(f"[+] Processed: {' │ '.join([files_str, workers_str, time_str])}")

        if self.stats.throttle_events > 0:
            self.logger.warning(
                f"[!] Memory pressure detected [yellow]{self.stats.throttle_events}[/] times"
            )

        if not self.config.disable_progress and not is_quiet():
            console.print(build_summary_table(self.stats.counts()))
            if self.stats.failures:
                console.print(build_failure_tree(f"{len(self.stats.failures)} file(s) failed", self.stats.failures))
