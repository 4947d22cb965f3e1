"""
Tests for the batch orchestrator.
"""

import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import orjson
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from auditparser.config import BatchConfig, ParseOptions
from auditparser.parallel import (
    BatchOrchestrator,
    BatchStats,
    calculate_optimal_workers,
)
from auditparser.processing import FileTask, ParseStatus


NORMAL_TEMPLATE = [
    '<?xml version="1.0" encoding="UTF-8"?>',
    '<itemList generator="w32disks">',
]


def disk_audit_lines(index, records=3):
    lines = list(NORMAL_TEMPLATE)
    for record in range(records):
        lines += [
            '<DiskItem>',
            f'<DiskName>disk{index}_{record}</DiskName>',
            f'<DiskSize>{index * 1000 + record}</DiskSize>',
            '</DiskItem>',
        ]
    return lines + ['</itemList>']


def output_snapshot(output_dir):
    return {p.name: p.read_bytes() for p in sorted(Path(output_dir).iterdir())}


def cache_entries(input_dir):
    document = orjson.loads((Path(input_dir) / "_ParseCache.json").read_bytes())
    return {
        item["Name"]: item["Status"]
        for section in document["OutputDirectories"]
        for item in section["XMLFiles"]
    }


@pytest.fixture
def orchestrator(batch_config, test_logger):
    return BatchOrchestrator(batch_config, logger=test_logger)


# ============================================================================
# WORKER CALCULATION
# ============================================================================

class TestCalculateOptimalWorkers:

    def test_no_files(self):
        assert calculate_optimal_workers([], 8192, 8) == 1

    def test_explicit_max_workers_clamped_to_file_count(self):
        assert calculate_optimal_workers([1, 2, 3], 8192, 8, max_workers=16) == 3
        assert calculate_optimal_workers([1] * 10, 8192, 8, max_workers=4) == 4

    def test_memory_bound(self):
        # 500 MB files with 1 GB free: one worker at a time
        sizes = [500 * 1024 * 1024] * 10
        assert calculate_optimal_workers(sizes, 1024, 16) == 1

    def test_largest_files_that_fit_in_memory(self):
        # Each 50 MB file reserves 300 MB; 800 MB of the 1000 MB free is usable
        sizes = [50 * 1024 * 1024] * 5
        assert calculate_optimal_workers(sizes, 1000, 8) == 2

    def test_capped_by_cpu_count(self):
        assert calculate_optimal_workers([1024] * 10, 65536, 4) == 4

    def test_never_more_than_files(self):
        assert calculate_optimal_workers([1024] * 2, 65536, 32) == 2


class TestBatchStats:

    def test_counts(self):
        stats = BatchStats()
        stats.count("parsed")
        stats.count("failed", 2)
        assert stats.counts() == {
            "parsed": 1, "cached": 0, "empty": 0, "issues": 0, "split": 0, "failed": 2,
        }
        assert stats.handled_files == 3


# ============================================================================
# ENUMERATION
# ============================================================================

class TestEnumerateTasks:

    def test_directory(self, orchestrator, populated_input_dir):
        (populated_input_dir / "_ParseCache.json").write_text("{}")
        (populated_input_dir / "notes.json").write_text("{}")
        tasks = orchestrator.enumerate_tasks(populated_input_dir)
        assert len(tasks) == 5
        assert all(task.name.endswith(".xml") for task in tasks)
        assert all(task.size == task.path.stat().st_size for task in tasks)

    def test_select_and_avoid(self, populated_input_dir, test_logger):
        config = BatchConfig(select=["eventbuffer", "stateagent"], avoid=["STATEAGENT"], disable_progress=True)
        tasks = BatchOrchestrator(config, logger=test_logger).enumerate_tasks(populated_input_dir)
        assert [t.path.name for t in tasks] == [p.name for p in populated_input_dir.glob("*eventbuffer*")]

    def test_split_directory_included(self, orchestrator, input_dir, make_audit):
        split_dir = input_dir / "xmlsplit"
        split_dir.mkdir()
        make_audit("w32files_spxml1", disk_audit_lines(1), directory=split_dir)
        tasks = orchestrator.enumerate_tasks(input_dir)
        assert [t.name for t in tasks] == ["xmlsplit/" + next(split_dir.iterdir()).name]

    def test_single_file(self, orchestrator, normal_audit_file):
        tasks = orchestrator.enumerate_tasks(normal_audit_file)
        assert [t.path for t in tasks] == [normal_audit_file]

    def test_missing_input(self, orchestrator, tmp_path):
        with pytest.raises(FileNotFoundError):
            orchestrator.enumerate_tasks(tmp_path / "nope")


# ============================================================================
# BATCH RUNS
# ============================================================================

class TestBatchRun:

    def test_counts_by_outcome(self, orchestrator, populated_input_dir, output_dir, make_audit):
        make_audit("w32broken", NORMAL_TEMPLATE + ['<DiskItem>'])
        stats = orchestrator.run(populated_input_dir, output_dir)
        assert stats.total_files == 6
        assert stats.parsed == 3
        assert stats.issues == 1
        assert stats.empty == 1
        assert stats.failed == 1
        assert stats.failures[0]["status"] == "failed/error"
        # ProcessItem, two event tables and one inspector table
        assert len(list(output_dir.glob("*.csv"))) == 4

    def test_cache_written(self, orchestrator, populated_input_dir, output_dir):
        orchestrator.run(populated_input_dir, output_dir)
        entries = cache_entries(populated_input_dir)
        assert len(entries) == 5
        assert sorted(entries.values()) == sorted([
            "parsed", "parsed", "parsed", "ignored/issues", "ignored/empty",
        ])

    def test_second_run_skips_cached_files(self, batch_config, test_logger, populated_input_dir, output_dir):
        BatchOrchestrator(batch_config, logger=test_logger).run(populated_input_dir, output_dir)
        stats = BatchOrchestrator(batch_config, logger=test_logger).run(populated_input_dir, output_dir)
        assert stats.parsed == 0
        assert stats.cached == 3
        assert stats.issues == 1
        assert stats.empty == 1
        assert stats.results == []

    def test_idempotent(self, batch_config, test_logger, populated_input_dir, output_dir):
        BatchOrchestrator(batch_config, logger=test_logger).run(populated_input_dir, output_dir)
        first = output_snapshot(output_dir)
        BatchOrchestrator(batch_config, logger=test_logger).run(populated_input_dir, output_dir)
        assert output_snapshot(output_dir) == first

    def test_changed_size_is_reparsed(self, batch_config, test_logger, input_dir, output_dir, make_audit):
        path = make_audit("w32disks", disk_audit_lines(1))
        BatchOrchestrator(batch_config, logger=test_logger).run(input_dir, output_dir)
        make_audit("w32disks", disk_audit_lines(1, records=5))
        for csv_path in output_dir.glob("*.csv"):
            csv_path.unlink()
        stats = BatchOrchestrator(batch_config, logger=test_logger).run(input_dir, output_dir)
        assert stats.parsed == 1
        assert [r.task.size for r in stats.results] == [path.stat().st_size]

    def test_changed_size_with_existing_output_is_cached(self, batch_config, test_logger, input_dir, output_dir, make_audit):
        make_audit("w32disks", disk_audit_lines(1))
        BatchOrchestrator(batch_config, logger=test_logger).run(input_dir, output_dir)
        make_audit("w32disks", disk_audit_lines(1, records=5))
        stats = BatchOrchestrator(batch_config, logger=test_logger).run(input_dir, output_dir)
        assert stats.cached == 1
        assert stats.results[0].status is ParseStatus.CACHED

    def test_force_reparse(self, test_logger, populated_input_dir, output_dir):
        config = BatchConfig(threads=2, disable_progress=True)
        BatchOrchestrator(config, logger=test_logger).run(populated_input_dir, output_dir)
        forced = BatchConfig(threads=2, disable_progress=True, force_reparse=True)
        stats = BatchOrchestrator(forced, logger=test_logger).run(populated_input_dir, output_dir)
        assert stats.parsed == 3
        assert stats.cached == 0

    def test_wipe_output(self, test_logger, populated_input_dir, output_dir):
        output_dir.mkdir()
        (output_dir / "stale.csv").write_text("old")
        (output_dir / "partial.csv.incomplete").write_text("old")
        (output_dir / "notes.txt").write_text("keep me")
        (output_dir / "sub").mkdir()
        (output_dir / "sub" / "nested.csv").write_text("keep me")
        config = BatchConfig(threads=1, disable_progress=True, wipe_output=True)
        BatchOrchestrator(config, logger=test_logger).run(populated_input_dir, output_dir)
        assert not (output_dir / "stale.csv").exists()
        assert not (output_dir / "partial.csv.incomplete").exists()
        assert (output_dir / "notes.txt").read_text() == "keep me"
        assert (output_dir / "sub" / "nested.csv").exists()
        assert len(list(output_dir.glob("*.csv"))) == 4

    def test_wipe_refuses_output_directory_holding_the_input(self, test_logger, tmp_path, make_audit):
        output_dir = tmp_path / "out"
        collected = output_dir / "collected"
        collected.mkdir(parents=True)
        audit = make_audit("w32disks", disk_audit_lines(1), directory=collected)
        (output_dir / "notes.txt").write_text("keep me")
        (output_dir / "old.csv").write_text("old")
        config = BatchConfig(threads=1, disable_progress=True, wipe_output=True)
        with pytest.raises(ValueError):
            BatchOrchestrator(config, logger=test_logger).run(collected, output_dir)
        assert audit.exists()
        assert (output_dir / "notes.txt").exists()
        assert (output_dir / "old.csv").exists()

    def test_wipe_refuses_input_directory(self, test_logger, populated_input_dir):
        config = BatchConfig(disable_progress=True, wipe_output=True)
        with pytest.raises(ValueError):
            BatchOrchestrator(config, logger=test_logger).run(populated_input_dir, populated_input_dir)

    def test_corrupt_cache_stops_batch(self, orchestrator, populated_input_dir, output_dir):
        (populated_input_dir / "_ParseCache.json").write_text("{corrupt")
        with pytest.raises(ValueError):
            orchestrator.run(populated_input_dir, output_dir)

    def test_explicit_tasks(self, orchestrator, input_dir, output_dir, normal_audit_file):
        task = FileTask(normal_audit_file, normal_audit_file.stat().st_size, normal_audit_file.name)
        stats = orchestrator.run(input_dir, output_dir, tasks=[task])
        assert stats.total_files == 1
        assert stats.parsed == 1

    def test_repeated_field_join_in_output(self, test_logger, input_dir, output_dir, make_audit):
        make_audit("w32disks", NORMAL_TEMPLATE + [
            '<DiskItem>', '<A>1</A>', '<A>2</A>', '</DiskItem>', '</itemList>',
        ])
        options = ParseOptions(flatten_newlines=True)
        config = BatchConfig(threads=1, disable_progress=True)
        BatchOrchestrator(config, options, logger=test_logger).run(input_dir, output_dir)
        content = next(output_dir.glob("*-DiskItem.csv")).read_text(encoding="utf-8")
        assert content.splitlines()[1].endswith(",1|2")


class TestDeterminism:

    def test_same_output_for_any_pool_size(self, test_logger, input_dir, tmp_path, make_audit):
        for index in range(12):
            make_audit(f"w32disks{index}", disk_audit_lines(index, records=index + 1))

        snapshots = []
        for threads in (1, 4):
            output_dir = tmp_path / f"out{threads}"
            config = BatchConfig(threads=threads, disable_progress=True, cache_file_name=f"_cache{threads}.json")
            stats = BatchOrchestrator(config, logger=test_logger).run(input_dir, output_dir)
            assert stats.parsed == 12
            snapshots.append(output_snapshot(output_dir))
        assert snapshots[0] == snapshots[1]

    def test_debug_forces_single_worker(self, test_logger, populated_input_dir, output_dir):
        config = BatchConfig(threads=8, debug=True)
        stats = BatchOrchestrator(config, logger=test_logger).run(populated_input_dir, output_dir)
        assert stats.workers_used == 1


class TestConcurrency:

    def test_stress_one_cache_entry_per_file(self, test_logger, input_dir, output_dir, make_audit):
        file_count = 60
        for index in range(file_count):
            make_audit(f"w32disks{index:03d}", disk_audit_lines(index))
        config = BatchConfig(threads=8, disable_progress=True)
        stats = BatchOrchestrator(config, logger=test_logger).run(input_dir, output_dir)
        assert stats.parsed == file_count
        assert stats.failed == 0
        entries = cache_entries(input_dir)
        assert len(entries) == file_count
        assert set(entries.values()) == {"parsed"}
        assert len(list(output_dir.glob("*.csv"))) == file_count

    def test_cache_flushed_by_volume(self, test_logger, input_dir, output_dir, make_audit):
        for index in range(5):
            make_audit(f"w32disks{index}", disk_audit_lines(index))
        config = BatchConfig(threads=2, disable_progress=True, cache_flush_bytes=1)
        stats = BatchOrchestrator(config, logger=test_logger).run(input_dir, output_dir)
        # One flush per file, nothing left for the final save
        assert stats.cache_flushes == 5

    def test_unchanged_cache_not_rewritten(self, batch_config, test_logger, populated_input_dir, output_dir):
        BatchOrchestrator(batch_config, logger=test_logger).run(populated_input_dir, output_dir)
        cache_file = populated_input_dir / "_ParseCache.json"
        cache_file.write_bytes(cache_file.read_bytes() + b"\n")
        before = cache_file.read_bytes()
        stats = BatchOrchestrator(batch_config, logger=test_logger).run(populated_input_dir, output_dir)
        assert stats.cache_flushes == 0
        assert cache_file.read_bytes() == before

    def test_throttling_defers_submissions(self, test_logger, input_dir, output_dir, make_audit):
        for index in range(6):
            make_audit(f"w32disks{index}", disk_audit_lines(index))
        config = BatchConfig(threads=2, disable_progress=True, memory_limit_percent=50.0)
        fake_memory = MagicMock(percent=95.0, available=8 * 1024 * 1024 * 1024)
        with patch("auditparser.parallel.psutil.virtual_memory", return_value=fake_memory):
            stats = BatchOrchestrator(config, logger=test_logger).run(input_dir, output_dir)
        assert stats.parsed == 6
        assert stats.throttle_events > 0

    def test_largest_files_first(self, test_logger, input_dir, output_dir, make_audit):
        for index, records in enumerate([1, 20, 5]):
            make_audit(f"w32disks{index}", disk_audit_lines(index, records=records))
        config = BatchConfig(threads=1, disable_progress=True)
        stats = BatchOrchestrator(config, logger=test_logger).run(input_dir, output_dir)
        sizes = [result.task.size for result in stats.results]
        assert sizes == sorted(sizes, reverse=True)


# ============================================================================
# SPLIT HAND-OFF
# ============================================================================

class TestSplitHandOff:

    def test_split_pending_without_splitter(self, test_logger, input_dir, output_dir, make_audit):
        make_audit("w32files", disk_audit_lines(1, records=50))
        config = BatchConfig(threads=1, disable_progress=True, split_threshold=100)
        stats = BatchOrchestrator(config, logger=test_logger).run(input_dir, output_dir)
        assert stats.failed == 1
        assert stats.results[0].status is ParseStatus.SPLIT_PENDING
        assert list(cache_entries(input_dir).values()) == ["failed/splitpending"]

    def test_event_dialect_files_never_split(self, test_logger, eventbuffer_audit_file, input_dir, output_dir):
        config = BatchConfig(threads=1, disable_progress=True, split_threshold=10)
        stats = BatchOrchestrator(config, logger=test_logger).run(input_dir, output_dir)
        assert stats.parsed == 1

    def test_splitter_pieces_are_parsed(self, test_logger, input_dir, output_dir, make_audit, agent_id):
        original = make_audit("w32files", disk_audit_lines(1, records=50))
        split_dir = input_dir / "xmlsplit"
        split_dir.mkdir()

        def splitter(path):
            assert path == original
            return [
                make_audit(f"w32files_spxml{i}", disk_audit_lines(7), directory=split_dir)
                for i in (1, 2)
            ]

        config = BatchConfig(threads=2, disable_progress=True, split_threshold=1000)
        stats = BatchOrchestrator(config, splitter=splitter, logger=test_logger).run(input_dir, output_dir)
        assert stats.split == 1
        assert stats.parsed == 2
        assert stats.total_files == 3
        entries = cache_entries(input_dir)
        assert entries[original.name] == "split"
        assert entries[f"xmlsplit/HOST1-{agent_id}-w32files_spxml1-20201005.xml"] == "parsed"
        assert sorted(p.name for p in output_dir.glob("*.csv")) == [
            f"HOST1-{agent_id}-w32files_spxml1-DiskItem.csv",
            f"HOST1-{agent_id}-w32files_spxml2-DiskItem.csv",
        ]

    def test_splitter_failure(self, test_logger, input_dir, output_dir, make_audit):
        make_audit("w32files", disk_audit_lines(1, records=50))

        def splitter(path):
            raise OSError("disk full")

        config = BatchConfig(threads=1, disable_progress=True, split_threshold=100)
        stats = BatchOrchestrator(config, splitter=splitter, logger=test_logger).run(input_dir, output_dir)
        assert stats.failed == 1
        assert "disk full" in stats.failures[0]["message"]
