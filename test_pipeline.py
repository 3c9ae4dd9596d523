#!/usr/bin/env python3
"""
Test Suite for Loading, Pipeline Runs and the CLI

Tests for:
- Dataset loading and adapters over analyzer output
- run_pipeline stages, warnings and cancellation
- PipelineRunner "latest request wins" behaviour
- Configuration files, presets and precedence
- Click command end to end
"""

import pytest
import os
import json
import hashlib
import threading
from collections import Counter
from datetime import date, datetime, timezone
from unittest.mock import patch
from click.testing import CliRunner

from strata_lens import (
    DATASET_PATHS,
    DatasetLoader,
    DatasetShapeError,
    Aborted,
    CancellationToken,
    events_from_lifecycle,
    files_from_file_index,
    edges_from_cochange_network,
    activity_records_from_feed,
    directory_ranking_from_stats,
    files_from_events,
    load_pipeline_inputs,
    PipelineInputs,
    PipelineConfig,
    PipelineRunner,
    PipelineMetrics,
    run_pipeline,
    MemoryMonitor,
    ProgressReporter,
    DateRange,
    CouplingEdge,
    FileChangeEvent,
    load_config_file,
    find_config_file,
    ConfigResolver,
    main,
)


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


# ============================================================================
# DATASET LOADING
# ============================================================================


class TestDatasetLoader:
    """Test dataset resolution and caching"""

    def test_available_datasets(self, dataset_dir):
        loader = DatasetLoader(str(dataset_dir))
        assert loader.available() == [
            "file_lifecycle",
            "file_index",
            "temporal_daily",
            "directory_stats",
            "cochange_network",
        ]
        assert not loader.exists("author_network")

    def test_load_is_cached_per_id(self, dataset_dir):
        loader = DatasetLoader(str(dataset_dir))
        first = loader.load("file_lifecycle")
        assert loader.load("file_lifecycle") is first
        loader.clear()
        assert loader.load("file_lifecycle") is not first

    def test_missing_datasets(self, dataset_dir):
        loader = DatasetLoader(str(dataset_dir))
        assert loader.load("author_network", required=False) is None
        with pytest.raises(FileNotFoundError):
            loader.load("author_network")
        with pytest.raises(KeyError):
            loader.load("release_snapshots")

    def test_invalid_json(self, tmp_path):
        (tmp_path / "file_lifecycle.json").write_text("{not json", encoding="utf-8")
        with pytest.raises(DatasetShapeError):
            DatasetLoader(str(tmp_path)).load("file_lifecycle")

    def test_paths_match_analyzer_layout(self):
        assert DATASET_PATHS["file_index"] == "metadata/file_index.json"
        assert DATASET_PATHS["cochange_network"] == "networks/cochange_network.json"


class TestAdapters:
    """Test conversion of raw dataset shapes into typed inputs"""

    def test_events_from_lifecycle(self, dataset_dir):
        data = DatasetLoader(str(dataset_dir)).load("file_lifecycle")
        events = events_from_lifecycle(data)

        assert len(events) == 10
        assert [e.timestamp for e in events] == sorted(e.timestamp for e in events)
        first = events[0]
        assert first.timestamp == utc(2024, 3, 4, 10)
        assert first.status == "added"
        assert first.commit_hash == "c1"
        assert {e.status for e in events} == {"added", "modified", "deleted"}

    def test_events_skip_bad_rows(self):
        warnings = Counter()
        data = {
            "files": {
                "x.py": [
                    {"timestamp": "bad", "operation": "M"},
                    {"timestamp": 1_700_000_000, "operation": "Z"},
                    "junk",
                    {"datetime": "2023-11-14T22:13:20+00:00", "operation": "R100",
                     "old_path": "w.py", "similarity": 100},
                ],
                "y.py": "not a list",
            }
        }
        events = events_from_lifecycle(data, warnings)
        assert warnings == {"invalid_timestamp": 1, "invalid_event": 3}
        assert len(events) == 1
        assert events[0].status == "renamed"
        assert events[0].old_path == "w.py"

    @pytest.mark.parametrize("data", [{"commits": []}, [], {"files": []}])
    def test_events_wrong_shape(self, data):
        with pytest.raises(DatasetShapeError):
            events_from_lifecycle(data)

    def test_files_from_file_index(self, dataset_dir):
        data = DatasetLoader(str(dataset_dir)).load("file_index")
        files = {f.path: f for f in files_from_file_index(data)}

        assert set(files) == {"src/app.py", "src/utils.py"}
        app = files["src/app.py"]
        assert app.first_seen == utc(2024, 3, 4, 10)
        assert app.unique_authors == 3
        assert app.operations == {"A": 1, "M": 3}

    def test_files_skip_bad_dates(self):
        warnings = Counter()
        files = files_from_file_index(
            {"files": {"a.py": {"first_seen": None, "last_modified": "2024-01-01"}}}, warnings
        )
        assert files == []
        assert warnings == {"invalid_timestamp": 1}

    def test_edges_from_cochange_network(self, dataset_dir):
        data = DatasetLoader(str(dataset_dir)).load("cochange_network")
        assert edges_from_cochange_network(data) == [
            CouplingEdge("src/app.py", "src/utils.py", 0.5, 2)
        ]

        warnings = Counter()
        edges = edges_from_cochange_network(
            {"edges": [{"source": "a"}, {"source": "a", "target": "b", "coupling_strength": None}]},
            warnings,
        )
        assert edges == []
        assert warnings == {"invalid_edge": 2}

        with pytest.raises(DatasetShapeError):
            edges_from_cochange_network({"nodes": []})

    def test_feed_rows(self):
        rows = [{"date": "2024-03-04", "directory_id": 1, "added": 2}, {"date": "2024-03-05"}]
        warnings = Counter()
        records = activity_records_from_feed(rows, warnings=warnings)
        assert len(records) == 1
        assert warnings == {"invalid_record": 1}
        assert activity_records_from_feed({"records": rows[:1]})[0].added == 2

    def test_feed_from_temporal_activity_map(self):
        data = {
            "meta": {"granularity": "week", "data_schema": ["commits", "lines_changed", "unique_authors"]},
            "data": {
                "src": {"2024-W10": [3, 120, 2], "bad": [1, 2, 3]},
                ".": {"2024-W10": [1, 5, 1]},
            },
        }
        warnings = Counter()
        records = activity_records_from_feed(data, {"src": 2}, warnings)

        assert len(records) == 1
        assert records[0].date == date(2024, 3, 4)
        assert records[0].directory_id == 2
        assert records[0].commits == 3
        assert records[0].unique_authors == 2
        assert records[0].events == 0
        assert warnings == {"missing_directory_mapping": 1, "invalid_record": 1}

        with pytest.raises(DatasetShapeError):
            activity_records_from_feed(data)

    def test_feed_wrong_shape(self):
        with pytest.raises(DatasetShapeError):
            activity_records_from_feed("nope")

    def test_directory_ranking(self, dataset_dir):
        data = DatasetLoader(str(dataset_dir)).load("directory_stats")
        assert directory_ranking_from_stats(data) == {"src": 2.67, "tests": 1.0}
        with pytest.raises(DatasetShapeError):
            directory_ranking_from_stats({})

    def test_files_from_events(self, sample_events):
        files = {f.path: f for f in files_from_events(sample_events)}
        app = files["src/app.py"]
        assert app.total_commits == 4
        assert app.unique_authors == 3
        assert app.operations == {"A": 1, "M": 3}
        assert app.first_seen == utc(2024, 3, 4, 10)
        assert app.last_modified == utc(2024, 4, 2, 15)
        assert files["src/utils.py"].operations == {"A": 1, "M": 1, "D": 1}

    def test_load_pipeline_inputs(self, dataset_dir, quiet_reporter):
        inputs = load_pipeline_inputs(DatasetLoader(str(dataset_dir)), reporter=quiet_reporter)
        assert len(inputs.events) == 10
        assert len(inputs.files) == 2
        assert len(inputs.edges) == 1
        assert inputs.date_range == DateRange(utc(2024, 3, 4), utc(2024, 4, 3))
        assert inputs.directory_ranking == {"src": 2.67, "tests": 1.0}
        assert inputs.activity_feed is None

    def test_load_pipeline_inputs_needs_lifecycle_or_index(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_pipeline_inputs(DatasetLoader(str(tmp_path)))

    def test_bad_temporal_daily_falls_back(self, dataset_dir, quiet_reporter):
        (dataset_dir / "aggregations" / "temporal_daily.json").write_text(
            '{"days": {}}', encoding="utf-8"
        )
        inputs = load_pipeline_inputs(DatasetLoader(str(dataset_dir)), reporter=quiet_reporter)
        assert inputs.date_range is None


# ============================================================================
# PIPELINE
# ============================================================================


class TestRunPipeline:
    """Test a full pipeline pass over in-memory inputs"""

    def test_events_only(self, sample_events, fixed_now):
        result = run_pipeline(
            PipelineInputs(events=tuple(sample_events)), PipelineConfig(now=fixed_now)
        )

        assert result.tree.total_files == 5
        assert result.grid.directories == ("src", "src/core", "tests")
        # Coupling derived from the events themselves
        assert [p.file_path for p in result.coupling.top_partners("src/app.py")] == ["src/utils.py"]
        assert len(result.files) == 5
        assert all(f.health is not None for f in result.files)
        assert result.date_range == DateRange(utc(2024, 3, 4, 10), utc(2024, 4, 3, 8))
        assert len(result.temporal) == 5
        assert result.warnings == {}

    def test_files_carry_health_and_coupling(self, sample_events, fixed_now):
        result = run_pipeline(
            PipelineInputs(events=tuple(sample_events)), PipelineConfig(now=fixed_now)
        )
        app = next(f for f in result.files if f.path == "src/app.py")
        # churn 0.75, three authors, 89 days since the last change
        assert app.health.score == 63
        assert app.health.category == "healthy"
        assert app.health.age.value == app.age_days == 29.21
        assert app.health.age.score == pytest.approx(100 - 89 / 180 * 10)
        assert app.coupling.max_strength == 0.5
        readme = next(f for f in result.files if f.path == "README.md")
        assert readme.coupling.total_partners == 0

    def test_scrubber_controls_visibility(self, sample_events, fixed_now):
        result = run_pipeline(
            PipelineInputs(events=tuple(sample_events)),
            PipelineConfig(now=fixed_now, scrubber_position=50),
        )
        visible = {v.file.path for v in result.temporal if v.is_visible}
        assert visible == {"README.md", "src/app.py", "src/utils.py", "tests/test_app.py"}

    def test_explicit_edges_and_files(self, sample_files, sample_edges, fixed_now):
        result = run_pipeline(
            PipelineInputs(files=tuple(sample_files), edges=tuple(sample_edges)),
            PipelineConfig(now=fixed_now),
        )
        # The tree comes from the file paths when there are no events
        assert result.tree.total_files == 3
        assert result.grid.is_empty
        assert len(result.coupling) == 5
        assert result.health["src/old.py"].category == "medium"
        assert result.health_summary() == {"critical": 0, "medium": 1, "healthy": 2}

    def test_warnings_are_merged(self, sample_events, fixed_now, quiet_reporter):
        stray = sample_events + [FileChangeEvent("", "added", "c9", utc(2024, 3, 5))]
        result = run_pipeline(
            PipelineInputs(
                events=tuple(stray),
                edges=(CouplingEdge("a.py", "a.py", 0.5),),
                warnings={"invalid_event": 2},
            ),
            PipelineConfig(now=fixed_now),
            reporter=quiet_reporter,
        )
        assert result.warnings["invalid_event"] == 2
        assert result.warnings["empty_path"] == 1
        assert result.warnings["missing_directory_mapping"] == 1
        assert result.warnings["self_loop"] == 1
        assert result.warning_count == 5

    def test_activity_map_feed(self, sample_events, fixed_now):
        feed = {
            "meta": {"granularity": "week"},
            "data": {"src": {"2024-W10": [2, 40, 2]}, "docs": {"2024-W10": [1, 1, 1]}},
        }
        result = run_pipeline(
            PipelineInputs(events=tuple(sample_events), activity_feed=feed),
            PipelineConfig(metric="commits", now=fixed_now),
        )
        assert result.grid.directories == ("src",)
        assert result.grid.max_value == 2
        assert result.warnings == {"missing_directory_mapping": 1}

    def test_views_are_json_ready(self, sample_events, fixed_now):
        result = run_pipeline(
            PipelineInputs(events=tuple(sample_events)), PipelineConfig(now=fixed_now)
        )
        views = result.views()
        assert set(views) == {
            "directory_tree",
            "activity_grid",
            "coupling_index",
            "health_scores",
            "temporal_view",
        }
        assert views["health_scores"]["total_files"] == 5
        assert views["temporal_view"]["date_range"]["start"] == "2024-03-04T10:00:00+00:00"
        json.dumps(views)

    def test_empty_inputs(self):
        result = run_pipeline(PipelineInputs())
        assert result.tree.node_count == 1
        assert result.grid.is_empty
        assert result.temporal == ()
        assert result.date_range is None
        assert result.views()["temporal_view"]["date_range"] is None

    def test_cancelled_token_aborts(self, sample_events):
        token = CancellationToken()
        token.cancel()
        with pytest.raises(Aborted):
            run_pipeline(PipelineInputs(events=tuple(sample_events)), token=token)

    def test_memory_limit(self, sample_events):
        with pytest.raises(MemoryError):
            run_pipeline(
                PipelineInputs(events=tuple(sample_events)),
                PipelineConfig(memory_limit_mb=0.001),
            )

    def test_metrics(self, sample_events, fixed_now):
        result = run_pipeline(
            PipelineInputs(events=tuple(sample_events)), PipelineConfig(now=fixed_now)
        )
        data = result.metrics.to_dict()
        assert data["events_processed"] == 10
        assert data["files_scored"] == 5
        assert set(data["stage_times"]) == {
            "directory_tree",
            "activity_grid",
            "coupling_index",
            "health_scores",
            "temporal_view",
        }
        assert data["cache_statistics"]["misses"] == 5


class BlockingReporter(ProgressReporter):
    """Quiet reporter that parks the first run inside its first stage"""

    def __init__(self):
        super().__init__(quiet=True)
        self.entered = threading.Event()
        self.release = threading.Event()
        self.calls = 0

    def stage_start(self, stage_name, message=""):
        self.calls += 1
        if self.calls == 1:
            self.entered.set()
            self.release.wait(5)


class TestPipelineRunner:
    """Test that a newer request supersedes the one in flight"""

    def test_last_request_wins(self, sample_events, fixed_now):
        reporter = BlockingReporter()
        inputs = PipelineInputs(events=tuple(sample_events))
        config = PipelineConfig(now=fixed_now)

        with PipelineRunner(reporter) as runner:
            first = runner.submit(inputs, config)
            assert reporter.entered.wait(5)
            second = runner.submit(inputs, config)
            third = runner.submit(inputs, config)
            reporter.release.set()

            with pytest.raises(Aborted):
                first.result(timeout=10)
            with pytest.raises(Aborted):
                second.result(timeout=10)
            result = third.result(timeout=10)

        assert result.tree.total_files == 5

    def test_cancel_in_flight(self, sample_events):
        reporter = BlockingReporter()
        runner = PipelineRunner(reporter)
        future = runner.submit(PipelineInputs(events=tuple(sample_events)))
        assert reporter.entered.wait(5)
        runner.cancel()
        reporter.release.set()

        with pytest.raises(Aborted):
            future.result(timeout=10)
        runner.shutdown()

    def test_sequential_runs_both_complete(self, sample_events):
        with PipelineRunner() as runner:
            first = runner.submit(PipelineInputs(events=tuple(sample_events)))
            assert first.result(timeout=10).tree.total_files == 5
            second = runner.submit(PipelineInputs(events=tuple(sample_events[:1])))
            assert second.result(timeout=10).tree.total_files == 1


class TestMemoryMonitor:
    """Test memory monitoring and limit enforcement"""

    def test_reports_rss(self):
        with patch("strata_lens.psutil") as mock_psutil:
            mock_psutil.Process.return_value.memory_info.return_value.rss = 512 * 1024 * 1024
            monitor = MemoryMonitor()
            assert monitor.check_memory() == 512.0
        assert monitor.get_peak() == 512.0

    def test_limit(self):
        with patch("strata_lens.psutil") as mock_psutil:
            mock_psutil.Process.return_value.memory_info.return_value.rss = 100 * 1024 * 1024
            monitor = MemoryMonitor(limit_mb=50)
            with pytest.raises(MemoryError, match="Memory limit exceeded"):
                monitor.check_memory()

    def test_real_process(self):
        assert MemoryMonitor().check_memory() > 0

    def test_pipeline_metrics_cache_rate(self):
        metrics = PipelineMetrics(cache_hits=3, cache_misses=1)
        assert metrics.to_dict()["cache_statistics"]["hit_rate_percent"] == 75.0


# ============================================================================
# CONFIGURATION
# ============================================================================


class TestConfiguration:
    """Test config files, presets and precedence"""

    def test_load_yaml_and_json(self, tmp_path):
        y = tmp_path / "c.yaml"
        y.write_text("granularity: month\ntop-n: 5\n", encoding="utf-8")
        assert load_config_file(str(y)) == {"granularity": "month", "top-n": 5}

        j = tmp_path / "c.json"
        j.write_text('{"metric": "commits"}', encoding="utf-8")
        assert load_config_file(str(j)) == {"metric": "commits"}

        empty = tmp_path / "empty.yml"
        empty.write_text("", encoding="utf-8")
        assert load_config_file(str(empty)) == {}

    def test_load_errors(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config_file(str(tmp_path / "missing.yaml"))

        bad = tmp_path / "c.txt"
        bad.touch()
        with pytest.raises(ValueError, match="Unsupported"):
            load_config_file(str(bad))

        listing = tmp_path / "list.yaml"
        listing.write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(ValueError, match="mapping"):
            load_config_file(str(listing))

    def test_find_config_file(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        data_dir = tmp_path / "data"
        data_dir.mkdir()
        assert find_config_file(str(data_dir)) is None

        (tmp_path / ".strata-lens.json").write_text("{}", encoding="utf-8")
        assert os.path.samefile(find_config_file(str(data_dir)), tmp_path / ".strata-lens.json")

        (data_dir / ".strata-lens.yml").write_text("{}", encoding="utf-8")
        assert find_config_file(str(data_dir)) == os.path.join(str(data_dir), ".strata-lens.yml")

    def test_precedence(self, tmp_path):
        (tmp_path / ".strata-lens.yaml").write_text(
            "preset: detailed\ntop-n: 7\n", encoding="utf-8"
        )
        resolver = ConfigResolver({"metric": "authors", "top_n": None}, None, None, str(tmp_path))

        assert resolver.get("metric") == "authors"       # CLI
        assert resolver.get("top_n") == 7                # config file
        assert resolver.get("granularity") == "day"      # preset from config
        assert resolver.get("fill_gaps") is True
        assert resolver.get("scrubber", 100.0) == 100.0  # default

        cli_preset = ConfigResolver({}, None, "overview", str(tmp_path))
        assert cli_preset.get("granularity") == "month"

    def test_unknown_preset_in_config(self, tmp_path):
        (tmp_path / ".strata-lens.json").write_text('{"preset": "bogus"}', encoding="utf-8")
        with pytest.raises(ValueError, match="Unknown preset"):
            ConfigResolver({}, None, None, str(tmp_path))

    def test_pipeline_config(self, tmp_path):
        resolver = ConfigResolver(
            {"scrubber": 25.0, "coupling_threshold": 0.7}, None, "quarterly", str(tmp_path)
        )
        config = resolver.pipeline_config()
        assert config.granularity == "quarter"
        assert config.top_n == 20
        assert config.scrubber_position == 25.0
        assert config.coupling_threshold == 0.7
        assert config.fill_gaps is False


class TestProgressReporter:
    def test_output(self, capsys):
        reporter = ProgressReporter(quiet=False, verbose=True, use_colors=False)
        reporter.stage_start("Stage 1", "Details")
        reporter.info("Info")
        reporter.warning("Warn")
        reporter.success("Done")
        reporter.stage_complete("Stage 1", {"Stat": 1})
        reporter.summary({"Total": 10})
        reporter.error("Broken")

        captured = capsys.readouterr()
        assert "Stage 1" in captured.out
        assert "Stat: 1" in captured.out
        assert "VIEW SUMMARY" in captured.out
        assert "ERROR: Broken" in captured.err

    def test_quiet(self, capsys):
        reporter = ProgressReporter(quiet=True)
        reporter.stage_start("Stage")
        reporter.info("Info")
        reporter.warning("Warn")
        assert reporter.create_progress_bar(10) is None
        assert capsys.readouterr().out == ""


# ============================================================================
# CLI
# ============================================================================


class TestCli:
    """Test the strata-lens command"""

    def test_generates_views_and_manifest(self, dataset_dir, tmp_path):
        out = tmp_path / "out"
        result = CliRunner().invoke(main, [str(dataset_dir), "-o", str(out), "--quiet"])
        assert result.exit_code == 0, result.output

        for name in ("directory_tree", "activity_grid", "coupling_index", "health_scores", "temporal_view"):
            assert (out / "views" / f"{name}.json").is_file()

        manifest = json.loads((out / "manifest.json").read_text(encoding="utf-8"))
        entry = manifest["views"]["health_scores"]
        digest = hashlib.sha256((out / entry["file"]).read_bytes()).hexdigest()
        assert entry["sha256"] == digest
        assert manifest["generator_version"] == "1.0.0"

        health = json.loads((out / "views" / "health_scores.json").read_text(encoding="utf-8"))
        # file_index supplies the per-file records
        assert set(health["files"]) == {"src/app.py", "src/utils.py"}

    def test_default_output_is_dataset_dir(self, dataset_dir):
        result = CliRunner().invoke(main, [str(dataset_dir), "-q"])
        assert result.exit_code == 0, result.output
        assert (dataset_dir / "views" / "activity_grid.json").is_file()
        assert (dataset_dir / "manifest.json").is_file()

    def test_options_and_csv(self, dataset_dir, tmp_path):
        out = tmp_path / "out"
        result = CliRunner().invoke(
            main,
            [str(dataset_dir), "-o", str(out), "-q", "--granularity", "month",
             "--metric", "commits", "--top-n", "1", "--csv"],
        )
        assert result.exit_code == 0, result.output

        grid = json.loads((out / "views" / "activity_grid.json").read_text(encoding="utf-8"))
        assert grid["granularity"] == "month"
        assert grid["metric"] == "commits"
        # directory_stats ranks src first
        assert grid["directories"] == ["src"]
        assert (out / "views" / "activity_grid.csv").is_file()

    def test_preset_and_config_file(self, dataset_dir, tmp_path):
        (dataset_dir / ".strata-lens.yaml").write_text(
            "granularity: quarter\n", encoding="utf-8"
        )
        out = tmp_path / "out"
        result = CliRunner().invoke(main, [str(dataset_dir), "-o", str(out), "-q", "--preset", "detailed"])
        assert result.exit_code == 0, result.output
        grid = json.loads((out / "views" / "activity_grid.json").read_text(encoding="utf-8"))
        # config file beats the preset; the preset still fills what the file leaves out
        assert grid["granularity"] == "quarter"
        assert len(grid["directories"]) == 2

    def test_dry_run(self, dataset_dir):
        result = CliRunner().invoke(main, [str(dataset_dir), "--dry-run", "--no-color"])
        assert result.exit_code == 0
        assert "DRY RUN MODE" in result.output
        assert "views/activity_grid.json" in result.output
        assert not (dataset_dir / "views").exists()

    def test_missing_datasets_fail(self, tmp_path):
        result = CliRunner().invoke(main, [str(tmp_path), "--no-color"])
        assert result.exit_code == 1
        assert "View generation failed" in result.output

    def test_invalid_scrubber(self, dataset_dir):
        result = CliRunner().invoke(main, [str(dataset_dir), "--scrubber", "nan", "--no-color"])
        assert result.exit_code == 2
        assert "Invalid configuration" in result.output

    def test_summary_output(self, dataset_dir, tmp_path):
        result = CliRunner().invoke(main, [str(dataset_dir), "-o", str(tmp_path / "o"), "--no-color"])
        assert result.exit_code == 0, result.output
        assert "VIEW SUMMARY" in result.output
        assert "Views saved to" in result.output

    def test_version(self):
        result = CliRunner().invoke(main, ["--version"])
        assert result.exit_code == 0
        assert "1.0.0" in result.output
