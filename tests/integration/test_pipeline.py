"""
Integration tests for the matching pipeline: blocking, worker pool,
checkpoint/resume and graceful stop.
"""

import csv
import dataclasses
import json
from concurrent.futures import BrokenExecutor, ThreadPoolExecutor

import pytest

from geomatch.cache.models import MatchStatus
from geomatch.cache.result_store import ResultStore
from geomatch.core.match_engine import MatchEngine
from geomatch.pipeline import MatchPipeline

from conftest import make_target


@pytest.fixture
def targets():
    return [
        make_target("T01", "ST MARYS", "C1", lower_admin_ref="S1"),      # matched P1
        make_target("T02", "ST MARKS", "C1", lower_admin_ref="LANGATA"),  # matched P2 by region name
        make_target("T03", "HOLY CROSS", "C2", lower_admin_ref="S3"),    # P3 is 3000 outside S3
        make_target("T04", "BORDER VIEW", "C2"),                         # unit boundary fallback
        make_target("T05", "ST MARYS", "C9"),                            # no such block
        make_target("T06", "NOTHING LIKE IT", "C1", lower_admin_ref="S1"),
        make_target("T07", "ST MARYS", "C1", lower_admin_ref="MOMBASA"),
        make_target("T08", "NOWHERE", "C1"),                             # dropped candidate
    ]


EXPECTED = {
    "T01": ("matched", "matched"),
    "T02": ("matched", "matched"),
    "T03": ("rejected", "spatial_gate"),
    "T04": ("matched", "matched"),
    "T05": ("unresolved", "missing_block"),
    "T06": ("unresolved", "no_candidate_after_threshold"),
    "T07": ("unresolved", "no_region"),
    "T08": ("unresolved", "no_candidate_after_threshold"),
}


@pytest.fixture
def pipeline(config, candidates, regions):
    pipeline = MatchPipeline(config)
    pipeline.build_blocks(candidates, regions, save=True)
    return pipeline


def outcomes(results):
    return {r.target_id: (r.status, r.reason) for r in results}


class TestRun:

    def test_statuses(self, pipeline, targets):
        result = pipeline.run(targets, show_progress=False)

        assert outcomes(result.results) == EXPECTED
        assert result.processed == 8
        assert result.skipped == 0
        assert result.not_dispatched == 0
        assert not result.interrupted
        assert result.status_counts() == {
            "matched": 3, "ambiguous": 0, "rejected": 1, "unresolved": 4,
        }

    def test_results_sorted_regardless_of_input_order(self, pipeline, targets):
        result = pipeline.run(list(reversed(targets)), show_progress=False)
        assert [r.target_id for r in result.results] == sorted(t.target_id for t in targets)

    def test_matches_sequential_engine(self, pipeline, targets):
        """Parallel results equal a plain sequential run."""
        sequential = MatchEngine(pipeline.blocks, pipeline.config).run(targets)
        parallel = pipeline.run(targets, show_progress=False).results
        assert parallel == sorted(sequential, key=lambda r: r.target_id)

    def test_every_result_checkpointed(self, pipeline, targets, config):
        pipeline.run(targets, show_progress=False)
        store = ResultStore(config.results_db)
        assert store.processed_ids() == {t.target_id for t in targets}

    def test_duplicate_targets_matched_once(self, pipeline, targets):
        result = pipeline.run(targets + targets[:2], show_progress=False)
        assert result.processed == 8

    def test_requires_blocks(self, config, targets):
        with pytest.raises(RuntimeError):
            MatchPipeline(config).run(targets, show_progress=False)

    def test_no_reachable_blocks(self, pipeline, config):
        """Targets whose keys have no saved block are all missing_block."""
        targets = [make_target("T90", "ST MARYS", "C77"), make_target("T91", "HOLY CROSS", "C78")]

        resumed = MatchPipeline(config)
        assert resumed.load_blocks_for(targets) == {}

        result = resumed.run(targets, show_progress=False)
        assert outcomes(result.results) == {
            "T90": ("unresolved", "missing_block"),
            "T91": ("unresolved", "missing_block"),
        }
        assert resumed.result_store.processed_ids() == {"T90", "T91"}

    def test_saved_blocks_record_settings(self, pipeline, config):
        manifest = pipeline.block_store.manifest()
        assert manifest["settings"]["buffer_distance_m"] == config.buffer_distance_m
        assert manifest["settings"]["top_level"] == config.top_level
        assert pipeline.saved_blocks_current()

        wider = MatchPipeline(dataclasses.replace(config, buffer_distance_m=config.buffer_distance_m + 100))
        assert not wider.saved_blocks_current()

    def test_process_pool(self, config, candidates, regions, targets):
        config = dataclasses.replace(config, use_processes=True)
        pipeline = MatchPipeline(config)
        pipeline.build_blocks(candidates, regions, save=False)

        result = pipeline.run(targets, show_progress=False)
        assert outcomes(result.results) == EXPECTED


class TestResume:

    def test_second_run_skips_processed(self, pipeline, targets):
        pipeline.run(targets[:3], show_progress=False)
        result = pipeline.run(targets, show_progress=False)

        assert result.skipped == 3
        assert result.processed == 5
        assert [r.target_id for r in result.results] == ["T04", "T05", "T06", "T07", "T08"]

    def test_no_resume_reprocesses(self, pipeline, targets):
        pipeline.run(targets, show_progress=False)
        result = pipeline.run(targets, resume=False, show_progress=False)
        assert result.skipped == 0
        assert result.processed == 8

    def test_resume_from_saved_blocks(self, pipeline, config, targets):
        pipeline.run(targets[:4], show_progress=False)

        resumed = MatchPipeline(config)
        resumed.load_blocks_for(targets)
        assert sorted(resumed.blocks) == ["C1", "C2"]

        result = resumed.run(targets, show_progress=False)
        assert result.skipped == 4
        assert outcomes(resumed.result_store.query()) == EXPECTED


class TestGracefulStop:

    def test_stop_applies_to_one_run(self, pipeline, targets, config):
        pipeline.request_stop()
        result = pipeline.run(targets, show_progress=False)

        assert result.processed == 8
        assert result.not_dispatched == 0
        assert not result.interrupted
        assert ResultStore(config.results_db).processed_ids() == {t.target_id for t in targets}

    def test_stop_mid_run_then_resume(self, config, candidates, regions, targets, monkeypatch):
        config = dataclasses.replace(config, worker_count=1)
        pipeline = MatchPipeline(config)
        pipeline.build_blocks(candidates, regions, save=True)

        original = MatchEngine.timed_match

        def stop_after_first(engine, target):
            outcome = original(engine, target)
            pipeline.request_stop()
            return outcome

        monkeypatch.setattr(MatchEngine, "timed_match", stop_after_first)
        result = pipeline.run(targets, show_progress=False)
        monkeypatch.undo()

        # in-flight targets finish, nothing else is dispatched
        assert 1 <= result.processed <= 2
        assert result.processed + result.not_dispatched == 8
        assert result.interrupted
        stored = pipeline.result_store.processed_ids()
        assert stored == {r.target_id for r in result.results}

        resumed = MatchPipeline(config)
        resumed.load_blocks()
        final = resumed.run(targets, show_progress=False)
        assert final.skipped == result.processed
        assert outcomes(resumed.result_store.query()) == EXPECTED

    def test_same_pipeline_resumes_after_stop(self, config, candidates, regions, targets, monkeypatch):
        config = dataclasses.replace(config, worker_count=1)
        pipeline = MatchPipeline(config)
        pipeline.build_blocks(candidates, regions, save=False)

        original = MatchEngine.timed_match

        def stop_after_first(engine, target):
            outcome = original(engine, target)
            pipeline.request_stop()
            return outcome

        monkeypatch.setattr(MatchEngine, "timed_match", stop_after_first)
        stopped = pipeline.run(targets, show_progress=False)
        monkeypatch.undo()
        assert stopped.interrupted

        final = pipeline.run(targets, show_progress=False)
        assert not final.interrupted
        assert final.skipped == stopped.processed
        assert final.processed + stopped.processed == 8
        assert outcomes(pipeline.result_store.query()) == EXPECTED


class TestWorkerFailures:

    def test_failed_targets_not_checkpointed(self, pipeline, targets, monkeypatch):
        def crash(engine, target):
            raise RuntimeError("worker died")

        monkeypatch.setattr(MatchEngine, "timed_match", crash)
        result = pipeline.run(targets, show_progress=False)
        monkeypatch.undo()

        assert result.failed_dispatch == 8
        assert result.processed == 0
        assert result.results == []
        assert result.status_counts()["unresolved"] == 0
        assert result.to_dict()["failed_dispatch"] == 8
        assert pipeline.result_store.processed_ids() == set()

        retried = pipeline.run(targets, show_progress=False)
        assert retried.skipped == 0
        assert retried.failed_dispatch == 0
        assert outcomes(retried.results) == EXPECTED

    def test_broken_pool_stops_dispatch(self, pipeline, targets, monkeypatch):
        def broken_submit(self, fn, *args, **kwargs):
            raise BrokenExecutor("pool gone")

        monkeypatch.setattr(ThreadPoolExecutor, "submit", broken_submit)
        result = pipeline.run(targets, show_progress=False)
        monkeypatch.undo()

        assert result.interrupted
        assert result.processed == 0
        assert result.not_dispatched == 8
        assert pipeline.result_store.processed_ids() == set()


class TestOutputs:

    def test_export_results(self, pipeline, targets, tmp_path):
        pipeline.run(targets, show_progress=False)
        path = tmp_path / "exports" / "results.csv"

        assert pipeline.export_results(path) == 8
        with open(path, newline='') as f:
            rows = list(csv.DictReader(f))
        assert [row["target_id"] for row in rows] == sorted(EXPECTED)
        assert rows[0]["candidate_id"] == "P1"

    def test_export_status_filter(self, pipeline, targets, tmp_path):
        pipeline.run(targets, show_progress=False)
        count = pipeline.export_results(tmp_path / "matched.csv", status_filter=[MatchStatus.MATCHED])
        assert count == 3

    def test_review_queue(self, pipeline, targets, tmp_path):
        pipeline.run(targets, show_progress=False)
        path = tmp_path / "review.csv"

        assert pipeline.generate_review_queue(path) == 1
        with open(path, newline='') as f:
            rows = list(csv.DictReader(f))
        assert rows[0]["target_id"] == "T03"
        assert rows[0]["review_candidate_ids"] == "P3"

    def test_summary(self, pipeline, targets, config):
        run = pipeline.run(targets, show_progress=False)
        path = pipeline.write_summary(run, targets)

        with open(path) as f:
            summary = json.load(f)
        assert path.parent == config.output_dir
        assert summary['statuses']['matched'] == 3
        assert summary['partition']['dropped_candidates'] == 1
        assert summary['run']['processed'] == 8
        assert summary['blocks']['C9']['unresolved'] == 1
