"""Integration tests for the engine: persistence, replay and concurrency."""

import random
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from flakelens.config import FileConfig
from flakelens.engine import FlakeEngine
from flakelens.ingest import IngestStatus
from flakelens.models import Classification, ClassifierConfig, RetentionPolicy, RunRecord

TITLES = [f"Suite {s} › test {t}" for s in range(4) for t in range(5)]


@pytest.fixture
def results_dir(tmp_path: Path) -> Path:
    return tmp_path / "flake-results"


@pytest.fixture
def runs(make_run, make_result) -> list[RunRecord]:
    """Thirty runs over twenty tests with a fixed pseudo-random outcome mix."""
    rng = random.Random(1234)
    records = []
    for i in range(30):
        results = []
        for title in TITLES:
            roll = rng.random()
            if roll < 0.08:
                results.append(make_result(title, retried=True, duration=rng.uniform(1, 3)))
            elif roll < 0.12:
                results.append(make_result(title, "failed", duration=rng.uniform(1, 3)))
            elif roll < 0.15:
                results.append(make_result(title, "skipped", duration=0.0))
            else:
                results.append(make_result(title, duration=rng.uniform(1, 3)))
        records.append(make_run(f"run-{i:02d}", results, index=i))
    return records


def _snapshot(engine: FlakeEngine) -> dict[str, tuple[Classification, float, int]]:
    return {
        s.title: (s.classification, round(s.flake_score, 9), s.window_size)
        for s in engine.classifier.states()
    }


class TestReplay:
    """Tests for archive-backed durability."""

    def test_reopen_restores_state(self, results_dir: Path, runs: list[RunRecord]) -> None:
        engine = FlakeEngine.open(results_dir)
        for record in runs:
            engine.ingest(record)

        reopened = FlakeEngine.open(results_dir)

        assert _snapshot(reopened) == _snapshot(engine)
        assert len(reopened.store) == len(engine.store)
        assert reopened.query.flake_rate() == engine.query.flake_rate()

    def test_resubmission_after_restart_is_duplicate(
        self, results_dir: Path, runs: list[RunRecord]
    ) -> None:
        engine = FlakeEngine.open(results_dir)
        engine.ingest(runs[0])

        reopened = FlakeEngine.open(results_dir)
        assert reopened.ingest(runs[0]).status == IngestStatus.DUPLICATE
        assert len(reopened.store) == len(runs[0].results)

    def test_pruned_runs_survive_replay(
        self, results_dir: Path, make_run, make_result
    ) -> None:
        """Fully pruned runs keep their summary and still dedupe."""
        config = FileConfig(classifier=ClassifierConfig(window_size=5, min_runs=5))
        engine = FlakeEngine.open(results_dir, config)
        for i in range(10):
            engine.ingest(make_run(f"r{i}", [make_result("a")], index=i))

        now = datetime(2026, 1, 10, 21, 30, tzinfo=UTC)
        report = engine.prune(RetentionPolicy(max_age_days=0.1), now=now)
        assert report.emptied_runs == ["r0", "r1", "r2", "r3", "r4"]
        assert list((results_dir / "runs").glob("*_r0_*.json")) == []
        assert len(list((results_dir / "runs").glob("*_r5_*.json"))) == 1

        reopened = FlakeEngine.open(results_dir, config)
        assert len(reopened.store) == 5
        assert reopened.store.has_run("r0")
        assert reopened.ingest(make_run("r0", [make_result("a")], index=0)).status == (
            IngestStatus.DUPLICATE
        )
        assert len(reopened.aggregates.runs()) == 10
        assert reopened.state_for("a").classification == Classification.STABLE

    def test_similar_run_ids_survive_reopen(
        self, results_dir: Path, make_run, make_result
    ) -> None:
        engine = FlakeEngine.open(results_dir)
        engine.ingest(make_run("ci/1", [make_result("a")]))
        engine.ingest(make_run("ci_1", [make_result("b")]))

        reopened = FlakeEngine.open(results_dir)

        assert reopened.store.has_run("ci/1")
        assert reopened.store.has_run("ci_1")
        assert reopened.resolver.lookup("a") is not None
        assert reopened.resolver.lookup("b") is not None
        assert len(reopened.store) == 2

    def test_configured_retention_applied_on_open(
        self, results_dir: Path, make_run, make_result
    ) -> None:
        engine = FlakeEngine.open(results_dir)
        start = datetime(2020, 1, 1, tzinfo=UTC)
        engine.ingest(make_run("old", [make_result("gone")], started_at=start))
        for i in range(3):
            engine.ingest(make_run(f"new-{i}", [make_result("kept")], index=i))

        config = FileConfig(retention=RetentionPolicy(stale_after_runs=3))
        reopened = FlakeEngine.open(results_dir, config)

        assert reopened.resolver.lookup("gone") is None
        assert reopened.state_for("gone") is None
        assert reopened.state_for("kept") is not None


class TestProperties:
    """Engine-level invariants."""

    def test_idempotent_resubmission(self, runs: list[RunRecord]) -> None:
        engine = FlakeEngine()
        for record in runs:
            engine.ingest(record)
        before = _snapshot(engine)
        size = len(engine.store)

        for record in runs:
            assert engine.ingest(record).status == IngestStatus.DUPLICATE

        assert _snapshot(engine) == before
        assert len(engine.store) == size

    def test_deterministic_given_order(self, runs: list[RunRecord]) -> None:
        first, second = FlakeEngine(), FlakeEngine()
        for record in runs:
            first.ingest(record)
            second.ingest(record)
        assert _snapshot(first) == _snapshot(second)

    def test_rebuild_matches_incremental(self, runs: list[RunRecord]) -> None:
        engine = FlakeEngine()
        for record in runs:
            engine.ingest(record)
        incremental = _snapshot(engine)

        engine.rebuild()
        assert _snapshot(engine) == incremental

    def test_window_never_exceeds_size(self, runs: list[RunRecord]) -> None:
        engine = FlakeEngine()
        for record in runs:
            engine.ingest(record)
            assert all(s.window_size <= 20 for s in engine.classifier.states())

    def test_history_survives_file_move(self, make_run, make_result) -> None:
        engine = FlakeEngine()
        for i in range(6):
            path = "tests/auth.spec.ts" if i < 3 else "tests/auth/login.spec.ts"
            engine.ingest(
                make_run(f"r{i}", [make_result("Auth › login", file_path=path)], index=i)
            )

        identity = engine.resolver.lookup("Auth › login")
        assert len(engine.store.entries(identity.fingerprint)) == 6
        assert engine.state_for("Auth › login").window_size == 6
        assert len(engine.resolver.identities()) == 1


class TestConcurrency:
    """Concurrent ingestion."""

    def test_parallel_ingest_matches_serial_counts(self, runs: list[RunRecord]) -> None:
        """Every entry is committed exactly once regardless of interleaving."""
        engine = FlakeEngine()
        with ThreadPoolExecutor(max_workers=8) as pool:
            receipts = list(pool.map(engine.ingest, runs))

        assert all(r.status == IngestStatus.INGESTED for r in receipts)
        assert len(engine.store) == sum(len(r.results) for r in runs)
        assert engine.store.run_count() == len(runs)

        for identity in engine.store.identities():
            entries = engine.store.entries(identity.fingerprint)
            sequences = [e.sequence for e in entries]
            assert sequences == sorted(sequences)
            assert len({e.run_id for e in entries}) == len(runs)

    def test_parallel_window_matches_rebuild(self, runs: list[RunRecord]) -> None:
        """Incremental state equals state rebuilt from the committed history."""
        engine = FlakeEngine()
        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(engine.ingest, runs))
        incremental = _snapshot(engine)

        engine.rebuild()
        assert _snapshot(engine) == incremental

    def test_same_run_submitted_concurrently(self, runs: list[RunRecord]) -> None:
        """Exactly one of several concurrent identical submissions is ingested."""
        engine = FlakeEngine()
        barrier = threading.Barrier(6)

        def submit(record: RunRecord) -> IngestStatus:
            barrier.wait()
            return engine.ingest(record).status

        with ThreadPoolExecutor(max_workers=6) as pool:
            statuses = list(pool.map(submit, [runs[0]] * 6))

        assert statuses.count(IngestStatus.INGESTED) == 1
        assert statuses.count(IngestStatus.DUPLICATE) == 5
        assert len(engine.store) == len(runs[0].results)

    def test_listener_sees_every_transition_once(self, runs: list[RunRecord]) -> None:
        engine = FlakeEngine()
        seen = []
        lock = threading.Lock()

        def listener(transition) -> None:
            with lock:
                seen.append(transition)

        engine.subscribe(listener)
        with ThreadPoolExecutor(max_workers=4) as pool:
            receipts = list(pool.map(engine.ingest, runs))

        emitted = [t for r in receipts for t in r.transitions]
        assert len(seen) == len(emitted)
        assert len(engine.query.recent_transitions()) == min(len(seen), 200)

    def test_prune_during_ingest(self, make_run, make_result) -> None:
        engine = FlakeEngine()
        base = datetime(2026, 1, 1, tzinfo=UTC)
        records = [
            make_run(f"r{i}", [make_result("a"), make_result(f"t{i % 3}")], started_at=base + timedelta(days=i))
            for i in range(40)
        ]

        def prune_loop() -> None:
            for _ in range(20):
                engine.prune(RetentionPolicy(max_age_days=5), now=base + timedelta(days=40))

        with ThreadPoolExecutor(max_workers=4) as pool:
            pruner = pool.submit(prune_loop)
            list(pool.map(engine.ingest, records))
            pruner.result()

        # Classification windows of active tests are never cut
        state = engine.state_for("a")
        assert state.window_size == 20
        assert len(engine.store.window(engine.resolver.lookup("a").fingerprint, 20)) == 20

    def test_stale_prune_during_ingest_keeps_state_consistent(
        self, make_run, make_result
    ) -> None:
        """Every test with stored history keeps its state, aggregate and identity."""
        engine = FlakeEngine()
        records = [
            make_run(
                f"r{i}",
                [make_result("a"), make_result(f"rare-{i % 4}")] if i % 5 == 0 else [make_result("a")],
                index=i,
            )
            for i in range(60)
        ]

        def prune_loop() -> None:
            for _ in range(50):
                engine.prune(RetentionPolicy(stale_after_runs=2))

        with ThreadPoolExecutor(max_workers=4) as pool:
            pruner = pool.submit(prune_loop)
            list(pool.map(engine.ingest, records))
            pruner.result()

        for identity in engine.store.identities():
            fingerprint = identity.fingerprint
            assert engine.classifier.state(fingerprint) is not None, identity.title
            assert engine.aggregates.identity(fingerprint) is not None, identity.title
            assert engine.resolver.lookup(identity.title) is not None, identity.title
        for state in engine.classifier.states():
            assert engine.store.entries(state.fingerprint), state.title
