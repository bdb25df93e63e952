"""Tests for RunOrchestrator, the prediction ledger and run records."""

import logging
from dataclasses import replace

import numpy as np
import pytest

from taxa_ensemble import (
    EnsembleClassifier,
    InsufficientDataError,
    NoSuccessfulRunsError,
    Partition,
    PredictionLedger,
    RunConfig,
    RunOrchestrator,
    RunRecord,
    RunState,
    RunStatus,
    StratifiedSampler,
    run_repetitions,
)


class FlakySampler(StratifiedSampler):
    """Raises InsufficientDataError on the second call."""

    def __init__(self, n_train_per_class):
        super().__init__(n_train_per_class)
        self.calls = 0

    def split(self, dataset, rng):
        self.calls += 1
        if self.calls == 2:
            raise InsufficientDataError("simulated shortage")
        return super().split(dataset, rng)


class PositiveFreeTestSampler(StratifiedSampler):
    """Holds out only negatives on the second call, so the test labels are one class."""

    def __init__(self, n_train_per_class):
        super().__init__(n_train_per_class)
        self.calls = 0

    def split(self, dataset, rng):
        self.calls += 1
        partition = super().split(dataset, rng)
        if self.calls == 2:
            test_idx = partition.test_idx[dataset.y[partition.test_idx] == 0]
            return Partition(train_idx=partition.train_idx, test_idx=test_idx)
        return partition


class FeaturelessClassifier(EnsembleClassifier):
    """Receives an empty feature subset on the second fit."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.calls = 0

    def fit(self, X, y, feature_indices, *args, **kwargs):
        self.calls += 1
        if self.calls == 2:
            feature_indices = []
        return super().fit(X, y, feature_indices, *args, **kwargs)


@pytest.fixture
def separable(make_dataset):
    return make_dataset(40, 40, n_informative=2, n_noise=20, shift=3.0, seed=5)


# ─────────────────────────────────────────────────────────────────────────────
# Test: PredictionLedger
# ─────────────────────────────────────────────────────────────────────────────


class TestPredictionLedger:
    """Tests for the samples x runs ledger."""

    def test_unset_entries_are_missing(self):
        """Test entries outside a run's test set stay NaN."""
        ledger = PredictionLedger(["a", "b", "c"], n_runs=2)
        ledger.record(0, [0, 2], [0.9, 0.1], [1, 0])

        assert np.isnan(ledger.predictions[1, 0])
        assert np.isnan(ledger.predictions[:, 1]).all()
        prob, labels = ledger.run_vectors(0)
        np.testing.assert_array_equal(prob, [0.9, 0.1])
        np.testing.assert_array_equal(labels, [1, 0])

    def test_write_once(self):
        """Test a run column cannot be written twice."""
        ledger = PredictionLedger(["a", "b"], n_runs=1)
        ledger.record(0, [0], [0.5], [1])
        with pytest.raises(ValueError):
            ledger.record(0, [1], [0.5], [0])

    def test_pooled(self):
        """Test pooling concatenates only the written runs."""
        ledger = PredictionLedger(["a", "b", "c"], n_runs=3)
        ledger.record(0, [0, 1], [0.2, 0.8], [0, 1])
        ledger.record(2, [2], [0.6], [1])

        prob, labels = ledger.pooled()
        assert ledger.written_runs() == [0, 2]
        np.testing.assert_array_equal(prob, [0.2, 0.8, 0.6])
        np.testing.assert_array_equal(labels, [0, 1, 1])

    def test_frames(self):
        """Test frames are indexed by sample id with one column per run."""
        predictions, labels = PredictionLedger(["a", "b"], n_runs=2).to_frames()
        assert list(predictions.columns) == ["run_000", "run_001"]
        assert list(labels.index) == ["a", "b"]


class TestRunRecord:
    """Tests for RunRecord rows."""

    def test_as_row(self):
        """Test selected features are joined with the delimiter."""
        record = RunRecord(run_index=3, status=RunStatus.OK, auc=0.9,
                           selected_features=("t1", "t2"), artifact="run_003")
        row = record.as_row(delimiter="|")
        assert row["features"] == "t1|t2"
        assert row["status"] == "ok"
        assert row["n_features"] == 2


class TestRunConfig:
    """Tests for RunConfig validation."""

    @pytest.mark.parametrize("field,value", [
        ("train_per_class", 0),
        ("repetitions", 0),
        ("outlier_quantile", 1.0),
        ("cv_folds", 1),
        ("n_jobs", 0),
    ])
    def test_invalid_values(self, field, value):
        """Test out-of-range settings are rejected."""
        with pytest.raises(ValueError):
            replace(RunConfig(), **{field: value}).validate()

    def test_to_dict(self):
        """Test the config serialises every field."""
        assert RunConfig().to_dict()["ensemble_tree_count"] == 10000


# ─────────────────────────────────────────────────────────────────────────────
# Test: RunOrchestrator
# ─────────────────────────────────────────────────────────────────────────────


class TestRunOrchestrator:
    """Tests for the repetition loop."""

    def test_all_runs_recorded(self, separable, tiny_config):
        """Test one record per repetition and a valid aggregate."""
        orchestrator = RunOrchestrator(tiny_config)
        result = orchestrator.run(separable)

        assert [r.run_index for r in result.records] == [0, 1, 2]
        assert all(r.ok for r in result.records)
        assert all(r.auc > 0.8 for r in result.records)
        assert result.aggregate.auc > 0.8
        assert orchestrator.state == RunState.DONE

    def test_ledger_matches_test_sets(self, separable, tiny_config):
        """Test each run's ledger column covers exactly its held-out samples."""
        result = RunOrchestrator(tiny_config).run(separable)
        n_test = separable.n_samples - 2 * tiny_config.train_per_class

        for i in range(tiny_config.repetitions):
            assert np.sum(~np.isnan(result.ledger.predictions[:, i])) == n_test

    def test_diagnostics_keyed_by_artifact(self, separable, tiny_config):
        """Test per-run diagnostics are returned, not written anywhere."""
        result = RunOrchestrator(tiny_config).run(separable)

        assert set(result.diagnostics) == {"run_000", "run_001", "run_002"}
        diag = result.diagnostics["run_001"]
        assert len(diag.outliers) == 2 * tiny_config.train_per_class
        assert diag.proximity.shape == (30, 30)
        assert len(diag.oob_error_curve) == tiny_config.ensemble_tree_count

    def test_reproducible(self, separable, tiny_config):
        """Test the same base seed reproduces every run."""
        a = RunOrchestrator(tiny_config).run(separable)
        b = RunOrchestrator(tiny_config).run(separable)

        assert [r.auc for r in a.records] == [r.auc for r in b.records]
        assert [r.selected_features for r in a.records] == [r.selected_features for r in b.records]
        np.testing.assert_array_equal(a.ledger.predictions, b.ledger.predictions)

    def test_parallel_repetitions_match_serial(self, separable, tiny_config):
        """Test running repetitions in the pool keeps the seed assignment."""
        serial = RunOrchestrator(tiny_config).run(separable)
        pooled = RunOrchestrator(replace(tiny_config, parallel_repetitions=True, n_jobs=2)).run(separable)

        assert [r.auc for r in serial.records] == [r.auc for r in pooled.records]
        np.testing.assert_array_equal(serial.ledger.predictions, pooled.ledger.predictions)

    def test_continues_past_failed_run(self, separable, tiny_config):
        """Test a failing repetition is recorded and the batch goes on."""
        sampler = FlakySampler(tiny_config.train_per_class)
        result = RunOrchestrator(tiny_config, sampler=sampler).run(separable)

        failed = result.failed_runs()
        assert [r.run_index for r in failed] == [1]
        assert failed[0].status == RunStatus.FAILED
        assert failed[0].error_kind == "InsufficientDataError"
        assert failed[0].auc is None
        assert np.isnan(result.ledger.predictions[:, 1]).all()
        assert result.aggregate.n_runs == 2
        assert len(result.successful_runs()) == 2

    def test_single_class_test_set_recorded(self, separable, tiny_config):
        """Test a held-out set with one class fails that run only, as DegenerateLabelError."""
        sampler = PositiveFreeTestSampler(tiny_config.train_per_class)
        result = RunOrchestrator(tiny_config, sampler=sampler).run(separable)

        failed = result.failed_runs()
        assert [r.run_index for r in failed] == [1]
        assert failed[0].error_kind == "DegenerateLabelError"
        assert np.isnan(result.ledger.predictions[:, 1]).all()
        assert result.aggregate.n_runs == 2

    def test_model_fit_failure_recorded(self, separable, tiny_config):
        """Test an ensemble that cannot be built fails that run only, as ModelFitError."""
        classifier = FeaturelessClassifier(n_trees=tiny_config.ensemble_tree_count)
        result = RunOrchestrator(tiny_config, classifier=classifier).run(separable)

        assert [r.status for r in result.records] == [RunStatus.OK, RunStatus.FAILED, RunStatus.OK]
        assert result.records[1].error_kind == "ModelFitError"
        assert len(result.diagnostics) == 2

    def test_train_count_equal_to_smaller_class(self, make_dataset, tiny_config, caplog):
        """Test K equal to the smaller class leaves single-class test sets in every run."""
        ds = make_dataset(40, tiny_config.train_per_class, n_informative=2, n_noise=5, shift=3.0)
        caplog.set_level(logging.WARNING, logger="taxa_ensemble")

        with pytest.raises(NoSuccessfulRunsError):
            RunOrchestrator(tiny_config).run(ds)
        failures = [r for r in caplog.records if "failed with" in r.getMessage()]
        assert len(failures) == tiny_config.repetitions
        assert all("DegenerateLabelError" in r.getMessage() for r in failures)

    def test_all_runs_failing_is_fatal(self, make_dataset, tiny_config):
        """Test a class of 5 samples with K=63 fails every run and the aggregate."""
        ds = make_dataset(100, 5, n_informative=1, n_noise=3)
        with pytest.raises(NoSuccessfulRunsError):
            RunOrchestrator(replace(tiny_config, train_per_class=63)).run(ds)

    def test_records_frame(self, separable, tiny_config):
        """Test the report frame keeps successful and failed runs apart."""
        sampler = FlakySampler(tiny_config.train_per_class)
        frame = RunOrchestrator(tiny_config, sampler=sampler).run(separable).records_frame()

        assert list(frame["status"]) == ["ok", "failed", "ok"]
        assert np.isnan(frame.loc[1, "auc"])

    def test_run_repetitions(self, separable, tiny_config):
        """Test the convenience wrapper."""
        result = run_repetitions(separable, replace(tiny_config, repetitions=1))
        assert len(result.records) == 1


@pytest.mark.slow
def test_end_to_end_cohort(make_dataset):
    """234 per class, 5 informative + 300 noise taxa, K=63, 5 repetitions."""
    ds = make_dataset(234, 234, n_informative=5, n_noise=300, shift=1.5, seed=21)
    config = RunConfig(
        train_per_class=63,
        repetitions=5,
        threshold_tree_count=200,
        threshold_forests=5,
        interpretation_tree_count=100,
        interpretation_forests=3,
        max_interpretation_features=15,
        prediction_tree_count=100,
        cv_folds=5,
        ensemble_tree_count=500,
        n_jobs=1,
    )
    result = RunOrchestrator(config).run(ds)

    assert len(result.records) == 5
    for record in result.successful_runs():
        assert record.auc > 0.8
    assert result.aggregate.auc > 0.8
