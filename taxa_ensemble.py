"""
Taxa discrimination by repeated variable-selected random forests

Scores how well microbiome taxa abundances separate two clinical states
(disease vs. control). Each repetition:
- Draws K samples per class for training, the rest are held out
- Selects taxa with a three-phase random-forest procedure
  (thresholding against permuted controls, interpretation, prediction)
- Fits a large bagged decision-tree ensemble on the selected taxa
- Scores the held-out samples with a threshold-free ROC/AUC

After all repetitions the held-out predictions are pooled into one ROC curve
with a pointwise confidence band and an AUC interval.
"""

import logging
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from scipy.stats import norm
from sklearn.ensemble import RandomForestClassifier
from sklearn.metrics import auc as trapezoid_area, roc_curve
from sklearn.model_selection import StratifiedKFold, cross_val_score
from sklearn.tree import DecisionTreeClassifier
from tqdm import tqdm

logger = logging.getLogger(__name__)

# Upper bound for integer seeds handed to scikit-learn estimators
MAX_SEED = 2**31

# Scale factor making the MAD a consistent estimator of the normal SD
MAD_SCALE = 1.4826


# =============================================================================
# ERRORS
# =============================================================================

class TaxaEnsembleError(Exception):
    """Base class for analysis errors; one repetition fails, the batch goes on."""


class InsufficientDataError(TaxaEnsembleError):
    """A class has fewer samples than the requested training count."""


class NoFeaturesSelectedError(TaxaEnsembleError):
    """The thresholding phase eliminated every candidate feature."""


class DegenerateLabelError(TaxaEnsembleError):
    """Labels hold a single class, ROC/AUC is undefined."""


class ModelFitError(TaxaEnsembleError):
    """The tree ensemble could not be built."""


class NoSuccessfulRunsError(TaxaEnsembleError):
    """Nothing left to aggregate."""


# =============================================================================
# DATA MODEL
# =============================================================================

@dataclass(frozen=True, eq=False)
class Sample:
    sample_id: str
    label: int
    features: np.ndarray


@dataclass(frozen=True, eq=False)
class Dataset:
    """
    Samples with a binary label (1 = positive state) and a numeric feature block.

    Arrays are copied and made read-only on construction.
    """
    sample_ids: np.ndarray
    X: np.ndarray
    y: np.ndarray
    feature_names: Tuple[str, ...]
    class_names: Tuple[str, str] = ("control", "disease")

    def __post_init__(self):
        X = np.array(self.X, dtype=float)
        y = np.array(self.y).astype(int)
        ids = np.array(self.sample_ids).astype(str)
        names = tuple(str(name) for name in self.feature_names)

        if X.ndim != 2:
            raise ValueError(f"feature matrix must be 2-D, got shape {X.shape}")
        if len(y) != X.shape[0] or len(ids) != X.shape[0]:
            raise ValueError(
                f"{X.shape[0]} feature rows, {len(y)} labels, {len(ids)} sample ids"
            )
        if len(names) != X.shape[1]:
            raise ValueError(f"{X.shape[1]} feature columns but {len(names)} feature names")
        if not np.isfinite(X).all():
            raise ValueError("feature block has missing or infinite values")
        if not np.isin(y, (0, 1)).all():
            raise ValueError("labels must be encoded as 0/1")
        if len(np.unique(ids)) != len(ids):
            raise ValueError("sample ids must be unique")

        for arr in (X, y, ids):
            arr.setflags(write=False)
        object.__setattr__(self, "X", X)
        object.__setattr__(self, "y", y)
        object.__setattr__(self, "sample_ids", ids)
        object.__setattr__(self, "feature_names", names)
        object.__setattr__(self, "class_names", tuple(str(c) for c in self.class_names))

    @classmethod
    def from_frame(
        cls,
        frame: pd.DataFrame,
        label_col: str,
        id_col: str,
        feature_cols: Sequence[str],
        positive_label=None,
    ) -> "Dataset":
        """Build a Dataset from one row per sample; the positive label defaults to the last sorted level."""
        labels = frame[label_col]
        if labels.isna().any():
            raise ValueError(f"label column '{label_col}' has missing values")
        levels = sorted(pd.unique(labels).tolist(), key=str)
        if len(levels) != 2:
            raise DegenerateLabelError(
                f"label column '{label_col}' must hold exactly two states, found {levels}"
            )
        if positive_label is None:
            positive_label = levels[1]
        else:
            # Command-line values arrive as text
            matches = [level for level in levels if str(level) == str(positive_label)]
            if not matches:
                raise ValueError(f"positive label {positive_label!r} not among {levels}")
            positive_label = matches[0]
        negative_label = levels[0] if levels[1] == positive_label else levels[1]

        features = frame[list(feature_cols)]
        non_numeric = [c for c in features.columns if not pd.api.types.is_numeric_dtype(features[c])]
        if non_numeric:
            raise ValueError(f"non-numeric feature columns: {non_numeric[:5]}")

        return cls(
            sample_ids=frame[id_col].astype(str).to_numpy(),
            X=features.to_numpy(dtype=float),
            y=(labels == positive_label).astype(int).to_numpy(),
            feature_names=tuple(str(c) for c in features.columns),
            class_names=(str(negative_label), str(positive_label)),
        )

    @property
    def n_samples(self) -> int:
        return self.X.shape[0]

    @property
    def n_features(self) -> int:
        return self.X.shape[1]

    def class_indices(self, label: int) -> np.ndarray:
        return np.flatnonzero(self.y == label)

    def class_counts(self) -> Dict[str, int]:
        return {name: int(np.sum(self.y == label)) for label, name in enumerate(self.class_names)}

    def sample(self, i: int) -> Sample:
        return Sample(self.sample_ids[i], int(self.y[i]), self.X[i])


@dataclass(frozen=True, eq=False)
class Partition:
    train_idx: np.ndarray
    test_idx: np.ndarray


# =============================================================================
# SAMPLER
# =============================================================================

class StratifiedSampler:
    """Draw K training samples per class without replacement; the rest is the test set."""

    def __init__(self, n_train_per_class: int):
        if n_train_per_class < 1:
            raise ValueError("n_train_per_class must be at least 1")
        self.n_train_per_class = n_train_per_class

    def split(self, dataset: Dataset, rng: np.random.Generator) -> Partition:
        train_parts, test_parts = [], []
        for label in (0, 1):
            members = dataset.class_indices(label)
            if self.n_train_per_class > len(members):
                raise InsufficientDataError(
                    f"class '{dataset.class_names[label]}' has {len(members)} samples, "
                    f"{self.n_train_per_class} requested for training"
                )
            drawn = rng.choice(members, size=self.n_train_per_class, replace=False)
            train_parts.append(drawn)
            test_parts.append(np.setdiff1d(members, drawn))

        return Partition(
            train_idx=np.sort(np.concatenate(train_parts)),
            test_idx=np.sort(np.concatenate(test_parts)),
        )


# =============================================================================
# FEATURE SELECTOR (thresholding / interpretation / prediction)
# =============================================================================

def _forest(n_trees: int, seed: int, **kwargs) -> RandomForestClassifier:
    return RandomForestClassifier(
        n_estimators=n_trees,
        max_features="sqrt",
        random_state=seed,
        n_jobs=1,
        **kwargs
    )


def _shadow_importances(X: np.ndarray, y: np.ndarray, n_trees: int, seed: int) -> Tuple[np.ndarray, np.ndarray]:
    """Impurity importances of the real columns and of column-wise permuted copies."""
    rng = np.random.default_rng(seed)
    shadows = rng.permuted(X, axis=0)
    forest = _forest(n_trees, int(rng.integers(0, MAX_SEED)))
    forest.fit(np.hstack([X, shadows]), y)

    importances = forest.feature_importances_
    n_features = X.shape[1]
    return importances[:n_features], importances[n_features:]


def _oob_error(X: np.ndarray, y: np.ndarray, n_trees: int, seed: int) -> float:
    forest = _forest(n_trees, seed, oob_score=True)
    forest.fit(X, y)
    return 1.0 - forest.oob_score_


def _cv_errors(X: np.ndarray, y: np.ndarray, n_trees: int, n_folds: int, seed: int) -> np.ndarray:
    cv = StratifiedKFold(n_splits=n_folds, shuffle=True, random_state=seed)
    scores = cross_val_score(_forest(n_trees, seed), X, y, cv=cv, scoring="accuracy")
    return 1.0 - scores


@dataclass
class FeatureSelection:
    indices: Tuple[int, ...]
    names: Tuple[str, ...]
    ranking: Tuple[int, ...]
    threshold_indices: Tuple[int, ...]
    interpretation_indices: Tuple[int, ...]
    elimination_threshold: float
    importance: pd.DataFrame
    interpretation_errors: pd.DataFrame
    prediction_errors: pd.DataFrame


class FeatureSelector:
    """
    Three-phase random-forest variable selection.

    1. Thresholding: replicate forests on the real features plus a permuted
       copy of each one. The permuted copies carry no signal, so their
       importances set the elimination threshold (median across replicates
       of a high quantile of the copies). Real features at or below it go.
    2. Interpretation: survivors in decreasing importance, nested models grow
       one feature at a time while the OOB error improves by more than its
       noise margin. Keeps the smallest prefix within the margin of the best.
    3. Prediction: cross-validated error of nested prefixes of the
       interpretation set; smallest prefix within `parsimony_tolerance`
       standard errors of the best (1-SE rule).

    Every forest gets a seed drawn before dispatch, so the result does not
    depend on the worker count.
    """

    def __init__(
        self,
        threshold_tree_count: int = 500,
        threshold_forests: int = 10,
        elimination_quantile: float = 0.95,
        elimination_factor: float = 1.0,
        interpretation_tree_count: int = 300,
        interpretation_forests: int = 5,
        interpretation_margin: float = 1.0,
        interpretation_patience: int = 3,
        max_interpretation_features: int = 30,
        prediction_tree_count: int = 300,
        cv_folds: int = 5,
        parsimony_tolerance: float = 1.0,
        n_jobs: int = 1
    ):
        self.threshold_tree_count = threshold_tree_count
        self.threshold_forests = threshold_forests
        self.elimination_quantile = elimination_quantile
        self.elimination_factor = elimination_factor
        self.interpretation_tree_count = interpretation_tree_count
        self.interpretation_forests = interpretation_forests
        self.interpretation_margin = interpretation_margin
        self.interpretation_patience = interpretation_patience
        self.max_interpretation_features = max_interpretation_features
        self.prediction_tree_count = prediction_tree_count
        self.cv_folds = cv_folds
        self.parsimony_tolerance = parsimony_tolerance
        self.n_jobs = n_jobs

    def select(
        self,
        X: np.ndarray,
        y: np.ndarray,
        feature_names: Optional[Sequence[str]] = None,
        rng=None,
        parallel: Optional[Parallel] = None
    ) -> FeatureSelection:
        X = np.asarray(X, dtype=float)
        y = np.asarray(y).astype(int)
        n_features = X.shape[1]
        if feature_names is None:
            feature_names = [f"feature_{i}" for i in range(n_features)]
        if n_features == 0:
            raise NoFeaturesSelectedError("no candidate features")
        if len(np.unique(y)) < 2:
            raise DegenerateLabelError("feature selection needs both classes in the training data")

        rng = np.random.default_rng(rng)
        parallel = parallel if parallel is not None else Parallel(n_jobs=self.n_jobs)

        ranking, importance, threshold = self._thresholding(X, y, feature_names, rng, parallel)
        interpretation, interp_errors = self._interpretation(X, y, ranking, rng, parallel)
        prediction, pred_errors = self._prediction(X, y, interpretation, rng, parallel)

        logger.debug(
            "Selection: %d candidates -> %d thresholded -> %d interpretation -> %d prediction",
            n_features, len(ranking), len(interpretation), len(prediction),
        )

        indices = tuple(sorted(int(i) for i in prediction))
        return FeatureSelection(
            indices=indices,
            names=tuple(feature_names[i] for i in indices),
            ranking=tuple(int(i) for i in ranking),
            threshold_indices=tuple(sorted(int(i) for i in ranking)),
            interpretation_indices=tuple(sorted(int(i) for i in interpretation)),
            elimination_threshold=threshold,
            importance=importance,
            interpretation_errors=interp_errors,
            prediction_errors=pred_errors,
        )

    def _thresholding(self, X, y, feature_names, rng, parallel) -> Tuple[List[int], pd.DataFrame, float]:
        seeds = rng.integers(0, MAX_SEED, size=self.threshold_forests)
        results = parallel(
            delayed(_shadow_importances)(X, y, self.threshold_tree_count, int(seed)) for seed in seeds
        )
        real = np.array([r[0] for r in results])
        shadow = np.array([r[1] for r in results])

        control_levels = np.quantile(shadow, self.elimination_quantile, axis=1)
        threshold = self.elimination_factor * float(np.median(control_levels))

        mean_importance = real.mean(axis=0)
        importance = pd.DataFrame(
            {"mean": mean_importance, "sd": real.std(axis=0)},
            index=pd.Index(list(feature_names), name="feature"),
        )
        order = np.argsort(-mean_importance, kind="stable")
        survivors = [int(i) for i in order if mean_importance[i] > threshold]
        if not survivors:
            raise NoFeaturesSelectedError(
                f"all {X.shape[1]} features at or below the noise threshold {threshold:.3g}"
            )
        return survivors, importance, threshold

    def _interpretation(self, X, y, ranking, rng, parallel) -> Tuple[List[int], pd.DataFrame]:
        candidates = ranking[:self.max_interpretation_features]
        rows = []
        best_mean, best_sd, stale = np.inf, 0.0, 0

        for k in range(1, len(candidates) + 1):
            seeds = rng.integers(0, MAX_SEED, size=self.interpretation_forests)
            errors = parallel(
                delayed(_oob_error)(X[:, candidates[:k]], y, self.interpretation_tree_count, int(seed))
                for seed in seeds
            )
            mean_err, sd_err = float(np.mean(errors)), float(np.std(errors))
            rows.append({"n_features": k, "mean_error": mean_err, "sd_error": sd_err})

            if mean_err < best_mean - self.interpretation_margin * best_sd:
                best_mean, best_sd, stale = mean_err, sd_err, 0
            else:
                stale += 1
                if stale >= self.interpretation_patience:
                    break

        errors = pd.DataFrame(rows)
        min_pos = int(errors["mean_error"].to_numpy().argmin())
        cutoff = errors["mean_error"].iat[min_pos] + self.interpretation_margin * errors["sd_error"].iat[min_pos]
        n_keep = int(errors.loc[errors["mean_error"] <= cutoff, "n_features"].min())
        return candidates[:n_keep], errors

    def _prediction(self, X, y, interpretation, rng, parallel) -> Tuple[List[int], pd.DataFrame]:
        min_class_count = int(np.bincount(y).min())
        n_folds = min(self.cv_folds, min_class_count)
        if n_folds < 2:
            # Not enough samples for CV, keep the interpretation set
            logger.warning("Only %d samples in the smallest class, skipping prediction phase", min_class_count)
            return list(interpretation), pd.DataFrame(columns=["n_features", "mean_error", "se_error"])

        # Same folds for every prefix so the errors are paired
        seed = int(rng.integers(0, MAX_SEED))
        fold_errors = np.array(parallel(
            delayed(_cv_errors)(X[:, interpretation[:k]], y, self.prediction_tree_count, n_folds, seed)
            for k in range(1, len(interpretation) + 1)
        ))
        cv_errors = fold_errors.mean(axis=1)
        cv_se = fold_errors.std(axis=1) / np.sqrt(n_folds)

        min_idx = int(np.argmin(cv_errors))
        threshold = cv_errors[min_idx] + self.parsimony_tolerance * cv_se[min_idx]
        best_idx = int(np.where(cv_errors <= threshold)[0][0])

        errors = pd.DataFrame({
            "n_features": np.arange(1, len(interpretation) + 1),
            "mean_error": cv_errors,
            "se_error": cv_se,
        })
        return list(interpretation[:best_idx + 1]), errors


# =============================================================================
# ENSEMBLE CLASSIFIER (bagged trees + proximity diagnostics)
# =============================================================================

def _grow_trees(
    X: np.ndarray,
    y: np.ndarray,
    seeds: np.ndarray,
    max_features,
    min_samples_leaf: int
) -> Tuple[List[DecisionTreeClassifier], np.ndarray, np.ndarray]:
    """
    Fit one chunk of bagged trees.

    Returns the trees, their out-of-bag votes on the training rows
    (NaN where the row was in the bootstrap) and the shared-leaf counts.
    """
    n_samples = X.shape[0]
    trees = []
    oob_votes = np.full((len(seeds), n_samples), np.nan)
    shared_leaf = np.zeros((n_samples, n_samples))

    for t, seed in enumerate(seeds):
        rng = np.random.default_rng(seed)
        boot = rng.integers(0, n_samples, size=n_samples)
        tree = DecisionTreeClassifier(
            criterion='gini',
            max_features=max_features,
            min_samples_leaf=min_samples_leaf,
            random_state=int(rng.integers(0, MAX_SEED))
        )
        tree.fit(X[boot], y[boot])

        leaves = tree.apply(X)
        shared_leaf += leaves[:, None] == leaves[None, :]

        out_of_bag = np.ones(n_samples, dtype=bool)
        out_of_bag[boot] = False
        if out_of_bag.any():
            oob_votes[t, out_of_bag] = tree.predict(X[out_of_bag])
        trees.append(tree)

    return trees, oob_votes, shared_leaf


def _outlyingness(proximity: np.ndarray, y: np.ndarray) -> np.ndarray:
    """
    Per class: n_class / sum of squared proximities to the other members of the class,
    centred on the class median and scaled by the class MAD.
    """
    prox = proximity.copy()
    np.fill_diagonal(prox, 0.0)
    scores = np.zeros(len(y))

    for label in np.unique(y):
        members = np.flatnonzero(y == label)
        within = (prox[np.ix_(members, members)] ** 2).sum(axis=1)
        raw = len(members) / np.maximum(within, 1e-12)
        median = np.median(raw)
        mad = MAD_SCALE * np.median(np.abs(raw - median))
        scores[members] = (raw - median) / mad if mad > 0 else raw - median

    return scores


def _oob_error_curve(oob_votes: np.ndarray, y: np.ndarray) -> np.ndarray:
    """Out-of-bag error after each tree, over samples with at least one OOB vote."""
    voted = ~np.isnan(oob_votes)
    seen = np.cumsum(voted, axis=0)
    positive = np.cumsum(np.nan_to_num(oob_votes), axis=0)

    covered = seen > 0
    # Ties favor the positive class
    predicted = positive >= seen / 2
    wrong = (predicted != y[None, :].astype(bool)) & covered

    n_covered = covered.sum(axis=1)
    return np.where(n_covered > 0, wrong.sum(axis=1) / np.maximum(n_covered, 1), np.nan)


@dataclass
class TrainedModel:
    trees: List[DecisionTreeClassifier]
    feature_indices: np.ndarray
    feature_names: Tuple[str, ...]
    importances: pd.Series
    proximity: np.ndarray
    outlyingness: np.ndarray
    outlier_flags: np.ndarray
    oob_error_curve: np.ndarray
    train_sample_ids: np.ndarray
    train_labels: np.ndarray
    params: Dict[str, object] = field(default_factory=dict)

    @property
    def oob_error(self) -> float:
        return float(self.oob_error_curve[-1])

    def params_text(self) -> str:
        return ", ".join(f"{key}={value}" for key, value in self.params.items())

    def predict_proba(self, X: np.ndarray) -> np.ndarray:
        """Proportion of tree votes; columns are [negative, positive]."""
        X = np.asarray(X, dtype=float)
        if X.ndim != 2 or X.shape[1] <= int(self.feature_indices.max()):
            raise ValueError(f"expected the full feature block, got shape {X.shape}")

        X_sel = X[:, self.feature_indices]
        votes = np.zeros(X_sel.shape[0])
        for tree in self.trees:
            votes += tree.predict(X_sel)
        prob_pos = votes / len(self.trees)

        return np.column_stack([1 - prob_pos, prob_pos])

    def outlier_table(self) -> pd.DataFrame:
        return pd.DataFrame({
            "sample_id": self.train_sample_ids,
            "label": self.train_labels,
            "outlyingness": self.outlyingness,
            "flagged": self.outlier_flags,
        })


class EnsembleClassifier:
    """
    Bagged decision trees on a fixed feature subset.

    Each tree sees a bootstrap resample of the training rows and a random
    subset of the selected features at every split. Trees are grown in chunks
    in the worker pool; bootstrap draws and tree seeds come from per-tree
    seeds drawn up front.
    """

    def __init__(
        self,
        n_trees: int = 10000,
        max_features="sqrt",
        min_samples_leaf: int = 1,
        outlier_quantile: float = 0.95,
        chunk_size: int = 250,
        n_jobs: int = 1
    ):
        if not 0 < outlier_quantile < 1:
            raise ValueError("outlier_quantile must be in (0, 1)")
        self.n_trees = n_trees
        self.max_features = max_features
        self.min_samples_leaf = min_samples_leaf
        self.outlier_quantile = outlier_quantile
        self.chunk_size = chunk_size
        self.n_jobs = n_jobs

    def fit(
        self,
        X: np.ndarray,
        y: np.ndarray,
        feature_indices: Sequence[int],
        feature_names: Optional[Sequence[str]] = None,
        rng=None,
        parallel: Optional[Parallel] = None,
        sample_ids: Optional[Sequence[str]] = None
    ) -> TrainedModel:
        X = np.asarray(X, dtype=float)
        y = np.asarray(y).astype(int)
        feature_indices = np.asarray(feature_indices, dtype=int)
        if feature_indices.size == 0:
            raise ModelFitError("no features reached the classifier")
        if len(np.unique(y)) < 2:
            raise ModelFitError("training data holds a single class")
        if feature_names is None:
            feature_names = [f"feature_{i}" for i in range(X.shape[1])]
        if sample_ids is None:
            sample_ids = np.arange(X.shape[0]).astype(str)

        rng = np.random.default_rng(rng)
        parallel = parallel if parallel is not None else Parallel(n_jobs=self.n_jobs)

        X_sel = X[:, feature_indices]
        seeds = rng.integers(0, MAX_SEED, size=self.n_trees)
        chunks = [seeds[i:i + self.chunk_size] for i in range(0, self.n_trees, self.chunk_size)]
        try:
            results = parallel(
                delayed(_grow_trees)(X_sel, y, chunk, self.max_features, self.min_samples_leaf)
                for chunk in chunks
            )
        except ValueError as exc:
            raise ModelFitError(f"tree learner failed: {exc}") from exc

        trees = [tree for chunk_trees, _, _ in results for tree in chunk_trees]
        oob_votes = np.vstack([votes for _, votes, _ in results])
        proximity = sum(shared for _, _, shared in results) / len(trees)

        outlyingness = _outlyingness(proximity, y)
        flags = outlyingness > np.quantile(outlyingness, self.outlier_quantile)

        selected_names = tuple(feature_names[i] for i in feature_indices)
        importances = pd.Series(
            np.mean([tree.feature_importances_ for tree in trees], axis=0),
            index=pd.Index(selected_names, name="feature"),
            name="importance",
        ).sort_values(ascending=False)

        return TrainedModel(
            trees=trees,
            feature_indices=feature_indices,
            feature_names=selected_names,
            importances=importances,
            proximity=proximity,
            outlyingness=outlyingness,
            outlier_flags=flags,
            oob_error_curve=_oob_error_curve(oob_votes, y),
            train_sample_ids=np.asarray(sample_ids).astype(str),
            train_labels=y,
            params={
                "n_trees": self.n_trees,
                "max_features": self.max_features,
                "min_samples_leaf": self.min_samples_leaf,
                "features": "+".join(selected_names),
            },
        )

    def predict(self, model: TrainedModel, X: np.ndarray) -> np.ndarray:
        return model.predict_proba(X)


# =============================================================================
# EVALUATOR (ROC / AUC)
# =============================================================================

@dataclass(frozen=True, eq=False)
class RocCurve:
    fpr: np.ndarray
    tpr: np.ndarray
    thresholds: np.ndarray

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame({"threshold": self.thresholds, "fpr": self.fpr, "tpr": self.tpr})


@dataclass
class AggregateResult:
    curve: RocCurve
    auc: float
    auc_ci: Tuple[float, float]
    band: pd.DataFrame
    run_auc_mean: float
    run_auc_sd: float
    n_runs: int
    n_positive: int
    n_negative: int


class Evaluator:
    """ROC curves over distinct score thresholds and trapezoidal AUC."""

    def __init__(self, n_bins: int = 100, confidence: float = 0.95):
        self.n_bins = n_bins
        self.confidence = confidence

    def curve(self, prob: np.ndarray, label: np.ndarray) -> RocCurve:
        """
        Sweep the threshold over every distinct predicted value, highest first.

        Tied scores cross the threshold together. The curve runs from (0, 0)
        to (1, 1).
        """
        prob = np.asarray(prob, dtype=float)
        label = np.asarray(label, dtype=float)
        if prob.shape != label.shape or prob.ndim != 1:
            raise ValueError(f"prob {prob.shape} and label {label.shape} must be matching vectors")
        if np.isnan(prob).any() or np.isnan(label).any():
            raise ValueError("missing predictions or labels")
        if not np.isin(label, (0, 1)).all():
            raise ValueError("labels must be encoded as 0/1")

        label = label.astype(int)
        n_pos = int(label.sum())
        if n_pos == 0 or n_pos == len(label):
            raise DegenerateLabelError(f"{len(label)} labels of a single class, ROC undefined")

        fpr, tpr, thresholds = roc_curve(label, prob, drop_intermediate=False)
        return RocCurve(fpr=fpr, tpr=tpr, thresholds=thresholds)

    def auc(self, curve: RocCurve) -> float:
        return float(trapezoid_area(curve.fpr, curve.tpr))

    def aggregate(
        self,
        prob_vectors: Sequence[np.ndarray],
        label_vectors: Sequence[np.ndarray]
    ) -> AggregateResult:
        """
        Pool every run's (prediction, label) pairs into one ranking problem.

        Missing entries (NaN) are dropped, never scored. Besides the pooled
        curve this reports a Hanley-McNeil interval for the pooled AUC and a
        normal-approximation band for TPR on a fixed FPR grid.
        """
        probs, labels, run_aucs = [], [], []
        for prob, label in zip(prob_vectors, label_vectors):
            prob = np.asarray(prob, dtype=float)
            label = np.asarray(label, dtype=float)
            keep = ~(np.isnan(prob) | np.isnan(label))
            if not keep.any():
                continue
            probs.append(prob[keep])
            labels.append(label[keep].astype(int))
            try:
                run_aucs.append(self.auc(self.curve(probs[-1], labels[-1])))
            except DegenerateLabelError:
                pass

        if not probs:
            raise NoSuccessfulRunsError("no predictions to aggregate")

        pooled_prob = np.concatenate(probs)
        pooled_label = np.concatenate(labels)
        curve = self.curve(pooled_prob, pooled_label)
        area = self.auc(curve)

        n_pos = int(pooled_label.sum())
        n_neg = len(pooled_label) - n_pos
        z = norm.ppf(0.5 + self.confidence / 2)

        q1 = area / (2 - area)
        q2 = 2 * area ** 2 / (1 + area)
        variance = (area * (1 - area) + (n_pos - 1) * (q1 - area ** 2)
                    + (n_neg - 1) * (q2 - area ** 2)) / (n_pos * n_neg)
        se = np.sqrt(max(variance, 0.0))

        grid = np.linspace(0.0, 1.0, self.n_bins + 1)
        # Highest TPR reached at or before each FPR
        tpr_at = curve.tpr[np.searchsorted(curve.fpr, grid, side="right") - 1]
        half_width = z * np.sqrt(tpr_at * (1 - tpr_at) / n_pos)
        band = pd.DataFrame({
            "fpr": grid,
            "tpr": tpr_at,
            "lower": np.clip(tpr_at - half_width, 0.0, 1.0),
            "upper": np.clip(tpr_at + half_width, 0.0, 1.0),
        })

        return AggregateResult(
            curve=curve,
            auc=area,
            auc_ci=(max(0.0, area - z * se), min(1.0, area + z * se)),
            band=band,
            run_auc_mean=float(np.mean(run_aucs)) if run_aucs else np.nan,
            run_auc_sd=float(np.std(run_aucs, ddof=1)) if len(run_aucs) > 1 else np.nan,
            n_runs=len(probs),
            n_positive=n_pos,
            n_negative=n_neg,
        )


# =============================================================================
# RUN RECORDS & PREDICTION LEDGER
# =============================================================================

class RunStatus(str, Enum):
    OK = "ok"
    FAILED = "failed"


@dataclass
class RunRecord:
    run_index: int
    status: RunStatus
    auc: Optional[float] = None
    selected_features: Tuple[str, ...] = ()
    artifact: Optional[str] = None
    params: str = ""
    error_kind: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == RunStatus.OK

    def as_row(self, delimiter: str = ";") -> Dict[str, object]:
        return {
            "run": self.run_index,
            "status": self.status.value,
            "auc": self.auc,
            "n_features": len(self.selected_features),
            "features": delimiter.join(self.selected_features),
            "artifact": self.artifact,
            "params": self.params,
            "error_kind": self.error_kind,
            "error_message": self.error_message,
        }


class PredictionLedger:
    """
    Samples x runs matrices of held-out predictions and labels.

    NaN marks a sample that was not in that run's test set. Each run column
    is written once.
    """

    def __init__(self, sample_ids: Sequence[str], n_runs: int):
        self.sample_ids = np.asarray(sample_ids).astype(str)
        self.predictions = np.full((len(self.sample_ids), n_runs), np.nan)
        self.labels = np.full((len(self.sample_ids), n_runs), np.nan)
        self._written = np.zeros(n_runs, dtype=bool)

    @property
    def n_runs(self) -> int:
        return len(self._written)

    def record(self, run_index: int, rows: Sequence[int], prob: np.ndarray, labels: np.ndarray):
        if self._written[run_index]:
            raise ValueError(f"run {run_index} already recorded")
        rows = np.asarray(rows, dtype=int)
        prob = np.asarray(prob, dtype=float)
        labels = np.asarray(labels, dtype=float)
        if not len(rows) == len(prob) == len(labels):
            raise ValueError(f"{len(rows)} rows, {len(prob)} predictions, {len(labels)} labels")

        self.predictions[rows, run_index] = prob
        self.labels[rows, run_index] = labels
        self._written[run_index] = True

    def written_runs(self) -> List[int]:
        return [int(i) for i in np.flatnonzero(self._written)]

    def run_vectors(self, run_index: int) -> Tuple[np.ndarray, np.ndarray]:
        present = ~np.isnan(self.predictions[:, run_index])
        return self.predictions[present, run_index], self.labels[present, run_index].astype(int)

    def pooled(self, run_indices: Optional[Sequence[int]] = None) -> Tuple[np.ndarray, np.ndarray]:
        runs = self.written_runs() if run_indices is None else list(run_indices)
        vectors = [self.run_vectors(i) for i in runs]
        if not vectors:
            return np.array([]), np.array([], dtype=int)
        return np.concatenate([p for p, _ in vectors]), np.concatenate([l for _, l in vectors])

    def to_frames(self) -> Tuple[pd.DataFrame, pd.DataFrame]:
        columns = [f"run_{i:03d}" for i in range(self.n_runs)]
        index = pd.Index(self.sample_ids, name="sample_id")
        return (pd.DataFrame(self.predictions, index=index, columns=columns),
                pd.DataFrame(self.labels, index=index, columns=columns))


# =============================================================================
# RUN ORCHESTRATOR
# =============================================================================

@dataclass
class RunConfig:
    # sampling
    train_per_class: int = 63
    repetitions: int = 10

    # thresholding phase
    threshold_tree_count: int = 500
    threshold_forests: int = 10
    elimination_quantile: float = 0.95
    elimination_factor: float = 1.0

    # interpretation phase
    interpretation_tree_count: int = 300
    interpretation_forests: int = 5
    interpretation_margin: float = 1.0
    interpretation_patience: int = 3
    max_interpretation_features: int = 30

    # prediction phase
    prediction_tree_count: int = 300
    cv_folds: int = 5
    parsimony_tolerance: float = 1.0

    # final ensemble
    ensemble_tree_count: int = 10000
    outlier_quantile: float = 0.95

    # execution
    n_jobs: int = -1
    parallel_repetitions: bool = False
    base_seed: int = 42

    # aggregate curve
    roc_bins: int = 100
    confidence: float = 0.95

    def validate(self) -> "RunConfig":
        positive = [
            "train_per_class", "repetitions", "threshold_tree_count", "threshold_forests",
            "interpretation_tree_count", "interpretation_forests", "interpretation_patience",
            "max_interpretation_features", "prediction_tree_count", "ensemble_tree_count", "roc_bins",
        ]
        for name in positive:
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be at least 1, got {getattr(self, name)}")
        for name in ("outlier_quantile", "confidence"):
            if not 0 < getattr(self, name) < 1:
                raise ValueError(f"{name} must be in (0, 1), got {getattr(self, name)}")
        if not 0 < self.elimination_quantile <= 1:
            raise ValueError(f"elimination_quantile must be in (0, 1], got {self.elimination_quantile}")
        if self.cv_folds < 2:
            raise ValueError(f"cv_folds must be at least 2, got {self.cv_folds}")
        if self.n_jobs == 0:
            raise ValueError("n_jobs must be non-zero")
        return self

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


class RunState(str, Enum):
    IDLE = "idle"
    SAMPLING = "sampling"
    SELECTING = "selecting"
    TRAINING = "training"
    EVALUATING = "evaluating"
    RECORDING = "recording"
    AGGREGATING = "aggregating"
    DONE = "done"


@dataclass
class RepetitionDiagnostics:
    artifact: str
    selection: FeatureSelection
    importances: pd.Series
    proximity: np.ndarray
    outliers: pd.DataFrame
    oob_error_curve: np.ndarray
    curve: RocCurve


@dataclass
class RepetitionOutcome:
    record: RunRecord
    test_idx: Optional[np.ndarray] = None
    prob: Optional[np.ndarray] = None
    labels: Optional[np.ndarray] = None
    diagnostics: Optional[RepetitionDiagnostics] = None


@dataclass
class BatchResult:
    records: List[RunRecord]
    aggregate: AggregateResult
    ledger: PredictionLedger
    diagnostics: Dict[str, RepetitionDiagnostics]
    config: RunConfig

    def successful_runs(self) -> List[RunRecord]:
        return [r for r in self.records if r.ok]

    def failed_runs(self) -> List[RunRecord]:
        return [r for r in self.records if not r.ok]

    def records_frame(self, delimiter: str = ";") -> pd.DataFrame:
        return pd.DataFrame([r.as_row(delimiter) for r in self.records])


class RunOrchestrator:
    """
    Drive N independent repetitions of sample -> select -> train -> evaluate.

    Repetition i always draws from child i of SeedSequence(base_seed), so the
    results do not depend on execution order or worker count. A
    TaxaEnsembleError inside a repetition becomes a failed RunRecord; the
    batch goes on. Nothing is written to the records or the ledger until a
    repetition has finished.
    """

    def __init__(
        self,
        config: Optional[RunConfig] = None,
        sampler: Optional[StratifiedSampler] = None,
        selector: Optional[FeatureSelector] = None,
        classifier: Optional[EnsembleClassifier] = None,
        evaluator: Optional[Evaluator] = None,
        verbose: bool = False
    ):
        self.config = (config or RunConfig()).validate()
        cfg = self.config
        self.sampler = sampler or StratifiedSampler(cfg.train_per_class)
        self.selector = selector or FeatureSelector(
            threshold_tree_count=cfg.threshold_tree_count,
            threshold_forests=cfg.threshold_forests,
            elimination_quantile=cfg.elimination_quantile,
            elimination_factor=cfg.elimination_factor,
            interpretation_tree_count=cfg.interpretation_tree_count,
            interpretation_forests=cfg.interpretation_forests,
            interpretation_margin=cfg.interpretation_margin,
            interpretation_patience=cfg.interpretation_patience,
            max_interpretation_features=cfg.max_interpretation_features,
            prediction_tree_count=cfg.prediction_tree_count,
            cv_folds=cfg.cv_folds,
            parsimony_tolerance=cfg.parsimony_tolerance,
        )
        self.classifier = classifier or EnsembleClassifier(
            n_trees=cfg.ensemble_tree_count,
            outlier_quantile=cfg.outlier_quantile,
        )
        self.evaluator = evaluator or Evaluator(n_bins=cfg.roc_bins, confidence=cfg.confidence)
        self.verbose = verbose
        self.state = RunState.IDLE

    def _enter(self, state: RunState, run_index: Optional[int] = None):
        self.state = state
        if run_index is None:
            logger.debug("State -> %s", state.value)
        else:
            logger.debug("Run %d: state -> %s", run_index, state.value)

    def run(self, dataset: Dataset) -> BatchResult:
        cfg = self.config
        seeds = np.random.SeedSequence(cfg.base_seed).spawn(cfg.repetitions)
        records: List[Optional[RunRecord]] = [None] * cfg.repetitions
        ledger = PredictionLedger(dataset.sample_ids, cfg.repetitions)
        diagnostics: Dict[str, RepetitionDiagnostics] = {}

        logger.info(
            "Dataset: %d samples, %d features, classes %s; %d repetitions with K=%d per class",
            dataset.n_samples, dataset.n_features, dataset.class_counts(),
            cfg.repetitions, cfg.train_per_class,
        )

        with Parallel(n_jobs=cfg.n_jobs) as pool:
            if cfg.parallel_repetitions:
                outcomes = pool(
                    delayed(self._run_repetition)(dataset, i, seeds[i], None)
                    for i in range(cfg.repetitions)
                )
                for outcome in outcomes:
                    self._store(outcome, records, ledger, diagnostics)
            else:
                for i in tqdm(range(cfg.repetitions), desc="Repetitions", disable=not self.verbose):
                    outcome = self._run_repetition(dataset, i, seeds[i], pool)
                    self._store(outcome, records, ledger, diagnostics)

        self._enter(RunState.AGGREGATING)
        successful = [r.run_index for r in records if r.ok]
        if not successful:
            raise NoSuccessfulRunsError(f"all {cfg.repetitions} repetitions failed")
        vectors = [ledger.run_vectors(i) for i in successful]
        aggregate = self.evaluator.aggregate([p for p, _ in vectors], [l for _, l in vectors])

        logger.info(
            "Pooled AUC %.4f (%.4f-%.4f) over %d/%d successful runs",
            aggregate.auc, aggregate.auc_ci[0], aggregate.auc_ci[1], len(successful), cfg.repetitions,
        )
        self._enter(RunState.DONE)
        return BatchResult(
            records=records,
            aggregate=aggregate,
            ledger=ledger,
            diagnostics=diagnostics,
            config=cfg,
        )

    def _run_repetition(
        self,
        dataset: Dataset,
        run_index: int,
        seed: np.random.SeedSequence,
        parallel: Optional[Parallel]
    ) -> RepetitionOutcome:
        # Inside a worker the inner fits run sequentially
        parallel = parallel if parallel is not None else Parallel(n_jobs=1)
        rng = np.random.default_rng(seed)
        artifact = f"run_{run_index:03d}"

        try:
            self._enter(RunState.SAMPLING, run_index)
            partition = self.sampler.split(dataset, rng)
            X_train = dataset.X[partition.train_idx]
            y_train = dataset.y[partition.train_idx]

            self._enter(RunState.SELECTING, run_index)
            selection = self.selector.select(X_train, y_train, dataset.feature_names, rng=rng, parallel=parallel)

            self._enter(RunState.TRAINING, run_index)
            model = self.classifier.fit(
                X_train, y_train, selection.indices, dataset.feature_names,
                rng=rng, parallel=parallel, sample_ids=dataset.sample_ids[partition.train_idx],
            )

            self._enter(RunState.EVALUATING, run_index)
            prob = model.predict_proba(dataset.X[partition.test_idx])[:, 1]
            labels = dataset.y[partition.test_idx]
            curve = self.evaluator.curve(prob, labels)
            area = self.evaluator.auc(curve)
        except TaxaEnsembleError as exc:
            logger.warning("Run %d failed with %s: %s", run_index, type(exc).__name__, exc)
            return RepetitionOutcome(record=RunRecord(
                run_index=run_index,
                status=RunStatus.FAILED,
                error_kind=type(exc).__name__,
                error_message=str(exc),
            ))

        logger.info("Run %d: AUC=%.4f with %d features", run_index, area, len(selection.indices))
        record = RunRecord(
            run_index=run_index,
            status=RunStatus.OK,
            auc=area,
            selected_features=selection.names,
            artifact=artifact,
            params=model.params_text(),
        )
        diagnostics = RepetitionDiagnostics(
            artifact=artifact,
            selection=selection,
            importances=model.importances,
            proximity=model.proximity,
            outliers=model.outlier_table(),
            oob_error_curve=model.oob_error_curve,
            curve=curve,
        )
        return RepetitionOutcome(record, partition.test_idx, prob, labels, diagnostics)

    def _store(self, outcome: RepetitionOutcome, records, ledger: PredictionLedger, diagnostics):
        record = outcome.record
        self._enter(RunState.RECORDING, record.run_index)
        records[record.run_index] = record
        if record.ok:
            ledger.record(record.run_index, outcome.test_idx, outcome.prob, outcome.labels)
            diagnostics[record.artifact] = outcome.diagnostics


def run_repetitions(dataset: Dataset, config: Optional[RunConfig] = None, verbose: bool = False) -> BatchResult:
    """
    Evaluate taxa discrimination over repeated balanced splits.

    Parameters
    ----------
    dataset : Dataset
    config : RunConfig, optional
        Defaults to RunConfig().
    verbose : bool
        Show a progress bar over repetitions.

    Returns
    -------
    BatchResult with one RunRecord per repetition, the pooled ROC aggregate,
    the prediction ledger and per-run diagnostics.
    """
    return RunOrchestrator(config, verbose=verbose).run(dataset)
