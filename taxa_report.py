"""
Table loading, summary output and command line for taxa_ensemble.

Everything here is I/O around the analysis: read the sample table, keep the
rows of interest, run the repetitions, write the tabular summaries to an
explicit output directory and print the final report.
"""

import argparse
import logging
from collections import Counter
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from taxa_ensemble import BatchResult, Dataset, RunConfig, run_repetitions

logger = logging.getLogger(__name__)


# =============================================================================
# INPUT
# =============================================================================

def load_table(path) -> pd.DataFrame:
    """Read one row per sample; the reader follows the file suffix."""
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix == ".csv":
        return pd.read_csv(path)
    if suffix in (".tsv", ".txt"):
        return pd.read_csv(path, sep="\t")
    if suffix in (".xlsx", ".xls"):
        return pd.read_excel(path)
    raise ValueError(f"unsupported table format: {path.name}")


def filter_samples(frame: pd.DataFrame, equals: Optional[Dict[str, object]] = None) -> pd.DataFrame:
    """
    Keep rows where every given metadata column equals its value.

    Numeric columns are compared by value, so "1" matches 1 and 1.0 even
    when missing entries made pandas read the column as float. Other columns
    are compared as text.
    """
    if not equals:
        return frame
    mask = pd.Series(True, index=frame.index)
    for column, value in equals.items():
        if column not in frame.columns:
            raise KeyError(f"filter column '{column}' not in table")
        values = frame[column]
        if pd.api.types.is_numeric_dtype(values) and not pd.api.types.is_bool_dtype(values):
            try:
                target = pd.to_numeric(value)
            except (TypeError, ValueError):
                raise ValueError(
                    f"filter value {value!r} is not a number but column '{column}' is numeric"
                ) from None
            mask &= values == target
        else:
            mask &= values.astype(str) == str(value)

    kept = frame.loc[mask]
    if kept.empty:
        raise ValueError(f"filter {equals} kept none of {len(frame)} samples")
    logger.info("Filter %s kept %d of %d samples", equals, len(kept), len(frame))
    return kept


def select_feature_columns(
    frame: pd.DataFrame,
    prefix: Optional[str] = None,
    start: Optional[str] = None,
    stop: Optional[str] = None,
    exclude: Sequence[str] = ()
) -> List[str]:
    """
    Feature block by column-name prefix, by an inclusive column range, or
    else every numeric column not excluded.
    """
    if prefix is not None:
        columns = [c for c in frame.columns if str(c).startswith(prefix)]
    elif start is not None or stop is not None:
        columns = list(frame.loc[:, start:stop].columns)
    else:
        columns = [c for c in frame.columns
                   if c not in exclude and pd.api.types.is_numeric_dtype(frame[c])]

    columns = [c for c in columns if c not in exclude]
    if not columns:
        raise ValueError("no feature columns selected")
    return columns


def _parse_filters(items: Sequence[str]) -> Dict[str, str]:
    filters = {}
    for item in items or ():
        column, sep, value = item.partition("=")
        if not sep or not column:
            raise ValueError(f"filter must look like COLUMN=VALUE, got '{item}'")
        filters[column] = value
    return filters


# =============================================================================
# OUTPUT
# =============================================================================

def selection_frequency(result: BatchResult) -> pd.Series:
    """How many successful runs selected each feature."""
    counts = Counter(name for record in result.successful_runs() for name in record.selected_features)
    return pd.Series(dict(counts.most_common()), name="n_runs", dtype=int).rename_axis("feature")


def write_outputs(result: BatchResult, output_dir, delimiter: str = ";") -> Dict[str, Path]:
    """Write the tabular summaries into output_dir and return the paths by name."""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    paths = {}

    paths["run_summary"] = output_dir / "run_summary.csv"
    result.records_frame(delimiter).to_csv(paths["run_summary"], index=False)

    paths["aggregate_roc"] = output_dir / "aggregate_roc.csv"
    result.aggregate.curve.to_frame().to_csv(paths["aggregate_roc"], index=False)

    paths["aggregate_band"] = output_dir / "aggregate_band.csv"
    result.aggregate.band.to_csv(paths["aggregate_band"], index=False)

    paths["feature_frequency"] = output_dir / "feature_frequency.csv"
    selection_frequency(result).to_csv(paths["feature_frequency"])

    predictions, labels = result.ledger.to_frames()
    paths["ledger_predictions"] = output_dir / "ledger_predictions.csv"
    predictions.to_csv(paths["ledger_predictions"])
    paths["ledger_labels"] = output_dir / "ledger_labels.csv"
    labels.to_csv(paths["ledger_labels"])

    for artifact, diag in result.diagnostics.items():
        paths[f"outliers_{artifact}"] = output_dir / f"outliers_{artifact}.csv"
        diag.outliers.to_csv(paths[f"outliers_{artifact}"], index=False)

    logger.info("Wrote %d files to %s", len(paths), output_dir)
    return paths


def print_final_summary(result: BatchResult, top_features: int = 10):
    """Print the per-run table and pooled performance."""
    cfg = result.config
    agg = result.aggregate
    ok, failed = result.successful_runs(), result.failed_runs()

    print(f"\n{'='*60}")
    print(f"FINAL SUMMARY ({len(ok)} of {len(result.records)} repetitions succeeded)")
    print(f"{'='*60}")

    print(f"\nConfiguration:")
    print(f"  Training samples per class: {cfg.train_per_class}")
    print(f"  Ensemble trees: {cfg.ensemble_tree_count}, base seed: {cfg.base_seed}")

    print(f"\nPer-Run Results:")
    print(f"-" * 60)
    print(f"{'Run':>6} {'Status':>8} {'AUC':>8} {'Features':>9}  Detail")
    print(f"-" * 60)
    for r in result.records:
        if r.ok:
            print(f"{r.run_index:>6} {r.status.value:>8} {r.auc:>8.4f} {len(r.selected_features):>9}  {r.artifact}")
        else:
            print(f"{r.run_index:>6} {r.status.value:>8} {'-':>8} {'-':>9}  {r.error_kind}: {r.error_message}")
    print(f"-" * 60)

    print(f"\nPooled Performance:")
    print(f"-" * 40)
    print(f"  Pooled AUC:   {agg.auc:.4f} ({cfg.confidence:.0%} CI {agg.auc_ci[0]:.4f}-{agg.auc_ci[1]:.4f})")
    if not np.isnan(agg.run_auc_sd):
        print(f"  Per-run AUC:  {agg.run_auc_mean:.4f} ± {agg.run_auc_sd:.4f}")
    print(f"  Predictions:  {agg.n_positive} positive, {agg.n_negative} negative")

    frequency = selection_frequency(result)
    if len(frequency):
        print(f"\nMost Frequently Selected Features:")
        print(f"-" * 40)
        for name, count in frequency.head(top_features).items():
            print(f"  {name:<30} {count}/{len(ok)}")

    if failed:
        kinds = Counter(r.error_kind for r in failed)
        print(f"\nFailed runs: " + ", ".join(f"{kind} x{n}" for kind, n in kinds.items()))


# =============================================================================
# MAIN
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    defaults = RunConfig()
    parser = argparse.ArgumentParser(
        prog="taxa-roc",
        description="Repeated variable-selected random forests for two-state taxa discrimination.",
    )
    parser.add_argument("--data", required=True, help="sample table (.csv, .tsv, .xlsx)")
    parser.add_argument("--label-col", required=True)
    parser.add_argument("--id-col", required=True)
    parser.add_argument("--positive-label", default=None, help="label of the disease state")
    parser.add_argument("--feature-prefix", default=None, help="feature columns start with this text")
    parser.add_argument("--feature-start", default=None, help="first feature column (inclusive)")
    parser.add_argument("--feature-stop", default=None, help="last feature column (inclusive)")
    parser.add_argument("--filter", action="append", default=[], metavar="COLUMN=VALUE",
                        help="keep rows where COLUMN equals VALUE; repeatable")
    parser.add_argument("--output-dir", required=True)

    parser.add_argument("--repetitions", type=int, default=defaults.repetitions)
    parser.add_argument("--train-per-class", type=int, default=defaults.train_per_class)
    parser.add_argument("--threshold-trees", type=int, default=defaults.threshold_tree_count)
    parser.add_argument("--interpretation-trees", type=int, default=defaults.interpretation_tree_count)
    parser.add_argument("--prediction-trees", type=int, default=defaults.prediction_tree_count)
    parser.add_argument("--threshold-forests", type=int, default=defaults.threshold_forests)
    parser.add_argument("--interpretation-forests", type=int, default=defaults.interpretation_forests)
    parser.add_argument("--ensemble-trees", type=int, default=defaults.ensemble_tree_count)
    parser.add_argument("--outlier-quantile", type=float, default=defaults.outlier_quantile)
    parser.add_argument("--n-jobs", type=int, default=defaults.n_jobs)
    parser.add_argument("--parallel-repetitions", action="store_true")
    parser.add_argument("--seed", type=int, default=defaults.base_seed)
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    frame = filter_samples(load_table(args.data), _parse_filters(args.filter))
    feature_cols = select_feature_columns(
        frame,
        prefix=args.feature_prefix,
        start=args.feature_start,
        stop=args.feature_stop,
        exclude=(args.label_col, args.id_col),
    )
    dataset = Dataset.from_frame(frame, args.label_col, args.id_col, feature_cols, args.positive_label)
    print(f"\n✓ Data loaded: {dataset.n_samples} samples, {dataset.n_features} features")
    print(f"  " + ", ".join(f"{name}: {n}" for name, n in dataset.class_counts().items()))

    config = RunConfig(
        train_per_class=args.train_per_class,
        repetitions=args.repetitions,
        threshold_tree_count=args.threshold_trees,
        threshold_forests=args.threshold_forests,
        interpretation_tree_count=args.interpretation_trees,
        interpretation_forests=args.interpretation_forests,
        prediction_tree_count=args.prediction_trees,
        ensemble_tree_count=args.ensemble_trees,
        outlier_quantile=args.outlier_quantile,
        n_jobs=args.n_jobs,
        parallel_repetitions=args.parallel_repetitions,
        base_seed=args.seed,
    )
    result = run_repetitions(dataset, config, verbose=args.verbose)

    write_outputs(result, args.output_dir)
    print_final_summary(result)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
