from __future__ import annotations

import argparse
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Sequence

import torch

from pygcn_engine.config import TrainingConfig
from pygcn_engine.export import export_weights_to_json
from pygcn_engine.log import setup_logging
from pygcn_engine.training import train_model


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Train a GCN with the layered training engine and export its weights."
    )
    parser.add_argument("--feature-file", type=Path, default=Path("data/cora/cora.svmlight"))
    parser.add_argument("--split-file", type=Path, default=Path("data/cora/cora.split"))
    parser.add_argument(
        "--graph-file",
        type=Path,
        default=Path("data/cora/cora.edges"),
        help="Edge list of 0-based node pairs. A missing file is an error.",
    )
    parser.add_argument(
        "--no-graph",
        action="store_true",
        help="Train without a graph file (self-loops only).",
    )
    parser.add_argument("--layers", type=Path, default=None, help="JSON layer list.")
    parser.add_argument("--in-dim", type=int, default=None, help="Defaults to the feature width.")
    parser.add_argument("--out-dim", type=int, default=None, help="Defaults to max label + 1.")
    parser.add_argument("--hid-dim", type=int, default=16, help="Hidden dimension of the GCN.")
    parser.add_argument("--max-iter", type=int, default=200, help="Number of training steps.")
    parser.add_argument("--learning-rate", type=float, default=0.005, help="Adam learning rate.")
    parser.add_argument("--weight-decay", type=float, default=5e-4, help="L2 regularization factor.")
    parser.add_argument("--dropout", type=float, default=0.5, help="Default dropout probability.")
    parser.add_argument("--no-training", action="store_true", help="Disable dropout.")
    parser.add_argument(
        "--precision",
        type=str,
        choices=("f32", "f64"),
        default="f32",
        help="Floating-point precision for training and export.",
    )
    parser.add_argument(
        "--normalization",
        type=str,
        choices=("sym", "row", "none"),
        default="sym",
        help="Adjacency normalization.",
    )
    parser.add_argument("--feature-index-base", type=int, choices=(0, 1), default=0)
    parser.add_argument(
        "--lenient",
        action="store_true",
        help="Turn malformed feature lines into empty records instead of failing.",
    )
    parser.add_argument("--seed", type=int, default=42, help="Random seed.")
    parser.add_argument("--patience", type=int, default=0, help="Early stopping patience.")
    parser.add_argument(
        "--device",
        dest="devices",
        action="append",
        default=None,
        help="Device for one replica (repeatable), e.g. cpu or cuda:0.",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=Path("outputs"),
        help="Root directory for checkpoints and exported weights.",
    )
    parser.add_argument(
        "--export-json",
        action="store_true",
        help="Export JSON weights after training.",
    )
    parser.add_argument("--log-level", type=str, default="INFO")
    parser.add_argument("--log-file", type=Path, default=None)
    return parser.parse_args(argv)


def _format_run_name(precision: str) -> str:
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    return f"{timestamp}_gcn_{precision}"


def build_config(args: argparse.Namespace) -> TrainingConfig:
    config = TrainingConfig(
        feature_file=args.feature_file,
        split_file=args.split_file,
        graph_file=None if args.no_graph else args.graph_file,
        in_dim=args.in_dim,
        out_dim=args.out_dim,
        hid_dim=args.hid_dim,
        max_iter=args.max_iter,
        learning_rate=args.learning_rate,
        weight_decay=args.weight_decay,
        dropout=args.dropout,
        training=not args.no_training,
        precision=args.precision,
        normalization=args.normalization,
        feature_index_base=args.feature_index_base,
        strict_ingestion=not args.lenient,
        seed=args.seed,
        patience=args.patience,
        devices=args.devices or ["cpu"],
    )
    if args.layers is not None:
        config.layers = args.layers
    return config


def main() -> None:
    args = parse_args()
    setup_logging(args.log_level, args.log_file)

    run_name = _format_run_name(args.precision)
    output_root = args.output_dir.expanduser()
    checkpoints_dir = output_root / "checkpoints"
    weights_dir = output_root / "weights"
    reports_dir = output_root / "reports"
    checkpoints_dir.mkdir(parents=True, exist_ok=True)
    reports_dir.mkdir(parents=True, exist_ok=True)
    if args.export_json:
        weights_dir.mkdir(parents=True, exist_ok=True)

    config = build_config(args)

    result = train_model(config)
    checkpoint_path = checkpoints_dir / f"{run_name}_best.pt"
    checkpoint = {name: torch.from_numpy(array) for name, array in result.best_weights.items()}
    torch.save(checkpoint, checkpoint_path)

    report = {
        "run_name": run_name,
        "precision": args.precision,
        "best_epoch": result.best_epoch,
        "best_val_accuracy": result.best_val_accuracy,
        "test_accuracy_at_best": result.test_accuracy_at_best,
        "timings": result.timings,
        "config": {
            "max_iter": args.max_iter,
            "learning_rate": args.learning_rate,
            "weight_decay": args.weight_decay,
            "hid_dim": args.hid_dim,
            "dropout": args.dropout,
            "patience": args.patience,
            "seed": args.seed,
            "devices": config.devices,
        },
    }

    report_path = reports_dir / f"{run_name}_metrics.json"
    with report_path.open("w", encoding="utf-8") as handle:
        json.dump(report, handle, indent=2)

    print(f"Best weights saved to {checkpoint_path}")
    print(
        f"Validation accuracy: {result.best_val_accuracy:.4f} | "
        f"Test accuracy: {result.test_accuracy_at_best:.4f}"
    )

    if args.export_json:
        weights_path = weights_dir / f"{run_name}_weights.json"
        export_weights_to_json(result.best_weights, weights_path)
        print(f"Weight export written to {weights_path}")


if __name__ == "__main__":
    main()
