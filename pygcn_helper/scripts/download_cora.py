from __future__ import annotations

import argparse
from pathlib import Path

from pygcn_engine.data import convert_cora_dataset, download_cora_dataset
from pygcn_engine.log import setup_logging


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Download the Cora citation dataset and convert it to feature/split/graph files."
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=Path("data/cora"),
        help="Destination directory for the raw and converted Cora files.",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    setup_logging("INFO")
    download_cora_dataset(args.output_dir)
    feature_file, split_file, graph_file = convert_cora_dataset(args.output_dir, args.output_dir)
    print(f"Downloaded Cora dataset into {args.output_dir.resolve()}")
    print(f"Features: {feature_file}\nSplit: {split_file}\nGraph: {graph_file}")


if __name__ == "__main__":
    main()
