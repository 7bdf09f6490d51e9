from __future__ import annotations

import argparse
from pathlib import Path

import torch

from pygcn_engine.export import export_weights_to_json


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Export a saved weight checkpoint to JSON."
    )
    parser.add_argument("checkpoint", type=Path, help="Path to the *.pt file produced by training.")
    parser.add_argument(
        "--output",
        type=Path,
        default=None,
        help="Destination JSON path (defaults to <checkpoint>_weights.json).",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    checkpoint = torch.load(args.checkpoint, map_location="cpu")
    if not isinstance(checkpoint, dict):
        raise ValueError("Expected a dictionary of weight tensors in the checkpoint file.")

    weights = {name: tensor.detach().cpu().numpy() for name, tensor in checkpoint.items()}
    output_path = args.output or args.checkpoint.with_name(
        f"{args.checkpoint.stem}_weights.json"
    )
    export_weights_to_json(weights, output_path)
    print(f"Exported weights to {output_path.resolve()}")


if __name__ == "__main__":
    main()
