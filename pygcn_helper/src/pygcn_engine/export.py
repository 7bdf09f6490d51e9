from __future__ import annotations

import json
from pathlib import Path
from typing import Dict, Mapping

import numpy as np


def weights_to_dict(weights: Mapping[str, np.ndarray]) -> Dict[str, list[float]]:
    if not weights:
        raise KeyError("No weight sets to export")
    return {
        key: [float(value) for value in np.asarray(array).reshape(-1)]
        for key, array in weights.items()
    }


def export_weights_to_json(
    weights: Mapping[str, np.ndarray],
    output_path: Path,
    indent: int = 2,
) -> Path:
    """
    Write extracted weight sets as flat row-major float lists keyed by name,
    with their shapes under ``"shapes"``.
    """

    payload: Dict[str, object] = dict(weights_to_dict(weights))
    payload["shapes"] = {key: list(np.shape(array)) for key, array in weights.items()}
    output_path = Path(output_path).expanduser().resolve()
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with output_path.open("w", encoding="utf-8") as handle:
        json.dump(payload, handle, indent=indent)

    return output_path
