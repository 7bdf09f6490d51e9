from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple
from urllib.request import urlretrieve

import numpy as np
import scipy.sparse as sp

from .errors import IngestionFormatError
from .graph import GraphPartition, build_adjacency, normalize_rows
from .modules import SplitTag

logger = logging.getLogger(__name__)

CORADATA_URL = "https://raw.githubusercontent.com/tkipf/pygcn/master/data/cora/cora."
CORADATA_FILES = ["content", "cites"]


@dataclass
class GraphDataset:
    """Everything a replica needs, with matching node counts."""

    graph: GraphPartition
    features: GraphPartition
    labels: np.ndarray
    split: np.ndarray

    @property
    def num_nodes(self) -> int:
        return self.features.nodes

    def __post_init__(self) -> None:
        counts = {
            "graph": self.graph.nodes,
            "features": self.features.nodes,
            "labels": int(self.labels.shape[0]),
            "split": int(self.split.shape[0]),
        }
        if len(set(counts.values())) != 1:
            raise ValueError(f"Node counts disagree: {counts}")


def _parse_feature_line(line: str, index_base: int) -> Tuple[int, List[int], List[float]]:
    tokens = line.split()
    if not tokens:
        raise ValueError("missing class label")
    label = int(tokens[0])
    if label < 0:
        raise ValueError(f"negative class label {label}")
    columns: List[int] = []
    values: List[float] = []
    for token in tokens[1:]:
        index, sep, value = token.partition(":")
        if not sep:
            raise ValueError(f"expected index:value, got {token!r}")
        column = int(index) - index_base
        if column < 0:
            raise ValueError(f"feature index {index} below base {index_base}")
        columns.append(column)
        values.append(float(value))
    return label, columns, values


def parse_feature_file(
    path: Path,
    index_base: int = 0,
    strict: bool = True,
    dtype: np.dtype = np.float32,
) -> Tuple[GraphPartition, np.ndarray]:
    """
    Parse a sparse feature file into a CSR feature matrix and a label vector.

    Each line is one node: an integer class label followed by whitespace
    separated ``index:value`` pairs. Blank lines at the end of the file are
    ignored; a blank line before another record is malformed. With
    ``strict=False`` a malformed line becomes an empty feature row with
    label 0 instead of raising.
    """

    path = Path(path).expanduser()
    labels: List[int] = []
    rows: List[int] = []
    columns: List[int] = []
    values: List[float] = []

    with path.open("r", encoding="utf-8") as handle:
        lines = handle.read().splitlines()
    while lines and not lines[-1].strip():
        lines.pop()

    for line_number, line in enumerate(lines, start=1):
        try:
            label, line_columns, line_values = _parse_feature_line(line, index_base)
        except ValueError as exc:
            if strict:
                raise IngestionFormatError(path, line_number, str(exc)) from exc
            logger.warning("%s:%d: %s; using an empty record", path, line_number, exc)
            label, line_columns, line_values = 0, [], []
        node = len(labels)
        labels.append(label)
        rows.extend([node] * len(line_columns))
        columns.extend(line_columns)
        values.extend(line_values)

    if not labels:
        raise IngestionFormatError(path, 0, "feature file is empty")
    width = max(columns) + 1 if columns else 1
    matrix = sp.csr_matrix(
        (
            np.asarray(values, dtype=np.float64),
            (np.asarray(rows, dtype=np.int64), np.asarray(columns, dtype=np.int64)),
        ),
        shape=(len(labels), width),
    )
    logger.info(
        "Loaded %d nodes, %d features, %d nonzeros from %s",
        len(labels), width, matrix.nnz, path,
    )
    return GraphPartition.from_scipy(matrix, dtype=dtype), np.asarray(labels, dtype=np.int64)


def _load_integer_table(path: Path, ndmin: int) -> np.ndarray:
    """
    Read a whitespace-delimited integer file with ``np.genfromtxt``.

    Blank lines and ``#`` comments are skipped, so row ``i`` of the result
    is the ``i + 1``-th record. Unparseable tokens come back as NaN.
    """

    if not path.exists():
        raise FileNotFoundError(f"Missing input file {path}")
    try:
        return np.genfromtxt(path, dtype=np.float64, comments="#", ndmin=ndmin)
    except ValueError as exc:
        raise IngestionFormatError(path, 0, str(exc)) from exc


def _first_bad_record(bad: np.ndarray) -> int:
    return int(np.flatnonzero(bad)[0]) + 1


def parse_split_file(path: Path, num_nodes: Optional[int] = None) -> np.ndarray:
    """One split tag per record: 0 unassigned, 1 train, 2 validation, 3 test."""

    path = Path(path).expanduser()
    table = _load_integer_table(path, ndmin=1)
    if table.ndim != 1:
        raise IngestionFormatError(path, 1, "expected one split tag per line")

    valid = np.array([int(tag) for tag in SplitTag], dtype=np.float64)
    bad = ~np.isin(table, valid)
    if bad.any():
        record = _first_bad_record(bad)
        raise IngestionFormatError(path, record, f"invalid split tag {table[record - 1]:g}")
    if num_nodes is not None and table.size != num_nodes:
        raise IngestionFormatError(
            path, table.size, f"expected {num_nodes} split tags, found {table.size}"
        )

    split = table.astype(np.int64)
    logger.info(
        "Split %s: %d train, %d val, %d test",
        path,
        int((split == SplitTag.TRAIN).sum()),
        int((split == SplitTag.VALIDATION).sum()),
        int((split == SplitTag.TEST).sum()),
    )
    return split


def parse_graph_file(path: Path, num_nodes: int) -> np.ndarray:
    """Read an edge list of 0-based ``src dst`` pairs into an ``(E, 2)`` array."""

    path = Path(path).expanduser()
    table = _load_integer_table(path, ndmin=2)
    if table.size == 0:
        return np.empty((0, 2), dtype=np.int64)
    if table.shape[1] != 2:
        raise IngestionFormatError(
            path, 1, f"expected 'src dst' pairs, got {table.shape[1]} columns"
        )

    bad = np.isnan(table).any(axis=1) | (table != np.rint(table)).any(axis=1)
    if bad.any():
        raise IngestionFormatError(path, _first_bad_record(bad), "invalid edge")
    out_of_range = ((table < 0) | (table >= num_nodes)).any(axis=1)
    if out_of_range.any():
        record = _first_bad_record(out_of_range)
        src, dst = table[record - 1].astype(np.int64)
        raise IngestionFormatError(path, record, f"edge ({src}, {dst}) outside {num_nodes} nodes")
    return table.astype(np.int64)


def load_dataset(
    feature_file: Path,
    split_file: Path,
    graph_file: Optional[Path] = None,
    index_base: int = 0,
    strict: bool = True,
    normalization: str = "sym",
    normalize_features: bool = True,
    dtype: np.dtype = np.float32,
) -> GraphDataset:
    features, labels = parse_feature_file(feature_file, index_base, strict, dtype)
    if normalize_features:
        features = GraphPartition.from_scipy(normalize_rows(features.to_scipy()), dtype=dtype)
    split = parse_split_file(split_file, features.nodes)
    edges = parse_graph_file(graph_file, features.nodes) if graph_file is not None else None
    graph = build_adjacency(features.nodes, edges, normalization, dtype)
    return GraphDataset(graph=graph, features=features, labels=labels, split=split)


def download_cora_dataset(destination: Path) -> None:
    """
    Download the Cora citation dataset into the provided directory.

    Parameters
    ----------
    destination:
        Directory that will contain the raw `cora.content` and `cora.cites`
        files. The directory is created when missing.
    """

    destination = Path(destination).expanduser().resolve()
    destination.mkdir(parents=True, exist_ok=True)

    for suffix in CORADATA_FILES:
        target = destination / f"cora.{suffix}"
        if target.exists():
            continue
        url = f"{CORADATA_URL}{suffix}"
        logger.info("Downloading %s", url)
        urlretrieve(url, target)


def convert_cora_dataset(data_dir: Path, output_dir: Path) -> Tuple[Path, Path, Path]:
    """
    Rewrite raw Cora files as feature, split and graph files.

    Returns the ``(feature_file, split_file, graph_file)`` paths. The split
    follows the usual Kipf & Welling layout: nodes 0-139 train, 200-499
    validation, 500-1499 test.
    """

    data_dir = Path(data_dir).expanduser().resolve()
    content_path = data_dir / "cora.content"
    cites_path = data_dir / "cora.cites"
    if not content_path.exists() or not cites_path.exists():
        raise FileNotFoundError(
            f"Missing dataset files in {data_dir}. "
            f"Use download_cora_dataset() or scripts/download_cora.py first."
        )

    idx_features_labels = np.genfromtxt(content_path, dtype=np.dtype(str))
    features = np.asarray(idx_features_labels[:, 1:-1], dtype=np.float32)
    classes = sorted(set(idx_features_labels[:, -1]))
    class_index = {name: i for i, name in enumerate(classes)}
    labels = [class_index[name] for name in idx_features_labels[:, -1]]

    indices = np.array(idx_features_labels[:, 0], dtype=np.int32)
    index_map = {index: i for i, index in enumerate(indices)}
    edges_unordered = np.genfromtxt(cites_path, dtype=np.int32)

    num_nodes = len(labels)
    split = np.zeros(num_nodes, dtype=np.int64)
    split[0:140] = SplitTag.TRAIN
    split[200:500] = SplitTag.VALIDATION
    split[500:1500] = SplitTag.TEST

    output_dir = Path(output_dir).expanduser().resolve()
    output_dir.mkdir(parents=True, exist_ok=True)
    feature_file = output_dir / "cora.svmlight"
    split_file = output_dir / "cora.split"
    graph_file = output_dir / "cora.edges"

    with feature_file.open("w", encoding="utf-8") as handle:
        for label, row in zip(labels, features):
            pairs = " ".join(f"{col}:{row[col]:g}" for col in np.flatnonzero(row))
            handle.write(f"{label} {pairs}".rstrip() + "\n")
    with split_file.open("w", encoding="utf-8") as handle:
        handle.writelines(f"{tag}\n" for tag in split)
    with graph_file.open("w", encoding="utf-8") as handle:
        for src, dst in edges_unordered:
            if src in index_map and dst in index_map:
                handle.write(f"{index_map[src]} {index_map[dst]}\n")

    return feature_file, split_file, graph_file
