from __future__ import annotations

import logging

import numpy as np
import pytest

from pygcn_engine.data import load_dataset, parse_feature_file, parse_graph_file, parse_split_file
from pygcn_engine.errors import IngestionFormatError
from pygcn_engine.graph import build_adjacency


def _write(tmp_path, name, text):
    path = tmp_path / name
    path.write_text(text, encoding="utf-8")
    return path


def test_parse_feature_file_one_based(tmp_path):
    path = _write(tmp_path, "f.txt", "2 1:0.5 3:2\n0\n1 2:1.5\n")
    features, labels = parse_feature_file(path, index_base=1)

    assert labels.tolist() == [2, 0, 1]
    assert features.shape == (3, 3)
    np.testing.assert_allclose(
        features.to_scipy().toarray(), [[0.5, 0.0, 2.0], [0.0, 0.0, 0.0], [0.0, 1.5, 0.0]]
    )
    assert features.row_offsets.tolist() == [0, 2, 2, 3]


@pytest.mark.parametrize("line", ["abc 0:1", "1 0-1", "1 0:x", "", "-1 0:1", "1 -1:2"])
def test_strict_parsing_rejects_malformed_lines(tmp_path, line):
    path = _write(tmp_path, "f.txt", f"0 0:1\n{line}\n1 1:1\n")
    with pytest.raises(IngestionFormatError) as excinfo:
        parse_feature_file(path)
    assert excinfo.value.line_number == 2


def test_trailing_blank_lines_are_ignored(tmp_path):
    features, labels = parse_feature_file(_write(tmp_path, "f.txt", "0 0:1\n1 1:1\n\n  \n"))
    assert labels.tolist() == [0, 1]
    assert features.nodes == 2

    split = parse_split_file(_write(tmp_path, "s.txt", "1\n2\n\n"), 2)
    assert split.tolist() == [1, 2]


def test_lenient_parsing_keeps_node_count(tmp_path, caplog):
    path = _write(tmp_path, "f.txt", "1 0:1\nbroken\n1 1:2\n")
    with caplog.at_level(logging.WARNING):
        features, labels = parse_feature_file(path, strict=False)
    assert labels.tolist() == [1, 0, 1]
    assert features.nodes == 3
    assert features.row_offsets.tolist() == [0, 1, 1, 2]
    assert "empty record" in caplog.text


def test_parse_split_file(tmp_path):
    path = _write(tmp_path, "s.txt", "1\n2\n3\n0\n")
    assert parse_split_file(path, 4).tolist() == [1, 2, 3, 0]
    with pytest.raises(IngestionFormatError):
        parse_split_file(path, 5)
    with pytest.raises(IngestionFormatError) as excinfo:
        parse_split_file(_write(tmp_path, "bad.txt", "1\n7\n"))
    assert excinfo.value.line_number == 2
    with pytest.raises(IngestionFormatError) as excinfo:
        parse_split_file(_write(tmp_path, "text.txt", "1\ntrain\n3\n"))
    assert excinfo.value.line_number == 2
    with pytest.raises(IngestionFormatError):
        parse_split_file(_write(tmp_path, "float.txt", "1.5\n"))
    with pytest.raises(IngestionFormatError):
        parse_split_file(_write(tmp_path, "wide.txt", "1 2\n3 0\n"))


def test_parse_graph_file(tmp_path):
    path = _write(tmp_path, "g.txt", "# edges\n0 1\n\n2 0\n")
    assert parse_graph_file(path, 3).tolist() == [[0, 1], [2, 0]]
    assert parse_graph_file(_write(tmp_path, "one.txt", "1 2\n"), 3).tolist() == [[1, 2]]
    assert parse_graph_file(_write(tmp_path, "empty.txt", "# none\n"), 3).shape == (0, 2)

    with pytest.raises(IngestionFormatError) as excinfo:
        parse_graph_file(_write(tmp_path, "oob.txt", "0 1\n0 3\n"), 3)
    assert excinfo.value.line_number == 2
    with pytest.raises(IngestionFormatError) as excinfo:
        parse_graph_file(_write(tmp_path, "text.txt", "0 1\n1 x\n"), 3)
    assert excinfo.value.line_number == 2
    with pytest.raises(IngestionFormatError):
        parse_graph_file(_write(tmp_path, "short.txt", "0\n"), 3)
    with pytest.raises(FileNotFoundError):
        parse_graph_file(tmp_path / "missing.edges", 3)


def test_build_adjacency_normalizations():
    edges = np.array([[0, 1], [1, 2], [1, 2], [2, 2]])
    sym = build_adjacency(3, edges, "sym").to_scipy().toarray()
    np.testing.assert_allclose(sym, sym.T, atol=1e-7)
    assert np.all(np.diag(sym) > 0)

    row = build_adjacency(3, edges, "row").to_scipy().toarray()
    np.testing.assert_allclose(row.sum(axis=1), np.ones(3), atol=1e-6)

    raw = build_adjacency(3, edges, "none").to_scipy().toarray()
    np.testing.assert_array_equal(raw, [[1, 1, 0], [1, 1, 1], [0, 1, 1]])

    identity = build_adjacency(2, None, "sym").to_scipy().toarray()
    np.testing.assert_array_equal(identity, np.eye(2))

    with pytest.raises(ValueError):
        build_adjacency(2, None, "mean")


def test_load_dataset(tiny_files):
    feature_file, split_file, graph_file = tiny_files
    dataset = load_dataset(feature_file, split_file, graph_file)
    assert dataset.num_nodes == 4
    np.testing.assert_allclose(
        np.asarray(dataset.features.to_scipy().sum(axis=1)).ravel(), np.ones(4), atol=1e-6
    )
    assert dataset.split.tolist() == [1, 1, 2, 3]


def test_load_dataset_rejects_split_mismatch(tiny_files, tmp_path):
    feature_file, _, graph_file = tiny_files
    split_file = _write(tmp_path, "short_split.txt", "1\n1\n")
    with pytest.raises(IngestionFormatError):
        load_dataset(feature_file, split_file, graph_file)


def test_load_dataset_reports_missing_graph_file(tiny_files, tmp_path):
    feature_file, split_file, _ = tiny_files
    with pytest.raises(FileNotFoundError):
        load_dataset(feature_file, split_file, tmp_path / "typo.edges")
