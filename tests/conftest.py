"""
Shared fixtures: a tiny but complete model directory on disk.
"""

import os
import sys
import json

import numpy as np
import pytest
import torch

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

EMBEDDING_DIM = 4

TINY_VOCAB = {
    "[pad]": 0,
    "[unk]": 1,
    "▁": 2,
    "▁method": 3,
    "▁post": 4,
    "▁get": 5,
    "▁select": 6,
    "▁script": 7,
    "▁path": 8,
    "▁login": 9,
    "▁a": 10,
    "▁ab": 11,
    "c": 12,
}

TINY_VECTORS = np.array([
    [1.0, 0.0, 0.0, 0.0],
    [0.0, 1.0, 0.0, 0.0],
    [0.0, 0.0, 1.0, 0.0],
    [0.9, 0.1, 0.0, 0.0],
], dtype=np.float32)

TINY_LABELS = ["sqli", "xss", "clean", "sqli"]
TINY_SEVERITIES = ["high", "medium", None, "critical"]


def write_model_dir(path,
                    vocab=None,
                    vectors=None,
                    labels=None,
                    severities=None,
                    max_length=16,
                    embedding_dim=EMBEDDING_DIM):
    """Write every model file into ``path`` and return it as a string."""
    vocab = TINY_VOCAB if vocab is None else vocab
    vectors = TINY_VECTORS if vectors is None else np.asarray(vectors, dtype=np.float32)
    labels = TINY_LABELS if labels is None else labels
    severities = TINY_SEVERITIES if severities is None else severities

    os.makedirs(path, exist_ok=True)
    with open(os.path.join(path, "vocab.json"), "w", encoding="utf-8") as f:
        json.dump(vocab, f, ensure_ascii=False)
    with open(os.path.join(path, "tokenizer_config.json"), "w") as f:
        json.dump({"max_length": max_length, "pad_token_id": 0, "unk_token_id": 1}, f)
    with open(os.path.join(path, "config.json"), "w") as f:
        json.dump({"embedding_dim": embedding_dim}, f)

    generator = torch.Generator().manual_seed(0)
    weight = torch.randn(max(vocab.values()) + 1, embedding_dim, generator=generator)
    torch.save({"embedding.weight": weight}, os.path.join(path, "embedding_model.pth"))

    with open(os.path.join(path, "vectors.bin"), "wb") as f:
        f.write(vectors.astype("<f4").tobytes())
    with open(os.path.join(path, "labels.json"), "w") as f:
        json.dump({
            "labels": labels,
            "severities": severities,
            "num_vectors": int(vectors.shape[0]),
            "dim": int(vectors.shape[1])
        }, f)
    return str(path)


@pytest.fixture
def model_dir(tmp_path):
    """Complete model directory with four patterns."""
    return write_model_dir(tmp_path / "model")


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "patterns.db")
