"""Embedding vector storage encoding.

Vectors are stored as packed little-endian float32 (4 bytes per component).
Rows written before the binary format hold a JSON array of numbers as TEXT;
those decode transparently and are flagged ``legacy`` so the next write can
upgrade them.
"""

from __future__ import annotations

import numpy as np

from conceptkb.exceptions import StorageError
from conceptkb.utils import json_loads

DTYPE = np.dtype("<f4")


def encode_vector(vector) -> bytes:
    arr = np.asarray(vector, dtype=DTYPE)
    if arr.ndim != 1:
        raise StorageError(f"expected a 1-D vector, got shape {arr.shape}")
    return arr.tobytes()


def decode_vector(data: bytes | bytearray | memoryview | str) -> tuple[np.ndarray, bool]:
    """Decode a stored vector. Returns (float32 array, is_legacy)."""
    if isinstance(data, (bytes, bytearray, memoryview)):
        raw = bytes(data)
        if len(raw) % DTYPE.itemsize:
            raise StorageError(f"binary vector length {len(raw)} is not a multiple of 4")
        return np.frombuffer(raw, dtype=DTYPE).astype(np.float32), False
    if isinstance(data, str):
        try:
            values = json_loads(data)
        except ValueError as exc:
            raise StorageError(f"legacy vector is not valid JSON: {exc}") from exc
        if not isinstance(values, list):
            raise StorageError("legacy vector is not a JSON array")
        return np.asarray(values, dtype=np.float32), True
    raise StorageError(f"unknown vector encoding: {type(data).__name__}")
