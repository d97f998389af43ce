"""
codec.py
~~~~~~~~

Versioned binary format for network weight blobs.

Layout (little-endian)::

    magic           4 bytes   b'FANW'
    format_version  uint16
    dtype_code      uint16    8 = float64, 4 = float32
    layer_count     uint32
    layer_sizes     uint32 * layer_count
    payload         for each layer transition, input to output:
                    weight matrix (row-major), then bias vector
    checksum        uint32    CRC32 of every preceding byte

The trailing checksum makes a truncated or half-written blob fail to decode
instead of loading as valid weights.
"""

import struct
import zlib
from typing import Dict

import numpy as np

from .errors import WeightFormatError
from .network import NetworkWeights

MAGIC = b'FANW'
FORMAT_VERSION = 1

_HEADER = struct.Struct('<4sHHI')
_CHECKSUM = struct.Struct('<I')

_DTYPES: Dict[int, np.dtype] = {
    8: np.dtype('<f8'),
    4: np.dtype('<f4'),
}


def encode_weights(weights: NetworkWeights, dtype=np.float64) -> bytes:
    """
    Serialize weights to a blob.

    Args:
        weights: Weights to serialize
        dtype: ``np.float64`` (exact) or ``np.float32`` (half the size)

    Returns:
        bytes: The encoded blob
    """
    dt = np.dtype(dtype).newbyteorder('<')
    if dt.itemsize not in _DTYPES or dt.kind != 'f':
        raise ValueError(f"Unsupported weight dtype: {dtype}")

    sizes = weights.sizes
    parts = [
        _HEADER.pack(MAGIC, FORMAT_VERSION, dt.itemsize, len(sizes)),
        struct.pack(f'<{len(sizes)}I', *sizes)
    ]
    for w, b in zip(weights.weights, weights.biases):
        parts.append(np.ascontiguousarray(w, dtype=dt).tobytes())
        parts.append(np.ascontiguousarray(b, dtype=dt).tobytes())

    body = b''.join(parts)
    return body + _CHECKSUM.pack(zlib.crc32(body))


def decode_weights(blob: bytes) -> NetworkWeights:
    """
    Deserialize a blob produced by :func:`encode_weights`.

    Raises:
        WeightFormatError: If the blob is corrupt, truncated or of an
            unsupported version or dtype
    """
    blob = bytes(blob)
    if len(blob) < _HEADER.size + _CHECKSUM.size:
        raise WeightFormatError(
            "Weight blob is too short to contain a header",
            size=len(blob)
        )

    body, (checksum,) = blob[:-_CHECKSUM.size], _CHECKSUM.unpack(blob[-_CHECKSUM.size:])
    if zlib.crc32(body) != checksum:
        raise WeightFormatError("Weight blob checksum mismatch", size=len(blob))

    magic, version, dtype_code, layer_count = _HEADER.unpack_from(body, 0)
    if magic != MAGIC:
        raise WeightFormatError(f"Bad weight blob magic {magic!r}")
    if version != FORMAT_VERSION:
        raise WeightFormatError(
            f"Unsupported weight blob version {version}",
            version=version
        )
    if dtype_code not in _DTYPES:
        raise WeightFormatError(
            f"Unsupported weight dtype code {dtype_code}",
            dtype_code=dtype_code
        )
    if layer_count < 2:
        raise WeightFormatError(
            f"Weight blob declares {layer_count} layer(s)",
            layer_count=layer_count
        )

    offset = _HEADER.size
    sizes_end = offset + 4 * layer_count
    if len(body) < sizes_end:
        raise WeightFormatError("Weight blob truncated in layer sizes")
    sizes = struct.unpack_from(f'<{layer_count}I', body, offset)
    if any(n == 0 for n in sizes):
        raise WeightFormatError(
            "Weight blob declares an empty layer", layers=list(sizes)
        )
    offset = sizes_end

    dt = _DTYPES[dtype_code]
    expected = sum(
        (rows * cols + rows) * dt.itemsize
        for cols, rows in zip(sizes[:-1], sizes[1:])
    )
    if len(body) - offset != expected:
        raise WeightFormatError(
            f"Weight payload is {len(body) - offset} bytes, expected {expected}",
            layers=list(sizes)
        )

    weights = []
    biases = []
    for cols, rows in zip(sizes[:-1], sizes[1:]):
        w = np.frombuffer(body, dtype=dt, count=rows * cols, offset=offset)
        offset += rows * cols * dt.itemsize
        b = np.frombuffer(body, dtype=dt, count=rows, offset=offset)
        offset += rows * dt.itemsize
        weights.append(w.reshape(rows, cols).astype(np.float64))
        biases.append(b.reshape(rows, 1).astype(np.float64))

    return NetworkWeights(weights, biases)
