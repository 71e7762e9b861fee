#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Input/output handling for the SIFT pipeline.

This module decodes and encodes grayscale PGM rasters (ASCII ``P2`` and raw
``P5``) and reads frame files written by a frames sink.
"""
import io
from dataclasses import dataclass
from typing import BinaryIO, Tuple

import numpy as np
import pandas as pd

from sift_pipeline.core.errors import FileIOError, FormatError
from sift_pipeline.core.logging_config import get_module_logger
from sift_pipeline.core.sinks import Protocol

logger = get_module_logger(__name__)

ASCII_MAGIC = b"P2"
RAW_MAGIC = b"P5"
MAX_SAMPLE_VALUE = 255
WHITESPACE = b" \t\r\n\v\f"


@dataclass(eq=False)
class RasterImage:
    """
    A decoded 8-bit grayscale image.

    Attributes
    ----------
    width, height : int
        Image size in pixels.
    max_value : int
        Largest representable sample value (at most 255).
    samples : np.ndarray
        ``uint8`` array of shape ``(height, width)``.
    """
    width: int
    height: int
    max_value: int
    samples: np.ndarray

    def __post_init__(self):
        self.samples = np.asarray(self.samples, dtype=np.uint8).reshape(self.height, self.width)

    def __eq__(self, other) -> bool:
        if not isinstance(other, RasterImage):
            return NotImplemented
        return (self.width == other.width and self.height == other.height
                and self.max_value == other.max_value
                and np.array_equal(self.samples, other.samples))


def _read_header(data: bytes) -> Tuple[bytes, int, int, int, int]:
    """
    Parse the four header tokens of a PGM file.

    Returns
    -------
    tuple
        magic, width, height, max value and the offset of the first byte
        after the whitespace that terminates the header.
    """
    tokens = []
    pos = 0
    size = len(data)
    while len(tokens) < 4:
        # Skip whitespace and comments
        while pos < size and (data[pos] in WHITESPACE or data[pos:pos + 1] == b"#"):
            if data[pos:pos + 1] == b"#":
                while pos < size and data[pos:pos + 1] not in (b"\n", b"\r"):
                    pos += 1
            else:
                pos += 1
        start = pos
        while pos < size and data[pos] not in WHITESPACE and data[pos:pos + 1] != b"#":
            pos += 1
        if start == pos:
            raise FormatError("PGM header corrupted.")
        tokens.append(data[start:pos])

    magic = tokens[0]
    if magic not in (ASCII_MAGIC, RAW_MAGIC):
        raise FormatError(f"PGM header corrupted: unknown magic {magic!r}.")
    try:
        width, height, max_value = (int(t) for t in tokens[1:])
    except ValueError:
        raise FormatError("PGM header corrupted: non-integer field.") from None
    if width <= 0 or height <= 0:
        raise FormatError(f"PGM header corrupted: invalid size {width}x{height}.")
    if not 0 < max_value <= MAX_SAMPLE_VALUE:
        raise FormatError(f"PGM header corrupted: unsupported max value {max_value}.")

    # A single whitespace byte separates the header from the data
    if pos >= size or data[pos] not in WHITESPACE:
        if magic == RAW_MAGIC:
            raise FormatError("PGM body corrupted.")
    return magic, width, height, max_value, pos + 1


def decode(stream: BinaryIO) -> RasterImage:
    """
    Decode a PGM image from a binary stream.

    Parameters
    ----------
    stream : file-like
        Binary stream positioned at the PGM magic number.

    Returns
    -------
    RasterImage
        The decoded image.

    Raises
    ------
    FormatError
        If the header is malformed, the pixel block is too short or a
        sample exceeds the max value.
    """
    data = stream.read()
    magic, width, height, max_value, offset = _read_header(data)
    n_samples = width * height

    if magic == RAW_MAGIC:
        block = data[offset:offset + n_samples]
        if len(block) < n_samples:
            raise FormatError(
                f"PGM body corrupted: expected {n_samples} bytes, found {len(block)}."
            )
        values = np.frombuffer(block, dtype=np.uint8)
    else:
        try:
            values = np.array(data[offset:].split()[:n_samples], dtype=np.int64)
        except ValueError:
            raise FormatError("PGM body corrupted: non-integer sample.") from None
        if values.size < n_samples:
            raise FormatError(
                f"PGM body corrupted: expected {n_samples} samples, found {values.size}."
            )

    if ((values < 0) | (values > max_value)).any():
        raise FormatError(f"PGM body corrupted: sample outside [0, {max_value}].")
    return RasterImage(width, height, max_value, values.astype(np.uint8))


def encode(stream: BinaryIO, image: RasterImage, raw: bool = True) -> None:
    """
    Write ``image`` to ``stream`` as a PGM file.

    Parameters
    ----------
    stream : file-like
        Binary stream to write to.
    image : RasterImage
        8-bit image to encode.
    raw : bool, optional
        Write a raw ``P5`` body (default) or an ASCII ``P2`` body.

    Raises
    ------
    FileIOError
        If writing fails.
    """
    magic = RAW_MAGIC if raw else ASCII_MAGIC
    header = b"%s\n%d %d\n%d\n" % (magic, image.width, image.height, image.max_value)
    if raw:
        body = image.samples.astype(np.uint8).tobytes()
    else:
        body = b"".join(
            b" ".join(b"%d" % v for v in row) + b"\n" for row in image.samples
        )
    try:
        stream.write(header)
        stream.write(body)
    except OSError as e:
        raise FileIOError(f"Could not write PGM data: {e.strerror}") from e


def load_image(path: str) -> RasterImage:
    """Decode the PGM file at ``path``."""
    logger.debug(f"Loading image from {path}")
    try:
        with open(path, "rb") as f:
            return decode(f)
    except OSError as e:
        raise FileIOError(f"Could not open '{path}' for reading: {e.strerror}") from e


def save_image(path: str, image: RasterImage, raw: bool = True) -> None:
    """Encode ``image`` into the file at ``path``."""
    try:
        with open(path, "wb") as f:
            encode(f, image, raw=raw)
    except OSError as e:
        raise FileIOError(f"Could not open '{path}' for writing: {e.strerror}") from e
    logger.debug(f"Saved image to {path}")


def read_frames(stream: BinaryIO, protocol: Protocol = Protocol.ASCII) -> np.ndarray:
    """
    Read frames (x, y, sigma and optionally angle) from a frames file.

    Lines with and without an angle may be mixed in the same file.

    Parameters
    ----------
    stream : file-like
        Binary stream of a file written by a frames sink.
    protocol : Protocol, optional
        Protocol the file was written with.

    Returns
    -------
    np.ndarray
        Array of shape ``(n, 4)``; the angle column is NaN for frames given
        without an angle. Empty files give ``(0, 4)``.

    Raises
    ------
    FormatError
        If a line does not hold 3 or 4 numbers, or a framed line's count
        does not match its fields.
    """
    data = stream.read()

    if protocol.is_binary:
        if len(data) % (4 * protocol.dtype.itemsize):
            raise FormatError("Frames file corrupted: truncated binary record.")
        return np.frombuffer(data, dtype=protocol.dtype).astype(np.float64).reshape(-1, 4)

    if not data.strip():
        return np.zeros((0, 4))

    # One spare column so that overlong lines show up instead of being dropped
    framed = protocol is Protocol.ASCII_FRAMED
    n_columns = 4 + int(framed) + 1
    try:
        df = pd.read_csv(io.BytesIO(data), sep=r"\s+", header=None,
                         names=range(n_columns), index_col=False, dtype=np.float64)
    except (ValueError, pd.errors.ParserError) as e:
        raise FormatError(f"Frames file corrupted: {e}") from e

    frames = df.to_numpy()
    if framed:
        counts, frames = frames[:, 0], frames[:, 1:]
        present = (~np.isnan(frames)).sum(axis=1)
        if np.isnan(counts).any() or (counts != present).any():
            raise FormatError("Frames file corrupted: field count does not match line.")

    if np.isnan(frames[:, :3]).any() or not np.isnan(frames[:, 4]).all():
        raise FormatError("Frames file corrupted: expected 3 or 4 fields per line.")
    logger.debug(f"Read {len(frames)} frames")
    return frames[:, :4]
