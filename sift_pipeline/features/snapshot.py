#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Octave snapshots.

Writes the gaussian levels of the detector's current octave as 8-bit PGM
images, one file per level, through the gss sink.
"""
from typing import List

import numpy as np

from sift_pipeline.core.errors import AllocError
from sift_pipeline.core.io import RasterImage, encode
from sift_pipeline.core.logging_config import get_module_logger
from sift_pipeline.core.sinks import OutputSink, derive_sibling_path

logger = get_module_logger(__name__)


def narrow_to_uint8(plane: np.ndarray) -> np.ndarray:
    """
    Narrow float samples to 8 bits by truncation.

    Values outside [0, 255] wrap modulo 256; the level is not rescaled.
    """
    return np.mod(np.trunc(plane).astype(np.int64), 256).astype(np.uint8)


def snapshot_name(base_name: str, octave: int, level: int) -> str:
    """Name of the snapshot of ``level`` in ``octave``, e.g. ``img_-1_002``."""
    return derive_sibling_path(base_name, "_%02d_%03d" % (octave, level))


def save_octave_snapshots(detector, sink: OutputSink, base_name: str) -> List[str]:
    """
    Save every level of the detector's current octave.

    Parameters
    ----------
    detector : ScaleSpaceDetector
        Detector positioned on the octave to save.
    sink : OutputSink
        The gss sink; nothing happens if it is inactive.
    base_name : str
        Base name of the image being processed.

    Returns
    -------
    list of str
        Paths of the written files.

    Raises
    ------
    AllocError
        If the 8-bit buffer cannot be allocated.
    PathOverflowError, FileIOError
        Propagated from the sink.
    """
    if not sink.active:
        return []

    octave = detector.octave_index
    width, height = detector.octave_width, detector.octave_height
    written = []
    try:
        for level in range(detector.levels):
            try:
                pixels = narrow_to_uint8(detector.get_octave(level))
            except MemoryError as e:
                raise AllocError("Could not allocate snapshot buffer.") from e

            sink.open(snapshot_name(base_name, octave, level), "w")
            encode(sink.handle, RasterImage(width, height, 255, pixels))
            logger.info(f"Saved gss level to '{sink.resolved_path}'")
            written.append(sink.resolved_path)
            sink.close()
    finally:
        sink.close()
    return written
