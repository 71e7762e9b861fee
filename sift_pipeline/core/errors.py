#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Error taxonomy of the SIFT pipeline.

Configuration errors abort the whole run before any image is processed. All
other errors are fatal to the image being processed only: the batch driver
logs them, closes the image's files and moves on to the next input.
"""


class SiftError(Exception):
    """Base class of every error raised by the pipeline."""
    code: int = 0


class ConfigError(SiftError):
    """Bad command line option or sink specification."""
    code = 3


class FormatError(SiftError):
    """Corrupt raster header or pixel block, or malformed frames file."""
    code = 101


class FileIOError(SiftError, OSError):
    """A file could not be opened, read or written."""
    code = 4


class PathOverflowError(SiftError):
    """A derived file name exceeds the maximum supported length."""
    code = 1


class AllocError(SiftError, MemoryError):
    """A buffer or the detector could not be allocated."""
    code = 2
