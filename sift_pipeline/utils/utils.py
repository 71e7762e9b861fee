#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Utility functions for the SIFT pipeline.

This module provides small helpers shared by the driver and the feature
modules: execution timing and base-name derivation.
"""
import functools
import os
import time
from typing import Callable

from sift_pipeline.core.config import MAX_PATH_LENGTH
from sift_pipeline.core.errors import PathOverflowError
from sift_pipeline.core.logging_config import get_module_logger

logger = get_module_logger(__name__)


def timer(func: Callable) -> Callable:
    """
    Decorator to time function execution.

    Parameters
    ----------
    func : Callable
        Function to time.

    Returns
    -------
    Callable
        Wrapped function with timing.
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        start_time = time.time()
        result = func(*args, **kwargs)
        elapsed = time.time() - start_time
        logger.debug(f"Function {func.__name__} took {elapsed:.2f} seconds to run")
        return result
    return wrapper


def derive_base_name(path: str, n_extensions: int = 1) -> str:
    """
    Strip the directory and up to ``n_extensions`` extensions from ``path``.

    Parameters
    ----------
    path : str
        Input file path.
    n_extensions : int, optional
        Number of trailing extensions to remove, by default 1.

    Returns
    -------
    str
        The base name used as the root of every derived output name.

    Raises
    ------
    PathOverflowError
        If the base name does not fit the maximum path length.
    """
    base = os.path.basename(path)
    for _ in range(n_extensions):
        stem, ext = os.path.splitext(base)
        if not ext:
            break
        base = stem
    if len(base) >= MAX_PATH_LENGTH:
        raise PathOverflowError(f"Basename of '{path}' is too long")
    return base
