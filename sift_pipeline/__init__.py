#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
SIFT Pipeline Package.

A batch driver that extracts SIFT frames and descriptors from grayscale PGM
images and routes them to configurable output files.
"""

__version__ = "0.1.0"
__driver_version__ = "alpha-1"
