#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Core functionality for the SIFT pipeline.

This module contains the raster codec, output sinks, configuration
management, error taxonomy and logging setup.
"""
