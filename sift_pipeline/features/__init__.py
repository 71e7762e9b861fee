#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Scale-space detection, octave snapshots and the per-image pipeline.
"""
