#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Configuration settings for the SIFT pipeline.

This module centralizes the default parameters of the detector, the default
naming of every output sink and the logging setup. Run-time options are
collected into immutable dataclasses that are handed to the batch driver and
to each image pipeline.
"""
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, Any, Optional

if TYPE_CHECKING:
    from sift_pipeline.core.sinks import SinkConfig

# Longest file name (in characters, exclusive) a derived path may reach
MAX_PATH_LENGTH: int = 1024

# Detector configuration
SIFT_CONFIG: Dict[str, Any] = {
    "octaves": -1,        # -1 = as many as the image size allows
    "levels": 3,          # levels per octave
    "first_octave": -1,   # -1 = upsample the input by two
    "edge_thresh": 2.0,
    "peak_thresh": 2.0,
}

# Output sink configuration: (active, pattern); '%' stands for the base name
SINK_CONFIG: Dict[str, Dict[str, Any]] = {
    "frames":      {"active": True,  "pattern": "%.frame"},
    "descriptors": {"active": False, "pattern": "%.descr"},
    "meta":        {"active": False, "pattern": "%.meta"},
    "gss":         {"active": False, "pattern": "%.pgm"},
    "read_frames": {"active": False, "pattern": "%.frame"},
}

# Logging configuration
LOGGING_CONFIG: Dict[str, Any] = {
    "level": "WARNING",  # DEBUG, INFO, WARNING, ERROR, CRITICAL
    "log_to_file": False,
    "log_file": None,
    "log_format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
}


@dataclass(frozen=True)
class SiftOptions:
    """Detector and driver parameters for one run."""
    octaves: int = SIFT_CONFIG["octaves"]
    levels: int = SIFT_CONFIG["levels"]
    first_octave: int = SIFT_CONFIG["first_octave"]
    edge_thresh: float = SIFT_CONFIG["edge_thresh"]
    peak_thresh: float = SIFT_CONFIG["peak_thresh"]
    force_orientations: bool = False
    progress: bool = False


def _default_sink(name: str) -> "SinkConfig":
    # Imported lazily, sinks.py depends on this module for MAX_PATH_LENGTH
    from sift_pipeline.core.sinks import SinkConfig
    return SinkConfig(
        active=SINK_CONFIG[name]["active"],
        pattern=SINK_CONFIG[name]["pattern"],
    )


@dataclass(frozen=True)
class SinkSet:
    """The parsed sink configurations of a run; copied into every image."""
    frames: "SinkConfig" = field(default_factory=lambda: _default_sink("frames"))
    descriptors: "SinkConfig" = field(default_factory=lambda: _default_sink("descriptors"))
    meta: "SinkConfig" = field(default_factory=lambda: _default_sink("meta"))
    gss: "SinkConfig" = field(default_factory=lambda: _default_sink("gss"))
    read_frames: "SinkConfig" = field(default_factory=lambda: _default_sink("read_frames"))

    def describe(self) -> Dict[str, Optional[str]]:
        """Return a printable summary of every sink, keyed by sink name."""
        return {
            name: f"active={int(cfg.active)} pattern={cfg.pattern:<10} "
                  f"protocol={cfg.protocol.value:<6}"
            for name, cfg in (
                ("frames", self.frames),
                ("descriptors", self.descriptors),
                ("meta", self.meta),
                ("gss", self.gss),
            )
        }
