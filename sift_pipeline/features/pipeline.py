#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Per-image SIFT pipeline.

``ImagePipeline`` takes one PGM image through the octave loop of a
scale-space detector and streams every (keypoint, orientation) record to the
frames and descriptors sinks:

    INIT -> FIRST_OCTAVE -> DETECT_AND_EMIT <-> NEXT_OCTAVE_OR_DONE -> FINISHED

Any failure moves the pipeline to ERROR. Whatever the outcome, the input
file and every sink opened for the image are closed, and the detector and
working buffer are released, before ``run`` returns or raises.
"""
import enum
from contextlib import ExitStack
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

import numpy as np

from sift_pipeline.core.config import SiftOptions, SinkSet
from sift_pipeline.core.errors import AllocError, FileIOError, FormatError, SiftError
from sift_pipeline.core.io import decode, read_frames
from sift_pipeline.core.logging_config import get_module_logger
from sift_pipeline.core.sinks import OutputSink
from sift_pipeline.features.detector import (
    Keypoint, OctaveExhausted, ScaleSpaceDetector, SiftFilter
)
from sift_pipeline.features.snapshot import save_octave_snapshots
from sift_pipeline.utils.utils import timer

logger = get_module_logger(__name__)

DetectorFactory = Callable[..., ScaleSpaceDetector]


class PipelineState(enum.Enum):
    INIT = "init"
    FIRST_OCTAVE = "first-octave"
    DETECT_AND_EMIT = "detect-and-emit"
    NEXT_OCTAVE_OR_DONE = "next-octave-or-done"
    FINISHED = "finished"
    ERROR = "error"


@dataclass
class ImageReport:
    """Summary of one processed image."""
    path: str
    keypoints: int = 0
    records: int = 0
    octaves: int = 0
    snapshots: List[str] = field(default_factory=list)
    outputs: Dict[str, str] = field(default_factory=dict)


class ImagePipeline:
    """
    Extract SIFT frames and descriptors from one image.

    Parameters
    ----------
    path : str
        Input PGM file.
    base_name : str
        Root of every output file name derived for this image.
    options : SiftOptions, optional
        Detector and driver parameters.
    sinks : SinkSet, optional
        Sink configurations; fresh sinks are built from them for this image.
    detector_factory : callable, optional
        Called as ``factory(width, height, octaves=..., levels=...,
        first_octave=..., peak_thresh=..., edge_thresh=...)``.
    """

    def __init__(self, path: str, base_name: str,
                 options: Optional[SiftOptions] = None,
                 sinks: Optional[SinkSet] = None,
                 detector_factory: DetectorFactory = SiftFilter):
        self.path = path
        self.base_name = base_name
        self.options = options or SiftOptions()
        sinks = sinks or SinkSet()
        self.detector_factory = detector_factory

        self.frames = OutputSink(sinks.frames)
        self.descriptors = OutputSink(sinks.descriptors)
        self.meta = OutputSink(sinks.meta)
        self.gss = OutputSink(sinks.gss)
        self.read_frames = OutputSink(sinks.read_frames)

        self.state = PipelineState.INIT
        self.report = ImageReport(path)
        self.detector: Optional[ScaleSpaceDetector] = None
        self.buffer: Optional[np.ndarray] = None
        self.given_frames: Optional[np.ndarray] = None

    @timer
    def run(self) -> ImageReport:
        """
        Process the image.

        Returns
        -------
        ImageReport
            Counts of keypoints, records and octaves.

        Raises
        ------
        SiftError
            Any per-image failure, after all resources have been released.
        """
        try:
            with ExitStack() as stack:
                stack.callback(self._release)
                for sink in (self.gss, self.read_frames, self.meta,
                             self.frames, self.descriptors):
                    stack.enter_context(sink)

                self._init(stack)
                if self._first_octave():
                    while True:
                        self._detect_and_emit()
                        if not self._next_octave():
                            break
                self._finish()
        except SiftError:
            self.state = PipelineState.ERROR
            raise
        except MemoryError as e:
            self.state = PipelineState.ERROR
            raise AllocError("Could not allocate enough memory.") from e
        except Exception:
            self.state = PipelineState.ERROR
            raise
        return self.report

    # ------------------------------------------------------------------
    # states

    def _init(self, stack: ExitStack) -> None:
        self.state = PipelineState.INIT
        logger.info(f"Processing '{self.path}'")
        logger.debug(f"Basename is '{self.base_name}'")

        try:
            source = stack.enter_context(open(self.path, "rb"))
        except OSError as e:
            raise FileIOError(f"Could not open '{self.path}' for reading: {e.strerror}") from e

        # Read before the outputs are created, the patterns may coincide
        if self.read_frames.active:
            self.read_frames.open(self.base_name, "r")
            self.given_frames = read_frames(self.read_frames.handle, self.read_frames.protocol)
            self.read_frames.close()
            if len(self.given_frames) and (self.given_frames[:, 2] <= 0).any():
                raise FormatError(f"Frames file '{self.read_frames.resolved_path}' "
                                  f"has non-positive scales.")
            logger.debug(f"Read {len(self.given_frames)} frames from "
                         f"'{self.read_frames.resolved_path}'")

        for name, sink in (("descriptors", self.descriptors),
                           ("frames", self.frames),
                           ("meta", self.meta)):
            sink.open(self.base_name, "w")
            if sink.active:
                self.report.outputs[name] = sink.resolved_path
                logger.debug(f"Writing {name} to '{sink.resolved_path}'")

        try:
            image = decode(source)
        except OSError as e:
            raise FileIOError(f"Could not read '{self.path}': {e.strerror}") from e
        logger.info(f"Image is {image.width} by {image.height} pixels")

        self.buffer = image.samples.astype(np.float32)

        try:
            self.detector = self.detector_factory(
                image.width, image.height,
                octaves=self.options.octaves,
                levels=self.options.levels,
                first_octave=self.options.first_octave,
                peak_thresh=self.options.peak_thresh,
                edge_thresh=self.options.edge_thresh,
            )
        except (ValueError, MemoryError) as e:
            raise AllocError(f"Could not allocate SIFT filter: {e}") from e

    def _first_octave(self) -> bool:
        self.state = PipelineState.FIRST_OCTAVE
        try:
            self.detector.process_first_octave(self.buffer)
        except OctaveExhausted as e:
            logger.info(f"No octave to process for '{self.path}': {e}")
            return False
        return True

    def _detect_and_emit(self) -> None:
        self.state = PipelineState.DETECT_AND_EMIT
        self.report.octaves += 1
        logger.debug(f"Octave {self.detector.octave_index}")

        if self.gss.active:
            self.report.snapshots.extend(
                save_octave_snapshots(self.detector, self.gss, self.base_name)
            )

        if self.given_frames is not None:
            self._emit_given_frames()
        else:
            self._emit_detected()

    def _emit_detected(self) -> None:
        keypoints = self.detector.detect()
        logger.debug(f"{len(keypoints)} keypoints")
        self.report.keypoints += len(keypoints)
        if not keypoints:
            return

        # Frame records of a detection pass all carry the first keypoint's
        # location and scale
        first = keypoints[0]
        for keypoint in keypoints:
            for angle in self.detector.calc_keypoint_orientations(keypoint):
                descriptor = self.detector.calc_keypoint_descriptor(keypoint, angle)
                self._emit(first, angle, descriptor)

    def _emit_given_frames(self) -> None:
        octave = self.detector.octave_index
        for frame in self.given_frames:
            keypoint = self.detector.keypoint_from_frame(frame[0], frame[1], frame[2])
            if keypoint.octave != octave:
                continue
            self.report.keypoints += 1
            if not np.isnan(frame[3]) and not self.options.force_orientations:
                angles = [float(frame[3])]
            else:
                angles = self.detector.calc_keypoint_orientations(keypoint)
            for angle in angles:
                descriptor = self.detector.calc_keypoint_descriptor(keypoint, angle)
                self._emit(keypoint, angle, descriptor)

    def _emit(self, keypoint: Keypoint, angle: float, descriptor: np.ndarray) -> None:
        if self.frames.active:
            self.frames.write((keypoint.x, keypoint.y, keypoint.sigma, angle))
        if self.descriptors.active:
            self.descriptors.write(descriptor)
        self.report.records += 1

    def _next_octave(self) -> bool:
        self.state = PipelineState.NEXT_OCTAVE_OR_DONE
        try:
            self.detector.process_next_octave()
        except OctaveExhausted:
            return False
        return True

    def _finish(self) -> None:
        self.state = PipelineState.FINISHED
        if self.meta.active:
            lines = ["<sift", f"  input       = '{self.path}'"]
            if self.descriptors.active:
                lines.append(f"  descriptors = '{self.descriptors.resolved_path}'")
            if self.frames.active:
                lines.append(f"  frames      = '{self.frames.resolved_path}'")
            lines.append(">")
            self.meta.write_text("\n".join(lines) + "\n")

        logger.info(f"'{self.path}': {self.report.keypoints} keypoints, "
                    f"{self.report.records} records in {self.report.octaves} octaves")

    def _release(self) -> None:
        self.detector = None
        self.buffer = None
        self.given_frames = None


def process_image(path: str, base_name: str,
                  options: Optional[SiftOptions] = None,
                  sinks: Optional[SinkSet] = None,
                  detector_factory: DetectorFactory = SiftFilter) -> ImageReport:
    """Run an ``ImagePipeline`` on one image and return its report."""
    return ImagePipeline(path, base_name, options, sinks, detector_factory).run()
