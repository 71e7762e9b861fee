#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Tests for the per-image SIFT pipeline.
"""
import functools
import os
import tempfile
import unittest

import numpy as np

from sift_pipeline.core.config import SiftOptions, SinkSet
from sift_pipeline.core.errors import AllocError, FileIOError, FormatError
from sift_pipeline.core.io import load_image
from sift_pipeline.core.sinks import Protocol, SinkConfig
from sift_pipeline.features.detector import Keypoint, SiftFilter
from sift_pipeline.features.pipeline import ImagePipeline, PipelineState, process_image
from tests.synthetic import (
    ScriptedDetector, create_blob_image, create_flat_image, save_synthetic_image
)

KP_A = Keypoint(1.0, 2.0, 3.0)
KP_B = Keypoint(4.0, 5.0, 6.0)
KP_C = Keypoint(7.0, 8.0, 9.0, octave=1)

SCRIPT = [
    [(KP_A, [0.1, 0.2]), (KP_B, [0.3])],
    [(KP_C, [0.4])],
]


class PipelineTestCase(unittest.TestCase):
    """Common fixtures: a temporary directory holding one input image."""

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.tmp = self._tmp.name
        self.image_path = save_synthetic_image(
            os.path.join(self.tmp, "img.pgm"), create_flat_image((8, 8))
        )

    def path(self, name):
        return os.path.join(self.tmp, name)

    def sinks(self, frames=True, descriptors=False, meta=False, gss=False,
              read_frames=False, protocol=Protocol.ASCII):
        return SinkSet(
            frames=SinkConfig(frames, self.path("%.frame"), protocol),
            descriptors=SinkConfig(descriptors, self.path("%.descr"), protocol),
            meta=SinkConfig(meta, self.path("%.meta")),
            gss=SinkConfig(gss, self.path("%.pgm")),
            read_frames=SinkConfig(read_frames, self.path("%.in")),
        )

    def read_lines(self, name):
        with open(self.path(name)) as f:
            return f.read().splitlines()


class TestScriptedPipeline(PipelineTestCase):
    """Test record streaming against a scripted detector."""

    def run_script(self, script=SCRIPT, options=None, **sink_flags):
        pipeline = ImagePipeline(self.image_path, "img", options, self.sinks(**sink_flags),
                                 functools.partial(ScriptedDetector, script))
        return pipeline, pipeline.run()

    def test_records_carry_first_keypoint_frame(self):
        """Every frame of an octave repeats the first keypoint's location."""
        pipeline, report = self.run_script(descriptors=True)

        self.assertEqual(self.read_lines("img.frame"), [
            "1 2 3 0.1",
            "1 2 3 0.2",
            "1 2 3 0.3",
            "7 8 9 0.4",
        ])
        descriptors = self.read_lines("img.descr")
        self.assertEqual([line.split()[0] for line in descriptors], ["1", "1", "4", "7"])
        self.assertTrue(all(len(line.split()) == 128 for line in descriptors))

        self.assertEqual(pipeline.state, PipelineState.FINISHED)
        self.assertEqual((report.keypoints, report.records, report.octaves), (3, 4, 2))
        self.assertFalse(pipeline.frames.is_open)
        self.assertFalse(pipeline.descriptors.is_open)

    def test_descriptors_only(self):
        _, report = self.run_script(frames=False, descriptors=True)
        self.assertFalse(os.path.exists(self.path("img.frame")))
        self.assertEqual(len(self.read_lines("img.descr")), 4)
        self.assertEqual(report.outputs, {"descriptors": self.path("img.descr")})

    def test_binary_frames(self):
        self.run_script(protocol=Protocol.BINARY_BE)
        with open(self.path("img.frame"), "rb") as f:
            frames = np.frombuffer(f.read(), dtype=">f8").reshape(-1, 4)
        np.testing.assert_allclose(frames[-1], [7, 8, 9, 0.4])

    def test_meta(self):
        self.run_script(descriptors=True, meta=True)
        with open(self.path("img.meta")) as f:
            content = f.read()
        self.assertEqual(content, (
            "<sift\n"
            f"  input       = '{self.image_path}'\n"
            f"  descriptors = '{self.path('img.descr')}'\n"
            f"  frames      = '{self.path('img.frame')}'\n"
            ">\n"
        ))

    def test_meta_without_other_outputs(self):
        self.run_script(frames=False, meta=True)
        self.assertEqual(self.read_lines("img.meta"),
                         ["<sift", f"  input       = '{self.image_path}'", ">"])

    def test_empty_script(self):
        pipeline, report = self.run_script(script=[])
        self.assertEqual(pipeline.state, PipelineState.FINISHED)
        self.assertEqual((report.keypoints, report.records, report.octaves), (0, 0, 0))
        self.assertEqual(self.read_lines("img.frame"), [])

    def test_gss_snapshots(self):
        _, report = self.run_script(gss=True)
        names = [os.path.basename(p) for p in report.snapshots]
        self.assertEqual(names, [
            "img_00_000.pgm", "img_00_001.pgm", "img_00_002.pgm",
            "img_01_000.pgm", "img_01_001.pgm", "img_01_002.pgm",
        ])
        snapshot = load_image(report.snapshots[2])
        self.assertEqual((snapshot.width, snapshot.height), (8, 8))
        self.assertTrue((snapshot.samples == 20).all())


class TestReadFrames(PipelineTestCase):
    """Test describing frames read from a file instead of detected ones."""

    def write_frames(self, name, text):
        with open(self.path(name), "w") as f:
            f.write(text)

    def run_given(self, options=None, sinks=None):
        sinks = sinks or self.sinks(read_frames=True)
        return process_image(self.image_path, "img", options, sinks,
                             functools.partial(ScriptedDetector, [[], []]))

    def test_given_angles_are_kept(self):
        self.write_frames("img.in", "5 5 2 0.7\n20 20 12\n")
        report = self.run_given()
        self.assertEqual(self.read_lines("img.frame"), [
            "5 5 2 0.7",
            "20 20 12 0.25",
            "20 20 12 0.5",
        ])
        self.assertEqual((report.keypoints, report.records), (2, 3))

    def test_forced_orientations(self):
        self.write_frames("img.in", "5 5 2 0.7\n20 20 12\n")
        report = self.run_given(SiftOptions(force_orientations=True))
        self.assertEqual(self.read_lines("img.frame")[:2], ["5 5 2 0.25", "5 5 2 0.5"])
        self.assertEqual(report.records, 4)

    def test_frame_without_angle_first(self):
        self.write_frames("img.in", "20 20 12\n5 5 2 0.7\n")
        report = self.run_given()
        self.assertEqual(self.read_lines("img.frame"), [
            "5 5 2 0.7",
            "20 20 12 0.25",
            "20 20 12 0.5",
        ])
        self.assertEqual(report.records, 3)

    def test_same_file_for_input_and_output(self):
        """Frames are read before the frames output overwrites them."""
        self.write_frames("img.frame", "5 5 2 0.7\n")
        sinks = self.sinks()
        sinks = SinkSet(frames=sinks.frames, descriptors=sinks.descriptors,
                        meta=sinks.meta, gss=sinks.gss,
                        read_frames=SinkConfig(True, self.path("%.frame")))
        self.run_given(sinks=sinks)
        self.assertEqual(self.read_lines("img.frame"), ["5 5 2 0.7"])

    def test_non_positive_scale(self):
        self.write_frames("img.in", "5 5 0 0.7\n")
        with self.assertRaises(FormatError):
            self.run_given()

    def test_missing_frames_file(self):
        with self.assertRaises(FileIOError):
            self.run_given()


class TestPipelineFailures(PipelineTestCase):
    """Test that failures are reported and release every resource."""

    def test_corrupt_image(self):
        with open(self.path("bad.pgm"), "wb") as f:
            f.write(b"P5\n4 4\n255\n" + bytes(3))
        pipeline = ImagePipeline(self.path("bad.pgm"), "bad", sinks=self.sinks(descriptors=True))
        with self.assertRaises(FormatError):
            pipeline.run()
        self.assertEqual(pipeline.state, PipelineState.ERROR)
        self.assertFalse(pipeline.frames.is_open)
        self.assertFalse(pipeline.descriptors.is_open)
        self.assertIsNone(pipeline.detector)
        self.assertIsNone(pipeline.buffer)

    def test_missing_input(self):
        pipeline = ImagePipeline(self.path("missing.pgm"), "missing", sinks=self.sinks())
        with self.assertRaises(FileIOError):
            pipeline.run()
        self.assertEqual(pipeline.report.outputs, {})
        self.assertFalse(os.path.exists(self.path("missing.frame")))

    def test_detector_allocation_failure(self):
        def failing_factory(width, height, **params):
            raise ValueError("too large")

        pipeline = ImagePipeline(self.image_path, "img", sinks=self.sinks(),
                                 detector_factory=failing_factory)
        with self.assertRaises(AllocError):
            pipeline.run()
        self.assertEqual(pipeline.state, PipelineState.ERROR)
        self.assertFalse(pipeline.frames.is_open)


class TestSiftPipeline(PipelineTestCase):
    """Test the pipeline with the real detector."""

    def test_no_octaves(self):
        report = process_image(self.image_path, "img", SiftOptions(octaves=0), self.sinks())
        self.assertEqual((report.keypoints, report.octaves), (0, 0))
        self.assertEqual(self.read_lines("img.frame"), [])

    def test_flat_image(self):
        flat = save_synthetic_image(self.path("flat.pgm"), create_flat_image((16, 16)))
        report = process_image(flat, "flat", sinks=self.sinks(descriptors=True, meta=True),
                               detector_factory=SiftFilter)
        self.assertEqual(report.records, 0)
        self.assertEqual(report.octaves, 2)
        self.assertEqual(self.read_lines("flat.frame"), [])
        self.assertEqual(self.read_lines("flat.descr"), [])
        self.assertEqual(self.read_lines("flat.meta"), [
            "<sift",
            f"  input       = '{flat}'",
            f"  descriptors = '{self.path('flat.descr')}'",
            f"  frames      = '{self.path('flat.frame')}'",
            ">",
        ])

    def test_repeatable_output(self):
        blob = save_synthetic_image(self.path("blob.pgm"), create_blob_image(seed=0))
        options = SiftOptions(peak_thresh=1.0, edge_thresh=10.0)
        outputs = []
        for run in ("a", "b"):
            process_image(blob, run, options, self.sinks(descriptors=True))
            with open(self.path(f"{run}.frame"), "rb") as f:
                frames = f.read()
            with open(self.path(f"{run}.descr"), "rb") as f:
                outputs.append((frames, f.read()))
        self.assertEqual(outputs[0], outputs[1])


if __name__ == '__main__':
    unittest.main()
