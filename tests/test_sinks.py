#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Tests for output sink parsing, naming and serialization.
"""
import os
import tempfile
import unittest

import numpy as np

from sift_pipeline.core.config import MAX_PATH_LENGTH, SIFT_CONFIG, SinkSet
from sift_pipeline.core.errors import ConfigError, FileIOError, PathOverflowError
from sift_pipeline.core.sinks import (
    OutputSink, Protocol, SinkConfig, derive_sibling_path, parse_sink_config,
    resolve_pattern
)


class TestSinkConfig(unittest.TestCase):
    """Test parsing of sink specifications."""

    def setUp(self):
        self.default = SinkConfig(active=False, pattern="%.descr")

    def test_flag_without_value_activates(self):
        config = parse_sink_config(None, self.default)
        self.assertEqual(config, SinkConfig(True, "%.descr", Protocol.ASCII))

    def test_empty_value_activates(self):
        self.assertTrue(parse_sink_config("", self.default).active)

    def test_pattern_only(self):
        config = parse_sink_config("out/%-d.txt", self.default)
        self.assertEqual(config.pattern, "out/%-d.txt")
        self.assertIs(config.protocol, Protocol.ASCII)

    def test_protocol_and_pattern(self):
        config = parse_sink_config("bin://%.bin", self.default)
        self.assertIs(config.protocol, Protocol.BINARY_BE)
        self.assertEqual(config.pattern, "%.bin")

    def test_protocol_only_keeps_pattern(self):
        config = parse_sink_config("ascii-framed://", self.default)
        self.assertIs(config.protocol, Protocol.ASCII_FRAMED)
        self.assertEqual(config.pattern, "%.descr")

    def test_protocol_tags_are_case_insensitive(self):
        self.assertIs(parse_sink_config("BIN-LE://x", self.default).protocol, Protocol.BINARY_LE)

    def test_unknown_protocol(self):
        with self.assertRaises(ConfigError):
            parse_sink_config("xml://%.xml", self.default)

    def test_oversized_pattern(self):
        with self.assertRaises(ConfigError):
            parse_sink_config("a" * MAX_PATH_LENGTH, self.default)

    def test_default_is_not_modified(self):
        parse_sink_config("bin://x", self.default)
        self.assertFalse(self.default.active)

    def test_default_sink_set(self):
        sinks = SinkSet()
        self.assertEqual(sinks.frames, SinkConfig(True, "%.frame"))
        for config in (sinks.descriptors, sinks.meta, sinks.gss, sinks.read_frames):
            self.assertIsInstance(config, SinkConfig)
            self.assertFalse(config.active)
            self.assertIs(config.protocol, Protocol.ASCII)
        self.assertEqual(sorted(SIFT_CONFIG),
                         ["edge_thresh", "first_octave", "levels", "octaves", "peak_thresh"])


class TestNaming(unittest.TestCase):
    """Test derivation of file names."""

    def test_wildcard_substitution(self):
        self.assertEqual(resolve_pattern("%.frame", "img"), "img.frame")
        self.assertEqual(resolve_pattern("out/%/%.f", "a"), "out/a/a.f")
        self.assertEqual(resolve_pattern("fixed.txt", "img"), "fixed.txt")

    def test_escaped_wildcard(self):
        self.assertEqual(resolve_pattern("\\%-%", "img"), "%-img")

    def test_sibling_path(self):
        self.assertEqual(derive_sibling_path("img", "_-1_002"), "img_-1_002")

    def test_sibling_path_overflow(self):
        with self.assertRaises(PathOverflowError):
            derive_sibling_path("a" * (MAX_PATH_LENGTH - 3), "_00_000")

    def test_resolved_name_overflow(self):
        with self.assertRaises(PathOverflowError):
            resolve_pattern("%.frame", "b" * (MAX_PATH_LENGTH - 2))


class TestOutputSink(unittest.TestCase):
    """Test opening, writing and closing sinks."""

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.tmp = self._tmp.name

    def make_sink(self, protocol=Protocol.ASCII, active=True, pattern="%.out"):
        return OutputSink(SinkConfig(active, os.path.join(self.tmp, pattern), protocol))

    def read(self, sink):
        with open(sink.resolved_path, "rb") as f:
            return f.read()

    def test_inactive_sink_creates_nothing(self):
        """Opening and closing an inactive sink is a no-op."""
        sink = self.make_sink(active=False)
        sink.open("img")
        sink.close()
        self.assertIsNone(sink.resolved_path)
        self.assertIsNone(sink.handle)
        self.assertEqual(os.listdir(self.tmp), [])

    def test_close_is_idempotent(self):
        sink = self.make_sink()
        sink.close()
        sink.open("img")
        self.assertTrue(sink.is_open)
        sink.close()
        sink.close()
        self.assertFalse(sink.is_open)
        self.assertEqual(sink.resolved_path, os.path.join(self.tmp, "img.out"))

    def test_ascii_records(self):
        with self.make_sink() as sink:
            sink.open("img")
            sink.write((1.5, 2, 3.25, 0.5))
            sink.write(np.array([1e-7, 123456789.0], dtype=np.float32))
        self.assertEqual(self.read(sink), b"1.5 2 3.25 0.5\n1e-07 1.23457e+08\n")

    def test_framed_ascii_records(self):
        with self.make_sink(Protocol.ASCII_FRAMED) as sink:
            sink.open("img")
            sink.write((1, 2, 3))
        self.assertEqual(self.read(sink), b"3 1 2 3\n")

    def test_binary_records(self):
        record = [1.0, -2.5, 3.75, 0.125]
        for protocol, dtype in ((Protocol.BINARY_BE, ">f8"), (Protocol.BINARY_LE, "<f8")):
            with self.subTest(protocol=protocol):
                with self.make_sink(protocol, pattern=f"%.{protocol.value}") as sink:
                    sink.open("img")
                    sink.write(record)
                data = self.read(sink)
                self.assertEqual(len(data), 32)
                np.testing.assert_array_equal(np.frombuffer(data, dtype=dtype), record)

    def test_text(self):
        with self.make_sink() as sink:
            sink.open("img")
            sink.write_text("<sift\n>\n")
        self.assertEqual(self.read(sink), b"<sift\n>\n")

    def test_reopen_truncates(self):
        sink = self.make_sink()
        sink.open("img")
        sink.write((1,))
        sink.close()
        sink.open("img")
        sink.close()
        self.assertEqual(self.read(sink), b"")

    def test_open_failure(self):
        sink = self.make_sink(pattern="missing/%.out")
        with self.assertRaises(FileIOError):
            sink.open("img")
        self.assertFalse(sink.is_open)

    def test_open_for_reading(self):
        path = os.path.join(self.tmp, "img.out")
        with open(path, "wb") as f:
            f.write(b"1 2 3\n")
        with self.make_sink() as sink:
            sink.open("img", "r")
            self.assertEqual(sink.handle.read(), b"1 2 3\n")


if __name__ == '__main__':
    unittest.main()
