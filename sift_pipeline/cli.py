#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Main entry point for the SIFT pipeline.

This script parses the command line, then runs the per-image SIFT pipeline
on every input file, writing frames, descriptors, meta information and
scale-space snapshots as requested.
"""
import argparse
import sys
from typing import List, Optional, Sequence, Tuple

from tqdm import tqdm

from sift_pipeline import __driver_version__, __version__
from sift_pipeline.core.config import SIFT_CONFIG, SiftOptions, SinkSet
from sift_pipeline.core.errors import ConfigError, SiftError
from sift_pipeline.core.logging_config import (
    get_module_logger, setup_logging, verbosity_to_level
)
from sift_pipeline.core.sinks import Protocol, parse_sink_config
from sift_pipeline.features.detector import SiftFilter
from sift_pipeline.features.pipeline import DetectorFactory, process_image
from sift_pipeline.utils.utils import derive_base_name

logger = get_module_logger(__name__)

YES_VALUES = ("yes", "true", "1", "on")
NO_VALUES = ("no", "false", "0", "off")

# Options whose value is optional; like getopt, a value must be attached with "="
OPTIONAL_VALUE_FLAGS = {
    "--frames": "--frames=",
    "--descriptors": "--descriptors=",
    "--meta": "--meta=",
    "--gss": "--gss=",
    "--orientations": "--orientations=yes",
}


class DriverArgumentParser(argparse.ArgumentParser):
    """Argument parser reporting errors as ConfigError instead of exiting."""

    def error(self, message):
        raise ConfigError(message)


def non_negative_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        number = -1
    if number < 0:
        raise argparse.ArgumentTypeError(f"'{value}' must be a non-negative integer")
    return number


def non_negative_float(value: str) -> float:
    try:
        number = float(value)
    except ValueError:
        number = -1.0
    if not number >= 0:
        raise argparse.ArgumentTypeError(f"'{value}' must be a non-negative float")
    return number


def yes_no(value: str) -> bool:
    if value.lower() in YES_VALUES:
        return True
    if value.lower() in NO_VALUES:
        return False
    raise argparse.ArgumentTypeError(f"'{value}' must be yes or no")


def parse_arguments(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """
    Parse command line arguments.

    Returns
    -------
    argparse.Namespace
        Parsed command line arguments.

    Raises
    ------
    ConfigError
        If the command line is invalid.
    """
    parser = DriverArgumentParser(
        prog="sift",
        allow_abbrev=False,
        description="Extract SIFT frames and descriptors from PGM images.",
        epilog="Sink specifications have the form [PROTOCOL://][PATTERN], where "
               "PROTOCOL is one of ascii, ascii-framed, bin, bin-le and '%' in "
               "PATTERN is replaced by the image base name.",
    )

    parser.add_argument(
        "files",
        nargs="+",
        help="Input PGM images"
    )

    parser.add_argument(
        "--verbose", "-v",
        action="count",
        default=0,
        help="Be verbose (repeat for more detail)"
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"sift: driver version: {__driver_version__} package version: {__version__}"
    )

    # Output sinks
    for flag, what in (("--frames", "frames"),
                       ("--descriptors", "descriptors"),
                       ("--meta", "meta"),
                       ("--gss", "Gaussian scale space")):
        parser.add_argument(
            flag,
            nargs="?",
            const="",
            default=None,
            metavar="SPEC",
            help=f"Write {what} file(s)"
        )

    parser.add_argument(
        "--read-frames",
        metavar="SPEC",
        help="Read frames to describe from this file instead of detecting them"
    )

    parser.add_argument(
        "--orientations",
        nargs="?",
        const=True,
        default=False,
        type=yes_no,
        metavar="yes|no",
        help="Force the computation of the orientations of read frames"
    )

    # Detector parameters
    parser.add_argument(
        "--octaves", "-O",
        type=non_negative_int,
        default=SIFT_CONFIG["octaves"],
        help="Number of octaves (default: as many as possible)"
    )

    parser.add_argument(
        "--levels", "-S",
        type=non_negative_int,
        default=SIFT_CONFIG["levels"],
        help=f"Number of levels per octave (default: {SIFT_CONFIG['levels']})"
    )

    parser.add_argument(
        "--first-octave",
        type=non_negative_int,
        default=SIFT_CONFIG["first_octave"],
        help=f"Index of the first octave (default: {SIFT_CONFIG['first_octave']})"
    )

    parser.add_argument(
        "--edges-tresh",
        type=non_negative_float,
        default=SIFT_CONFIG["edge_thresh"],
        help=f"Edges threshold (default: {SIFT_CONFIG['edge_thresh']})"
    )

    parser.add_argument(
        "--peaks-tresh",
        type=non_negative_float,
        default=SIFT_CONFIG["peak_thresh"],
        help=f"Peaks threshold (default: {SIFT_CONFIG['peak_thresh']})"
    )

    # Driver behaviour
    parser.add_argument(
        "--progress",
        action="store_true",
        help="Show a progress bar over the input images"
    )

    parser.add_argument(
        "--log-file",
        help="Also write log messages to this file"
    )

    if argv is None:
        argv = sys.argv[1:]
    argv = [OPTIONAL_VALUE_FLAGS.get(arg, arg) for arg in argv]
    return parser.parse_args(argv)


def build_configuration(args: argparse.Namespace) -> Tuple[SiftOptions, SinkSet]:
    """
    Turn parsed arguments into immutable run options and sink configurations.

    Raises
    ------
    ConfigError
        If a sink specification is invalid.
    """
    defaults = SinkSet()
    parsed = {}
    for name, value in (("frames", args.frames),
                        ("descriptors", args.descriptors),
                        ("meta", args.meta),
                        ("gss", args.gss),
                        ("read_frames", args.read_frames)):
        config = getattr(defaults, name)
        if value is not None:
            try:
                config = parse_sink_config(value, config)
            except ConfigError as e:
                flag = "--" + name.replace("_", "-")
                raise ConfigError(f"The argument of '{flag}' is invalid: {e}") from e
        parsed[name] = config

    if parsed["meta"].protocol is not Protocol.ASCII:
        raise ConfigError("meta file supports only ASCII protocol")

    options = SiftOptions(
        octaves=args.octaves,
        levels=args.levels,
        first_octave=args.first_octave,
        edge_thresh=args.edges_tresh,
        peak_thresh=args.peaks_tresh,
        force_orientations=args.orientations,
        progress=args.progress,
    )
    return options, SinkSet(**parsed)


def run_batch(paths: List[str],
              options: Optional[SiftOptions] = None,
              sinks: Optional[SinkSet] = None,
              detector_factory: DetectorFactory = SiftFilter) -> int:
    """
    Process every image in ``paths``.

    A failing image is logged and skipped; the remaining images are still
    processed.

    Returns
    -------
    int
        Exit code: 0 if every image succeeded, 1 otherwise.
    """
    options = options or SiftOptions()
    sinks = sinks or SinkSet()
    failures = 0

    for path in tqdm(paths, desc="sift", unit="image", disable=not options.progress):
        try:
            base_name = derive_base_name(path)
            process_image(path, base_name, options, sinks, detector_factory)
        except SiftError as e:
            logger.error(f"'{path}': {e} ({e.code})")
            failures += 1
        except Exception as e:
            logger.exception(f"Unexpected error while processing '{path}': {str(e)}")
            failures += 1

    if failures:
        logger.warning(f"{failures} of {len(paths)} images failed")
    return 0 if failures == 0 else 1


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    Main function to run the SIFT pipeline.
    """
    try:
        args = parse_arguments(argv)
        options, sinks = build_configuration(args)
    except ConfigError as e:
        setup_logging()
        logger.error(f"error: {e} ({e.code})")
        return 1

    setup_logging(log_level=verbosity_to_level(args.verbose), log_file=args.log_file)
    for name, description in sinks.describe().items():
        logger.debug(f"{name:<12}: {description}")

    return run_batch(args.files, options, sinks)


if __name__ == "__main__":
    sys.exit(main())
