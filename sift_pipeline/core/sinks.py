#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Output sinks for the SIFT pipeline.

A sink binds together whether an output is wanted, the pattern its file name
is derived from, the protocol its records are serialized with and, while an
image is being processed, the open file handle. Sink configurations are
parsed once from the command line and are immutable; every image gets fresh
``OutputSink`` instances built from them, so handles never leak across
images.
"""
import enum
from dataclasses import dataclass, replace
from typing import BinaryIO, Optional, Sequence

import numpy as np

from sift_pipeline.core.config import MAX_PATH_LENGTH
from sift_pipeline.core.errors import ConfigError, FileIOError, PathOverflowError
from sift_pipeline.core.logging_config import get_module_logger

logger = get_module_logger(__name__)

WILDCARD = "%"
ESCAPE = "\\"
PROTOCOL_SEPARATOR = "://"


class Protocol(enum.Enum):
    """Serialization protocols of a sink, valued by their command line tag."""
    ASCII = "ascii"
    ASCII_FRAMED = "ascii-framed"
    BINARY_BE = "bin"
    BINARY_LE = "bin-le"

    @property
    def is_binary(self) -> bool:
        return self in (Protocol.BINARY_BE, Protocol.BINARY_LE)

    @property
    def dtype(self) -> np.dtype:
        """Field type of the binary protocols."""
        return np.dtype(">f8") if self is Protocol.BINARY_BE else np.dtype("<f8")


@dataclass(frozen=True)
class SinkConfig:
    """Immutable description of a sink: wanted or not, naming and protocol."""
    active: bool
    pattern: str
    protocol: Protocol = Protocol.ASCII


def parse_sink_config(spec: Optional[str], default: SinkConfig) -> SinkConfig:
    """
    Parse a sink specification of the form ``[<protocol>://][<pattern>]``.

    Giving the option at all activates the sink. Parts missing from ``spec``
    are taken from ``default``.

    Parameters
    ----------
    spec : str or None
        Value given to the command line option, None if the option had none.
    default : SinkConfig
        Configuration providing the default pattern and protocol.

    Returns
    -------
    SinkConfig
        Active sink configuration.

    Raises
    ------
    ConfigError
        If the protocol tag is unknown or the pattern is too long.
    """
    config = replace(default, active=True)
    if not spec:
        return config

    pattern = spec
    head, sep, tail = spec.partition(PROTOCOL_SEPARATOR)
    if sep:
        try:
            config = replace(config, protocol=Protocol(head.lower()))
        except ValueError:
            raise ConfigError(f"Unknown protocol '{head}' in '{spec}'") from None
        pattern = tail

    if pattern:
        if len(pattern) >= MAX_PATH_LENGTH:
            raise ConfigError(f"Pattern '{pattern[:32]}...' is too long")
        config = replace(config, pattern=pattern)
    return config


def derive_sibling_path(base: str, suffix: str = "") -> str:
    """
    Grow ``base`` by ``suffix``, enforcing the maximum path length.

    Raises
    ------
    PathOverflowError
        If the resulting name would not fit.
    """
    path = f"{base}{suffix}"
    if len(path) >= MAX_PATH_LENGTH:
        raise PathOverflowError("Output file name too long.")
    return path


def resolve_pattern(pattern: str, base_name: str) -> str:
    """
    Substitute every unescaped wildcard of ``pattern`` with ``base_name``.

    A backslash makes the next character literal, so ``\\%`` yields ``%``.
    """
    parts = []
    escaped = False
    for char in pattern:
        if escaped:
            parts.append(char)
            escaped = False
        elif char == ESCAPE:
            escaped = True
        elif char == WILDCARD:
            parts.append(base_name)
        else:
            parts.append(char)
    if escaped:
        parts.append(ESCAPE)
    return derive_sibling_path("".join(parts))


class OutputSink:
    """
    A sink bound to one image: its configuration plus an open handle.

    Opening, writing and closing are uniform no-ops on inactive sinks, so
    callers can treat every sink the same way.
    """

    def __init__(self, config: SinkConfig):
        self.config = config
        self.resolved_path: Optional[str] = None
        self.handle: Optional[BinaryIO] = None

    @property
    def active(self) -> bool:
        return self.config.active

    @property
    def pattern(self) -> str:
        return self.config.pattern

    @property
    def protocol(self) -> Protocol:
        return self.config.protocol

    @property
    def is_open(self) -> bool:
        return self.handle is not None

    def open(self, base_name: str, mode: str = "w") -> None:
        """
        Resolve the file name from ``base_name`` and open it.

        Files are always opened in binary mode; text protocols are encoded
        on write. Does nothing if the sink is inactive.

        Raises
        ------
        PathOverflowError
            If the resolved name is too long.
        FileIOError
            If the file cannot be opened.
        """
        if not self.active:
            return
        self.close()
        self.resolved_path = resolve_pattern(self.pattern, base_name)
        file_mode = mode.replace("b", "").replace("t", "") + "b"
        try:
            self.handle = open(self.resolved_path, file_mode)
        except OSError as e:
            action = "reading" if file_mode.startswith("r") else "writing"
            raise FileIOError(
                f"Could not open '{self.resolved_path}' for {action}: {e.strerror}"
            ) from e

    def write(self, record: Sequence[float]) -> None:
        """Append one record of numbers, serialized per the sink protocol."""
        values = np.asarray(record, dtype=np.float64).ravel()
        if self.protocol.is_binary:
            payload = values.astype(self.protocol.dtype).tobytes()
        else:
            fields = ["%g" % v for v in values]
            if self.protocol is Protocol.ASCII_FRAMED:
                fields.insert(0, str(len(fields)))
            payload = (" ".join(fields) + "\n").encode("ascii")
        self._put(payload)

    def write_text(self, text: str) -> None:
        """Append free-form text."""
        self._put(text.encode("utf-8"))

    def _put(self, payload: bytes) -> None:
        try:
            self.handle.write(payload)
        except OSError as e:
            raise FileIOError(f"Could not write to '{self.resolved_path}': {e.strerror}") from e

    def close(self) -> None:
        """Flush and release the handle if open; otherwise do nothing."""
        if self.handle is None:
            return
        handle, self.handle = self.handle, None
        try:
            handle.close()
        except OSError as e:
            raise FileIOError(f"Could not close '{self.resolved_path}': {e.strerror}") from e

    def __enter__(self) -> "OutputSink":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __repr__(self) -> str:
        return (f"OutputSink(active={self.active}, pattern={self.pattern!r}, "
                f"protocol={self.protocol.value}, path={self.resolved_path!r})")
