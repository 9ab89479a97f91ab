# -*- coding: utf-8 -*-
"""
Timestamp file formats.

A timestamp record is a numpy structured array of `(channel, timestamp_ns)`
pairs, sorted by timestamp across all channels. Two on-disk forms exist and
convert losslessly into each other:

Binary (`.bin`)
    8-byte magic `TAGSYNC1`, little-endian `u8` record count, then packed
    12-byte records (`<u4` channel, `<u8` timestamp in ns).

Text (`.txt`)
    `#` prefixed header lines followed by one `index, timestamp_ns, channel`
    line per record.
"""

from __future__ import annotations

import os
from datetime import datetime
from pathlib import Path

import numpy as np
from loguru import logger

from tagsync.types.errors import InvalidInput

RECORD_DTYPE = np.dtype([("channel", "<u4"), ("timestamp_ns", "<u8")])
MAGIC = b"TAGSYNC1"
_HEADER_SIZE = len(MAGIC) + 8
_CHANNEL_MAX = int(np.iinfo(np.uint32).max)
_TIMESTAMP_MAX = int(np.iinfo(np.uint64).max)


def make_records(channels, timestamps) -> np.ndarray:
    """Build a timestamp record from parallel channel/timestamp sequences.

    The result is sorted by timestamp (stable, so equal timestamps keep their
    input order).
    """
    channels = np.asarray(channels, dtype=np.uint32)
    timestamps = np.asarray(timestamps, dtype=np.uint64)
    if channels.shape != timestamps.shape:
        raise ValueError(
            f"channels and timestamps differ in shape: {channels.shape} "
            f"vs {timestamps.shape}"
        )
    records = np.empty(timestamps.shape[0], dtype=RECORD_DTYPE)
    records["channel"] = channels
    records["timestamp_ns"] = timestamps
    order = np.argsort(records["timestamp_ns"], kind="stable")
    return records[order]


def validate_records(records: np.ndarray, source: str = "") -> None:
    """Raise InvalidInput unless the record is non-empty and monotonic per channel."""
    where = f" in {source}" if source else ""
    if records.shape[0] == 0:
        raise InvalidInput(f"No timestamp records{where}.")
    for ch in np.unique(records["channel"]):
        ts = records["timestamp_ns"][records["channel"] == ch]
        if np.any(ts[1:] < ts[:-1]):
            raise InvalidInput(f"Timestamps not monotonic on channel {ch}{where}.")


def leading_fraction(records: np.ndarray, fraction: float) -> np.ndarray:
    """Return the leading `fraction` of a record (at least one record)."""
    if not 0.0 < fraction <= 1.0:
        raise ValueError(f"fraction must be in (0, 1], got {fraction}")
    count = records.shape[0]
    n = min(count, max(1, int(count * fraction)))
    return records[:n]


def shift_records(records: np.ndarray, offset_ns: int) -> np.ndarray:
    """Return a copy of `records` with every timestamp shifted by `offset_ns`."""
    shifted = records.copy()
    shifted["timestamp_ns"] = (
        records["timestamp_ns"].astype(np.int64) + np.int64(offset_ns)
    ).astype(np.uint64)
    return shifted


# ============================================================================


def write_bin(records: np.ndarray, path: str | os.PathLike) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    records = np.ascontiguousarray(records, dtype=RECORD_DTYPE)
    with path.open("wb") as f:
        f.write(MAGIC)
        f.write(np.uint64(records.shape[0]).astype("<u8").tobytes())
        f.write(records.tobytes())
    logger.debug("Wrote {} timestamps to {}", records.shape[0], path)
    return path


def read_bin(
    path: str | os.PathLike, fraction: float = 1.0, validate: bool = True
) -> np.ndarray:
    """Read a binary timestamp file.

    Parameters
    ----------
    path : str | os.PathLike
        File to read.
    fraction : float, optional
        Leading fraction of the records to return, by default 1.0 (all).
    validate : bool, optional
        Check the record is non-empty and monotonic per channel, by default True.

    Returns
    -------
    np.ndarray
        Structured array with dtype RECORD_DTYPE.

    Raises
    ------
    InvalidInput
        If the file is malformed, truncated, empty or (with validate) not
        monotonic per channel.
    """
    path = Path(path)
    raw = path.read_bytes()
    if len(raw) < _HEADER_SIZE or raw[: len(MAGIC)] != MAGIC:
        raise InvalidInput(f"{path} is not a timestamp file.")
    count = int(np.frombuffer(raw, dtype="<u8", count=1, offset=len(MAGIC))[0])
    expected = _HEADER_SIZE + count * RECORD_DTYPE.itemsize
    if len(raw) != expected:
        raise InvalidInput(
            f"{path} is truncated or padded: {len(raw)} bytes, expected {expected}."
        )
    records = np.frombuffer(raw, dtype=RECORD_DTYPE, count=count, offset=_HEADER_SIZE)
    records = records.copy()
    if validate:
        validate_records(records, str(path))
    if fraction < 1.0 and count:
        records = leading_fraction(records, fraction)
    logger.trace("Read {} of {} timestamps from {}", records.shape[0], count, path)
    return records


def write_txt(
    records: np.ndarray, path: str | os.PathLike, role: str = ""
) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    channels = sorted(int(c) for c in np.unique(records["channel"]))
    with path.open("w") as f:
        f.write("# tagsync timestamp data\n")
        if role:
            f.write(f"# Role: {role}\n")
        f.write(f"# Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}\n")
        f.write(f"# Channels: {', '.join(str(c) for c in channels)}\n")
        f.write(f"# Total timestamps: {records.shape[0]}\n")
        f.write("# Format: index, timestamp_ns, channel\n")
        for i, (ch, ts) in enumerate(zip(records["channel"], records["timestamp_ns"])):
            f.write(f"{i}, {int(ts)}, {int(ch)}\n")
    logger.debug("Wrote {} timestamps to text file {}", records.shape[0], path)
    return path


def read_txt(path: str | os.PathLike, validate: bool = True) -> np.ndarray:
    path = Path(path)
    channels = []
    timestamps = []
    with path.open("r") as f:
        for lineno, line in enumerate(f, start=1):
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            try:
                _, ts, ch = (int(v) for v in line.split(","))
            except ValueError as e:
                raise InvalidInput(f"{path}:{lineno}: malformed record {line!r}") from e
            if not (0 <= ch <= _CHANNEL_MAX and 0 <= ts <= _TIMESTAMP_MAX):
                raise InvalidInput(f"{path}:{lineno}: value out of range in {line!r}")
            channels.append(ch)
            timestamps.append(ts)
    records = np.empty(len(timestamps), dtype=RECORD_DTYPE)
    records["channel"] = channels
    records["timestamp_ns"] = timestamps
    if validate:
        validate_records(records, str(path))
    return records


def bin_to_txt(
    src: str | os.PathLike, dst: str | os.PathLike | None = None, role: str = ""
) -> Path:
    src = Path(src)
    dst = Path(dst) if dst is not None else src.with_suffix(".txt")
    return write_txt(read_bin(src, validate=False), dst, role=role)


def txt_to_bin(src: str | os.PathLike, dst: str | os.PathLike | None = None) -> Path:
    src = Path(src)
    dst = Path(dst) if dst is not None else src.with_suffix(".bin")
    return write_bin(read_txt(src, validate=False), dst)
