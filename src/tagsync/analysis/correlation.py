# -*- coding: utf-8 -*-
"""
Offset correlation between master and slave timestamp streams.

The same physical events are seen by both devices, each through its own
clock. For every channel the engine pairs master events with slave events and
takes the per-pair difference `slave - master` as an offset sample:

1. Only the leading `sync_percentage` of each stream is used.
2. A coarse offset is found from the densest cluster of pairwise differences
   among the first `COARSE_EVENTS` events of the channel, so large clock
   offsets (many event periods) do not break matching.
3. Each master event is matched to the nearest unused slave event around
   `master + coarse`, accepted if within the match window.

The match window is `match_window_ns` when given, otherwise half the median
interval between master events on the channel (1 ms if that is undefined).

Quality is `1 / (1 + std / |mean|)` clipped to [0, 1]: 1 for zero spread, 0
for a zero mean with nonzero spread, and 0 with `insufficient_data` set when
fewer than `MIN_SAMPLES` offsets were found.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import numpy as np
from loguru import logger

from tagsync.types import InvalidInput, OffsetReport
from tagsync.util.defaults import (
    COARSE_EVENTS,
    DEFAULT_MATCH_WINDOW_NS,
    DEFAULT_SYNC_PERCENTAGE,
    MIN_SAMPLES,
)
from tagsync.util.timestamp_io import (
    leading_fraction,
    read_bin,
    read_txt,
    shift_records,
    validate_records,
    write_bin,
)

# ============================================================================


def match_window(master_ts: np.ndarray, match_window_ns: Optional[float] = None) -> float:
    """Tolerance for pairing events, in ns."""
    if match_window_ns is not None:
        return float(match_window_ns)
    if master_ts.shape[0] >= 2:
        median = float(np.median(np.diff(master_ts)))
        if median > 0:
            return median / 2
    return float(DEFAULT_MATCH_WINDOW_NS)


def coarse_offset(master_ts: np.ndarray, slave_ts: np.ndarray, window: float) -> float:
    """Offset supported by the most pairs among the leading events of a channel."""
    a = master_ts[:COARSE_EVENTS]
    b = slave_ts[:COARSE_EVENTS]
    diffs = np.sort((b[None, :] - a[:, None]).ravel())
    # number of differences within `window` above each one
    counts = np.searchsorted(diffs, diffs + window, side="right") - np.arange(
        diffs.shape[0]
    )
    best = int(np.argmax(counts))
    return float(np.median(diffs[best : best + counts[best]]))


def match_offsets(
    master_ts: np.ndarray, slave_ts: np.ndarray, coarse: float, window: float
) -> np.ndarray:
    """Nearest-timestamp pairing, each slave event used at most once."""
    used = np.zeros(slave_ts.shape[0], dtype=bool)
    offsets = []
    n = slave_ts.shape[0]
    for m in master_ts:
        target = m + coarse
        i = int(np.searchsorted(slave_ts, target))
        best = -1
        best_dist = window
        for j in (i - 1, i):
            if 0 <= j < n and not used[j]:
                dist = abs(slave_ts[j] - target)
                if dist <= best_dist:
                    best, best_dist = j, dist
        if best >= 0:
            used[best] = True
            offsets.append(slave_ts[best] - m)
    return np.asarray(offsets, dtype=np.int64)


def quality_score(mean: float, std: float, sample_count: int) -> float:
    if sample_count < MIN_SAMPLES:
        return 0.0
    if std == 0:
        return 1.0
    if mean == 0:
        return 0.0
    return float(np.clip(1.0 / (1.0 + std / abs(mean)), 0.0, 1.0))


# ============================================================================


def correlate_records(
    master: np.ndarray,
    slave: np.ndarray,
    sync_percentage: float = DEFAULT_SYNC_PERCENTAGE,
    match_window_ns: Optional[float] = None,
    trigger_offset_ns: Optional[int] = None,
    master_file: str = "",
    slave_file: str = "",
) -> OffsetReport:
    """Compute the offset report for two timestamp records.

    Raises
    ------
    InvalidInput
        Either record is empty or not monotonic per channel.
    """
    validate_records(master, master_file or "master")
    validate_records(slave, slave_file or "slave")
    master = leading_fraction(master, sync_percentage)
    slave = leading_fraction(slave, sync_percentage)

    samples = []
    windows = []
    for ch in np.unique(master["channel"]):
        m_ts = master["timestamp_ns"][master["channel"] == ch].astype(np.int64)
        s_ts = slave["timestamp_ns"][slave["channel"] == ch].astype(np.int64)
        if s_ts.shape[0] == 0:
            logger.debug("Channel {}: no slave events", ch)
            continue
        window = match_window(m_ts, match_window_ns)
        coarse = coarse_offset(m_ts, s_ts, window)
        offsets = match_offsets(m_ts, s_ts, coarse, window)
        logger.debug(
            "Channel {}: coarse {:.1f} ns, window {:.1f} ns, {} matches",
            ch,
            coarse,
            window,
            offsets.shape[0],
        )
        windows.append(window)
        samples.append(offsets)

    offsets = np.concatenate(samples) if samples else np.empty(0, dtype=np.int64)
    count = int(offsets.shape[0])
    window_used = max(windows) if windows else float(match_window_ns or 0.0)
    if count == 0:
        mn = mx = mean = std = 0.0
    else:
        mn = float(offsets.min())
        mx = float(offsets.max())
        mean = float(offsets.mean())
        std = float(offsets.std(ddof=1)) if count >= 2 else 0.0

    insufficient = count < MIN_SAMPLES
    if insufficient:
        logger.warning("Only {} offset samples, result is not usable", count)
    return OffsetReport(
        min_offset_ns=mn,
        max_offset_ns=mx,
        mean_offset_ns=mean,
        std_offset_ns=std,
        quality=quality_score(mean, std, count),
        sample_count=count,
        insufficient_data=insufficient,
        match_window_ns=window_used,
        trigger_offset_ns=trigger_offset_ns,
        master_file=master_file,
        slave_file=slave_file,
    )


def read_timestamps(path: str | Path) -> np.ndarray:
    """Read a `.bin` or `.txt` timestamp file."""
    path = Path(path)
    if not path.is_file():
        raise InvalidInput(f"Timestamp file not found: {path}")
    if path.suffix == ".txt":
        return read_txt(path)
    return read_bin(path)


def default_report_path(master_path: str | Path) -> Path:
    master_path = Path(master_path)
    return master_path.with_name(f"{master_path.stem}_offset_report.json")


def default_corrected_path(master_path: str | Path) -> Path:
    master_path = Path(master_path)
    return master_path.with_name(f"{master_path.stem}_corrected.bin")


def write_report(report: OffsetReport, path: str | Path) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w") as f:
        json.dump(report.to_dict(), f, indent=2)


def correlate_files(
    master_path: str | Path,
    slave_path: str | Path,
    sync_percentage: float = DEFAULT_SYNC_PERCENTAGE,
    match_window_ns: Optional[float] = None,
    trigger_offset_ns: Optional[int] = None,
    report_path: Optional[str | Path] = None,
    corrected_path: Optional[str | Path] = None,
) -> OffsetReport:
    """Correlate two timestamp files and write the report and corrected master file.

    The corrected file is the full master record shifted by the rounded mean
    offset; it is not written when the data is insufficient. Nothing is
    written when either input is invalid.

    Parameters
    ----------
    master_path, slave_path : str | Path
        Timestamp files (`.bin`, or `.txt` text mirrors).
    sync_percentage : float
        Leading fraction of each stream used for matching.
    match_window_ns : float, optional
        Fixed match window; derived from the master event spacing if None.
    trigger_offset_ns : int, optional
        Measured slave-minus-master start offset, copied into the report.
    report_path, corrected_path : str | Path, optional
        Output locations, next to the master file by default.

    Returns
    -------
    OffsetReport

    Raises
    ------
    InvalidInput
        Missing, malformed or empty input file.
    """
    master_path = Path(master_path)
    slave_path = Path(slave_path)
    master = read_timestamps(master_path)
    slave = read_timestamps(slave_path)
    report = correlate_records(
        master,
        slave,
        sync_percentage=sync_percentage,
        match_window_ns=match_window_ns,
        trigger_offset_ns=trigger_offset_ns,
        master_file=str(master_path),
        slave_file=str(slave_path),
    )
    report_path = Path(report_path) if report_path else default_report_path(master_path)
    write_report(report, report_path)
    logger.info(
        "Offset {:.1f} ns (std {:.1f} ns, quality {:.3f}, {} samples) -> {}",
        report.mean_offset_ns,
        report.std_offset_ns,
        report.quality,
        report.sample_count,
        report_path,
    )
    if not report.insufficient_data:
        corrected_path = (
            Path(corrected_path)
            if corrected_path
            else default_corrected_path(master_path)
        )
        write_bin(shift_records(master, int(round(report.mean_offset_ns))), corrected_path)
    return report
