import json

import numpy as np
import pytest

from tagsync.analysis import correlate_files, correlate_records
from tagsync.analysis.correlation import (
    coarse_offset,
    default_corrected_path,
    default_report_path,
    match_window,
    quality_score,
)
from tagsync.device import MockTimeController
from tagsync.types import InvalidInput
from tagsync.util import RECORD_DTYPE, make_records, read_bin, write_bin, write_txt


def _files(tmp_path, master, slave):
    return (
        write_bin(master, tmp_path / "master.bin"),
        write_bin(slave, tmp_path / "slave.bin"),
    )


class TestEngine:
    def test_match_window(self):
        ts = np.array([0, 1000, 2000, 4000], dtype=np.int64)
        assert match_window(ts) == 500.0
        assert match_window(ts, 42) == 42.0
        # single event, no spacing to derive a window from
        assert match_window(ts[:1]) == 1_000_000.0

    def test_coarse_offset_spans_many_periods(self):
        master = np.arange(0, 40_000, 1000, dtype=np.int64)
        slave = master + 7_003
        assert coarse_offset(master, slave, 500.0) == 7_003.0

    def test_quality_score(self):
        assert quality_score(11.0, 0.0, 5) == 1.0
        assert quality_score(0.0, 3.0, 5) == 0.0
        assert quality_score(11.0, 1.0, 1) == 0.0
        assert quality_score(-10.0, 10.0, 5) == pytest.approx(0.5)

    def test_two_pairs(self):
        master = make_records([1, 1], [1000, 2000])
        slave = make_records([1, 1], [1010, 2012])
        report = correlate_records(master, slave, sync_percentage=1.0)
        assert report.sample_count == 2
        assert report.min_offset_ns == 10
        assert report.max_offset_ns == 12
        assert report.mean_offset_ns == pytest.approx(11.0)
        assert report.std_offset_ns == pytest.approx(1.41421, rel=1e-4)
        assert report.quality == pytest.approx(0.886, abs=1e-3)
        assert not report.insufficient_data
        assert report.match_window_ns == 500.0

    def test_zero_mean_with_spread(self):
        master = make_records([1, 1, 1], [1000, 2000, 3000])
        slave = make_records([1, 1, 1], [1005, 1995, 3000])
        report = correlate_records(master, slave, sync_percentage=1.0)
        assert report.sample_count == 3
        assert report.mean_offset_ns == 0.0
        assert report.quality == 0.0
        assert not report.insufficient_data

    def test_channels_matched_separately(self):
        master = make_records([1, 2, 1, 2], [1000, 1500, 2000, 2500])
        slave = make_records([1, 2, 1, 2], [1020, 1520, 2020, 2520])
        report = correlate_records(master, slave, sync_percentage=1.0)
        assert report.sample_count == 4
        assert report.mean_offset_ns == 20.0
        assert report.std_offset_ns == 0.0
        assert report.quality == 1.0

    def test_disjoint_channels_insufficient(self):
        master = make_records([1, 1], [1000, 2000])
        slave = make_records([3, 3], [1000, 2000])
        report = correlate_records(master, slave, sync_percentage=1.0)
        assert report.sample_count == 0
        assert report.insufficient_data
        assert report.quality == 0.0

    def test_empty_input(self):
        master = make_records([1], [1000])
        with pytest.raises(InvalidInput):
            correlate_records(master, np.empty(0, dtype=RECORD_DTYPE))


class TestFiles:
    def test_report_and_corrected_file(self, tmp_path):
        master_path, slave_path = _files(
            tmp_path,
            make_records([1, 1], [1000, 2000]),
            make_records([1, 1], [1010, 2012]),
        )
        report = correlate_files(master_path, slave_path, sync_percentage=1.0)

        report_path = default_report_path(master_path)
        assert report_path == tmp_path / "master_offset_report.json"
        saved = json.loads(report_path.read_text())
        assert saved["sample_count"] == 2
        assert saved["mean_offset_ns"] == pytest.approx(11.0)
        assert saved["slave_file"] == str(slave_path)

        corrected = read_bin(default_corrected_path(master_path))
        assert list(corrected["timestamp_ns"]) == [1011, 2011]
        assert report.mean_offset_ns == pytest.approx(11.0)

    def test_explicit_output_paths(self, tmp_path):
        master_path, slave_path = _files(
            tmp_path,
            make_records([1, 1], [1000, 2000]),
            make_records([1, 1], [1010, 2012]),
        )
        correlate_files(
            master_path,
            slave_path,
            sync_percentage=1.0,
            trigger_offset_ns=-250,
            report_path=tmp_path / "out" / "r.json",
            corrected_path=tmp_path / "out" / "c.bin",
        )
        saved = json.loads((tmp_path / "out" / "r.json").read_text())
        assert saved["trigger_offset_ns"] == -250
        assert (tmp_path / "out" / "c.bin").exists()

    def test_text_inputs(self, tmp_path):
        master_path = write_txt(make_records([1, 1], [1000, 2000]), tmp_path / "m.txt")
        slave_path = write_txt(make_records([1, 1], [1010, 2012]), tmp_path / "s.txt")
        report = correlate_files(master_path, slave_path, sync_percentage=1.0)
        assert report.mean_offset_ns == pytest.approx(11.0)

    def test_empty_slave_writes_nothing(self, tmp_path):
        master_path, slave_path = _files(
            tmp_path,
            make_records([1, 1], [1000, 2000]),
            np.empty(0, dtype=RECORD_DTYPE),
        )
        with pytest.raises(InvalidInput):
            correlate_files(master_path, slave_path)
        assert not default_report_path(master_path).exists()
        assert not default_corrected_path(master_path).exists()

    def test_missing_file(self, tmp_path):
        master_path = write_bin(make_records([1], [1000]), tmp_path / "m.bin")
        with pytest.raises(InvalidInput):
            correlate_files(master_path, tmp_path / "nope.bin")

    def test_insufficient_data_skips_corrected_file(self, tmp_path):
        master_path, slave_path = _files(
            tmp_path, make_records([1], [1000]), make_records([1], [1010])
        )
        report = correlate_files(master_path, slave_path, sync_percentage=1.0)
        assert report.insufficient_data
        assert report.sample_count == 1
        assert default_report_path(master_path).exists()
        assert not default_corrected_path(master_path).exists()

    def test_repeatable(self, tmp_path):
        master_path, slave_path = _files(
            tmp_path,
            make_records([1, 1, 1], [1000, 2000, 3000]),
            make_records([1, 1, 1], [1011, 2009, 3010]),
        )
        first = correlate_files(master_path, slave_path, sync_percentage=1.0)
        text = default_report_path(master_path).read_text()
        second = correlate_files(master_path, slave_path, sync_percentage=1.0)
        assert first == second
        assert default_report_path(master_path).read_text() == text


class TestMockData:
    """Offsets recovered from two mock devices recording the same window."""

    START_NS = 1_700_000_000_000_000_000

    def _collect(self, **kwargs):
        dev = MockTimeController(event_period_ns=1_000_000, **kwargs)
        return dev.collect([1, 2, 3, 4], self.START_NS, 0.2)

    def test_large_offset_no_jitter(self):
        master = self._collect()
        slave = self._collect(clock_offset_ns=5_000_123)
        report = correlate_records(master, slave)
        assert report.mean_offset_ns == 5_000_123
        assert report.std_offset_ns == 0.0
        assert report.quality == 1.0
        assert report.sample_count >= 16

    def test_offset_with_jitter(self):
        master = self._collect(seed=1)
        slave = self._collect(clock_offset_ns=-2_500_000, jitter_ns=20.0, seed=2)
        report = correlate_records(master, slave, sync_percentage=0.5)
        assert report.mean_offset_ns == pytest.approx(-2_500_000, abs=20)
        assert 0 < report.std_offset_ns < 60
        assert report.quality > 0.99
        assert not report.insufficient_data
