"""
Offset analysis of master/slave timestamp streams.

Examples
--------
```python
from tagsync.analysis import correlate_files
report = correlate_files("master_results.bin", "slave_results.bin")
print(report.mean_offset_ns, report.quality)
```
"""

from .correlation import (
    coarse_offset,
    correlate_files,
    correlate_records,
    match_offsets,
    match_window,
    quality_score,
    read_timestamps,
    write_report,
)

__all__ = [
    "coarse_offset",
    "correlate_files",
    "correlate_records",
    "match_offsets",
    "match_window",
    "quality_score",
    "read_timestamps",
    "write_report",
]
