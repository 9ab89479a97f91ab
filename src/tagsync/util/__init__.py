# -*- coding: utf-8 -*-
"""
Utility functions and constants for tagsync.

- Default ports, timeouts and protocol constants
- Log configuration and management
- Timestamp file reading, writing and conversion

Examples
--------
Converting a binary timestamp file to its text mirror:
```python
from tagsync.util import bin_to_txt
bin_to_txt("outputs/master_results_20250101_120000_000.bin")
```

See Also
--------
tagsync.util.logging : Logging configuration
tagsync.util.timestamp_io : Timestamp file formats
"""

from .defaults import (
    DEFAULT_COMMAND_PORT,
    DEFAULT_DEVICE_PORT,
    DEFAULT_FILE_PORT,
    DEFAULT_HOST_ADDR,
    DEFAULT_LOGLEVEL,
    DEFAULT_STATUS_PORT,
    DEFAULT_SYNC_PORT,
    DEFAULT_TRIGGER_PORT,
    SINGLE_LINE_ERR_LOG,
    TEST_LOGLEVEL,
)
from .logging import (
    clear_log,
    format_error_response,
    get_log_filename,
    log_default_path,
    shutdown_node_log,
    start_node_log,
)
from .timestamp_io import (
    RECORD_DTYPE,
    bin_to_txt,
    leading_fraction,
    make_records,
    read_bin,
    read_txt,
    shift_records,
    txt_to_bin,
    validate_records,
    write_bin,
    write_txt,
)

__all__ = [
    "DEFAULT_COMMAND_PORT",
    "DEFAULT_DEVICE_PORT",
    "DEFAULT_FILE_PORT",
    "DEFAULT_HOST_ADDR",
    "DEFAULT_LOGLEVEL",
    "DEFAULT_STATUS_PORT",
    "DEFAULT_SYNC_PORT",
    "DEFAULT_TRIGGER_PORT",
    "SINGLE_LINE_ERR_LOG",
    "TEST_LOGLEVEL",
    "RECORD_DTYPE",
    "bin_to_txt",
    "clear_log",
    "format_error_response",
    "get_log_filename",
    "leading_fraction",
    "log_default_path",
    "make_records",
    "read_bin",
    "read_txt",
    "shift_records",
    "shutdown_node_log",
    "start_node_log",
    "txt_to_bin",
    "validate_records",
    "write_bin",
    "write_txt",
]
