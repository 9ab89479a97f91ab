# -*- coding: utf-8 -*-

import tempfile

DEFAULT_HOST_ADDR = "127.0.0.1"
DEFAULT_DEVICE_PORT = 5555
DEFAULT_TRIGGER_PORT = 5557
DEFAULT_STATUS_PORT = 5559
DEFAULT_FILE_PORT = 5560
DEFAULT_COMMAND_PORT = 5561
DEFAULT_SYNC_PORT = 5562
STREAM_BASE_PORT = 4241  # per-channel raw timestamp stream = STREAM_BASE_PORT + ch

DEFAULT_LOGLEVEL = "INFO"
TEST_LOGLEVEL = "TRACE"
TEMP_DIR = tempfile.gettempdir()
SINGLE_LINE_ERR_LOG = False  # reformat tracebacks into a single line for err comms

POLL_INTERVAL = 0.01  # seconds, sleep between non-blocking socket polls
DEVICE_TIMEOUT = 3.0  # seconds
COMMAND_TIMEOUT = 1.0  # seconds, master->slave command round trip
PROBE_TIMEOUT = 2.0  # seconds, readiness probe
TRIGGER_CONFIRM_TIMEOUT = 2.0  # seconds
FILE_ACK_TIMEOUT = 5.0  # seconds
FILE_WAIT_TIMEOUT = 10.0  # seconds, master waiting on a slave chunk file
SYNC_WAIT_TIMEOUT = 0.5  # seconds, master waiting on a slave sync report

TRIGGER_LOOKAHEAD_NS = 500_000_000
MIN_TRIGGER_MARGIN_NS = 10_000_000
CHUNK_RETRY_MARGIN_NS = 50_000_000  # lead before a retried chunk starts
MAX_TRIGGER_OUTCOMES = 64  # trigger outcomes kept for trigger_status

DEFAULT_HEARTBEAT_INTERVAL_MS = 1000
DEFAULT_HEARTBEAT_TIMEOUT_FACTOR = 3.0

FILE_CHUNK_SIZE = 65536  # bytes
MAX_CHUNK_RETRIES = 2

DEFAULT_SYNC_PERCENTAGE = 0.1
DEFAULT_MATCH_WINDOW_NS = 1_000_000
MIN_SAMPLES = 2
COARSE_EVENTS = 32
