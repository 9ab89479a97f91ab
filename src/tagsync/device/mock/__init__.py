from .mock_time_controller import (
    MOCK_IDN,
    MockTimeController,
    MockTimeControllerServer,
    reply_for,
    synthetic_events,
)

__all__ = [
    "MOCK_IDN",
    "MockTimeController",
    "MockTimeControllerServer",
    "reply_for",
    "synthetic_events",
]
