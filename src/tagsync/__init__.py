# -*- coding: utf-8 -*-
"""# tagsync

`Distributed time-tagger acquisition and clock-offset correlation.`

Two instrument-control nodes, a master and a slave, each drive an independent
hardware time-tagger. The master coordinates a shared trigger instant, both
nodes record (optionally in streamed chunks), the slave ships its files to the
master, and the master correlates the two timestamp streams into an offset
report with a quality score.

Package layout:

- `tagsync.device`: device command bridge, stream clients, mock time controller.
- `tagsync.node`: transport, session state machine, heartbeat, file transfer,
  master controller and slave agent.
- `tagsync.analysis`: the offset correlation engine.
- `tagsync.types`: message, config and error types.
- `tagsync.system`: INI configuration loading.
- `tagsync.util`: defaults, logging and timestamp file IO.
- `tagsync.cli`: command line entry points.
"""

from ._version import __version__
