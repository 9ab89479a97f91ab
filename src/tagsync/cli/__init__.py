"""
Command-line interface for tagsync.

The CLI is built using the Click framework.

Examples
--------
A dry run on one machine, each in its own terminal:
```bash
$ tagsync slave --local --device-type MockTimeController -o out/slave
$ tagsync master --local --device-type MockTimeController -o out/master --streaming
```

Correlating two files offline:
```bash
$ tagsync correlate master_results.bin slave_results.bin -sp 0.5
```

CLI Tree
--------

```
$ tagsync --tree
cli
└── convert
└── correlate
└── master
└── mock-tc
└── slave
```
"""

from .base import cli, tree_option

__all__ = ["cli", "tree_option"]
