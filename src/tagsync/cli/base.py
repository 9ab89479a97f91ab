import time
from datetime import datetime
from typing import Optional

import click
from loguru import logger
from setproctitle import setproctitle

from tagsync.types import NodeConfig, SyncError
from tagsync.util import (
    DEFAULT_DEVICE_PORT,
    DEFAULT_HOST_ADDR,
    DEFAULT_LOGLEVEL,
    format_error_response,
    start_node_log,
)


def print_tree(cmd, prefix="", parent_ctx=None):
    """Print command tree starting from given command."""
    ctx = click.Context(cmd, info_name=cmd.name, parent=parent_ctx)

    # Only print root name if no parent
    if not parent_ctx:
        click.echo(cmd.name)

    for sub in sorted(cmd.list_commands(ctx)):
        sub_cmd = cmd.get_command(ctx, sub)
        click.echo(f"{prefix}└── {sub}")
        if isinstance(sub_cmd, click.Group):
            print_tree(sub_cmd, prefix + "    ", ctx)


def tree_option(f):
    """Add --tree option to command."""

    def callback(ctx, param, value):
        if not value or ctx.resilient_parsing:
            return
        print_tree(ctx.command)
        ctx.exit()

    return click.option(
        "--tree",
        is_flag=True,
        help="Show command tree from this point",
        expose_value=False,
        is_eager=True,
        callback=callback,
    )(f)


def log_options(f):
    """Logging options shared by the node commands."""
    options = [
        click.option(
            "--log-to-file/--no-log-to-file",
            "-ltf/",
            default=True,
            help="Enable/disable logging to file (default: enabled)",
        ),
        click.option(
            "--log-to-stdout/--no-log-to-stdout",
            "-lts/",
            default=True,
            help="Enable/disable console logging (default: enabled)",
        ),
        click.option(
            "--log-path",
            "-lp",
            default="",
            help="Custom path for log file (default: ~/.tagsync/<role>.log)",
        ),
        click.option(
            "--log-level",
            "-ll",
            default=DEFAULT_LOGLEVEL,
            help="Logging level (TRACE, DEBUG, INFO, WARNING, ERROR) (default: INFO)",
        ),
    ]
    for option in reversed(options):
        f = option(f)
    return f


def node_options(f):
    """Configuration options shared by the master and slave commands."""
    options = [
        click.option(
            "--config",
            "-c",
            "config_path",
            type=click.Path(exists=True, dir_okay=False),
            help="INI file with the node configuration",
        ),
        click.option("--peer-address", "-pa", help="Address of the other node"),
        click.option("--device-type", "-dt", help="TimeController or MockTimeController"),
        click.option("--device-address", "-da", help="Address of the local time tagger"),
        click.option("--device-port", "-dp", type=int, help="Port of the local time tagger"),
        click.option("--output-dir", "-o", help="Directory for acquisition files"),
        click.option(
            "--local/--remote",
            "local_mode",
            default=None,
            help="Run both nodes on this machine over loopback",
        ),
        click.option("--verbose", "-v", "verbose_output", is_flag=True, default=None),
        click.option("--text-output", "-t", is_flag=True, default=None,
                     help="Also write text mirrors of timestamp files"),
    ]
    for option in reversed(options):
        f = option(f)
    return f


def build_config(role: str, config_path: Optional[str], **overrides) -> NodeConfig:
    """NodeConfig from an optional INI file plus command-line overrides."""
    from tagsync.system import load_node_config

    if "channels" in overrides and overrides["channels"] is not None:
        overrides["channels"] = tuple(overrides["channels"])
    if config_path:
        return load_node_config(config_path, role, **overrides)
    params = {k: v for k, v in overrides.items() if v is not None}
    return NodeConfig(role=role, **params)


def _start_log(role: str, config: NodeConfig, log_kwargs: dict):
    level = log_kwargs.pop("log_level")
    if config.verbose_output and level == DEFAULT_LOGLEVEL:
        level = "DEBUG"
    start_node_log(role=role, log_level=level, **log_kwargs)


@click.group()
@tree_option
def cli():
    """tagsync - synchronized acquisition across two time taggers.

    A master and a slave node each drive their own Time Controller, start
    recording at a shared trigger instant and compute the clock offset
    between the two devices:

    - Master/slave node processes

    - A mock Time Controller for dry runs

    - Offline correlation and file conversion tools
    """
    pass


@cli.command()
@node_options
@click.option("--duration", "-d", type=float, help="Acquisition duration (s)")
@click.option("--channels", "-ch", type=int, multiple=True, help="Channel (repeatable)")
@click.option("--streaming/--no-streaming", "streaming_mode", default=None)
@click.option("--max-files", "-mf", type=int, help="Maximum chunks in streaming mode")
@click.option("--sub-duration", "-sd", type=float, help="Chunk duration (s)")
@click.option("--sync-percentage", "-sp", type=float, help="Leading fraction used for correlation")
@click.option("--repeat", "-r", default=1, type=int, help="Number of acquisitions to run")
@log_options
def master(config_path, repeat, log_to_file, log_to_stdout, log_path, log_level, **kwargs):
    """Run the master node: trigger acquisitions and correlate the results."""
    from tagsync.node import MasterController

    if not kwargs.get("channels"):
        kwargs["channels"] = None
    config = build_config("master", config_path, **kwargs)
    setproctitle(f"tagsync-master_{datetime.now().strftime('%Y-%m-%d_%H:%M:%S')}")
    _start_log(
        "master",
        config,
        dict(
            log_to_file=log_to_file,
            log_to_stdout=log_to_stdout,
            log_path=log_path,
            log_level=log_level,
        ),
    )
    with MasterController(config) as ctrl:
        for i in range(repeat):
            try:
                reports = ctrl.start_acquisition()
            except SyncError as exc:
                logger.error("Acquisition {} failed ({}): {}", i + 1, exc.kind, exc)
                click.echo(f"Acquisition {i + 1} failed: {exc.kind}: {exc}", err=True)
                ctrl.reset()
                continue
            for k, report in enumerate(reports):
                click.echo(
                    f"chunk {k:03d}: offset {report.mean_offset_ns:.1f} ns "
                    f"(std {report.std_offset_ns:.1f} ns, quality {report.quality:.3f}, "
                    f"{report.sample_count} samples)"
                )


@cli.command()
@node_options
@log_options
def slave(config_path, log_to_file, log_to_stdout, log_path, log_level, **kwargs):
    """Run the slave node until interrupted."""
    from tagsync.node import SlaveAgent

    config = build_config("slave", config_path, **kwargs)
    setproctitle(f"tagsync-slave_{datetime.now().strftime('%Y-%m-%d_%H:%M:%S')}")
    _start_log(
        "slave",
        config,
        dict(
            log_to_file=log_to_file,
            log_to_stdout=log_to_stdout,
            log_path=log_path,
            log_level=log_level,
        ),
    )
    SlaveAgent(config).run_forever()


@cli.command("mock-tc")
@click.option("--host-address", "-ha", default=DEFAULT_HOST_ADDR, help="Address to bind to")
@click.option("--port", "-p", default=DEFAULT_DEVICE_PORT, type=int, help="Command port")
@click.option("--clock-offset-ns", default=0, type=int, help="Offset added to all timestamps")
@click.option("--event-period-ns", default=1_000_000, type=int, help="Synthetic event period")
def mock_tc(host_address, port, clock_offset_ns, event_period_ns):
    """Run a mock Time Controller until interrupted."""
    from tagsync.device import MockTimeControllerServer

    setproctitle(f"tagsync-mock-tc_{datetime.now().strftime('%Y-%m-%d_%H:%M:%S')}")
    server = MockTimeControllerServer(
        port=port,
        host=host_address,
        event_period_ns=event_period_ns,
        clock_offset_ns=clock_offset_ns,
    )
    server.start()
    click.echo(f"Mock Time Controller listening on {host_address}:{port}")
    try:
        while True:
            time.sleep(0.1)
    except KeyboardInterrupt:
        click.echo("Stopping")
    finally:
        server.stop()


@cli.command()
@click.argument("master_file", type=click.Path(exists=True, dir_okay=False))
@click.argument("slave_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--sync-percentage", "-sp", default=0.1, type=float, show_default=True)
@click.option("--match-window-ns", "-w", type=float, help="Fixed match window (ns)")
@click.option("--report", "-r", "report_path", help="Report path (default: next to master file)")
@click.option("--corrected", "corrected_path", help="Corrected master file path")
def correlate(master_file, slave_file, sync_percentage, match_window_ns, report_path, corrected_path):
    """Compute the clock offset between a master and a slave timestamp file."""
    from tagsync.analysis import correlate_files

    try:
        report = correlate_files(
            master_file,
            slave_file,
            sync_percentage=sync_percentage,
            match_window_ns=match_window_ns,
            report_path=report_path,
            corrected_path=corrected_path,
        )
    except SyncError as exc:
        raise click.ClickException(f"{exc.kind}: {exc}")
    click.echo(report.to_json())


@cli.command()
@click.argument("src", type=click.Path(exists=True, dir_okay=False))
@click.argument("dst", required=False)
@click.option("--role", default="", help="Role written into the text header")
def convert(src, dst, role):
    """Convert a timestamp file between binary (.bin) and text (.txt)."""
    from tagsync.util import bin_to_txt, txt_to_bin

    try:
        if src.endswith(".txt"):
            out = txt_to_bin(src, dst)
        else:
            out = bin_to_txt(src, dst, role=role)
    except SyncError as exc:
        raise click.ClickException(f"{exc.kind}: {exc}")
    except Exception:
        raise click.ClickException(format_error_response())
    click.echo(f"Wrote {out}")
