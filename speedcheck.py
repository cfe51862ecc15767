#!/usr/bin/env python3
"""
SpeedCheck CLI -- HTTP speed testing against a SpeedCheck transfer server.

Usage::

    python speedcheck.py                         # rich dashboard
    python speedcheck.py --simple                # plain text
    python speedcheck.py --json                  # JSON to stdout
    python speedcheck.py -o result.json          # save to file
    python speedcheck.py --csv log.csv           # append CSV row
    python speedcheck.py --url http://host:8080  # pick a server
    python speedcheck.py --capabilities          # show what the server supports
    python speedcheck.py --serve --port 8080     # run the transfer server
    python speedcheck.py --set ping_measurements=5  # persist a setting
"""
from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import os
import signal
import sys
from typing import Optional

from client.aggregate import MetricKind
from client.api import SpeedCheckAPI
from client.config import (
    ConfigurationError,
    SpeedTestConfig,
    config_path,
    get_config_value,
    load_config,
    set_config_value,
)
from client.constants import MAX_PING_COUNT, MIN_PING_COUNT
from client.orchestrator import SpeedTestOrchestrator
from common.logging_setup import configure_logging
from server import load_server_config, run_server
from ui.dashboard import (
    ProgressDisplay,
    console,
    print_capabilities,
    print_client_info,
    print_final_results,
    print_header,
    print_metric_details,
)
from ui.output import (
    create_result_json,
    format_csv_header,
    format_csv_row,
    format_text_result,
    save_json,
)

LOGGER = logging.getLogger("speedcheck")


# ---------------------------------------------------------------------------
# Parameter validation
# ---------------------------------------------------------------------------

def _validate(
    ping_count: Optional[int],
    jitter_count: Optional[int],
    timeout_ms: Optional[int],
    deadline: Optional[float],
) -> None:
    """Raise ``ValueError`` if any parameter is out of range."""
    if ping_count is not None and not MIN_PING_COUNT <= ping_count <= MAX_PING_COUNT:
        raise ValueError(f"Ping count must be between {MIN_PING_COUNT} and {MAX_PING_COUNT}")
    if jitter_count is not None and not MIN_PING_COUNT <= jitter_count <= MAX_PING_COUNT:
        raise ValueError(f"Jitter count must be between {MIN_PING_COUNT} and {MAX_PING_COUNT}")
    if timeout_ms is not None and timeout_ms <= 0:
        raise ValueError("Timeout must be a positive number of milliseconds")
    if deadline is not None and deadline < 0:
        raise ValueError("Deadline cannot be negative (use 0 to disable)")


def _apply_args(config: SpeedTestConfig, args: argparse.Namespace) -> SpeedTestConfig:
    overrides = {
        "server_url": args.url,
        "ping_measurements": args.ping_count,
        "jitter_measurements": args.jitter_count,
        "timeout_ms": args.timeout_ms,
        "deadline_s": args.deadline,
    }
    changes = {k: v for k, v in overrides.items() if v is not None}
    return dataclasses.replace(config, **changes).validate()


# ---------------------------------------------------------------------------
# Core test runner
# ---------------------------------------------------------------------------

async def run_speedcheck(
    config: SpeedTestConfig,
    *,
    json_output: bool = False,
    output_file: Optional[str] = None,
    csv_file: Optional[str] = None,
    simple: bool = False,
    geo: bool = True,
) -> Optional[dict]:
    """Execute the full test sequence and return a JSON-serialisable dict."""

    show_ui = not json_output and not simple

    if show_ui:
        print_header(config.server_url)

    # -- Client info --------------------------------------------------------
    client_info = None
    if geo:
        if show_ui:
            console.print("[dim]Fetching client info...[/dim]")
        async with SpeedCheckAPI(config.server_url, timeout_ms=config.ping_timeout_ms) as api:
            client_info = await api.get_client_info()
        if show_ui:
            print_client_info(client_info)

    # -- Measurement --------------------------------------------------------
    orchestrator = SpeedTestOrchestrator(config, client=client_info)

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, orchestrator.cancel)
        handles_sigint = True
    except (NotImplementedError, RuntimeError):
        handles_sigint = False

    progress = ProgressDisplay() if show_ui else None
    try:
        if progress is not None:
            progress.start()
        result = await orchestrator.run(progress.update if progress is not None else None)
    finally:
        if progress is not None:
            progress.stop()
        if handles_sigint:
            loop.remove_signal_handler(signal.SIGINT)

    if result is None:
        console.print("\n[yellow]Test cancelled by user[/yellow]")
        return None

    # -- Summary ------------------------------------------------------------
    if show_ui:
        print_metric_details(result.metrics, [MetricKind.PING, MetricKind.DOWNLOAD, MetricKind.UPLOAD])
        print_final_results(result)
    elif simple:
        print(format_text_result(result))

    # -- JSON result --------------------------------------------------------
    capabilities = dataclasses.asdict(orchestrator.capabilities) if orchestrator.capabilities else None
    result_json = create_result_json(result, capabilities)

    if json_output:
        print(json.dumps(result_json, indent=2))

    if output_file:
        save_json(result_json, output_file)
        if not json_output:
            console.print(f"\n[green]Results saved to:[/green] {output_file}")

    # -- CSV append ---------------------------------------------------------
    if csv_file:
        _append_csv(csv_file, result)
        if not json_output:
            console.print(f"[green]CSV row appended to:[/green] {csv_file}")

    return result_json


def _append_csv(path: str, result) -> None:  # noqa: ANN001 (SpeedTestResult)
    """Append a single CSV row, writing the header if the file is new."""
    write_header = not os.path.isfile(path) or os.path.getsize(path) == 0
    with open(path, "a", encoding="utf-8", newline="") as fh:
        if write_header:
            fh.write(format_csv_header() + "\n")
        fh.write(format_csv_row(result) + "\n")


def edit_config(assignment: str) -> str:
    """Persist one ``KEY=VALUE`` setting.  VALUE is read as JSON, else as text."""
    key, sep, raw = assignment.partition("=")
    if not sep or not key.strip():
        raise ValueError(f"Expected KEY=VALUE, got {assignment!r}")
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        value = raw
    return set_config_value(key.strip(), value)


async def show_capabilities(server_url: str, json_output: bool = False) -> dict:
    async with SpeedCheckAPI(server_url) as api:
        caps = dataclasses.asdict(await api.get_capabilities())
    if json_output:
        print(json.dumps(caps, indent=2))
    else:
        print_capabilities(caps)
    return caps


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="SpeedCheck -- HTTP download/upload/latency testing",
    )
    # Output modes
    parser.add_argument("--json", "-j", action="store_true", help="Output results as JSON")
    parser.add_argument("--output", "-o", type=str, metavar="FILE", help="Save results to JSON file")
    parser.add_argument("--csv", type=str, metavar="FILE", help="Append results as CSV row")
    parser.add_argument("--simple", "-s", action="store_true", help="Simple output mode (no dashboard)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Log every sample")

    # Server selection
    parser.add_argument("--url", type=str, metavar="URL", help="Transfer server base URL")
    parser.add_argument("--capabilities", action="store_true", help="Show server capabilities and exit")
    parser.add_argument("--no-geo", action="store_true", help="Skip the client IP/location lookup")

    # Test parameters
    parser.add_argument("--ping-count", type=int, metavar="N", help="Number of ping requests (default: 10)")
    parser.add_argument("--jitter-count", type=int, metavar="N", help="Number of jitter ticks (default: 20)")
    parser.add_argument("--timeout-ms", type=int, metavar="MS", help="Per-transfer timeout (default: 30000)")
    parser.add_argument("--deadline", type=float, metavar="SECS", help="Whole-run budget, 0 disables (default: 120)")

    # Saved settings
    parser.add_argument("--set", action="append", metavar="KEY=VALUE", help="Save a setting to the config file")
    parser.add_argument("--get", type=str, metavar="KEY", help="Print a saved setting (or its default)")
    parser.add_argument("--config-path", action="store_true", help="Print the config file location")

    # Server mode
    parser.add_argument("--serve", action="store_true", help="Run the transfer server instead of a test")
    parser.add_argument("--host", type=str, help="Bind address for --serve")
    parser.add_argument("--port", type=int, help="Port for --serve")
    return parser


def main(argv: Optional[list] = None) -> None:
    args = build_parser().parse_args(argv)

    configure_logging(
        "DEBUG" if args.verbose else ("INFO" if args.serve else "WARNING"),
        rich_console=sys.stderr.isatty(),
    )

    # Server mode
    if args.serve:
        try:
            server_config = load_server_config()
            overrides = {k: v for k, v in (("host", args.host), ("port", args.port)) if v is not None}
            server_config = dataclasses.replace(server_config, **overrides).validate()
        except ConfigurationError as exc:
            console.print(f"[red]Error: {exc}[/red]")
            sys.exit(1)
        run_server(server_config)
        return

    # Saved settings
    if args.set or args.get or args.config_path:
        try:
            for assignment in args.set or []:
                console.print(f"Saved to {edit_config(assignment)}")
        except (ValueError, ConfigurationError) as exc:
            console.print(f"[red]Error: {exc}[/red]")
            sys.exit(1)
        if args.get:
            print(json.dumps(get_config_value(args.get)))
        if args.config_path:
            print(config_path())
        return

    # Validate
    try:
        _validate(
            ping_count=args.ping_count,
            jitter_count=args.jitter_count,
            timeout_ms=args.timeout_ms,
            deadline=args.deadline,
        )
        config = _apply_args(load_config(), args)
    except (ValueError, ConfigurationError) as exc:
        console.print(f"[red]Error: {exc}[/red]")
        sys.exit(1)

    try:
        if args.capabilities:
            asyncio.run(show_capabilities(config.server_url, json_output=args.json))
            return

        result = asyncio.run(
            run_speedcheck(
                config,
                json_output=args.json,
                output_file=args.output,
                csv_file=args.csv,
                simple=args.simple,
                geo=not args.no_geo,
            )
        )
        if result is None:
            sys.exit(1)

    except KeyboardInterrupt:
        console.print("\n[yellow]Test cancelled by user[/yellow]")
        sys.exit(1)
    except Exception as exc:
        LOGGER.debug("Run failed", exc_info=True)
        console.print(f"\n[red]Error: {exc}[/red]")
        sys.exit(1)


if __name__ == "__main__":
    main()
