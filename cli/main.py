"""perfharness CLI - run experiments and inspect their results."""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from common.errors import PerfHarnessError
from common.models.params import PerfTestParams, Protocol
from common.utils import format_duration

logger = logging.getLogger("perfharness")

EXIT_PASSED = 0
EXIT_VERDICT_FAILED = 1
EXIT_EXPERIMENT_FAILED = 2


def setup_logging(level: str, log_format: str, log_file: Path = None) -> None:
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=log_format,
        handlers=handlers,
        force=True,
    )


def _settings(args):
    from driver.config import init_settings
    
    overrides = {}
    for name in ("redis_url", "report_dir", "data_path", "launcher", "toolchains_dir", "log_level"):
        value = getattr(args, name, None)
        if value is not None:
            overrides[name] = value
    return init_settings(**overrides)


async def _run(args) -> int:
    from driver.scenario import PerfScenario, ScenarioConfig
    from driver.storage import RunStore
    
    settings = _settings(args)
    try:
        scenario = ScenarioConfig.from_yaml(args.scenario)
    except (OSError, ValueError) as e:
        print(f"Error: invalid scenario {args.scenario}: {e}", file=sys.stderr)
        return EXIT_EXPERIMENT_FAILED
    
    store = None
    run_id = None
    log_file = None
    if not args.no_history:
        store = RunStore(settings.data_path)
        run_id = await store.create_run(scenario)
        log_file = store.log_path(run_id)
    setup_logging(settings.log_level, settings.log_format, log_file)
    
    logger.info(f"Scenario '{scenario.name}': {scenario.params}")
    try:
        result = await PerfScenario(scenario, settings).run()
    except Exception as e:
        logger.error(f"Experiment failed: {e}", exc_info=True)
        if store:
            await store.fail_run(run_id, str(e))
        return EXIT_EXPERIMENT_FAILED
    
    if store:
        await store.complete_run(run_id, result)
    print(result.verdict.describe())
    print(f"Reports: {result.report_dir}")
    if run_id:
        print(f"Run: {run_id}")
    return EXIT_PASSED if result.passed else EXIT_VERDICT_FAILED


def cmd_run(args) -> int:
    """Run a scenario end to end."""
    return asyncio.run(_run(args))


async def _resolve_tool(args) -> int:
    from driver.deployment.ssh_client import SSHClient
    from driver.toolchain import LocalHostFileSystem, SshHostFileSystem, ToolResolver
    
    resolver = ToolResolver(args.kind, args.name, executable=args.executable, toolchains_dir=args.toolchains_dir)
    if args.ssh:
        fs = SshHostFileSystem(SSHClient(args.hostname, username=args.ssh_user))
    else:
        fs = LocalHostFileSystem(args.root)
    try:
        print(await resolver.resolve(args.hostname, fs))
    except PerfHarnessError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_EXPERIMENT_FAILED
    return EXIT_PASSED


def cmd_resolve_tool(args) -> int:
    """Show which executable a tool name resolves to on a host."""
    setup_logging(args.log_level or "INFO", "%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    return asyncio.run(_resolve_tool(args))


def _params_from_args(args) -> PerfTestParams:
    if args.scenario:
        from driver.scenario import ScenarioConfig
        return ScenarioConfig.from_yaml(args.scenario).params
    return PerfTestParams(
        protocol=Protocol(args.protocol),
        expected_p99_server_latency=args.p99_server,
        expected_p99_probe_latency=args.p99_probe,
        expected_p99_error_margin=args.margin,
        max_error_rate_percent=args.max_error_rate,
    )


def cmd_verdict(args) -> int:
    """Re-evaluate already downloaded reports."""
    from driver.reports import load_reports
    from driver.verdict import evaluate
    
    setup_logging(args.log_level or "WARNING", "%(levelname)s - %(message)s")
    report_dir = Path(args.report_dir)
    if not report_dir.is_dir():
        print(f"Error: {report_dir} is not a directory", file=sys.stderr)
        return EXIT_EXPERIMENT_FAILED
    
    params = _params_from_args(args)
    reports = load_reports(report_dir)
    for role, report in reports.items():
        latency = report.latency
        print(
            f"{role:<8} nodes={len(report.nodes):<3} count={latency.count:<10} "
            f"p50={latency.p50:<8.0f} p99={latency.p99:<8.0f} max={latency.max:.0f} (us)"
        )
    verdict = evaluate(reports.get("server"), reports.get("probe"), params, loader=reports.get("loader"))
    print(verdict.describe())
    return EXIT_PASSED if verdict.passed else EXIT_VERDICT_FAILED


async def _history(args) -> int:
    from driver.storage import RunStore
    
    settings = _settings(args)
    store = RunStore(settings.data_path)
    runs = await store.list_runs(limit=args.limit, status=args.status)
    if not runs:
        print("No runs found")
        return EXIT_PASSED
    
    print(f"{'ID':<36} {'Name':<20} {'Protocol':<9} {'Status':<8} {'Server p99':<11} {'Probe p99':<10} {'Elapsed':<10}")
    print("-" * 109)
    for r in runs:
        server = f"{r['server_p99_us']:.0f}" if r.get("server_p99_us") is not None else "-"
        probe = f"{r['probe_p99_us']:.0f}" if r.get("probe_p99_us") is not None else "-"
        elapsed = format_duration(int(r["elapsed_seconds"])) if r.get("elapsed_seconds") else "-"
        print(f"{r['id']:<36} {r.get('name') or '':<20} {r.get('protocol') or '':<9} {r['status']:<8} {server:<11} {probe:<10} {elapsed:<10}")
    return EXIT_PASSED


def cmd_history(args) -> int:
    """List past runs."""
    return asyncio.run(_history(args))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="perfharness",
        description="Distributed HTTP performance test harness",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--redis-url", help="Coordination Redis URL")
    parser.add_argument("--data-path", type=Path, help="Run history directory")
    parser.add_argument("--log-level", help="Logging level")
    
    subparsers = parser.add_subparsers(dest="command", help="Commands")
    
    # run
    run_parser = subparsers.add_parser("run", help="Run a scenario")
    run_parser.add_argument("scenario", type=Path, help="Scenario YAML file")
    run_parser.add_argument("--report-dir", type=Path, help="Where reports are downloaded")
    run_parser.add_argument("--launcher", choices=["local", "ssh"], help="How nodes are started")
    run_parser.add_argument("--toolchains-dir", type=Path, help="Directory of <host>-toolchains.xml files")
    run_parser.add_argument("--no-history", action="store_true", help="Do not record the run")
    run_parser.set_defaults(func=cmd_run)
    
    # resolve-tool
    tool_parser = subparsers.add_parser("resolve-tool", help="Resolve a tool to an executable on a host")
    tool_parser.add_argument("kind", help="Tool kind, e.g. jdk or python")
    tool_parser.add_argument("name", help="Tool name, e.g. jdk17")
    tool_parser.add_argument("hostname", help="Host to resolve on")
    tool_parser.add_argument("--executable", help="Executable name inside <home>/bin")
    tool_parser.add_argument("--toolchains-dir", type=Path, help="Directory of <host>-toolchains.xml files")
    tool_parser.add_argument("--root", type=Path, help="Base of relative tool directories (local)")
    tool_parser.add_argument("--ssh", action="store_true", help="Inspect the host over ssh")
    tool_parser.add_argument("--ssh-user", default="root", help="SSH user")
    tool_parser.set_defaults(func=cmd_resolve_tool)
    
    # verdict
    verdict_parser = subparsers.add_parser("verdict", help="Evaluate downloaded reports")
    verdict_parser.add_argument("report_dir", help="Report directory (e.g. target/report)")
    verdict_parser.add_argument("--scenario", type=Path, help="Take thresholds from a scenario file")
    verdict_parser.add_argument("--protocol", default="http", choices=[p.value for p in Protocol])
    verdict_parser.add_argument("--p99-server", type=float, help="Expected server P99 (us)")
    verdict_parser.add_argument("--p99-probe", type=float, help="Expected probe P99 (us)")
    verdict_parser.add_argument("--margin", type=float, default=15.0, help="Allowed overshoot (%%)")
    verdict_parser.add_argument("--max-error-rate", type=float, help="Max failed loader responses (%%)")
    verdict_parser.set_defaults(func=cmd_verdict)
    
    # history
    history_parser = subparsers.add_parser("history", help="List past runs")
    history_parser.add_argument("-l", "--limit", type=int, default=20, help="Limit results")
    history_parser.add_argument("--status", choices=["running", "passed", "failed", "error"])
    history_parser.set_defaults(func=cmd_history)
    
    return parser


def main(argv=None):
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    
    if not args.command:
        parser.print_help()
        sys.exit(EXIT_EXPERIMENT_FAILED)
    
    sys.exit(args.func(args))


if __name__ == "__main__":
    main()
