#!/usr/bin/env python3
"""
Main entry point for toolbelt - dependency-aware parallel tool installation
"""

import asyncio
import argparse
import json
import logging
import signal
import sys
from pathlib import Path
from typing import List, Optional
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

from toolbelt.config import Settings
from toolbelt.core import (
    ToolCatalog,
    ManifestStore,
    InstallationOrchestrator,
    HealthChecker,
    ProgressBus,
    ProgressEvent,
    ToolbeltError,
    CatalogError,
    ManifestError
)
from toolbelt.integrations import InstallerRegistry
from toolbelt.models import InstallationOptions, NodeState, HealthStatus, RunSummary
from toolbelt.utils.logging import setup_root_logger

logger = logging.getLogger("toolbelt")


def parse_arguments(argv: Optional[List[str]] = None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Install developer tools in dependency order with bounded parallelism"
    )

    parser.add_argument(
        "--config",
        type=Path,
        help="Path to configuration file (JSON format)"
    )
    parser.add_argument(
        "--catalog",
        type=Path,
        help="Path to tools.json (default from settings)"
    )
    parser.add_argument(
        "--bundles",
        type=Path,
        help="Path to bundles.json (default from settings)"
    )
    parser.add_argument(
        "--manifest",
        type=Path,
        help="Path to the installation manifest (default: ~/.toolbelt/manifest.json)"
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Logging level (default: INFO)"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    install = subparsers.add_parser("install", help="Install tools and bundles")
    install.add_argument("ids", nargs="+", help="Tool ids or bundle names")
    install.add_argument("--force", action="store_true", help="Reinstall tools already installed")
    install.add_argument("--skip-deps", action="store_true", help="Do not install dependencies")
    install.add_argument("--dry-run", action="store_true", help="Show the plan without installing")
    install.add_argument("-j", "--jobs", type=int, help="Maximum concurrent installs")
    install.add_argument("--fail-fast", action="store_true", help="Stop scheduling after the first failure")
    install.add_argument("--no-retry-failed", action="store_true",
                         help="Do not retry tools whose last install failed")
    install.add_argument("--build-type", help="Build type for source builds (e.g. standard, release, debug)")
    install.add_argument("--run-tests", action="store_true", help="Ask build scripts to run test suites")
    install.add_argument("--mock-install", action="store_true",
                         help="Use mock installers that change nothing on the machine")
    install.add_argument("--json", action="store_true", help="Print the run summary as JSON")

    plan = subparsers.add_parser("plan", help="Show the execution plan for a request")
    plan.add_argument("ids", nargs="+", help="Tool ids or bundle names")
    plan.add_argument("--force", action="store_true", help="Plan as if nothing were installed")
    plan.add_argument("--skip-deps", action="store_true", help="Do not include dependencies")
    plan.add_argument("--json", action="store_true", help="Print the plan as JSON")

    status = subparsers.add_parser("status", help="Show manifest records")
    status.add_argument("ids", nargs="*", help="Limit to these tools")

    doctor = subparsers.add_parser("doctor", help="Check installed tools against the catalog")
    doctor.add_argument("ids", nargs="*", help="Limit to these tools")

    listing = subparsers.add_parser("list", help="List catalog tools and bundles")
    listing.add_argument("--category", help="Only tools in this category")

    adopt = subparsers.add_parser("adopt", help="Record tools already present on this machine")
    adopt.add_argument("ids", nargs="+", help="Tool ids")

    show = subparsers.add_parser("show", help="Show a tool or bundle with its manifest record")
    show.add_argument("id", help="Tool id or bundle name")

    return parser.parse_args(argv)


def load_config(args) -> Settings:
    """Load configuration from file, environment and command line."""
    config_data = {}
    if args.config and args.config.exists():
        with open(args.config) as f:
            config_data = json.load(f)

    # Override with command line args
    if args.catalog:
        config_data.setdefault("catalog", {})["tools_path"] = str(args.catalog)
    if args.bundles:
        config_data.setdefault("catalog", {})["bundles_path"] = str(args.bundles)
    if args.manifest:
        config_data.setdefault("manifest", {})["path"] = str(args.manifest)
    if args.log_level:
        config_data.setdefault("logging", {})["level"] = args.log_level
    if getattr(args, "jobs", None):
        config_data["max_parallel_jobs"] = args.jobs
    if getattr(args, "build_type", None):
        config_data.setdefault("installer", {})["build_type"] = args.build_type
    if getattr(args, "fail_fast", False):
        config_data["fail_fast"] = True
    if getattr(args, "no_retry_failed", False):
        config_data["retry_failed"] = False

    return Settings(**config_data)


def build_options(args, settings: Settings) -> InstallationOptions:
    """Turn parsed arguments and settings into run options."""
    return InstallationOptions(
        parallelism=settings.max_parallel_jobs,
        force=getattr(args, "force", False),
        skip_deps=getattr(args, "skip_deps", False),
        dry_run=getattr(args, "dry_run", False) or args.command == "plan",
        fail_fast=settings.fail_fast,
        retry_failed=settings.retry_failed,
        build_type=settings.installer.build_type,
        run_tests=getattr(args, "run_tests", False)
    )


def build_installers(args, settings: Settings) -> InstallerRegistry:
    if getattr(args, "mock_install", False):
        logger.info("Using mock installers")
        return InstallerRegistry.mock()
    return InstallerRegistry.default(
        scripts_dir=settings.installer.scripts_dir,
        build_dir=settings.installer.build_dir,
        bin_dir=settings.installer.bin_dir,
        package_manager=settings.installer.package_manager,
        timeout_seconds=settings.installer.timeout_seconds
    )


def log_event(event: ProgressEvent) -> None:
    if event.new_state in (NodeState.RUNNING, NodeState.INSTALLED, NodeState.FAILED, NodeState.SKIPPED):
        suffix = f" ({event.message.strip().splitlines()[-1]})" if event.message and event.message.strip() else ""
        logger.info(f"[{event.tool_id}] {event.old_state.value} -> {event.new_state.value}{suffix}")


def print_summary(summary: RunSummary) -> None:
    """Log the run summary the way every run ends."""
    logger.info("=" * 60)
    logger.info("SUMMARY" + (" (dry run)" if summary.dry_run else ""))
    logger.info("=" * 60)
    for depth, layer in enumerate(summary.layers):
        logger.info(f"Layer {depth}: {', '.join(layer)}")
    for tool_id, outcome in summary.outcomes.items():
        line = f"{tool_id}: {outcome.state.value}"
        if outcome.pre_satisfied:
            line += " (already installed)"
        elif outcome.state == NodeState.SKIPPED:
            line += f" ({outcome.diagnostic})" if outcome.diagnostic else ""
        elif outcome.state == NodeState.FAILED and outcome.diagnostic:
            line += f"\n{outcome.diagnostic.rstrip()}"
        logger.info(line)
    logger.info("-" * 60)
    logger.info(f"Installed: {summary.installed}")
    logger.info(f"Failed: {summary.failed}")
    logger.info(f"Skipped: {summary.skipped}")
    logger.info(f"Install operations invoked: {summary.invocations}")
    logger.info(f"Duration: {summary.duration_seconds:.2f} seconds")
    if summary.cancelled:
        logger.info("Run was cancelled")
    logger.info("=" * 60)


async def run_install(args, settings: Settings, catalog: ToolCatalog, manifest: ManifestStore) -> int:
    options = build_options(args, settings)
    bus = ProgressBus()
    bus.subscribe(log_event)
    orchestrator = InstallationOrchestrator(catalog, manifest, build_installers(args, settings), bus=bus)

    interrupts = 0

    def on_signal():
        nonlocal interrupts
        interrupts += 1
        if interrupts == 1:
            logger.warning("Interrupted: finishing running installs (interrupt again to terminate them)")
            orchestrator.cancel()
        else:
            orchestrator.cancel(terminate_running=True)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, on_signal)
        except (NotImplementedError, RuntimeError):
            pass

    if settings.manifest.backup_before_run and not options.dry_run and manifest.path.exists():
        manifest.backup("pre-run")

    try:
        summary = await orchestrator.run(args.ids, options)
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError):
                pass
        bus.close(timeout=5)

    if getattr(args, "json", False):
        print(json.dumps(summary.to_dict(), indent=2))
    else:
        print_summary(summary)
    return summary.exit_code


def run_plan(args, settings: Settings, catalog: ToolCatalog, manifest: ManifestStore) -> int:
    orchestrator = InstallationOrchestrator(catalog, manifest, InstallerRegistry())
    plan = orchestrator.plan(args.ids, build_options(args, settings))
    if args.json:
        print(json.dumps({
            "requested": plan.requested,
            "layers": plan.layers,
            "satisfied": plan.satisfied
        }, indent=2))
        return 0
    for depth, layer in enumerate(plan.layers):
        print(f"Layer {depth}: {' '.join(layer)}")
    if plan.satisfied:
        print(f"Already installed: {' '.join(plan.satisfied)}")
    if not plan.layers:
        print("Nothing to install")
    return 0


def run_status(args, catalog: ToolCatalog, manifest: ManifestStore) -> int:
    records = manifest.get_all()
    tool_ids = args.ids or sorted(records)
    if not tool_ids:
        print("No tools recorded")
        return 0
    for tool_id in tool_ids:
        record = records.get(tool_id)
        if record is None:
            print(f"{tool_id:<20} not recorded")
            continue
        note = "" if tool_id in catalog else "  (not in catalog)"
        print(f"{tool_id:<20} {record.status.value:<10} {record.installed_version or '-':<14} "
              f"{record.method.value:<16} {record.installed_at:%Y-%m-%d %H:%M}{note}")
    stats = manifest.stats()
    print(f"\n{stats['total']} recorded: " + ", ".join(f"{k} {v}" for k, v in stats["by_status"].items()))
    return 0


def run_doctor(args, settings: Settings, catalog: ToolCatalog, manifest: ManifestStore) -> int:
    checker = HealthChecker(catalog, manifest, extra_dirs=[settings.installer.bin_dir])
    reports = checker.check_all(args.ids or None)
    for report in reports:
        print(f"{report.tool_id:<20} {report.status.value.upper():<8} {'; '.join(report.messages)}")
    return 1 if any(r.status == HealthStatus.FAIL for r in reports) else 0


def run_list(args, catalog: ToolCatalog) -> int:
    for tool in catalog.list_tools(args.category):
        deps = f" (needs {', '.join(tool.dependencies)})" if tool.dependencies else ""
        print(f"{tool.id:<20} {tool.category:<16} {tool.method.value:<16} {tool.description}{deps}")
    if not args.category and catalog.bundles:
        print("\nBundles:")
        for bundle in catalog.bundles:
            print(f"  {bundle.name:<18} {', '.join(catalog.expand_bundle(bundle.name))}")
    return 0


def run_show(args, catalog: ToolCatalog, manifest: ManifestStore) -> int:
    name = args.id
    if catalog.is_bundle(name):
        bundle = catalog.get_bundle(name)
        print(f"Bundle:       {bundle.name}")
        if bundle.description:
            print(f"Description:  {bundle.description}")
        print("Tools:")
        for tool_id in catalog.expand_bundle(name):
            mark = "installed" if manifest.is_installed(tool_id) else "not installed"
            print(f"  {tool_id:<20} {mark}")
        return 0

    tool, in_catalog = catalog.lookup(name)
    record, recorded = manifest.get(name)
    if not in_catalog and not recorded:
        raise CatalogError.unknown_tool(name)

    if in_catalog:
        print(f"Tool:         {tool.id} ({tool.name})")
        if tool.description:
            print(f"Description:  {tool.description}")
        print(f"Category:     {tool.category or '-'}")
        print(f"Method:       {tool.method.value}")
        print(f"Version:      {tool.version}")
        print(f"Dependencies: {', '.join(tool.dependencies) or '-'}")
    else:
        print(f"Tool:         {name} (not in catalog)")

    if not recorded:
        print("Status:       not recorded")
        return 0
    print(f"Status:       {record.status.value}")
    print(f"Installed:    {record.installed_version or '-'} via {record.method.value} "
          f"at {record.installed_at:%Y-%m-%d %H:%M}")
    if record.diagnostic and record.diagnostic.strip():
        print(f"Diagnostic:   {record.diagnostic.strip().splitlines()[-1]}")
    if record.binary_paths:
        print(f"Binaries:     {', '.join(record.binary_paths)}")
    if record.bundles:
        print(f"Bundles:      {', '.join(record.bundles)}")
    print(f"Requested:    {'yes' if record.user_requested else 'no (dependency)'}")
    print(f"Dependents:   {', '.join(manifest.dependents(name)) or '-'}")
    removable, reasons = manifest.can_safely_remove(name)
    print(f"Removable:    {'yes' if removable else 'no (' + '; '.join(reasons) + ')'}")
    return 0


def run_adopt(args, settings: Settings, catalog: ToolCatalog, manifest: ManifestStore) -> int:
    checker = HealthChecker(catalog, manifest, extra_dirs=[settings.installer.bin_dir])
    exit_code = 0
    for tool_id in args.ids:
        try:
            record = checker.adopt(tool_id)
            print(f"{tool_id}: adopted {record.installed_version or '(unknown version)'} at {record.binary_paths[0]}")
        except ToolbeltError as e:
            logger.error(str(e))
            exit_code = 1
    return exit_code


async def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = parse_arguments(argv)

    try:
        settings = load_config(args)
    except (ValueError, OSError) as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2

    setup_root_logger(
        settings.logging.file_path,
        settings.logging.level,
        max_file_size_mb=settings.logging.max_file_size_mb,
        backup_count=settings.logging.backup_count
    )
    logger.debug(f"Arguments: {vars(args)}")

    try:
        catalog = ToolCatalog.load(settings.catalog.tools_path, settings.catalog.bundles_path)
        manifest = ManifestStore(settings.manifest.path, settings.manifest.backup_dir, settings.manifest.backup_retention)

        if args.command == "install":
            return await run_install(args, settings, catalog, manifest)
        if args.command == "plan":
            return run_plan(args, settings, catalog, manifest)
        if args.command == "status":
            return run_status(args, catalog, manifest)
        if args.command == "doctor":
            return run_doctor(args, settings, catalog, manifest)
        if args.command == "list":
            return run_list(args, catalog)
        if args.command == "adopt":
            return run_adopt(args, settings, catalog, manifest)
        if args.command == "show":
            return run_show(args, catalog, manifest)
        return 2

    except CatalogError as e:
        logger.error(f"Catalog error ({e.kind.value}): {e}")
        return 1
    except ManifestError as e:
        logger.error(f"Manifest error ({e.kind.value}): {e}")
        return 1
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1


def cli() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
