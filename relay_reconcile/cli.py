"""
Command line interface.

    reconcile install   converge the host to a running relay
    reconcile remove    tear the relay down (tracked or comprehensive scope)
    reconcile diagnose  read-only health report
"""

import logging
import sys
import time
from pathlib import Path
from typing import Optional

import click

from relay_reconcile import APP_NAME, VERSION
from relay_reconcile.config import AppConfig
from relay_reconcile.diagnose import DiagnosticProbe, render_text
from relay_reconcile.errors import PrivilegeError, ReconcileError
from relay_reconcile.host import SystemHost
from relay_reconcile.plan import COMPREHENSIVE, SCOPES, TRACKED
from relay_reconcile.reconciler import ConvergenceResult, Reconciler, TeardownResult
from relay_reconcile.target import resolve_target
from relay_reconcile.ui import (
    NordColors,
    console,
    display_panel,
    plan_table,
    print_error,
    print_header,
    print_info,
    print_section,
    print_success,
    print_warning,
    setup_logging,
)

logger = logging.getLogger("relay_reconcile")


def _context(ctx: click.Context, quiet: bool = False):
    """Return (config, host) and configure logging for the running command."""
    obj = ctx.ensure_object(dict)
    config = obj.setdefault("config", AppConfig())
    host = obj.setdefault("host", SystemHost(config.COMMAND_TIMEOUT))
    log_file = obj.get("log_file") or config.path(config.LOG_FILE)
    setup_logging(log_file, debug=obj.get("debug", False), quiet=quiet)
    return config, host


def _require_root(host) -> None:
    if not host.is_root():
        raise PrivilegeError("This command requires root privileges. Please run with sudo.")


def _fail(error: ReconcileError) -> None:
    logger.debug(f"{type(error).__name__}: {error}")
    print_error(str(error))
    sys.exit(error.exit_code)


def _show_convergence(result: ConvergenceResult) -> None:
    plan = result.plan
    for note in plan.notes:
        print_warning(note)
    if result.dry_run:
        console.print(plan_table(plan))
        print_info("Dry run: no changes applied")
        return
    if plan.is_empty:
        print_success("Host already matches the target; services restarted and validated")
    else:
        print_success(f"Applied {len(plan.actions)} change(s)")
    if result.checksum_verified is False:
        print_warning("Kubo archive was installed without a published checksum")
    if result.generated_swarm_key:
        print_warning("A new swarm key was generated; copy it to every node of the private network")
    if result.generated_credential is not None:
        display_panel(
            f"User: {result.credential_user}\nPassword: {result.generated_credential}\n\n"
            "This password is shown once. Store it now.",
            NordColors.YELLOW,
            "Generated API credential",
        )
    if result.bootstrap_address:
        print_section("Node identity")
        console.print(f"Peer ID: [bold {NordColors.FROST_2}]{result.peer_id}[/]")
        console.print(f"Bootstrap: [bold {NordColors.FROST_2}]{result.bootstrap_address}[/]")


def _show_teardown(result: TeardownResult) -> None:
    if result.dry_run:
        console.print(plan_table(result.plan))
        print_info("Dry run: nothing removed")
        return
    print_section("Removed")
    if not result.removed:
        print_info("Nothing to remove")
    for item in result.removed:
        print_success(item)
    if result.failures:
        print_section("Could not remove")
        for failure in result.failures:
            print_warning(str(failure))
    else:
        print_success("Teardown complete")


@click.group()
@click.version_option(version=VERSION, prog_name=APP_NAME)
@click.option("--debug", is_flag=True, help="Show debug output on the console.")
@click.option("--log-file", type=click.Path(dir_okay=False, path_type=Path), default=None,
              help="Log file path (default /var/log/relay_reconcile.log).")
@click.pass_context
def cli(ctx: click.Context, debug: bool, log_file: Optional[Path]) -> None:
    """Provision, remove and inspect a private IPFS Kubo relay behind nginx."""
    obj = ctx.ensure_object(dict)
    obj["debug"] = debug
    if log_file is not None:
        obj["log_file"] = log_file


@cli.command()
@click.option("--target-ip", default=None, help="Listen address for the HTTPS proxy (default: primary IPv4).")
@click.option("--user", "basic_user", default=None, help="Basic-auth user name (default r1fs).")
@click.option("--password", default=None, envvar="RELAY_BASIC_PASSWORD",
              help="Basic-auth password; generated when omitted.")
@click.option("--swarm-key", type=click.Path(exists=True, dir_okay=False, path_type=Path), default=None,
              help="Private network key file (raw or base64).")
@click.option("--generate-swarm-key", is_flag=True, help="Create a new private network key when none is installed.")
@click.option("--kubo-version", default=None, help="Kubo release to install.")
@click.option("--dry-run", is_flag=True, help="Print the plan without applying it.")
@click.pass_context
def install(
    ctx: click.Context,
    target_ip: Optional[str],
    basic_user: Optional[str],
    password: Optional[str],
    swarm_key: Optional[Path],
    generate_swarm_key: bool,
    kubo_version: Optional[str],
    dry_run: bool,
) -> None:
    """Install and configure the relay; safe to re-run."""
    config, host = _context(ctx)
    print_header()
    try:
        _require_root(host)
        target = resolve_target(
            config,
            host,
            target_ip=target_ip,
            basic_user=basic_user,
            password=password,
            swarm_key=swarm_key,
            generate_swarm_key=generate_swarm_key,
            kubo_version=kubo_version,
            invocation_dir=Path.cwd(),
        )
        print_info(f"Kubo {target.kubo_version} ({target.arch}), proxy on {target.listen_ip}:{target.proxy_port}")
        start = time.time()
        result = Reconciler(config, host).converge(target, dry_run=dry_run)
    except ReconcileError as e:
        _fail(e)
        return
    _show_convergence(result)
    logger.info(f"Install finished in {time.time() - start:.1f}s")


@cli.command()
@click.option("--purge", is_flag=True, help="Also purge the nginx packages.")
@click.option("--scope", type=click.Choice(SCOPES), default=TRACKED, show_default=True,
              help="tracked: created artifacts only; comprehensive: also sweep known leftovers.")
@click.option("--dry-run", is_flag=True, help="Print the plan without removing anything.")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation.")
@click.pass_context
def remove(ctx: click.Context, purge: bool, scope: str, dry_run: bool, yes: bool) -> None:
    """Stop and remove the relay, reporting anything that could not be removed."""
    config, host = _context(ctx)
    print_header()
    try:
        _require_root(host)
        if not (yes or dry_run):
            prompt = "Remove the IPFS relay"
            if scope == COMPREHENSIVE:
                prompt += " and sweep leftover ipfs/kubo files"
            if not click.confirm(f"{prompt}?", default=False):
                print_warning("Aborted")
                return
        target = resolve_target(config, host, strict=False)
        result = Reconciler(config, host).diverge(target, scope=scope, purge=purge, dry_run=dry_run)
    except ReconcileError as e:
        _fail(e)
        return
    _show_teardown(result)


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Emit a single JSON document.")
@click.option("--verbose", "-v", is_flag=True, help="Include raw command output.")
@click.pass_context
def diagnose(ctx: click.Context, as_json: bool, verbose: bool) -> None:
    """Report relay health without changing anything."""
    config, host = _context(ctx, quiet=as_json)
    if not host.is_root():
        logger.warning("Not running as root; some checks may be unavailable")
    report = DiagnosticProbe(config, host).run()
    if as_json:
        click.echo(report.to_json(verbose))
        return
    print_header()
    render_text(report, verbose)


def main() -> None:
    try:
        cli()
    except KeyboardInterrupt:
        print_warning("Operation cancelled by user.")
        sys.exit(130)


if __name__ == "__main__":
    main()
