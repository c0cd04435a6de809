"""CLI entrypoint for secretsync."""
import sys
import argparse
import getpass
import logging

from .validators import validate_deployment_name

VERSION = "0.1.0"

logger = logging.getLogger(__name__)


def _configure_logging(verbosity: int) -> None:
    """Configure logging to stderr."""
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(message)s", stream=sys.stderr)


def _load_settings(args):
    from secretsync.secrets.domains.config_loader import apply_credentials, load_config

    config = load_config(getattr(args, "config", None))
    apply_credentials(config)
    return config


def _build_store(args, config):
    from secretsync.secrets.domains.gcp_client import GCPSecretClient, detect_project_id

    project_id = detect_project_id(args.project, config, config["scan"]["store_values"])
    if not project_id:
        print("Error: GCP project ID not found.", file=sys.stderr)
        print("  Pass --project, set GCP_PROJECT, or set gcp.project_id in the config file.", file=sys.stderr)
        sys.exit(1)

    print(f"Using GCP project: {project_id}")
    return GCPSecretClient(
        project_id,
        max_workers=config["backend"]["concurrency"],
        retries=config["backend"]["retries"],
    )


def _build_validator(args, config):
    from secretsync.secrets.domains.validator import ConvergenceValidator, ExternalSecretReader

    reader = ExternalSecretReader(
        kubeconfig=args.kubeconfig or config["kubernetes"]["kubeconfig"],
        context=args.context or config["kubernetes"]["context"],
    )
    return ConvergenceValidator(
        reader,
        poll_interval=config["convergence"]["poll_interval"],
        timeout=config["convergence"]["timeout"],
        max_workers=config["backend"]["concurrency"],
    )


def prompt_secret_value(descriptor) -> str:
    """Ask for a secret value without echoing it."""
    from secretsync.secrets.domains.models import ProvisioningMode

    suffix = " (optional, leave empty to skip)" if descriptor.mode is ProvisioningMode.OPTIONAL else ""
    value = getpass.getpass(f"Enter value for {descriptor.chart_name}/{descriptor.remote_key}{suffix}: ")
    # Whitespace-only answers count as empty
    return value if value.strip() else ""


def _confirm_plan(planned) -> bool:
    response = input(f"Create {len(planned)} secrets in GCP? (Y/n): ").strip().lower()
    return response in ("", "y", "yes")


def _workflow(args, config, store=None, validator=None):
    from secretsync.secrets.workflows.sync import SecretSync

    return SecretSync(
        store,
        validator=validator,
        input_provider=prompt_secret_value,
        confirm=None if getattr(args, "yes", False) else _confirm_plan,
        patterns=config["scan"]["patterns"],
    )


def _print_plan(planned) -> None:
    from secretsync.secrets.domains.generator import format_secret_description
    from secretsync.secrets.domains.models import ProvisioningMode

    auto = [a for a in planned if a.mode is ProvisioningMode.AUTO_GENERATE]
    manual = [a for a in planned if a.mode is not ProvisioningMode.AUTO_GENERATE]

    if auto:
        print(f"\nAuto-generate ({len(auto)}):")
        for action in auto:
            d = action.descriptor
            print(f"   {d.deployment_scope}/{d.chart_name}: {d.remote_key}")
            print(f"     {format_secret_description(d.generation_spec)}")

    if manual:
        print(f"\nManual input required ({len(manual)}):")
        for action in manual:
            d = action.descriptor
            optional = " (optional)" if action.mode is ProvisioningMode.OPTIONAL else ""
            print(f"   {d.deployment_scope}/{d.chart_name}: {d.remote_key}{optional}")


def _print_validation(summary) -> None:
    for deployment in summary.deployments:
        print(f"\n{deployment.deployment} ({deployment.namespace}):")
        for result in deployment.results:
            if result.ready and result.synced:
                print(f"   ✓ {result.name} (synced)")
            elif result.exists:
                print(f"   ⚠ {result.name} ({result.state.value})")
                if result.error:
                    print(f"     {result.error}")
            else:
                print(f"   ✗ {result.name} (not found)")

    print(f"\nTotal: {summary.ready}/{summary.total} ready, {summary.errors} errors")


def cmd_version(args):
    """Show version information."""
    print(f"secretsync {VERSION}")


def cmd_config_show(args):
    """Show the config file in use and the effective settings."""
    from pathlib import Path
    from secretsync.secrets.domains.config_loader import _get_config_path

    config_path = Path(args.config).expanduser() if args.config else _get_config_path()
    source = "found" if config_path.exists() else "not found, using defaults"
    print(f"Config path: {config_path} ({source})")

    config = _load_settings(args)
    print(f"Authentication: {config['authentication']['type']}")
    print(f"Project ID: {config['gcp']['project_id'] or '(auto-detect)'}")
    print(f"Scan patterns: {', '.join(config['scan']['patterns'])}")
    print(f"Concurrency: {config['backend']['concurrency']}, retries: {config['backend']['retries']}")
    print(f"Convergence timeout: {config['convergence']['timeout']}s, "
          f"poll interval: {config['convergence']['poll_interval']}s")


def cmd_discover(args):
    """Scan values files and list declared secrets."""
    from secretsync.secrets.domains.generator import format_secret_description
    from secretsync.secrets.domains.scanner import group_by_deployment

    config = _load_settings(args)
    results = _workflow(args, config).discover(args.deployment)

    for error in results.invalid:
        print(f"Invalid secret declaration: {error}", file=sys.stderr)

    if results.total_secrets == 0:
        print("No secrets found with externalSecrets.enabled = true")
        return

    grouped = group_by_deployment(results.secrets)
    print(f"Found {results.total_secrets} secrets across {len(grouped)} deployments")
    print(f"Secrets with generator: {results.secrets_with_generator}")

    for deployment, secrets in grouped.items():
        print(f"\n{deployment} ({len(secrets)} secrets):")
        for secret in secrets:
            info = ""
            if secret.generation_spec is not None and secret.generation_spec.enabled:
                info = f" [{format_secret_description(secret.generation_spec)}]"
            print(f"   {secret.chart_name}: {secret.remote_key}{info}")


def cmd_check(args):
    """Compare declared secrets with GCP Secret Manager."""
    from secretsync.secrets.domains.models import ProvisioningMode
    from secretsync.secrets.domains.scanner import group_by_deployment

    config = _load_settings(args)
    store = _build_store(args, config)
    workflow = _workflow(args, config, store=store)

    results = workflow.discover(args.deployment)
    if results.total_secrets == 0:
        print("No secrets found")
        return

    store.initialize()
    report = workflow.check(results.secrets)

    for deployment, secrets in group_by_deployment(results.secrets).items():
        print(f"\n{deployment}:")
        for secret in secrets:
            status = report.statuses[secret.remote_key]
            if status.exists and status.version_count:
                print(f"   ✓ {secret.chart_name}: {secret.remote_key} ({status.version_count} versions)")
            elif secret.mode is ProvisioningMode.AUTO_GENERATE:
                print(f"   ✗ {secret.chart_name}: {secret.remote_key} (can generate)")
            else:
                print(f"   ✗ {secret.chart_name}: {secret.remote_key} (needs manual input)")

    print(f"\nTotal: {len(report.existing)} exist, {len(report.missing)} missing")


def cmd_generate(args):
    """Create missing secrets in GCP Secret Manager."""
    config = _load_settings(args)
    store = _build_store(args, config)
    workflow = _workflow(args, config, store=store)

    results = workflow.discover(args.deployment)
    if results.total_secrets == 0:
        print("No secrets found")
        return

    store.initialize()
    check = workflow.check(results.secrets)
    if not check.missing:
        print("All secrets already exist in GCP")
        return

    planned = workflow.plan(check.missing)
    _print_plan(planned)
    report = workflow.generate(check.missing, dry_run=args.dry_run)
    _report_generate(report)
    if report.failures:
        sys.exit(1)


def _report_generate(report) -> None:
    from secretsync.secrets.workflows.sync import NO_VALUE_PROVIDED

    if report.dry_run:
        print("\n[DRY RUN] Would create the secrets listed above")
        return
    if report.cancelled:
        print("\nCancelled")
        return
    print(f"\nCreated {len(report.created)}, updated {len(report.updated)}, skipped {len(report.skipped)}")
    for failure in report.failures:
        print(f"   ✗ {failure}", file=sys.stderr)
    if any(f.reason == NO_VALUE_PROVIDED for f in report.failures):
        print("\nGCP Secret Manager does not allow empty secret payloads.", file=sys.stderr)
        print("Mark the secret 'optional: true' in its values file to allow skipping it.", file=sys.stderr)


def cmd_validate(args):
    """Verify ExternalSecret sync status."""
    config = _load_settings(args)
    workflow = _workflow(args, config, validator=_build_validator(args, config))

    results = workflow.discover(args.deployment)
    if results.total_secrets == 0:
        print("No secrets found")
        return

    summary = workflow.validate(results.secrets, wait=not args.no_wait, timeout=args.timeout)
    _print_validation(summary)

    if summary.success:
        print("All ExternalSecrets synced successfully")
    else:
        print("Some ExternalSecrets failed to sync", file=sys.stderr)
        sys.exit(1)


def cmd_sync(args):
    """Full workflow: discover, check, generate, validate."""
    config = _load_settings(args)
    store = _build_store(args, config)
    validator = None if args.dry_run else _build_validator(args, config)
    workflow = _workflow(args, config, store=store, validator=validator)

    if not args.dry_run:
        store.initialize()
    report = workflow.sync(args.deployment, dry_run=args.dry_run, timeout=args.timeout)

    print(f"Discovered {report.scan.total_secrets} secrets")
    for error in report.scan.invalid:
        print(f"Invalid secret declaration: {error}", file=sys.stderr)
    if report.check is not None:
        print(f"{len(report.check.existing)} exist, {len(report.check.missing)} missing")
    if report.generate is not None and report.generate.planned:
        _print_plan(report.generate.planned)
        _report_generate(report.generate)
    if report.validation is not None and report.validation.total:
        _print_validation(report.validation)

    if report.success:
        print("Sync workflow complete")
        return

    print("\nSync failed:", file=sys.stderr)
    for failure in report.failures:
        print(f"   ✗ {failure}", file=sys.stderr)
    sys.exit(1)


def cmd_store(args):
    """Show the ClusterSecretStore configuration and its status in the cluster."""
    from secretsync.secrets.domains.store_config import read_store_config

    config = _load_settings(args)
    store_values = config["scan"]["store_values"]
    store = read_store_config(store_values)
    if store is None:
        print(f"Error: ClusterSecretStore not configured in {store_values}", file=sys.stderr)
        print("  Add externalSecrets.stores[0] with name, provider and gcp.projectId.", file=sys.stderr)
        sys.exit(1)

    print("ClusterSecretStore configuration:")
    print(f"  Provider: {store.provider}")
    print(f"  Name: {store.name}")
    if store.project_id:
        print(f"  Project ID: {store.project_id}")

    status = _build_validator(args, config).reader.cluster_store_status(store.name)
    if status.ready:
        print(f"✓ ClusterSecretStore \"{store.name}\" is ready")
    elif status.exists:
        print(f"⚠ ClusterSecretStore \"{store.name}\" exists but not ready")
        if status.error_message:
            print(f"  Error: {status.error_message}")
        sys.exit(1)
    else:
        print(f"✗ {status.error_message}")
        sys.exit(1)


def _common_options() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("-d", "--deployment", help="Only process this deployment (values file name)")
    common.add_argument("-p", "--project", help="GCP project ID (auto-detected if not provided)")
    common.add_argument("--kubeconfig", help="Path to kubeconfig")
    common.add_argument("--context", help="Kubernetes context")
    common.add_argument("--config", help="Config file (default: $SECRETSYNC_CONFIG or ~/.config/secretsync/config.yml)")
    common.add_argument("--dry-run", action="store_true", help="Show what would be done without making changes")
    common.add_argument("-y", "--yes", action="store_true", help="Skip confirmation prompts")
    common.add_argument("--timeout", type=float, help="Seconds to wait for each ExternalSecret to sync")
    common.add_argument("--no-wait", action="store_true", help="Observe ExternalSecrets once instead of polling")
    common.add_argument("-v", "--verbose", action="count", default=0, help="Increase log verbosity")
    return common


def main():
    """Main CLI entrypoint.

    Exit codes:
        0 - Success
        1 - Runtime errors (authentication, missing secrets, failed sync, etc.)
        2 - Usage errors (invalid arguments, empty secret values, etc.)
    """
    common = _common_options()
    parser = argparse.ArgumentParser(
        prog="secretsync",
        description="Values-driven secrets management for GCP Secret Manager and External Secrets",
        epilog="""
Exit codes:
  0 - Success
  1 - Runtime error (authentication, missing secrets, failed sync, etc.)
  2 - Usage error (invalid arguments, empty secret values, etc.)

Environment variables:
  GCP_PROJECT       - GCP project ID (overrides config file)
  SECRETSYNC_CONFIG - Config file path
        """
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("version", help="Show version information")

    config_parser = subparsers.add_parser("config", help="Configuration management")
    config_subparsers = config_parser.add_subparsers(dest="config_command")
    config_subparsers.add_parser("show", parents=[common], help="Show config path and effective settings")

    subparsers.add_parser("discover", parents=[common], help="Discover all secrets from values files")
    subparsers.add_parser("check", parents=[common], help="Compare values files with GCP Secret Manager")
    subparsers.add_parser("generate", parents=[common], help="Create missing secrets in GCP")
    subparsers.add_parser("validate", parents=[common], help="Verify ExternalSecret sync status")
    subparsers.add_parser(
        "sync",
        parents=[common],
        help="Full workflow: discover -> check -> generate -> validate",
    )
    subparsers.add_parser("store", parents=[common], help="Show ClusterSecretStore configuration and status")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(2)

    _configure_logging(getattr(args, "verbose", 0))
    if getattr(args, "deployment", None):
        validate_deployment_name(args.deployment)

    from secretsync.secrets.domains.config_loader import ConfigError
    from secretsync.secrets.domains.exceptions import SecretSyncError

    handlers = {
        "version": cmd_version,
        "discover": cmd_discover,
        "check": cmd_check,
        "generate": cmd_generate,
        "validate": cmd_validate,
        "sync": cmd_sync,
        "store": cmd_store,
    }

    try:
        if args.command == "config":
            if args.config_command == "show":
                cmd_config_show(args)
            else:
                config_parser.print_help()
                sys.exit(2)
        else:
            handlers[args.command](args)
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        sys.exit(1)
    except (ConfigError, SecretSyncError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        logger.debug("Unhandled error", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
