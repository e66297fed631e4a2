#!/usr/bin/env python3
"""
CDN Certificate Auto-Renewal - Main Entry Point.

Renews the TLS certificates bound to CDN endpoints: certificates with 30
days or less left are re-issued through Let's Encrypt (DNS-01), uploaded to
the certificate store, bound to the endpoint, and the old certificate is
deleted. Each invocation performs one pass.

Usage:
    # Renew every endpoint that needs it
    python main.py renew all

    # Renew one endpoint, by id or by custom domain
    python main.py renew id 19f06b6a-3ace-4315-b086-499a0e521b76
    python main.py renew domain static.example.com

    # Inspect and manage the pieces directly
    python main.py cdn list
    python main.py cdn update <endpoint-id> <certificate-id>
    python main.py cert list
    python main.py cert get <certificate-id>
    python main.py cert issue static.example.com
    python main.py cert upload static.example.com --key privkey.pem --leaf cert.pem --chain chain.pem
    python main.py cert delete <certificate-id>

    # Dry run against the Let's Encrypt staging environment
    python main.py --dry-run --use-staging renew all
"""

import argparse
import json
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import cached_property
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from cdn_renewal.logger import setup_logger, get_logger
from cdn_renewal.config_loader import load_config, Config, ConfigurationError
from cdn_renewal.transport import ApiClient, ApiError
from cdn_renewal.cdn import CdnDirectory
from cdn_renewal.certstore import CertificateStore
from cdn_renewal.certbot import CertbotAuthority, IssuanceError
from cdn_renewal.orchestrator import (
    RenewalOrchestrator,
    RenewalResult,
    RenewalStatus,
    RenewalError,
    BatchAbortedError,
)
from cdn_renewal.helpers import (
    certificate_name,
    format_expiration_status,
    seconds_remaining,
)
from cdn_renewal.notification import NotificationManager


@dataclass
class ExecutionSummary:
    """Complete execution summary for the entire run."""
    task: str
    started_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    completed_at: Optional[str] = None
    dry_run: bool = False
    use_staging: bool = False
    success: bool = True
    exit_code: int = 0

    total_renewed: int = 0
    total_skipped: int = 0
    total_dry_run: int = 0
    total_failed: int = 0

    results: List[RenewalResult] = field(default_factory=list)
    data: List[Dict[str, Any]] = field(default_factory=list)
    global_errors: List[str] = field(default_factory=list)

    def add_result(self, result: RenewalResult) -> None:
        """Add an endpoint result and update the counts."""
        self.results.append(result)

        if result.status == RenewalStatus.RENEWED:
            self.total_renewed += 1
        elif result.status == RenewalStatus.SKIPPED:
            self.total_skipped += 1
        elif result.status == RenewalStatus.DRY_RUN:
            self.total_dry_run += 1
        elif result.status == RenewalStatus.FAILED:
            self.total_failed += 1
            self.success = False
            self.exit_code = 1

    def add_global_error(self, error: str, exit_code: int = 1) -> None:
        """Add an error that happened outside endpoint processing."""
        self.global_errors.append(error)
        self.success = False
        self.exit_code = exit_code

    def finalize(self) -> None:
        """Mark execution as complete."""
        self.completed_at = datetime.now(timezone.utc).isoformat()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "task": self.task,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "dry_run": self.dry_run,
            "letsencrypt_environment": "staging" if self.use_staging else "production",
            "success": self.success,
            "exit_code": self.exit_code,
            "summary": {
                "total_endpoints_evaluated": len(self.results),
                "total_renewed": self.total_renewed,
                "total_skipped": self.total_skipped,
                "total_dry_run": self.total_dry_run,
                "total_failed": self.total_failed,
            },
            "results": [r.to_dict() for r in self.results],
            "data": self.data,
            "global_errors": self.global_errors,
        }

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, default=str)


class Services:
    """
    Provider clients built from the configuration on first use.

    Commands that never touch the API (cert issue) do not need an API token.
    """

    def __init__(self, config: Config):
        self.config = config

    @cached_property
    def client(self) -> ApiClient:
        return ApiClient(self.config.api)

    @cached_property
    def cdn(self) -> CdnDirectory:
        return CdnDirectory(self.client, self.config.api.cdn_url)

    @cached_property
    def store(self) -> CertificateStore:
        return CertificateStore(self.client, self.config.api.certificates_url)

    @cached_property
    def authority(self) -> CertbotAuthority:
        return CertbotAuthority(self.config.acme)

    @cached_property
    def orchestrator(self) -> RenewalOrchestrator:
        return RenewalOrchestrator(
            cdn=self.cdn,
            store=self.store,
            authority=self.authority,
            dry_run=self.config.settings.dry_run,
            continue_on_error=self.config.settings.continue_on_error,
            notification_manager=NotificationManager(self.config.notifications),
        )


Handler = Callable[[argparse.Namespace, Services, ExecutionSummary], None]


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments namespace
    """
    parser = argparse.ArgumentParser(
        description="CDN Certificate Auto-Renewal",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s renew all                      # Renew every endpoint that needs it
  %(prog)s --dry-run renew all            # Evaluate only, no changes
  %(prog)s renew domain cdn.example.com   # Renew the endpoint serving a domain
  %(prog)s cert list                      # Show stored certificates
        """,
    )

    parser.add_argument(
        "--config",
        type=str,
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Test mode: don't make actual changes",
    )
    parser.add_argument(
        "--use-staging",
        action="store_true",
        help="Use Let's Encrypt staging environment for testing (avoids production rate limits)",
    )
    parser.add_argument(
        "--dns-plugin",
        type=str,
        default=None,
        help="Certbot DNS plugin name, e.g. digitalocean or cloudflare (overrides config)",
    )
    parser.add_argument(
        "--continue-on-error",
        action="store_true",
        help="renew all: keep processing remaining endpoints after a failure",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose/debug logging",
    )
    parser.add_argument(
        "--no-color",
        action="store_true",
        help="Disable colored output",
    )
    parser.add_argument(
        "--log-file",
        type=str,
        default=None,
        help="Also write log output to this file",
    )
    parser.add_argument(
        "--json-summary",
        action="store_true",
        help="Output machine-readable JSON summary at the end of execution",
    )

    groups = parser.add_subparsers(dest="group", metavar="{cdn,cert,renew}")
    groups.required = True

    cdn = groups.add_parser("cdn", help="CDN endpoint operations")
    cdn_actions = cdn.add_subparsers(dest="action")
    cdn_actions.required = True
    cdn_actions.add_parser("list", help="List CDN endpoints")
    update = cdn_actions.add_parser("update", help="Bind an endpoint to a certificate")
    update.add_argument("endpoint_id")
    update.add_argument("certificate_id")

    cert = groups.add_parser("cert", help="Certificate store and issuance operations")
    cert_actions = cert.add_subparsers(dest="action")
    cert_actions.required = True
    cert_actions.add_parser("list", help="List stored certificates")
    get = cert_actions.add_parser("get", help="Show one stored certificate")
    get.add_argument("certificate_id")
    issue = cert_actions.add_parser("issue", help="Issue a certificate with Certbot")
    issue.add_argument("domain")
    upload = cert_actions.add_parser("upload", help="Upload PEM material to the store")
    upload.add_argument("domain")
    upload.add_argument("--key", required=True, help="Private key PEM file")
    upload.add_argument("--leaf", required=True, help="Leaf certificate PEM file")
    upload.add_argument("--chain", required=True, help="Certificate chain PEM file")
    upload.add_argument("--name", default=None, help="Certificate name (default: derived from domain and fingerprint)")
    delete = cert_actions.add_parser("delete", help="Delete a stored certificate")
    delete.add_argument("certificate_id")

    renew = groups.add_parser("renew", help="Renew certificates bound to CDN endpoints")
    renew_actions = renew.add_subparsers(dest="action")
    renew_actions.required = True
    renew_actions.add_parser("all", help="Renew every endpoint, in listing order")
    by_domain = renew_actions.add_parser("domain", help="Renew the endpoint serving a custom domain")
    by_domain.add_argument("domain")
    by_id = renew_actions.add_parser("id", help="Renew one endpoint by id")
    by_id.add_argument("endpoint_id")

    return parser.parse_args(argv)


def cmd_cdn_list(args: argparse.Namespace, services: Services, summary: ExecutionSummary) -> None:
    logger = get_logger()
    endpoints = services.cdn.list_endpoints()
    logger.info(f"{len(endpoints)} CDN endpoint(s):")
    for endpoint in endpoints:
        logger.info(
            f"  {endpoint.id}  domain={endpoint.custom_domain or '-'}  "
            f"certificate={endpoint.certificate_id or '-'}  origin={endpoint.origin or '-'}"
        )
        summary.data.append(endpoint.to_dict())


def cmd_cdn_update(args: argparse.Namespace, services: Services, summary: ExecutionSummary) -> None:
    logger = get_logger()
    if summary.dry_run:
        logger.info(f"DRY RUN - would bind endpoint {args.endpoint_id} to certificate {args.certificate_id}")
        return
    endpoint = services.cdn.rebind(args.endpoint_id, args.certificate_id)
    summary.data.append(endpoint.to_dict())


def cmd_cert_list(args: argparse.Namespace, services: Services, summary: ExecutionSummary) -> None:
    logger = get_logger()
    certificates = services.store.list_certificates()
    logger.info(f"{len(certificates)} certificate(s):")
    for certificate in certificates:
        status = (
            format_expiration_status(seconds_remaining(certificate.not_after))
            if certificate.not_after else "Unknown expiration"
        )
        logger.info(f"  {certificate.id}  {certificate.name}  {certificate.type}  {status}")
        summary.data.append(certificate.to_dict())


def cmd_cert_get(args: argparse.Namespace, services: Services, summary: ExecutionSummary) -> None:
    logger = get_logger()
    certificate = services.store.get_certificate(args.certificate_id)
    logger.info(f"Certificate {certificate.id}")
    logger.info(f"  Name: {certificate.name}")
    logger.info(f"  Type: {certificate.type}  State: {certificate.state or '-'}")
    logger.info(f"  DNS names: {', '.join(certificate.dns_names) or '-'}")
    logger.info(f"  SHA-1 fingerprint: {certificate.sha1_fingerprint or '-'}")
    if certificate.not_after:
        logger.info(
            f"  Not after: {certificate.not_after.isoformat()} "
            f"({format_expiration_status(seconds_remaining(certificate.not_after))})"
        )
    summary.data.append(certificate.to_dict())


def cmd_cert_issue(args: argparse.Namespace, services: Services, summary: ExecutionSummary) -> None:
    logger = get_logger()
    if summary.dry_run:
        logger.info(f"DRY RUN - would request a certificate for {args.domain}")
        return
    material = services.authority.issue(args.domain)
    logger.info(f"  Private key: {material.private_key_path}")
    logger.info(f"  Certificate: {material.leaf_path}")
    logger.info(f"  Chain: {material.chain_path}")
    logger.info(f"  Full chain: {material.fullchain_path}")
    logger.info(f"  Not after: {material.not_after().isoformat()}")
    summary.data.append({
        "domain": material.domain,
        "lineage": material.lineage,
        "private_key": material.private_key_path,
        "leaf_certificate": material.leaf_path,
        "certificate_chain": material.chain_path,
        "full_chain": material.fullchain_path,
    })


def cmd_cert_upload(args: argparse.Namespace, services: Services, summary: ExecutionSummary) -> None:
    logger = get_logger()
    private_key = Path(args.key).read_bytes()
    leaf = Path(args.leaf).read_bytes()
    chain = Path(args.chain).read_bytes()
    name = args.name or certificate_name(args.domain, leaf)

    if summary.dry_run:
        logger.info(f"DRY RUN - would upload certificate {name}")
        return
    certificate = services.store.upload_certificate(name, private_key, leaf, chain)
    summary.data.append(certificate.to_dict())


def cmd_cert_delete(args: argparse.Namespace, services: Services, summary: ExecutionSummary) -> None:
    logger = get_logger()
    if summary.dry_run:
        logger.info(f"DRY RUN - would delete certificate {args.certificate_id}")
        return
    services.store.delete_certificate(args.certificate_id)


def cmd_renew_all(args: argparse.Namespace, services: Services, summary: ExecutionSummary) -> None:
    try:
        results = services.orchestrator.renew_all()
    except BatchAbortedError as e:
        for result in e.results:
            summary.add_result(result)
        summary.add_result(e.error.to_result())
        get_logger().error("Batch aborted; remaining endpoints were not processed")
        return
    for result in results:
        summary.add_result(result)


def cmd_renew_domain(args: argparse.Namespace, services: Services, summary: ExecutionSummary) -> None:
    summary.add_result(services.orchestrator.renew_by_domain(args.domain))


def cmd_renew_id(args: argparse.Namespace, services: Services, summary: ExecutionSummary) -> None:
    summary.add_result(services.orchestrator.renew_by_id(args.endpoint_id))


COMMANDS: Dict[Tuple[str, str], Handler] = {
    ("cdn", "list"): cmd_cdn_list,
    ("cdn", "update"): cmd_cdn_update,
    ("cert", "list"): cmd_cert_list,
    ("cert", "get"): cmd_cert_get,
    ("cert", "issue"): cmd_cert_issue,
    ("cert", "upload"): cmd_cert_upload,
    ("cert", "delete"): cmd_cert_delete,
    ("renew", "all"): cmd_renew_all,
    ("renew", "domain"): cmd_renew_domain,
    ("renew", "id"): cmd_renew_id,
}


def apply_overrides(config: Config, args: argparse.Namespace) -> None:
    """Apply command-line overrides to the loaded configuration."""
    logger = get_logger()

    if args.dry_run:
        config.settings.dry_run = True
    if args.use_staging:
        config.acme.use_staging = True
    if args.continue_on_error:
        config.settings.continue_on_error = True
    if args.dns_plugin:
        config.acme.dns_plugin = args.dns_plugin.lower()
        logger.info(f"DNS plugin overridden to: {config.acme.dns_plugin}")


def print_execution_summary(summary: ExecutionSummary, output_json: bool = False) -> None:
    """
    Print the final execution summary.

    Args:
        summary: Execution summary
        output_json: Also print the JSON summary to stdout
    """
    logger = get_logger()
    separator = "=" * 60

    logger.info("")
    logger.info(separator)
    logger.info(f"EXECUTION SUMMARY ({summary.task})")
    logger.info(separator)

    if summary.results:
        logger.info(f"  Endpoints evaluated: {len(summary.results)}")
        logger.info(f"  Renewed: {summary.total_renewed}")
        logger.info(f"  Skipped: {summary.total_skipped}")
        if summary.dry_run:
            logger.info(f"  Would renew: {summary.total_dry_run}")
        logger.info(f"  Failed: {summary.total_failed}")

        for status in (RenewalStatus.RENEWED, RenewalStatus.FAILED):
            matching = [r for r in summary.results if r.status == status]
            if not matching:
                continue
            logger.info("")
            logger.info("-" * 40)
            logger.info(f"{status.value.upper()} ENDPOINTS")
            logger.info("-" * 40)
            for result in matching:
                line = f"  - {result.endpoint_id or '?'} ({result.domain or '-'}): {result.message}"
                if status == RenewalStatus.FAILED:
                    logger.error(line)
                else:
                    logger.info(line)

    if summary.global_errors:
        logger.info("")
        for error in summary.global_errors:
            logger.error(f"  {error}")

    logger.info("")
    logger.info(f"Exit Code: {summary.exit_code}")
    logger.info(separator)

    # Status line for CI/CD pipeline parsing
    if summary.success:
        print("PIPELINE_STATUS=SUCCESS")
    else:
        print("PIPELINE_STATUS=FAILURE")

    if output_json:
        logger.info("--- BEGIN JSON SUMMARY ---")
        print(summary.to_json())
        logger.info("--- END JSON SUMMARY ---")


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point.

    Exit Codes:
        0 - All operations succeeded (skipped renewals count as success)
        1 - One or more operations failed
        2 - Configuration error

    Returns:
        Exit code
    """
    args = parse_arguments(argv)

    logger = setup_logger(
        verbose=args.verbose,
        use_colors=not args.no_color,
        log_file=args.log_file,
    )

    logger.info("CDN Certificate Auto-Renewal")
    logger.info("=" * 50)

    summary = ExecutionSummary(
        task=f"{args.group} {args.action}",
        dry_run=args.dry_run,
        use_staging=args.use_staging,
    )

    if args.dry_run:
        logger.warning("DRY RUN MODE - No changes will be made")
    if args.use_staging:
        logger.warning("STAGING MODE - Using Let's Encrypt staging environment")
        logger.warning("Certificates issued will NOT be trusted by browsers")

    handler = COMMANDS[(args.group, args.action)]
    logger.section(f"Task: {summary.task}")

    try:
        config = load_config(args.config)
        apply_overrides(config, args)
        summary.dry_run = config.settings.dry_run
        summary.use_staging = config.acme.use_staging

        handler(args, Services(config), summary)

    except ConfigurationError as e:
        error_msg = f"Configuration error: {e}"
        logger.error(error_msg)
        summary.add_global_error(error_msg, exit_code=2)

    except RenewalError as e:
        summary.add_result(e.to_result())

    except (ApiError, IssuanceError, OSError, ValueError) as e:
        error_msg = f"{summary.task} failed: {e}"
        logger.failure(error_msg)
        summary.add_global_error(error_msg)

    except KeyboardInterrupt:
        logger.error("Interrupted")
        summary.add_global_error("Interrupted by user", exit_code=130)

    summary.finalize()
    print_execution_summary(summary, output_json=args.json_summary)

    return summary.exit_code


def run() -> None:
    """Console script entry point."""
    sys.exit(main())


if __name__ == "__main__":
    sys.exit(main())
