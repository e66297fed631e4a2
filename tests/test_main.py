"""Tests for the command-line entry point."""

from __future__ import annotations

import json
from unittest.mock import MagicMock, patch

import pytest
import yaml

import main
from cdn_renewal.certbot import IssuedMaterial
from cdn_renewal.cdn import CdnEndpoint
from cdn_renewal.orchestrator import (
    BatchAbortedError,
    RenewalError,
    RenewalResult,
    RenewalStatus,
    RenewalStep,
)
from cdn_renewal.transport import UnexpectedStatusError


def _result(status: RenewalStatus, endpoint_id: str = "cdn-1") -> RenewalResult:
    return RenewalResult(endpoint_id=endpoint_id, domain="example.com", status=status, message=status.value)


@pytest.fixture()
def config_file(tmp_path, config_data):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(config_data))
    return str(path)


@pytest.fixture()
def services():
    with patch("main.Services") as cls:
        yield cls.return_value


class TestParseArguments:
    @pytest.mark.parametrize("argv", [
        ["cdn", "list"],
        ["cdn", "update", "cdn-1", "cert-2"],
        ["cert", "list"],
        ["cert", "get", "cert-2"],
        ["cert", "issue", "example.com"],
        ["cert", "upload", "example.com", "--key", "k", "--leaf", "l", "--chain", "c"],
        ["cert", "delete", "cert-2"],
        ["renew", "all"],
        ["renew", "domain", "example.com"],
        ["renew", "id", "cdn-1"],
    ])
    def test_every_command_has_a_handler(self, argv):
        args = main.parse_arguments(argv)
        assert (args.group, args.action) in main.COMMANDS

    def test_global_flags(self):
        args = main.parse_arguments(["--dry-run", "--use-staging", "--dns-plugin", "Cloudflare", "renew", "all"])
        assert args.dry_run and args.use_staging
        assert args.dns_plugin == "Cloudflare"

    def test_action_is_required(self):
        with pytest.raises(SystemExit):
            main.parse_arguments(["renew"])


class TestExecutionSummary:
    def test_counts_and_exit_code(self):
        summary = main.ExecutionSummary(task="renew all")
        summary.add_result(_result(RenewalStatus.RENEWED))
        summary.add_result(_result(RenewalStatus.SKIPPED, "cdn-2"))
        assert summary.success and summary.exit_code == 0

        summary.add_result(_result(RenewalStatus.FAILED, "cdn-3"))
        data = json.loads(summary.to_json())

        assert data["exit_code"] == 1
        assert data["summary"]["total_endpoints_evaluated"] == 3
        assert data["summary"]["total_renewed"] == 1
        assert data["summary"]["total_failed"] == 1
        assert [r["status"] for r in data["results"]] == ["RENEWED", "SKIPPED", "FAILED"]


class TestMain:
    def test_missing_config_is_exit_2(self, tmp_path, capsys):
        assert main.main(["--config", str(tmp_path / "missing.yaml"), "renew", "all"]) == 2
        assert "PIPELINE_STATUS=FAILURE" in capsys.readouterr().out

    def test_renew_all_success(self, config_file, services, capsys):
        services.orchestrator.renew_all.return_value = [
            _result(RenewalStatus.RENEWED),
            _result(RenewalStatus.SKIPPED, "cdn-2"),
        ]

        assert main.main(["--config", config_file, "renew", "all"]) == 0
        assert "PIPELINE_STATUS=SUCCESS" in capsys.readouterr().out

    def test_renew_all_aborted(self, config_file, services):
        error = RenewalError(
            "cdn-2", RenewalStep.ISSUE, RuntimeError("dns"), [RenewalStep.EVALUATE], domain="b.example.com"
        )
        services.orchestrator.renew_all.side_effect = BatchAbortedError(
            error, [_result(RenewalStatus.RENEWED)]
        )

        with patch("main.print_execution_summary") as printer:
            assert main.main(["--config", config_file, "renew", "all"]) == 1

        summary = printer.call_args.args[0]
        assert [r.status for r in summary.results] == [RenewalStatus.RENEWED, RenewalStatus.FAILED]
        assert summary.results[1].failed_step == RenewalStep.ISSUE

    def test_listing_failure_is_exit_1(self, config_file, services):
        cause = UnexpectedStatusError("GET", "https://api.example.test/v2/cdn/endpoints", 500, "oops")
        services.orchestrator.renew_all.side_effect = RenewalError(
            "", RenewalStep.RESOLVE_ENDPOINT, cause, []
        )

        assert main.main(["--config", config_file, "renew", "all"]) == 1

    def test_renew_by_domain(self, config_file, services):
        services.orchestrator.renew_by_domain.return_value = _result(RenewalStatus.DRY_RUN)

        assert main.main(["--config", config_file, "--dry-run", "renew", "domain", "example.com"]) == 0
        services.orchestrator.renew_by_domain.assert_called_once_with("example.com")

    def test_cdn_update_dry_run_makes_no_call(self, config_file, services):
        assert main.main(["--config", config_file, "--dry-run", "cdn", "update", "cdn-1", "cert-2"]) == 0
        services.cdn.rebind.assert_not_called()

    def test_cdn_list_json_summary(self, config_file, services, capsys):
        services.cdn.list_endpoints.return_value = [
            CdnEndpoint(id="cdn-1", custom_domain="example.com", certificate_id="cert-9"),
        ]

        assert main.main(["--config", config_file, "--json-summary", "cdn", "list"]) == 0
        out = capsys.readouterr().out
        assert '"custom_domain": "example.com"' in out

    def test_cert_upload_derives_name(self, config_file, services, tmp_path, pem_material):
        for name in ("key", "leaf", "chain"):
            (tmp_path / f"{name}.pem").write_bytes(pem_material[name])
        services.store.upload_certificate.return_value = MagicMock(to_dict=lambda: {})

        assert main.main([
            "--config", config_file, "cert", "upload", "example.com",
            "--key", str(tmp_path / "key.pem"),
            "--leaf", str(tmp_path / "leaf.pem"),
            "--chain", str(tmp_path / "chain.pem"),
        ]) == 0

        name = services.store.upload_certificate.call_args.args[0]
        assert name.startswith("example-com-")
        assert len(name) == len("example-com-") + 16

    def test_overrides_applied_to_config(self, config_file):
        with patch("main.Services") as cls:
            cls.return_value.orchestrator.renew_all.return_value = []
            main.main(["--config", config_file, "--continue-on-error", "--dns-plugin", "Cloudflare", "renew", "all"])

        config = cls.call_args.args[0]
        assert config.settings.continue_on_error is True
        assert config.acme.dns_plugin == "cloudflare"

    def test_missing_certbot_is_configuration_exit_2(self, config_file, fake_cdn, fake_store, calls, capsys):
        with patch.object(main.Services, "cdn", fake_cdn), \
                patch.object(main.Services, "store", fake_store), \
                patch("cdn_renewal.certbot.shutil.which", return_value=None):
            code = main.main(["--config", config_file, "renew", "id", "cdn-1"])

        assert code == 2
        assert calls == []
        out = capsys.readouterr().out
        assert "Configuration error: Certbot not found" in out
        assert "PIPELINE_STATUS=FAILURE" in out

    def test_cert_issue_reports_material_paths(self, config_file, services, lineage):
        services.authority.issue.return_value = IssuedMaterial(domain="example.com", lineage=str(lineage))

        with patch("main.print_execution_summary") as printer:
            assert main.main(["--config", config_file, "cert", "issue", "example.com"]) == 0

        data = printer.call_args.args[0].data[0]
        assert data["full_chain"] == str(lineage / "fullchain.pem")
        assert data["leaf_certificate"] == str(lineage / "cert.pem")
