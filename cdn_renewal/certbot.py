"""
Certbot issuance wrapper.

Runs Certbot to obtain a certificate for a single domain with a DNS-01
challenge plugin (certbot-dns-<provider>). The deploy hook used to learn
where Certbot stored the result is an internal detail; callers get the
key, leaf and chain paths back directly.
"""

import os
import shutil
import subprocess
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from .config_loader import AcmeSettings, ConfigurationError
from .helpers import certificate_not_after, private_temp_file
from .logger import get_logger


class IssuanceError(Exception):
    """Raised when Certbot fails to issue a certificate."""
    pass


# Let's Encrypt ACME server URLs
LETSENCRYPT_PRODUCTION_URL = "https://acme-v02.api.letsencrypt.org/directory"
LETSENCRYPT_STAGING_URL = "https://acme-staging-v02.api.letsencrypt.org/directory"

# Credential INI key per certbot-dns-<plugin>; others use dns_<plugin>_token.
DNS_PLUGIN_CREDENTIAL_KEYS: Dict[str, str] = {
    "digitalocean": "dns_digitalocean_token",
    "cloudflare": "dns_cloudflare_api_token",
    "linode": "dns_linode_key",
    "dnsimple": "dns_dnsimple_token",
    "dnsmadeeasy": "dns_dnsmadeeasy_api_key",
    "gehirn": "dns_gehirn_api_token",
    "luadns": "dns_luadns_token",
    "nsone": "dns_nsone_api_key",
    "ovh": "dns_ovh_application_key",
    "sakuracloud": "dns_sakuracloud_api_token",
}

LINEAGE_ENV_VAR = "CDN_RENEWAL_LINEAGE_FILE"

DEPLOY_HOOK_SCRIPT = f"""\
#!/bin/sh
# Records where Certbot stored the freshly issued certificate.
printf '%s' "$RENEWED_LINEAGE" > "${LINEAGE_ENV_VAR}"
"""


@dataclass
class IssuedMaterial:
    """Location of a freshly issued certificate in Certbot's live directory."""
    domain: str
    lineage: str

    @property
    def private_key_path(self) -> str:
        return os.path.join(self.lineage, "privkey.pem")

    @property
    def leaf_path(self) -> str:
        return os.path.join(self.lineage, "cert.pem")

    @property
    def chain_path(self) -> str:
        return os.path.join(self.lineage, "chain.pem")

    @property
    def fullchain_path(self) -> str:
        return os.path.join(self.lineage, "fullchain.pem")

    def read_private_key(self) -> bytes:
        return Path(self.private_key_path).read_bytes()

    def read_leaf(self) -> bytes:
        return Path(self.leaf_path).read_bytes()

    def read_chain(self) -> bytes:
        return Path(self.chain_path).read_bytes()

    def not_after(self) -> datetime:
        return certificate_not_after(self.read_leaf())


def credential_key(dns_plugin: str) -> str:
    """INI key that carries the API credential for a DNS plugin."""
    return DNS_PLUGIN_CREDENTIAL_KEYS.get(dns_plugin, f"dns_{dns_plugin}_token")


class CertbotAuthority:
    """
    Issues certificates through Certbot and a DNS-01 plugin.
    """

    def __init__(self, acme: AcmeSettings):
        self.acme = acme
        self.logger = get_logger()

    def check_preconditions(self) -> str:
        """
        Verify Certbot, DNS credentials and contact email are available.

        Runs before any issuance, so a missing prerequisite is reported as
        a configuration problem instead of a failed renewal step.

        Returns:
            Path to the Certbot executable

        Raises:
            ConfigurationError: If anything required is missing
        """
        certbot_path = shutil.which("certbot")
        if not certbot_path:
            raise ConfigurationError(
                "Certbot not found. Install with: pip install certbot "
                f"certbot-dns-{self.acme.dns_plugin}"
            )
        if not self.acme.dns_credentials:
            raise ConfigurationError(
                f"DNS credentials for plugin '{self.acme.dns_plugin}' not configured "
                "(acme.dns_credentials)"
            )
        if not self.acme.email:
            raise ConfigurationError("Contact email not configured (acme.email)")
        return certbot_path

    def _build_command(
        self,
        certbot_path: str,
        domain: str,
        dns_plugin: str,
        credentials_path: str,
        hook_path: str,
    ) -> List[str]:
        acme = self.acme

        if acme.use_staging:
            acme_server = LETSENCRYPT_STAGING_URL
            self.logger.info("Using Let's Encrypt STAGING environment")
        else:
            acme_server = LETSENCRYPT_PRODUCTION_URL
            self.logger.debug("Using Let's Encrypt production environment")

        cmd = [
            certbot_path, "certonly",
            "--non-interactive",
            "--agree-tos",
            "--force-renewal",
            "--server", acme_server,
            "--email", acme.email,
            "--work-dir", acme.certbot_work_dir,
            "--logs-dir", acme.certbot_logs_dir,
            "--config-dir", acme.certbot_config_dir,
            "--authenticator", f"dns-{dns_plugin}",
            f"--dns-{dns_plugin}-credentials", credentials_path,
            f"--dns-{dns_plugin}-propagation-seconds", str(acme.propagation_seconds),
            "--cert-name", domain.replace("*.", ""),
            "--deploy-hook", hook_path,
            "-d", domain,
            "--key-type", acme.key_type,
        ]

        if acme.key_type == "rsa":
            cmd.extend(["--rsa-key-size", str(acme.rsa_key_size)])
        else:
            cmd.extend(["--elliptic-curve", acme.elliptic_curve])

        return cmd

    def issue(self, domain: str, dns_plugin: Optional[str] = None) -> IssuedMaterial:
        """
        Obtain a new certificate for a domain.

        Args:
            domain: Domain to issue for
            dns_plugin: DNS plugin name, defaults to the configured one

        Returns:
            IssuedMaterial pointing at the new key, leaf and chain

        Raises:
            ConfigurationError: If Certbot, credentials or email are missing
            IssuanceError: If Certbot fails or reports no material
        """
        certbot_path = self.check_preconditions()
        dns_plugin = dns_plugin or self.acme.dns_plugin

        for dir_path in (self.acme.certbot_work_dir, self.acme.certbot_logs_dir,
                         self.acme.certbot_config_dir):
            Path(dir_path).mkdir(parents=True, exist_ok=True)

        credentials = f"{credential_key(dns_plugin)} = {self.acme.dns_credentials}\n"

        with private_temp_file("dns_credentials_", ".ini", credentials) as credentials_path, \
                private_temp_file(
                    "deploy_hook_", ".sh", DEPLOY_HOOK_SCRIPT, mode=0o700,
                    directory=self.acme.certbot_work_dir,
                ) as hook_path, \
                private_temp_file("lineage_", ".txt") as lineage_path:

            cmd = self._build_command(
                certbot_path, domain, dns_plugin, credentials_path, hook_path
            )
            env = os.environ.copy()
            env[LINEAGE_ENV_VAR] = lineage_path

            self.logger.info(f"Requesting certificate for {domain} via dns-{dns_plugin}")
            self.logger.debug(f"Running: {' '.join(cmd)}")

            try:
                result = subprocess.run(
                    cmd,
                    env=env,
                    capture_output=True,
                    text=True,
                    timeout=self.acme.certbot_timeout,
                )
            except subprocess.TimeoutExpired:
                raise IssuanceError(
                    f"Certbot timed out after {self.acme.certbot_timeout}s for {domain}"
                )

            if result.returncode != 0:
                self.logger.error(f"Certbot stderr: {result.stderr}")
                raise IssuanceError(
                    f"Certbot exited with status {result.returncode}: "
                    f"{_tail(result.stderr)}"
                )

            self.logger.debug(f"Certbot stdout: {result.stdout}")

            lineage = Path(lineage_path).read_text().strip()

        if not lineage:
            raise IssuanceError(f"Certbot reported no issued certificate for {domain}")

        material = IssuedMaterial(domain=domain, lineage=lineage)
        for path in (material.private_key_path, material.leaf_path, material.chain_path):
            if not os.path.isfile(path):
                raise IssuanceError(f"Issued certificate file missing: {path}")

        self.logger.info(f"Certificate for {domain} stored in {lineage}")
        return material


def _tail(text: str, lines: int = 5) -> str:
    return " | ".join(text.strip().splitlines()[-lines:])
