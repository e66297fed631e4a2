"""Shared fixtures for the CDN certificate renewal test suite."""

from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

# ---------------------------------------------------------------------------
# Make the project root importable without installing the package
# ---------------------------------------------------------------------------
_ROOT = str(Path(__file__).resolve().parent.parent)
if _ROOT not in sys.path:
    sys.path.insert(0, _ROOT)

from cdn_renewal.config_loader import parse_config  # noqa: E402
from cdn_renewal.cdn import CdnEndpoint  # noqa: E402
from cdn_renewal.certbot import IssuedMaterial  # noqa: E402
from cdn_renewal.certstore import Certificate  # noqa: E402
from cdn_renewal.transport import NotFoundError  # noqa: E402

NOW = datetime(2026, 10, 19, 12, 0, 0, tzinfo=timezone.utc)


def make_pem_material(domain: str = "example.com", days: int = 90) -> dict:
    """Generate a self-signed key, leaf and a second cert standing in for the chain."""
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)])
    leaf = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(NOW - timedelta(days=1))
        .not_valid_after(NOW + timedelta(days=days))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(domain)]), critical=False)
        .sign(key, hashes.SHA256())
    )
    issuer_name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "Test Intermediate")])
    chain = (
        x509.CertificateBuilder()
        .subject_name(issuer_name)
        .issuer_name(issuer_name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(NOW - timedelta(days=1))
        .not_valid_after(NOW + timedelta(days=365))
        .sign(key, hashes.SHA256())
    )
    return {
        "key": key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        ),
        "leaf": leaf.public_bytes(serialization.Encoding.PEM),
        "chain": chain.public_bytes(serialization.Encoding.PEM),
        "not_after": NOW + timedelta(days=days),
    }


@pytest.fixture(scope="session")
def pem_material() -> dict:
    return make_pem_material()


@pytest.fixture()
def lineage(tmp_path: Path, pem_material: dict) -> Path:
    """A Certbot-style live directory holding freshly issued material."""
    live = tmp_path / "live" / "example.com"
    live.mkdir(parents=True)
    (live / "privkey.pem").write_bytes(pem_material["key"])
    (live / "cert.pem").write_bytes(pem_material["leaf"])
    (live / "chain.pem").write_bytes(pem_material["chain"])
    (live / "fullchain.pem").write_bytes(pem_material["leaf"] + pem_material["chain"])
    return live


@pytest.fixture()
def config_data(tmp_path: Path) -> dict:
    return {
        "api": {
            "token": "do-test-token",
            "cdn_url": "https://api.example.test/v2/cdn",
            "certificates_url": "https://api.example.test/v2",
            "max_retries": 0,
        },
        "acme": {
            "email": "ops@example.com",
            "dns_plugin": "digitalocean",
            "dns_credentials": "dns-secret",
            "certbot_work_dir": str(tmp_path / "work"),
            "certbot_logs_dir": str(tmp_path / "logs"),
            "certbot_config_dir": str(tmp_path / "config"),
        },
    }


@pytest.fixture()
def config(config_data: dict):
    return parse_config(config_data)


# ---------------------------------------------------------------------------
# In-memory fakes of the three external systems, sharing one call log
# ---------------------------------------------------------------------------


class CallLog(list):
    def names(self) -> list:
        return [name for name, _ in self]

    def mutating(self) -> list:
        return [n for n in self.names() if n in ("issue", "upload", "rebind", "delete")]


class FakeCdn:
    def __init__(self, calls: CallLog, endpoints: list[CdnEndpoint]):
        self.calls = calls
        self.endpoints = {e.id: e for e in endpoints}
        self.fail_rebind: Exception | None = None

    def list_endpoints(self) -> list[CdnEndpoint]:
        self.calls.append(("list_endpoints", ()))
        return list(self.endpoints.values())

    def find_by_domain(self, domain: str) -> str:
        self.calls.append(("find_by_domain", (domain,)))
        for endpoint in self.endpoints.values():
            if endpoint.custom_domain == domain:
                return endpoint.id
        raise NotFoundError(message=f"No CDN endpoint has custom domain '{domain}'")

    def get_endpoint(self, endpoint_id: str) -> CdnEndpoint:
        self.calls.append(("get_endpoint", (endpoint_id,)))
        if endpoint_id not in self.endpoints:
            raise NotFoundError("GET", f"/endpoints/{endpoint_id}")
        endpoint = self.endpoints[endpoint_id]
        return CdnEndpoint(**endpoint.to_dict())

    def rebind(self, endpoint_id: str, certificate_id: str) -> CdnEndpoint:
        self.calls.append(("rebind", (endpoint_id, certificate_id)))
        if self.fail_rebind:
            raise self.fail_rebind
        self.endpoints[endpoint_id].certificate_id = certificate_id
        return CdnEndpoint(**self.endpoints[endpoint_id].to_dict())


class FakeStore:
    def __init__(self, calls: CallLog, certificates: list[Certificate]):
        self.calls = calls
        self.certificates = {c.id: c for c in certificates}
        self.uploads: list[dict] = []
        self._next = 100

    def get_certificate(self, certificate_id: str) -> Certificate:
        self.calls.append(("get_certificate", (certificate_id,)))
        if certificate_id not in self.certificates:
            raise NotFoundError("GET", f"/certificates/{certificate_id}")
        return self.certificates[certificate_id]

    def upload_certificate(self, name, private_key, leaf, chain) -> Certificate:
        self.calls.append(("upload", (name,)))
        self._next += 1
        certificate = Certificate(id=f"cert-{self._next}", name=name, not_after=None)
        self.certificates[certificate.id] = certificate
        self.uploads.append({"name": name, "key": private_key, "leaf": leaf, "chain": chain})
        return certificate

    def delete_certificate(self, certificate_id: str) -> None:
        self.calls.append(("delete", (certificate_id,)))
        if certificate_id not in self.certificates:
            raise NotFoundError("DELETE", f"/certificates/{certificate_id}")
        del self.certificates[certificate_id]


class FakeAuthority:
    def __init__(self, calls: CallLog, lineage: Path):
        self.calls = calls
        self.lineage = lineage
        self.error: Exception | None = None
        self.precondition_error: Exception | None = None
        self.precondition_checks = 0

    def check_preconditions(self) -> str:
        self.precondition_checks += 1
        if self.precondition_error:
            raise self.precondition_error
        return "/usr/bin/certbot"

    def issue(self, domain: str, dns_plugin: str | None = None) -> IssuedMaterial:
        self.calls.append(("issue", (domain,)))
        if self.error:
            raise self.error
        return IssuedMaterial(domain=domain, lineage=str(self.lineage))


@pytest.fixture()
def calls() -> CallLog:
    return CallLog()


@pytest.fixture()
def fake_cdn(calls) -> FakeCdn:
    return FakeCdn(calls, [
        CdnEndpoint(id="cdn-1", custom_domain="example.com", certificate_id="cert-9"),
    ])


@pytest.fixture()
def fake_store(calls) -> FakeStore:
    return FakeStore(calls, [
        Certificate(id="cert-9", name="example-com-old", not_after=NOW + timedelta(days=10)),
    ])


@pytest.fixture()
def fake_authority(calls, lineage) -> FakeAuthority:
    return FakeAuthority(calls, lineage)
