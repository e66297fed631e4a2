"""
Certificate store operations.

Handles listing, retrieval, upload and deletion of certificate records at
the provider's certificate-management API. The store is always queried
fresh; nothing is cached locally.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from .helpers import parse_timestamp, pem_to_text
from .logger import get_logger
from .transport import ApiClient


@dataclass
class Certificate:
    """
    Certificate record from the store.

    Key material is never returned by the API; only metadata is kept.
    """
    id: str
    name: str
    not_after: Optional[datetime]
    type: str = "custom"
    state: str = ""
    sha1_fingerprint: str = ""
    dns_names: List[str] = field(default_factory=list)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Certificate":
        not_after = data.get("not_after")
        return cls(
            id=str(data["id"]),
            name=data.get("name") or "",
            not_after=parse_timestamp(not_after) if not_after else None,
            type=data.get("type") or "custom",
            state=data.get("state") or "",
            sha1_fingerprint=data.get("sha1_fingerprint") or "",
            dns_names=list(data.get("dns_names") or []),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "not_after": self.not_after.isoformat() if self.not_after else None,
            "type": self.type,
            "state": self.state,
            "sha1_fingerprint": self.sha1_fingerprint,
            "dns_names": self.dns_names,
        }


class CertificateStore:
    """Client for the certificates API."""

    def __init__(self, client: ApiClient, base_url: str):
        """
        Args:
            client: Authenticated API client
            base_url: API root, e.g. https://api.digitalocean.com/v2
        """
        self.client = client
        self.url = f"{base_url.rstrip('/')}/certificates"
        self.logger = get_logger()

    def list_certificates(self) -> List[Certificate]:
        return [
            Certificate.from_api(item)
            for item in self.client.paginate(self.url, "certificates")
        ]

    def get_certificate(self, certificate_id: str) -> Certificate:
        """
        Fetch one certificate record.

        Raises:
            NotFoundError: If the id does not exist
        """
        data = self.client.get(f"{self.url}/{certificate_id}")
        return Certificate.from_api(data["certificate"])

    def upload_certificate(
        self,
        name: str,
        private_key: bytes,
        leaf: bytes,
        chain: bytes,
    ) -> Certificate:
        """
        Register custom certificate material with the store.

        The PEM blobs are passed through unmodified; JSON encoding escapes
        their newlines for the single-line wire fields.

        Args:
            name: Certificate name
            private_key: PEM private key
            leaf: PEM leaf certificate
            chain: PEM intermediate chain

        Returns:
            The created certificate, including its newly assigned id
        """
        payload = {
            "name": name,
            "type": "custom",
            "private_key": pem_to_text(private_key),
            "leaf_certificate": pem_to_text(leaf),
            "certificate_chain": pem_to_text(chain),
        }
        data = self.client.post(self.url, payload)
        certificate = Certificate.from_api(data["certificate"])
        self.logger.info(f"Uploaded certificate {certificate.name} ({certificate.id})")
        return certificate

    def delete_certificate(self, certificate_id: str) -> None:
        """
        Delete a certificate record.

        Raises:
            NotFoundError: If the id does not exist (deleting twice fails)
        """
        self.client.delete(f"{self.url}/{certificate_id}")
        self.logger.info(f"Deleted certificate {certificate_id}")
