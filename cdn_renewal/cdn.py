"""
CDN endpoint directory.

Lists CDN endpoints, resolves one by id or by custom domain, and rebinds
an endpoint to a different certificate. Endpoints themselves are created
and destroyed outside this tool.
"""

from dataclasses import dataclass, asdict
from typing import Any, Dict, Iterator, List, Optional

from .logger import get_logger
from .transport import ApiClient, NotFoundError


@dataclass
class CdnEndpoint:
    """A CDN endpoint as reported by the provider."""
    id: str
    custom_domain: str = ""
    certificate_id: str = ""
    origin: str = ""
    endpoint: str = ""
    ttl: Optional[int] = None
    created_at: Optional[str] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "CdnEndpoint":
        return cls(
            id=str(data["id"]),
            custom_domain=data.get("custom_domain") or "",
            certificate_id=data.get("certificate_id") or "",
            origin=data.get("origin") or "",
            endpoint=data.get("endpoint") or "",
            ttl=data.get("ttl"),
            created_at=data.get("created_at"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class CdnDirectory:
    """Client for the CDN endpoints API."""

    def __init__(self, client: ApiClient, base_url: str):
        """
        Args:
            client: Authenticated API client
            base_url: CDN API root, e.g. https://api.digitalocean.com/v2/cdn
        """
        self.client = client
        self.url = f"{base_url.rstrip('/')}/endpoints"
        self.logger = get_logger()

    def iter_endpoints(self) -> Iterator[CdnEndpoint]:
        """Yield every endpoint in the provider's listing order."""
        for item in self.client.paginate(self.url, "endpoints"):
            yield CdnEndpoint.from_api(item)

    def list_endpoints(self) -> List[CdnEndpoint]:
        endpoints = list(self.iter_endpoints())
        self.logger.debug(f"Listed {len(endpoints)} CDN endpoint(s)")
        return endpoints

    def find_by_domain(self, domain: str) -> str:
        """
        Resolve the id of the first endpoint serving a custom domain.

        The match is exact and case-sensitive.

        Raises:
            NotFoundError: If no endpoint has that custom domain
        """
        for endpoint in self.iter_endpoints():
            if endpoint.custom_domain == domain:
                self.logger.debug(f"Domain {domain} is served by endpoint {endpoint.id}")
                return endpoint.id
        raise NotFoundError(message=f"No CDN endpoint has custom domain '{domain}'")

    def get_endpoint(self, endpoint_id: str) -> CdnEndpoint:
        data = self.client.get(f"{self.url}/{endpoint_id}")
        return CdnEndpoint.from_api(data["endpoint"])

    def rebind(self, endpoint_id: str, certificate_id: str) -> CdnEndpoint:
        """
        Point an endpoint at a different certificate.

        Returns:
            The updated endpoint
        """
        data = self.client.put(
            f"{self.url}/{endpoint_id}",
            {"certificate_id": certificate_id},
        )
        endpoint = CdnEndpoint.from_api(data["endpoint"])
        self.logger.info(f"Endpoint {endpoint_id} now uses certificate {endpoint.certificate_id}")
        return endpoint
