"""
Renewal orchestration.

Runs the per-endpoint renewal sequence:

    resolve_endpoint -> evaluate -> skip
                                 -> issue -> upload -> rebind -> retire_old

Every step is a blocking call to one external system. The first failure
stops the endpoint's run and raises RenewalError naming the step. Steps that
already completed are never rolled back.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING

from .certbot import IssuanceError, IssuedMaterial
from .helpers import (
    RENEWAL_THRESHOLD_SECONDS,
    certificate_name,
    certificate_not_after,
    format_days_remaining,
    needs_renewal,
    seconds_remaining,
    utcnow,
)
from .logger import get_logger
from .transport import ApiError, UnexpectedStatusError

if TYPE_CHECKING:
    from .cdn import CdnDirectory
    from .certbot import CertbotAuthority
    from .certstore import CertificateStore
    from .notification import NotificationManager


class RenewalStep(Enum):
    """Steps of an endpoint renewal, in execution order."""
    RESOLVE_ENDPOINT = "resolve_endpoint"
    EVALUATE = "evaluate"
    ISSUE = "issue"
    UPLOAD = "upload"
    REBIND = "rebind"
    RETIRE_OLD = "retire_old"


class RenewalStatus(Enum):
    """Outcome of an endpoint renewal."""
    RENEWED = "renewed"
    SKIPPED = "skipped"
    DRY_RUN = "dry_run"
    FAILED = "failed"


# ConfigurationError is not a step failure; it propagates to the caller.
STEP_ERRORS = (ApiError, IssuanceError, OSError, ValueError, KeyError)


@dataclass
class RenewalResult:
    """Result of one endpoint's pass through the renewal sequence."""
    endpoint_id: str
    domain: str
    status: RenewalStatus
    message: str
    old_certificate_id: str = ""
    new_certificate_id: str = ""
    seconds_remaining: Optional[int] = None
    not_after: Optional[datetime] = None
    new_not_after: Optional[datetime] = None
    failed_step: Optional[RenewalStep] = None
    completed_steps: List[RenewalStep] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "endpoint_id": self.endpoint_id,
            "domain": self.domain,
            "status": self.status.value.upper(),
            "message": self.message,
            "old_certificate_id": self.old_certificate_id or None,
            "new_certificate_id": self.new_certificate_id or None,
            "days_remaining": (
                format_days_remaining(self.seconds_remaining)
                if self.seconds_remaining is not None else None
            ),
            "not_after": self.not_after.isoformat() if self.not_after else None,
            "new_not_after": self.new_not_after.isoformat() if self.new_not_after else None,
            "failed_step": self.failed_step.value if self.failed_step else None,
            "completed_steps": [s.value for s in self.completed_steps],
        }


class RenewalError(Exception):
    """
    Raised when a renewal step fails.

    Carries the failing step, the underlying provider error, and what had
    already been changed before the failure.
    """

    def __init__(
        self,
        endpoint_id: str,
        step: RenewalStep,
        cause: Exception,
        completed_steps: List[RenewalStep],
        domain: str = "",
        old_certificate_id: str = "",
        new_certificate_id: str = "",
    ):
        self.endpoint_id = endpoint_id
        self.step = step
        self.cause = cause
        self.completed_steps = list(completed_steps)
        self.domain = domain
        self.old_certificate_id = old_certificate_id
        self.new_certificate_id = new_certificate_id
        super().__init__(
            f"Renewal of endpoint {endpoint_id or domain} failed at "
            f"{step.value}: {_describe_cause(cause)}"
        )

    @property
    def status_code(self) -> Optional[int]:
        """Provider status code when the cause was an HTTP status failure."""
        if isinstance(self.cause, UnexpectedStatusError):
            return self.cause.status_code
        return None

    @property
    def orphaned_state(self) -> Optional[str]:
        """
        Describe external state left behind by completed steps, if any.

        Neither case is data loss; the next pass starts from whatever
        certificate the endpoint is bound to.
        """
        if RenewalStep.REBIND in self.completed_steps:
            return (
                f"endpoint is bound to new certificate {self.new_certificate_id}; "
                f"old certificate {self.old_certificate_id} was not deleted"
            )
        if RenewalStep.UPLOAD in self.completed_steps:
            return (
                f"new certificate {self.new_certificate_id} was uploaded but is not bound; "
                f"endpoint still uses {self.old_certificate_id}"
            )
        return None

    def to_result(self) -> RenewalResult:
        message = str(self)
        if self.orphaned_state:
            message = f"{message} ({self.orphaned_state})"
        return RenewalResult(
            endpoint_id=self.endpoint_id,
            domain=self.domain,
            status=RenewalStatus.FAILED,
            message=message,
            old_certificate_id=self.old_certificate_id,
            new_certificate_id=self.new_certificate_id,
            failed_step=self.step,
            completed_steps=self.completed_steps,
        )


class BatchAbortedError(Exception):
    """Raised when a batch stops at its first failing endpoint."""

    def __init__(self, error: RenewalError, results: List[RenewalResult]):
        self.error = error
        self.results = list(results)
        super().__init__(f"Batch aborted: {error}")


@dataclass
class _EndpointRun:
    endpoint_id: str
    domain: str = ""
    old_certificate_id: str = ""
    new_certificate_id: str = ""
    new_not_after: Optional[datetime] = None
    completed: List[RenewalStep] = field(default_factory=list)


class RenewalOrchestrator:
    """
    Ties the CDN directory, certificate store and certificate authority
    together for one pass over one or more endpoints.
    """

    def __init__(
        self,
        cdn: "CdnDirectory",
        store: "CertificateStore",
        authority: "CertbotAuthority",
        dry_run: bool = False,
        continue_on_error: bool = False,
        clock: Optional[Callable[[], datetime]] = None,
        notification_manager: Optional["NotificationManager"] = None,
    ):
        """
        Args:
            cdn: CDN endpoint directory
            store: Certificate store
            authority: Certificate authority adapter
            dry_run: Evaluate only; never issue, upload, rebind or delete
            continue_on_error: In renew_all, record failures and keep going
                instead of aborting the batch
            clock: Returns the current UTC instant
            notification_manager: Optional notifier for renewals and failures
        """
        self.cdn = cdn
        self.store = store
        self.authority = authority
        self.dry_run = dry_run
        self.continue_on_error = continue_on_error
        self.clock = clock or utcnow
        self.notification_manager = notification_manager
        self.logger = get_logger()

    def renew_by_id(self, endpoint_id: str) -> RenewalResult:
        """
        Run the renewal sequence for one endpoint.

        Raises:
            RenewalError: If any step fails
        """
        self._check_authority()
        return self._renew(_EndpointRun(endpoint_id=endpoint_id))

    def renew_by_domain(self, domain: str) -> RenewalResult:
        """
        Resolve the endpoint serving a custom domain, then renew it.

        Raises:
            RenewalError: If the domain is unknown or any step fails
        """
        self._check_authority()
        run = _EndpointRun(endpoint_id="", domain=domain)
        try:
            endpoint_id = self.cdn.find_by_domain(domain)
        except STEP_ERRORS as e:
            error = RenewalError("", RenewalStep.RESOLVE_ENDPOINT, e, [], domain=domain)
            self._report_failure(error)
            raise error from e
        run.endpoint_id = endpoint_id
        return self._renew(run)

    def renew_all(self) -> List[RenewalResult]:
        """
        Renew every endpoint sequentially, in listing order.

        Returns:
            One result per endpoint

        Raises:
            RenewalError: If the endpoints cannot be listed
            BatchAbortedError: On the first endpoint failure, unless
                continue_on_error is set
        """
        self._check_authority()
        try:
            endpoints = self.cdn.list_endpoints()
        except STEP_ERRORS as e:
            error = RenewalError("", RenewalStep.RESOLVE_ENDPOINT, e, [])
            self._report_failure(error)
            raise error from e

        self.logger.info(f"Found {len(endpoints)} CDN endpoint(s)")

        results: List[RenewalResult] = []
        for endpoint in endpoints:
            try:
                results.append(self._renew(_EndpointRun(endpoint_id=endpoint.id)))
            except RenewalError as e:
                if not self.continue_on_error:
                    raise BatchAbortedError(e, results) from e
                results.append(e.to_result())
        return results

    def _check_authority(self) -> None:
        """
        Fail fast on a missing Certbot, DNS credential or contact email.

        Skipped in dry run, which never issues.

        Raises:
            ConfigurationError: If the authority cannot issue
        """
        if not self.dry_run:
            self.authority.check_preconditions()

    def _renew(self, run: _EndpointRun) -> RenewalResult:
        self.logger.subsection(f"Endpoint {run.endpoint_id}")
        try:
            result = self._run_sequence(run)
        except RenewalError as e:
            self._report_failure(e)
            raise

        if result.status == RenewalStatus.RENEWED:
            self.logger.success(f"{run.endpoint_id} ({run.domain}): {result.message}")
            self._notify(result)
        else:
            self.logger.info(f"  [{run.endpoint_id}] {result.status.value.upper()}: {result.message}")
        return result

    def _run_sequence(self, run: _EndpointRun) -> RenewalResult:
        endpoint = self._step(run, RenewalStep.RESOLVE_ENDPOINT, self.cdn.get_endpoint, run.endpoint_id)
        run.domain = endpoint.custom_domain
        run.old_certificate_id = endpoint.certificate_id

        if not endpoint.custom_domain:
            return self._result(run, RenewalStatus.SKIPPED, "No custom domain configured")
        if not endpoint.certificate_id:
            return self._result(run, RenewalStatus.SKIPPED, "No certificate bound to endpoint")

        certificate = self._step(run, RenewalStep.EVALUATE, self._evaluate, run.old_certificate_id)
        remaining = seconds_remaining(certificate.not_after, self.clock())
        days = format_days_remaining(remaining)
        self.logger.step(
            run.endpoint_id, RenewalStep.EVALUATE.value,
            f"certificate {certificate.id} expires {certificate.not_after.isoformat()} ({days} days)",
        )

        if not needs_renewal(remaining, RENEWAL_THRESHOLD_SECONDS):
            return self._result(
                run, RenewalStatus.SKIPPED,
                f"Not expiring soon ({days} days remaining)",
                remaining, certificate.not_after,
            )

        if self.dry_run:
            return self._result(
                run, RenewalStatus.DRY_RUN,
                f"Dry run - would renew ({days} days remaining)",
                remaining, certificate.not_after,
            )

        material = self._step(run, RenewalStep.ISSUE, self.authority.issue, run.domain)

        new_certificate = self._step(run, RenewalStep.UPLOAD, self._upload, run, material)
        run.new_certificate_id = new_certificate.id

        self._step(run, RenewalStep.REBIND, self.cdn.rebind, run.endpoint_id, new_certificate.id)
        self._step(run, RenewalStep.RETIRE_OLD, self.store.delete_certificate, run.old_certificate_id)

        return self._result(
            run, RenewalStatus.RENEWED,
            f"Replaced certificate {run.old_certificate_id} with {new_certificate.id}",
            remaining, certificate.not_after,
        )

    def _evaluate(self, certificate_id: str):
        certificate = self.store.get_certificate(certificate_id)
        if certificate.not_after is None:
            raise ValueError(f"Certificate {certificate_id} has no expiry date")
        return certificate

    def _upload(self, run: _EndpointRun, material: IssuedMaterial):
        leaf = material.read_leaf()
        name = certificate_name(run.domain, leaf)
        run.new_not_after = certificate_not_after(leaf)
        return self.store.upload_certificate(
            name, material.read_private_key(), leaf, material.read_chain()
        )

    def _step(self, run: _EndpointRun, step: RenewalStep, func: Callable, *args):
        self.logger.debug(f"  [{run.endpoint_id}] {step.value}")
        try:
            value = func(*args)
        except STEP_ERRORS as e:
            raise RenewalError(
                run.endpoint_id, step, e, run.completed,
                domain=run.domain,
                old_certificate_id=run.old_certificate_id,
                new_certificate_id=run.new_certificate_id,
            ) from e
        run.completed.append(step)
        return value

    def _result(
        self,
        run: _EndpointRun,
        status: RenewalStatus,
        message: str,
        remaining: Optional[int] = None,
        not_after: Optional[datetime] = None,
    ) -> RenewalResult:
        return RenewalResult(
            endpoint_id=run.endpoint_id,
            domain=run.domain,
            status=status,
            message=message,
            old_certificate_id=run.old_certificate_id,
            new_certificate_id=run.new_certificate_id,
            seconds_remaining=remaining,
            not_after=not_after,
            new_not_after=run.new_not_after,
            completed_steps=list(run.completed),
        )

    def _report_failure(self, error: RenewalError) -> None:
        self.logger.failure(str(error))
        if error.orphaned_state:
            self.logger.warning(f"  Left behind: {error.orphaned_state}")
        self._notify(error.to_result())

    def _notify(self, result: RenewalResult) -> None:
        if self.notification_manager and self.notification_manager.is_enabled():
            self.notification_manager.notify(result)


def _describe_cause(cause: Exception) -> str:
    return str(cause) or type(cause).__name__
