#!/usr/bin/env python3
"""
S3 Account Finder - Find the AWS account that owns a publicly reachable S3 bucket.

Creates a throwaway IAM role in your own account that only you can assume,
then for each candidate account ID attaches an inline policy which allows S3
access only when ``s3:ResourceAccount`` equals that candidate. The role is
assumed and the target bucket is listed: a successful listing confirms the
candidate as the bucket owner, an access denied response rules it out.
The role and its inline policies are deleted before the tool exits, whatever
the outcome.

Usage:
    python s3accountfinder.py my-bucket --account 111111111111
    python s3accountfinder.py my-bucket/some/prefix --accounts-file accounts.yaml
    python s3accountfinder.py my-bucket --org-accounts --delete-existing-role
"""

from __future__ import annotations

import argparse
import enum
import json
import os
import re
import signal
import sys
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, TypeVar

import boto3
import requests
import yaml
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

__version__ = "0.1.0"

REFERENCE_DATA_URL = (
    "https://raw.githubusercontent.com/fwdcloudsec/known_aws_accounts/main/accounts.yaml"
)
ACCOUNT_ID_PATTERN = re.compile(r"^\d{12}$")

DEFAULT_ROLE_NAME = "s3-account-finder-role"
SESSION_NAME = "s3-account-finder-session"
CONDITION_POLICY_NAME = "S3EnumerationPolicy"
POLICY_VERSION = "2012-10-17"
OWNER_CONDITION_KEY = "s3:ResourceAccount"
PROBE_ACTIONS = ("s3:ListBucket", "s3:GetObject")

MAX_ATTEMPTS = 3
BASE_DELAY = 1.0
MAX_DELAY = 30.0
CALL_SPACING = 0.1

RETRYABLE_ERROR_CODES = frozenset(
    {
        "RequestTimeout",
        "RequestTimeoutException",
        "ServiceUnavailable",
        "Throttling",
        "ThrottlingException",
        "TooManyRequests",
        "TooManyRequestsException",
        "RequestLimitExceeded",
        "SlowDown",
        "RequestTimeTooSkewed",
        "ProvisionedThroughputExceededException",
        "InternalError",
        "503",
    }
)
ACCESS_DENIED_CODES = frozenset({"AccessDenied", "AllAccessDisabled", "403"})
EXPIRED_TOKEN_CODES = frozenset({"ExpiredToken", "ExpiredTokenException", "TokenRefreshRequired"})
CONNECTION_ERRORS = (
    EndpointConnectionError,
    ConnectTimeoutError,
    ReadTimeoutError,
    ConnectionClosedError,
)

T = TypeVar("T")

console = Console()


# --------------------------------------------------------------------------- #
# Errors
# --------------------------------------------------------------------------- #


class FinderError(Exception):
    """Base class for every failure raised while probing for a bucket owner.

    ``teardown_error`` is set when cleaning up the ephemeral role also failed,
    so the cleanup warning travels with the primary error instead of hiding it.
    """

    teardown_error: TeardownFailure | None = None


class UsageError(FinderError):
    """Invalid input or misuse of the API."""


class NoCandidates(UsageError):
    """The candidate account list is empty."""


class ProvisionFailure(FinderError):
    """IAM refused or failed to create, modify or delete the ephemeral role."""


class PermissionDenied(ProvisionFailure):
    """The operator's credentials lack the IAM permissions the run needs."""


class AlreadyExists(ProvisionFailure):
    """A role with the requested name already exists."""


class AssumeFailure(FinderError):
    """STS could not identify the caller or issue credentials for the role."""


class ProbeTransient(FinderError):
    """Throttling, timeout or service-unavailable response from S3."""


class CredentialsExpired(FinderError):
    """S3 rejected the assumed role session as expired."""


class ProbeDenied(FinderError):
    """S3 denied the probe. A negative answer for the candidate, not a failure."""


class ProbeFatal(FinderError):
    """The probe failed for a reason unrelated to the tested condition."""


class RetriesExhausted(FinderError):
    """Every attempt of a retryable operation failed."""

    def __init__(self, attempts: int, last_error: BaseException):
        super().__init__(f"operation failed after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class TeardownFailure(FinderError):
    """The ephemeral role could not be deleted. Reported, never fatal."""


class Cancelled(FinderError):
    """The run was cancelled by the operator."""


# --------------------------------------------------------------------------- #
# Data model
# --------------------------------------------------------------------------- #


class OnConflict(enum.Enum):
    REUSE = "reuse"
    REPLACE = "replace"
    FAIL = "fail"


class Classification(enum.Enum):
    RETRYABLE = "retryable"
    FATAL = "fatal"


class Outcome(enum.Enum):
    GRANTED = "granted"
    DENIED = "denied"
    INCONCLUSIVE = "inconclusive"


class Verdict(enum.Enum):
    CONFIRMED = "confirmed"
    EXCLUDED = "excluded"
    INCONCLUSIVE = "inconclusive"


class ProtocolState(enum.Enum):
    IDLE = "idle"
    PROVISIONED = "provisioned"
    POLICY_ATTACHED = "policy_attached"
    EXCHANGED = "exchanged"
    PROBE_ISSUED = "probe_issued"
    EVALUATED = "evaluated"
    TORN_DOWN = "torn_down"


@dataclass(frozen=True)
class S3Target:
    bucket: str
    prefix: str = ""

    @classmethod
    def parse(cls, path: str) -> S3Target:
        """Parse ``bucket``, ``bucket/prefix`` or ``s3://bucket/prefix``."""
        if path.startswith("s3://"):
            path = path[len("s3://"):]
        bucket, _, prefix = path.partition("/")
        if not bucket:
            raise UsageError("Invalid path: bucket name cannot be empty")
        return cls(bucket=bucket, prefix=prefix)

    def __str__(self) -> str:
        return f"{self.bucket}/{self.prefix}" if self.prefix else self.bucket


@dataclass
class EphemeralIdentity:
    name: str
    arn: str
    trusted_principal: str
    attached_statement_name: str | None = None


@dataclass(frozen=True)
class ConditionPolicy:
    sid: str
    effect: str
    actions: tuple[str, ...]
    resource: str
    condition: dict[str, dict[str, Any]]

    def to_document(self) -> dict[str, Any]:
        return {
            "Version": POLICY_VERSION,
            "Statement": [
                {
                    "Sid": self.sid,
                    "Effect": self.effect,
                    "Action": list(self.actions),
                    "Resource": self.resource,
                    "Condition": self.condition,
                }
            ],
        }


@dataclass(frozen=True)
class ProbeAttempt:
    candidate_account_id: str
    outcome: Outcome
    timestamp: datetime
    error: BaseException | None = None
    object_keys: tuple[str, ...] = ()


@dataclass
class RetryState:
    attempt_number: int = 0
    last_error: BaseException | None = None
    next_delay: float = 0.0


@dataclass
class ProbeSettings:
    """Tunables for one probe run.

    ``settle_delay`` is how long to wait after attaching a condition policy
    before probing; IAM changes take a few seconds to propagate and probing
    too early yields stale denials. ``max_consecutive_inconclusive`` of 0
    disables aborting on repeated inconclusive results. The role is assumed
    again once its session is within ``credential_refresh_margin`` seconds
    of expiry.
    """

    max_consecutive_inconclusive: int = 3
    settle_delay: float = 0.0
    max_keys: int = 1000
    credential_refresh_margin: float = 300.0


@dataclass
class ProbeReport:
    target: S3Target
    verdict: Verdict
    attempts: list[ProbeAttempt]
    owner: str | None = None
    aborted: bool = False
    teardown_error: TeardownFailure | None = None

    @property
    def summary(self) -> str:
        if self.verdict is Verdict.CONFIRMED:
            return f"Target ownership confirmed: {self.target} is owned by account {self.owner}"
        if self.verdict is Verdict.EXCLUDED:
            return f"Target ownership excluded for all {len(self.attempts)} supplied candidates"
        if self.aborted:
            return "Run aborted - too many consecutive inconclusive probes"
        return "Run inconclusive - some candidates could not be evaluated"


# --------------------------------------------------------------------------- #
# AWS plumbing
# --------------------------------------------------------------------------- #


def error_code(exc: BaseException) -> str | None:
    """Return the AWS error code of a botocore ClientError, if any."""
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code")
    return None


def classify_aws_error(exc: BaseException) -> Classification:
    """Throttling, timeouts and connection drops are worth retrying; nothing else is."""
    if isinstance(exc, (ProbeTransient,) + CONNECTION_ERRORS):
        return Classification.RETRYABLE
    if error_code(exc) in RETRYABLE_ERROR_CODES:
        return Classification.RETRYABLE
    return Classification.FATAL


def classify_assume_error(exc: BaseException) -> Classification:
    # A freshly created role is not assumable until its trust policy propagates.
    if error_code(exc) == "AccessDenied":
        return Classification.RETRYABLE
    return classify_aws_error(exc)


@dataclass
class AwsTransport:
    """Client settings shared by every AWS client created during a run.

    botocore's own retries are reduced to a single attempt because the
    ResilientExecutor owns retrying.
    """

    verify: bool | None = None
    proxy: str | None = None
    connect_timeout: float = 10
    read_timeout: float = 30

    def client_config(self) -> Config:
        proxies = {"http": self.proxy, "https": self.proxy} if self.proxy else None
        return Config(
            connect_timeout=self.connect_timeout,
            read_timeout=self.read_timeout,
            proxies=proxies,
            retries={"max_attempts": 1, "mode": "standard"},
        )

    def client(self, session: boto3.Session, service: str) -> Any:
        kwargs: dict[str, Any] = {"config": self.client_config()}
        if self.verify is not None:
            kwargs["verify"] = self.verify
        return session.client(service, **kwargs)


# --------------------------------------------------------------------------- #
# Resilient executor
# --------------------------------------------------------------------------- #


class ResilientExecutor:
    """Run remote calls with bounded exponential backoff and self-throttling.

    Every call issued through one executor is spaced at least ``spacing``
    seconds after the previous call returned. Retryable failures are retried
    up to ``max_attempts`` attempts in total, waiting
    ``min(base_delay * 2 ** (retry - 1), max_delay)`` before each retry.
    Setting ``cancel_event`` stops the executor at its next check: before
    every sleep and before every attempt.
    """

    def __init__(
        self,
        max_attempts: int = MAX_ATTEMPTS,
        base_delay: float = BASE_DELAY,
        max_delay: float = MAX_DELAY,
        spacing: float = CALL_SPACING,
        cancel_event: threading.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
        wait: Callable[[float], bool] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.spacing = spacing
        self.cancel_event = cancel_event or threading.Event()
        self._clock = clock
        self._wait = wait or self.cancel_event.wait
        self._sleep = sleep
        self._last_call: float | None = None

    def backoff_delay(self, retry: int) -> float:
        return min(self.base_delay * 2 ** (retry - 1), self.max_delay)

    def check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise Cancelled("Run cancelled")

    def pause(self, seconds: float, cancellable: bool = True) -> None:
        """Suspend for ``seconds``, waking early with Cancelled if cancellable."""
        if seconds <= 0:
            return
        if not cancellable:
            self._sleep(seconds)
            return
        self.check_cancelled()
        if self._wait(seconds):
            raise Cancelled("Run cancelled")

    def _throttle(self, cancellable: bool) -> None:
        if self._last_call is None:
            return
        remaining = self.spacing - (self._clock() - self._last_call)
        if remaining > 0:
            self.pause(remaining, cancellable)

    def execute(
        self,
        operation: Callable[[], T],
        classify: Callable[[BaseException], Classification] = classify_aws_error,
        cancellable: bool = True,
    ) -> T:
        state = RetryState()
        while True:
            state.attempt_number += 1
            if state.attempt_number > 1:
                self.pause(state.next_delay, cancellable)
            self._throttle(cancellable)
            if cancellable:
                self.check_cancelled()

            try:
                return operation()
            except Exception as e:
                if classify(e) is Classification.FATAL:
                    raise
                state.last_error = e
                if state.attempt_number >= self.max_attempts:
                    raise RetriesExhausted(state.attempt_number, e) from e
                state.next_delay = self.backoff_delay(state.attempt_number)
                console.print(
                    f"[yellow]Transient error: {e}. Retrying in {state.next_delay:g}s "
                    f"(attempt {state.attempt_number + 1}/{self.max_attempts})[/yellow]"
                )
            finally:
                self._last_call = self._clock()


# --------------------------------------------------------------------------- #
# Policies
# --------------------------------------------------------------------------- #


def build_condition_policy(
    sid: str,
    effect: str,
    actions: Iterable[str],
    resource: str,
    condition: dict[str, dict[str, Any]],
) -> ConditionPolicy:
    """Build a single-statement policy. IAM only accepts alphanumeric Sids."""
    if effect not in ("Allow", "Deny"):
        raise UsageError(f"Invalid policy effect: {effect}")
    actions = tuple(actions)
    if not actions:
        raise UsageError("A policy statement needs at least one action")
    return ConditionPolicy(
        sid=re.sub(r"[^A-Za-z0-9]", "", sid),
        effect=effect,
        actions=actions,
        resource=resource,
        condition={operator: dict(values) for operator, values in condition.items()},
    )


def owner_condition_policy(target: S3Target, account_id: str) -> ConditionPolicy:
    """Allow access to the target bucket only if it is owned by ``account_id``."""
    return build_condition_policy(
        sid=f"ProbeAccount{account_id}",
        effect="Allow",
        actions=PROBE_ACTIONS,
        resource=f"arn:aws:s3:::{target.bucket}*",
        condition={"StringEquals": {OWNER_CONDITION_KEY: account_id}},
    )


def trust_policy_document(principal_arn: str) -> dict[str, Any]:
    return {
        "Version": POLICY_VERSION,
        "Statement": [
            {
                "Effect": "Allow",
                "Principal": {"AWS": principal_arn},
                "Action": ["sts:AssumeRole"],
            }
        ],
    }


# --------------------------------------------------------------------------- #
# Identity provisioner
# --------------------------------------------------------------------------- #


def _provision_error(exc: BaseException, message: str) -> ProvisionFailure:
    code = error_code(exc)
    if code in ("AccessDenied", "AccessDeniedException", "UnauthorizedOperation"):
        return PermissionDenied(f"{message}: {exc}")
    if code == "EntityAlreadyExists":
        return AlreadyExists(f"{message}: {exc}")
    return ProvisionFailure(f"{message}: {exc}")


class IdentityProvisioner:
    """Creates, modifies and deletes the ephemeral IAM role of a run."""

    def __init__(self, iam_client: Any, executor: ResilientExecutor):
        self._iam = iam_client
        self._executor = executor

    def _call(self, method: Callable[..., Any], cancellable: bool = True, **kwargs: Any) -> Any:
        return self._executor.execute(lambda: method(**kwargs), cancellable=cancellable)

    def _exists(self, name: str, cancellable: bool = True) -> bool:
        try:
            self._call(self._iam.get_role, cancellable=cancellable, RoleName=name)
        except ClientError as e:
            if error_code(e) == "NoSuchEntity":
                return False
            raise
        return True

    def _inline_policy_names(self, name: str, cancellable: bool) -> list[str]:
        paginator = self._iam.get_paginator("list_role_policies")
        return self._executor.execute(
            lambda: [
                policy_name
                for page in paginator.paginate(RoleName=name)
                for policy_name in page["PolicyNames"]
            ],
            cancellable=cancellable,
        )

    def _destroy(self, name: str, cancellable: bool = True) -> None:
        for policy_name in self._inline_policy_names(name, cancellable):
            try:
                self._call(
                    self._iam.delete_role_policy,
                    cancellable=cancellable,
                    RoleName=name,
                    PolicyName=policy_name,
                )
            except ClientError as e:
                if error_code(e) != "NoSuchEntity":
                    raise
        self._call(self._iam.delete_role, cancellable=cancellable, RoleName=name)

    def acquire(
        self,
        name: str,
        trusted_principal_arn: str,
        on_conflict: OnConflict = OnConflict.FAIL,
    ) -> EphemeralIdentity:
        """Create a role named ``name`` that only ``trusted_principal_arn`` may assume."""
        if on_conflict is OnConflict.REUSE:
            raise UsageError(
                "Reusing an existing role is not supported: stale inline policies "
                "would corrupt probe results"
            )

        try:
            if self._exists(name):
                if on_conflict is OnConflict.FAIL:
                    raise AlreadyExists(
                        f"Role {name} already exists. Use --delete-existing-role to remove it first"
                    )
                console.print(f"[yellow]Role {name} already exists, deleting it[/yellow]")
                self._destroy(name)

            response = self._create(name, trusted_principal_arn)
        except (ClientError, BotoCoreError, RetriesExhausted) as e:
            raise _provision_error(e, f"Failed to create role {name}") from e

        return EphemeralIdentity(
            name=name,
            arn=response["Role"]["Arn"],
            trusted_principal=trusted_principal_arn,
        )

    def _create(self, name: str, trusted_principal_arn: str) -> dict[str, Any]:
        """Create the role, owning it even when a timed-out attempt created it.

        ``create_role`` is not idempotent: an attempt can succeed server side
        and still fail client side. A retry that then hits EntityAlreadyExists
        is looking at this run's role. If every attempt fails, a role left
        behind by one of them is deleted before the error is raised.
        """
        attempts = 0

        def create() -> dict[str, Any]:
            nonlocal attempts
            attempts += 1
            try:
                return self._iam.create_role(
                    RoleName=name,
                    AssumeRolePolicyDocument=json.dumps(trust_policy_document(trusted_principal_arn)),
                    Description="Ephemeral role created by s3-account-finder",
                )
            except ClientError as e:
                if attempts > 1 and error_code(e) == "EntityAlreadyExists":
                    return self._iam.get_role(RoleName=name)
                raise

        try:
            return self._executor.execute(create)
        except RetriesExhausted:
            if self._exists(name, cancellable=False):
                console.print(f"[yellow]Deleting partially created role {name}[/yellow]")
                self._destroy(name, cancellable=False)
            raise

    def release(self, identity: EphemeralIdentity) -> None:
        """Delete the role and its inline policies. Safe to call more than once.

        A role that is already gone counts as released. Any other failure is
        raised as TeardownFailure for the caller to report.
        """
        try:
            self._destroy(identity.name, cancellable=False)
        except ClientError as e:
            if error_code(e) != "NoSuchEntity":
                raise TeardownFailure(f"Failed to delete role {identity.name}: {e}") from e
        except (BotoCoreError, RetriesExhausted) as e:
            raise TeardownFailure(f"Failed to delete role {identity.name}: {e}") from e
        identity.attached_statement_name = None

    def attach_condition(self, identity: EphemeralIdentity, policy: ConditionPolicy) -> None:
        """Put ``policy`` in the role's single condition-policy slot, replacing any previous one."""
        # The slot counts as occupied once a put has been attempted.
        identity.attached_statement_name = policy.sid
        try:
            self._call(
                self._iam.put_role_policy,
                RoleName=identity.name,
                PolicyName=CONDITION_POLICY_NAME,
                PolicyDocument=json.dumps(policy.to_document()),
            )
        except (ClientError, BotoCoreError, RetriesExhausted) as e:
            raise _provision_error(e, f"Failed to attach condition policy {policy.sid}") from e

    def detach_condition(self, identity: EphemeralIdentity) -> None:
        if identity.attached_statement_name is None:
            return
        try:
            self._call(
                self._iam.delete_role_policy,
                cancellable=False,
                RoleName=identity.name,
                PolicyName=CONDITION_POLICY_NAME,
            )
        except ClientError as e:
            if error_code(e) != "NoSuchEntity":
                raise _provision_error(e, "Failed to detach condition policy") from e
        except (BotoCoreError, RetriesExhausted) as e:
            raise _provision_error(e, "Failed to detach condition policy") from e
        identity.attached_statement_name = None


# --------------------------------------------------------------------------- #
# Session exchanger and storage probe
# --------------------------------------------------------------------------- #


@dataclass
class TemporaryCaller:
    """Credentials of an assumed role session, usable like any boto3 session."""

    arn: str
    session: boto3.Session
    transport: AwsTransport
    expiration: datetime | None = None
    _clients: dict[str, Any] = field(default_factory=dict, repr=False)

    def client(self, service: str) -> Any:
        if service not in self._clients:
            self._clients[service] = self.transport.client(self.session, service)
        return self._clients[service]

    def expires_within(self, seconds: float) -> bool:
        if self.expiration is None:
            return False
        return self.expiration - datetime.now(timezone.utc) <= timedelta(seconds=seconds)


class SessionExchanger:
    def __init__(
        self,
        session: boto3.Session,
        executor: ResilientExecutor,
        transport: AwsTransport,
        session_name: str = SESSION_NAME,
        sts_client: Any = None,
    ):
        self._session = session
        self._executor = executor
        self._transport = transport
        self._session_name = session_name
        self._sts = sts_client or transport.client(session, "sts")

    def caller_arn(self) -> str:
        """ARN of the operator's own identity."""
        try:
            identity = self._executor.execute(self._sts.get_caller_identity)
        except (ClientError, BotoCoreError, RetriesExhausted) as e:
            raise AssumeFailure(f"Failed to get caller identity: {e}") from e
        return identity["Arn"]

    def assume(self, identity_arn: str) -> TemporaryCaller:
        try:
            response = self._executor.execute(
                lambda: self._sts.assume_role(
                    RoleArn=identity_arn,
                    RoleSessionName=self._session_name,
                ),
                classify=classify_assume_error,
            )
        except (ClientError, BotoCoreError, RetriesExhausted) as e:
            raise AssumeFailure(f"Failed to assume role {identity_arn}: {e}") from e

        credentials = response["Credentials"]
        session = boto3.Session(
            aws_access_key_id=credentials["AccessKeyId"],
            aws_secret_access_key=credentials["SecretAccessKey"],
            aws_session_token=credentials["SessionToken"],
            region_name=self._session.region_name,
        )
        return TemporaryCaller(
            arn=response["AssumedRoleUser"]["Arn"],
            session=session,
            transport=self._transport,
            expiration=credentials.get("Expiration"),
        )


def list_objects(
    caller: TemporaryCaller, bucket: str, prefix: str = "", max_keys: int = 1000
) -> list[str]:
    """List one page of object keys, translating S3 errors into probe outcomes."""
    s3_client = caller.client("s3")
    try:
        response = s3_client.list_objects_v2(Bucket=bucket, Prefix=prefix, MaxKeys=max_keys)
    except ClientError as e:
        code = error_code(e)
        if code in ACCESS_DENIED_CODES:
            raise ProbeDenied(f"Access denied listing {bucket}") from e
        if code in EXPIRED_TOKEN_CODES:
            raise CredentialsExpired(f"Session credentials expired listing {bucket}") from e
        if code in RETRYABLE_ERROR_CODES:
            raise ProbeTransient(f"Transient S3 error listing {bucket}: {code}") from e
        raise ProbeFatal(f"Failed to list {bucket}: {e}") from e
    except CONNECTION_ERRORS as e:
        raise ProbeTransient(f"Connection error listing {bucket}: {e}") from e
    except BotoCoreError as e:
        raise ProbeFatal(f"Failed to list {bucket}: {e}") from e

    return [obj["Key"] for obj in response.get("Contents", [])]


# --------------------------------------------------------------------------- #
# Probe protocol
# --------------------------------------------------------------------------- #


class ProbeProtocol:
    """Drives one enumeration run against a single target.

    Candidates are probed one at a time in the order given, sharing one
    ephemeral role whose single condition-policy slot is rewritten for each
    candidate. The role is released exactly once on every exit path, after
    which the instance cannot be run again.
    """

    def __init__(
        self,
        provisioner: IdentityProvisioner,
        exchanger: SessionExchanger,
        executor: ResilientExecutor,
        settings: ProbeSettings | None = None,
        lister: Callable[..., list[str]] = list_objects,
    ):
        self._provisioner = provisioner
        self._exchanger = exchanger
        self._executor = executor
        self._settings = settings or ProbeSettings()
        self._lister = lister
        self.state = ProtocolState.IDLE
        self.identity: EphemeralIdentity | None = None
        self.teardown_error: TeardownFailure | None = None

    def run(
        self,
        target: S3Target,
        candidates: Iterable[str],
        name: str = DEFAULT_ROLE_NAME,
        on_conflict: OnConflict = OnConflict.FAIL,
    ) -> ProbeReport:
        if self.state is not ProtocolState.IDLE:
            raise UsageError("A probe protocol instance can only be run once")
        candidates = list(candidates)
        if not candidates:
            raise NoCandidates("No candidate account IDs were supplied")

        try:
            trusted_principal = self._exchanger.caller_arn()
            console.print(f"[bold blue]Creating role {name} trusted by {trusted_principal}...[/bold blue]")
            identity = self._provisioner.acquire(name, trusted_principal, on_conflict)
        except BaseException:
            # Nothing was created, so there is nothing to release.
            self.state = ProtocolState.TORN_DOWN
            raise

        self.identity = identity
        self.state = ProtocolState.PROVISIONED

        try:
            report = self._probe_candidates(identity, target, candidates)
        except FinderError as e:
            e.teardown_error = self._teardown(identity)
            raise
        except BaseException:
            self._teardown(identity)
            raise

        report.teardown_error = self._teardown(identity)
        return report

    def _probe_candidates(
        self, identity: EphemeralIdentity, target: S3Target, candidates: list[str]
    ) -> ProbeReport:
        attempts: list[ProbeAttempt] = []
        caller: TemporaryCaller | None = None
        inconclusive_streak = 0

        for candidate in candidates:
            self._executor.check_cancelled()
            policy = owner_condition_policy(target, candidate)
            try:
                self._provisioner.attach_condition(identity, policy)
                self.state = ProtocolState.POLICY_ATTACHED
                self._executor.pause(self._settings.settle_delay)
                caller = self._current_caller(identity, caller)
                self.state = ProtocolState.EXCHANGED
                attempt = self._probe(caller, target, candidate)
                if isinstance(attempt.error, CredentialsExpired):
                    caller = self._exchanger.assume(identity.arn)
                    self.state = ProtocolState.EXCHANGED
                    attempt = self._probe(caller, target, candidate)
            except BaseException:
                self._detach_after_error(identity)
                raise
            self._provisioner.detach_condition(identity)

            attempts.append(attempt)
            _print_attempt(attempt)

            if attempt.outcome is Outcome.GRANTED:
                return ProbeReport(target, Verdict.CONFIRMED, attempts, owner=candidate)
            if attempt.outcome is Outcome.DENIED:
                inconclusive_streak = 0
                continue

            inconclusive_streak += 1
            limit = self._settings.max_consecutive_inconclusive
            if limit and inconclusive_streak >= limit:
                console.print(
                    f"[bold yellow]Aborting after {inconclusive_streak} consecutive "
                    f"inconclusive probes[/bold yellow]"
                )
                return ProbeReport(target, Verdict.INCONCLUSIVE, attempts, aborted=True)

        if all(attempt.outcome is Outcome.DENIED for attempt in attempts):
            return ProbeReport(target, Verdict.EXCLUDED, attempts)
        return ProbeReport(target, Verdict.INCONCLUSIVE, attempts)

    def _current_caller(
        self, identity: EphemeralIdentity, caller: TemporaryCaller | None
    ) -> TemporaryCaller:
        """Assume the role on first use and again when the session nears expiry."""
        if caller is None or caller.expires_within(self._settings.credential_refresh_margin):
            caller = self._exchanger.assume(identity.arn)
        return caller

    def _probe(self, caller: TemporaryCaller, target: S3Target, candidate: str) -> ProbeAttempt:
        self.state = ProtocolState.PROBE_ISSUED
        error: BaseException | None = None
        keys: list[str] = []
        try:
            keys = self._executor.execute(
                lambda: self._lister(caller, target.bucket, target.prefix, self._settings.max_keys)
            )
        except ProbeDenied:
            outcome = Outcome.DENIED
        except (ProbeFatal, CredentialsExpired, RetriesExhausted) as e:
            outcome = Outcome.INCONCLUSIVE
            error = e
        else:
            outcome = Outcome.GRANTED
        self.state = ProtocolState.EVALUATED
        return ProbeAttempt(
            candidate_account_id=candidate,
            outcome=outcome,
            timestamp=datetime.now(timezone.utc),
            error=error,
            object_keys=tuple(keys),
        )

    def _detach_after_error(self, identity: EphemeralIdentity) -> None:
        try:
            self._provisioner.detach_condition(identity)
        except FinderError as e:
            # release() deletes the S3EnumerationPolicy slot along with the role.
            console.print(f"[yellow]Warning: could not detach condition policy: {e}[/yellow]")

    def _teardown(self, identity: EphemeralIdentity) -> TeardownFailure | None:
        console.print(f"[bold blue]Cleaning up role {identity.name}...[/bold blue]")
        try:
            self._provisioner.release(identity)
        except TeardownFailure as e:
            self.teardown_error = e
        finally:
            self.state = ProtocolState.TORN_DOWN
        return self.teardown_error


def _print_attempt(attempt: ProbeAttempt) -> None:
    styles = {
        Outcome.GRANTED: "bold green",
        Outcome.DENIED: "dim",
        Outcome.INCONCLUSIVE: "yellow",
    }
    style = styles[attempt.outcome]
    detail = f" ({attempt.error})" if attempt.error else ""
    console.print(
        f"[{style}]{attempt.candidate_account_id}: {attempt.outcome.value}{detail}[/{style}]"
    )


# --------------------------------------------------------------------------- #
# Candidate sources
# --------------------------------------------------------------------------- #


class AccountIdLoader(yaml.SafeLoader):
    """SafeLoader that keeps integer-looking scalars as strings.

    YAML 1.1 reads ``012345670123`` as an octal int, which would turn an
    account ID into a different one.
    """


AccountIdLoader.yaml_implicit_resolvers = {
    first: [(tag, regexp) for tag, regexp in resolvers if tag != "tag:yaml.org,2002:int"]
    for first, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}


def load_yaml(stream: Any) -> Any:
    return yaml.load(stream, Loader=AccountIdLoader)


def _normalise_account_id(value: Any) -> str:
    return str(value).strip()


def fetch_reference_data(transport: AwsTransport | None = None) -> dict[str, str]:
    """Fetch the fwd:cloudsec list of known AWS accounts, mapped to vendor names."""
    transport = transport or AwsTransport()
    proxies = {"http": transport.proxy, "https": transport.proxy} if transport.proxy else None
    try:
        response = requests.get(
            REFERENCE_DATA_URL,
            timeout=15,
            proxies=proxies,
            verify=transport.verify is not False,
        )
        response.raise_for_status()

        vendors_data = load_yaml(response.text) or []

        account_to_vendor: dict[str, str] = {}
        for vendor in vendors_data:
            for account_id in vendor.get("accounts", []):
                account_to_vendor.setdefault(
                    _normalise_account_id(account_id), vendor.get("name", "Unknown")
                )
        return account_to_vendor

    except (requests.RequestException, yaml.YAMLError) as e:
        console.print(f"[bold red]Error fetching reference data: {e}[/bold red]")
        return {}


def fetch_org_accounts(session: boto3.Session, transport: AwsTransport) -> dict[str, str]:
    """Fetch the accounts of the caller's AWS Organization."""
    try:
        org_client = transport.client(session, "organizations")
        accounts: dict[str, str] = {}

        paginator = org_client.get_paginator("list_accounts")
        for page in paginator.paginate():
            for account in page["Accounts"]:
                accounts[account["Id"]] = account["Name"]

        console.print(f"[green]Found {len(accounts)} accounts in AWS Organization[/green]")
        return accounts

    except (ClientError, BotoCoreError) as e:
        error_msg = str(e)
        if error_code(e) in ("AccessDeniedException", "AWSOrganizationsNotInUseException"):
            error_msg = "Access denied to AWS Organizations API or no organization in use."
        console.print(
            f"[bold yellow]Warning: Could not fetch AWS Organization accounts: {error_msg}[/bold yellow]"
        )
        return {}


def load_accounts_file(path: str) -> dict[str, str]:
    """Load candidate accounts from a YAML or plain text file.

    Accepts the fwd:cloudsec ``known_aws_accounts`` layout (a list of
    ``{name, accounts}`` entries), a mapping of name to accounts, a YAML list
    of IDs, or IDs separated by whitespace or commas.
    """
    if not os.path.exists(path):
        raise UsageError(f"Accounts file not found: {path}")

    try:
        with open(path, "r") as fh:
            data = load_yaml(fh)
    except yaml.YAMLError as e:
        raise UsageError(f"Could not parse accounts file {path}: {e}") from e

    if data is None:
        return {}
    if isinstance(data, str):
        entries: list[Any] = data.replace(",", " ").split()
    elif isinstance(data, dict):
        entries = [
            {"name": name, "accounts": accounts if isinstance(accounts, list) else [accounts]}
            for name, accounts in data.items()
        ]
    elif isinstance(data, list):
        entries = data
    else:
        entries = [data]

    accounts: dict[str, str] = {}
    for entry in entries:
        if isinstance(entry, dict):
            for account_id in entry.get("accounts", []) or []:
                accounts.setdefault(_normalise_account_id(account_id), entry.get("name", ""))
        else:
            accounts.setdefault(_normalise_account_id(entry), "")
    return accounts


def gather_candidates(
    args: argparse.Namespace,
    session: boto3.Session,
    transport: AwsTransport,
) -> tuple[list[str], dict[str, str]]:
    """Merge every requested candidate source, keeping the first-seen order.

    Returns the valid account IDs and a mapping of account ID to a label.
    """
    sources: list[dict[str, str]] = []
    if args.account:
        sources.append({_normalise_account_id(a): "" for a in args.account})
    if args.accounts_file:
        sources.append(load_accounts_file(args.accounts_file))
    if args.org_accounts:
        sources.append(fetch_org_accounts(session, transport))
    if args.known_vendors:
        console.print("[bold]Fetching reference data of known AWS accounts...[/bold]")
        sources.append(fetch_reference_data(transport))

    labels: dict[str, str] = {}
    for source in sources:
        for account_id, name in source.items():
            if not labels.get(account_id):
                labels[account_id] = name

    candidates: list[str] = []
    for account_id in labels:
        if ACCOUNT_ID_PATTERN.match(account_id):
            candidates.append(account_id)
        else:
            console.print(f"[yellow]Skipping invalid account ID: {account_id!r}[/yellow]")

    return candidates, {account_id: labels[account_id] for account_id in candidates}


# --------------------------------------------------------------------------- #
# Reporting
# --------------------------------------------------------------------------- #


def _label(account_id: str | None, labels: dict[str, str]) -> str:
    if account_id is None:
        return "-"
    name = labels.get(account_id)
    return f"{account_id} ({name})" if name else account_id


def _truncated_list(items: Iterable[str], limit: int = 5) -> str:
    items = list(items)
    result = "\n".join(items[:limit])
    if len(items) > limit:
        result += "\n..."
    return result


def generate_report(report: ProbeReport, labels: dict[str, str], output_dir: str = ".") -> str:
    """Generate a markdown report with the probe results."""
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    report_file = os.path.join(
        output_dir, f"s3_account_finder_{report.target.bucket}_{timestamp}.md"
    )

    with open(report_file, "w") as f:
        f.write("# S3 Account Finder - Ownership Report\n\n")
        f.write(f"Generated on: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}\n")
        f.write(f"Target: s3://{report.target}\n\n")

        f.write("## Result\n\n")
        f.write(f"{report.summary}\n\n")
        if report.owner:
            f.write(f"Owner account: {_label(report.owner, labels)}\n\n")

        if report.teardown_error:
            f.write("## Cleanup Warning\n\n")
            f.write(f"The ephemeral role could not be deleted: {report.teardown_error}\n")
            f.write("\nDelete it manually before running the tool again.\n\n")

        f.write("## Probe Attempts\n\n")
        if report.attempts:
            f.write("| # | Candidate Account | Outcome | Time (UTC) | Detail |\n")
            f.write("|---|-------------------|---------|------------|--------|\n")
            for index, attempt in enumerate(report.attempts, start=1):
                detail = str(attempt.error) if attempt.error else ""
                if attempt.outcome is Outcome.GRANTED:
                    detail = f"{len(attempt.object_keys)} object(s) listed"
                f.write(
                    f"| {index} | {_label(attempt.candidate_account_id, labels)} "
                    f"| {attempt.outcome.value} "
                    f"| {attempt.timestamp.strftime('%Y-%m-%d %H:%M:%S')} | {detail} |\n"
                )
        else:
            f.write("No candidates were probed.\n")

    return report_file


def display_results(report: ProbeReport, labels: dict[str, str]) -> None:
    """Display probe results in formatted console tables."""
    table = Table(title=f"Probe Attempts for s3://{report.target}", box=box.ROUNDED)
    table.add_column("#", style="dim")
    table.add_column("Candidate Account", style="cyan")
    table.add_column("Outcome")
    table.add_column("Detail", style="dim")
    outcome_styles = {
        Outcome.GRANTED: "[bold green]granted[/bold green]",
        Outcome.DENIED: "[red]denied[/red]",
        Outcome.INCONCLUSIVE: "[yellow]inconclusive[/yellow]",
    }
    for index, attempt in enumerate(report.attempts, start=1):
        detail = str(attempt.error) if attempt.error else _truncated_list(attempt.object_keys)
        table.add_row(
            str(index),
            _label(attempt.candidate_account_id, labels),
            outcome_styles[attempt.outcome],
            detail,
        )
    console.print(table)

    colour = {
        Verdict.CONFIRMED: "green",
        Verdict.EXCLUDED: "cyan",
        Verdict.INCONCLUSIVE: "yellow",
    }[report.verdict]
    body = (
        f"[bold]Summary:[/bold]\n"
        f"[{colour}]{report.summary}[/{colour}]\n"
        f"[cyan]Candidates probed:[/cyan] {len(report.attempts)}\n"
        f"[green]Owner:[/green] {_label(report.owner, labels)}"
    )
    if report.teardown_error:
        body += f"\n[red]Cleanup warning:[/red] {report.teardown_error}"
    console.print(Panel(body, title="S3 Account Finder Results", box=box.ROUNDED))


def _warn_teardown(error: BaseException) -> None:
    teardown_error = getattr(error, "teardown_error", None)
    if teardown_error:
        console.print(f"[bold yellow]Warning: {teardown_error}[/bold yellow]")


# --------------------------------------------------------------------------- #
# CLI
# --------------------------------------------------------------------------- #


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="s3-account-finder",
        description="S3 Account Finder - Find the AWS account that owns a public S3 bucket.",
    )
    parser.add_argument(
        "-V", "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "path",
        help="Target S3 path (format: bucket or bucket/prefix)",
    )
    parser.add_argument(
        "-p", "--profile",
        help="AWS profile name to use for authentication",
    )
    parser.add_argument(
        "-r", "--region",
        help="AWS region to use (overrides profile/env default)",
    )
    parser.add_argument(
        "-n", "--role-name",
        default=DEFAULT_ROLE_NAME,
        help=f"Name of the ephemeral IAM role (default: {DEFAULT_ROLE_NAME})",
    )
    parser.add_argument(
        "--delete-existing-role",
        action="store_true",
        help="Delete a pre-existing role with the same name instead of failing",
    )
    parser.add_argument(
        "-a", "--account",
        action="append",
        default=[],
        help="Candidate account ID (can be repeated)",
    )
    parser.add_argument(
        "-f", "--accounts-file",
        help="YAML or text file with candidate account IDs",
    )
    parser.add_argument(
        "--org-accounts",
        action="store_true",
        help="Use the accounts of your AWS Organization as candidates",
    )
    parser.add_argument(
        "--known-vendors",
        action="store_true",
        help="Use the fwd:cloudsec list of known AWS accounts as candidates",
    )
    parser.add_argument(
        "--settle-delay",
        type=float,
        default=10.0,
        help="Seconds to wait after attaching a condition policy (default: 10)",
    )
    parser.add_argument(
        "--max-inconclusive",
        type=int,
        default=3,
        help="Abort after this many consecutive inconclusive probes, 0 to never abort (default: 3)",
    )
    parser.add_argument(
        "--rate-limit",
        type=int,
        default=int(CALL_SPACING * 1000),
        help="Minimum milliseconds between AWS calls (default: 100)",
    )
    parser.add_argument(
        "--proxy",
        help="HTTP(S) proxy URL for all AWS calls",
    )
    parser.add_argument(
        "--insecure-tls",
        action="store_true",
        help="Skip TLS certificate verification (use only with a proxy)",
    )
    parser.add_argument(
        "--connect-timeout",
        type=float,
        default=10.0,
        help="Connection timeout in seconds (default: 10)",
    )
    parser.add_argument(
        "--read-timeout",
        type=float,
        default=30.0,
        help="Read timeout in seconds (default: 30)",
    )
    parser.add_argument(
        "-o", "--output",
        help="Output directory for a markdown report file",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Show full error tracebacks for debugging",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        target = S3Target.parse(args.path)
    except UsageError as e:
        console.print(f"[bold red]Error: {e}[/bold red]")
        return 1

    session_kwargs: dict[str, str] = {}
    if args.profile:
        session_kwargs["profile_name"] = args.profile
    if args.region:
        session_kwargs["region_name"] = args.region
    session = boto3.Session(**session_kwargs)

    if args.insecure_tls:
        console.print(
            "[bold yellow]Warning: TLS certificate verification disabled - "
            "use only in controlled environments[/bold yellow]"
        )
    transport = AwsTransport(
        verify=False if args.insecure_tls else None,
        proxy=args.proxy,
        connect_timeout=args.connect_timeout,
        read_timeout=args.read_timeout,
    )
    executor = ResilientExecutor(spacing=args.rate_limit / 1000)

    def request_cancel(signum: int, frame: Any) -> None:
        console.print("\n[yellow]Interrupted by user, cleaning up...[/yellow]")
        executor.cancel_event.set()

    previous_handlers = {
        signum: signal.signal(signum, request_cancel)
        for signum in (signal.SIGINT, signal.SIGTERM)
    }

    try:
        console.print(
            Panel(
                "[bold cyan]S3 Account Finder[/bold cyan]\n"
                "Find the AWS account that owns a publicly reachable S3 bucket\n"
                "by probing IAM condition keys from a throwaway role.",
                title="S3 Account Finder",
                box=box.ROUNDED,
            )
        )

        console.print("[bold]Loading candidate accounts...[/bold]")
        candidates, labels = gather_candidates(args, session, transport)
        console.print(f"[green]Loaded {len(candidates)} candidate accounts[/green]")
        console.print(f"[bold blue]Testing S3 target: s3://{target}[/bold blue]")

        protocol = ProbeProtocol(
            IdentityProvisioner(transport.client(session, "iam"), executor),
            SessionExchanger(session, executor, transport),
            executor,
            ProbeSettings(
                max_consecutive_inconclusive=args.max_inconclusive,
                settle_delay=args.settle_delay,
            ),
        )
        report = protocol.run(
            target,
            candidates,
            name=args.role_name,
            on_conflict=OnConflict.REPLACE if args.delete_existing_role else OnConflict.FAIL,
        )

        display_results(report, labels)

        if args.output:
            os.makedirs(args.output, exist_ok=True)
            report_file = generate_report(report, labels, output_dir=args.output)
            console.print(f"\n[bold green]Report generated: {report_file}[/bold green]")

    except (Cancelled, KeyboardInterrupt) as e:
        console.print("\n[yellow]Interrupted by user.[/yellow]")
        _warn_teardown(e)
        return 130
    except FinderError as e:
        console.print(f"[bold red]Error: {e}[/bold red]")
        _warn_teardown(e)
        if args.verbose:
            console.print_exception()
        return 1
    except Exception as e:
        console.print(f"[bold red]Error: {e}[/bold red]")
        if args.verbose:
            console.print_exception()
        return 1
    finally:
        for signum, handler in previous_handlers.items():
            signal.signal(signum, handler)

    if report.verdict is Verdict.INCONCLUSIVE:
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
