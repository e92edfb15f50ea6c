import json
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ReadTimeoutError

from s3accountfinder import (
    CONDITION_POLICY_NAME,
    AlreadyExists,
    EphemeralIdentity,
    IdentityProvisioner,
    OnConflict,
    PermissionDenied,
    ProvisionFailure,
    S3Target,
    TeardownFailure,
    UsageError,
    owner_condition_policy,
)

ROLE_NAME = "s3-account-finder-test"
CALLER_ARN = "arn:aws:iam::123456789012:user/tester"
TARGET = S3Target("public-bucket")


def _document(raw):
    return json.loads(raw) if isinstance(raw, str) else raw


@pytest.fixture
def iam(aws):
    return aws.client("iam")


@pytest.fixture
def provisioner(iam, executor):
    return IdentityProvisioner(iam, executor)


def _existing_role(iam, with_policy=True):
    iam.create_role(
        RoleName=ROLE_NAME,
        AssumeRolePolicyDocument=json.dumps(
            {
                "Version": "2012-10-17",
                "Statement": [
                    {
                        "Effect": "Allow",
                        "Principal": {"AWS": CALLER_ARN},
                        "Action": "sts:AssumeRole",
                    }
                ],
            }
        ),
    )
    if with_policy:
        iam.put_role_policy(
            RoleName=ROLE_NAME,
            PolicyName="LeftOver",
            PolicyDocument=json.dumps(owner_condition_policy(TARGET, "999999999999").to_document()),
        )


def test_acquire_creates_role_trusting_caller(provisioner, iam):
    identity = provisioner.acquire(ROLE_NAME, CALLER_ARN)

    assert identity.name == ROLE_NAME
    assert identity.arn.endswith(f":role/{ROLE_NAME}")
    assert identity.trusted_principal == CALLER_ARN
    assert identity.attached_statement_name is None

    trust = _document(iam.get_role(RoleName=ROLE_NAME)["Role"]["AssumeRolePolicyDocument"])
    assert trust["Statement"][0]["Principal"]["AWS"] == CALLER_ARN


def test_acquire_fail_leaves_existing_role_untouched(provisioner, iam):
    _existing_role(iam)

    with pytest.raises(AlreadyExists):
        provisioner.acquire(ROLE_NAME, CALLER_ARN, OnConflict.FAIL)

    assert iam.list_role_policies(RoleName=ROLE_NAME)["PolicyNames"] == ["LeftOver"]


def test_acquire_replace_removes_existing_role_first(provisioner, iam):
    _existing_role(iam)

    identity = provisioner.acquire(ROLE_NAME, CALLER_ARN, OnConflict.REPLACE)

    assert identity.name == ROLE_NAME
    assert iam.list_role_policies(RoleName=ROLE_NAME)["PolicyNames"] == []


def test_acquire_reuse_is_rejected_without_remote_calls(executor):
    iam = MagicMock()
    provisioner = IdentityProvisioner(iam, executor)

    with pytest.raises(UsageError):
        provisioner.acquire(ROLE_NAME, CALLER_ARN, OnConflict.REUSE)

    assert iam.mock_calls == []


def test_acquire_permission_denied(executor, make_client_error):
    iam = MagicMock()
    iam.get_role.side_effect = make_client_error("NoSuchEntity", "GetRole")
    iam.create_role.side_effect = make_client_error("AccessDenied", "CreateRole")

    with pytest.raises(PermissionDenied):
        IdentityProvisioner(iam, executor).acquire(ROLE_NAME, CALLER_ARN)


def test_acquire_service_failure(executor, make_client_error):
    iam = MagicMock()
    iam.get_role.side_effect = make_client_error("NoSuchEntity", "GetRole")
    iam.create_role.side_effect = make_client_error("LimitExceeded", "CreateRole")

    with pytest.raises(ProvisionFailure):
        IdentityProvisioner(iam, executor).acquire(ROLE_NAME, CALLER_ARN)

    iam.create_role.assert_called_once()


def test_acquire_adopts_role_created_by_timed_out_attempt(executor, make_client_error):
    arn = f"arn:aws:iam::123456789012:role/{ROLE_NAME}"
    iam = MagicMock()
    iam.get_role.side_effect = [
        make_client_error("NoSuchEntity", "GetRole"),
        {"Role": {"RoleName": ROLE_NAME, "Arn": arn}},
    ]
    iam.create_role.side_effect = [
        ReadTimeoutError(endpoint_url="https://iam.amazonaws.com"),
        make_client_error("EntityAlreadyExists", "CreateRole"),
    ]

    identity = IdentityProvisioner(iam, executor).acquire(ROLE_NAME, CALLER_ARN)

    assert identity.arn == arn
    assert iam.create_role.call_count == 2
    iam.delete_role.assert_not_called()


def test_acquire_first_attempt_conflict_is_already_exists(executor, make_client_error):
    iam = MagicMock()
    iam.get_role.side_effect = make_client_error("NoSuchEntity", "GetRole")
    iam.create_role.side_effect = make_client_error("EntityAlreadyExists", "CreateRole")

    with pytest.raises(AlreadyExists):
        IdentityProvisioner(iam, executor).acquire(ROLE_NAME, CALLER_ARN)

    iam.create_role.assert_called_once()


def test_acquire_deletes_role_left_by_exhausted_attempts(executor, make_client_error):
    iam = MagicMock()
    iam.get_role.side_effect = [
        make_client_error("NoSuchEntity", "GetRole"),
        {"Role": {"RoleName": ROLE_NAME}},
    ]
    iam.create_role.side_effect = ReadTimeoutError(endpoint_url="https://iam.amazonaws.com")
    iam.get_paginator.return_value.paginate.return_value = [{"PolicyNames": []}]

    with pytest.raises(ProvisionFailure):
        IdentityProvisioner(iam, executor).acquire(ROLE_NAME, CALLER_ARN)

    assert iam.create_role.call_count == 3
    iam.delete_role.assert_called_once_with(RoleName=ROLE_NAME)


def test_attach_condition_keeps_a_single_slot(provisioner, iam):
    identity = provisioner.acquire(ROLE_NAME, CALLER_ARN)

    for account_id in ("111111111111", "222222222222", "333333333333"):
        provisioner.attach_condition(identity, owner_condition_policy(TARGET, account_id))

    assert iam.list_role_policies(RoleName=ROLE_NAME)["PolicyNames"] == [CONDITION_POLICY_NAME]
    document = _document(
        iam.get_role_policy(RoleName=ROLE_NAME, PolicyName=CONDITION_POLICY_NAME)["PolicyDocument"]
    )
    statement = document["Statement"][0]
    assert statement["Sid"] == "ProbeAccount333333333333"
    assert statement["Condition"] == {"StringEquals": {"s3:ResourceAccount": "333333333333"}}
    assert identity.attached_statement_name == "ProbeAccount333333333333"


def test_detach_condition_is_idempotent(provisioner, iam):
    identity = provisioner.acquire(ROLE_NAME, CALLER_ARN)
    provisioner.attach_condition(identity, owner_condition_policy(TARGET, "111111111111"))

    provisioner.detach_condition(identity)
    provisioner.detach_condition(identity)

    assert identity.attached_statement_name is None
    assert iam.list_role_policies(RoleName=ROLE_NAME)["PolicyNames"] == []


def test_detach_without_attached_policy_makes_no_call(executor):
    iam = MagicMock()
    identity = EphemeralIdentity(ROLE_NAME, "arn:aws:iam::123456789012:role/x", CALLER_ARN)

    IdentityProvisioner(iam, executor).detach_condition(identity)

    iam.delete_role_policy.assert_not_called()


def test_detach_swallows_missing_policy(executor, make_client_error):
    iam = MagicMock()
    iam.delete_role_policy.side_effect = make_client_error("NoSuchEntity", "DeleteRolePolicy")
    identity = EphemeralIdentity(ROLE_NAME, "arn", CALLER_ARN, attached_statement_name="Probe1")

    IdentityProvisioner(iam, executor).detach_condition(identity)

    assert identity.attached_statement_name is None


def test_release_twice_is_safe(provisioner, iam):
    identity = provisioner.acquire(ROLE_NAME, CALLER_ARN)
    provisioner.attach_condition(identity, owner_condition_policy(TARGET, "111111111111"))

    provisioner.release(identity)
    provisioner.release(identity)

    assert identity.attached_statement_name is None
    assert ROLE_NAME not in [role["RoleName"] for role in iam.list_roles()["Roles"]]


def test_release_runs_even_after_cancellation(provisioner, iam, executor):
    identity = provisioner.acquire(ROLE_NAME, CALLER_ARN)
    executor.cancel_event.set()

    provisioner.release(identity)

    assert ROLE_NAME not in [role["RoleName"] for role in iam.list_roles()["Roles"]]


def test_release_reports_other_failures(executor, make_client_error):
    iam = MagicMock()
    iam.get_paginator.return_value.paginate.return_value = [{"PolicyNames": []}]
    iam.delete_role.side_effect = make_client_error("DeleteConflict", "DeleteRole")
    identity = EphemeralIdentity(ROLE_NAME, "arn", CALLER_ARN)

    with pytest.raises(TeardownFailure):
        IdentityProvisioner(iam, executor).release(identity)
