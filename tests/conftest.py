import os

import boto3
import pytest
from botocore.exceptions import ClientError
from moto import mock_aws

from s3accountfinder import AwsTransport, ResilientExecutor

REGION = "us-east-1"


class FakeClock:
    """Virtual time for the executor: waits and sleeps advance ``now`` instantly."""

    def __init__(self):
        self.now = 0.0
        self.waits = []
        self.sleeps = []

    def time(self):
        return self.now

    def wait(self, seconds):
        self.waits.append(seconds)
        self.now += seconds
        return False

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture(autouse=True)
def aws_credentials():
    """Mocked AWS Credentials for moto."""
    os.environ["AWS_ACCESS_KEY_ID"] = "testing"
    os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
    os.environ["AWS_SECURITY_TOKEN"] = "testing"
    os.environ["AWS_SESSION_TOKEN"] = "testing"
    os.environ["AWS_DEFAULT_REGION"] = REGION


@pytest.fixture
def make_client_error():
    def factory(code, operation="ListObjectsV2"):
        return ClientError({"Error": {"Code": code, "Message": code}}, operation)

    return factory


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def executor(clock):
    return ResilientExecutor(clock=clock.time, wait=clock.wait, sleep=clock.sleep)


@pytest.fixture
def transport():
    return AwsTransport(connect_timeout=5, read_timeout=7)


@pytest.fixture
def aws():
    with mock_aws():
        yield boto3.Session(region_name=REGION)
