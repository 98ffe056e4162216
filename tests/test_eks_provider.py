"""Tests for the EKS provider: tokens, teardown and control plane hooks."""
from __future__ import annotations

import base64
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import boto3
import pytest
from botocore.exceptions import EndpointConnectionError
from botocore.stub import Stubber
from fakes import CA_PEM, FakeInstaller, FakeRegistrationClient

from cpctl.compensator import CompensationContext
from cpctl.config import IAMConfig
from cpctl.errors import TeardownError
from cpctl.inventory import InventoryEntry, InventoryStore
from cpctl.models import ControlPlaneInstance, EKSSettings, ProviderKind
from cpctl.providers import eks
from cpctl.providers.eks import EKSProvider, eks_token
from cpctl.providers.iam import AccessKey, IdentityError

ACCOUNT = "123456789012"
ROLE_ARN = f"arn:aws:iam::{ACCOUNT}:role/cpctl-resource-manager-cpctl-alpha"


def _session() -> boto3.Session:
    return boto3.Session(
        aws_access_key_id="AKIDEXAMPLE",
        aws_secret_access_key="secret",
        region_name="us-east-1",
    )


def _provider(tmp_path: Path, messages: list[str] | None = None) -> EKSProvider:
    return EKSProvider(
        "alpha",
        settings=EKSSettings(
            region="us-east-1",
            account_id=ACCOUNT,
            resource_manager_role_arn=ROLE_ARN,
        ),
        inventory=InventoryStore(tmp_path / "eks-inventory-alpha.json"),
        iam=IAMConfig(attempts=1, delay=0, settle=0),
        namespace="cpctl-control-plane",
        session=_session(),
        on_progress=(messages.append if messages is not None else None),
        sleep=lambda _s: None,
    )


def _decode_token(token: str) -> str:
    encoded = token.removeprefix("k8s-aws-v1.")
    padded = encoded + "=" * (-len(encoded) % 4)
    return base64.urlsafe_b64decode(padded).decode("utf-8")


def test_eks_token_is_presigned_sts_url() -> None:
    """Tokens wrap a presigned GetCallerIdentity URL bound to the cluster."""
    issued = datetime(2024, 1, 1, tzinfo=UTC)

    token, expiration = eks_token(_session(), "cpctl-alpha", now=issued)

    assert token.startswith("k8s-aws-v1.")
    assert "=" not in token
    url = _decode_token(token)
    assert url.startswith("https://sts.us-east-1.amazonaws.com/")
    assert "Action=GetCallerIdentity" in url
    assert "X-Amz-Expires=60" in url
    assert "x-k8s-aws-id" in url
    assert expiration == issued + timedelta(minutes=14)


def test_settings_and_service_annotations(tmp_path: Path) -> None:
    """The provider records its AWS addressing and asks for an NLB."""
    provider = _provider(tmp_path)

    recorded = provider.settings()["eks"]
    assert isinstance(recorded, EKSSettings)
    assert recorded.account_id == ACCOUNT
    assert provider.api_service_annotations() == {
        "service.beta.kubernetes.io/aws-load-balancer-type": "nlb"
    }
    assert provider.cluster_name == "cpctl-alpha"


def test_get_connection_reads_cluster(tmp_path: Path) -> None:
    """The handle carries the cluster endpoint, CA and a fresh token."""
    provider = _provider(tmp_path)
    client = provider.session.client("eks", region_name="us-east-1")
    provider._clients["eks"] = client

    with Stubber(client) as stub:
        stub.add_response(
            "describe_cluster",
            {
                "cluster": {
                    "name": "cpctl-alpha",
                    "endpoint": "https://abc.gr7.us-east-1.eks.amazonaws.com",
                    "certificateAuthority": {"data": base64.b64encode(CA_PEM.encode()).decode()},
                }
            },
            {"name": "cpctl-alpha"},
        )
        handle = provider.get_connection()

    assert handle.endpoint == "https://abc.gr7.us-east-1.eks.amazonaws.com"
    assert handle.ca_cert == CA_PEM
    assert handle.token is not None and handle.token.startswith("k8s-aws-v1.")
    assert not handle.expired()


def _network_inventory(provider: EKSProvider) -> None:
    for entry in (
        InventoryEntry(kind="vpc", id="vpc-1"),
        InventoryEntry(kind="internet-gateway", id="igw-1", attributes={"vpc_id": "vpc-1"}),
        InventoryEntry(kind="subnet", id="subnet-a"),
        InventoryEntry(kind="subnet", id="subnet-b"),
        InventoryEntry(kind="route-table", id="rtb-1"),
    ):
        provider.inventory.append(entry)


def _ec2(provider: EKSProvider) -> Any:
    client = provider.session.client("ec2", region_name="us-east-1")
    provider._clients["ec2"] = client
    provider._clients["eks"] = provider.session.client("eks", region_name="us-east-1")
    return client


def test_delete_walks_inventory_dependents_first(tmp_path: Path) -> None:
    """Resources go in dependency order, newest first, and leave the inventory."""
    messages: list[str] = []
    provider = _provider(tmp_path, messages)
    _network_inventory(provider)
    ec2 = _ec2(provider)

    with Stubber(ec2) as stub:
        stub.add_response("delete_route_table", {}, {"RouteTableId": "rtb-1"})
        stub.add_response("delete_subnet", {}, {"SubnetId": "subnet-b"})
        stub.add_client_error("delete_subnet", service_error_code="InvalidSubnetID.NotFound")
        stub.add_response(
            "detach_internet_gateway", {}, {"InternetGatewayId": "igw-1", "VpcId": "vpc-1"}
        )
        stub.add_response("delete_internet_gateway", {}, {"InternetGatewayId": "igw-1"})
        stub.add_response("delete_vpc", {}, {"VpcId": "vpc-1"})
        provider.delete()
        stub.assert_no_pending_responses()

    assert InventoryStore(provider.inventory.path).load() == []
    assert messages[0] == "deleting route-table rtb-1"


def test_delete_failures_are_aggregated(tmp_path: Path) -> None:
    """A failing deletion is reported and the resource stays inventoried."""
    provider = _provider(tmp_path)
    provider.inventory.append(InventoryEntry(kind="vpc", id="vpc-1"))
    provider.inventory.append(InventoryEntry(kind="subnet", id="subnet-a"))
    ec2 = _ec2(provider)

    with Stubber(ec2) as stub:
        stub.add_response("delete_subnet", {}, {"SubnetId": "subnet-a"})
        stub.add_client_error("delete_vpc", service_error_code="DependencyViolation")
        with pytest.raises(TeardownError) as excinfo:
            provider.delete()

    assert len(excinfo.value.errors) == 1
    assert excinfo.value.errors[0].startswith("vpc vpc-1:")
    assert [entry.id for entry in InventoryStore(provider.inventory.path).load()] == ["vpc-1"]


def test_delete_continues_past_connection_errors(tmp_path: Path) -> None:
    """An unreachable endpoint fails that resource only; later ones are still tried."""
    provider = _provider(tmp_path)
    provider.inventory.append(InventoryEntry(kind="vpc", id="vpc-1"))
    provider.inventory.append(InventoryEntry(kind="subnet", id="subnet-a"))
    ec2 = MagicMock()
    ec2.delete_subnet.side_effect = EndpointConnectionError(
        endpoint_url="https://ec2.us-east-1.amazonaws.com"
    )
    provider._clients["ec2"] = ec2
    provider._clients["eks"] = MagicMock()

    with pytest.raises(TeardownError) as excinfo:
        provider.delete()

    assert len(excinfo.value.errors) == 1
    assert excinfo.value.errors[0].startswith("subnet subnet-a:")
    ec2.delete_vpc.assert_called_once_with(VpcId="vpc-1")
    assert [entry.id for entry in InventoryStore(provider.inventory.path).load()] == ["subnet-a"]


class FakeIdentity:
    """Records IAM calls made by the provider hooks."""

    calls: list[str] = []
    fail_delete: set[str] = set()

    def __init__(self, session: Any, *, sleep: Any = None) -> None:
        self.session = session

    def create_runtime_management_role(self, cluster: str, account_id: str) -> str:
        self.calls.append("create runtime role")
        return f"arn:aws:iam::{account_id}:role/cpctl-runtime-management-{cluster}"

    def create_policy(self, name: str, document: str, *, description: str = "") -> str:
        self.calls.append(f"create policy {name}")
        return f"arn:aws:iam::{ACCOUNT}:policy/{name}"

    def create_service_account(self, cluster: str, policy_arn: str) -> AccessKey:
        self.calls.append("create user")
        return AccessKey(
            user_name=f"cpctl-runtime-sa-{cluster}",
            access_key_id="AKIAEXAMPLE",
            secret_access_key="shh",
        )

    def create_service_account_role(self, name: str, **kwargs: Any) -> str:
        self.calls.append(f"create sa role {name} for {kwargs['service_account']}")
        return f"arn:aws:iam::{ACCOUNT}:role/{name}"

    def delete_role(self, name: str) -> None:
        self.calls.append(f"delete role {name}")
        if name in self.fail_delete:
            raise IdentityError(f"cannot delete {name}")

    def delete_service_account(self, user: str) -> None:
        self.calls.append(f"delete user {user}")

    def delete_policy(self, arn: str) -> None:
        self.calls.append(f"delete policy {arn}")


@pytest.fixture
def identity(monkeypatch: pytest.MonkeyPatch) -> type[FakeIdentity]:
    """Replace the IAM manager used by the EKS provider."""
    FakeIdentity.calls = []
    FakeIdentity.fail_delete = set()
    monkeypatch.setattr(eks, "IdentityManager", FakeIdentity)
    return FakeIdentity


def test_post_install_creates_runtime_identities(
    tmp_path: Path, identity: type[FakeIdentity]
) -> None:
    """Runtime credentials and IRSA service accounts are created with undo actions."""
    provider = _provider(tmp_path)
    provider.inventory.append(
        InventoryEntry(
            kind="oidc-provider",
            id=f"arn:aws:iam::{ACCOUNT}:oidc-provider/oidc.eks.us-east-1.amazonaws.com/id/ABC",
            attributes={"issuer": "https://oidc.eks.us-east-1.amazonaws.com/id/ABC"},
        )
    )
    installer = FakeInstaller()
    context = CompensationContext("alpha", provider)
    instance = ControlPlaneInstance(name="alpha", provider=ProviderKind.EKS)

    provider.post_install(installer, instance, context)  # type: ignore[arg-type]

    secret = installer.secrets["aws-runtime-credentials"]
    assert secret["AWS_ACCESS_KEY_ID"] == "AKIAEXAMPLE"
    assert secret["AWS_ROLE_ARN"].endswith("cpctl-runtime-management-cpctl-alpha")
    assert installer.service_accounts == {
        "cpctl-aws-controller",
        "cpctl-kubernetes-runtime-controller",
    }
    assert "create sa role cpctl-sa-aws-alpha for cpctl-aws-controller" in identity.calls
    labels = [label for label, _action in context.identity_undo]
    assert labels[:3] == [
        "IAM role cpctl-runtime-management-cpctl-alpha",
        "service account policy",
        "IAM user cpctl-runtime-sa-cpctl-alpha",
    ]
    assert len(labels) == 7


def test_post_install_requires_oidc_provider(tmp_path: Path, identity: type[FakeIdentity]) -> None:
    """Without a recorded OIDC provider the IRSA roles cannot be created."""
    provider = _provider(tmp_path)

    with pytest.raises(eks.ProviderError, match="no OIDC provider"):
        provider.post_install(
            FakeInstaller(),  # type: ignore[arg-type]
            ControlPlaneInstance(name="alpha", provider=ProviderKind.EKS),
            CompensationContext("alpha", provider),
        )


def test_release_identity_attempts_every_deletion(
    tmp_path: Path, identity: type[FakeIdentity]
) -> None:
    """A failing role deletion does not stop the others."""
    identity.fail_delete = {"cpctl-runtime-management-cpctl-alpha"}
    provider = _provider(tmp_path)

    with pytest.raises(TeardownError) as excinfo:
        provider.release_identity()

    assert identity.calls == [
        "delete user cpctl-runtime-sa-cpctl-alpha",
        "delete role cpctl-sa-aws-alpha",
        "delete role cpctl-sa-runtime-alpha",
        "delete role cpctl-runtime-management-cpctl-alpha",
        "delete role cpctl-resource-manager-cpctl-alpha",
    ]
    assert excinfo.value.errors == [
        "role cpctl-runtime-management-cpctl-alpha: cannot delete cpctl-runtime-management-cpctl-alpha"
    ]


def test_register_records_account_definition_and_instance(tmp_path: Path) -> None:
    """Registration links the account, definition and instance by ID."""
    provider = _provider(tmp_path)
    provider.inventory.append(InventoryEntry(kind="vpc", id="vpc-1", region="us-east-1"))
    client = FakeRegistrationClient()

    provider.register(
        client,  # type: ignore[arg-type]
        ControlPlaneInstance(name="alpha", provider=ProviderKind.EKS),
    )

    names = [name for name, _payload in client.created]
    assert names == [
        "create_aws_account",
        "create_aws_eks_runtime_definition",
        "create_aws_eks_runtime_instance",
    ]
    account, definition, runtime = (payload for _name, payload in client.created)
    assert account["AccountID"] == ACCOUNT
    assert definition["AwsAccountID"] == 1
    assert runtime["AwsEksKubernetesRuntimeDefinitionID"] == 2
    assert runtime["ResourceInventory"][0]["id"] == "vpc-1"
