"""AWS EKS provider built on boto3."""
from __future__ import annotations

import base64
import time
from collections.abc import Callable, Mapping
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any, ClassVar

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from botocore.signers import RequestSigner

from ..config import IAMConfig
from ..errors import TeardownError
from ..inventory import InventoryEntry, InventoryStore
from ..models import ControlPlaneInstance, EKSSettings, ProviderKind, RuntimeHandle, runtime_name
from .base import InfrastructureProvider, ProgressCallback, ProgressStreams, ProviderError
from .iam import (
    RESOURCE_MANAGER_ROLE,
    RUNTIME_MANAGEMENT_ROLE,
    RUNTIME_SERVICE_ACCOUNT,
    SERVICE_ACCOUNT_ROLE,
    IdentityError,
    IdentityManager,
    assume_role_policy,
    is_not_found,
    role_name,
)

if TYPE_CHECKING:
    from ..api_client import RegistrationClient
    from ..compensator import CompensationContext
    from ..kube import ComponentInstaller

TOKEN_PREFIX = "k8s-aws-v1."
TOKEN_LIFETIME = timedelta(minutes=14)
CLUSTER_ID_HEADER = "x-k8s-aws-id"
NLB_ANNOTATIONS = {"service.beta.kubernetes.io/aws-load-balancer-type": "nlb"}
RUNTIME_CREDENTIALS_SECRET = "aws-runtime-credentials"

# Controllers that reach AWS through IAM roles for service accounts.
IRSA_CONTROLLERS: dict[str, str] = {
    "aws-controller": "aws",
    "kubernetes-runtime-controller": "runtime",
}

VPC_CIDR = "10.0.0.0/16"
KUBERNETES_VERSION = "1.31"
CLUSTER_POLICIES = ("arn:aws:iam::aws:policy/AmazonEKSClusterPolicy",)
NODE_POLICIES = (
    "arn:aws:iam::aws:policy/AmazonEKSWorkerNodePolicy",
    "arn:aws:iam::aws:policy/AmazonEKS_CNI_Policy",
    "arn:aws:iam::aws:policy/AmazonEC2ContainerRegistryReadOnly",
)

# Deletion order; entries of one kind are removed newest first.
DELETE_ORDER = (
    "eks-nodegroup",
    "eks-cluster",
    "oidc-provider",
    "iam-role",
    "route-table-association",
    "route-table",
    "subnet",
    "internet-gateway",
    "vpc",
)


def eks_token(
    session: boto3.Session,
    cluster: str,
    *,
    now: datetime | None = None,
) -> tuple[str, datetime]:
    """Return a bearer token for *cluster* and the time it stops being valid.

    The token is a presigned STS ``GetCallerIdentity`` URL bound to the
    cluster name, the same scheme ``aws eks get-token`` uses.
    """
    region = session.region_name or "us-east-1"
    sts = session.client("sts", region_name=region)
    signer = RequestSigner(
        sts.meta.service_model.service_id,
        region,
        "sts",
        "v4",
        session.get_credentials(),
        session.events,
    )
    request = {
        "method": "GET",
        "url": f"https://sts.{region}.amazonaws.com/?Action=GetCallerIdentity&Version=2011-06-15",
        "body": {},
        "headers": {CLUSTER_ID_HEADER: cluster},
        "context": {},
    }
    url = signer.generate_presigned_url(
        request, region_name=region, expires_in=60, operation_name=""
    )
    encoded = base64.urlsafe_b64encode(url.encode("utf-8")).decode("ascii").rstrip("=")
    issued = now or datetime.now(tz=UTC)
    return TOKEN_PREFIX + encoded, issued + TOKEN_LIFETIME


def _tags(cluster: str, resource: str) -> list[dict[str, Any]]:
    return [
        {
            "ResourceType": resource,
            "Tags": [
                {"Key": "Name", "Value": cluster},
                {"Key": "managed-by", "Value": "cpctl"},
            ],
        }
    ]


def _service_trust(service: str) -> str:
    return (
        '{"Version": "2012-10-17", "Statement": [{"Effect": "Allow", '
        f'"Principal": {{"Service": "{service}"}}, "Action": "sts:AssumeRole"}}]}}'
    )


class EKSProvider(InfrastructureProvider):
    """Create an EKS cluster and its network in the operator's AWS account."""

    kind: ClassVar[ProviderKind] = ProviderKind.EKS

    def __init__(
        self,
        name: str,
        *,
        settings: EKSSettings,
        inventory: InventoryStore,
        iam: IAMConfig,
        namespace: str,
        session: boto3.Session | None = None,
        zone_count: int = 2,
        instance_type: str = "t3.medium",
        initial_nodes: int = 3,
        min_nodes: int = 3,
        max_nodes: int = 250,
        on_progress: ProgressCallback | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Configure the provider for control plane *name*."""
        super().__init__(name, on_progress=on_progress)
        self.base_session = session or boto3.Session(
            profile_name=settings.profile, region_name=settings.region or None
        )
        self.session = self.base_session
        self.region = settings.region or self.base_session.region_name or ""
        self.account_id = settings.account_id
        self.resource_manager_role_arn = settings.resource_manager_role_arn
        self.profile = settings.profile
        self.iam_config = iam
        self.namespace = namespace
        self.zone_count = zone_count
        self.instance_type = instance_type
        self.initial_nodes = initial_nodes
        self.min_nodes = min_nodes
        self.max_nodes = max_nodes
        self._inventory = inventory
        self._sleep = sleep
        self._clients: dict[str, Any] = {}

    @property
    def inventory(self) -> InventoryStore:
        """Return the on-disk resource inventory."""
        return self._inventory

    @property
    def cluster_name(self) -> str:
        """Return the EKS cluster name."""
        return runtime_name(self.name)

    def settings(self) -> Mapping[str, object]:
        """Return the EKS settings recorded on the instance."""
        return {
            "eks": EKSSettings(
                profile=self.profile,
                region=self.region,
                account_id=self.account_id,
                resource_manager_role_arn=self.resource_manager_role_arn,
            )
        }

    def api_service_annotations(self) -> Mapping[str, str]:
        """Request a network load balancer for the API server."""
        return dict(NLB_ANNOTATIONS)

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------
    def prepare_identity(self, context: CompensationContext) -> None:
        """Create and assume the resource manager role."""
        identity = IdentityManager(self.base_session, sleep=self._sleep)
        self.account_id = identity.caller_identity()["Account"]
        name = role_name(RESOURCE_MANAGER_ROLE, self.cluster_name)
        self.on_progress(f"creating IAM role {name}")
        self.resource_manager_role_arn = identity.create_resource_manager_role(
            self.cluster_name, self.account_id
        )
        context.register_undo(f"IAM role {name}", lambda: identity.delete_role(name))
        self._switch_session(identity, self.resource_manager_role_arn)
        self.on_progress("waiting for IAM role propagation")
        identity.wait_for_propagation(self.session, self.iam_config)

    def resume_identity(self) -> None:
        """Assume the recorded resource manager role, if it still exists."""
        if not self.resource_manager_role_arn:
            return
        identity = IdentityManager(self.base_session, sleep=self._sleep)
        try:
            self._switch_session(identity, self.resource_manager_role_arn)
        except IdentityError as exc:
            self.on_progress(f"continuing with operator credentials: {exc}")

    def release_identity(self) -> None:
        """Delete every IAM identity created for this control plane."""
        identity = IdentityManager(self.base_session, sleep=self._sleep)
        failures: list[str] = []
        steps: list[tuple[str, Callable[[], None]]] = [
            (
                "service account",
                lambda: identity.delete_service_account(
                    role_name(RUNTIME_SERVICE_ACCOUNT, self.cluster_name)
                ),
            )
        ]
        for short in IRSA_CONTROLLERS.values():
            sa_role = self._irsa_role_name(short)
            steps.append((f"role {sa_role}", lambda sa_role=sa_role: identity.delete_role(sa_role)))
        for prefix in (RUNTIME_MANAGEMENT_ROLE, RESOURCE_MANAGER_ROLE):
            name = role_name(prefix, self.cluster_name)
            steps.append((f"role {name}", lambda name=name: identity.delete_role(name)))
        for label, action in steps:
            try:
                action()
            except IdentityError as exc:
                failures.append(f"{label}: {exc}")
        if failures:
            raise TeardownError(failures)

    # ------------------------------------------------------------------
    # Infrastructure
    # ------------------------------------------------------------------
    def create(self) -> RuntimeHandle:
        """Build the network, IAM roles, cluster and node group."""
        with ProgressStreams(self.on_progress, self._inventory) as streams:
            self._create_resources(streams)
        return self.get_connection()

    def delete(self) -> None:
        """Delete every inventoried resource, dependents first."""
        entries = self._inventory.load()
        failures: list[str] = []
        with ProgressStreams(self.on_progress, None) as streams:
            for kind in DELETE_ORDER:
                for entry in reversed([item for item in entries if item.kind == kind]):
                    streams.progress(f"deleting {entry.kind} {entry.id}")
                    try:
                        self._delete_entry(entry)
                    except (BotoCoreError, ClientError, IdentityError) as exc:
                        if isinstance(exc, ClientError) and is_not_found(exc):
                            self._inventory.discard(entry.kind, entry.id)
                            continue
                        failures.append(f"{entry.kind} {entry.id}: {exc}")
                        continue
                    self._inventory.discard(entry.kind, entry.id)
        if failures:
            raise TeardownError(failures)

    def get_connection(self) -> RuntimeHandle:
        """Describe the cluster and mint a fresh token."""
        try:
            cluster = self._client("eks").describe_cluster(name=self.cluster_name)["cluster"]
        except ClientError as exc:
            raise ProviderError(f"failed to describe cluster {self.cluster_name}: {exc}") from exc
        token, expiration = eks_token(self.session, self.cluster_name)
        return RuntimeHandle(
            endpoint=str(cluster["endpoint"]),
            ca_cert=base64.b64decode(cluster["certificateAuthority"]["data"]).decode("utf-8"),
            token=token,
            token_expiration=expiration,
        )

    # ------------------------------------------------------------------
    # Control plane hooks
    # ------------------------------------------------------------------
    def post_install(
        self,
        installer: ComponentInstaller,
        instance: ControlPlaneInstance,
        context: CompensationContext,
    ) -> None:
        """Create the runtime management identities and IRSA service accounts."""
        identity = IdentityManager(self.base_session, sleep=self._sleep)
        runtime_role = role_name(RUNTIME_MANAGEMENT_ROLE, self.cluster_name)
        self.on_progress(f"creating IAM role {runtime_role}")
        runtime_role_arn = identity.create_runtime_management_role(
            self.cluster_name, self.account_id
        )
        context.register_undo(f"IAM role {runtime_role}", lambda: identity.delete_role(runtime_role))

        policy_arn = identity.create_policy(
            f"{role_name(RUNTIME_SERVICE_ACCOUNT, self.cluster_name)}-policy",
            assume_role_policy(runtime_role_arn),
            description="Allow the control plane to manage runtimes.",
        )
        context.register_undo("service account policy", lambda: identity.delete_policy(policy_arn))
        access_key = identity.create_service_account(self.cluster_name, policy_arn)
        context.register_undo(
            f"IAM user {access_key.user_name}",
            lambda: identity.delete_service_account(access_key.user_name),
        )
        installer.apply_secret(
            RUNTIME_CREDENTIALS_SECRET,
            {
                "AWS_ACCESS_KEY_ID": access_key.access_key_id,
                "AWS_SECRET_ACCESS_KEY": access_key.secret_access_key,
                "AWS_ROLE_ARN": runtime_role_arn,
            },
        )

        oidc = self._inventory.find("oidc-provider")
        if not oidc:
            raise ProviderError(f"no OIDC provider recorded for {self.cluster_name}")
        issuer = str(oidc[0].attributes.get("issuer", ""))
        for controller, short in IRSA_CONTROLLERS.items():
            sa_name = f"cpctl-{controller}"
            sa_role = self._irsa_role_name(short)
            sa_policy = identity.create_policy(
                f"{sa_role}-policy",
                assume_role_policy(str(self.resource_manager_role_arn)),
                description=f"Allow {sa_name} to assume the resource manager role.",
            )
            context.register_undo(
                f"policy for {sa_role}", lambda sa_policy=sa_policy: identity.delete_policy(sa_policy)
            )
            arn = identity.create_service_account_role(
                sa_role,
                oidc_provider_arn=oidc[0].id,
                oidc_issuer=issuer,
                namespace=instance.namespace,
                service_account=sa_name,
                policy_arns=[sa_policy],
            )
            context.register_undo(
                f"IAM role {sa_role}", lambda sa_role=sa_role: identity.delete_role(sa_role)
            )
            installer.apply_service_account(sa_name, {"eks.amazonaws.com/role-arn": arn})

    def register(self, client: RegistrationClient, instance: ControlPlaneInstance) -> None:
        """Register the AWS account, EKS runtime definition and instance."""
        account = client.create_aws_account(
            {
                "Name": "default-account",
                "AccountID": self.account_id,
                "DefaultAccount": True,
                "DefaultRegion": self.region,
                "RoleArn": self.resource_manager_role_arn,
            }
        )
        definition = client.create_aws_eks_runtime_definition(
            {
                "Name": self.cluster_name,
                "AwsAccountID": account.get("ID"),
                "ZoneCount": self.zone_count,
                "DefaultNodeGroupInstanceType": self.instance_type,
                "DefaultNodeGroupInitialSize": self.initial_nodes,
                "DefaultNodeGroupMinimumSize": self.min_nodes,
                "DefaultNodeGroupMaximumSize": self.max_nodes,
            }
        )
        client.create_aws_eks_runtime_instance(
            {
                "Name": self.cluster_name,
                "Region": self.region,
                "AwsEksKubernetesRuntimeDefinitionID": definition.get("ID"),
                "ResourceInventory": self._inventory.snapshot(),
            }
        )

    # Internal helpers -------------------------------------------------
    def _client(self, service: str) -> Any:
        if service not in self._clients:
            self._clients[service] = self.session.client(service, region_name=self.region or None)
        return self._clients[service]

    def _switch_session(self, identity: IdentityManager, role_arn: str) -> None:
        self.session = identity.assume_role(role_arn, session_name=f"cpctl-{self.name}")
        self._clients = {}

    def _irsa_role_name(self, short: str) -> str:
        return role_name(f"{SERVICE_ACCOUNT_ROLE}-{short}", self.name)

    def _create_resources(self, streams: ProgressStreams) -> None:
        ec2 = self._client("ec2")
        iam = self._client("iam")
        eks = self._client("eks")
        cluster = self.cluster_name

        def record(kind: str, resource_id: str, **attributes: Any) -> None:
            streams.record(
                InventoryEntry(kind=kind, id=resource_id, region=self.region, attributes=attributes)
            )

        streams.progress("creating VPC")
        vpc = ec2.create_vpc(
            CidrBlock=VPC_CIDR, TagSpecifications=_tags(cluster, "vpc")
        )["Vpc"]["VpcId"]
        record("vpc", vpc)
        ec2.modify_vpc_attribute(VpcId=vpc, EnableDnsHostnames={"Value": True})

        streams.progress("creating internet gateway")
        gateway = ec2.create_internet_gateway(
            TagSpecifications=_tags(cluster, "internet-gateway")
        )["InternetGateway"]["InternetGatewayId"]
        record("internet-gateway", gateway, vpc_id=vpc)
        ec2.attach_internet_gateway(InternetGatewayId=gateway, VpcId=vpc)

        zones = ec2.describe_availability_zones(
            Filters=[{"Name": "state", "Values": ["available"]}]
        )["AvailabilityZones"][: self.zone_count]
        subnets: list[str] = []
        for index, zone in enumerate(zones):
            streams.progress(f"creating subnet in {zone['ZoneName']}")
            subnet = ec2.create_subnet(
                VpcId=vpc,
                CidrBlock=f"10.0.{index * 16}.0/20",
                AvailabilityZone=zone["ZoneName"],
                TagSpecifications=_tags(cluster, "subnet"),
            )["Subnet"]["SubnetId"]
            record("subnet", subnet, zone=zone["ZoneName"])
            ec2.modify_subnet_attribute(SubnetId=subnet, MapPublicIpOnLaunch={"Value": True})
            subnets.append(subnet)

        streams.progress("creating route table")
        table = ec2.create_route_table(
            VpcId=vpc, TagSpecifications=_tags(cluster, "route-table")
        )["RouteTable"]["RouteTableId"]
        record("route-table", table)
        ec2.create_route(RouteTableId=table, DestinationCidrBlock="0.0.0.0/0", GatewayId=gateway)
        for subnet in subnets:
            association = ec2.associate_route_table(RouteTableId=table, SubnetId=subnet)
            record("route-table-association", association["AssociationId"], subnet_id=subnet)

        cluster_role = self._service_role(
            iam, f"cpctl-cluster-{self.name}", "eks.amazonaws.com", CLUSTER_POLICIES, record, streams
        )
        node_role = self._service_role(
            iam, f"cpctl-node-{self.name}", "ec2.amazonaws.com", NODE_POLICIES, record, streams
        )

        streams.progress(f"creating EKS cluster {cluster}")
        eks.create_cluster(
            name=cluster,
            version=KUBERNETES_VERSION,
            roleArn=cluster_role,
            resourcesVpcConfig={"subnetIds": subnets, "endpointPublicAccess": True},
            tags={"managed-by": "cpctl"},
        )
        record("eks-cluster", cluster)
        streams.progress(f"waiting for EKS cluster {cluster} to become active")
        eks.get_waiter("cluster_active").wait(name=cluster)

        issuer = eks.describe_cluster(name=cluster)["cluster"]["identity"]["oidc"]["issuer"]
        streams.progress("creating OIDC provider")
        oidc_arn = iam.create_open_id_connect_provider(
            Url=issuer, ClientIDList=["sts.amazonaws.com"]
        )["OpenIDConnectProviderArn"]
        record("oidc-provider", oidc_arn, issuer=issuer)

        nodegroup = f"{cluster}-nodes"
        streams.progress(f"creating node group {nodegroup}")
        eks.create_nodegroup(
            clusterName=cluster,
            nodegroupName=nodegroup,
            scalingConfig={
                "minSize": self.min_nodes,
                "maxSize": self.max_nodes,
                "desiredSize": self.initial_nodes,
            },
            subnets=subnets,
            instanceTypes=[self.instance_type],
            nodeRole=node_role,
        )
        record("eks-nodegroup", nodegroup, cluster=cluster)
        streams.progress(f"waiting for node group {nodegroup} to become active")
        eks.get_waiter("nodegroup_active").wait(clusterName=cluster, nodegroupName=nodegroup)

    def _service_role(
        self,
        iam: Any,
        name: str,
        service: str,
        policies: tuple[str, ...],
        record: Callable[..., None],
        streams: ProgressStreams,
    ) -> str:
        streams.progress(f"creating IAM role {name}")
        arn = iam.create_role(
            RoleName=name, AssumeRolePolicyDocument=_service_trust(service)
        )["Role"]["Arn"]
        record("iam-role", name)
        for policy in policies:
            iam.attach_role_policy(RoleName=name, PolicyArn=policy)
        return str(arn)

    def _delete_entry(self, entry: InventoryEntry) -> None:
        ec2 = self._client("ec2")
        eks = self._client("eks")
        if entry.kind == "eks-nodegroup":
            cluster = str(entry.attributes.get("cluster", self.cluster_name))
            eks.delete_nodegroup(clusterName=cluster, nodegroupName=entry.id)
            eks.get_waiter("nodegroup_deleted").wait(clusterName=cluster, nodegroupName=entry.id)
        elif entry.kind == "eks-cluster":
            eks.delete_cluster(name=entry.id)
            eks.get_waiter("cluster_deleted").wait(name=entry.id)
        elif entry.kind == "oidc-provider":
            self._client("iam").delete_open_id_connect_provider(OpenIDConnectProviderArn=entry.id)
        elif entry.kind == "iam-role":
            IdentityManager(self.session, sleep=self._sleep).delete_role(entry.id)
        elif entry.kind == "route-table-association":
            ec2.disassociate_route_table(AssociationId=entry.id)
        elif entry.kind == "route-table":
            ec2.delete_route_table(RouteTableId=entry.id)
        elif entry.kind == "subnet":
            ec2.delete_subnet(SubnetId=entry.id)
        elif entry.kind == "internet-gateway":
            vpc = entry.attributes.get("vpc_id")
            if vpc:
                try:
                    ec2.detach_internet_gateway(InternetGatewayId=entry.id, VpcId=str(vpc))
                except ClientError as exc:
                    if not is_not_found(exc) and "NotAttached" not in str(exc):
                        raise
            ec2.delete_internet_gateway(InternetGatewayId=entry.id)
        elif entry.kind == "vpc":
            ec2.delete_vpc(VpcId=entry.id)


__all__ = ["EKSProvider", "eks_token"]
