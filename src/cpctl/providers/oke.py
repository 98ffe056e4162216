"""Oracle Cloud OKE provider built on the ``oci`` SDK."""
from __future__ import annotations

import base64
import json
from collections.abc import Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, ClassVar

import oci
import yaml

from ..errors import TeardownError
from ..inventory import InventoryEntry, InventoryStore
from ..models import ControlPlaneInstance, OKESettings, ProviderKind, RuntimeHandle, runtime_name
from .base import (
    CommandRunner,
    InfrastructureProvider,
    ProgressCallback,
    ProgressStreams,
    ProviderCommandError,
    ProviderError,
)

if TYPE_CHECKING:
    from ..api_client import RegistrationClient
    from ..compensator import CompensationContext

KUBERNETES_VERSION = "v1.32.1"
NODE_SHAPE = "VM.Standard.A1.Flex"
NODE_OCPUS = 1.0
NODE_MEMORY_GBS = 6.0
VCN_CIDR = "10.0.0.0/16"
SUBNET_CIDR = "10.0.0.0/24"
DEFAULT_CONFIG_FILE = "~/.oci/config"
WAIT_SECONDS = 1800

DELETE_ORDER = (
    "oke-node-pool",
    "oke-cluster",
    "subnet",
    "security-list",
    "route-table",
    "internet-gateway",
    "vcn",
)


def parse_exec_credential(document: str) -> tuple[str, datetime | None]:
    """Return the token and expiry from a Kubernetes ``ExecCredential``."""
    try:
        payload = json.loads(document)
        status = payload["status"]
        token = str(status["token"])
    except (ValueError, KeyError, TypeError) as exc:
        raise ProviderError(f"invalid ExecCredential from oci: {exc}") from exc
    raw_expiry = status.get("expirationTimestamp")
    if not raw_expiry:
        return token, None
    try:
        expiry = datetime.fromisoformat(str(raw_expiry).replace("Z", "+00:00"))
    except ValueError as exc:
        raise ProviderError(f"invalid token expiration '{raw_expiry}'") from exc
    return token, expiry if expiry.tzinfo else expiry.replace(tzinfo=UTC)


class OKEProvider(InfrastructureProvider):
    """Create an OKE cluster and its network in an OCI compartment."""

    kind: ClassVar[ProviderKind] = ProviderKind.OKE

    def __init__(
        self,
        name: str,
        *,
        settings: OKESettings,
        inventory: InventoryStore,
        oci_config: Mapping[str, Any] | None = None,
        config_file: str = DEFAULT_CONFIG_FILE,
        worker_nodes: int = 2,
        oci_bin: str = "oci",
        runner: CommandRunner | None = None,
        clients: Mapping[str, Any] | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        """Configure the provider for control plane *name*."""
        super().__init__(name, on_progress=on_progress)
        self.profile = settings.profile
        self.config_file = config_file
        self._oci_config = dict(oci_config) if oci_config is not None else None
        self.region = settings.region
        self.compartment_id = settings.compartment_id
        self.tenancy_id = settings.tenancy_id
        self.cluster_id = settings.cluster_id
        self.worker_nodes = worker_nodes
        self.oci_bin = oci_bin
        self.run = runner or CommandRunner()
        self._inventory = inventory
        self._clients: dict[str, Any] = dict(clients or {})

    @property
    def inventory(self) -> InventoryStore:
        """Return the on-disk resource inventory."""
        return self._inventory

    @property
    def cluster_name(self) -> str:
        """Return the OKE cluster name."""
        return runtime_name(self.name)

    @property
    def oci_config(self) -> dict[str, Any]:
        """Return the operator's OCI config profile, loading it on first use."""
        if self._oci_config is None:
            try:
                self._oci_config = dict(
                    oci.config.from_file(file_location=self.config_file, profile_name=self.profile)
                )
            except oci.exceptions.ClientError as exc:
                raise ProviderError(f"failed to load OCI profile {self.profile}: {exc}") from exc
            if self.region:
                self._oci_config["region"] = self.region
        return self._oci_config

    def settings(self) -> Mapping[str, object]:
        """Return the OKE settings recorded on the instance."""
        return {
            "oke": OKESettings(
                profile=self.profile,
                region=self.region,
                compartment_id=self.compartment_id,
                tenancy_id=self.tenancy_id,
                cluster_id=self.cluster_id,
            )
        }

    def prepare_identity(self, context: CompensationContext) -> None:
        """Record the tenancy of the operator's profile."""
        config = self.oci_config
        self.tenancy_id = str(config.get("tenancy", "")) or None
        if not self.region:
            self.region = str(config.get("region", ""))
        if not self.compartment_id and self.tenancy_id:
            self.compartment_id = self.tenancy_id

    # ------------------------------------------------------------------
    # Infrastructure
    # ------------------------------------------------------------------
    def create(self) -> RuntimeHandle:
        """Build the network, cluster and node pool."""
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
                    except oci.exceptions.ServiceError as exc:
                        if exc.status != 404:
                            failures.append(f"{entry.kind} {entry.id}: {exc.message}")
                            continue
                    except (
                        oci.exceptions.MaximumWaitTimeExceeded,
                        oci.exceptions.RequestException,
                    ) as exc:
                        failures.append(f"{entry.kind} {entry.id}: {exc}")
                        continue
                    self._inventory.discard(entry.kind, entry.id)
        if failures:
            raise TeardownError(failures)

    def get_connection(self) -> RuntimeHandle:
        """Fetch the cluster kubeconfig and mint a token."""
        cluster_id = self._cluster_id()
        engine = self._client("container_engine")
        try:
            response = engine.create_kubeconfig(
                cluster_id,
                oci.container_engine.models.CreateClusterKubeconfigContentDetails(
                    token_version="2.0.0", endpoint="PUBLIC_ENDPOINT"
                ),
            )
        except oci.exceptions.ServiceError as exc:
            raise ProviderError(f"failed to fetch kubeconfig for {cluster_id}: {exc.message}") from exc
        document = yaml.safe_load(response.data.text) or {}
        try:
            cluster = document["clusters"][0]["cluster"]
            endpoint = str(cluster["server"])
            ca_cert = _decode(cluster["certificate-authority-data"])
        except (KeyError, IndexError, TypeError) as exc:
            raise ProviderError(f"kubeconfig for {cluster_id} is missing {exc}") from exc
        token, expiration = self.generate_token(cluster_id)
        return RuntimeHandle(
            endpoint=endpoint, ca_cert=ca_cert, token=token, token_expiration=expiration
        )

    def generate_token(self, cluster_id: str) -> tuple[str, datetime | None]:
        """Run ``oci ce cluster generate-token`` and parse its credential."""
        args = [self.oci_bin, "ce", "cluster", "generate-token", "--cluster-id", cluster_id]
        if self.region:
            args.extend(["--region", self.region])
        args.extend(["--profile", self.profile])
        try:
            result = self.run(args)
        except ProviderCommandError as exc:
            raise ProviderError(f"failed to generate token for {cluster_id}: {exc}") from exc
        return parse_exec_credential(result.stdout)

    def register(self, client: RegistrationClient, instance: ControlPlaneInstance) -> None:
        """Register the OCI account, OKE runtime definition and instance."""
        config = self.oci_config
        key_file = config.get("key_file")
        private_key = None
        if key_file:
            private_key = Path(str(key_file)).expanduser().read_text(encoding="utf-8")
        account = client.create_oci_account(
            {
                "Name": "default-account",
                "UserOCID": config.get("user"),
                "TenancyOCID": self.tenancy_id,
                "DefaultAccount": True,
                "DefaultRegion": self.region,
                "KeyFingerprint": config.get("fingerprint"),
                "PrivateKey": private_key,
            }
        )
        definition = client.create_oke_runtime_definition(
            {
                "Name": self.cluster_name,
                "OciAccountID": account.get("ID"),
                "WorkerNodeShape": NODE_SHAPE,
                "WorkerNodeInitialCount": self.worker_nodes,
            }
        )
        client.create_oke_runtime_instance(
            {
                "Name": self.cluster_name,
                "Region": self.region,
                "OciOkeKubernetesRuntimeDefinitionID": definition.get("ID"),
                "ResourceInventory": self._inventory.snapshot(),
            }
        )

    # Internal helpers -------------------------------------------------
    def _client(self, service: str) -> Any:
        if service not in self._clients:
            factories = {
                "network": oci.core.VirtualNetworkClient,
                "container_engine": oci.container_engine.ContainerEngineClient,
                "identity": oci.identity.IdentityClient,
            }
            self._clients[service] = factories[service](self.oci_config)
        return self._clients[service]

    def _cluster_id(self) -> str:
        if self.cluster_id:
            return self.cluster_id
        recorded = self._inventory.find("oke-cluster")
        if not recorded:
            raise ProviderError(f"no OKE cluster recorded for {self.cluster_name}")
        self.cluster_id = recorded[0].id
        return self.cluster_id

    def _create_resources(self, streams: ProgressStreams) -> None:
        network = self._client("network")
        engine = self._client("container_engine")
        core = oci.core.models
        compartment = self.compartment_id
        name = self.cluster_name

        def record(kind: str, resource_id: str, **attributes: Any) -> None:
            streams.record(
                InventoryEntry(kind=kind, id=resource_id, region=self.region, attributes=attributes)
            )

        streams.progress("creating VCN")
        vcn = network.create_vcn(
            core.CreateVcnDetails(
                cidr_blocks=[VCN_CIDR], compartment_id=compartment, display_name=name
            )
        ).data
        record("vcn", vcn.id)
        oci.wait_until(network, network.get_vcn(vcn.id), "lifecycle_state", "AVAILABLE")

        streams.progress("creating internet gateway")
        gateway = network.create_internet_gateway(
            core.CreateInternetGatewayDetails(
                compartment_id=compartment, vcn_id=vcn.id, is_enabled=True, display_name=name
            )
        ).data
        record("internet-gateway", gateway.id)

        streams.progress("creating route table")
        table = network.create_route_table(
            core.CreateRouteTableDetails(
                compartment_id=compartment,
                vcn_id=vcn.id,
                display_name=name,
                route_rules=[
                    core.RouteRule(
                        destination="0.0.0.0/0",
                        destination_type="CIDR_BLOCK",
                        network_entity_id=gateway.id,
                    )
                ],
            )
        ).data
        record("route-table", table.id)

        streams.progress("creating security list")
        security_list = network.create_security_list(
            core.CreateSecurityListDetails(
                compartment_id=compartment,
                vcn_id=vcn.id,
                display_name=name,
                egress_security_rules=[
                    core.EgressSecurityRule(destination="0.0.0.0/0", protocol="all")
                ],
                ingress_security_rules=[
                    core.IngressSecurityRule(source=VCN_CIDR, protocol="all"),
                    *(
                        core.IngressSecurityRule(
                            source="0.0.0.0/0",
                            protocol="6",
                            tcp_options=core.TcpOptions(
                                destination_port_range=core.PortRange(min=port, max=port)
                            ),
                        )
                        for port in (443, 6443)
                    ),
                ],
            )
        ).data
        record("security-list", security_list.id)

        streams.progress("creating subnet")
        subnet = network.create_subnet(
            core.CreateSubnetDetails(
                compartment_id=compartment,
                vcn_id=vcn.id,
                cidr_block=SUBNET_CIDR,
                display_name=name,
                route_table_id=table.id,
                security_list_ids=[security_list.id],
                prohibit_public_ip_on_vnic=False,
            )
        ).data
        record("subnet", subnet.id)
        oci.wait_until(network, network.get_subnet(subnet.id), "lifecycle_state", "AVAILABLE")

        ce = oci.container_engine.models
        streams.progress(f"creating OKE cluster {name}")
        response = engine.create_cluster(
            ce.CreateClusterDetails(
                name=name,
                compartment_id=compartment,
                vcn_id=vcn.id,
                kubernetes_version=KUBERNETES_VERSION,
                endpoint_config=ce.CreateClusterEndpointConfigDetails(
                    subnet_id=subnet.id, is_public_ip_enabled=True
                ),
                options=ce.ClusterCreateOptions(service_lb_subnet_ids=[subnet.id]),
            )
        )
        self.cluster_id = self._await_work_request(engine, response, "cluster")
        record("oke-cluster", self.cluster_id)

        streams.progress("creating node pool")
        domain = self._client("identity").list_availability_domains(
            compartment_id=self.tenancy_id or compartment
        ).data[0].name
        response = engine.create_node_pool(
            ce.CreateNodePoolDetails(
                compartment_id=compartment,
                cluster_id=self.cluster_id,
                name=f"{name}-nodes",
                kubernetes_version=KUBERNETES_VERSION,
                node_shape=NODE_SHAPE,
                node_shape_config=ce.CreateNodePoolShapeConfigDetails(
                    ocpus=NODE_OCPUS, memory_in_gbs=NODE_MEMORY_GBS
                ),
                node_source_details=ce.NodeSourceViaImageDetails(
                    image_id=self._node_image(engine)
                ),
                node_config_details=ce.CreateNodePoolNodeConfigDetails(
                    size=self.worker_nodes,
                    placement_configs=[
                        ce.NodePoolPlacementConfigDetails(
                            availability_domain=domain, subnet_id=subnet.id
                        )
                    ],
                ),
            )
        )
        record("oke-node-pool", self._await_work_request(engine, response, "nodepool"))

    def _node_image(self, engine: Any) -> str:
        options = engine.get_node_pool_options(self.cluster_id).data
        version = KUBERNETES_VERSION.removeprefix("v")
        for source in options.sources or []:
            label = str(getattr(source, "source_name", ""))
            if "aarch64" in label and f"OKE-{version}" in label:
                return str(source.image_id)
        raise ProviderError(f"no aarch64 node image available for Kubernetes {KUBERNETES_VERSION}")

    @staticmethod
    def _await_work_request(engine: Any, response: Any, entity_type: str) -> str:
        work_request_id = response.headers["opc-work-request-id"]
        done = oci.wait_until(
            engine,
            engine.get_work_request(work_request_id),
            "status",
            "SUCCEEDED",
            max_wait_seconds=WAIT_SECONDS,
        ).data
        for resource in done.resources or []:
            if str(resource.entity_type).lower() == entity_type:
                return str(resource.identifier)
        raise ProviderError(f"work request {work_request_id} did not report a {entity_type}")

    def _delete_entry(self, entry: InventoryEntry) -> None:
        network = self._client("network")
        engine = self._client("container_engine")
        if entry.kind == "oke-node-pool":
            engine.delete_node_pool(entry.id)
            oci.wait_until(
                engine,
                engine.get_node_pool(entry.id),
                "lifecycle_state",
                "DELETED",
                succeed_on_not_found=True,
                max_wait_seconds=WAIT_SECONDS,
            )
        elif entry.kind == "oke-cluster":
            engine.delete_cluster(entry.id)
            oci.wait_until(
                engine,
                engine.get_cluster(entry.id),
                "lifecycle_state",
                "DELETED",
                succeed_on_not_found=True,
                max_wait_seconds=WAIT_SECONDS,
            )
        elif entry.kind == "subnet":
            network.delete_subnet(entry.id)
        elif entry.kind == "security-list":
            network.delete_security_list(entry.id)
        elif entry.kind == "route-table":
            network.delete_route_table(entry.id)
        elif entry.kind == "internet-gateway":
            network.delete_internet_gateway(entry.id)
        elif entry.kind == "vcn":
            network.delete_vcn(entry.id)


def _decode(value: object) -> str:
    return base64.b64decode(str(value)).decode("utf-8")


__all__ = ["OKEProvider", "parse_exec_credential"]
