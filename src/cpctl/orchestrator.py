"""Create and delete control planes as explicit, ordered state machines.

``Orchestrator.create`` walks :class:`ProvisioningState` from ``INIT`` to
``COMPLETE``. Every step failure is wrapped in a
:class:`~cpctl.errors.ProvisioningError` naming the step and the last state
reached, then handed to the :class:`~cpctl.compensator.Compensator` before
it propagates. ``Orchestrator.delete`` refuses to touch anything until the
genesis checks pass, then tears down in a fixed order and aggregates every
failure.
"""
from __future__ import annotations

import re
import time
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .api_client import RegistrationClient, RegistrationError
from .compensator import CompensationContext, Compensator, InterruptGuard
from .config import AppConfig
from .credentials import (
    CertificatePair,
    api_server_alt_names,
    generate_certificate,
    generate_certificate_authority,
    generate_database_credentials,
    generate_encryption_key,
)
from .errors import (
    ProvisioningError,
    ProvisioningInterrupted,
    ReadinessTimeoutError,
    StateConflictError,
    TeardownError,
    ValidationError,
)
from .inventory import InventoryStore
from .kube import ComponentInstaller, ImageSettings, KubeError, component_names
from .models import (
    API_SERVICE_NAME,
    INSTANCE_NAME_MAX_LENGTH,
    ControlPlaneInstance,
    EKSSettings,
    OKESettings,
    ProviderKind,
    RuntimeHandle,
    runtime_name,
)
from .providers.base import InfrastructureProvider, ProgressCallback
from .providers.eks import EKSProvider
from .providers.local import LocalProvider, PortForward
from .providers.oke import OKEProvider
from .retry import RetryExhaustedError
from .state.registry import InstanceRegistry

NAME_PATTERN = re.compile(r"^[a-z][a-z0-9-]*$")
DOMAIN_PATTERN = re.compile(r"^(?=.{1,253}$)([a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z]{2,63}$")
DEFAULT_OKE_WORKER_NODES = 2


class ProvisioningState(str, Enum):
    """Milestones of a create run, in order."""

    INIT = "init"
    INFRA_READY = "infra_ready"
    SECRETS_READY = "secrets_ready"
    COMPONENTS_INSTALLED = "components_installed"
    API_REACHABLE = "api_reachable"
    AUTH_INSTALLED = "auth_installed"
    CONTROLLERS_INSTALLED = "controllers_installed"
    AGENT_INSTALLED = "agent_installed"
    SELF_REGISTERED = "self_registered"
    COMPLETE = "complete"


@dataclass(frozen=True)
class CreateRequest:
    """Operator input for ``cpctl create``."""

    name: str
    provider: str = ProviderKind.KIND.value
    auth_enabled: bool = True
    root_domain: str | None = None
    worker_nodes: int | None = None
    control_plane_only: bool = False
    infra_only: bool = False
    skip_teardown: bool = False
    force_overwrite: bool = False
    port_forwards: tuple[str, ...] = ()
    local_registry: bool = False
    aws_profile: str = "default"
    aws_region: str = ""
    oci_profile: str = "DEFAULT"
    oci_region: str = ""
    oci_compartment_id: str = ""

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation for operation logs."""
        return {
            "name": self.name,
            "provider": self.provider,
            "auth_enabled": self.auth_enabled,
            "root_domain": self.root_domain,
            "worker_nodes": self.worker_nodes,
            "control_plane_only": self.control_plane_only,
            "infra_only": self.infra_only,
            "skip_teardown": self.skip_teardown,
            "force_overwrite": self.force_overwrite,
            "port_forwards": list(self.port_forwards),
            "local_registry": self.local_registry,
        }


@dataclass
class CreateResult:
    """Outcome of a successful create run."""

    instance: ControlPlaneInstance
    state: ProvisioningState
    states: list[ProvisioningState] = field(default_factory=list)


@dataclass
class DeleteResult:
    """Outcome of a successful delete run."""

    name: str
    warnings: list[str] = field(default_factory=list)


ProviderFactory = Callable[
    [ControlPlaneInstance, CreateRequest | None, ProgressCallback], InfrastructureProvider
]
InstallerFactory = Callable[[RuntimeHandle, ControlPlaneInstance], ComponentInstaller]
ClientFactory = Callable[..., RegistrationClient]


def validate_create_request(request: CreateRequest) -> ProviderKind:
    """Reject invalid create input; return the parsed provider kind."""
    name = request.name
    if len(name) > INSTANCE_NAME_MAX_LENGTH:
        raise ValidationError(
            f"instance name is too long, cannot exceed {INSTANCE_NAME_MAX_LENGTH} characters"
        )
    if not NAME_PATTERN.match(name):
        raise ValidationError(
            f"invalid instance name '{name}': use lowercase letters, digits and '-', "
            "starting with a letter"
        )
    try:
        kind = ProviderKind(request.provider)
    except ValueError as exc:
        allowed = ", ".join(item.value for item in ProviderKind)
        raise ValidationError(
            f"invalid provider value '{request.provider}', must be one of {allowed}"
        ) from exc
    if not request.auth_enabled and kind is not ProviderKind.KIND:
        raise ValidationError(
            "cannot turn off client certificate authentication unless using the kind provider"
        )
    if request.infra_only and request.control_plane_only:
        raise ValidationError("--infra-only and --control-plane-only cannot be combined")
    if kind is not ProviderKind.KIND and (request.port_forwards or request.local_registry):
        raise ValidationError("port forwards and the local registry require the kind provider")
    for value in request.port_forwards:
        try:
            PortForward.parse(value)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
    if request.worker_nodes is not None and request.worker_nodes < 0:
        raise ValidationError("worker node count cannot be negative")
    if request.root_domain and not DOMAIN_PATTERN.match(request.root_domain):
        raise ValidationError(f"invalid root domain '{request.root_domain}'")
    return kind


def inventory_store(config: AppConfig, kind: ProviderKind, name: str) -> InventoryStore:
    """Return the inventory store for a managed provider instance."""
    return InventoryStore(config.provider_config_dir / f"{kind.value}-inventory-{name}.json")


def build_provider(
    config: AppConfig,
    instance: ControlPlaneInstance,
    request: CreateRequest | None,
    on_progress: ProgressCallback,
) -> InfrastructureProvider:
    """Build the provider for *instance*.

    With a *request* the provider is configured for creation; without one it
    is rebuilt from the recorded instance for deletion.
    """
    name = instance.name
    if instance.provider is ProviderKind.KIND:
        return LocalProvider(
            name,
            auth_enabled=instance.auth_enabled,
            worker_nodes=(request.worker_nodes or 0) if request else 0,
            port_forwards=[PortForward.parse(value) for value in request.port_forwards]
            if request
            else [],
            local_registry=request.local_registry if request else False,
            owns_registry=instance.owns_local_registry,
            kind_bin=config.commands.kind,
            docker_bin=config.commands.docker,
            kubeconfig=config.kubeconfig,
            on_progress=on_progress,
        )
    if instance.provider is ProviderKind.EKS:
        eks = instance.eks or EKSSettings(
            profile=request.aws_profile if request else "default",
            region=request.aws_region if request else "",
        )
        provider = EKSProvider(
            name,
            settings=eks,
            inventory=inventory_store(config, ProviderKind.EKS, name),
            iam=config.iam,
            namespace=instance.namespace,
            on_progress=on_progress,
        )
        if request is None:
            provider.resume_identity()
        return provider
    oke = instance.oke or OKESettings(
        profile=request.oci_profile if request else "DEFAULT",
        region=request.oci_region if request else "",
        compartment_id=request.oci_compartment_id if request else "",
    )
    worker_nodes = request.worker_nodes if request and request.worker_nodes else None
    return OKEProvider(
        name,
        settings=oke,
        inventory=inventory_store(config, ProviderKind.OKE, name),
        worker_nodes=worker_nodes or DEFAULT_OKE_WORKER_NODES,
        oci_bin=config.commands.oci,
        on_progress=on_progress,
    )


@dataclass
class _Run:
    state: ProvisioningState = ProvisioningState.INIT
    step: str = ""
    states: list[ProvisioningState] = field(default_factory=list)

    def reach(self, state: ProvisioningState) -> None:
        self.state = state
        self.states.append(state)


def _ignore(_: str) -> None:
    return None


class Orchestrator:
    """Run the create and delete workflows against one registry."""

    def __init__(
        self,
        config: AppConfig,
        registry: InstanceRegistry,
        *,
        provider_factory: ProviderFactory | None = None,
        installer_factory: InstallerFactory | None = None,
        client_factory: ClientFactory | None = None,
        compensator: Compensator | None = None,
        on_progress: ProgressCallback | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Wire the orchestrator to its collaborators."""
        self.config = config
        self.registry = registry
        self.on_progress = on_progress or _ignore
        self.provider_factory = provider_factory or (
            lambda instance, request, progress: build_provider(config, instance, request, progress)
        )
        self.installer_factory = installer_factory or self._connect_installer
        self.client_factory = client_factory or RegistrationClient
        self.compensator = compensator or Compensator(
            registry,
            grace_period=config.inventory_grace_period,
            on_progress=self.on_progress,
            sleep=sleep,
        )

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------
    def create(self, request: CreateRequest) -> CreateResult:
        """Provision a genesis control plane; compensate on any failure."""
        kind = validate_create_request(request)
        if self.registry.exists(request.name) and not request.force_overwrite:
            raise StateConflictError(
                f"control plane instance '{request.name}' already exists; "
                "use --force-overwrite to replace the record"
            )
        skeleton = ControlPlaneInstance(
            name=request.name,
            provider=kind,
            genesis=True,
            namespace=self.config.namespace,
            auth_enabled=request.auth_enabled,
            control_plane_only=request.control_plane_only,
        )
        provider = self._build_provider(skeleton, request)
        skeleton = skeleton.evolve(**provider.settings())
        context = CompensationContext(
            request.name,
            provider,
            skip_teardown=request.skip_teardown,
            control_plane_only=request.control_plane_only,
        )
        run = _Run()
        with InterruptGuard(context):
            try:
                return self._create(request, skeleton, provider, context, run)
            except ProvisioningError as error:
                self._compensate(context, error)
                raise
            except ProvisioningInterrupted as interrupt:
                error = ProvisioningError(
                    f"{run.step or 'start'}: {interrupt}", step=run.step, state=run.state.value
                )
                self._compensate(context, error)
                interrupt.teardown_error = error.teardown_error
                raise

    def _create(
        self,
        request: CreateRequest,
        skeleton: ControlPlaneInstance,
        provider: InfrastructureProvider,
        context: CompensationContext,
        run: _Run,
    ) -> CreateResult:
        name = request.name
        auth = request.auth_enabled

        with self._step(run, "write registry record"):
            self.registry.upsert(name, lambda _current: skeleton)
            with context.mutate():
                context.clean_registry = True

        if not request.control_plane_only:
            with self._step(run, "prepare provider identity"):
                provider.prepare_identity(context)
                self._record(name, **provider.settings())

        if request.control_plane_only:
            with self._step(run, "connect to existing runtime"):
                handle = provider.get_connection()
                instance = self._record(name, kube_api=handle)
        else:
            with self._step(run, "create infrastructure"):
                with context.mutate():
                    context.infra_requested = True
                handle = provider.create()
                instance = self._record(name, kube_api=handle, **provider.settings())
        run.reach(ProvisioningState.INFRA_READY)
        if request.infra_only:
            self.on_progress(f"infrastructure for {name} is ready")
            return CreateResult(instance=instance, state=run.state, states=run.states)

        ca: CertificatePair | None = None
        client_pair: CertificatePair | None = None
        with self._step(run, "generate credentials"):
            encryption_key = generate_encryption_key()
            database = generate_database_credentials()
            if auth:
                ca = generate_certificate_authority()
                client_pair = generate_certificate(ca, "localhost", common_name="cpctl-client")
            instance = self._record(name, encryption_key=encryption_key)
        run.reach(ProvisioningState.SECRETS_READY)

        with self._step(run, "install control plane components"):
            handle = provider.ensure_fresh(handle)
            installer = self.installer_factory(handle, instance)
            context.attach_installer(installer)
            installer.install_dependencies(encryption_key, database)
            installer.install_api_server(
                service_type=provider.api_service_type,
                auth_enabled=auth,
                annotations=provider.api_service_annotations(),
            )
            api_url = self._api_endpoint(provider, installer, auth)
            if ca is not None and client_pair is not None:
                server = generate_certificate(
                    ca,
                    *api_server_alt_names(instance.namespace, api_url),
                    common_name=API_SERVICE_NAME,
                )
                installer.install_api_tls(server, client_pair, ca.certificate)
            provider.post_install(installer, instance, context)
        run.reach(ProvisioningState.COMPONENTS_INSTALLED)

        client: RegistrationClient | None = None
        try:
            with self._step(run, "wait for control plane API"):
                client = self.client_factory(
                    api_url,
                    ca_cert=ca.certificate if ca else None,
                    client_cert=client_pair.certificate if client_pair else None,
                    client_key=client_pair.private_key if client_pair else None,
                )
                try:
                    client.wait_until_ready(
                        attempts=self.config.readiness.attempts,
                        delay=self.config.readiness.delay,
                    )
                except RetryExhaustedError as exc:
                    raise ReadinessTimeoutError(
                        f"wait for control plane API: {exc}",
                        step=run.step,
                        state=run.state.value,
                    ) from exc
            run.reach(ProvisioningState.API_REACHABLE)

            if ca is not None and client_pair is not None:
                with self._step(run, "record client credentials"):
                    instance = self._record(
                        name,
                        ca_cert=ca.certificate,
                        client_cert=client_pair.certificate,
                        client_key=client_pair.private_key,
                    )
                run.reach(ProvisioningState.AUTH_INSTALLED)

            in_cluster_url = self._in_cluster_api_url(instance)
            with self._step(run, "install controllers"):
                installer.install_controllers(
                    auth_enabled=auth, api_url=in_cluster_url, root_domain=request.root_domain
                )
            run.reach(ProvisioningState.CONTROLLERS_INSTALLED)

            with self._step(run, "install agent"):
                installer.install_agent(auth_enabled=auth, api_url=in_cluster_url)
                installer.install_support_services(settle=self.config.rest_mapping_delay)
            run.reach(ProvisioningState.AGENT_INSTALLED)

            with self._step(run, "self-register control plane"):
                handle = provider.ensure_fresh(handle)
                self._self_register(client, provider, instance, handle, api_url)
            run.reach(ProvisioningState.SELF_REGISTERED)
        finally:
            if client is not None:
                client.close()

        with self._step(run, "finalise registry record"):
            instance = self._record(name, api_server=api_url, kube_api=handle)
            self.registry.set_current(name)
            context.finish()
        run.reach(ProvisioningState.COMPLETE)
        self.on_progress(f"control plane {name} is ready at {api_url}")
        return CreateResult(instance=instance, state=run.state, states=run.states)

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------
    def delete(self, name: str) -> DeleteResult:
        """Tear down a genesis control plane and the infrastructure cpctl created for it."""
        instance = self.registry.get(name)
        if not instance.genesis:
            raise StateConflictError(
                f"control plane instance '{name}' is not a genesis instance; "
                "delete it through the control plane that created it"
            )
        managed = sorted(
            item.name
            for item in self.registry.list()
            if not item.genesis
            and item.name != instance.name
            and instance.api_server
            and item.api_server == instance.api_server
        )
        if managed:
            raise StateConflictError(
                f"cannot delete genesis control plane '{name}' while instances it manages are "
                f"recorded locally: {', '.join(managed)}"
            )
        provider = self._build_provider(instance, None)
        result = DeleteResult(name=instance.name)
        if instance.api_server:
            self._check_dependents(instance, provider, result)

        failures: list[str] = []
        if instance.kube_api is not None:
            self.on_progress("removing control plane components")
            self._attempt(
                "remove control plane components",
                lambda: self._uninstall(provider, instance),
                failures,
            )
        if not instance.control_plane_only:
            self.on_progress(f"deleting {instance.provider.value} infrastructure")
            self._attempt("delete infrastructure", provider.delete, failures)
            self._attempt("release provider identity", provider.release_identity, failures)
            inventory = provider.inventory
            if inventory is not None:
                self._attempt("remove inventory file", inventory.remove, failures)
        if failures:
            raise TeardownError(failures)
        self.registry.remove(instance.name)
        self.on_progress(f"control plane {instance.name} deleted")
        return result

    def _check_dependents(
        self,
        instance: ControlPlaneInstance,
        provider: InfrastructureProvider,
        result: DeleteResult,
    ) -> None:
        client = self._client_for(instance)
        try:
            try:
                workloads = client.list_workload_instances()
                control_planes = client.list_control_plane_instances()
            except RegistrationError as exc:
                raise StateConflictError(
                    f"cannot verify that control plane '{instance.name}' has no dependents: {exc}"
                ) from exc
            if workloads:
                raise StateConflictError(
                    f"control plane '{instance.name}' still runs {len(workloads)} workload "
                    "instance(s); delete them first"
                )
            if len(control_planes) > 1:
                raise StateConflictError(
                    f"control plane '{instance.name}' manages {len(control_planes) - 1} other "
                    "control plane instance(s); delete them first"
                )
            self._push_fresh_token(client, provider, instance, result)
        finally:
            client.close()

    def _push_fresh_token(
        self,
        client: RegistrationClient,
        provider: InfrastructureProvider,
        instance: ControlPlaneInstance,
        result: DeleteResult,
    ) -> None:
        """Give in-cluster controllers a current runtime token before teardown."""
        if instance.kube_api is None or instance.kube_api.token is None:
            return
        try:
            handle = provider.refresh_connection()
            runtime = client.get_kubernetes_runtime_instance(runtime_name(instance.name))
            client.update_kubernetes_runtime_instance(
                runtime.get("ID"),
                {
                    "ConnectionToken": handle.token,
                    "ConnectionTokenExpiration": handle.to_record()["token_expiration"],
                },
            )
        except (RegistrationError, RuntimeError) as exc:
            result.warnings.append(f"could not refresh runtime token in the control plane: {exc}")

    def _uninstall(self, provider: InfrastructureProvider, instance: ControlPlaneInstance) -> None:
        if instance.kube_api is None:
            raise ProvisioningError("no runtime connection is recorded for this instance")
        try:
            handle = provider.ensure_fresh(instance.kube_api)
        except Exception as exc:
            raise ProvisioningError(f"refresh runtime credentials: {exc}") from exc
        try:
            self.installer_factory(handle, instance).uninstall()
        except KubeError as exc:
            if not exc.unauthorized:
                raise
            self.on_progress("runtime rejected credentials, refreshing once")
            handle = provider.refresh_connection()
            self.installer_factory(handle, instance).uninstall()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @contextmanager
    def _step(self, run: _Run, step: str) -> Iterator[None]:
        run.step = step
        self.on_progress(step)
        try:
            yield
        except ProvisioningError:
            raise
        except RetryExhaustedError as exc:
            raise ReadinessTimeoutError(
                f"{step}: {exc}", step=step, state=run.state.value
            ) from exc
        except Exception as exc:
            raise ProvisioningError(f"{step}: {exc}", step=step, state=run.state.value) from exc

    def _build_provider(
        self, instance: ControlPlaneInstance, request: CreateRequest | None
    ) -> InfrastructureProvider:
        try:
            return self.provider_factory(instance, request, self.on_progress)
        except Exception as exc:
            raise ProvisioningError(
                f"configure {instance.provider.value} provider: {exc}", step="configure provider"
            ) from exc

    def _compensate(self, context: CompensationContext, error: ProvisioningError) -> None:
        if context.skip_teardown:
            message = "skipping teardown, created resources are left in place"
        else:
            message = "provisioning failed, tearing down created resources"
        while True:
            try:
                if message:
                    self.on_progress(message)
                    message = ""
                self.compensator.compensate(context, error)
                return
            except ProvisioningInterrupted:
                # Only reachable before the context is claimed; the handler
                # is inert once compensation has started.
                if context.compensating or context.compensated:
                    raise

    def _record(self, name: str, **changes: Any) -> ControlPlaneInstance:
        def apply(current: ControlPlaneInstance | None) -> ControlPlaneInstance:
            if current is None:
                raise StateConflictError(f"control plane instance '{name}' vanished from registry")
            return current.evolve(**changes)

        return self.registry.upsert(name, apply)

    def _connect_installer(
        self, handle: RuntimeHandle, instance: ControlPlaneInstance
    ) -> ComponentInstaller:
        return ComponentInstaller.connect(
            handle,
            name=runtime_name(instance.name),
            namespace=instance.namespace,
            images=ImageSettings(repo=self.config.image_repo, tag=self.config.image_tag),
        )

    def _api_endpoint(
        self,
        provider: InfrastructureProvider,
        installer: ComponentInstaller,
        auth_enabled: bool,
    ) -> str:
        if provider.uses_load_balancer:
            host = installer.api_endpoint(self.config.load_balancer)
            return f"{'https' if auth_enabled else 'http'}://{host}"
        endpoint = provider.local_api_endpoint(auth_enabled)
        if endpoint is None:
            raise ProvisioningError(f"{provider.kind.value} provider reported no API endpoint")
        return endpoint

    @staticmethod
    def _in_cluster_api_url(instance: ControlPlaneInstance) -> str:
        scheme = "https" if instance.auth_enabled else "http"
        return f"{scheme}://{API_SERVICE_NAME}.{instance.namespace}.svc.cluster.local"

    def _client_for(self, instance: ControlPlaneInstance) -> RegistrationClient:
        return self.client_factory(
            str(instance.api_server),
            ca_cert=instance.ca_cert,
            client_cert=instance.client_cert,
            client_key=instance.client_key,
        )

    def _self_register(
        self,
        client: RegistrationClient,
        provider: InfrastructureProvider,
        instance: ControlPlaneInstance,
        handle: RuntimeHandle,
        api_url: str,
    ) -> None:
        runtime = runtime_name(instance.name)
        definition = client.create_kubernetes_runtime_definition(
            {"Name": runtime, "InfraProvider": provider.kind.value}
        )
        record = handle.to_record()
        runtime_instance = client.create_kubernetes_runtime_instance(
            {
                "Name": runtime,
                "ThreeportControlPlaneHost": True,
                "ThreeportAgentDeployed": True,
                "DefaultRuntime": True,
                "APIEndpoint": provider.registered_kube_endpoint(handle),
                "CACertificate": handle.ca_cert,
                "Certificate": handle.client_cert,
                "CertificateKey": handle.client_key,
                "ConnectionToken": handle.token,
                "ConnectionTokenExpiration": record["token_expiration"],
                "KubernetesRuntimeDefinitionID": definition.get("ID"),
            }
        )
        provider.register(client, instance)
        cp_definition = client.create_control_plane_definition(
            {"Name": instance.name, "AuthEnabled": instance.auth_enabled}
        )
        client.create_control_plane_instance(
            {
                "Name": instance.name,
                "Namespace": instance.namespace,
                "Genesis": True,
                "IsSelf": True,
                "ApiServerEndpoint": api_url,
                "ControlPlaneDefinitionID": cp_definition.get("ID"),
                "KubernetesRuntimeInstanceID": runtime_instance.get("ID"),
                "CustomComponentInfo": [
                    {
                        "Name": component,
                        "ImageRepo": self.config.image_repo,
                        "ImageTag": self.config.image_tag,
                    }
                    for component in component_names()
                ],
            }
        )

    @staticmethod
    def _attempt(label: str, action: Callable[[], object], failures: list[str]) -> None:
        try:
            action()
        except TeardownError as exc:
            failures.extend(f"{label}: {item}" for item in exc.errors)
        except Exception as exc:  # noqa: BLE001 - every teardown step must be attempted
            failures.append(f"{label}: {exc}")


def describe_states(states: Sequence[ProvisioningState]) -> list[str]:
    """Return the state values in the order they were reached."""
    return [state.value for state in states]


__all__ = [
    "CreateRequest",
    "CreateResult",
    "DeleteResult",
    "Orchestrator",
    "ProvisioningState",
    "build_provider",
    "describe_states",
    "validate_create_request",
]
