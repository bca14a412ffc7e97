# preview_engine/infrastructure/kubernetes/infrastructure.py
"""Infrastructure that deploys preview applications to Kubernetes."""

import json
import logging
import re
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from kubernetes import client, config
from kubernetes.client.exceptions import ApiException
from pydantic import SecretStr

from preview_engine.config import ContainerConfig, Settings
from preview_engine.core.errors import (
    InfrastructureConflictError,
    InfrastructureError,
    InfrastructureNotFoundError,
    InvalidAppNameError,
    RouteConversionError,
)
from preview_engine.core.models import (
    AppName,
    ContainerType,
    Environment,
    EnvironmentVariable,
    Service,
    ServiceConfig,
    ServiceStatus,
)
from preview_engine.deployment.deployment_unit import DeployableService, DeploymentUnit
from preview_engine.infrastructure.base import AppLocks, Infrastructure
from preview_engine.infrastructure.kubernetes.crds import (
    INGRESS_ROUTE_PLURAL,
    MIDDLEWARE_PLURAL,
    TRAEFIK_GROUP,
    TRAEFIK_VERSION,
    ingress_route_from_resource,
)
from preview_engine.infrastructure.kubernetes.payloads import (
    deployment_payload,
    deployment_replicas_payload,
    image_pull_secret_payload,
    ingress_route_payload,
    middleware_payload,
    namespace_payload,
    persistent_volume_claim_payload,
    secrets_payload,
    service_payload,
)
from preview_engine.infrastructure.labels import (
    APP_NAME_LABEL,
    CONTAINER_TYPE_LABEL,
    IMAGE_LABEL,
    REPLICATED_ENV_LABEL,
    SERVICE_NAME_LABEL,
    STORAGE_TYPE_LABEL,
)
from preview_engine.traefik.routes import TraefikIngressRoute

logger = logging.getLogger(__name__)

_LOG_TIMESTAMP = re.compile(r"^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(?:\.(\d+))?(Z|[+-]\d{2}:\d{2})$")


def _wrap_api_error(e: ApiException, action: str) -> InfrastructureError:
    message = f"Failed to {action}: {e.status} {e.reason}"
    if e.status == 404:
        return InfrastructureNotFoundError(message, status=e.status)
    if e.status == 409:
        return InfrastructureConflictError(message, status=e.status)
    return InfrastructureError(message, status=e.status)


def parse_log_line(line: str) -> Optional[Tuple[datetime, str]]:
    """
    Split a line of `kubectl logs --timestamps` into timestamp and message.

    Kubernetes uses nanosecond precision which is cut to microseconds.
    """
    timestamp, _, message = line.partition(" ")
    match = _LOG_TIMESTAMP.match(timestamp)
    if match is None:
        return None

    seconds, fraction, zone = match.groups()
    fraction = (fraction or "0")[:6].ljust(6, "0")
    zone = "+00:00" if zone == "Z" else zone

    return datetime.fromisoformat(f"{seconds}.{fraction}{zone}"), message


class KubernetesInfrastructure(Infrastructure):
    """
    Deploys every application into its own namespace.

    Objects are applied with create-or-update semantics so redeploying an
    unchanged service is a no-op for the cluster.
    """

    def __init__(
        self,
        settings: Settings,
        core_v1: Optional[client.CoreV1Api] = None,
        apps_v1: Optional[client.AppsV1Api] = None,
        custom_objects: Optional[client.CustomObjectsApi] = None,
    ):
        self._settings = settings
        self._core_v1 = core_v1
        self._apps_v1 = apps_v1
        self._custom_objects = custom_objects
        self._api_client: Optional[client.ApiClient] = None
        self._serializer: Optional[client.ApiClient] = None
        self._locks = AppLocks()

    # -------------------------
    # CLIENTS
    # -------------------------

    def _client(self) -> client.ApiClient:
        """Load in-cluster config first, then the kubeconfig."""
        if self._api_client is None:
            try:
                config.load_incluster_config()
            except config.ConfigException:
                try:
                    config.load_kube_config(
                        config_file=self._settings.kubeconfig,
                        context=self._settings.kube_context,
                    )
                except config.ConfigException as e:
                    raise InfrastructureError(f"Failed to load Kubernetes config: {e}") from e

            self._api_client = client.ApiClient()
        return self._api_client

    @property
    def core_v1(self) -> client.CoreV1Api:
        if self._core_v1 is None:
            self._core_v1 = client.CoreV1Api(self._client())
        return self._core_v1

    @property
    def apps_v1(self) -> client.AppsV1Api:
        if self._apps_v1 is None:
            self._apps_v1 = client.AppsV1Api(self._client())
        return self._apps_v1

    @property
    def custom_objects(self) -> client.CustomObjectsApi:
        if self._custom_objects is None:
            self._custom_objects = client.CustomObjectsApi(self._client())
        return self._custom_objects

    def _to_dict(self, obj: Any) -> Dict[str, Any]:
        if isinstance(obj, dict):
            return obj
        if self._serializer is None:
            self._serializer = client.ApiClient()
        return self._serializer.sanitize_for_serialization(obj)

    # -------------------------
    # QUERIES
    # -------------------------

    def get_services(self) -> Dict[AppName, List[Service]]:
        try:
            deployments = self.apps_v1.list_deployment_for_all_namespaces(
                label_selector=APP_NAME_LABEL
            ).items
        except ApiException as e:
            raise _wrap_api_error(e, "list deployments") from e

        services: Dict[AppName, List[Service]] = {}
        for deployment in deployments:
            service = self._service_from_deployment(deployment)
            if service is None:
                continue
            services.setdefault(service.app_name, []).append(service)

        return services

    def _services_of_app(self, app_name: AppName) -> List[Service]:
        try:
            deployments = self.apps_v1.list_namespaced_deployment(
                app_name.to_rfc1123_namespace_id(),
                label_selector=f"{APP_NAME_LABEL}={app_name}",
            ).items
        except ApiException as e:
            if e.status == 404:
                return []
            raise _wrap_api_error(e, f"list deployments of {app_name}") from e

        services = []
        for deployment in deployments:
            service = self._service_from_deployment(deployment)
            if service is not None:
                services.append(service)
        return services

    def _service_from_deployment(self, deployment: Any) -> Optional[Service]:
        deployment = self._to_dict(deployment)
        metadata = deployment.get("metadata") or {}
        labels = metadata.get("labels") or {}
        annotations = metadata.get("annotations") or {}

        try:
            app_name = AppName.parse(labels.get(APP_NAME_LABEL, ""))
        except InvalidAppNameError:
            logger.warning(f"Ignoring deployment {metadata.get('name')} with invalid application label")
            return None

        service_name = labels.get(SERVICE_NAME_LABEL)
        if not service_name:
            logger.warning(f"Ignoring deployment {metadata.get('name')} without service label")
            return None

        try:
            container_type = ContainerType.parse(labels.get(CONTAINER_TYPE_LABEL, "instance"))
        except ValueError:
            logger.warning(f"Ignoring deployment {metadata.get('name')} with unknown container type")
            return None

        spec = deployment.get("spec") or {}
        containers = (((spec.get("template") or {}).get("spec") or {}).get("containers")) or [{}]
        container = containers[0]

        ports = container.get("ports") or []
        port = ports[0].get("containerPort", 80) if ports else 80

        service_config = ServiceConfig(
            service_name=service_name,
            image=annotations.get(IMAGE_LABEL, container.get("image", "")),
            env=self._environment(container, annotations),
            port=port,
            container_type=container_type,
        )

        started_at = metadata.get("creationTimestamp")
        if isinstance(started_at, str):
            started_at = datetime.fromisoformat(started_at.replace("Z", "+00:00"))

        replicas = spec.get("replicas")
        status = ServiceStatus.PAUSED if replicas == 0 else ServiceStatus.RUNNING

        return Service(
            id=metadata.get("uid") or metadata.get("name", ""),
            app_name=app_name,
            config=service_config,
            status=status,
            started_at=started_at,
        )

    @staticmethod
    def _environment(container: Dict[str, Any], annotations: Dict[str, str]) -> Optional[Environment]:
        if "env" not in container or container["env"] is None:
            return None

        replicated = {}
        if REPLICATED_ENV_LABEL in annotations:
            try:
                replicated = json.loads(annotations[REPLICATED_ENV_LABEL])
            except ValueError:
                logger.warning("Ignoring malformed replicated environment annotation")

        variables = []
        for entry in container["env"]:
            key = entry.get("name")
            details = replicated.get(key, {})
            variables.append(
                EnvironmentVariable(
                    key=key,
                    value=SecretStr(entry.get("value") or ""),
                    templated=bool(details.get("templated", False)),
                    replicate=bool(details.get("replicate", False)),
                )
            )
        return Environment(variables)

    # -------------------------
    # DEPLOY
    # -------------------------

    def deploy_services(
        self,
        status_id: str,
        deployment_unit: DeploymentUnit,
        container_config: ContainerConfig,
    ) -> List[Service]:
        app_name = deployment_unit.app_name

        with self._locks.for_app(app_name):
            logger.info(
                f"[{status_id}] Deploying {len(deployment_unit.services)} services of {app_name}"
            )

            self._upsert_namespace(app_name)

            if deployment_unit.requires_image_pull_secret:
                self._replace_image_pull_secret(app_name, deployment_unit)

            base_route = self.base_traefik_ingress_route()

            deployed = []
            for service in deployment_unit.services:
                deployed.append(
                    self._deploy_service(
                        status_id,
                        app_name,
                        service,
                        container_config,
                        deployment_unit.requires_image_pull_secret,
                        base_route,
                    )
                )

            logger.info(f"[{status_id}] ✅ Deployed {app_name}: {deployment_unit.service_names()}")
            return deployed

    def _deploy_service(
        self,
        status_id: str,
        app_name: AppName,
        service: DeployableService,
        container_config: ContainerConfig,
        use_image_pull_secret: bool,
        base_route: Optional[TraefikIngressRoute],
    ) -> Service:
        namespace = app_name.to_rfc1123_namespace_id()
        logger.info(f"[{status_id}] Deploying {service.service_name} ({service.image}) to {namespace}")

        if service.files:
            self._upsert(
                self.core_v1.create_namespaced_secret,
                self.core_v1.patch_namespaced_secret,
                secrets_payload(app_name, service.config, service.files),
                "secret",
            )

        claims = self._persistent_volume_claims(app_name, service)

        deployment = self._upsert(
            self.apps_v1.create_namespaced_deployment,
            self.apps_v1.replace_namespaced_deployment,
            deployment_payload(
                app_name,
                service,
                container_config,
                use_image_pull_secret,
                claims,
            ),
            "deployment",
        )

        self._upsert(
            self.core_v1.create_namespaced_service,
            self.core_v1.patch_namespaced_service,
            service_payload(app_name, service.config),
            "service",
        )

        if service.ingress_route.is_empty():
            logger.debug(f"[{status_id}] {service.service_name} has no route, skipping ingress")
        else:
            if base_route is not None:
                service = replace(service, ingress_route=service.ingress_route.merge_with(base_route))

            for middleware in middleware_payload(app_name, service):
                self._upsert_custom_object(MIDDLEWARE_PLURAL, middleware)

            self._upsert_custom_object(INGRESS_ROUTE_PLURAL, ingress_route_payload(app_name, service))

        return self._service_from_deployment(deployment)

    def _upsert(
        self,
        create: Callable,
        update: Callable,
        body: Dict[str, Any],
        kind: str,
    ) -> Any:
        name = body["metadata"]["name"]
        namespace = body["metadata"]["namespace"]

        try:
            return create(namespace, body)
        except ApiException as e:
            if e.status != 409:
                raise _wrap_api_error(e, f"create {kind} {namespace}/{name}") from e

        try:
            return update(name, namespace, body)
        except ApiException as e:
            raise _wrap_api_error(e, f"update {kind} {namespace}/{name}") from e

    def _upsert_namespace(self, app_name: AppName) -> None:
        body = namespace_payload(app_name, self._settings)
        name = body["metadata"]["name"]

        try:
            self.core_v1.create_namespace(body)
            logger.info(f"Created namespace {name}")
        except ApiException as e:
            if e.status != 409:
                raise _wrap_api_error(e, f"create namespace {name}") from e
            try:
                self.core_v1.patch_namespace(name, body)
            except ApiException as e:
                raise _wrap_api_error(e, f"update namespace {name}") from e

    def _upsert_custom_object(self, plural: str, body: Dict[str, Any]) -> Any:
        name = body["metadata"]["name"]
        namespace = body["metadata"]["namespace"]

        try:
            return self.custom_objects.create_namespaced_custom_object(
                TRAEFIK_GROUP, TRAEFIK_VERSION, namespace, plural, body
            )
        except ApiException as e:
            if e.status != 409:
                raise _wrap_api_error(e, f"create {plural} {namespace}/{name}") from e

        try:
            return self.custom_objects.patch_namespaced_custom_object(
                TRAEFIK_GROUP, TRAEFIK_VERSION, namespace, plural, name, body
            )
        except ApiException as e:
            raise _wrap_api_error(e, f"update {plural} {namespace}/{name}") from e

    def _replace_image_pull_secret(self, app_name: AppName, deployment_unit: DeploymentUnit) -> None:
        """The secret is immutable, so an existing one is deleted first."""
        body = image_pull_secret_payload(app_name, deployment_unit.image_pull_credentials)
        name = body["metadata"]["name"]
        namespace = body["metadata"]["namespace"]

        try:
            self.core_v1.delete_namespaced_secret(name, namespace)
        except ApiException as e:
            if e.status != 404:
                raise _wrap_api_error(e, f"delete secret {namespace}/{name}") from e

        try:
            self.core_v1.create_namespaced_secret(namespace, body)
        except ApiException as e:
            raise _wrap_api_error(e, f"create secret {namespace}/{name}") from e

    def _persistent_volume_claims(
        self,
        app_name: AppName,
        service: DeployableService,
    ) -> Dict[str, Dict[str, Any]]:
        """
        Claims for the declared volumes of `service`, matched by their
        storage-type label; missing claims are created.
        """
        storage = self._settings.runtime.storage
        if storage is None or not service.declared_volumes:
            return {}

        namespace = app_name.to_rfc1123_namespace_id()
        selector = f"{APP_NAME_LABEL}={app_name},{SERVICE_NAME_LABEL}={service.service_name}"

        try:
            existing = self.core_v1.list_namespaced_persistent_volume_claim(
                namespace, label_selector=selector
            ).items
        except ApiException as e:
            raise _wrap_api_error(e, f"list volume claims of {namespace}") from e

        claims_by_type = {}
        for claim in existing:
            claim = self._to_dict(claim)
            storage_type = ((claim.get("metadata") or {}).get("labels") or {}).get(STORAGE_TYPE_LABEL)
            claims_by_type.setdefault(storage_type, claim)

        claims = {}
        for path in service.declared_volumes:
            body = persistent_volume_claim_payload(
                app_name, service, storage.storage_size, storage.storage_class, path
            )
            storage_type = body["metadata"]["labels"][STORAGE_TYPE_LABEL]

            claim = claims_by_type.get(storage_type)
            if claim is None:
                try:
                    claim = self._to_dict(
                        self.core_v1.create_namespaced_persistent_volume_claim(namespace, body)
                    )
                except ApiException as e:
                    raise _wrap_api_error(e, f"create volume claim for {path}") from e
                claims_by_type[storage_type] = claim
                logger.info(f"Created volume claim {claim['metadata'].get('name')} for {path}")

            claims[path] = claim

        return claims

    # -------------------------
    # STOP
    # -------------------------

    def stop_services(self, status_id: str, app_name: AppName) -> List[Service]:
        with self._locks.for_app(app_name):
            services = self._services_of_app(app_name)
            if not services:
                logger.info(f"[{status_id}] Nothing to stop for {app_name}")
                return []

            namespace = app_name.to_rfc1123_namespace_id()
            try:
                self.core_v1.delete_namespace(namespace)
            except ApiException as e:
                if e.status != 404:
                    raise _wrap_api_error(e, f"delete namespace {namespace}") from e

            logger.info(f"[{status_id}] ✅ Stopped {len(services)} services of {app_name}")
            return services

    # -------------------------
    # LOGS & STATUS
    # -------------------------

    def get_logs(
        self,
        app_name: AppName,
        service_name: str,
        from_timestamp: Optional[datetime],
        limit: int,
    ) -> Optional[List[Tuple[datetime, str]]]:
        if from_timestamp is not None and from_timestamp.tzinfo is None:
            # Log timestamps are UTC
            from_timestamp = from_timestamp.replace(tzinfo=timezone.utc)

        namespace = app_name.to_rfc1123_namespace_id()
        selector = f"{APP_NAME_LABEL}={app_name},{SERVICE_NAME_LABEL}={service_name}"

        try:
            pods = self.core_v1.list_namespaced_pod(namespace, label_selector=selector).items
        except ApiException as e:
            if e.status == 404:
                return None
            raise _wrap_api_error(e, f"list pods of {service_name}") from e

        if not pods:
            return None

        kwargs = {"timestamps": True}
        if from_timestamp is not None:
            elapsed = datetime.now(timezone.utc) - from_timestamp
            kwargs["since_seconds"] = max(1, int(elapsed.total_seconds()) + 1)

        pod_name = self._to_dict(pods[0])["metadata"]["name"]
        try:
            log = self.core_v1.read_namespaced_pod_log(pod_name, namespace, **kwargs)
        except ApiException as e:
            # 400: container is still being created
            if e.status in (400, 404):
                return None
            raise _wrap_api_error(e, f"read logs of {pod_name}") from e

        lines = []
        for line in (log or "").splitlines():
            parsed = parse_log_line(line)
            if parsed is None:
                continue
            if from_timestamp is not None and parsed[0] < from_timestamp:
                continue
            lines.append(parsed)
            if len(lines) >= limit:
                break

        return lines

    def change_status(
        self,
        app_name: AppName,
        service_name: str,
        status: ServiceStatus,
    ) -> Optional[Service]:
        with self._locks.for_app(app_name):
            service = next(
                (s for s in self._services_of_app(app_name) if s.service_name == service_name),
                None,
            )
            if service is None:
                return None

            replicas = 1 if status == ServiceStatus.RUNNING else 0
            body = deployment_replicas_payload(app_name, service, replicas)

            try:
                deployment = self.apps_v1.patch_namespaced_deployment(
                    body["metadata"]["name"], body["metadata"]["namespace"], body
                )
            except ApiException as e:
                if e.status == 404:
                    return None
                raise _wrap_api_error(e, f"scale {service_name}") from e

            logger.info(f"Changed status of {app_name}/{service_name} to {status.value}")
            return self._service_from_deployment(deployment)

    def base_traefik_ingress_route(self) -> Optional[TraefikIngressRoute]:
        reference = self._settings.runtime.base_ingress_route
        if reference is None:
            return None

        try:
            resource = self.custom_objects.get_namespaced_custom_object(
                TRAEFIK_GROUP,
                TRAEFIK_VERSION,
                reference.namespace,
                INGRESS_ROUTE_PLURAL,
                reference.name,
            )
        except ApiException as e:
            if e.status == 404:
                logger.warning(f"Base ingress route {reference.namespace}/{reference.name} not found")
                return None
            raise _wrap_api_error(e, "read base ingress route") from e

        try:
            return ingress_route_from_resource(resource)
        except RouteConversionError as e:
            logger.warning(f"Ignoring base ingress route: {e}")
            return None
