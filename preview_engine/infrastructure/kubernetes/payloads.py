# preview_engine/infrastructure/kubernetes/payloads.py
"""
Payloads of the Kubernetes objects that realize a deployable service.

Every function is pure: it returns a manifest as plain dict and never
talks to the cluster. Names are derived from the normalized application
name, the raw name is only kept in labels.
"""

import base64
import json
from collections import defaultdict
from datetime import datetime
from pathlib import PurePosixPath
from typing import Any, Dict, List, Mapping, Optional

from pydantic import SecretStr

from preview_engine.config import ContainerConfig, RegistryCredentials, Settings
from preview_engine.core.errors import InternalInvariantError
from preview_engine.core.models import AppName, Service, ServiceConfig
from preview_engine.deployment.deployment_unit import DeployableService
from preview_engine.infrastructure.kubernetes.crds import (
    IngressRoute,
    IngressRouteSpec,
    Middleware,
    ObjectMeta,
    TraefikRuleMiddleware,
    TraefikRuleService,
    TraefikRuleSpec,
    TraefikTls,
)
from preview_engine.infrastructure.labels import (
    APP_NAME_LABEL,
    IMAGE_LABEL,
    REPLICATED_ENV_LABEL,
    SERVICE_NAME_LABEL,
    STORAGE_TYPE_LABEL,
    replicated_environment_variable_to_json,
    service_labels,
)


# ============================================
# NAMES
# ============================================

def secret_name_from_path(path: PurePosixPath) -> str:
    """`/etc/mysql.d` -> `etc-mysql-d`"""
    parts = [part for part in PurePosixPath(path).parts if part not in ("/", "", ".", "..")]
    return "-".join(part.replace(".", "-") for part in parts)


def secret_name_from_name(path: PurePosixPath) -> str:
    """`/etc/mysql/my.cnf` -> `my-cnf`"""
    return PurePosixPath(path).name.replace(".", "-")


def deployment_name(app_name: AppName, service_name: str) -> str:
    return f"{app_name.to_rfc1123_namespace_id()}-{service_name}-deployment"


def secret_name(app_name: AppName, service_name: str) -> str:
    return f"{app_name.to_rfc1123_namespace_id()}-{service_name}-secret"


def image_pull_secret_name(app_name: AppName) -> str:
    return f"{app_name.to_rfc1123_namespace_id()}-image-pull-secret"


def ingress_route_name(app_name: AppName, service_name: str) -> str:
    return f"{app_name.to_rfc1123_namespace_id()}-{service_name}-ingress-route"


# ============================================
# NAMESPACE
# ============================================

def namespace_payload(app_name: AppName, settings: Settings) -> Dict[str, Any]:
    """
    Creates a payload for [Kubernetes'
    Namespaces](https://kubernetes.io/docs/tasks/administer-cluster/namespaces/)
    """
    metadata = {
        "name": app_name.to_rfc1123_namespace_id(),
        "labels": {APP_NAME_LABEL: str(app_name)},
    }

    annotations = settings.namespace_annotations()
    if annotations:
        metadata["annotations"] = annotations

    return {
        "apiVersion": "v1",
        "kind": "Namespace",
        "metadata": metadata,
    }


# ============================================
# DEPLOYMENT
# ============================================

def deployment_payload(
    app_name: AppName,
    service: DeployableService,
    container_config: ContainerConfig,
    use_image_pull_secret: bool,
    persistent_volume_map: Optional[Mapping[str, Dict[str, Any]]] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Creates a payload for [Kubernetes'
    Deployments](https://kubernetes.io/docs/concepts/workloads/controllers/deployment/)

    `persistent_volume_map` maps declared volume paths to the claims
    backing them.
    """
    namespace = app_name.to_rfc1123_namespace_id()
    labels = service_labels(app_name, service.service_name, service.container_type)

    annotations = {IMAGE_LABEL: service.image}
    replicated_env = replicated_environment_variable_to_json(service.env)
    if replicated_env is not None:
        annotations[REPLICATED_ENV_LABEL] = replicated_env

    container = {
        "name": service.service_name,
        "image": service.image,
        "imagePullPolicy": "Always",
        "ports": [{"containerPort": service.port}],
    }

    if service.env is not None:
        container["env"] = [
            {"name": variable.key, "value": variable.value.get_secret_value()}
            for variable in service.env
        ]

    volumes, volume_mounts = _file_volumes(app_name, service)

    if persistent_volume_map:
        for path in service.declared_volumes:
            claim = persistent_volume_map.get(path)
            if claim is None:
                continue
            # Paths sharing a storage type share the claim
            volume = pvc_volume_payload(claim)
            if all(v["name"] != volume["name"] for v in volumes):
                volumes.append(volume)
            volume_mounts.append(pvc_volume_mount_payload(path, claim))

    if volume_mounts:
        container["volumeMounts"] = volume_mounts

    if container_config.memory_limit is not None:
        container["resources"] = {
            "limits": {"memory": str(int(container_config.memory_limit))}
        }

    pod_spec: Dict[str, Any] = {"containers": [container]}
    if volumes:
        pod_spec["volumes"] = volumes
    if use_image_pull_secret:
        pod_spec["imagePullSecrets"] = [{"name": image_pull_secret_name(app_name)}]

    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {
            "name": deployment_name(app_name, service.service_name),
            "namespace": namespace,
            "labels": dict(labels),
            "annotations": annotations,
        },
        "spec": {
            "replicas": 1,
            "selector": {"matchLabels": dict(labels)},
            "template": {
                "metadata": {
                    "labels": dict(labels),
                    # Changing these recreates the pods, see DeploymentStrategy
                    "annotations": service.strategy.pod_annotations(now),
                },
                "spec": pod_spec,
            },
        },
    }


def _file_volumes(app_name: AppName, service: DeployableService):
    """One secret volume and one mount per parent directory of the files."""
    volumes: List[Dict[str, Any]] = []
    volume_mounts: List[Dict[str, Any]] = []

    if not service.files:
        return volumes, volume_mounts

    files_by_parent = defaultdict(list)
    for path in sorted(service.files, key=str):
        files_by_parent[PurePosixPath(path).parent].append(path)

    for parent in sorted(files_by_parent, key=str):
        name = secret_name_from_path(parent)

        volume_mounts.append({"name": name, "mountPath": str(parent)})
        volumes.append({
            "name": name,
            "secret": {
                "secretName": secret_name(app_name, service.service_name),
                "items": [
                    {"key": secret_name_from_name(path), "path": PurePosixPath(path).name}
                    for path in files_by_parent[parent]
                ],
            },
        })

    return volumes, volume_mounts


def deployment_replicas_payload(app_name: AppName, service: Service, replicas: int) -> Dict[str, Any]:
    """Patch that only touches the replica count of a service's deployment."""
    labels = service_labels(app_name, service.service_name, service.container_type)

    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {
            "name": deployment_name(app_name, service.service_name),
            "namespace": app_name.to_rfc1123_namespace_id(),
            "labels": dict(labels),
        },
        "spec": {
            "replicas": replicas,
            "selector": {"matchLabels": dict(labels)},
        },
    }


# ============================================
# SECRETS
# ============================================

def secrets_payload(
    app_name: AppName,
    service_config: ServiceConfig,
    files: Mapping[PurePosixPath, SecretStr],
) -> Dict[str, Any]:
    """
    Creates a payload for [Kubernetes'
    Secrets](https://kubernetes.io/docs/concepts/configuration/secret/)
    holding the files mounted into the service.
    """
    data = {
        secret_name_from_name(path): _b64(content.get_secret_value())
        for path, content in sorted(files.items(), key=lambda item: str(item[0]))
    }

    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {
            "name": secret_name(app_name, service_config.service_name),
            "namespace": app_name.to_rfc1123_namespace_id(),
            "labels": service_labels(
                app_name, service_config.service_name, service_config.container_type
            ),
        },
        "type": "Opaque",
        "data": data,
    }


def image_pull_secret_payload(
    app_name: AppName,
    registries_and_credentials: Mapping[str, RegistryCredentials],
) -> Dict[str, Any]:
    """Secret of type `kubernetes.io/dockerconfigjson` for all registries."""
    docker_config = {
        "auths": {
            registry: {
                "username": credentials.username,
                "password": credentials.password.get_secret_value(),
            }
            for registry, credentials in sorted(registries_and_credentials.items())
        }
    }

    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {
            "name": image_pull_secret_name(app_name),
            "namespace": app_name.to_rfc1123_namespace_id(),
            "labels": {APP_NAME_LABEL: str(app_name)},
        },
        "immutable": True,
        "type": "kubernetes.io/dockerconfigjson",
        "data": {".dockerconfigjson": _b64(json.dumps(docker_config))},
    }


def _b64(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


# ============================================
# SERVICE
# ============================================

def service_payload(app_name: AppName, service_config: ServiceConfig) -> Dict[str, Any]:
    """
    Creates a payload for [Kubernetes'
    Services](https://kubernetes.io/docs/concepts/services-networking/service/)

    The service is named like the deployed service, which makes it
    resolvable by that name from every pod in the namespace.
    """
    labels = service_labels(app_name, service_config.service_name, service_config.container_type)

    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {
            "name": service_config.service_name,
            "namespace": app_name.to_rfc1123_namespace_id(),
            "labels": dict(labels),
        },
        "spec": {
            "ports": [
                {
                    "name": service_config.service_name,
                    "targetPort": service_config.port,
                    "port": service_config.port,
                }
            ],
            "selector": dict(labels),
        },
    }


# ============================================
# TRAEFIK
# ============================================

def ingress_route_payload(app_name: AppName, service: DeployableService) -> Dict[str, Any]:
    """
    Creates a payload that ensures that Traefik finds the route to the service.

    See [Traefik Routers](https://docs.traefik.io/v2.0/user-guides/crd-acme/#traefik-routers)
    """
    ingress_route = service.ingress_route
    if ingress_route.is_empty():
        raise InternalInvariantError(
            f"Service {service.service_name} of {app_name} has no route"
        )

    rules = [
        TraefikRuleSpec(
            match=str(route.rule),
            services=[TraefikRuleService(name=service.service_name, port=service.port)],
            middlewares=[
                TraefikRuleMiddleware(name=middleware.resolved_name())
                for middleware in route.middlewares
            ],
        )
        for route in ingress_route.routes
    ]

    tls = None
    if ingress_route.tls_cert_resolver:
        tls = TraefikTls(cert_resolver=ingress_route.tls_cert_resolver)

    payload = IngressRoute(
        metadata=ObjectMeta(
            name=ingress_route_name(app_name, service.service_name),
            namespace=app_name.to_rfc1123_namespace_id(),
            labels=service_labels(app_name, service.service_name, service.container_type),
        ),
        spec=IngressRouteSpec(
            entry_points=list(ingress_route.entry_points) or None,
            routes=rules,
            tls=tls,
        ),
    )
    return payload.to_manifest()


def middleware_payload(app_name: AppName, service: DeployableService) -> List[Dict[str, Any]]:
    """
    One Middleware object per inline middleware of the service's routes,
    e.g. the one that strips the path prefix.
    """
    return [
        Middleware(
            metadata=ObjectMeta(
                name=middleware.resolved_name(),
                namespace=app_name.to_rfc1123_namespace_id(),
                labels={
                    APP_NAME_LABEL: str(app_name),
                    SERVICE_NAME_LABEL: service.service_name,
                },
            ),
            spec=middleware.spec,
        ).to_manifest()
        for middleware in service.ingress_route.inline_middlewares()
    ]


# ============================================
# PERSISTENT VOLUMES
# ============================================

def _storage_type(persistent_volume_claim: Dict[str, Any]) -> str:
    labels = persistent_volume_claim.get("metadata", {}).get("labels") or {}
    return labels.get(STORAGE_TYPE_LABEL, "default")


def pvc_volume_mount_payload(path: str, persistent_volume_claim: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "name": f"{_storage_type(persistent_volume_claim)}-volume",
        "mountPath": path,
    }


def pvc_volume_payload(persistent_volume_claim: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "name": f"{_storage_type(persistent_volume_claim)}-volume",
        "persistentVolumeClaim": {
            "claimName": persistent_volume_claim.get("metadata", {}).get("name", ""),
        },
    }


def persistent_volume_claim_payload(
    app_name: AppName,
    service: DeployableService,
    storage_size: int,
    storage_class: str,
    declared_volume: str,
) -> Dict[str, Any]:
    """
    Claim backing a volume the image declares.

    The name is generated by the API server, so existing claims must be
    looked up by their labels.
    """
    segments = [segment for segment in declared_volume.split("/") if segment]
    storage_type = segments[-1] if segments else "default"

    return {
        "apiVersion": "v1",
        "kind": "PersistentVolumeClaim",
        "metadata": {
            "generateName": f"{app_name.to_rfc1123_namespace_id()}-{service.service_name}-pvc-",
            "namespace": app_name.to_rfc1123_namespace_id(),
            "labels": {
                APP_NAME_LABEL: str(app_name),
                SERVICE_NAME_LABEL: service.service_name,
                STORAGE_TYPE_LABEL: storage_type,
            },
        },
        "spec": {
            "storageClassName": storage_class,
            "accessModes": ["ReadWriteOnce"],
            "resources": {
                "requests": {"storage": str(int(storage_size))},
            },
        },
    }
