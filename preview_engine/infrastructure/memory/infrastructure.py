# preview_engine/infrastructure/memory/infrastructure.py

from datetime import datetime, timezone
from threading import Lock
from typing import Dict, List, Optional, Tuple
from uuid import uuid4

from preview_engine.config import ContainerConfig
from preview_engine.core.models import AppName, Service, ServiceStatus
from preview_engine.deployment.deployment_unit import DeploymentUnit
from preview_engine.infrastructure.base import AppLocks, Infrastructure
from preview_engine.traefik.routes import TraefikIngressRoute


class InMemoryInfrastructure(Infrastructure):
    """
    Keeps deployed services in process memory.

    Applications are keyed by their namespace id, like on Kubernetes, so
    `MY-APP` and `my-app` are the same application.
    """

    def __init__(self, base_route: Optional[TraefikIngressRoute] = None):
        self._store: Dict[str, Dict[str, Service]] = {}
        self._app_names: Dict[str, AppName] = {}
        self._base_route = base_route
        self._lock = Lock()
        self._locks = AppLocks()

    def get_services(self) -> Dict[AppName, List[Service]]:
        with self._lock:
            return {
                self._app_names[key]: list(services.values())
                for key, services in self._store.items()
                if services
            }

    def deploy_services(
        self,
        status_id: str,
        deployment_unit: DeploymentUnit,
        container_config: ContainerConfig,
    ) -> List[Service]:
        app_name = deployment_unit.app_name
        key = app_name.to_rfc1123_namespace_id()

        with self._locks.for_app(app_name):
            deployed = []
            now = datetime.now(timezone.utc)

            for service in deployment_unit.services:
                deployed.append(
                    Service(
                        id=str(uuid4()),
                        app_name=app_name,
                        config=service.config,
                        status=ServiceStatus.RUNNING,
                        started_at=now,
                    )
                )

            with self._lock:
                services = self._store.setdefault(key, {})
                self._app_names[key] = app_name
                for service in deployed:
                    # Redeploying replaces the running service
                    services[service.service_name] = service

            return deployed

    def stop_services(self, status_id: str, app_name: AppName) -> List[Service]:
        key = app_name.to_rfc1123_namespace_id()

        with self._locks.for_app(app_name):
            with self._lock:
                services = self._store.pop(key, {})
                self._app_names.pop(key, None)
            return list(services.values())

    def get_logs(
        self,
        app_name: AppName,
        service_name: str,
        from_timestamp: Optional[datetime],
        limit: int,
    ) -> Optional[List[Tuple[datetime, str]]]:
        return None

    def change_status(
        self,
        app_name: AppName,
        service_name: str,
        status: ServiceStatus,
    ) -> Optional[Service]:
        key = app_name.to_rfc1123_namespace_id()

        with self._lock:
            service = self._store.get(key, {}).get(service_name)
            if service is None:
                return None

            service.status = status
            return service

    def base_traefik_ingress_route(self) -> Optional[TraefikIngressRoute]:
        return self._base_route
