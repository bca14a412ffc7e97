# preview_engine/infrastructure/base.py

from abc import ABC, abstractmethod
from datetime import datetime
from threading import Lock
from typing import Dict, List, Optional, Tuple
from weakref import WeakValueDictionary

from preview_engine.config import ContainerConfig
from preview_engine.core.models import AppName, ContainerType, Service, ServiceConfig, ServiceStatus
from preview_engine.deployment.deployment_unit import DeploymentUnit
from preview_engine.traefik.routes import TraefikIngressRoute


class Infrastructure(ABC):
    """
    Contract every orchestration backend implements.

    Failures are raised as `InfrastructureError`. Methods returning
    Optional use None for "not applicable" or "not found", never for
    transient faults.
    """

    @abstractmethod
    def get_services(self) -> Dict[AppName, List[Service]]:
        """
        Running services grouped by application, as the backend reports
        them right now.
        """
        raise NotImplementedError

    @abstractmethod
    def deploy_services(
        self,
        status_id: str,
        deployment_unit: DeploymentUnit,
        container_config: ContainerConfig,
    ) -> List[Service]:
        """
        Deploy the services of `deployment_unit`.

        Implementations must ensure that:
        - services reach each other by service name (`ping <service_name>`)
        - a service that is already running is redeployed, not duplicated
        - deployed services are found again by `get_services` and
          `stop_services` for the same application name
        """
        raise NotImplementedError

    def get_status_change(self, status_id: str) -> Optional[List[Service]]:
        """
        Services whose deployment `status_id` changed.
        Returns None for backends that apply deployments synchronously.
        """
        return None

    @abstractmethod
    def stop_services(self, status_id: str, app_name: AppName) -> List[Service]:
        """
        Stop all services of `app_name`.
        Must return exactly the services that have been stopped.
        """
        raise NotImplementedError

    @abstractmethod
    def get_logs(
        self,
        app_name: AppName,
        service_name: str,
        from_timestamp: Optional[datetime],
        limit: int,
    ) -> Optional[List[Tuple[datetime, str]]]:
        """
        Log lines with their timestamps, oldest first.
        Returns None if logs cannot be obtained for the service.
        """
        raise NotImplementedError

    @abstractmethod
    def change_status(
        self,
        app_name: AppName,
        service_name: str,
        status: ServiceStatus,
    ) -> Optional[Service]:
        """
        Start or pause a service.
        Returns None if the service does not exist.
        """
        raise NotImplementedError

    def base_traefik_ingress_route(self) -> Optional[TraefikIngressRoute]:
        """
        Route under which the API itself is reachable, so deployed
        services can be reached the same way (e.g. on the same host).
        """
        return None

    def get_configs_of_app(self, app_name: AppName) -> List[ServiceConfig]:
        """Configurations of the instances and replicas running for `app_name`."""
        services = self.get_services().get(app_name, [])
        return [
            service.config
            for service in services
            if service.container_type in (ContainerType.INSTANCE, ContainerType.REPLICA)
        ]


class AppLocks:
    """
    One lock per application, keyed by the namespace the application
    is deployed to.

    Deploying and stopping the same application must not interleave;
    different applications proceed concurrently. A lock is dropped once
    nobody holds a reference to it.
    """

    def __init__(self):
        self._guard = Lock()
        self._locks: "WeakValueDictionary[str, Lock]" = WeakValueDictionary()

    def for_app(self, app_name: AppName) -> Lock:
        key = app_name.to_rfc1123_namespace_id()
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = Lock()
                self._locks[key] = lock
            return lock

    def __len__(self) -> int:
        return len(self._locks)
