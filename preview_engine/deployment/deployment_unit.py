# preview_engine/deployment/deployment_unit.py
"""Deployment descriptors handed to an infrastructure."""

from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Dict, List, Optional

from pydantic import SecretStr

from preview_engine.config import RegistryCredentials
from preview_engine.core.models import AppName, ContainerType, Environment, ServiceConfig
from preview_engine.deployment.strategy import DeploymentStrategy
from preview_engine.traefik.routes import TraefikIngressRoute


@dataclass
class DeployableService:
    """One service together with how it is redeployed and routed."""
    config: ServiceConfig
    strategy: DeploymentStrategy
    ingress_route: TraefikIngressRoute

    # Mount paths of volumes the image declares; backed by persistent storage
    declared_volumes: List[str] = field(default_factory=list)

    @property
    def service_name(self) -> str:
        return self.config.service_name

    @property
    def image(self) -> str:
        return self.config.image

    @property
    def env(self) -> Optional[Environment]:
        return self.config.env

    @property
    def files(self) -> Optional[Dict[PurePosixPath, SecretStr]]:
        return self.config.files

    @property
    def port(self) -> int:
        return self.config.port

    @property
    def container_type(self) -> ContainerType:
        return self.config.container_type


@dataclass
class DeploymentUnit:
    """All services of an application that are deployed together."""
    app_name: AppName
    services: List[DeployableService] = field(default_factory=list)

    # Registry host -> credentials used to pull the images
    image_pull_credentials: Dict[str, RegistryCredentials] = field(default_factory=dict)

    @property
    def requires_image_pull_secret(self) -> bool:
        return bool(self.image_pull_credentials)

    def service_names(self) -> List[str]:
        return [service.service_name for service in self.services]
