#tests\conftest.py

"""Pytest configuration and fixtures."""

import pytest
from types import SimpleNamespace
from unittest.mock import MagicMock

from preview_engine.config import ContainerConfig, RuntimeConfig, Settings, StorageConfig
from preview_engine.core.models import AppName, ContainerType, ServiceConfig
from preview_engine.deployment.deployment_unit import DeployableService, DeploymentUnit
from preview_engine.deployment.strategy import DeploymentStrategy
from preview_engine.infrastructure.kubernetes.infrastructure import KubernetesInfrastructure
from preview_engine.traefik.routes import TraefikIngressRoute


def make_deployable(
    app_name,
    service_name="db",
    image="mariadb:10.3.17",
    strategy=None,
    container_type=ContainerType.INSTANCE,
    ingress_route=None,
    **kwargs
):
    """Build a deployable service with the default route of `app_name`."""
    config = ServiceConfig(
        service_name=service_name,
        image=image,
        container_type=container_type,
        **kwargs
    )
    return DeployableService(
        config=config,
        strategy=strategy or DeploymentStrategy.redeploy_never(),
        ingress_route=ingress_route or TraefikIngressRoute.with_defaults(app_name, service_name),
    )


def items(*objects):
    """Shape of a Kubernetes list response."""
    return SimpleNamespace(items=list(objects))


@pytest.fixture
def settings():
    """Settings that do not read the environment."""
    return Settings(_env_file=None)


@pytest.fixture
def container_config():
    return ContainerConfig()


@pytest.fixture
def master():
    return AppName.master()


@pytest.fixture
def master_unit(master):
    """`db` of `master`, always recreated on redeploy."""
    return DeploymentUnit(
        app_name=master,
        services=[make_deployable(master, strategy=DeploymentStrategy.redeploy_always())],
    )


@pytest.fixture
def core_v1():
    return MagicMock()


@pytest.fixture
def apps_v1():
    return MagicMock()


@pytest.fixture
def custom_objects():
    return MagicMock()


@pytest.fixture
def kubernetes(settings, core_v1, apps_v1, custom_objects):
    """Kubernetes infrastructure talking to mocked APIs."""
    return KubernetesInfrastructure(
        settings,
        core_v1=core_v1,
        apps_v1=apps_v1,
        custom_objects=custom_objects,
    )


@pytest.fixture
def storage_settings():
    return Settings(
        _env_file=None,
        runtime=RuntimeConfig(storage=StorageConfig(storage_size=1024, storage_class="standard")),
    )
