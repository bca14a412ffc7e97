# preview_engine/container.py

"""Dependency injection container - wires the configured backend together."""

import logging
from functools import lru_cache
from typing import Optional

from preview_engine.config import RuntimeKind, Settings, get_settings
from preview_engine.infrastructure.base import Infrastructure
from preview_engine.infrastructure.kubernetes.infrastructure import KubernetesInfrastructure
from preview_engine.infrastructure.memory.infrastructure import InMemoryInfrastructure
from preview_engine.registry.client import RegistryClient

logger = logging.getLogger(__name__)


# ============================================
# INFRASTRUCTURE
# ============================================

def create_infrastructure(settings: Optional[Settings] = None) -> Infrastructure:
    settings = settings or get_settings()

    if settings.runtime.type == RuntimeKind.KUBERNETES:
        logger.info("Using Kubernetes infrastructure")
        return KubernetesInfrastructure(settings)

    # No Docker backend ships with this package
    logger.warning(
        f"Runtime {settings.runtime.type.value} is not supported, "
        f"falling back to in-memory infrastructure"
    )
    return InMemoryInfrastructure()


# ============================================
# REGISTRY
# ============================================

def create_registry_client(settings: Optional[Settings] = None) -> RegistryClient:
    settings = settings or get_settings()
    return RegistryClient(credentials=settings.registries)


@lru_cache()
def get_infrastructure() -> Infrastructure:
    return create_infrastructure(get_settings())
