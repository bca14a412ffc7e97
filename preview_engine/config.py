# preview_engine/config.py
"""Runtime configuration loaded from the environment (and `.env`)."""

from enum import Enum
from functools import lru_cache
from typing import Dict, Optional

from pydantic import BaseModel, ByteSize, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class RuntimeKind(Enum):
    DOCKER = "Docker"
    KUBERNETES = "Kubernetes"


# ============================================
# NESTED SETTINGS
# ============================================

class KubernetesAnnotations(BaseModel):
    """Annotations added to objects created in the cluster."""
    namespace: Dict[str, str] = Field(default_factory=dict)


class StorageConfig(BaseModel):
    """Storage used for volumes declared by images."""
    storage_size: ByteSize = ByteSize(2 * 1024 ** 3)
    storage_class: str = "local-path"


class ObjectReference(BaseModel):
    namespace: str
    name: str


class RuntimeConfig(BaseModel):
    type: RuntimeKind = RuntimeKind.KUBERNETES
    annotations: KubernetesAnnotations = Field(default_factory=KubernetesAnnotations)
    storage: Optional[StorageConfig] = None

    # IngressRoute through which the API itself is reachable
    base_ingress_route: Optional[ObjectReference] = None


class ContainerConfig(BaseModel):
    """Defaults applied to every deployed container."""
    memory_limit: Optional[ByteSize] = None


class RegistryCredentials(BaseModel):
    username: str
    password: SecretStr


# ============================================
# SETTINGS
# ============================================

class Settings(BaseSettings):
    """
    Backend-wide settings.

    Nested values use `__` as delimiter, e.g.
    `PREVIEW_RUNTIME__ANNOTATIONS__NAMESPACE='{"field.cattle.io/projectId": "p-1"}'`.
    """

    model_config = SettingsConfigDict(
        env_prefix="PREVIEW_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)
    container: ContainerConfig = Field(default_factory=ContainerConfig)
    registries: Dict[str, RegistryCredentials] = Field(default_factory=dict)

    # Kubernetes client
    kubeconfig: Optional[str] = None
    kube_context: Optional[str] = None

    def namespace_annotations(self) -> Dict[str, str]:
        if self.runtime.type != RuntimeKind.KUBERNETES:
            return {}
        return dict(self.runtime.annotations.namespace)

    def registry_credentials(self, registry: str) -> Optional[RegistryCredentials]:
        return self.registries.get(registry)


@lru_cache()
def get_settings() -> Settings:
    return Settings()
