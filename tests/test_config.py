#tests\test_config.py

"""Test settings and wiring of the configured backend."""

from preview_engine.config import RuntimeKind, Settings, get_settings
from preview_engine.container import create_infrastructure, create_registry_client, get_infrastructure
from preview_engine.infrastructure.kubernetes.infrastructure import KubernetesInfrastructure
from preview_engine.infrastructure.memory.infrastructure import InMemoryInfrastructure


class TestSettings:

    def test_defaults(self, settings):
        assert settings.runtime.type == RuntimeKind.KUBERNETES
        assert settings.runtime.storage is None
        assert settings.runtime.base_ingress_route is None
        assert settings.container.memory_limit is None
        assert settings.registries == {}

    def test_from_environment(self, monkeypatch):
        monkeypatch.setenv("PREVIEW_RUNTIME__TYPE", "Kubernetes")
        monkeypatch.setenv("PREVIEW_RUNTIME__ANNOTATIONS__NAMESPACE", '{"field.cattle.io/projectId": "c-1:p-1"}')
        monkeypatch.setenv("PREVIEW_RUNTIME__STORAGE__STORAGE_CLASS", "standard")
        monkeypatch.setenv("PREVIEW_RUNTIME__BASE_INGRESS_ROUTE__NAMESPACE", "preview")
        monkeypatch.setenv("PREVIEW_RUNTIME__BASE_INGRESS_ROUTE__NAME", "api")
        monkeypatch.setenv("PREVIEW_CONTAINER__MEMORY_LIMIT", "512MiB")
        monkeypatch.setenv(
            "PREVIEW_REGISTRIES",
            '{"registry.example.com": {"username": "ci", "password": "token"}}',
        )

        settings = Settings(_env_file=None)

        assert settings.namespace_annotations() == {"field.cattle.io/projectId": "c-1:p-1"}
        assert settings.runtime.storage.storage_class == "standard"
        assert settings.runtime.storage.storage_size == 2 * 1024 ** 3
        assert settings.runtime.base_ingress_route.name == "api"
        assert settings.container.memory_limit == 512 * 1024 ** 2

        credentials = settings.registry_credentials("registry.example.com")
        assert credentials.username == "ci"
        assert credentials.password.get_secret_value() == "token"
        assert settings.registry_credentials("ghcr.io") is None


class TestContainer:

    def test_kubernetes(self, settings):
        assert isinstance(create_infrastructure(settings), KubernetesInfrastructure)

    def test_unsupported_runtime(self):
        settings = Settings(_env_file=None, runtime={"type": "Docker"})
        assert isinstance(create_infrastructure(settings), InMemoryInfrastructure)

    def test_registry_client(self, monkeypatch):
        monkeypatch.setenv(
            "PREVIEW_REGISTRIES",
            '{"registry.example.com": {"username": "ci", "password": "token"}}',
        )

        client = create_registry_client(Settings(_env_file=None))

        assert client._credentials["registry.example.com"].username == "ci"

    def test_get_infrastructure_is_cached(self, monkeypatch):
        monkeypatch.setenv("PREVIEW_RUNTIME__TYPE", "Docker")
        get_settings.cache_clear()
        get_infrastructure.cache_clear()

        try:
            infrastructure = get_infrastructure()

            assert isinstance(infrastructure, InMemoryInfrastructure)
            assert get_infrastructure() is infrastructure
        finally:
            get_settings.cache_clear()
            get_infrastructure.cache_clear()
