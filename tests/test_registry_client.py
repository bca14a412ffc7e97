#tests\test_registry_client.py

"""Test resolving image digests from a registry."""

import pytest
import requests
from unittest.mock import MagicMock

from pydantic import SecretStr

from preview_engine.config import RegistryCredentials
from preview_engine.core.errors import RegistryError
from preview_engine.deployment.strategy import IMAGE_HASH_ANNOTATION, RedeployPolicy
from preview_engine.registry.client import ImageReference, RegistryClient, parse_image_reference


DIGEST = "sha256:3b4c2f1e"
CHALLENGE = (
    'Bearer realm="https://auth.docker.io/token",'
    'service="registry.docker.io",'
    'scope="repository:library/mariadb:pull"'
)


def response(status_code, headers=None, json=None):
    mock = MagicMock(status_code=status_code, headers=headers or {})
    mock.json.return_value = json or {}
    return mock


@pytest.fixture
def session():
    return MagicMock()


@pytest.fixture
def registry(session):
    return RegistryClient(session=session, timeout=5)


class TestParseImageReference:

    @pytest.mark.parametrize("image, expected", [
        ("mariadb:10.3.17", ImageReference("docker.io", "library/mariadb", "10.3.17")),
        ("nginx", ImageReference("docker.io", "library/nginx", "latest")),
        ("bitnami/redis:7.2", ImageReference("docker.io", "bitnami/redis", "7.2")),
        ("localhost/app", ImageReference("localhost", "app", "latest")),
        (
            "registry.example.com:5000/team/app:1.0",
            ImageReference("registry.example.com:5000", "team/app", "1.0"),
        ),
        ("nginx@sha256:abc", ImageReference("docker.io", "library/nginx", "latest", "sha256:abc")),
    ])
    def test_parse(self, image, expected):
        assert parse_image_reference(image) == expected

    def test_docker_hub_api_host(self):
        assert parse_image_reference("nginx").api_host == "registry-1.docker.io"
        assert parse_image_reference("ghcr.io/org/app").api_host == "ghcr.io"

    def test_empty(self):
        with pytest.raises(RegistryError):
            parse_image_reference("")


class TestResolveImageDigest:
    """Test manifest lookups."""

    def test_anonymous(self, registry, session):
        session.head.return_value = response(200, {"Docker-Content-Digest": DIGEST})

        assert registry.resolve_image_digest("ghcr.io/org/app:1.0") == DIGEST

        url = session.head.call_args.args[0]
        assert url == "https://ghcr.io/v2/org/app/manifests/1.0"
        assert "manifest" in session.head.call_args.kwargs["headers"]["Accept"]
        assert session.head.call_args.kwargs["timeout"] == 5

    def test_pinned_digest(self, registry, session):
        assert registry.resolve_image_digest("nginx@sha256:abc") == "sha256:abc"
        session.head.assert_not_called()

    def test_token_challenge(self, registry, session):
        session.head.side_effect = [
            response(401, {"WWW-Authenticate": CHALLENGE}),
            response(200, {"Docker-Content-Digest": DIGEST}),
        ]
        session.get.return_value = response(200, json={"token": "t0k3n"})

        assert registry.resolve_image_digest("mariadb:10.3.17") == DIGEST

        realm = session.get.call_args.args[0]
        assert realm == "https://auth.docker.io/token"
        assert session.get.call_args.kwargs["params"] == {
            "service": "registry.docker.io",
            "scope": "repository:library/mariadb:pull",
        }
        assert session.get.call_args.kwargs["auth"] is None
        assert session.head.call_args.kwargs["headers"]["Authorization"] == "Bearer t0k3n"

    def test_token_challenge_with_credentials(self, session):
        registry = RegistryClient(
            credentials={
                "registry.example.com": RegistryCredentials(username="ci", password=SecretStr("secret")),
            },
            session=session,
        )
        session.head.side_effect = [
            response(401, {"WWW-Authenticate": 'Bearer realm="https://registry.example.com/token"'}),
            response(200, {"Docker-Content-Digest": DIGEST}),
        ]
        session.get.return_value = response(200, json={"access_token": "t0k3n"})

        assert registry.resolve_image_digest("registry.example.com/team/app") == DIGEST

        assert session.get.call_args.kwargs["auth"] == ("ci", "secret")
        assert session.get.call_args.kwargs["params"] == {"scope": "repository:team/app:pull"}

    def test_unsupported_challenge(self, registry, session):
        session.head.return_value = response(401, {"WWW-Authenticate": 'Basic realm="registry"'})

        with pytest.raises(RegistryError):
            registry.resolve_image_digest("ghcr.io/org/app")

    def test_token_refused(self, registry, session):
        session.head.return_value = response(401, {"WWW-Authenticate": CHALLENGE})
        session.get.return_value = response(403)

        with pytest.raises(RegistryError):
            registry.resolve_image_digest("mariadb:10.3.17")

    def test_unknown_image(self, registry, session):
        session.head.return_value = response(404)

        with pytest.raises(RegistryError, match="not found"):
            registry.resolve_image_digest("ghcr.io/org/missing")

    def test_missing_digest(self, registry, session):
        session.head.return_value = response(200)

        with pytest.raises(RegistryError):
            registry.resolve_image_digest("ghcr.io/org/app")

    @pytest.mark.parametrize("error", [
        requests.exceptions.Timeout(),
        requests.exceptions.ConnectionError(),
    ])
    def test_network_errors(self, registry, session, error):
        session.head.side_effect = error

        with pytest.raises(RegistryError):
            registry.resolve_image_digest("ghcr.io/org/app")

    def test_strategy_for(self, registry, session):
        session.head.return_value = response(200, {"Docker-Content-Digest": DIGEST})

        strategy = registry.strategy_for("ghcr.io/org/app")

        assert strategy.policy == RedeployPolicy.ON_IMAGE_UPDATE
        assert strategy.pod_annotations() == {IMAGE_HASH_ANNOTATION: DIGEST}
