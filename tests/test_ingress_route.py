#tests\test_ingress_route.py

"""Test Traefik routes and middlewares."""

from preview_engine.core.models import AppName
from preview_engine.traefik.routes import TraefikIngressRoute, TraefikMiddleware, TraefikRoute
from preview_engine.traefik.rules import TraefikRouterRule


def base_route():
    return TraefikIngressRoute.with_existing_routing_rules(
        entry_points=["websecure"],
        rule=TraefikRouterRule.parse("Host(`preview.example.com`)"),
        middlewares=["auth"],
        tls_cert_resolver="letsencrypt",
    )


class TestMiddleware:
    """Test middleware names."""

    def test_ref_passes_through(self):
        middleware = TraefikMiddleware.ref("MY-Auth")

        assert middleware.is_ref
        assert middleware.resolved_name() == "MY-Auth"

    def test_spec_is_normalized(self):
        middleware = TraefikMiddleware.with_spec("MY-APP-db-middleware", {"stripPrefix": {}})

        assert not middleware.is_ref
        assert middleware.resolved_name() == "my-app-db-middleware"

    def test_spec_with_non_app_name_is_kept(self):
        middleware = TraefikMiddleware.with_spec("Strip Prefix", {"stripPrefix": {}})
        assert middleware.resolved_name() == "Strip Prefix"

    def test_middlewares_with_spec_are_hashable(self):
        middleware = TraefikMiddleware.with_spec("strip", {"stripPrefix": {"prefixes": ["/a/"]}})
        assert middleware in {middleware}


class TestIngressRoute:
    """Test building ingress routes."""

    def test_with_defaults(self):
        route = TraefikIngressRoute.with_defaults(AppName.master(), "db")

        assert len(route.routes) == 1
        assert str(route.routes[0].rule) == "PathPrefix(`/master/db/`)"

        middleware = route.routes[0].middlewares[0]
        assert middleware.name == "master-db-middleware"
        assert middleware.spec == {"stripPrefix": {"prefixes": ["/master/db/"]}}

    def test_with_defaults_keeps_raw_app_name_in_path(self):
        route = TraefikIngressRoute.with_defaults(AppName("MY-APP"), "db")

        assert str(route.routes[0].rule) == "PathPrefix(`/MY-APP/db/`)"
        assert route.inline_middlewares()[0].resolved_name() == "my-app-db-middleware"

    def test_empty(self):
        assert TraefikIngressRoute.empty().is_empty()
        assert not TraefikIngressRoute.with_rule(TraefikRouterRule.parse("Path(`/`)")).is_empty()

    def test_with_existing_routing_rules(self):
        route = base_route()

        assert route.entry_points == ["websecure"]
        assert route.tls_cert_resolver == "letsencrypt"
        assert route.routes[0].middlewares == [TraefikMiddleware.ref("auth")]

    def test_inline_middlewares_are_distinct(self):
        spec = {"stripPrefix": {"prefixes": ["/a/"]}}
        route = TraefikIngressRoute(routes=[
            TraefikRoute(
                rule=TraefikRouterRule.parse("Path(`/a`)"),
                middlewares=[TraefikMiddleware.ref("auth"), TraefikMiddleware.with_spec("A-strip", spec)],
            ),
            TraefikRoute(
                rule=TraefikRouterRule.parse("Path(`/b`)"),
                middlewares=[TraefikMiddleware.with_spec("a-strip", spec)],
            ),
        ])

        inline = route.inline_middlewares()

        assert len(inline) == 1
        assert inline[0].name == "A-strip"


class TestMerge:
    """Test placing a route behind the base route."""

    def test_merge_with_base(self):
        route = TraefikIngressRoute.with_defaults(AppName.master(), "db").merge_with(base_route())

        assert len(route.routes) == 1
        assert str(route.routes[0].rule) == (
            "Host(`preview.example.com`) && PathPrefix(`/master/db/`)"
        )
        assert [m.name for m in route.routes[0].middlewares] == ["auth", "master-db-middleware"]
        assert route.entry_points == ["websecure"]
        assert route.tls_cert_resolver == "letsencrypt"

    def test_merge_keeps_own_tls_and_entry_points(self):
        route = TraefikIngressRoute(
            routes=[TraefikRoute(rule=TraefikRouterRule.parse("Path(`/x`)"))],
            entry_points=["web", "websecure"],
            tls_cert_resolver="own",
        )

        merged = route.merge_with(base_route())

        assert merged.entry_points == ["websecure", "web"]
        assert merged.tls_cert_resolver == "own"

    def test_merge_with_empty_base(self):
        route = TraefikIngressRoute.with_defaults(AppName.master(), "db")
        assert route.merge_with(TraefikIngressRoute.empty()) is route
