# preview_engine/traefik/routes.py
"""Routes that make deployed services reachable through Traefik."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from preview_engine.core.models import AppName, normalize
from preview_engine.traefik.rules import TraefikRouterRule


# ============================================
# MIDDLEWARE
# ============================================

@dataclass(frozen=True)
class TraefikMiddleware:
    """
    Middleware attached to a route.

    Either a reference to a middleware object that already exists
    (`spec` is None) or an inline specification that must be materialized
    as its own object before a route can use it.
    """
    name: str
    spec: Optional[Dict[str, Any]] = field(default=None, hash=False)

    @classmethod
    def ref(cls, name: str) -> "TraefikMiddleware":
        return cls(name=name)

    @classmethod
    def with_spec(cls, name: str, spec: Dict[str, Any]) -> "TraefikMiddleware":
        return cls(name=name, spec=spec)

    @property
    def is_ref(self) -> bool:
        return self.spec is None

    def resolved_name(self) -> str:
        """
        Name under which the middleware object is known to the backend.

        Inline middlewares are often named after an application, so their
        names go through the same normalization as application names.
        """
        if self.is_ref or not AppName.is_valid(self.name):
            return self.name
        return normalize(self.name)


# ============================================
# ROUTES
# ============================================

@dataclass(frozen=True)
class TraefikRoute:
    rule: TraefikRouterRule
    middlewares: List[TraefikMiddleware] = field(default_factory=list, hash=False)


@dataclass
class TraefikIngressRoute:
    """All Traefik routes leading to one service."""
    routes: List[TraefikRoute] = field(default_factory=list)
    entry_points: List[str] = field(default_factory=list)
    tls_cert_resolver: Optional[str] = None

    @classmethod
    def empty(cls) -> "TraefikIngressRoute":
        return cls()

    @classmethod
    def with_rule(cls, rule: TraefikRouterRule) -> "TraefikIngressRoute":
        return cls(routes=[TraefikRoute(rule=rule)])

    @classmethod
    def with_defaults(cls, app_name: AppName, service_name: str) -> "TraefikIngressRoute":
        """
        Route `/{app}/{service}/` to the service and strip that prefix
        before the request reaches it.
        """
        prefix = f"/{app_name}/{service_name}/"
        middleware = TraefikMiddleware.with_spec(
            f"{app_name}-{service_name}-middleware",
            {"stripPrefix": {"prefixes": [prefix]}},
        )

        return cls(routes=[
            TraefikRoute(
                rule=TraefikRouterRule.path_prefix_rule([str(app_name), service_name]),
                middlewares=[middleware],
            )
        ])

    @classmethod
    def with_existing_routing_rules(
        cls,
        entry_points: List[str],
        rule: TraefikRouterRule,
        middlewares: List[str],
        tls_cert_resolver: Optional[str] = None,
    ) -> "TraefikIngressRoute":
        return cls(
            routes=[
                TraefikRoute(
                    rule=rule,
                    middlewares=[TraefikMiddleware.ref(name) for name in middlewares],
                )
            ],
            entry_points=list(entry_points),
            tls_cert_resolver=tls_cert_resolver,
        )

    def is_empty(self) -> bool:
        return not self.routes

    def inline_middlewares(self) -> List[TraefikMiddleware]:
        """Distinct inline middlewares of all routes, first occurrence wins."""
        seen = set()
        middlewares = []
        for route in self.routes:
            for middleware in route.middlewares:
                if middleware.is_ref:
                    continue
                name = middleware.resolved_name()
                if name in seen:
                    continue
                seen.add(name)
                middlewares.append(middleware)
        return middlewares

    def merge_with(self, base: "TraefikIngressRoute") -> "TraefikIngressRoute":
        """
        Place this route behind `base`, e.g. on the host name under which
        the API itself is reachable.

        Only the first route of `base` is considered.
        """
        if base.is_empty():
            return self

        base_route = base.routes[0]
        routes = [
            TraefikRoute(
                rule=base_route.rule.merge(route.rule),
                middlewares=list(base_route.middlewares) + list(route.middlewares),
            )
            for route in self.routes
        ]

        entry_points = list(base.entry_points)
        for entry_point in self.entry_points:
            if entry_point not in entry_points:
                entry_points.append(entry_point)

        return TraefikIngressRoute(
            routes=routes,
            entry_points=entry_points,
            tls_cert_resolver=self.tls_cert_resolver or base.tls_cert_resolver,
        )
