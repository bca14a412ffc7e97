# preview_engine/infrastructure/kubernetes/crds.py
"""
Traefik custom resources.

See https://doc.traefik.io/traefik/v2.10/routing/providers/kubernetes-crd/
"""

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from preview_engine.core.errors import RouteConversionError, RuleParseError
from preview_engine.traefik.routes import TraefikIngressRoute, TraefikMiddleware, TraefikRoute
from preview_engine.traefik.rules import TraefikRouterRule


TRAEFIK_GROUP = "traefik.containo.us"
TRAEFIK_VERSION = "v1alpha1"
TRAEFIK_API_VERSION = f"{TRAEFIK_GROUP}/{TRAEFIK_VERSION}"

INGRESS_ROUTE_PLURAL = "ingressroutes"
MIDDLEWARE_PLURAL = "middlewares"


class _Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_manifest(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


# ============================================
# METADATA
# ============================================

class ObjectMeta(_Model):
    name: Optional[str] = None
    namespace: Optional[str] = None
    labels: Optional[Dict[str, str]] = None
    annotations: Optional[Dict[str, str]] = None


# ============================================
# INGRESS ROUTE
# ============================================

class TraefikRuleService(_Model):
    kind: Optional[str] = "Service"
    name: str
    port: Optional[int] = None


class TraefikRuleMiddleware(_Model):
    name: str


class TraefikRuleSpec(_Model):
    kind: str = "Rule"
    match: str
    services: List[TraefikRuleService] = Field(default_factory=list)
    middlewares: Optional[List[TraefikRuleMiddleware]] = None


class TraefikTls(_Model):
    cert_resolver: Optional[str] = Field(default=None, alias="certResolver")


class IngressRouteSpec(_Model):
    entry_points: Optional[List[str]] = Field(default=None, alias="entryPoints")
    routes: Optional[List[TraefikRuleSpec]] = None
    tls: Optional[TraefikTls] = None


class IngressRoute(_Model):
    api_version: str = Field(default=TRAEFIK_API_VERSION, alias="apiVersion")
    kind: str = "IngressRoute"
    metadata: ObjectMeta
    spec: IngressRouteSpec


# ============================================
# MIDDLEWARE
# ============================================

class Middleware(_Model):
    api_version: str = Field(default=TRAEFIK_API_VERSION, alias="apiVersion")
    kind: str = "Middleware"
    metadata: ObjectMeta

    # Opaque, e.g. {"stripPrefix": {"prefixes": ["/master/db/"]}}
    spec: Dict[str, Any]


# ============================================
# CONVERSION
# ============================================

def ingress_route_from_resource(
    resource: Union[IngressRoute, Dict[str, Any]],
) -> TraefikIngressRoute:
    """
    Convert a stored IngressRoute back into a route.

    The object may have been edited outside of this system, so malformed
    content raises `RouteConversionError` instead of being trusted.
    Middlewares are reduced to references to the existing objects.
    """
    if not isinstance(resource, IngressRoute):
        try:
            resource = IngressRoute.model_validate(resource)
        except ValidationError as e:
            raise RouteConversionError(f"Not an IngressRoute: {e}") from e

    name = resource.metadata.name
    if not resource.spec.routes:
        raise RouteConversionError(f"IngressRoute {name} does not declare any route")

    routes = []
    for route in resource.spec.routes:
        try:
            rule = TraefikRouterRule.parse(route.match)
        except RuleParseError as e:
            raise RouteConversionError(f"IngressRoute {name} has an invalid rule: {e}") from e

        routes.append(
            TraefikRoute(
                rule=rule,
                middlewares=[
                    TraefikMiddleware.ref(middleware.name)
                    for middleware in route.middlewares or []
                ],
            )
        )

    tls = resource.spec.tls
    return TraefikIngressRoute(
        routes=routes,
        entry_points=list(resource.spec.entry_points or []),
        tls_cert_resolver=tls.cert_resolver if tls else None,
    )
