"""Desired-state model: stacks, resources, spec models and lazy references.

These models provide:
1. Type-safe parsing of stack documents (pydantic, camelCase aliases)
2. Validation at the boundary (fail fast, fail loudly)
3. Lazy cross-resource references resolved once the referenced
   resource has been synthesized and carries a status
4. Conversion of specs into ELBv2 request payloads
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Annotated, Any, ClassVar, Generic, TypeVar

from pydantic import BaseModel, Field, field_validator

from .algorithm import compact
from .errors import UnresolvedReferenceError

# =============================================================================
# Lazy References
# =============================================================================


class StringToken(ABC):
    """A string value that may only be known after another resource exists."""

    @abstractmethod
    def resolve(self) -> str: ...

    def dependencies(self) -> list[Resource]:
        return []


class LiteralToken(StringToken):
    """A token wrapping an already known value."""

    def __init__(self, value: str) -> None:
        self.value = value

    def resolve(self) -> str:
        return self.value

    def __eq__(self, other: object) -> bool:
        return isinstance(other, LiteralToken) and other.value == self.value

    def __hash__(self) -> int:
        return hash(self.value)

    def __repr__(self) -> str:
        return f"LiteralToken({self.value!r})"


class ResourceRef(StringToken):
    """A token reading one field of another resource's status."""

    def __init__(self, resource: Resource, status_field: str = "arn") -> None:
        self.resource = resource
        self.status_field = status_field

    def resolve(self) -> str:
        status = self.resource.status
        if status is None:
            raise UnresolvedReferenceError(
                f"{self.resource.kind}/{self.resource.id} has no status yet, "
                f"cannot resolve {self.status_field}"
            )
        return getattr(status, self.status_field)

    def dependencies(self) -> list[Resource]:
        return [self.resource]

    def __repr__(self) -> str:
        return f"ResourceRef({self.resource.kind}/{self.resource.id}.{self.status_field})"


def as_token(value: Any) -> StringToken:
    """Coerce a plain string into a LiteralToken."""
    if isinstance(value, StringToken):
        return value
    if isinstance(value, str):
        return LiteralToken(value)
    raise TypeError(f"expected str or StringToken, got {type(value).__name__}")


# =============================================================================
# Base Models
# =============================================================================


class SpecModel(BaseModel):
    """Base for all spec models."""

    model_config = {"extra": "ignore", "populate_by_name": True, "arbitrary_types_allowed": True}


class Attribute(SpecModel):
    """A key/value attribute of a load balancer, target group or listener."""

    key: Annotated[str, Field(min_length=1)]
    value: str

    @field_validator("value", mode="before")
    @classmethod
    def stringify(cls, v: Any) -> str:
        if isinstance(v, bool):
            return "true" if v else "false"
        return str(v)


def attributes_to_map(attributes: list[Attribute]) -> dict[str, str]:
    return {attr.key: attr.value for attr in attributes}


# =============================================================================
# Actions and Conditions
# =============================================================================

VALID_ACTION_TYPES = {
    "forward",
    "redirect",
    "fixed-response",
    "authenticate-oidc",
    "authenticate-cognito",
}

VALID_CONDITION_FIELDS = {
    "host-header",
    "path-pattern",
    "http-header",
    "http-request-method",
    "query-string",
    "source-ip",
}


class TargetGroupTuple(SpecModel):
    target_group_arn: Any = Field(alias="targetGroupARN")
    weight: int | None = None

    @field_validator("target_group_arn", mode="before")
    @classmethod
    def tokenize(cls, v: Any) -> StringToken:
        return as_token(v)


class TargetGroupStickinessConfig(SpecModel):
    enabled: bool | None = None
    duration_seconds: int | None = Field(None, alias="durationSeconds")


class ForwardActionConfig(SpecModel):
    target_groups: Annotated[list[TargetGroupTuple], Field(min_length=1)] = Field(
        alias="targetGroups"
    )
    target_group_stickiness_config: TargetGroupStickinessConfig | None = Field(
        None, alias="targetGroupStickinessConfig"
    )


class RedirectActionConfig(SpecModel):
    host: str | None = None
    path: str | None = None
    port: str | None = None
    protocol: str | None = None
    query: str | None = None
    status_code: str = Field(alias="statusCode")

    @field_validator("status_code")
    @classmethod
    def validate_status_code(cls, v: str) -> str:
        if v not in ("HTTP_301", "HTTP_302"):
            raise ValueError("statusCode must be HTTP_301 or HTTP_302")
        return v


class FixedResponseActionConfig(SpecModel):
    status_code: str = Field(alias="statusCode")
    content_type: str | None = Field(None, alias="contentType")
    message_body: str | None = Field(None, alias="messageBody")


class Action(SpecModel):
    """A listener default action or rule action."""

    type: str
    forward_config: ForwardActionConfig | None = Field(None, alias="forwardConfig")
    redirect_config: RedirectActionConfig | None = Field(None, alias="redirectConfig")
    fixed_response_config: FixedResponseActionConfig | None = Field(
        None, alias="fixedResponseConfig"
    )
    authenticate_oidc_config: dict[str, Any] | None = Field(None, alias="authenticateOIDCConfig")
    authenticate_cognito_config: dict[str, Any] | None = Field(
        None, alias="authenticateCognitoConfig"
    )

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        if v not in VALID_ACTION_TYPES:
            raise ValueError(f"type must be one of {sorted(VALID_ACTION_TYPES)}")
        return v

    def dependencies(self) -> list[Resource]:
        if self.forward_config is None:
            return []
        deps: list[Resource] = []
        for tg in self.forward_config.target_groups:
            deps.extend(tg.target_group_arn.dependencies())
        return deps

    def to_sdk(self, order: int) -> dict[str, Any]:
        """Build the ELBv2 Action payload, resolving target group ARNs."""
        payload: dict[str, Any] = {"Type": self.type, "Order": order}
        if self.forward_config is not None:
            stickiness = self.forward_config.target_group_stickiness_config
            payload["ForwardConfig"] = {
                "TargetGroups": [
                    compact({"TargetGroupArn": tg.target_group_arn.resolve(), "Weight": tg.weight})
                    for tg in self.forward_config.target_groups
                ],
            }
            if stickiness is not None:
                payload["ForwardConfig"]["TargetGroupStickinessConfig"] = compact(
                    {"Enabled": stickiness.enabled, "DurationSeconds": stickiness.duration_seconds}
                )
        if self.redirect_config is not None:
            rc = self.redirect_config
            payload["RedirectConfig"] = compact(
                {
                    "Host": rc.host,
                    "Path": rc.path,
                    "Port": rc.port,
                    "Protocol": rc.protocol,
                    "Query": rc.query,
                    "StatusCode": rc.status_code,
                }
            )
        if self.fixed_response_config is not None:
            fr = self.fixed_response_config
            payload["FixedResponseConfig"] = compact(
                {
                    "StatusCode": fr.status_code,
                    "ContentType": fr.content_type,
                    "MessageBody": fr.message_body,
                }
            )
        if self.authenticate_oidc_config is not None:
            payload["AuthenticateOidcConfig"] = dict(self.authenticate_oidc_config)
        if self.authenticate_cognito_config is not None:
            payload["AuthenticateCognitoConfig"] = dict(self.authenticate_cognito_config)
        return payload


def actions_to_sdk(actions: list[Action]) -> list[dict[str, Any]]:
    return [action.to_sdk(order=index + 1) for index, action in enumerate(actions)]


class HTTPHeaderConditionConfig(SpecModel):
    http_header_name: str = Field(alias="httpHeaderName")
    values: list[str]


class QueryStringKeyValuePair(SpecModel):
    key: str | None = None
    value: str


class RuleCondition(SpecModel):
    """A listener rule condition."""

    field: str
    values: list[str] = Field(default_factory=list)
    http_header_config: HTTPHeaderConditionConfig | None = Field(None, alias="httpHeaderConfig")
    query_string_config: list[QueryStringKeyValuePair] | None = Field(
        None, alias="queryStringConfig"
    )

    @field_validator("field")
    @classmethod
    def validate_field(cls, v: str) -> str:
        if v not in VALID_CONDITION_FIELDS:
            raise ValueError(f"field must be one of {sorted(VALID_CONDITION_FIELDS)}")
        return v

    def to_sdk(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"Field": self.field}
        if self.field == "host-header":
            payload["HostHeaderConfig"] = {"Values": list(self.values)}
        elif self.field == "path-pattern":
            payload["PathPatternConfig"] = {"Values": list(self.values)}
        elif self.field == "http-request-method":
            payload["HttpRequestMethodConfig"] = {"Values": list(self.values)}
        elif self.field == "source-ip":
            payload["SourceIpConfig"] = {"Values": list(self.values)}
        elif self.field == "http-header" and self.http_header_config is not None:
            payload["HttpHeaderConfig"] = {
                "HttpHeaderName": self.http_header_config.http_header_name,
                "Values": list(self.http_header_config.values),
            }
        elif self.field == "query-string" and self.query_string_config is not None:
            payload["QueryStringConfig"] = {
                "Values": [
                    compact({"Key": kv.key, "Value": kv.value}) for kv in self.query_string_config
                ]
            }
        return payload


# =============================================================================
# Load Balancer
# =============================================================================


class SubnetMapping(SpecModel):
    subnet_id: Annotated[str, Field(min_length=1)] = Field(alias="subnetID")
    allocation_id: str | None = Field(None, alias="allocationID")
    private_ipv4_address: str | None = Field(None, alias="privateIPv4Address")
    ipv6_address: str | None = Field(None, alias="ipv6Address")

    def to_sdk(self) -> dict[str, Any]:
        return compact(
            {
                "SubnetId": self.subnet_id,
                "AllocationId": self.allocation_id,
                "PrivateIPv4Address": self.private_ipv4_address,
                "IPv6Address": self.ipv6_address,
            }
        )


class MinimumLoadBalancerCapacity(SpecModel):
    capacity_units: Annotated[int, Field(ge=0)] = Field(alias="capacityUnits")


class LoadBalancerSpec(SpecModel):
    """Load balancer specification."""

    name: Annotated[str, Field(min_length=1, max_length=32)]
    type: str = "application"
    scheme: str | None = None
    ip_address_type: str | None = Field(None, alias="ipAddressType")
    subnet_mappings: list[SubnetMapping] = Field(default_factory=list, alias="subnetMappings")
    security_groups: list[str] = Field(default_factory=list, alias="securityGroups")
    customer_owned_ipv4_pool: str | None = Field(None, alias="customerOwnedIPv4Pool")
    load_balancer_attributes: list[Attribute] = Field(
        default_factory=list, alias="loadBalancerAttributes"
    )
    minimum_load_balancer_capacity: MinimumLoadBalancerCapacity | None = Field(
        None, alias="minimumLoadBalancerCapacity"
    )
    tags: dict[str, str] = Field(default_factory=dict)

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        valid = {"application", "network", "gateway"}
        if v not in valid:
            raise ValueError(f"type must be one of {sorted(valid)}")
        return v

    @field_validator("scheme")
    @classmethod
    def validate_scheme(cls, v: str | None) -> str | None:
        if v is not None and v not in ("internet-facing", "internal"):
            raise ValueError("scheme must be internet-facing or internal")
        return v

    @field_validator("ip_address_type")
    @classmethod
    def validate_ip_address_type(cls, v: str | None) -> str | None:
        valid = {"ipv4", "dualstack", "dualstack-without-public-ipv4"}
        if v is not None and v not in valid:
            raise ValueError(f"ipAddressType must be one of {sorted(valid)}")
        return v


# =============================================================================
# Target Group
# =============================================================================

VALID_PROTOCOLS = {"HTTP", "HTTPS", "TCP", "TLS", "UDP", "TCP_UDP", "GENEVE"}


class HealthCheckMatcher(SpecModel):
    http_code: str | None = Field(None, alias="httpCode")
    grpc_code: str | None = Field(None, alias="grpcCode")

    def differs_from(self, live: dict[str, Any] | None) -> bool:
        """Check whether an explicitly set code differs from a live Matcher."""
        live = live or {}
        if self.http_code is not None and self.http_code != live.get("HttpCode"):
            return True
        return self.grpc_code is not None and self.grpc_code != live.get("GrpcCode")


class HealthCheckConfig(SpecModel):
    """Target group health check configuration."""

    port: int | str | None = None
    protocol: str | None = None
    path: str | None = None
    matcher: HealthCheckMatcher | None = None
    interval_seconds: int | None = Field(None, alias="intervalSeconds")
    timeout_seconds: int | None = Field(None, alias="timeoutSeconds")
    healthy_threshold_count: int | None = Field(None, alias="healthyThresholdCount")
    unhealthy_threshold_count: int | None = Field(None, alias="unhealthyThresholdCount")

    @field_validator("port", mode="before")
    @classmethod
    def validate_port(cls, v: Any) -> int | str | None:
        if v is None or v == "traffic-port":
            return v
        if isinstance(v, str) and v.isdigit():
            return int(v)
        if isinstance(v, int):
            return v
        raise ValueError("port must be an integer or traffic-port")

    def to_sdk(self) -> dict[str, Any]:
        """Build the HealthCheck* fields of a create/modify target group request."""
        matcher = None
        if self.matcher is not None:
            matcher = compact(
                {"HttpCode": self.matcher.http_code, "GrpcCode": self.matcher.grpc_code}
            )
        return compact(
            {
                "HealthCheckPort": None if self.port is None else str(self.port),
                "HealthCheckProtocol": self.protocol,
                "HealthCheckPath": self.path,
                "Matcher": matcher or None,
                "HealthCheckIntervalSeconds": self.interval_seconds,
                "HealthCheckTimeoutSeconds": self.timeout_seconds,
                "HealthyThresholdCount": self.healthy_threshold_count,
                "UnhealthyThresholdCount": self.unhealthy_threshold_count,
            }
        )


class TargetGroupSpec(SpecModel):
    """Target group specification."""

    name: Annotated[str, Field(min_length=1, max_length=32)]
    target_type: str = Field("instance", alias="targetType")
    port: Annotated[int, Field(ge=1, le=65535)] | None = None
    protocol: str | None = None
    protocol_version: str | None = Field(None, alias="protocolVersion")
    ip_address_type: str | None = Field(None, alias="ipAddressType")
    vpc_id: str | None = Field(None, alias="vpcID")
    health_check_config: HealthCheckConfig | None = Field(None, alias="healthCheckConfig")
    target_group_attributes: list[Attribute] = Field(
        default_factory=list, alias="targetGroupAttributes"
    )
    tags: dict[str, str] = Field(default_factory=dict)

    @field_validator("target_type")
    @classmethod
    def validate_target_type(cls, v: str) -> str:
        valid = {"instance", "ip", "lambda", "alb"}
        if v not in valid:
            raise ValueError(f"targetType must be one of {sorted(valid)}")
        return v

    @field_validator("protocol")
    @classmethod
    def validate_protocol(cls, v: str | None) -> str | None:
        if v is not None and v not in VALID_PROTOCOLS:
            raise ValueError(f"protocol must be one of {sorted(VALID_PROTOCOLS)}")
        return v

    @field_validator("protocol_version")
    @classmethod
    def validate_protocol_version(cls, v: str | None) -> str | None:
        if v is not None and v not in ("HTTP1", "HTTP2", "GRPC"):
            raise ValueError("protocolVersion must be HTTP1, HTTP2 or GRPC")
        return v


# =============================================================================
# Listener and Listener Rule
# =============================================================================


class Certificate(SpecModel):
    certificate_arn: Annotated[str, Field(min_length=1)] = Field(alias="certificateARN")


class MutualAuthentication(SpecModel):
    mode: str
    trust_store_arn: str | None = Field(None, alias="trustStoreARN")
    ignore_client_certificate_expiry: bool | None = Field(
        None, alias="ignoreClientCertificateExpiry"
    )

    @field_validator("mode")
    @classmethod
    def validate_mode(cls, v: str) -> str:
        if v not in ("off", "passthrough", "verify"):
            raise ValueError("mode must be off, passthrough or verify")
        return v

    def to_sdk(self) -> dict[str, Any]:
        return compact(
            {
                "Mode": self.mode,
                "TrustStoreArn": self.trust_store_arn,
                "IgnoreClientCertificateExpiry": self.ignore_client_certificate_expiry,
            }
        )


class ListenerSpec(SpecModel):
    """Listener specification."""

    load_balancer_arn: Any = Field(alias="loadBalancerARN")
    port: Annotated[int, Field(ge=1, le=65535)]
    protocol: str
    default_actions: Annotated[list[Action], Field(min_length=1)] = Field(alias="defaultActions")
    certificates: list[Certificate] = Field(default_factory=list)
    ssl_policy: str | None = Field(None, alias="sslPolicy")
    alpn_policy: list[str] = Field(default_factory=list, alias="alpnPolicy")
    mutual_authentication: MutualAuthentication | None = Field(None, alias="mutualAuthentication")
    listener_attributes: list[Attribute] = Field(default_factory=list, alias="listenerAttributes")
    tags: dict[str, str] = Field(default_factory=dict)

    @field_validator("load_balancer_arn", mode="before")
    @classmethod
    def tokenize(cls, v: Any) -> StringToken:
        return as_token(v)

    @field_validator("protocol")
    @classmethod
    def validate_protocol(cls, v: str) -> str:
        if v not in VALID_PROTOCOLS:
            raise ValueError(f"protocol must be one of {sorted(VALID_PROTOCOLS)}")
        return v


class ListenerRuleSpec(SpecModel):
    """Listener rule specification."""

    listener_arn: Any = Field(alias="listenerARN")
    priority: Annotated[int, Field(ge=1, le=50000)]
    actions: Annotated[list[Action], Field(min_length=1)]
    conditions: list[RuleCondition] = Field(default_factory=list)
    transforms: list[dict[str, Any]] = Field(default_factory=list)
    tags: dict[str, str] = Field(default_factory=dict)

    @field_validator("listener_arn", mode="before")
    @classmethod
    def tokenize(cls, v: Any) -> StringToken:
        return as_token(v)


# =============================================================================
# Target Group Binding
# =============================================================================


class ServiceReference(SpecModel):
    name: Annotated[str, Field(min_length=1)]
    port: int | str


class TargetGroupBindingResourceSpec(SpecModel):
    """Spec of the cluster TargetGroupBinding object."""

    target_group_arn: Any = Field(alias="targetGroupARN")
    target_type: str | None = Field(None, alias="targetType")
    service_ref: ServiceReference = Field(alias="serviceRef")
    networking: dict[str, Any] | None = None
    node_selector: dict[str, Any] | None = Field(None, alias="nodeSelector")
    ip_address_type: str | None = Field(None, alias="ipAddressType")
    vpc_id: str | None = Field(None, alias="vpcID")

    @field_validator("target_group_arn", mode="before")
    @classmethod
    def tokenize(cls, v: Any) -> StringToken:
        return as_token(v)

    def to_k8s(self) -> dict[str, Any]:
        """Render the object spec, resolving the target group ARN."""
        return compact(
            {
                "targetGroupARN": self.target_group_arn.resolve(),
                "targetType": self.target_type,
                "serviceRef": {"name": self.service_ref.name, "port": self.service_ref.port},
                "networking": self.networking,
                "nodeSelector": self.node_selector,
                "ipAddressType": self.ip_address_type,
                "vpcID": self.vpc_id,
            }
        )


class TargetGroupBindingTemplate(SpecModel):
    name: Annotated[str, Field(min_length=1, max_length=253)]
    namespace: Annotated[str, Field(min_length=1)]
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)
    spec: TargetGroupBindingResourceSpec


class TargetGroupBindingSpec(SpecModel):
    template: TargetGroupBindingTemplate


# =============================================================================
# Resources and Stack
# =============================================================================


@dataclass
class LoadBalancerStatus:
    arn: str
    dns_name: str


@dataclass
class TargetGroupStatus:
    arn: str


@dataclass
class ListenerStatus:
    arn: str


@dataclass
class ListenerRuleStatus:
    arn: str


@dataclass
class TargetGroupBindingStatus:
    name: str
    namespace: str


SpecT = TypeVar("SpecT", bound=SpecModel)


class Resource(Generic[SpecT]):
    """A desired resource: a spec plus a status written after synthesis."""

    kind: ClassVar[str] = "Resource"

    def __init__(self, resource_id: str, spec: SpecT) -> None:
        if not resource_id:
            raise ValueError("resource id cannot be empty")
        self.id = resource_id
        self.spec = spec
        self.status: Any = None

    def set_status(self, status: Any) -> None:
        self.status = status

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.id!r})"


class LoadBalancer(Resource[LoadBalancerSpec]):
    kind = "AWS::ElasticLoadBalancingV2::LoadBalancer"

    def load_balancer_arn(self) -> StringToken:
        return ResourceRef(self, "arn")

    def dns_name(self) -> StringToken:
        return ResourceRef(self, "dns_name")


class TargetGroup(Resource[TargetGroupSpec]):
    kind = "AWS::ElasticLoadBalancingV2::TargetGroup"

    def target_group_arn(self) -> StringToken:
        return ResourceRef(self, "arn")


class Listener(Resource[ListenerSpec]):
    kind = "AWS::ElasticLoadBalancingV2::Listener"

    def listener_arn(self) -> StringToken:
        return ResourceRef(self, "arn")


class ListenerRule(Resource[ListenerRuleSpec]):
    kind = "AWS::ElasticLoadBalancingV2::ListenerRule"


class TargetGroupBindingResource(Resource[TargetGroupBindingSpec]):
    kind = "K8S::ElasticLoadBalancingV2::TargetGroupBinding"


R = TypeVar("R", bound=Resource)


@dataclass(frozen=True)
class StackID:
    """Namespaced name of a stack."""

    namespace: str
    name: str

    def __str__(self) -> str:
        if not self.namespace:
            return self.name
        return f"{self.namespace}/{self.name}"


@dataclass
class Stack:
    """The desired resource graph of one reconciliation unit."""

    stack_id: StackID
    _resources: dict[tuple[str, str], Resource] = field(default_factory=dict)

    def add_resource(self, resource: Resource) -> None:
        key = (resource.kind, resource.id)
        if key in self._resources:
            raise ValueError(f"duplicate resource {resource.kind}/{resource.id}")
        self._resources[key] = resource

    def resources(self) -> list[Resource]:
        return list(self._resources.values())

    def list_resources(self, kind: type[R]) -> list[R]:
        return [r for r in self._resources.values() if isinstance(r, kind)]

    def get_resource(self, kind: type[R], resource_id: str) -> R | None:
        resource = self._resources.get((kind.kind, resource_id))
        return resource if isinstance(resource, kind) else None

    def __len__(self) -> int:
        return len(self._resources)
