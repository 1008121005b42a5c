"""Stack file loading with validation.

A stack file is a YAML document, either flat or wrapped Kubernetes-style:

    apiVersion: lbdeploy/v1
    kind: Stack
    metadata:
      namespace: shop
      name: frontend
    spec:
      resources:
        - kind: TargetGroup
          id: web
          spec: {name: shop-web, targetType: ip, port: 8080, protocol: HTTP}
        - kind: Listener
          id: "80"
          spec:
            loadBalancerARN: {$ref: LoadBalancer/main}
            ...

Cross-resource values are written as ``{$ref: Kind/id}`` (optionally with
``field: dns_name``) and become lazy ResourceRef tokens resolved during
synthesis. A stack with an empty resource list deletes everything the stack
owns.

SECURITY: File size is checked before reading. Input validation is
performed at the boundary.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Annotated, Any

import yaml
from pydantic import BaseModel, Field, ValidationError

from .config import MAX_STACK_FILE_SIZE_BYTES
from .models import (
    Listener,
    ListenerRule,
    ListenerRuleSpec,
    ListenerSpec,
    LoadBalancer,
    LoadBalancerSpec,
    Resource,
    ResourceRef,
    SpecModel,
    Stack,
    StackID,
    TargetGroup,
    TargetGroupBindingResource,
    TargetGroupBindingSpec,
    TargetGroupSpec,
)

logger = logging.getLogger(__name__)

REF_KEY = "$ref"
REF_FIELD_KEY = "field"


class StackLoadError(Exception):
    """Raised when stack loading or validation fails."""

    pass


# Resources are built in this order so that a reference always points at
# an already built resource
RESOURCE_KINDS: dict[str, tuple[type[Resource], type[SpecModel]]] = {
    "TargetGroup": (TargetGroup, TargetGroupSpec),
    "LoadBalancer": (LoadBalancer, LoadBalancerSpec),
    "Listener": (Listener, ListenerSpec),
    "ListenerRule": (ListenerRule, ListenerRuleSpec),
    "TargetGroupBinding": (TargetGroupBindingResource, TargetGroupBindingSpec),
}

REF_FIELDS = {"arn", "dns_name"}


class ResourceEntry(BaseModel):
    model_config = {"extra": "forbid"}

    kind: str
    id: Annotated[str, Field(min_length=1, max_length=255)]
    spec: dict[str, Any]


class StackDocument(BaseModel):
    model_config = {"extra": "ignore"}

    name: Annotated[str, Field(min_length=1, max_length=253)]
    namespace: str = ""
    resources: list[ResourceEntry] = Field(default_factory=list)


def _format_validation_error(path: Path, e: ValidationError, prefix: str = "") -> str:
    errors = []
    for error in e.errors():
        loc = ".".join(str(x) for x in error["loc"])
        errors.append(f"  - {prefix}{loc}: {error['msg']}")
    error_list = "\n".join(errors)
    return f"Validation failed for {path}:\n{error_list}"


def _read_document(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise StackLoadError(f"Stack file not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise StackLoadError(f"Failed to stat stack file {path}: {e}") from e

    if file_size > MAX_STACK_FILE_SIZE_BYTES:
        raise StackLoadError(
            f"Stack file exceeds maximum size of {MAX_STACK_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise StackLoadError(f"Failed to read stack file {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise StackLoadError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise StackLoadError(f"Stack file must contain a YAML mapping: {path}")

    # Kubernetes-style format: apiVersion, kind, metadata, spec
    if "apiVersion" in raw_data and "spec" in raw_data:
        spec_data = raw_data.get("spec") or {}
        metadata = raw_data.get("metadata") or {}
        if not isinstance(spec_data, dict) or not isinstance(metadata, dict):
            raise StackLoadError(f"metadata and spec sections must be mappings: {path}")
        document = dict(spec_data)
        document.setdefault("name", metadata.get("name"))
        document.setdefault("namespace", metadata.get("namespace") or "")
        return document
    return raw_data


def _resolve_refs(value: Any, stack: Stack, location: str) -> Any:
    """Replace ``{$ref: Kind/id}`` mappings with ResourceRef tokens."""
    if isinstance(value, dict):
        if REF_KEY in value:
            return _build_ref(value, stack, location)
        return {k: _resolve_refs(v, stack, f"{location}.{k}") for k, v in value.items()}
    if isinstance(value, list):
        return [_resolve_refs(v, stack, f"{location}[{i}]") for i, v in enumerate(value)]
    return value


def _build_ref(value: dict[str, Any], stack: Stack, location: str) -> ResourceRef:
    unknown = set(value) - {REF_KEY, REF_FIELD_KEY}
    if unknown:
        raise StackLoadError(f"{location}: unexpected keys next to {REF_KEY}: {sorted(unknown)}")

    target = value[REF_KEY]
    kind_name, sep, resource_id = str(target).partition("/")
    if not sep or kind_name not in RESOURCE_KINDS or not resource_id:
        raise StackLoadError(
            f"{location}: {REF_KEY} must look like <Kind>/<id> with Kind one of "
            f"{list(RESOURCE_KINDS)}: {target}"
        )

    status_field = value.get(REF_FIELD_KEY, "arn")
    if status_field not in REF_FIELDS:
        raise StackLoadError(f"{location}: field must be one of {sorted(REF_FIELDS)}")

    resource_class, _ = RESOURCE_KINDS[kind_name]
    resource = stack.get_resource(resource_class, resource_id)
    if resource is None:
        raise StackLoadError(
            f"{location}: {REF_KEY} {target} does not name a resource declared earlier "
            f"in dependency order"
        )
    return ResourceRef(resource, status_field)


def load_stack(path: Path) -> Stack:
    """Load and validate a stack from YAML.

    Args:
        path: Stack file.

    Returns:
        Stack with every resource built and references wired.

    Raises:
        StackLoadError: If the file cannot be read or fails validation.
    """
    data = _read_document(path)

    try:
        document = StackDocument.model_validate(data)
    except ValidationError as e:
        raise StackLoadError(_format_validation_error(path, e)) from e

    stack = Stack(StackID(namespace=document.namespace, name=document.name))
    indexed = list(enumerate(document.resources))
    kind_order = list(RESOURCE_KINDS)

    for index, entry in indexed:
        if entry.kind not in RESOURCE_KINDS:
            raise StackLoadError(
                f"{path}: resources[{index}].kind must be one of {kind_order}: {entry.kind}"
            )

    for index, entry in sorted(indexed, key=lambda item: kind_order.index(item[1].kind)):
        resource_class, spec_class = RESOURCE_KINDS[entry.kind]
        location = f"resources[{index}].spec"
        spec_data = _resolve_refs(entry.spec, stack, f"{path}: {location}")
        try:
            spec = spec_class.model_validate(spec_data)
        except ValidationError as e:
            raise StackLoadError(_format_validation_error(path, e, f"{location}.")) from e
        try:
            stack.add_resource(resource_class(entry.id, spec))
        except ValueError as e:
            raise StackLoadError(f"{path}: resources[{index}]: {e}") from e

    logger.info(
        "Loaded stack",
        extra={"stack": str(stack.stack_id), "path": str(path), "resource_count": len(stack)},
    )
    return stack


def discover_stack_files(stacks_dir: Path) -> list[Path]:
    """List the stack files of a directory in a stable order."""
    if not stacks_dir.is_dir():
        raise StackLoadError(f"Stacks directory not found: {stacks_dir}")
    return sorted(p for p in stacks_dir.iterdir() if p.is_file() and p.suffix in (".yaml", ".yml"))
