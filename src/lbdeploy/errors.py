"""Error taxonomy for the synthesis engine.

Errors raised by boto3 are ``botocore.exceptions.ClientError`` instances
carrying an ELBv2 error code. Managers often re-raise them wrapped in
another exception, so code inspection walks the ``__cause__`` and
``__context__`` chain rather than looking at the outermost exception only.

TAXONOMY:
- IdentityViolationError: live state cannot be correlated safely (fatal)
- TargetGroupNameConflictError: a replacement reuses the name of a group in use
- UnresolvedReferenceError: a lazy cross-resource value is not available yet
- RequeueNeededAfter: a bounded wait timed out, retry the pass later
- ReconcileCancelledError: the pass deadline passed or it was cancelled
- Not-found and in-use conditions are recognised by error code helpers
"""

from __future__ import annotations

from botocore.exceptions import ClientError

# ELBv2 error codes
CODE_LOAD_BALANCER_NOT_FOUND = "LoadBalancerNotFound"
CODE_TARGET_GROUP_NOT_FOUND = "TargetGroupNotFound"
CODE_LISTENER_NOT_FOUND = "ListenerNotFound"
CODE_RULE_NOT_FOUND = "RuleNotFound"
CODE_RESOURCE_IN_USE = "ResourceInUse"
CODE_TOO_MANY_RULES = "TooManyRules"
CODE_OPERATION_NOT_PERMITTED = "OperationNotPermitted"

NOT_FOUND_CODES = frozenset(
    {
        CODE_LOAD_BALANCER_NOT_FOUND,
        CODE_TARGET_GROUP_NOT_FOUND,
        CODE_LISTENER_NOT_FOUND,
        CODE_RULE_NOT_FOUND,
    }
)

# Guards against cyclic exception chains
_MAX_CHAIN_DEPTH = 16


class IdentityViolationError(Exception):
    """Raised when a live resource cannot be correlated to its identity."""

    pass


class DuplicateKeyError(IdentityViolationError):
    """Raised when a structural identity key occurs twice on one side."""

    def __init__(self, key: object, side: str) -> None:
        self.key = key
        self.side = side
        super().__init__(self.describe())

    def describe(self) -> str:
        return f"duplicate {self.side} resource with key {self.key!r}"


class DuplicateListenerPortError(DuplicateKeyError):
    """Raised when two listeners on one load balancer share a port."""

    def describe(self) -> str:
        return f"duplicate {self.side} listener on port {self.key}"


class TargetGroupNameConflictError(Exception):
    """Raised when a replacement target group keeps the name of one still in use."""

    def __init__(self, name: str, arn: str) -> None:
        self.name = name
        self.arn = arn
        super().__init__(
            f"targetGroup {name!r} needs replacement but {arn} is still in use; "
            "give the replacement a new name"
        )


class UnresolvedReferenceError(Exception):
    """Raised when a lazily resolved value is not available yet."""

    pass


class ReconcileCancelledError(Exception):
    """Raised when a synthesis pass is cancelled or exceeds its deadline."""

    pass


class RequeueNeededAfter(Exception):
    """Raised when a bounded wait exceeded its timeout.

    The surrounding controller should requeue the stack after
    ``delay_seconds`` rather than treat this as a permanent failure.
    """

    def __init__(self, reason: str, delay_seconds: float) -> None:
        self.reason = reason
        self.delay_seconds = delay_seconds
        super().__init__(f"requeue needed after {delay_seconds}s: {reason}")


def error_code(err: BaseException | None) -> str | None:
    """Return the first ELBv2 error code found along an exception chain."""
    depth = 0
    while err is not None and depth < _MAX_CHAIN_DEPTH:
        if isinstance(err, ClientError):
            return err.response.get("Error", {}).get("Code")
        err = err.__cause__ or err.__context__
        depth += 1
    return None


def error_message(err: BaseException) -> str:
    """Return the ELBv2 error message found along an exception chain, or ``str(err)``."""
    current: BaseException | None = err
    depth = 0
    while current is not None and depth < _MAX_CHAIN_DEPTH:
        if isinstance(current, ClientError):
            return current.response.get("Error", {}).get("Message", "") or str(current)
        current = current.__cause__ or current.__context__
        depth += 1
    return str(err)


def has_error_code(err: BaseException, *codes: str) -> bool:
    """Check whether an exception chain carries one of the given error codes."""
    return error_code(err) in codes


def is_not_found(err: BaseException) -> bool:
    return has_error_code(err, *NOT_FOUND_CODES)


def is_resource_in_use(err: BaseException) -> bool:
    return has_error_code(err, CODE_RESOURCE_IN_USE)


def is_too_many_rules(err: BaseException) -> bool:
    return has_error_code(err, CODE_TOO_MANY_RULES)


def is_listener_not_found(err: BaseException) -> bool:
    return has_error_code(err, CODE_LISTENER_NOT_FOUND)


def is_deletion_protection_error(err: BaseException) -> bool:
    """Check for a delete rejected because deletion protection is enabled."""
    return has_error_code(err, CODE_OPERATION_NOT_PERMITTED) and (
        "deletion protection" in error_message(err).lower()
    )
