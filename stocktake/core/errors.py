"""
Typed failures returned by the counting services.

Business-rule failures travel back to callers inside result objects rather
than as exceptions, so every lifecycle operation is total from the caller's
point of view. Each error carries enough context (offending field, other
owner's label) for the caller to render a precise message.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorKind(str, Enum):
    """Broad family of a failure, drives the HTTP status mapping."""
    NOT_FOUND = "not_found"
    PRECONDITION = "precondition"
    CONFLICT = "conflict"
    VALIDATION = "validation"


class ErrorCode(str, Enum):
    LOCATION_NOT_FOUND = "LocationNotFound"
    LOCATION_DISABLED = "LocationDisabled"
    OWNER_INVALID = "OwnerInvalid"
    SEQUENTIAL_PREREQUISITE_MISSING = "SequentialPrerequisiteMissing"
    CONFLICT_OTHER_OWNER = "ConflictOtherOwner"
    VALIDATION_FAILED = "ValidationFailed"
    RUN_NOT_FOUND = "RunNotFound"
    NOT_OWNER = "NotOwner"
    RUN_ZONE_MISMATCH = "RunZoneMismatch"
    SAME_OPERATOR_AS_FIRST_COUNT = "SameOperatorAsFirstCount"
    SESSION_NOT_FOUND = "SessionNotFound"
    SESSION_HAS_OPEN_RUNS = "SessionHasOpenRuns"
    SHOP_NOT_FOUND = "ShopNotFound"


@dataclass
class FieldError:
    """Validation failure pinned to one input field, e.g. ``items[2].ean``."""
    field: str
    message: str


@dataclass
class LifecycleError:
    code: ErrorCode
    kind: ErrorKind
    title: str
    detail: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    field_errors: List[FieldError] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "code": self.code.value,
            "title": self.title,
            "detail": self.detail,
        }
        if self.metadata:
            payload["metadata"] = {k: _jsonable(v) for k, v in self.metadata.items()}
        if self.field_errors:
            payload["errors"] = [
                {"field": e.field, "message": e.message} for e in self.field_errors
            ]
        return payload


def _jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


# ============================================================================
# FACTORIES
# ============================================================================

def location_not_found(zone_id) -> LifecycleError:
    return LifecycleError(
        code=ErrorCode.LOCATION_NOT_FOUND,
        kind=ErrorKind.NOT_FOUND,
        title="Not found",
        detail="The requested zone does not exist.",
        metadata={"zone_id": zone_id},
    )


def location_disabled(zone_id, action: str = "start a count") -> LifecycleError:
    return LifecycleError(
        code=ErrorCode.LOCATION_DISABLED,
        kind=ErrorKind.PRECONDITION,
        title="Zone disabled",
        detail=f"The requested zone is disabled and cannot {action}.",
        metadata={"zone_id": zone_id},
    )


def owner_invalid(owner_id, shop_id) -> LifecycleError:
    return LifecycleError(
        code=ErrorCode.OWNER_INVALID,
        kind=ErrorKind.PRECONDITION,
        title="Invalid request",
        detail="owner_user_id does not belong to the shop or is disabled.",
        metadata={"owner_user_id": owner_id, "shop_id": shop_id},
    )


def sequential_prerequisite_missing(zone_id) -> LifecycleError:
    return LifecycleError(
        code=ErrorCode.SEQUENTIAL_PREREQUISITE_MISSING,
        kind=ErrorKind.PRECONDITION,
        title="Missing prerequisite",
        detail="Complete the first count before starting the second count.",
        metadata={"zone_id": zone_id},
    )


def conflict_other_owner(owner_label: Optional[str]) -> LifecycleError:
    label = owner_label.strip() if owner_label and owner_label.strip() else "another operator"
    return LifecycleError(
        code=ErrorCode.CONFLICT_OTHER_OWNER,
        kind=ErrorKind.CONFLICT,
        title="Conflict",
        detail=f"Count already in progress by {label}.",
        metadata={"owner_label": label},
    )


def validation_failed(field_errors: List[FieldError], detail: Optional[str] = None) -> LifecycleError:
    return LifecycleError(
        code=ErrorCode.VALIDATION_FAILED,
        kind=ErrorKind.VALIDATION,
        title="Invalid request",
        detail=detail or "One or more count lines are invalid.",
        field_errors=field_errors,
    )


def run_not_found(detail: str = "No active count matches the given criteria.") -> LifecycleError:
    return LifecycleError(
        code=ErrorCode.RUN_NOT_FOUND,
        kind=ErrorKind.NOT_FOUND,
        title="Not found",
        detail=detail,
    )


def run_zone_mismatch(run_id, zone_id) -> LifecycleError:
    return LifecycleError(
        code=ErrorCode.RUN_ZONE_MISMATCH,
        kind=ErrorKind.VALIDATION,
        title="Invalid request",
        detail="The run does not belong to the requested zone.",
        metadata={"run_id": run_id, "zone_id": zone_id},
    )


def not_owner(owner_label: Optional[str]) -> LifecycleError:
    label = owner_label.strip() if owner_label and owner_label.strip() else "another operator"
    return LifecycleError(
        code=ErrorCode.NOT_OWNER,
        kind=ErrorKind.CONFLICT,
        title="Conflict",
        detail=f"Count held by {label}.",
        metadata={"owner_label": label},
    )


def same_operator_as_first_count() -> LifecycleError:
    return LifecycleError(
        code=ErrorCode.SAME_OPERATOR_AS_FIRST_COUNT,
        kind=ErrorKind.CONFLICT,
        title="Conflict",
        detail="The second count must be performed by a different operator than the first.",
    )


def session_not_found(session_id) -> LifecycleError:
    return LifecycleError(
        code=ErrorCode.SESSION_NOT_FOUND,
        kind=ErrorKind.NOT_FOUND,
        title="Not found",
        detail="The requested inventory session does not exist.",
        metadata={"session_id": session_id},
    )


def session_has_open_runs(session_id, open_runs: int) -> LifecycleError:
    return LifecycleError(
        code=ErrorCode.SESSION_HAS_OPEN_RUNS,
        kind=ErrorKind.PRECONDITION,
        title="Session still active",
        detail=f"{open_runs} count(s) are still in progress in this session.",
        metadata={"session_id": session_id, "open_runs": open_runs},
    )


def shop_not_found(shop_id) -> LifecycleError:
    return LifecycleError(
        code=ErrorCode.SHOP_NOT_FOUND,
        kind=ErrorKind.NOT_FOUND,
        title="Not found",
        detail="The requested shop does not exist.",
        metadata={"shop_id": shop_id},
    )
