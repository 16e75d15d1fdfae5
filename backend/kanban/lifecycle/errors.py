"""Lifecycle error hierarchy.

Every rejection of a requested transition is a LifecycleError carrying a
stable ``code`` and the HTTP status the gateway maps it to. These are
user-facing rejections, not crashes.
"""

from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    CARD_NOT_FOUND = "CARD_NOT_FOUND"
    CARD_DEACTIVATED = "CARD_DEACTIVATED"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    ROLE_NOT_ALLOWED = "ROLE_NOT_ALLOWED"
    LOOP_TYPE_INCOMPATIBLE = "LOOP_TYPE_INCOMPATIBLE"
    METHOD_NOT_ALLOWED = "METHOD_NOT_ALLOWED"
    MISSING_LINKED_ORDER = "MISSING_LINKED_ORDER"
    SCAN_CONFLICT = "SCAN_CONFLICT"
    SCAN_DUPLICATE = "SCAN_DUPLICATE"
    TENANT_MISMATCH = "TENANT_MISMATCH"
    STAGE_CONFLICT = "STAGE_CONFLICT"
    LOOP_NOT_FOUND = "LOOP_NOT_FOUND"
    INVALID_LOOP_CONFIGURATION = "INVALID_LOOP_CONFIGURATION"
    CARDS_ALREADY_EXIST = "CARDS_ALREADY_EXIST"
    INVALID_CARD_COUNT = "INVALID_CARD_COUNT"
    REASON_REQUIRED = "REASON_REQUIRED"
    INVALID_ORDER_QUANTITY = "INVALID_ORDER_QUANTITY"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class LifecycleError(Exception):
    """Base exception for all lifecycle rejections."""

    code: ErrorCode = ErrorCode.UNKNOWN_ERROR
    status_code: int = 400

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class CardNotFoundError(LifecycleError):
    code = ErrorCode.CARD_NOT_FOUND
    status_code = 404

    def __init__(self, card_id: str, message: str | None = None) -> None:
        self.card_id = card_id
        super().__init__(message or f"Kanban card not found: {card_id}")


class CardDeactivatedError(LifecycleError):
    code = ErrorCode.CARD_DEACTIVATED

    def __init__(self, card_id: str) -> None:
        self.card_id = card_id
        super().__init__(f"Card {card_id} has been deactivated")


class InvalidTransitionError(LifecycleError):
    """Raised when (from, to) is not an edge of the transition matrix."""

    code = ErrorCode.INVALID_TRANSITION

    def __init__(
        self,
        from_stage: str,
        to_stage: str,
        allowed: list[str] | None = None,
    ) -> None:
        self.from_stage = from_stage
        self.to_stage = to_stage
        self.allowed = allowed or []
        super().__init__(
            f"Invalid transition: {from_stage} -> {to_stage}. "
            f"Allowed: {', '.join(self.allowed) or 'none'}"
        )


class RoleNotAllowedError(LifecycleError):
    code = ErrorCode.ROLE_NOT_ALLOWED
    status_code = 403

    def __init__(self, role: str, from_stage: str, to_stage: str) -> None:
        self.role = role
        super().__init__(
            f"Role '{role}' cannot perform transition {from_stage} -> {to_stage}"
        )


class LoopTypeIncompatibleError(LifecycleError):
    code = ErrorCode.LOOP_TYPE_INCOMPATIBLE

    def __init__(self, loop_type: str, from_stage: str, to_stage: str) -> None:
        self.loop_type = loop_type
        super().__init__(
            f"Transition {from_stage} -> {to_stage} is not allowed "
            f"for '{loop_type}' loops"
        )


class MethodNotAllowedError(LifecycleError):
    code = ErrorCode.METHOD_NOT_ALLOWED

    def __init__(self, method: str, from_stage: str, to_stage: str) -> None:
        self.method = method
        super().__init__(
            f"Method '{method}' is not allowed for transition "
            f"{from_stage} -> {to_stage}"
        )


class MissingLinkedOrderError(LifecycleError):
    code = ErrorCode.MISSING_LINKED_ORDER

    def __init__(
        self,
        from_stage: str,
        to_stage: str,
        accepted_types: list[str],
    ) -> None:
        self.accepted_types = accepted_types
        super().__init__(
            f"Transition {from_stage} -> {to_stage} requires a linked order "
            f"of type: {', '.join(accepted_types)}"
        )


class ScanConflictError(LifecycleError):
    """The card is not in the stage the scan assumes (HTTP 409).

    Distinguishes "someone already scanned it" from a malformed request.
    """

    code = ErrorCode.SCAN_CONFLICT
    status_code = 409

    def __init__(self, card_id: str, current_stage: str, resolution: str) -> None:
        self.card_id = card_id
        self.current_stage = current_stage
        self.resolution = resolution
        super().__init__(
            f'Scan conflict: card is in "{current_stage}" stage '
            f"(resolution: {resolution})"
        )


class ScanDuplicateError(LifecycleError):
    code = ErrorCode.SCAN_DUPLICATE
    status_code = 409

    def __init__(
        self,
        card_id: str,
        idempotency_key: str,
        existing_status: str,
    ) -> None:
        self.card_id = card_id
        self.idempotency_key = idempotency_key
        self.existing_status = existing_status
        super().__init__(
            f'Duplicate scan detected for card "{card_id}" '
            f"(key: {idempotency_key}, status: {existing_status})"
        )


class TenantMismatchError(LifecycleError):
    code = ErrorCode.TENANT_MISMATCH
    status_code = 403

    def __init__(self, card_id: str) -> None:
        self.card_id = card_id
        super().__init__("Card does not belong to your tenant.")


class StageConflictError(LifecycleError):
    """Card kept changing underneath us; caller should retry."""

    code = ErrorCode.STAGE_CONFLICT
    status_code = 409

    def __init__(self, card_id: str, attempts: int) -> None:
        self.card_id = card_id
        super().__init__(
            f"Card {card_id} changed concurrently {attempts} times; retry"
        )


class LoopNotFoundError(LifecycleError):
    code = ErrorCode.LOOP_NOT_FOUND
    status_code = 404

    def __init__(self, loop_id: str) -> None:
        self.loop_id = loop_id
        super().__init__(f"Loop not found: {loop_id}")


class LoopConfigurationError(LifecycleError):
    code = ErrorCode.INVALID_LOOP_CONFIGURATION


class CardsAlreadyExistError(LifecycleError):
    code = ErrorCode.CARDS_ALREADY_EXIST


class InvalidCardCountError(LifecycleError):
    code = ErrorCode.INVALID_CARD_COUNT


class ReasonRequiredError(LifecycleError):
    code = ErrorCode.REASON_REQUIRED

    def __init__(self) -> None:
        super().__init__("A non-empty reason is required for parameter changes")


class InvalidOrderQuantityError(LifecycleError):
    code = ErrorCode.INVALID_ORDER_QUANTITY
