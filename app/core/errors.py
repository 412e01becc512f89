"""
Domain error taxonomy for the coordinator.

Every error carries a stable ``code`` (used in API error bodies) and the HTTP
status the exception handlers map it to. Services raise these; routers and the
exception handlers translate them for callers.
"""


class CoordinatorError(Exception):
    code = "coordinator_error"
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


# ----------- Validation -----------

class ValidationError(CoordinatorError):
    """Malformed or missing input, rejected before any state change."""
    code = "validation_error"
    status_code = 400


class PaymentNotRequired(ValidationError):
    code = "payment_not_required"


class NotFoundError(CoordinatorError):
    code = "not_found"
    status_code = 404


class OrderNotFound(NotFoundError):
    code = "order_not_found"


class AgentNotFound(NotFoundError):
    code = "agent_not_found"


class RestaurantNotFound(NotFoundError):
    code = "restaurant_not_found"


# ----------- Business rule violations -----------

class StateError(CoordinatorError):
    code = "state_error"
    status_code = 409


class InvalidTransition(StateError):
    code = "invalid_transition"


class CannotCancelAtThisStage(InvalidTransition):
    code = "cannot_cancel_at_this_stage"


class AlreadyCancelled(StateError):
    code = "already_cancelled"


class AlreadyRated(StateError):
    code = "already_rated"


class NotDelivered(StateError):
    code = "not_delivered"


class AgentUnavailable(StateError):
    code = "agent_unavailable"


class AlreadyAssigned(StateError):
    code = "already_assigned"


class NotAssignedCourier(StateError):
    """A courier acted on an order assigned to someone else."""
    code = "not_assigned_courier"
    status_code = 403


class RefundNotEligible(StateError):
    code = "refund_not_eligible"


# ----------- Concurrency -----------

class ConcurrencyError(CoordinatorError):
    """A conditional write lost a race. The caller should retry the whole operation."""
    code = "concurrency_conflict"
    status_code = 409


# ----------- External systems -----------

class ExternalError(CoordinatorError):
    code = "external_error"
    status_code = 502


class SignatureInvalid(ExternalError):
    code = "signature_invalid"
    status_code = 400


class GatewayError(ExternalError):
    code = "gateway_error"
