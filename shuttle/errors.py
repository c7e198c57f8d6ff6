"""Service-layer error taxonomy.

Services raise these; the application error handler in ``shuttle.app`` turns
them into ``{'error': ..., 'code': ...}`` JSON responses. ``Internal`` errors
never expose their message to the client.
"""


class ServiceError(Exception):
    status_code = 500
    default_message = 'Internal server error'

    def __init__(self, message=None, **extra):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.extra = extra

    @property
    def code(self):
        return type(self).__name__

    def to_dict(self):
        payload = {'error': self.message, 'code': self.code}
        payload.update(self.extra)
        return payload


class Unauthorized(ServiceError):
    status_code = 401
    default_message = 'Authentication required'


class Forbidden(ServiceError):
    status_code = 403
    default_message = 'You do not have permission to do that'


class NotFound(ServiceError):
    status_code = 404
    default_message = 'Not found'


class ValidationError(ServiceError):
    status_code = 400
    default_message = 'Invalid request'


class InvalidState(ServiceError):
    status_code = 400
    default_message = 'Operation not allowed in the current state'


class InvalidTarget(ServiceError):
    status_code = 400
    default_message = 'Invalid target user'


class QuorumNotMet(ServiceError):
    status_code = 400
    default_message = 'Not enough participants'


class Conflict(ServiceError):
    status_code = 409
    default_message = 'Conflicting request'


class Internal(ServiceError):
    status_code = 500


class LedgerError(Internal):
    default_message = 'Points ledger error'


class SettlementError(Internal):
    default_message = 'Match settlement failed'
