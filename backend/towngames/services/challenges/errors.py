class ChallengeError(Exception):
    """Base class for failures reported to challenge callers.

    ``kind`` is the stable identifier clients switch on; ``status_code`` is
    the HTTP status the API layer renders it with.
    """

    kind = 'challenge_error'
    status_code = 400
    default_message = 'Challenge request failed'

    def __init__(self, message=None, **details):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.details = details

    def to_dict(self):
        payload = {'error': self.message, 'kind': self.kind}
        payload.update(self.details)
        return payload


class QuotaExceeded(ChallengeError):
    kind = 'quota_exceeded'
    status_code = 429
    default_message = 'No plays remaining today. Try again tomorrow!'


class InvalidState(ChallengeError):
    kind = 'invalid_state'
    status_code = 409
    default_message = 'Session expired'


class DuplicateAnswer(ChallengeError):
    kind = 'duplicate_answer'
    status_code = 409
    default_message = 'Already answered'


class OutOfRange(ChallengeError):
    kind = 'out_of_range'
    status_code = 400
    default_message = 'Invalid request'


class NotFound(ChallengeError):
    kind = 'not_found'
    status_code = 404
    default_message = 'Game session not found'


class NotEligible(ChallengeError):
    kind = 'not_eligible'
    status_code = 403
    default_message = 'Your job does not unlock this challenge'


class UpstreamFailure(ChallengeError):
    kind = 'upstream_failure'
    status_code = 503
    default_message = 'Service temporarily unavailable'


class AlreadyGraded(ChallengeError):
    """Raised by the store when a session is already past IN_PROGRESS.

    Not a client error: the orchestrator catches it and replays the stored
    result.
    """

    kind = 'already_graded'
    status_code = 200
    default_message = 'Session already graded'


class CatalogError(Exception):
    """Challenge catalog or problem bank failed startup validation."""
