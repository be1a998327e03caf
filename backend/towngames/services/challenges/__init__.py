"""Timed challenge engine: problem selection, quotas, grading, rewards.

This package contains the server-authoritative domain logic behind the
challenge HTTP routes and Socket.IO notifications. Transport concerns
(request parsing, JSON rendering) stay in ``towngames.api``.
"""

from .errors import (
    ChallengeError,
    QuotaExceeded,
    InvalidState,
    DuplicateAnswer,
    OutOfRange,
    AlreadyGraded,
    NotFound,
    NotEligible,
    UpstreamFailure,
    CatalogError,
)

__all__ = [
    'ChallengeError',
    'QuotaExceeded',
    'InvalidState',
    'DuplicateAnswer',
    'OutOfRange',
    'AlreadyGraded',
    'NotFound',
    'NotEligible',
    'UpstreamFailure',
    'CatalogError',
]
