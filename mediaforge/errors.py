from __future__ import annotations


class MediaforgeError(Exception):
    code = 'error'

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidInput(MediaforgeError):
    code = 'invalid_input'


class NotFound(MediaforgeError):
    code = 'not_found'


class InsufficientCredits(MediaforgeError):
    code = 'insufficient_credits'

    def __init__(self, required: int, available: int) -> None:
        super().__init__(f'Insufficient credits. Required: {required}, available: {available}')
        self.required = required
        self.available = available


class ProviderError(MediaforgeError):
    code = 'provider_error'

    def __init__(self, message: str, provider: str = '', status_code: int | None = None) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class ProviderUnavailable(ProviderError):
    """Transient: network failure, timeout, 5xx or throttling. Safe to retry."""

    code = 'provider_unavailable'


class ProviderRejected(ProviderError):
    """The provider refused the request; no billable remote work was started."""

    code = 'provider_rejected'


class ReconciliationConflict(MediaforgeError):
    code = 'reconciliation_conflict'

    def __init__(self, generation_id: int, expected: str) -> None:
        super().__init__(f'Generation {generation_id} is no longer {expected}')
        self.generation_id = generation_id
        self.expected = expected


class ArchivalFailure(MediaforgeError):
    code = 'archival_failure'
