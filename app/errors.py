from __future__ import annotations


class ServiceError(ValueError):
    """Base for errors surfaced to API callers as ``{"error": code}``."""

    status_code = 400

    def __init__(self, code: str, message: str | None = None) -> None:
        super().__init__(code)
        self.code = code
        self.message = message or code


class ValidationError(ServiceError):
    status_code = 400


class InsufficientCredits(ServiceError):
    status_code = 403

    def __init__(self, required: int, available: int | None = None) -> None:
        super().__init__('no_credits', f'{required} credits required')
        self.required = required
        self.available = available


class ProviderUnavailable(ServiceError):
    status_code = 502

    def __init__(self, message: str | None = None) -> None:
        super().__init__('provider_unavailable', message)


class TaskNotFound(ServiceError):
    status_code = 404

    def __init__(self, task_id: str) -> None:
        super().__init__('task_not_found', f'task {task_id} not found')
        self.task_id = task_id


class MalformedPayload(ServiceError):
    status_code = 400


class DiscountInvalid(ServiceError):
    status_code = 400

    def __init__(self, code: str) -> None:
        super().__init__(code)
        if code == 'discount_not_found':
            self.status_code = 404


class NotFound(ServiceError):
    status_code = 404


class TooManyRequests(ServiceError):
    status_code = 429
