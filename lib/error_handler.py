from typing import Optional


class AppError(Exception):
    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None, user_message: Optional[str] = None, **extra):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.user_message = user_message or message
        self.extra = extra
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {'error': self.user_message, **self.extra}


class ValidationError(AppError):
    status_code = 400


class AuthError(AppError):
    status_code = 401


class PlanRestrictionError(AppError):
    status_code = 403


class NotFoundError(AppError):
    status_code = 404


class InvalidTransitionError(AppError):
    status_code = 409
