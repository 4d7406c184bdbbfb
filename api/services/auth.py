import functools
import inspect
import logging
from typing import Optional

from flask import g, request

from api.services.storage import BaseStore
from lib.error_handler import AuthError, PlanRestrictionError
from lib.models import PlanType, User, utcnow
from lib.plans import PLANS, plan_for

logger = logging.getLogger(__name__)


class AuthService:
    """Resolves `Authorization: Bearer <token>` to a stored user"""

    def __init__(self, store: BaseStore, supabase_client=None):
        self.store = store
        self.supabase = supabase_client
        if supabase_client is None:
            logger.warning("Supabase auth not configured - bearer token is treated as the user id")

    def authenticate(self, header: Optional[str]) -> User:
        if not header or not header.startswith('Bearer '):
            raise AuthError("Missing or invalid Authorization header", user_message='Unauthorized')
        token = header[len('Bearer '):].strip()
        if not token:
            raise AuthError("Empty bearer token", user_message='Unauthorized')

        if self.supabase is None:
            user = self.store.get_user(token)
            if user is None:
                raise AuthError(f"Unknown development user: {token}", user_message='Unauthorized')
            return user

        try:
            response = self.supabase.auth.get_user(token)
        except Exception as e:
            logger.error(f"Supabase token verification failed: {str(e)}")
            raise AuthError("Invalid token", user_message='Unauthorized')
        auth_user = getattr(response, 'user', None)
        if auth_user is None:
            raise AuthError("Invalid token", user_message='Unauthorized')

        user = self.store.get_user(auth_user.id)
        if user is None:
            user = User(id=auth_user.id, email=auth_user.email or f"{auth_user.id}@unknown")
        user.last_login_at = utcnow()
        return self.store.save_user(user)


def current_user() -> User:
    return g.user


def _authenticate() -> None:
    from api.container import get_services
    g.user = get_services().auth.authenticate(request.headers.get('Authorization'))


def login_required(view):
    if inspect.iscoroutinefunction(view):
        @functools.wraps(view)
        async def async_wrapper(*args, **kwargs):
            _authenticate()
            return await view(*args, **kwargs)
        return async_wrapper

    @functools.wraps(view)
    def wrapper(*args, **kwargs):
        _authenticate()
        return view(*args, **kwargs)
    return wrapper


def user_plan(user: User):
    from api.container import get_services
    return plan_for(get_services().store.get_subscription(user.id))


def require_feature(feature: str):
    """Admins pass; everyone else needs a plan that includes `feature`"""
    def check():
        user = current_user()
        plan = user_plan(user)
        if not user.is_admin and (plan is None or not plan.allows(feature)):
            raise PlanRestrictionError(
                f"Feature {feature} not available for user {user.id}",
                user_message='This feature requires the Business plan',
                feature=feature,
                current_plan=plan.type.value if plan else None,
                plan_required=PLANS[PlanType.BUSINESS].type.value,
            )

    def decorator(view):
        if inspect.iscoroutinefunction(view):
            @functools.wraps(view)
            async def async_wrapper(*args, **kwargs):
                check()
                return await view(*args, **kwargs)
            return async_wrapper

        @functools.wraps(view)
        def wrapper(*args, **kwargs):
            check()
            return view(*args, **kwargs)
        return wrapper
    return decorator
