import logging
from typing import Any, Dict, List, Optional, Type

from flask import request
from pydantic import BaseModel, ValidationError as PydanticValidationError

from api.container import get_services
from lib.error_handler import NotFoundError, ValidationError
from lib.models import Household, User, to_local, utcnow

logger = logging.getLogger(__name__)


def json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("JSON object expected")
    return data


def validation_details(error: PydanticValidationError) -> List[Dict[str, str]]:
    return [
        {'field': '.'.join(str(p) for p in e['loc']), 'message': e['msg']}
        for e in error.errors()
    ]


def parse(model: Type[BaseModel], data: Dict[str, Any]):
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid {model.__name__}", user_message='Validation failed',
                              details=validation_details(e))


def dump(model: Optional[BaseModel]) -> Optional[Dict[str, Any]]:
    return model.model_dump(mode='json') if model is not None else None


def today():
    return to_local(utcnow(), get_services().settings.timezone).date()


def visible_households(user: User) -> List[Household]:
    store = get_services().store
    return store.list_households() if user.is_admin else store.list_households(user_id=user.id)


def owned_household(household_id: str, user: User) -> Household:
    household = get_services().store.get_household(household_id)
    if household is None or (household.user_id != user.id and not user.is_admin):
        raise NotFoundError(f"Household {household_id} not found for user {user.id}",
                            user_message='Household not found')
    return household
