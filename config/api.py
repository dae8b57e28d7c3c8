"""
Main API configuration for Django Ninja Extra.
All API controllers are automatically registered here.
"""

import importlib
import inspect
import logging

from django.db import DatabaseError
from django.http import HttpRequest
from ninja.parser import Parser
from ninja_extra import NinjaExtraAPI

from messenger.core.api.base import BaseAPI
from messenger.core.exceptions import APIException
from messenger.core.exceptions import InternalError

logger = logging.getLogger(__name__)


class MessengerParser(Parser):
    """
    JSON body parser.

    Bodies sent without a JSON content type (a bare POST from a form-style
    client) are read as form data, so endpoints with an optional body still
    accept them.
    """

    def parse_body(self, request: HttpRequest) -> dict:
        if request.content_type != "application/json":
            return request.POST.dict()
        return super().parse_body(request)


api = NinjaExtraAPI(
    parser=MessengerParser(),
    title="Messenger API",
    version="1.0.0",
    description="Conversations, messages, receipts and reactions",
    docs_url="/docs",
    openapi_url="/openapi.json",
)


@api.exception_handler(APIException)
def handle_api_exception(request: HttpRequest, exc: APIException):
    """Render domain errors raised by the service layer."""
    status_code, body = exc.to_response()
    return api.create_response(request, body.model_dump(), status=status_code)


@api.exception_handler(DatabaseError)
def handle_database_error(request: HttpRequest, exc: DatabaseError):
    """Storage failures surface as a structured 503 instead of a bare 500."""
    logger.exception("Storage error while serving %s %s", request.method, request.path)
    status_code, body = InternalError().to_response()
    return api.create_response(request, body.model_dump(), status=status_code)


def register_controllers_from_module(api_instance: NinjaExtraAPI, module_path: str) -> None:
    """
    Dynamically import and register API controllers from a module.

    Controllers must inherit from BaseAPI to be registered.
    """
    try:
        module = importlib.import_module(module_path)
        for attr_name in dir(module):
            attr = getattr(module, attr_name)
            if (
                inspect.isclass(attr)
                and issubclass(attr, BaseAPI)
                and attr is not BaseAPI
            ):
                logger.debug("Registering controller: %s.%s", module_path, attr_name)
                api_instance.register_controllers(attr)
    except ModuleNotFoundError:
        logger.debug("Module %s not found, skipping", module_path)
    except Exception:
        logger.exception("Error registering controllers from %s", module_path)


# Register controllers from each local app
LOCAL_APPS = [
    "messenger.chat",
]

for app in LOCAL_APPS:
    register_controllers_from_module(api, f"{app}.api")
