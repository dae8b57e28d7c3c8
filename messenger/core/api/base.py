"""
Base API class for auto-discovery of controllers.

All API controllers should inherit from BaseAPI to be automatically
registered with the NinjaExtraAPI instance.
"""


class BaseAPI:
    """
    Marker class for API controllers.

    Controllers inheriting from this class will be automatically
    discovered and registered by the API configuration, provided the
    app's ``api`` package exports them.

    Example:
        @api_controller("/chat/messages", tags=["Messages"])
        class MessageController(BaseAPI):
            @http_patch("/{message_id}")
            def edit_message(self, request, message_id: UUID, data: EditMessageSchema):
                ...
    """

    pass
