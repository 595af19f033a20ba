from __future__ import annotations


class ChatPipelineError(Exception):
    """Base for failures that end a chat request before streaming starts.

    ``tag`` names the failure for logs; ``status_code`` is what the HTTP layer returns.
    """

    tag: str = "ChatPipelineError"
    status_code: int = 500
    public_message: str = "Internal Server Error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.public_message)
        self.message: str = message or self.public_message


class Unauthorized(ChatPipelineError):
    tag = "Unauthorized"
    status_code = 401
    public_message = "Unauthorized"


class MissingUserId(ChatPipelineError):
    tag = "MissingUserId"
    status_code = 400
    public_message = "User ID not found"


class UserNotFound(ChatPipelineError):
    tag = "UserNotFound"
    status_code = 404
    public_message = "User not found"


class TooManyRequests(ChatPipelineError):
    tag = "TooManyRequests"
    status_code = 429
    public_message = "Too Many Requests"

    def __init__(self, message: str | None = None, *, retry_after_seconds: int | None = None):
        super().__init__(message)
        self.retry_after_seconds: int | None = retry_after_seconds


class ParseRequestError(ChatPipelineError):
    tag = "ParseRequest"
    status_code = 400
    public_message = "Invalid request body"


class SaveChatError(ChatPipelineError):
    tag = "SaveChat"
    status_code = 500
    public_message = "Failed to save chat"


class ChatOwnershipError(SaveChatError):
    tag = "SaveChat.Ownership"


class ChatServiceError(ChatPipelineError):
    tag = "ChatService"
    status_code = 500
    public_message = "Chat service failed"


class StoreError(ChatPipelineError):
    tag = "Store"
    status_code = 500
    public_message = "Cache store unavailable"


class SearchError(RuntimeError):
    pass
