class ChatError(Exception):
    """Base class for errors that map to an HTTP status."""

    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__


class ValidationError(ChatError):
    status_code = 400


class AuthError(ChatError):
    status_code = 401


class NotFoundError(ChatError):
    status_code = 404


class PersistenceError(ChatError):
    status_code = 503
