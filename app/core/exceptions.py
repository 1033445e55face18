class WebhookError(Exception):
    def __init__(self, message: str, status_code: int = 500):
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class AuthenticationFailure(WebhookError):
    def __init__(self, message: str = "Invalid signature"):
        super().__init__(message, status_code=401)


class MalformedPayload(WebhookError):
    """Body can never be parsed; acknowledged with 200 so the provider stops retrying."""

    def __init__(self, message: str = "Malformed payload"):
        super().__init__(message, status_code=200)


class StoreFailure(WebhookError):
    def __init__(self, message: str = "Store write failed"):
        super().__init__(message, status_code=500)


class UserDirectoryError(WebhookError):
    def __init__(self, message: str = "User directory unavailable"):
        super().__init__(message, status_code=500)
