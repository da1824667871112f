from typing import List, Optional


class WriteoffBotError(Exception):
    """Base class for errors raised by the write-off bot"""


class AuthError(WriteoffBotError):
    """iiko rejected the credentials or the auth endpoint is unreachable"""


class SessionExpired(WriteoffBotError):
    """iiko kept answering 401/403 after re-authentication"""


class TransportError(WriteoffBotError):
    """Network failure, timeout or unexpected HTTP status"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class CatalogLoadError(WriteoffBotError):
    pass


class SubmissionError(WriteoffBotError):
    """iiko answered with a structured rejection of the document"""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__(", ".join(self.errors) or "Неизвестная ошибка")


class AuditStoreError(WriteoffBotError):
    pass
