"""Request rejections raised synchronously by the lifecycle controller."""

from http import HTTPStatus


class AdmissionError(Exception):
    """A client request was refused; nothing was persisted or scheduled."""

    def __init__(self, reason: str, status_code: int = HTTPStatus.BAD_REQUEST) -> None:
        super().__init__(reason)
        self.reason = reason
        self.status_code = status_code


class ServerNotFoundError(AdmissionError):
    def __init__(self, server_id: str) -> None:
        super().__init__(f"Server {server_id} not found", HTTPStatus.NOT_FOUND)


class ServerStateError(AdmissionError):
    """The server's current status does not allow the requested action."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason, HTTPStatus.CONFLICT)
