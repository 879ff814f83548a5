from functools import wraps
from secrets import compare_digest
from typing import Callable, Optional

from flask import Request, current_app, g, request

from .errors import Unauthorized
from .logs import security_logger

EXTENSION_KEY = "mydrive.gate"


class AccessGate:
    """Compares a caller-supplied token against the server-held secret."""

    def __init__(self, secret_token: str) -> None:
        if not secret_token:
            raise ValueError("Secret token cannot be empty")
        self._secret = secret_token

    @staticmethod
    def extract_token(req: Request) -> Optional[str]:
        header_token = req.headers.get("X-Token")
        if header_token:
            return header_token.strip()

        authorization = req.headers.get("Authorization", "").strip()
        if authorization.lower().startswith("bearer "):
            return authorization[7:].strip()

        query_token = req.args.get("token")
        if query_token:
            return query_token.strip()
        return None

    def is_authorized(self, provided: Optional[str]) -> bool:
        if not provided:
            return False
        return compare_digest(provided.encode("utf-8"), self._secret.encode("utf-8"))

    def check(self, req: Request) -> None:
        if not self.is_authorized(self.extract_token(req)):
            raise Unauthorized()


def require_token(view: Callable):
    """Reject the request with 401 before the view runs unless the token matches."""

    @wraps(view)
    def wrapped(*args, **kwargs):
        gate: AccessGate = current_app.extensions[EXTENSION_KEY]
        try:
            gate.check(request)
        except Unauthorized:
            security_logger.warning(
                "api_auth_failed endpoint=%s method=%s remote=%s",
                request.endpoint,
                request.method,
                request.remote_addr,
            )
            raise
        g.token_authenticated = True
        return view(*args, **kwargs)

    return wrapped
