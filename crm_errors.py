"""Error taxonomy shared by the store, the services and the request layer."""

from typing import Any, Dict, Iterable


class CRMError(Exception):
    """Base error carrying an HTTP-like status code."""

    status = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status, "error": self.message}


class ValidationError(CRMError):
    status = 400


class Unauthorized(CRMError):
    status = 401


class Forbidden(CRMError):
    status = 403


class NotFound(CRMError):
    status = 404


class Conflict(CRMError):
    status = 409


def require_fields(data: Dict[str, Any], fields: Iterable[str]) -> None:
    """Raise ValidationError naming every missing or blank field."""
    missing = [f for f in fields if data.get(f) is None or str(data.get(f)).strip() == ""]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")
