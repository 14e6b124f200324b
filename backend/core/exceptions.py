from typing import Optional

from fastapi import HTTPException, status


def credentials_exception() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid credentials or expired token",
        headers={"WWW-Authenticate": "Bearer"},
    )


def forbidden_exception(detail: str = "Access denied") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail=detail,
    )


def not_found_exception(resource: str = "Resource") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"{resource} not found",
    )


def conflict_exception(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail=detail,
    )


def bad_request_exception(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail=detail,
    )


# ── Erreurs métier ────────────────────────────────────────────────────────────
# Levées par les services, converties en JSON par le handler de main.py.

class CompostError(Exception):
    status_code: int = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"detail": self.message, "error": type(self).__name__}


class ValidationError(CompostError):
    """Entrée refusée avant tout appel externe (téléphone, montant...)."""
    status_code = status.HTTP_400_BAD_REQUEST


class InvalidTransition(CompostError):
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, entity: str, from_status: Optional[str], to_status: str):
        super().__init__(f"Invalid {entity} transition: {from_status} → {to_status}")
        self.entity = entity
        self.from_status = from_status
        self.to_status = to_status

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update({"from": self.from_status, "to": self.to_status})
        return data


class GatewayInitiationError(CompostError):
    """La passerelle a refusé l'initiation ; le Payment est déjà marqué failed."""
    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(self, message: str, payment_id: Optional[str] = None):
        super().__init__(message)
        self.payment_id = payment_id

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["payment_id"] = self.payment_id
        return data


class GatewayConfigurationError(CompostError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    def __init__(self, missing: list[str]):
        super().__init__(f"M-Pesa is not configured: missing {', '.join(missing)}")
        self.missing = missing


class DuplicateSubmissionError(CompostError):
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, payment_id: str):
        super().__init__(f"Payment {payment_id} has already been submitted to the gateway")
        self.payment_id = payment_id


class PersistenceError(CompostError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str = "The data store rejected the request"):
        super().__init__(message)
