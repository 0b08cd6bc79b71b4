"""
FastAPI dependencies for the Gatewise service
"""
from typing import Generator, Optional
from fastapi import Header, HTTPException, status
from sqlalchemy.orm import Session
from gatewise.db.database import SessionLocal
from gatewise.config import settings
from gatewise.exceptions import (
    GatewiseError, InvalidTransitionError, NotFoundError,
    StaleStateError, ThresholdValidationError
)

ERROR_STATUS = {
    NotFoundError: status.HTTP_404_NOT_FOUND,
    StaleStateError: status.HTTP_409_CONFLICT,
    InvalidTransitionError: status.HTTP_409_CONFLICT,
    ThresholdValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
}


def get_db() -> Generator[Session, None, None]:
    """Get database session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


async def verify_api_key(x_api_key: Optional[str] = Header(None)) -> str:
    """Verify API key for operator endpoints"""
    if not x_api_key or x_api_key != settings.API_KEY:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key"
        )
    return x_api_key


def http_error(error: GatewiseError) -> HTTPException:
    """Translate a service error into an HTTP error"""
    for error_type, code in ERROR_STATUS.items():
        if isinstance(error, error_type):
            return HTTPException(status_code=code, detail=str(error))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))
