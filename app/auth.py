import logging
from fastapi.security import APIKeyHeader
from fastapi import Depends, HTTPException, Security, status
from sqlalchemy.orm import Session

from app import models
from app.config import AUTH_KEY
from app.database import get_db


logger = logging.getLogger(__name__)

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)
admin_email_header = APIKeyHeader(name="X-Admin-Email", auto_error=False)


async def verify_api_key(api_key: str = Security(api_key_header)):
    """
    Dependency that trusts a caller presenting the shared API key.

    The key stands in for the identity collaborator: once it matches,
    the core trusts the identities carried by the request.

    Raises:
        HTTPException: 401 if key is missing, 403 if key is invalid
    """
    if api_key is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API Key is missing. Include it in the 'X-API-Key' header.",
        )

    if api_key != AUTH_KEY:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API Key. Access denied.",
        )

    return True


async def require_admin(
    _: bool = Depends(verify_api_key),
    admin_email: str = Security(admin_email_header),
    db: Session = Depends(get_db),
) -> models.Admin:
    """
    Dependency for admin-only operations such as issuing and returning books.

    Internal Working:
    1. verify_api_key runs first, so an unauthenticated call never
       reaches the admins table
    2. X-Admin-Email must name an admin that is not soft-deleted
    3. The admin row is handed to the endpoint for audit logging

    Raises:
        HTTPException: 401 if the admin header is missing, 403 if the
        e-mail does not belong to an admin
    """
    if admin_email is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Admin e-mail is missing. Include it in the 'X-Admin-Email' header.",
        )

    admin = (
        db.query(models.Admin)
        .filter(models.Admin.email == admin_email, models.Admin.deleted_at.is_(None))
        .first()
    )
    if admin is None:
        logger.info("Rejected admin request from %s", admin_email)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin not found!",
        )

    return admin
