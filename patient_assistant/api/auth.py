"""Bearer-token authentication for patient endpoints.

Tokens are HS256 JWTs issued by the records backend.  The ``sub`` claim is
the patient id and ``role`` must be ``patient``; anything else is rejected
with 401 before the chat pipeline runs.
"""

from __future__ import annotations

import logging

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from patient_assistant.config import JWT_ALGORITHM, JWT_SECRET
from patient_assistant.errors import AuthError

logger = logging.getLogger(__name__)

PATIENT_ROLE = "patient"

bearer_scheme = HTTPBearer(auto_error=False)


def decode_patient_token(
    token: str,
    *,
    secret: str = JWT_SECRET,
    algorithm: str = JWT_ALGORITHM,
) -> str:
    """Validate *token* and return the patient id it was issued for."""
    try:
        claims = jwt.decode(token, secret, algorithms=[algorithm], options={"require": ["sub"]})
    except jwt.ExpiredSignatureError as exc:
        raise AuthError("Token has expired") from exc
    except jwt.PyJWTError as exc:
        raise AuthError("Invalid token") from exc

    if claims.get("role") != PATIENT_ROLE:
        raise AuthError("Patient access required")
    patient_id = claims.get("sub")
    if not isinstance(patient_id, str) or not patient_id:
        raise AuthError("Token does not identify a patient")
    return patient_id


def current_patient(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> str:
    """FastAPI dependency yielding the authenticated patient's id."""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        return decode_patient_token(credentials.credentials)
    except AuthError as exc:
        logger.info("Rejected bearer token: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc
