"""
Bearer-token verification for the borrowed-books listing.

The verifier is an injected collaborator: production uses firebase-admin,
tests hand ``create_app`` any object with an async ``verify(token)``.
"""

import base64
import json
from dataclasses import dataclass
from typing import Optional, Protocol

import firebase_admin
import structlog
from fastapi import Request
from firebase_admin import auth as firebase_auth
from firebase_admin import credentials
from firebase_admin.exceptions import FirebaseError
from starlette.concurrency import run_in_threadpool

from errors import Forbidden, IdentityServiceFailure, Unauthorized, ValidationFailed

log = structlog.get_logger()

BEARER_PREFIX = "Bearer "


@dataclass(frozen=True)
class Identity:
    uid: str
    email: Optional[str]


class IdentityVerifier(Protocol):
    async def verify(self, token: str) -> Identity: ...

    def close(self) -> None: ...


class FirebaseIdentityVerifier:
    """Verifies Firebase ID tokens with a service account.

    ``service_key`` is the service-account JSON, base64 encoded, as it is
    stored in ``FB_SERVICE_KEY``.
    """

    def __init__(self, service_key: str, app_name: str = "readbooks"):
        try:
            info = json.loads(base64.b64decode(service_key).decode("utf-8"))
        except ValueError as e:
            raise ValueError("FB_SERVICE_KEY is not base64-encoded JSON") from e
        self._app = firebase_admin.initialize_app(credentials.Certificate(info), name=app_name)

    async def verify(self, token: str) -> Identity:
        # verify_id_token may fetch signing certificates over the network
        try:
            claims = await run_in_threadpool(firebase_auth.verify_id_token, token, app=self._app)
        except firebase_auth.CertificateFetchError as e:
            log.error("identity_cert_fetch_failed", error=str(e))
            raise IdentityServiceFailure() from e
        except (ValueError, FirebaseError) as e:
            log.info("identity_token_rejected", error=type(e).__name__)
            raise Unauthorized() from e
        return Identity(uid=claims.get("uid", ""), email=claims.get("email"))

    def close(self) -> None:
        firebase_admin.delete_app(self._app)


def bearer_token(authorization: Optional[str]) -> str:
    if not authorization or not authorization.startswith(BEARER_PREFIX):
        raise Unauthorized()
    token = authorization[len(BEARER_PREFIX):].strip()
    if not token:
        raise Unauthorized()
    return token


async def verified_identity(request: Request) -> Identity:
    """FastAPI dependency: 401 unless the request carries a valid bearer token."""
    token = bearer_token(request.headers.get("authorization"))
    return await request.app.state.verifier.verify(token)


def authorize_email(identity: Identity, email: Optional[str]) -> str:
    """The caller may only ask about their own loans."""
    if not email:
        raise ValidationFailed("Email required")
    if identity.email is None or email != identity.email:
        log.info("identity_mismatch", requested=email, uid=identity.uid)
        raise Forbidden()
    return email
