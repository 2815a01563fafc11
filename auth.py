"""
Bearer-token authentication and role guards.

Tokens are issued by an external identity provider. With ``FIREBASE_PROJECT_ID``
configured they are Firebase ID tokens (RS256, checked against Google's public
certificates); otherwise they are HS256 tokens signed with ``JWT_SECRET``.
Either way the verified ``email`` claim identifies the caller, and it is
trusted over any email a client puts in a path, query or body.
"""

import logging
import re
import time
from typing import Dict, Optional

import requests
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pymongo.database import Database

from config import Settings
from database import get_db, sanitize
from schemas import normalize_email

logger = logging.getLogger(__name__)

GOOGLE_CERTS_URL = "https://www.googleapis.com/robot/v1/metadata/x509/securetoken@system.gserviceaccount.com"
FIREBASE_ISSUER = "https://securetoken.google.com/{}"
DEFAULT_CERTS_TTL = 3600
FIREBASE_REQUIRED_CLAIMS = {"require_exp": True, "require_iat": True, "require_sub": True}

bearer_scheme = HTTPBearer(auto_error=False)


class InvalidToken(Exception):
    pass


class TokenVerifier:
    def __init__(self, settings: Settings, certs_url: str = GOOGLE_CERTS_URL):
        self.project_id = settings.firebase_project_id
        self.secret = settings.jwt_secret
        self.audience = settings.jwt_audience
        self.certs_url = certs_url
        self._certs: Optional[Dict[str, str]] = None
        self._certs_expire_at = 0.0

    @property
    def mode(self) -> str:
        return "firebase" if self.project_id else "shared-secret"

    def verify(self, token: str) -> Dict:
        """Return the verified claims of ``token`` or raise ``InvalidToken``."""
        try:
            if self.project_id:
                claims = jwt.decode(
                    token,
                    self._google_certs(),
                    algorithms=["RS256"],
                    audience=self.project_id,
                    issuer=FIREBASE_ISSUER.format(self.project_id),
                    options=FIREBASE_REQUIRED_CLAIMS,
                )
                if not claims.get("sub") or claims.get("auth_time", 0) > time.time():
                    raise InvalidToken("token has no subject or a future auth_time")
            else:
                claims = jwt.decode(
                    token,
                    self.secret,
                    algorithms=["HS256"],
                    audience=self.audience,
                    options={"verify_aud": self.audience is not None, "require_exp": True},
                )
        except JWTError as e:
            raise InvalidToken(str(e)) from e
        if not claims.get("email"):
            raise InvalidToken("token carries no email claim")
        return claims

    def _google_certs(self) -> Dict[str, str]:
        if self._certs is not None and self._certs_expire_at > time.time():
            return self._certs

        response = requests.get(self.certs_url, timeout=10)
        response.raise_for_status()
        certs = response.json()
        match = re.search(r"max-age=(\d+)", response.headers.get("Cache-Control", ""))
        ttl = int(match.group(1)) if match else DEFAULT_CERTS_TTL
        self._certs, self._certs_expire_at = certs, time.time() + ttl
        logger.info("fetched %d identity provider certificates, valid for %ss", len(certs), ttl)
        return certs


def get_verifier(request: Request) -> TokenVerifier:
    return request.app.state.verifier


def get_token_email(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    verifier: TokenVerifier = Depends(get_verifier),
) -> str:
    if credentials is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="unauthorized access")
    try:
        claims = verifier.verify(credentials.credentials)
    except InvalidToken as e:
        logger.debug("rejected token: %s", e)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="unauthorized access")
    return normalize_email(claims["email"])


def require_role(*roles: str):
    def role_guard(email: str = Depends(get_token_email), db: Database = Depends(get_db)) -> Dict:
        user = db["user"].find_one({"email": email})
        if not user or user.get("role") not in roles or user.get("status") == "suspended":
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="forbidden access")
        return sanitize(user)
    return role_guard


def same_email(a: Optional[str], b: Optional[str]) -> bool:
    return bool(a) and bool(b) and normalize_email(a) == normalize_email(b)


def ensure_same_email(token_email: str, claimed_email: Optional[str]) -> None:
    if not same_email(token_email, claimed_email):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="forbidden access")


def is_admin(db: Database, email: str) -> bool:
    return db["user"].count_documents({"email": email, "role": "admin"}) > 0
