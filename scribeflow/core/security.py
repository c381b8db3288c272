"""
Sicherheits- und Authentifizierungsmodule
"""

import hashlib
import hmac
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, List

from jose import JWTError, jwt
from fastapi import HTTPException, status, Request
from fastapi.security.utils import get_authorization_scheme_param

from scribeflow.config import settings
from scribeflow.core.logging import get_logger

logger = get_logger(__name__)


class SecurityManager:
    """Zentrale Sicherheitsverwaltung"""

    def __init__(
        self,
        secret_key: str,
        algorithm: str = "HS256",
        expire_minutes: int = 30,
        api_keys: Optional[List[str]] = None,
    ):
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.expire_minutes = expire_minutes
        self.api_keys = [key for key in (api_keys or []) if key]

    def create_access_token(self, data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
        """Erstellt einen JWT Access Token"""
        to_encode = data.copy()
        expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=self.expire_minutes))
        to_encode.update({"exp": expire})
        return jwt.encode(to_encode, self.secret_key, algorithm=self.algorithm)

    def verify_token(self, token: str) -> Optional[Dict[str, Any]]:
        """Verifiziert einen JWT Token"""
        try:
            return jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except JWTError as e:
            logger.warning(f"Token verification failed: {e}")
            return None

    def hash_api_key(self, api_key: str) -> str:
        """Erstellt einen Hash für API-Key Logging (für Audit-Zwecke)"""
        return hashlib.sha256(api_key.encode()).hexdigest()[:16]

    def generate_request_id(self) -> str:
        """Generiert eine eindeutige Request-ID"""
        return secrets.token_urlsafe(16)

    def validate_api_key(self, api_key: str) -> bool:
        """
        Validiert einen API-Key. Ohne konfigurierte Keys wird jeder
        nicht-leere Key akzeptiert (Entwicklung).
        """
        if not api_key or not api_key.strip():
            return False
        if not self.api_keys:
            return True
        return any(hmac.compare_digest(api_key, known) for known in self.api_keys)


# Global security manager instance
security_manager = SecurityManager(
    settings.api_secret_key,
    algorithm=settings.token_algorithm,
    expire_minutes=settings.access_token_expire_minutes,
    api_keys=settings.api_keys,
)


async def get_current_user(request: Request) -> Dict[str, Any]:
    """
    Dependency für authentifizierte Anfragen.
    Prüft sowohl JWT-Bearer-Token als auch X-API-Key Header.
    """

    # 1. Priorität: JWT Bearer Token aus "Authorization"-Header
    auth_header = request.headers.get("Authorization")
    if auth_header:
        scheme, credentials = get_authorization_scheme_param(auth_header)
        if scheme.lower() == "bearer":
            token_payload = security_manager.verify_token(credentials)
            if token_payload:
                logger.info(f"Authenticated via JWT for subject: {token_payload.get('sub')}")
                return token_payload

    # 2. Priorität: X-API-Key Header
    api_key = request.headers.get("X-API-Key")
    if api_key and security_manager.validate_api_key(api_key):
        key_hash = security_manager.hash_api_key(api_key)
        logger.info(f"Authenticated via API Key with hash: {key_hash}")
        return {"sub": f"api_key_{key_hash}", "auth_type": "api_key"}

    logger.warning("Authentication failed: No valid Bearer token or API key provided.")
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or missing authentication credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
