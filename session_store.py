"""Stateless cookie sessions.

The whole session lives in one HS256-signed token, sealed with Fernet before it
goes into an HttpOnly cookie, so the browser can neither read nor alter the
claims. Nothing is stored server side; a cookie that fails decryption or
verification for any reason reads back as "no session".
"""

import base64
import datetime

import jwt
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from errors import ConfigurationError, SessionInvalid

JWT_ALGORITHM = "HS256"
MIN_SECRET_LENGTH = 32
DEFAULT_COOKIE_NAME = "ticketing_session"
DEFAULT_LIFETIME_SECONDS = 7 * 24 * 60 * 60
COOKIE_KEY_INFO = b"ticketing-session-cookie"


def derive_cookie_key(secret_key):
    """Fernet key for the cookie, kept separate from the JWT signing key."""
    hkdf = HKDF(algorithm=hashes.SHA256(), length=32, salt=None, info=COOKIE_KEY_INFO)
    return base64.urlsafe_b64encode(hkdf.derive(secret_key.encode("utf-8")))


class SessionData:
    def __init__(self, user_id, role, name, is_logged_in=True, username="", email=""):
        self.user_id = user_id
        self.role = role
        self.name = name
        self.is_logged_in = is_logged_in
        self.username = username
        self.email = email

    def __eq__(self, other):
        if not isinstance(other, SessionData):
            return NotImplemented
        return self.to_public() == other.to_public()

    def __repr__(self):
        return f"<SessionData user_id={self.user_id!r} role={self.role!r}>"

    def to_public(self):
        return {
            "userId": self.user_id,
            "role": self.role,
            "name": self.name,
            "isLoggedIn": self.is_logged_in,
            "username": self.username,
            "email": self.email,
        }


class CookieSessionStore:
    def __init__(
        self,
        secret_key,
        cookie_name=DEFAULT_COOKIE_NAME,
        lifetime_seconds=DEFAULT_LIFETIME_SECONDS,
        secure=True,
        path="/",
        samesite="Lax",
    ):
        if not secret_key or len(secret_key) < MIN_SECRET_LENGTH:
            raise ConfigurationError(
                f"Session secret must be at least {MIN_SECRET_LENGTH} characters long"
            )
        self._secret_key = secret_key
        self._fernet = Fernet(derive_cookie_key(secret_key))
        self.cookie_name = cookie_name
        self.lifetime_seconds = int(lifetime_seconds)
        self.secure = secure
        self.path = path
        self.samesite = samesite

    def encode(self, data, now=None):
        now = now or datetime.datetime.now(datetime.timezone.utc)
        claims = {
            "sub": str(data.user_id),
            "role": data.role,
            "name": data.name,
            "logged_in": bool(data.is_logged_in),
            "username": data.username,
            "email": data.email,
            "iat": now,
            "exp": now + datetime.timedelta(seconds=self.lifetime_seconds),
        }
        return self._seal(jwt.encode(claims, self._secret_key, algorithm=JWT_ALGORITHM))

    def _seal(self, token):
        return self._fernet.encrypt(token.encode("utf-8")).decode("ascii")

    def _unseal(self, value):
        try:
            return self._fernet.decrypt(value.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError) as exc:
            raise SessionInvalid("Session cookie could not be decrypted") from exc

    def _decode_claims(self, token):
        if not token:
            raise SessionInvalid("No session cookie")
        try:
            claims = jwt.decode(
                self._unseal(token),
                self._secret_key,
                algorithms=[JWT_ALGORITHM],
                options={"require": ["sub", "exp", "iat"]},
            )
        except jwt.PyJWTError as exc:
            raise SessionInvalid(str(exc)) from exc
        role = claims.get("role")
        if not isinstance(role, str) or not isinstance(claims.get("logged_in"), bool):
            raise SessionInvalid("Malformed session payload")
        return claims

    def decode(self, token):
        """Return the SessionData in ``token`` or None if it cannot be trusted."""
        try:
            claims = self._decode_claims(token)
        except SessionInvalid:
            return None
        return SessionData(
            user_id=str(claims["sub"]),
            role=claims["role"],
            name=str(claims.get("name") or ""),
            is_logged_in=claims["logged_in"],
            username=str(claims.get("username") or ""),
            email=str(claims.get("email") or ""),
        )

    def create_session(self, response, data):
        response.set_cookie(
            self.cookie_name,
            self.encode(data),
            max_age=self.lifetime_seconds,
            path=self.path,
            secure=self.secure,
            httponly=True,
            samesite=self.samesite,
        )
        return response

    def read_session(self, request):
        token = request.cookies.get(self.cookie_name)
        if not token:
            return None
        data = self.decode(token)
        if data is None or not data.is_logged_in:
            return None
        return data

    def destroy_session(self, response):
        response.delete_cookie(
            self.cookie_name,
            path=self.path,
            secure=self.secure,
            httponly=True,
            samesite=self.samesite,
        )
        return response
