"""Session handling and login for the Monarch Money API."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import httpx
import oathtool

from .exceptions import AuthError, ValidationError, classify_network_error

logger = logging.getLogger(__name__)

LOGIN_ENDPOINT = "https://api.monarchmoney.com/auth/login/"
DEFAULT_SESSION_FILE = Path.home() / ".mm" / "session.json"
USER_AGENT = "monarch-mcp/0.1.0"


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_timestamp(value: str) -> Optional[datetime]:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class Session:
    """Bearer token plus the metadata Monarch returned at login."""

    token: str
    device_uuid: str
    created_at: str = field(default_factory=_utc_now_iso)
    token_expiration: Optional[str] = None
    id: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "token": self.token,
            "tokenExpiration": self.token_expiration,
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "createdAt": self.created_at,
            "deviceUuid": self.device_uuid,
        }
        return {key: value for key, value in data.items() if value is not None}

    @classmethod
    def from_dict(cls, data: Dict[str, Any], default_device_uuid: str) -> "Session":
        return cls(
            token=data["token"],
            device_uuid=data.get("deviceUuid") or default_device_uuid,
            created_at=data.get("createdAt") or _utc_now_iso(),
            token_expiration=data.get("tokenExpiration"),
            id=data.get("id"),
            email=data.get("email"),
            name=data.get("name"),
        )


class AuthService:
    """Owns the current session and its on-disk copy."""

    def __init__(
        self,
        session_path: Optional[os.PathLike] = None,
        device_uuid: Optional[str] = None,
        login_url: str = LOGIN_ENDPOINT,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize the auth service.

        Args:
            session_path: Where the session is persisted (default: ~/.mm/session.json)
            device_uuid: Device identity sent with every request (default: random)
            login_url: Monarch login endpoint
            http_client: Optional shared httpx client, mainly for tests
        """
        self.session_path = Path(session_path) if session_path else DEFAULT_SESSION_FILE
        self.device_uuid = device_uuid or str(uuid.uuid4())
        self.login_url = login_url
        self._http_client = http_client
        self._session: Optional[Session] = None

    def get_session(self) -> Optional[Session]:
        """Return the session held in memory, if any."""
        return self._session

    def is_expired(self, session: Optional[Session] = None) -> bool:
        """Check whether a session's token expiration lies in the past.

        A session without an expiration (or with one we cannot parse) is
        treated as valid; the API will reject it if it is not.
        """
        session = session or self._session
        if session is None or not session.token_expiration:
            return False
        expires = _parse_timestamp(session.token_expiration)
        if expires is None:
            return False
        return datetime.now(timezone.utc) > expires

    async def load_session(self, session_path: Optional[os.PathLike] = None) -> Optional[Session]:
        """Load a session from disk unless one is already held.

        A missing file, an unreadable file, invalid JSON and a record without
        a token all mean "no session". Broken or expired records are removed.

        Returns:
            The session, or None if there is no usable session on disk
        """
        if self._session is not None:
            return self._session

        path = Path(session_path) if session_path else self.session_path
        try:
            raw = await asyncio.to_thread(path.read_text, encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Could not read session file %s: %s", path, e)
            return None

        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning("Session file %s is not valid JSON, discarding it", path)
            self._discard(path)
            return None

        if not isinstance(data, dict) or not data.get("token"):
            logger.warning("Session file %s has no token, discarding it", path)
            self._discard(path)
            return None

        session = Session.from_dict(data, self.device_uuid)
        if self.is_expired(session):
            logger.info("Stored session expired at %s", session.token_expiration)
            self._discard(path)
            return None

        self._session = session
        return session

    def invalidate(self) -> None:
        """Forget the current session and remove the session file."""
        self._session = None
        self._discard(self.session_path)

    def _discard(self, path: Path) -> None:
        self._session = None
        try:
            path.unlink()
        except OSError as e:
            logger.debug("Could not remove session file %s: %s", path, e)

    async def save_session(self, session: Session, session_path: Optional[os.PathLike] = None) -> None:
        """Persist a session as JSON readable only by the current user."""
        path = Path(session_path) if session_path else self.session_path
        await asyncio.to_thread(self._write_session_file, path, session)

    @staticmethod
    def _write_session_file(path: Path, session: Session) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(session.to_dict(), fh, indent=2)
        # O_CREAT mode is ignored for files that already exist
        os.chmod(path, 0o600)

    async def login_with_token(
        self,
        token: str,
        save_session: bool = True,
        session_path: Optional[os.PathLike] = None,
        device_uuid: Optional[str] = None,
    ) -> Session:
        """Adopt an existing API token as the current session.

        Raises:
            ValidationError: If token is empty
        """
        if not token:
            raise ValidationError("Token is required")

        session = Session(token=token, device_uuid=device_uuid or self.device_uuid)
        if save_session:
            await self.save_session(session, session_path)
        self._session = session
        return session

    async def login(
        self,
        email: str,
        password: str,
        totp_secret: Optional[str] = None,
        supports_mfa: bool = True,
        trusted_device: bool = False,
        save_session: bool = True,
        session_path: Optional[os.PathLike] = None,
        device_uuid: Optional[str] = None,
    ) -> Session:
        """Log in with email and password, optionally with a TOTP secret.

        Args:
            email: Monarch account email
            password: Monarch account password
            totp_secret: Base32 TOTP secret used to generate the MFA code
            supports_mfa: Tell the API the client can handle MFA
            trusted_device: Ask the API to remember this device
            save_session: Persist the resulting session to disk
            session_path: Override the session file location
            device_uuid: Override the device identity

        Returns:
            The new session

        Raises:
            ValidationError: If email or password is missing
            AuthError: If MFA is required/invalid or the login is rejected
            NetworkError: If the login endpoint cannot be reached
        """
        if not email or not password:
            raise ValidationError("Email and password are required")

        body: Dict[str, Any] = {
            "username": email,
            "password": password,
            "supports_mfa": supports_mfa,
            "trusted_device": trusted_device,
        }
        if totp_secret:
            body["totp"] = oathtool.generate_otp(totp_secret)

        headers = {
            "Accept": "application/json",
            "Client-Platform": "web",
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
        }

        try:
            if self._http_client is not None:
                response = await self._http_client.post(self.login_url, json=body, headers=headers)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(self.login_url, json=body, headers=headers)
        except httpx.HTTPError as e:
            raise classify_network_error(e) from e

        raw = response.text
        if response.status_code == 403:
            raise AuthError("MFA required or invalid TOTP code", status_code=403)
        if response.status_code != 200:
            raise AuthError(
                f"Login failed: {response.status_code} {response.reason_phrase} - {raw}",
                status_code=response.status_code,
            )

        try:
            result = json.loads(raw)
        except ValueError as e:
            raise AuthError(f"Login response was not valid JSON: {e}", cause=e) from e

        if not isinstance(result, dict) or not result.get("token"):
            raise AuthError("Login response missing token")

        session = Session(
            token=result["token"],
            device_uuid=device_uuid or self.device_uuid,
            token_expiration=result.get("tokenExpiration"),
            id=result.get("id"),
            email=result.get("email"),
            name=result.get("name"),
        )
        logger.info("Logged in to Monarch as %s", session.email or email)

        if save_session:
            await self.save_session(session, session_path)
        self._session = session
        return session


