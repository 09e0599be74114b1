# src/validation_bridge/sessions.py

import logging
import secrets
from typing import Iterable, Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from jose import JWTError, jwt
from pydantic import ValidationError as PydanticValidationError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response as StarletteResponse

from .config import Settings
from .errors import SessionPersistenceError
from .session_data import SessionData
from .session_store import SessionStore

log = logging.getLogger(__name__)

SESSION_COOKIE_NAME = "sf.sid"
COOKIE_SIGNING_ALGORITHM = "HS256"


def new_session_id() -> str:
    return secrets.token_urlsafe(32)


class SessionManager:
    """Loads, saves and destroys the server-side session of a request.

    The browser only holds the session id, signed with SESSION_SECRET_KEY so
    a forged or tampered cookie never reaches the store. Request handlers
    work on ``request.state.session`` and call ``save()`` explicitly when a
    write has to be durable before they respond.
    """

    def __init__(self, settings: Settings):
        self.settings = settings

    @staticmethod
    def store(request: Request) -> SessionStore:
        return request.app.state.session_store

    # --- Cookie signing ---

    def sign(self, session_id: str) -> str:
        return jwt.encode(
            {"sid": session_id},
            self.settings.SESSION_SECRET_KEY,
            algorithm=COOKIE_SIGNING_ALGORITHM,
        )

    def unsign(self, token: str) -> Optional[str]:
        try:
            claims = jwt.decode(
                token,
                self.settings.SESSION_SECRET_KEY,
                algorithms=[COOKIE_SIGNING_ALGORITHM],
            )
        except JWTError:
            log.info("Ignoring session cookie with an invalid signature")
            return None
        session_id = claims.get("sid")
        return session_id if isinstance(session_id, str) and session_id else None

    # --- Lifecycle ---

    async def load(self, request: Request) -> SessionData:
        request.state.session_id = None
        request.state.session = SessionData()
        request.state.session_saved = False
        request.state.session_destroyed = False

        token = request.cookies.get(SESSION_COOKIE_NAME)
        session_id = self.unsign(token) if token else None
        if not session_id:
            return request.state.session

        data = await self.store(request).load(session_id)
        if data is None:
            # Expired or destroyed; the stale cookie is replaced or dropped on response
            request.state.session_destroyed = True
            return request.state.session

        try:
            session = SessionData.model_validate(data)
        except PydanticValidationError as e:
            log.warning("Discarding malformed session record: %s", e)
            request.state.session_destroyed = True
            return request.state.session

        request.state.session_id = session_id
        request.state.session = session
        if session.id_rotation_pending:
            # Login finished after its own response was lost; this response carries the new id
            await self.rotate(request)
        return session

    async def save(self, request: Request, regenerate: bool = False) -> str:
        """Persist ``request.state.session``; raises SessionPersistenceError.

        ``regenerate`` moves the session to a fresh id and drops the old
        record, so an id seen before authentication is useless afterwards.
        """
        session: SessionData = request.state.session
        old_id: Optional[str] = request.state.session_id
        session_id = new_session_id() if (old_id is None or regenerate) else old_id

        await self.store(request).save(session_id, session.to_store(), self.settings.SESSION_MAX_AGE)

        if old_id and old_id != session_id:
            try:
                await self.store(request).delete(old_id)
            except SessionPersistenceError:
                log.warning("Could not delete previous session record after id rotation")

        request.state.session_id = session_id
        request.state.session_saved = True
        return session_id

    async def rotate(self, request: Request) -> None:
        """Move a session flagged ``id_rotation_pending`` to a fresh id.

        On a store failure the flagged record stays under the current id and
        the next request tries again.
        """
        session: SessionData = request.state.session
        session.id_rotation_pending = False
        try:
            await self.save(request, regenerate=True)
        except SessionPersistenceError:
            session.id_rotation_pending = True
            log.warning("Could not rotate session id; keeping the current one for now")

    async def destroy(self, request: Request) -> None:
        session_id = request.state.session_id
        request.state.session = SessionData()
        request.state.session_id = None
        request.state.session_destroyed = True
        if session_id:
            await self.store(request).delete(session_id)

    async def discard(self, request: Request) -> None:
        """destroy() for error paths: a store failure is logged, not raised."""
        try:
            await self.destroy(request)
        except SessionPersistenceError:
            log.error("Could not delete session record while resetting to anonymous")

    async def touch(self, request: Request) -> None:
        session_id = request.state.session_id
        if not session_id or request.state.session_saved:
            return
        try:
            await self.store(request).touch(session_id, self.settings.SESSION_MAX_AGE)
        except SessionPersistenceError:
            log.warning("Could not extend session expiry")

    def apply_cookie(self, request: Request, response: StarletteResponse) -> None:
        session_id = request.state.session_id
        if session_id:
            response.set_cookie(
                SESSION_COOKIE_NAME,
                self.sign(session_id),
                max_age=self.settings.SESSION_MAX_AGE,
                httponly=True,
                secure=self.settings.SESSION_COOKIE_SECURE,
                samesite=self.settings.SESSION_COOKIE_SAMESITE,
                path="/",
            )
        elif request.state.session_destroyed:
            response.delete_cookie(
                SESSION_COOKIE_NAME,
                path="/",
                httponly=True,
                secure=self.settings.SESSION_COOKIE_SECURE,
                samesite=self.settings.SESSION_COOKIE_SAMESITE,
            )


class SessionMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, manager: SessionManager, exempt_paths: Iterable[str] = ("/health",)):
        super().__init__(app)
        self.manager = manager
        self.exempt_paths = frozenset(exempt_paths)

    async def dispatch(self, request, call_next):
        if request.url.path in self.exempt_paths or request.method == "OPTIONS":
            return await call_next(request)

        try:
            await self.manager.load(request)
        except SessionPersistenceError as e:
            return JSONResponse(status_code=e.status_code, content=e.to_dict())

        response: StarletteResponse = await call_next(request)
        await self.manager.touch(request)
        self.manager.apply_cookie(request, response)
        return response
