"""
Admin sign-in

Accounts hold a bcrypt password hash; being an admin means having a document
in the "admins" collection under the account's _id. That lookup happens once
when someone signs in. Requests after that only check the session token.
"""

import inspect
import logging
import secrets
from typing import Any, Callable, List, Optional

from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr
from pymongo.errors import PyMongoError

from database import DocumentStore, Query
from schemas import Account, Admin

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

NOT_AN_ADMIN = "Unauthorized: Account is not an admin."


class AuthError(Exception):
    def __init__(self, message: str, status_code: int = 401):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class AdminSession(BaseModel):
    token: str
    account_id: str
    email: EmailStr


class AdminAuth:
    def __init__(self, store: DocumentStore):
        self.store = store
        self._listeners: List[Callable[[Optional[AdminSession]], Any]] = []

    def on_auth_state_change(self, callback: Callable[[Optional[AdminSession]], Any]) -> Callable[[], None]:
        """Register a listener for sign-in/sign-out. Returns the unsubscribe function."""
        self._listeners.append(callback)

        def unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    async def _notify(self, session: Optional[AdminSession]):
        for callback in list(self._listeners):
            result = callback(session)
            if inspect.isawaitable(result):
                await result

    async def _find_account(self, email: str) -> Optional[dict]:
        accounts = await self.store.get_once("accounts", Query().where("email", "==", email).limit(1))
        return accounts[0] if accounts else None

    async def _open_session(self, account_id: str, email: str) -> AdminSession:
        session = AdminSession(token=secrets.token_urlsafe(24), account_id=account_id, email=email)
        await self.store.create("sessions", session)
        return session

    async def _is_admin(self, account_id: str) -> bool:
        try:
            return await self.store.get("admins", account_id) is not None
        except PyMongoError:
            logger.exception("Error checking admin status for %s", account_id)
            return False

    async def sign_up(self, email: str, password: str) -> AdminSession:
        if await self._find_account(email):
            raise AuthError("Email already registered", status_code=400)
        account = Account(email=email, password_hash=pwd_context.hash(password))
        account_id = await self.store.create("accounts", account)
        await self.store.put("admins", account_id, Admin(email=email))
        logger.info("Admin account created for %s", email)
        session = await self._open_session(account_id, email)
        await self._notify(session)
        return session

    async def sign_in(self, email: str, password: str) -> AdminSession:
        account = await self._find_account(email)
        if not account or not pwd_context.verify(password, account.get("password_hash", "")):
            raise AuthError("Invalid credentials")
        session = await self._open_session(account["_id"], email)
        if not await self._is_admin(account["_id"]):
            logger.warning("User %s is not an admin, signing out.", email)
            await self.sign_out(session.token)
            raise AuthError(NOT_AN_ADMIN, status_code=403)
        await self._notify(session)
        return session

    async def sign_out(self, token: str) -> bool:
        sessions = await self.store.get_once("sessions", Query().where("token", "==", token).limit(1))
        if not sessions:
            return False
        await self.store.delete("sessions", sessions[0]["_id"])
        await self._notify(None)
        return True

    async def current_session(self, token: Optional[str]) -> Optional[AdminSession]:
        if not token:
            return None
        sessions = await self.store.get_once("sessions", Query().where("token", "==", token).limit(1))
        if not sessions:
            return None
        s = sessions[0]
        return AdminSession(token=s["token"], account_id=s["account_id"], email=s["email"])
