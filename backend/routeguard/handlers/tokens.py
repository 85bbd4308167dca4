"""
RouteGuard Backend — Token Issuance Handler
=============================================

What:  POST /users/login: verify username + password, return a bearer token.
Why:   Secure routes need a token; this is the one public route that mints it.
How:   bcrypt verification runs in a worker thread (it is deliberately slow);
       an unknown username still pays for one bcrypt check against a dummy
       hash so response time does not reveal which usernames exist.

Response:
    {"success": true, "data": {"token": "<jwt>", "expires": 1700000000}}
"""

import asyncio
import logging
from typing import Dict

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from routeguard.exceptions import DatabaseError, InvalidCredentialsError
from routeguard.handlers.base import Reply, RequestHandler, VerbHandler
from routeguard.models.user import User
from routeguard.schemas.auth import LoginRequest, TokenResponse

logger = logging.getLogger(__name__)


class LoginHandler(RequestHandler):
    def verbs(self) -> Dict[str, VerbHandler]:
        return {"POST": VerbHandler(self.login, body_model=LoginRequest)}

    async def _find_user(self, username: str):
        try:
            async with self.services.session_factory() as session:
                result = await session.execute(select(User).where(User.username == username))
                return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error("User lookup failed: %s", e)
            raise DatabaseError(context={"operation": "login_lookup"}) from e

    async def login(self, ctx) -> Reply:
        credentials: LoginRequest = ctx.body
        user = await self._find_user(credentials.username)

        if user is None:
            await asyncio.to_thread(User.burn_verification, credentials.password)
            logger.warning("Login failed: unknown user from %s", ctx.client_ip)
            raise InvalidCredentialsError(context={"username": credentials.username})

        if not await asyncio.to_thread(user.verify_password, credentials.password):
            logger.warning("Login failed: bad password for user %s from %s", user.id, ctx.client_ip)
            raise InvalidCredentialsError(context={"user_id": user.id})

        issued = self.services.authenticator.issue(user.id)
        logger.info("Token issued for user %s", user.id)
        return Reply(data=TokenResponse(**issued))
