"""
FastAPI relay for the end-to-end encrypted messenger.

This server:
- Publishes identities (public key plus password-wrapped private key)
- Authenticates sessions and hands back the wrapped key for client-side unwrapping
- Stores encrypted envelopes and serves them to the polling clients
- Never sees plaintext or unwrapped private keys
"""

import base64
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Annotated, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import AfterValidator, BaseModel, Field

from .auth import create_access_token, verify_token
from .config import ServerConfig
from .database import Database

logger = logging.getLogger(__name__)

USERNAME_PATTERN = r"^[A-Za-z0-9_.-]+$"


def _check_base64(value: str) -> str:
    try:
        base64.b64decode(value, validate=True)
    except ValueError:
        raise ValueError("must be base64") from None
    return value


Base64Str = Annotated[str, AfterValidator(_check_base64)]


# Pydantic models for API
class WrappedKey(BaseModel):
    salt: Base64Str
    iv: Base64Str
    ciphertext: Base64Str
    iterations: int = Field(ge=100_000)


class IdentityCreate(BaseModel):
    username: str = Field(min_length=3, max_length=50, pattern=USERNAME_PATTERN)
    password: str = Field(min_length=8, max_length=128)
    display_name: Optional[str] = Field(default=None, max_length=100)
    public_key: Base64Str = Field(min_length=1, max_length=128)
    wrapped_key: WrappedKey


class SessionCreate(BaseModel):
    username: str
    password: str


class MessageCreate(BaseModel):
    recipient_username: str = Field(min_length=1, max_length=50)
    ciphertext: Base64Str = Field(min_length=1)
    iv: Base64Str = Field(min_length=1, max_length=32)
    tag: Optional[Base64Str] = Field(default=None, max_length=64)


bearer_scheme = HTTPBearer(auto_error=False)


async def current_username(request: Request,
                           credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)) -> str:
    """Resolve the bearer token to a username"""
    if credentials is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    config: ServerConfig = request.app.state.config
    username = verify_token(credentials.credentials, config.SECRET_KEY, config.ALGORITHM)
    if not username:
        raise HTTPException(status_code=401, detail="Invalid token")
    return username


def get_db(request: Request) -> Database:
    return request.app.state.db


def create_app(config: Optional[ServerConfig] = None) -> FastAPI:
    """Build the relay application for ``config``"""
    config = config or ServerConfig()
    db = Database(config.DATABASE_URL, bcrypt_rounds=config.BCRYPT_ROUNDS)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown events"""
        await db.create_tables()
        logger.info("Database initialized")
        yield
        await db.dispose()
        logger.info("Relay shutting down")

    app = FastAPI(
        title="Encrypted Message Relay",
        description="Stores and forwards end-to-end encrypted envelopes",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.config = config
    app.state.db = db

    def issue_token(username: str) -> str:
        return create_access_token(
            data={"sub": username},
            secret_key=config.SECRET_KEY,
            algorithm=config.ALGORITHM,
            expires_delta=timedelta(minutes=config.TOKEN_EXPIRE_MINUTES)
        )

    @app.post("/identities", status_code=201)
    async def create_identity(data: IdentityCreate, db: Database = Depends(get_db)):
        """
        Publish a new identity.

        The client generates its keypair and wraps the private key locally;
        the relay stores both opaquely.
        """
        user = await db.create_user(
            username=data.username,
            password=data.password,
            public_key=data.public_key,
            wrapped_key=data.wrapped_key.model_dump(),
            display_name=data.display_name
        )
        if not user:
            raise HTTPException(status_code=409, detail="Username already taken")

        logger.info("Identity created: %s", user.username)
        return {
            "username": user.username,
            "public_key": user.public_key,
            "session_token": issue_token(user.username)
        }

    @app.post("/sessions")
    async def create_session(data: SessionCreate, db: Database = Depends(get_db)):
        """Authenticate and return the wrapped private key"""
        user = await db.authenticate_user(data.username, data.password)
        if not user:
            raise HTTPException(status_code=401, detail="Invalid username or password")

        return {
            "username": user.username,
            "public_key": user.public_key,
            "wrapped_key": user.wrapped_key_dict(),
            "session_token": issue_token(user.username)
        }

    @app.delete("/sessions")
    async def end_session(username: str = Depends(current_username), db: Database = Depends(get_db)):
        await db.set_online(username, False)
        return {"status": "ok"}

    @app.get("/identities")
    async def search_identities(q: str = "", username: str = Depends(current_username),
                                db: Database = Depends(get_db)):
        """Search users by username or display name"""
        if len(q.strip()) < 2:
            return {"users": []}
        users = await db.search_users(q.strip())
        return {"users": [user.to_public_dict() for user in users]}

    @app.get("/identities/{username}")
    async def get_identity(username: str, caller: str = Depends(current_username),
                           db: Database = Depends(get_db)):
        """Public identity, including the key peers derive conversation keys from"""
        user = await db.get_user(username)
        if not user:
            raise HTTPException(status_code=404, detail="User not found")
        return user.to_public_dict()

    @app.post("/messages", status_code=201)
    async def send_message(data: MessageCreate, username: str = Depends(current_username),
                           db: Database = Depends(get_db)):
        """Store an envelope; the relay assigns id and created_at"""
        if not await db.get_user(data.recipient_username):
            raise HTTPException(status_code=404, detail="Recipient not found")

        record = await db.store_message(
            sender=username,
            recipient=data.recipient_username,
            ciphertext=data.ciphertext,
            iv=data.iv,
            tag=data.tag
        )
        return {"id": record.id, "created_at": record.to_dict()["created_at"]}

    @app.get("/messages")
    async def receive_messages(since: Optional[datetime] = None,
                               latest: bool = False,
                               limit: int = Query(default=config.PAGE_LIMIT, ge=1, le=config.PAGE_LIMIT),
                               username: str = Depends(current_username),
                               db: Database = Depends(get_db)):
        """
        Envelopes visible to the caller, oldest first.

        With ``latest`` the window is the newest ``limit`` envelopes.
        """
        await db.set_online(username, True)
        records = await db.fetch_messages(username, since=since, limit=limit, latest=latest)
        return {"messages": [record.to_dict() for record in records]}

    @app.get("/conversations")
    async def list_conversations(username: str = Depends(current_username),
                                 db: Database = Depends(get_db)):
        users = await db.list_conversations(username)
        return {"conversations": [user.to_public_dict() for user in users]}

    return app


app = create_app()


def run():
    import uvicorn

    config = app.state.config
    logging.basicConfig(
        level=config.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    uvicorn.run(app, host=config.HOST, port=config.PORT)


if __name__ == "__main__":
    run()
