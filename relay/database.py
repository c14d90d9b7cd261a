"""
Database models and operations for the relay.

Uses SQLAlchemy with SQLite for user identities and encrypted envelopes.
Note: the relay never sees plaintext - envelopes are stored as opaque
ciphertext and private keys only in wrapped form.
"""

import asyncio
import json
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from passlib.context import CryptContext
from sqlalchemy import Boolean, Column, DateTime, String, Text, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

logger = logging.getLogger(__name__)

Base = declarative_base()


def utcnow() -> datetime:
    # SQLite drops tzinfo, so timestamps are stored as naive UTC.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def isoformat(value: datetime) -> str:
    return value.replace(tzinfo=timezone.utc).isoformat()


class User(Base):
    """Published identity"""
    __tablename__ = "users"

    username = Column(String(50), primary_key=True)
    display_name = Column(String(100), nullable=False)
    hashed_password = Column(String(255), nullable=False)
    public_key = Column(String(128), nullable=False)  # base64 P-256 point
    wrapped_key = Column(Text, nullable=False)  # JSON WrappedKeyBlob
    created_at = Column(DateTime, default=utcnow)
    last_seen = Column(DateTime, default=utcnow)
    is_online = Column(Boolean, default=False)

    def wrapped_key_dict(self) -> Dict:
        return json.loads(self.wrapped_key)

    def to_public_dict(self) -> Dict:
        return {
            'username': self.username,
            'display_name': self.display_name,
            'public_key': self.public_key,
            'is_online': bool(self.is_online),
            'last_seen': isoformat(self.last_seen) if self.last_seen else None,
            'created_at': isoformat(self.created_at) if self.created_at else None
        }


class MessageRecord(Base):
    """Stored envelope"""
    __tablename__ = "messages"

    id = Column(String(36), primary_key=True)
    sender_username = Column(String(50), index=True, nullable=False)
    recipient_username = Column(String(50), index=True, nullable=False)
    ciphertext = Column(Text, nullable=False)
    iv = Column(String(32), nullable=False)
    tag = Column(String(64), nullable=True)
    created_at = Column(DateTime, index=True, nullable=False)

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'sender_username': self.sender_username,
            'recipient_username': self.recipient_username,
            'ciphertext': self.ciphertext,
            'iv': self.iv,
            'tag': self.tag or None,
            'created_at': isoformat(self.created_at)
        }


class Database:
    """Database manager for async operations"""

    def __init__(self, database_url: str = "sqlite+aiosqlite:///./relay.db", bcrypt_rounds: int = 12):
        """
        Initialize database connection.

        Args:
            database_url: SQLAlchemy database URL
            bcrypt_rounds: Work factor for stored password hashes
        """
        self.engine = create_async_engine(database_url, echo=False)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )
        self.pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=bcrypt_rounds)
        self._ingest_lock = asyncio.Lock()
        self._last_created_at: Optional[datetime] = None

    async def create_tables(self):
        """Create all tables"""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self):
        await self.engine.dispose()

    async def create_user(self, username: str, password: str, public_key: str,
                          wrapped_key: Dict, display_name: Optional[str] = None) -> Optional[User]:
        """
        Create a new identity.

        Args:
            username: Unique username
            password: Plain text password (will be hashed)
            public_key: Base64 public key
            wrapped_key: WrappedKeyBlob dictionary, stored opaquely
            display_name: Optional display name

        Returns:
            Created User object or None if username exists
        """
        hashed = await asyncio.to_thread(self.pwd_context.hash, password)
        async with self.async_session() as session:
            result = await session.execute(select(User).where(User.username == username))
            if result.scalar_one_or_none():
                return None

            user = User(
                username=username,
                display_name=display_name or username,
                hashed_password=hashed,
                public_key=public_key,
                wrapped_key=json.dumps(wrapped_key),
                is_online=True
            )
            session.add(user)
            await session.commit()
            return user

    async def get_user(self, username: str) -> Optional[User]:
        async with self.async_session() as session:
            result = await session.execute(select(User).where(User.username == username))
            return result.scalar_one_or_none()

    async def authenticate_user(self, username: str, password: str) -> Optional[User]:
        """
        Authenticate a user and mark them online.

        Returns:
            User object if authenticated, None otherwise
        """
        user = await self.get_user(username)
        if not user:
            return None
        if not await asyncio.to_thread(self.pwd_context.verify, password, user.hashed_password):
            return None
        await self.set_online(username, True)
        return user

    async def set_online(self, username: str, online: bool):
        async with self.async_session() as session:
            await session.execute(
                update(User).where(User.username == username).values(is_online=online, last_seen=utcnow())
            )
            await session.commit()

    async def search_users(self, query: str, limit: int = 20) -> List[User]:
        pattern = f"%{query}%"
        async with self.async_session() as session:
            result = await session.execute(
                select(User)
                .where(or_(User.username.ilike(pattern), User.display_name.ilike(pattern)))
                .order_by(User.username)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def _next_created_at(self) -> datetime:
        # Strictly increasing within this process so "since" cursors never
        # skip two envelopes that share a timestamp.
        now = utcnow()
        if self._last_created_at is not None and now <= self._last_created_at:
            now = self._last_created_at + timedelta(microseconds=1)
        self._last_created_at = now
        return now

    async def store_message(self, sender: str, recipient: str, ciphertext: str,
                            iv: str, tag: Optional[str] = None) -> MessageRecord:
        """
        Store an envelope, assigning its id and ingestion time.

        Returns:
            The stored MessageRecord
        """
        async with self._ingest_lock:
            async with self.async_session() as session:
                record = MessageRecord(
                    id=str(uuid.uuid4()),
                    sender_username=sender,
                    recipient_username=recipient,
                    ciphertext=ciphertext,
                    iv=iv,
                    tag=tag or None,
                    created_at=await self._next_created_at()
                )
                session.add(record)
                await session.commit()
                return record

    async def fetch_messages(self, username: str, since: Optional[datetime] = None,
                             limit: int = 100, latest: bool = False) -> List[MessageRecord]:
        """
        Envelopes sent or received by ``username``, oldest first.

        Args:
            username: Authenticated identity
            since: Only envelopes created strictly after this time
            limit: Maximum number of envelopes
            latest: Return the newest ``limit`` envelopes instead of the oldest
        """
        stmt = select(MessageRecord).where(
            or_(MessageRecord.recipient_username == username, MessageRecord.sender_username == username)
        )
        if since is not None:
            stmt = stmt.where(MessageRecord.created_at > to_naive_utc(since))
        if latest:
            stmt = stmt.order_by(MessageRecord.created_at.desc(), MessageRecord.id.desc())
        else:
            stmt = stmt.order_by(MessageRecord.created_at.asc(), MessageRecord.id.asc())

        async with self.async_session() as session:
            result = await session.execute(stmt.limit(limit))
            records = list(result.scalars().all())
        if latest:
            records.reverse()
        return records

    async def list_conversations(self, username: str) -> List[User]:
        """Users that ``username`` has exchanged envelopes with"""
        async with self.async_session() as session:
            result = await session.execute(
                select(MessageRecord.sender_username, MessageRecord.recipient_username).where(
                    or_(MessageRecord.recipient_username == username,
                        MessageRecord.sender_username == username)
                ).distinct()
            )
            contacts = set()
            for sender, recipient in result.all():
                contacts.add(recipient if sender == username else sender)
            if not contacts:
                return []

            users = await session.execute(
                select(User).where(User.username.in_(contacts)).order_by(User.username)
            )
            return list(users.scalars().all())
