from sqlalchemy import Column, String, Integer, BigInteger, ForeignKey, DateTime, JSON, CheckConstraint
from sqlalchemy.orm import relationship
from datetime import datetime

from database import Base


class User(Base):
    __tablename__ = "users"

    id = Column(BigInteger, primary_key=True, autoincrement=False)  # Telegram user id
    tz = Column(String, nullable=True)
    settings = Column(JSON, default=dict, nullable=False)
    protected = Column(JSON, default=dict, nullable=False)  # OAuth tokens and secrets, keyed by service
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    hooks = relationship("Hook", back_populates="user", order_by="Hook.position")


class Chat(Base):
    __tablename__ = "chats"

    id = Column(BigInteger, primary_key=True, autoincrement=False)  # negative for groups and channels
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    hooks = relationship("Hook", back_populates="chat", order_by="Hook.position")


class Hook(Base):
    __tablename__ = "hooks"
    __table_args__ = (
        CheckConstraint(
            "(user_id IS NULL) <> (chat_id IS NULL)",
            name="hook_single_owner",
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    token = Column(String, unique=True, nullable=False, index=True)
    services = Column(JSON, default=list, nullable=False)  # ordered service names
    chats = Column(JSON, default=list, nullable=False)  # ordered target chat ids
    position = Column(Integer, default=0, nullable=False)  # order within the owner's hook list
    user_id = Column(BigInteger, ForeignKey("users.id"), nullable=True)
    chat_id = Column(BigInteger, ForeignKey("chats.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    user = relationship("User", back_populates="hooks")
    chat = relationship("Chat", back_populates="hooks")


class OAuthCorrelation(Base):
    """Pending OAuth authorization, keyed by "auth_" + ephemeral id."""
    __tablename__ = "users_cache"

    key = Column(String, primary_key=True)
    user_id = Column(BigInteger, nullable=False)
    service = Column(String, nullable=False)
    val = Column(JSON, default=dict, nullable=False)  # {"base_url": ..., "request_token": {...}}
    created_at = Column(DateTime, default=datetime.utcnow)
    expires_at = Column(DateTime, nullable=True)


class OAuthProvider(Base):
    """Self-hosted instance of a service with its own OAuth app credentials."""
    __tablename__ = "oauth_providers"

    id = Column(String, primary_key=True)  # compact hash of service + base_url
    service = Column(String, nullable=False)
    base_url = Column(String, nullable=False)
    client_id = Column(String, nullable=False)
    client_secret = Column(String, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
