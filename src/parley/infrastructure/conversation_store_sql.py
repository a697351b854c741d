"""Relational conversation store backed by SQLAlchemy.

Each turn is written inside a single ``session.begin()`` block, so the
conversation timestamp bump and the message insert commit together.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional, Tuple

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, create_engine, delete, event, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from ..config import CONVERSATION_ID_MAX_CHARS
from ..domain.chat_models import AssistantTurn, Conversation, ConversationSummary, Message, UserTurn
from ..domain.errors import AccessDenied, NotFound
from .conversation_store import make_title, new_id


class Base(DeclarativeBase):
    pass


class ConversationRow(Base):
    __tablename__ = "conversations"

    id: Mapped[str] = mapped_column(String(CONVERSATION_ID_MAX_CHARS), primary_key=True)
    owner_account_id: Mapped[str] = mapped_column(String(255), index=True)
    title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    __table_args__ = (Index("conversation_owner_updated_idx", "owner_account_id", "updated_at"),)


class MessageRow(Base):
    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    conversation_id: Mapped[str] = mapped_column(ForeignKey("conversations.id", ondelete="CASCADE"), index=True)
    seq: Mapped[int] = mapped_column(Integer)
    role: Mapped[str] = mapped_column(String(16))
    content: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    __table_args__ = (Index("message_conversation_created_idx", "conversation_id", "created_at"),)


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything stored is UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def create_store_engine(url: str) -> Engine:
    is_sqlite = "sqlite" in url
    kwargs = {}
    if is_sqlite:
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in url:
            # StaticPool keeps every session on the same in-memory database
            kwargs["poolclass"] = StaticPool
    engine = create_engine(url, echo=False, **kwargs)

    if is_sqlite:
        @event.listens_for(engine, "connect")
        def _set_sqlite_pragma(dbapi_conn, connection_record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


class SqlConversationStore:
    def __init__(self, engine: Engine, *, create_tables: bool = True) -> None:
        self._engine = engine
        self._sessions = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
        if create_tables:
            Base.metadata.create_all(bind=engine)

    @classmethod
    def from_url(cls, url: str) -> "SqlConversationStore":
        return cls(create_store_engine(url))

    def _conversation_model(self, row: ConversationRow) -> Conversation:
        return Conversation(
            id=row.id,
            owner_account_id=row.owner_account_id,
            title=row.title,
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
        )

    def _message_model(self, row: MessageRow) -> Message:
        return Message(
            id=row.id,
            conversation_id=row.conversation_id,
            role=row.role,
            content=row.content,
            created_at=_aware(row.created_at),
        )

    def _newest_first(self, conversation_id: str):
        return (
            select(MessageRow)
            .where(MessageRow.conversation_id == conversation_id)
            .order_by(MessageRow.created_at.desc(), MessageRow.seq.desc())
        )

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        with self._sessions() as session:
            row = session.get(ConversationRow, conversation_id)
            return self._conversation_model(row) if row else None

    def list_recent_messages(self, conversation_id: str, limit: int) -> List[Message]:
        if limit <= 0:
            return []
        with self._sessions() as session:
            rows = session.scalars(self._newest_first(conversation_id).limit(limit)).all()
            return [self._message_model(r) for r in reversed(rows)]

    def list_messages(self, conversation_id: str, limit: int = 100, offset: int = 0) -> Tuple[List[Message], bool]:
        with self._sessions() as session:
            rows = session.scalars(self._newest_first(conversation_id).limit(limit + 1).offset(offset)).all()
            has_more = len(rows) > limit
            page = rows[:limit]
            return [self._message_model(r) for r in reversed(page)], has_more

    def count_messages(self, conversation_id: str) -> int:
        with self._sessions() as session:
            stmt = select(func.count(MessageRow.id)).where(MessageRow.conversation_id == conversation_id)
            return int(session.scalar(stmt) or 0)

    def list_conversations(self, owner_account_id: str, limit: int = 50) -> List[ConversationSummary]:
        with self._sessions() as session:
            conversations = session.scalars(
                select(ConversationRow)
                .where(ConversationRow.owner_account_id == owner_account_id)
                .order_by(ConversationRow.updated_at.desc())
                .limit(limit)
            ).all()
            if not conversations:
                return []

            ids = [conv.id for conv in conversations]
            stats = session.execute(
                select(
                    MessageRow.conversation_id,
                    func.count(MessageRow.id),
                    func.max(MessageRow.created_at),
                )
                .where(MessageRow.conversation_id.in_(ids))
                .group_by(MessageRow.conversation_id)
            ).all()
            by_id = {cid: (count, last) for cid, count, last in stats}

            out: List[ConversationSummary] = []
            for conv in conversations:
                count, last = by_id.get(conv.id, (0, None))
                out.append(
                    ConversationSummary(
                        id=conv.id,
                        title=conv.title,
                        message_count=count,
                        last_message_at=_aware(last) if last else None,
                    )
                )
            return out

    def _next_seq(self, session, conversation_id: str) -> int:
        stmt = select(func.coalesce(func.max(MessageRow.seq), 0)).where(MessageRow.conversation_id == conversation_id)
        return int(session.scalar(stmt) or 0) + 1

    def persist_user_turn(self, turn: UserTurn) -> str:
        message_id = new_id()
        with self._sessions.begin() as session:
            conv = session.get(ConversationRow, turn.conversation_id)
            if conv is not None and conv.owner_account_id != turn.owner_account_id:
                raise AccessDenied()
            if conv is None:
                session.add(
                    ConversationRow(
                        id=turn.conversation_id,
                        owner_account_id=turn.owner_account_id,
                        title=make_title(turn.content),
                        created_at=turn.timestamp,
                        updated_at=turn.timestamp,
                    )
                )
                # conversation row must exist before the FK insert below
                session.flush()
            else:
                conv.updated_at = max(_aware(conv.updated_at), turn.timestamp)

            session.add(
                MessageRow(
                    id=message_id,
                    conversation_id=turn.conversation_id,
                    seq=self._next_seq(session, turn.conversation_id),
                    role="user",
                    content=turn.content,
                    created_at=turn.timestamp,
                )
            )
        return message_id

    def persist_assistant_turn(self, turn: AssistantTurn) -> None:
        with self._sessions.begin() as session:
            conv = session.get(ConversationRow, turn.conversation_id)
            if conv is None:
                raise NotFound("Conversation not found")
            conv.updated_at = max(_aware(conv.updated_at), turn.timestamp)
            session.add(
                MessageRow(
                    id=turn.assistant_message_id,
                    conversation_id=turn.conversation_id,
                    seq=self._next_seq(session, turn.conversation_id),
                    role="assistant",
                    content=turn.content,
                    created_at=turn.timestamp,
                )
            )

    def delete_conversation(self, conversation_id: str) -> bool:
        with self._sessions.begin() as session:
            result = session.execute(delete(ConversationRow).where(ConversationRow.id == conversation_id))
            return bool(result.rowcount)
