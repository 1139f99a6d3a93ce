from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.orm import sessionmaker

from dosekeeper.database import SessionLocal
from dosekeeper.models.user import User

logger = logging.getLogger(__name__)


def get_or_create_user(tg_id: int, name: Optional[str] = None, session_factory: sessionmaker = SessionLocal) -> int:
    """Return the internal user id for a Telegram chat, creating the user if needed."""
    with session_factory() as session:
        user = session.query(User).filter(User.tg_id == tg_id).first()
        if user is None:
            user = User(tg_id=tg_id, name=name)
            session.add(user)
            session.commit()
            logger.info("Registered user tg_id=%s as id=%s", tg_id, user.id)
        elif name and not user.name:
            user.name = name
            session.commit()
        return user.id


def find_user_id(tg_id: int, session_factory: sessionmaker = SessionLocal) -> Optional[int]:
    with session_factory() as session:
        row = session.query(User.id).filter(User.tg_id == tg_id).first()
        return row[0] if row else None
