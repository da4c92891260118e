"""
CredentialService — долговременное хранение выданных VPN-ключей.

Ответственности:
- Регистрация покупателя при первом сообщении
- Сохранение ключа и даты выдачи (последняя запись выигрывает)
- Получение текущего ключа для экрана «Мой ключ»
"""
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Generator

from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.models.user import User

logger = logging.getLogger(__name__)


class Credential(BaseModel):
    """Выданный доступ: ссылка подключения и момент выдачи."""

    buyer_id: str
    access_link: str
    issued_at: datetime

    model_config = {"frozen": True}


class CredentialService:
    def __init__(self, db: Session):
        self.db = db

    def ensure_user(self, buyer_id: str) -> User:
        user = self.db.get(User, buyer_id)
        if user:
            return user
        user = User(telegram_id=buyer_id)
        self.db.add(user)
        self.db.flush()
        logger.info("user_registered", extra={"buyer_id": buyer_id})
        return user

    def put(self, buyer_id: str, access_link: str, issued_at: datetime) -> None:
        user = self.ensure_user(buyer_id)
        user.vpn_key = access_link
        user.key_issued_at = issued_at
        self.db.add(user)
        self.db.flush()
        logger.info("vpn_key_saved", extra={"buyer_id": buyer_id})

    def get(self, buyer_id: str) -> Credential | None:
        user = self.db.get(User, buyer_id)
        if not user or not user.has_key():
            return None
        return Credential(
            buyer_id=buyer_id,
            access_link=user.vpn_key,
            issued_at=user.key_issued_at,
        )


class SqlCredentialStore:
    """
    Thread-safe store facade for the purchase orchestrator.
    Opens one short transaction per call, so it can be used from worker threads.
    """

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    @contextmanager
    def _session(self) -> Generator[Session, None, None]:
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def ensure_user(self, buyer_id: str) -> None:
        with self._session() as db:
            CredentialService(db).ensure_user(buyer_id)

    def put(self, buyer_id: str, access_link: str, issued_at: datetime) -> None:
        with self._session() as db:
            CredentialService(db).put(buyer_id, access_link, issued_at)

    def get(self, buyer_id: str) -> Credential | None:
        with self._session() as db:
            return CredentialService(db).get(buyer_id)
