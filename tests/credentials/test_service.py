"""
Unit-тесты для CredentialService / SqlCredentialStore на in-memory SQLite.
"""
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.db.base import Base
from app.models.user import User
from app.services.credentials import CredentialService, SqlCredentialStore

ISSUED_AT = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _naive(value: datetime) -> datetime:
    # SQLite drops tzinfo on the way back
    return value.replace(tzinfo=None)


class TestSqlCredentialStore(unittest.TestCase):
    def setUp(self):
        self.engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        Base.metadata.create_all(bind=self.engine)
        self.session_factory = sessionmaker(bind=self.engine, autocommit=False, autoflush=False)
        self.store = SqlCredentialStore(self.session_factory)

    def tearDown(self):
        Base.metadata.drop_all(bind=self.engine)
        self.engine.dispose()

    def test_get_unknown_buyer(self):
        self.assertIsNone(self.store.get("42"))

    def test_put_then_get(self):
        self.store.put("42", "https://sub.example/sub/AbCdEf123456", ISSUED_AT)

        credential = self.store.get("42")

        self.assertEqual(credential.buyer_id, "42")
        self.assertEqual(credential.access_link, "https://sub.example/sub/AbCdEf123456")
        self.assertEqual(_naive(credential.issued_at), _naive(ISSUED_AT))

    def test_last_write_wins(self):
        self.store.put("42", "https://sub.example/sub/first", ISSUED_AT)
        later = ISSUED_AT + timedelta(days=31)
        self.store.put("42", "https://sub.example/sub/second", later)

        credential = self.store.get("42")

        self.assertEqual(credential.access_link, "https://sub.example/sub/second")
        self.assertEqual(_naive(credential.issued_at), _naive(later))
        with self.session_factory() as db:
            self.assertEqual(db.query(User).count(), 1)

    def test_ensure_user_is_idempotent(self):
        self.store.ensure_user("42")
        self.store.ensure_user("42")

        with self.session_factory() as db:
            user = db.get(User, "42")
            self.assertIsNotNone(user)
            self.assertFalse(user.has_key())
            self.assertEqual(db.query(User).count(), 1)
        self.assertIsNone(self.store.get("42"))

    def test_failed_call_rolls_back(self):
        db = MagicMock()
        db.get.side_effect = RuntimeError("connection lost")
        store = SqlCredentialStore(lambda: db)

        with self.assertRaises(RuntimeError):
            store.put("42", "https://sub.example/sub/x", ISSUED_AT)

        db.rollback.assert_called_once()
        db.commit.assert_not_called()
        db.close.assert_called_once()


class TestCredentialService(unittest.TestCase):
    def test_put_registers_missing_user(self):
        db = MagicMock()
        db.get.return_value = None

        CredentialService(db).put("42", "https://sub.example/sub/x", ISSUED_AT)

        added = db.add.call_args_list[-1][0][0]
        self.assertEqual(added.telegram_id, "42")
        self.assertEqual(added.vpn_key, "https://sub.example/sub/x")
        self.assertEqual(added.key_issued_at, ISSUED_AT)
