import logging
from contextlib import contextmanager

from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from errors import PersistenceError, ValidationError
from models import Message, User

logger = logging.getLogger(__name__)


class DatabaseStorage:
    """Users and the append-only message log.

    Every public method runs in its own session. SQLAlchemy failures are
    rolled back and re-raised as PersistenceError so callers never see a
    half-written row.
    """

    def __init__(self, session_factory):
        self.session_factory = session_factory

    @contextmanager
    def _session(self):
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.exception("Store operation failed")
            raise PersistenceError("Message store unavailable") from e
        finally:
            session.close()

    # ----------------- Users -----------------
    def get_user(self, user_id: int):
        with self._session() as db:
            return db.get(User, user_id)

    def get_user_by_username(self, username: str):
        with self._session() as db:
            return db.query(User).filter(User.username == username).first()

    def create_user(self, username: str, password_hash: str):
        session = self.session_factory()
        try:
            user = User(username=username, password_hash=password_hash)
            session.add(user)
            session.commit()
            session.refresh(user)
            return user
        except IntegrityError as e:
            session.rollback()
            raise ValidationError("Username already taken") from e
        except SQLAlchemyError as e:
            session.rollback()
            logger.exception("Could not create user %s", username)
            raise PersistenceError("User store unavailable") from e
        finally:
            session.close()

    # ----------------- Messages -----------------
    def create_message(self, sender_id: int, receiver_id: int, content: str):
        with self._session() as db:
            msg = Message(sender_id=sender_id, receiver_id=receiver_id, content=content)
            db.add(msg)
            db.flush()
            db.refresh(msg)
            return msg

    def get_messages(self, user1_id: int, user2_id: int):
        """History of the conversation between two users, oldest first."""
        if user1_id == user2_id:
            return []
        with self._session() as db:
            return db.query(Message).filter(
                or_(
                    and_(Message.sender_id == user1_id, Message.receiver_id == user2_id),
                    and_(Message.sender_id == user2_id, Message.receiver_id == user1_id),
                )
            ).order_by(Message.created_at.asc(), Message.id.asc()).all()
