from __future__ import annotations

from typing import Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from boilerhub.logging import get_logger
from boilerhub.storage.models import User

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class CredentialStore(Protocol):
    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...


class CredentialValidator:
    """Checks email/password pairs against stored argon2id hashes.

    Every failure mode (unknown email, missing credential row, foreign hash
    algorithm, wrong password) collapses into the same ``None`` result.
    """

    def __init__(self, store: CredentialStore) -> None:
        self.store = store
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Verified against when the email is unknown so both paths cost one hash
        self._dummy_hash = self._pwd_hasher.hash("boilerhub-dummy-password")

    def hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def set_password(self, user_id: str, password: str) -> None:
        """Hash and save a new password for a user."""
        pwd_hash, algo = self.hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            logger.warning("password_record_missing", user_id=user_id)
            self._burn(password)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            self._burn(password)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            logger.info("password_verification_failed", user_id=user_id)
            return False

    def validate(self, email: str, password: str) -> Optional[User]:
        user = self.store.get_user_by_email(email.strip().lower())
        if user is None:
            self._burn(password)
            return None
        if not user.is_active:
            self._burn(password)
            return None
        if not self.verify_password(user.id, password):
            return None
        return user

    def _burn(self, password: str) -> None:
        try:
            self._pwd_hasher.verify(self._dummy_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            pass
