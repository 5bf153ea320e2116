# backend/threatwatch/services/settings/settings_store.py

import logging
from typing import Callable, Optional

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy.orm import Session

from threatwatch.core.config import settings
from threatwatch.core.errors import SettingsDecryptionError
from threatwatch.db.session import SessionLocal
from threatwatch.models.system_setting import SystemSetting

logger = logging.getLogger(__name__)


class SettingsStore:
    """
    String key/value settings persisted in the `system_settings` table.

    Credentials go through set_encrypted()/get_decrypted(), which use a
    Fernet key from SETTINGS_ENCRYPTION_KEY.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        encryption_key: Optional[str] = None,
    ) -> None:
        self._session_factory = session_factory
        key = encryption_key or settings.SETTINGS_ENCRYPTION_KEY
        self._fernet = Fernet(key.encode()) if key else None

    def _get_db(self) -> Session:
        return self._session_factory()

    def get(self, key: str) -> Optional[str]:
        db = self._get_db()
        try:
            row = db.query(SystemSetting).filter(SystemSetting.key == key).one_or_none()
            return row.value if row is not None else None
        finally:
            db.close()

    def set(self, key: str, value: Optional[str]) -> None:
        db = self._get_db()
        try:
            row = db.query(SystemSetting).filter(SystemSetting.key == key).one_or_none()
            if row is None:
                db.add(SystemSetting(key=key, value=value))
            else:
                row.value = value
            db.commit()
        except Exception:
            db.rollback()
            logger.exception("Failed to save setting %s", key)
            raise
        finally:
            db.close()

    def delete(self, key: str) -> None:
        db = self._get_db()
        try:
            db.query(SystemSetting).filter(SystemSetting.key == key).delete()
            db.commit()
        finally:
            db.close()

    def set_encrypted(self, key: str, value: str) -> None:
        if self._fernet is None:
            raise SettingsDecryptionError("SETTINGS_ENCRYPTION_KEY is not configured")
        self.set(key, self._fernet.encrypt(value.encode()).decode())

    def get_decrypted(self, key: str) -> Optional[str]:
        token = self.get(key)
        if token is None:
            return None
        if self._fernet is None:
            raise SettingsDecryptionError("SETTINGS_ENCRYPTION_KEY is not configured")
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken as exc:
            raise SettingsDecryptionError(f"Setting {key} cannot be decrypted") from exc


settings_store = SettingsStore()
