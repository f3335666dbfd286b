"""
Safe Mode - emergency brake.

While enabled nothing is surfaced to the user. Toggling never deletes
anything; turning it off simply lets the surfacer resume.
"""
import logging
from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from ...models.db_models import SafeModeStateDB


logger = logging.getLogger(__name__)


class SafeModeService:
    def __init__(self, db: Session):
        self.db = db

    def get_state(self, user_id: str) -> Optional[SafeModeStateDB]:
        return self.db.query(SafeModeStateDB).filter(SafeModeStateDB.user_id == user_id).first()

    def is_enabled(self, user_id: str) -> bool:
        state = self.get_state(user_id)
        return bool(state and state.is_enabled)

    def set_enabled(self, user_id: str, enabled: bool, reason: Optional[str] = None) -> SafeModeStateDB:
        now = datetime.utcnow()
        state = self.get_state(user_id)
        if state is None:
            state = SafeModeStateDB(id=str(uuid4()), user_id=user_id, is_enabled=False, activation_count=0)
            self.db.add(state)

        if bool(state.is_enabled) == enabled:
            self.db.flush()
            return state

        state.is_enabled = enabled
        state.last_toggled_at = now
        if enabled:
            state.enabled_at = now
            state.activation_reason = reason
            state.activation_count = (state.activation_count or 0) + 1
        else:
            state.disabled_at = now
        self.db.flush()

        logger.info(f"Safe mode {'enabled' if enabled else 'disabled'} for user {user_id}")
        return state
