"""
State Store
===========

Opaque load/save of the whole application state under a fixed namespace.
No field-level persistence: every save replaces the stored document.
"""

import logging
from typing import Optional

from pydantic import ValidationError as PydanticValidationError

from .config import get_settings
from .db.models import StateEntry
from .db.session import get_db_session, init_db
from .schemas import AppState

logger = logging.getLogger(__name__)


class StateStore:
    """
    Namespace-keyed persistence of AppState.

    Usage:
        store = StateStore()
        state = store.load()
        ...
        store.save(state)
    """

    def __init__(self, namespace: Optional[str] = None, database_url: Optional[str] = None):
        self.namespace = namespace or get_settings().state_namespace
        self.database_url = database_url
        init_db(database_url)

    def load(self) -> AppState:
        """Stored state, or a fresh one when nothing (readable) is stored"""
        with get_db_session(self.database_url) as db:
            entry = db.get(StateEntry, self.namespace)
            payload = entry.payload if entry else None

        if payload is None:
            logger.info(f"No saved state under '{self.namespace}', starting fresh")
            return AppState()

        try:
            return AppState.model_validate_json(payload)
        except PydanticValidationError as e:
            logger.error(f"Failed to load state '{self.namespace}': {e.error_count()} validation errors, starting fresh")
            return AppState()

    def save(self, state: AppState) -> None:
        payload = state.model_dump_json()
        with get_db_session(self.database_url) as db:
            entry = db.get(StateEntry, self.namespace)
            if entry is None:
                db.add(StateEntry(namespace=self.namespace, payload=payload, revision=1))
            else:
                entry.payload = payload
                entry.revision = (entry.revision or 0) + 1
        logger.debug(f"Saved state '{self.namespace}' ({len(payload)} bytes)")
