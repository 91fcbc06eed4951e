"""
Notification settings persistence.

Settings are a single row (id = 1) created with defaults on first read. The
engine only reads them; the admin surface replaces them.
"""

import logging
from typing import Optional

import sqlalchemy as sa

from shared.database import Database, get_database, settings
from shared.models import NotificationSettings

logger = logging.getLogger("settings_store")

SETTINGS_ROW_ID = 1


class SettingsStore:
    """Read and replace the singleton NotificationSettings record."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def get(self) -> NotificationSettings:
        with self.db.connect() as conn:
            row = conn.execute(
                sa.select(settings).where(settings.c.id == SETTINGS_ROW_ID)
            ).first()
        if row is None:
            return self.save(NotificationSettings())
        data = dict(row._mapping)
        data.pop("id")
        return NotificationSettings(**data)

    def save(self, new_settings: NotificationSettings) -> NotificationSettings:
        """Insert or replace the settings row."""
        values = new_settings.model_dump()
        with self.db.begin() as conn:
            updated = conn.execute(
                settings.update().where(settings.c.id == SETTINGS_ROW_ID).values(**values)
            )
            if updated.rowcount == 0:
                conn.execute(settings.insert().values(id=SETTINGS_ROW_ID, **values))
        logger.info(
            f"Notification settings saved (push={new_settings.push_enabled()}, "
            f"email={new_settings.email_enabled()}, on_create={new_settings.notify_on_create}, "
            f"on_paid={new_settings.notify_on_paid})"
        )
        return new_settings
