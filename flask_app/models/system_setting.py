# flask_app/models/system_setting.py

import json

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from .base import BaseModel, db

SYNC_PAUSED_KEY = "sync_paused"


class SystemSetting(BaseModel):
    """Typed system-wide setting such as the sync kill-switch"""

    __tablename__ = "system_settings"

    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(100), unique=True, nullable=False, index=True)
    value = db.Column(db.Text, nullable=False)  # JSON string for complex values
    value_type = db.Column(
        db.String(20), default="boolean", nullable=False
    )  # boolean, string, integer, json
    description = db.Column(db.Text, nullable=True)

    def __repr__(self):
        return f"<SystemSetting {self.key}>"

    def get_value(self):
        """Get the typed value from the stored text"""
        if self.value_type == "boolean":
            return self.value.lower() in ("true", "1", "yes", "on")
        elif self.value_type == "integer":
            try:
                return int(self.value)
            except ValueError:
                return 0
        elif self.value_type == "json":
            try:
                return json.loads(self.value)
            except json.JSONDecodeError:
                return {}
        else:
            return self.value

    def set_value(self, value):
        if self.value_type == "boolean":
            self.value = "true" if bool(value) else "false"
        elif self.value_type == "integer":
            self.value = str(int(value))
        elif self.value_type == "json":
            self.value = json.dumps(value) if not isinstance(value, str) else value
        else:
            self.value = str(value)

    @staticmethod
    def get(key, default=None):
        """Read a setting; database errors propagate to the caller"""
        setting = SystemSetting.query.filter_by(key=key).first()
        return setting.get_value() if setting else default

    @staticmethod
    def put(key, value, value_type="boolean", description=None):
        """Create or update a setting"""
        try:
            setting = SystemSetting.query.filter_by(key=key).first()
            if setting:
                setting.value_type = value_type
                setting.set_value(value)
                if description:
                    setting.description = description
            else:
                setting = SystemSetting(key=key, value_type=value_type, description=description)
                setting.set_value(value)
                db.session.add(setting)
            db.session.commit()
            return True
        except SQLAlchemyError as e:
            db.session.rollback()
            current_app.logger.error(f"Database error setting {key}: {str(e)}")
            return False

    @staticmethod
    def is_sync_paused():
        return bool(SystemSetting.get(SYNC_PAUSED_KEY, default=False))
