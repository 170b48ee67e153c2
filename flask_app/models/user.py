# flask_app/models/user.py

import hashlib
import secrets

from flask_login import UserMixin

from .base import BaseModel, db


def hash_api_token(token):
    """Return the stored digest for a bearer token"""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class User(UserMixin, BaseModel):
    """Dashboard operator; admins may trigger and cancel syncs"""

    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False, index=True)
    email = db.Column(db.String(120), unique=True, nullable=False, index=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    is_admin = db.Column(db.Boolean, default=False, nullable=False)
    api_token_hash = db.Column(db.String(64), unique=True, nullable=True, index=True)
    last_login = db.Column(db.DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<User {self.username}>"

    def issue_api_token(self):
        """Generate a new bearer token; only its digest is persisted"""
        token = secrets.token_urlsafe(32)
        self.api_token_hash = hash_api_token(token)
        return token

    def revoke_api_token(self):
        self.api_token_hash = None

    @staticmethod
    def find_by_api_token(token):
        if not token:
            return None
        return User.query.filter_by(api_token_hash=hash_api_token(token), is_active=True).first()
