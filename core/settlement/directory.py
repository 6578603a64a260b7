"""
User Directory - Lookup of Agents, Sellers, Buyers and Admins

The workflow only needs to resolve a user's identity, role and contact
details; account management lives elsewhere.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional


logger = logging.getLogger(__name__)


class UserRole(Enum):
    """Marketplace roles."""

    AGENT = "agent"
    SELLER = "seller"
    BUYER = "buyer"
    ADMIN = "admin"


@dataclass
class User:
    """A marketplace user as seen by the settlement workflow."""

    user_id: str
    name: str
    email: str
    role: UserRole
    bank_account_number: Optional[str] = None  # Agents only
    phone: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    @property
    def is_agent(self) -> bool:
        return self.role == UserRole.AGENT

    def contact_snapshot(self) -> dict:
        """Identity details copied onto invoices and payment records."""
        return {
            "id": self.user_id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
        }

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "name": self.name,
            "email": self.email,
            "role": self.role.value,
            "bank_account_number": self.bank_account_number,
            "phone": self.phone,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "User":
        return cls(
            user_id=data["user_id"],
            name=data["name"],
            email=data["email"],
            role=UserRole(data["role"]),
            bank_account_number=data.get("bank_account_number"),
            phone=data.get("phone"),
        )


class UserDirectory:
    """In-memory user directory with optional JSON persistence."""

    def __init__(self, persist_path: Optional[str] = None):
        self._users: dict[str, User] = {}
        self._lock = threading.RLock()
        self._persist_path = Path(persist_path) if persist_path else None

        if self._persist_path and self._persist_path.exists():
            self._load_from_file()

    def _save_to_file(self) -> None:
        if not self._persist_path:
            return

        data = {
            "users": {uid: u.to_dict() for uid, u in self._users.items()},
            "saved_at": datetime.utcnow().isoformat(),
        }
        self._persist_path.parent.mkdir(parents=True, exist_ok=True)
        self._persist_path.write_text(json.dumps(data, indent=2))

    def _load_from_file(self) -> None:
        try:
            data = json.loads(self._persist_path.read_text())
            for uid, user_data in data.get("users", {}).items():
                self._users[uid] = User.from_dict(user_data)
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            logger.warning("Could not load user data from %s: %s", self._persist_path, e)

    def add(
        self,
        name: str,
        email: str,
        role: UserRole,
        user_id: Optional[str] = None,
        bank_account_number: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> User:
        """
        Register a user.

        Emails are stored trimmed and lower-cased.

        Raises:
            ValueError: If the user ID is already registered
        """
        with self._lock:
            user_id = str(user_id) if user_id else f"USR-{uuid.uuid4().hex[:10].upper()}"
            if user_id in self._users:
                raise ValueError(f"User {user_id} already exists")

            user = User(
                user_id=user_id,
                name=name.strip(),
                email=email.strip().lower(),
                role=role,
                bank_account_number=bank_account_number,
                phone=phone,
            )
            self._users[user_id] = user
            self._save_to_file()
            return user

    def get(self, user_id: Optional[str]) -> Optional[User]:
        """Get a user by ID."""
        if user_id is None:
            return None
        with self._lock:
            return self._users.get(str(user_id))

    def get_by_email(self, email: str) -> Optional[User]:
        """Case-insensitive lookup by email."""
        needle = email.strip().lower()
        with self._lock:
            for user in self._users.values():
                if user.email == needle:
                    return user
        return None

    def list_by_role(self, role: UserRole) -> list[User]:
        with self._lock:
            return [u for u in self._users.values() if u.role == role]

    def list_all(self) -> list[User]:
        with self._lock:
            return list(self._users.values())
