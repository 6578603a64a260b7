"""
Property Repository - Storage for Property Records

In-memory storage with optional JSON file persistence. Properties are looked
up by ID or by slug, matching the ``/properties/{idOrSlug}`` route shape.
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional

from core.settlement.schema import Property, SalesStatus


logger = logging.getLogger(__name__)


# =============================================================================
# Repository
# =============================================================================


class PropertyRepository:
    """
    Repository for property records.

    All reads and writes go through one re-entrant lock so that request
    handlers and background tasks can share an instance.
    """

    def __init__(self, persist_path: Optional[str] = None):
        """
        Initialise repository.

        Args:
            persist_path: Optional path to persist data to JSON file
        """
        self._properties: dict[str, Property] = {}
        self._lock = threading.RLock()
        self._persist_path = Path(persist_path) if persist_path else None

        if self._persist_path and self._persist_path.exists():
            self._load_from_file()

    def _save_to_file(self) -> None:
        """Persist data to file."""
        if not self._persist_path:
            return

        data = {
            "properties": {
                pid: prop.to_dict() for pid, prop in self._properties.items()
            },
            "saved_at": datetime.utcnow().isoformat(),
        }

        self._persist_path.parent.mkdir(parents=True, exist_ok=True)
        self._persist_path.write_text(json.dumps(data, indent=2))

    def _load_from_file(self) -> None:
        """Load data from file."""
        try:
            data = json.loads(self._persist_path.read_text())
            for pid, prop_data in data.get("properties", {}).items():
                self._properties[pid] = Property.from_dict(prop_data)
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            logger.warning("Could not load property data from %s: %s", self._persist_path, e)

    # =========================================================================
    # CRUD Operations
    # =========================================================================

    def add(self, prop: Property) -> Property:
        """
        Add a new property.

        Raises:
            ValueError: If the property ID or slug is already taken
        """
        with self._lock:
            if prop.property_id in self._properties:
                raise ValueError(f"Property {prop.property_id} already exists")
            if self._find_by_slug(prop.slug) is not None:
                raise ValueError(f"Slug {prop.slug!r} is already in use")
            self._properties[prop.property_id] = prop
            self._save_to_file()
            return prop

    def save(self, prop: Property) -> Property:
        """Insert or replace a property and stamp ``updated_at``."""
        with self._lock:
            prop.updated_at = datetime.utcnow()
            self._properties[prop.property_id] = prop
            self._save_to_file()
            return prop

    def get(self, property_id: str) -> Optional[Property]:
        """Get a property by ID, including soft-deleted ones."""
        with self._lock:
            return self._properties.get(property_id)

    def get_by_ref(self, ref: str) -> Optional[Property]:
        """Resolve a property by ID first, then by slug."""
        with self._lock:
            prop = self._properties.get(ref)
            if prop is None:
                prop = self._find_by_slug(ref)
            return prop

    def _find_by_slug(self, slug: str) -> Optional[Property]:
        for prop in self._properties.values():
            if prop.slug == slug:
                return prop
        return None

    def soft_delete(self, property_id: str) -> bool:
        """Flag a property as deleted. Records are never removed."""
        with self._lock:
            prop = self._properties.get(property_id)
            if prop is None:
                return False
            prop.is_deleted = True
            self.save(prop)
            return True

    # =========================================================================
    # Query Operations
    # =========================================================================

    def list_all(self, include_deleted: bool = False) -> list[Property]:
        """Get all properties."""
        with self._lock:
            return [
                p for p in self._properties.values()
                if include_deleted or not p.is_deleted
            ]

    def list_by_sales_status(self, status: Optional[SalesStatus]) -> list[Property]:
        """Get live properties at a given sales status."""
        return [p for p in self.list_all() if p.sales_status == status]

    def list_by_agent(self, agent_id: str) -> list[Property]:
        """Get live properties where the agent is the acting agent."""
        return [p for p in self.list_all() if p.is_active_agent(agent_id)]

    def count(self) -> int:
        """Get total number of live properties."""
        return len(self.list_all())
