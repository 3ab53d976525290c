# maison/models/ip_label.py
from __future__ import annotations

from typing import Any, Dict

from maison.models import db, utcnow


class IPLabel(db.Model):
    """Operator tag for an IP ("Studio Dubai", "Agency", ...). One per IP."""

    __tablename__ = "ip_labels"

    id = db.Column(db.Integer, primary_key=True)
    ip_address = db.Column(db.String(45), nullable=False, unique=True, index=True)
    label = db.Column(db.String(120), nullable=False)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<IPLabel {self.ip_address}={self.label}>"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "ip_address": self.ip_address,
            "label": self.label,
            "notes": self.notes,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
