"""Enrollment model.

Owned by the registration side of the platform. The billing engine only
reads the current status and writes status / reason / end_date through
tuition_sync.services.enrollment_store.
"""

import uuid

from tuition_sync.extensions import db


class Enrollment(db.Model):
    __tablename__ = "enrollments"

    # -- Valid statuses --
    STATUSES = [
        "REGISTERED",
        "ENROLLED",
        "ON_LEAVE",
        "WITHDRAWN",
        "COMPLETED",
        "SUSPENDED",
    ]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    profile_id = db.Column(db.String(255), nullable=False, index=True)
    program = db.Column(db.String(20), nullable=False)  # mahad | dugsi
    status = db.Column(db.String(20), nullable=False, default="REGISTERED")
    reason = db.Column(db.Text, nullable=True)
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def __repr__(self):
        return f"<Enrollment profile={self.profile_id} ({self.status})>"
