"""Enrollment store: the engine's only door into profile enrollment state.

The engine depends on the EnrollmentStore interface; SqlEnrollmentStore is
the default, writing through db.session so enrollment updates commit or roll
back together with the subscription and assignment writes of the event.
"""

import logging
from typing import Protocol

from sqlalchemy import or_

from tuition_sync.extensions import db
from tuition_sync.models.billing import Program
from tuition_sync.models.enrollment import Enrollment

logger = logging.getLogger(__name__)

ENROLLED = "ENROLLED"
REGISTERED = "REGISTERED"
ON_LEAVE = "ON_LEAVE"
WITHDRAWN = "WITHDRAWN"
COMPLETED = "COMPLETED"


class EnrollmentStore(Protocol):
    def get_active_enrollment(self, profile_id, program=None): ...

    def update_enrollment_status(self, enrollment_id, status, reason=None,
                                 end_date=None): ...


class SqlEnrollmentStore:
    """EnrollmentStore backed by the enrollments table."""

    def get_active_enrollment(self, profile_id, program=None):
        """Latest enrollment of the profile that has not been completed.

        Withdrawn enrollments still count so a reactivated subscription can
        re-enroll the profile. With a program, only that program's
        enrollments are considered.
        """
        query = Enrollment.query.filter(
            Enrollment.profile_id == profile_id,
            or_(Enrollment.status.is_(None), Enrollment.status != COMPLETED),
        )
        if program is not None:
            query = query.filter(Enrollment.program == Program.parse(program).value)
        return (
            query
            .order_by(Enrollment.start_date.desc(), Enrollment.created_at.desc())
            .first()
        )

    def update_enrollment_status(self, enrollment_id, status, reason=None,
                                 end_date=None):
        enrollment = db.session.get(Enrollment, enrollment_id)
        if enrollment is None:
            raise LookupError(f"Enrollment not found: {enrollment_id}")

        old_status = enrollment.status
        enrollment.status = status
        if reason:
            enrollment.reason = reason
        if status == WITHDRAWN:
            if end_date is not None:
                enrollment.end_date = end_date
        else:
            enrollment.end_date = None
        db.session.flush()
        logger.info(
            f"Enrollment {enrollment_id} (profile {enrollment.profile_id}): "
            f"{old_status} -> {status}"
        )
