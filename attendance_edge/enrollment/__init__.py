"""Enrollment snapshots for face matching."""

from .store import EnrolledIdentity, EnrollmentSnapshot, EnrollmentStore, FaceIndex
from .sync import EnrollmentSync

__all__ = ["EnrolledIdentity", "EnrollmentSnapshot", "EnrollmentStore", "FaceIndex", "EnrollmentSync"]
