"""Enrollment of clients into workflows."""
from careflow.enrollment.locks import KeyedLock
from careflow.enrollment.manager import EnrollmentManager, EnrollmentOutcome

__all__ = ["KeyedLock", "EnrollmentManager", "EnrollmentOutcome"]
