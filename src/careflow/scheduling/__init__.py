"""Delay scheduling."""
from careflow.scheduling.poller import ResumePoller

__all__ = ["ResumePoller"]
