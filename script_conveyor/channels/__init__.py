"""Live progress push channels."""

from .manager import ChannelManager, Sink, job_key, subject_key

__all__ = ["ChannelManager", "Sink", "job_key", "subject_key"]
