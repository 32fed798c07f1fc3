"""
Enhancement Module

Job model, job stores and the services that submit and query jobs.
"""

from imagelift.modules.enhancement.models import Job, JobStatus, JobView, StageDescriptor

__all__ = ["Job", "JobStatus", "JobView", "StageDescriptor"]
