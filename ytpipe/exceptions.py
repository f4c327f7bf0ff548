"""
Defines custom exceptions used throughout the service.

The HTTP layer maps these to status codes; the job supervisor turns spawn and
pipeline failures into a failed job instead of raising them to callers.
"""

class JobError(Exception):
    """Base class for job lifecycle errors."""
    pass

class InvalidFormatError(JobError):
    """Requested output format is not supported."""
    pass

class InvalidRequestError(JobError):
    """Request was rejected before a job was created."""
    pass

class ResolutionError(JobError):
    """Title lookup failed. Never leaves the metadata resolver."""
    pass

class SpawnError(JobError):
    """A pipeline subprocess could not be started."""
    pass

class PipelineError(JobError):
    """A pipeline subprocess exited with an error or was killed."""
    pass

class JobNotFoundError(JobError):
    """Job id is unknown or has already been cleaned up."""
    pass

class JobNotReadyError(JobError):
    """Output was requested before the pipeline could serve it."""
    pass

class OutputClaimedError(JobNotReadyError):
    """Another consumer is already streaming the job's output."""
    pass

class ServiceBusyError(JobError):
    """Too many jobs are running to admit another one."""
    pass
