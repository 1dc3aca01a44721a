"""
Pipeline Errors
================
Typed errors raised by the reconstruction stages.

Every stage surfaces one of these to the orchestrator, which records the
message on the job and transitions it to the failed state.
"""


class ReconstructionError(Exception):
    """Base class for all reconstruction failures."""

    def __init__(self, message: str, stage: str = None):
        super().__init__(message)
        self.message = message
        self.stage = stage

    def __str__(self):
        return self.message


class InvalidInputError(ReconstructionError):
    """Image bytes cannot be decoded, or decode to a zero-sized raster."""


class StagingIOError(ReconstructionError):
    """Reading, downloading or writing a staged artifact failed."""


class NumericDegeneracyError(ReconstructionError):
    """A stage produced non-finite values."""


class AlreadyInProgressError(ReconstructionError):
    """A start request was made for a job that is running or completed."""

    def __init__(self, job_id: str, stage: str = None):
        super().__init__(f"Job {job_id} is already {stage or 'in progress'}", stage)
        self.job_id = job_id
