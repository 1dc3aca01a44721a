# scan3d - 2D image to 3D mesh reconstruction
from .errors import (
    ReconstructionError,
    InvalidInputError,
    StagingIOError,
    NumericDegeneracyError,
    AlreadyInProgressError
)
from .types import (
    MedicalVolume,
    SegmentedVolume,
    Mesh,
    BoundingBox,
    JobStage,
    ConversionJob,
    ReconstructionResult
)
from .utils.config import PipelineConfig, ProcessingOptions
from .pipeline import ReconstructionPipeline

__version__ = "1.0.0"

__all__ = [
    'ReconstructionPipeline',
    'PipelineConfig',
    'ProcessingOptions',
    'MedicalVolume',
    'SegmentedVolume',
    'Mesh',
    'BoundingBox',
    'JobStage',
    'ConversionJob',
    'ReconstructionResult',
    'ReconstructionError',
    'InvalidInputError',
    'StagingIOError',
    'NumericDegeneracyError',
    'AlreadyInProgressError'
]
