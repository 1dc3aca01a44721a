# scan3d - Utils Package
from .config import PipelineConfig, ProcessingOptions, SUPPORTED_FORMATS
from .logger import setup_logger, ProgressLogger
from .progress import ProgressListenerRegistry

__all__ = [
    'PipelineConfig',
    'ProcessingOptions',
    'SUPPORTED_FORMATS',
    'setup_logger',
    'ProgressLogger',
    'ProgressListenerRegistry'
]
