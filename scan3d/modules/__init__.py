# scan3d - Modules Package
from .image_loader import MedicalImageLoader
from .storage import LocalObjectStorage, ObjectInfo, download_to_staging
from .volume_synthesizer import VolumeSynthesizer
from .enhancement import EnhancementFilter
from .segmentation import SegmentationEngine
from .surface_extractor import SurfaceExtractor
from .mesh_optimizer import MeshOptimizer
from .exporter import MeshExporter, MeshValidator, serialize_mesh, parse_mesh

__all__ = [
    'MedicalImageLoader',
    'LocalObjectStorage',
    'ObjectInfo',
    'download_to_staging',
    'VolumeSynthesizer',
    'EnhancementFilter',
    'SegmentationEngine',
    'SurfaceExtractor',
    'MeshOptimizer',
    'MeshExporter',
    'MeshValidator',
    'serialize_mesh',
    'parse_mesh'
]
