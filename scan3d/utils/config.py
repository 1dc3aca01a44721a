"""
Pipeline Configuration
=======================
Configuration settings for the scan-to-mesh reconstruction pipeline.
"""

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Dict, Any, Tuple

import yaml

from ..errors import InvalidInputError

SUPPORTED_FORMATS = ("obj", "stl", "ply")
QUALITY_LEVELS = ("fast", "standard", "high")


@dataclass(frozen=True)
class ProcessingOptions:
    """
    Per-job options fixed at job start.

    `quality` only changes the resource budget (input resolution), never
    which algorithm runs.
    """

    quality: str = "standard"
    mesh_optimization: bool = True
    output_formats: Tuple[str, ...] = ("obj", "stl")

    def __post_init__(self):
        if self.quality not in QUALITY_LEVELS:
            raise InvalidInputError(
                f"Unknown quality '{self.quality}', expected one of {QUALITY_LEVELS}"
            )

        formats = self.output_formats
        if isinstance(formats, str):
            formats = (formats,)
        # Normalize to a lower-case tuple without duplicates, keeping order
        formats = tuple(dict.fromkeys(fmt.lower().lstrip(".") for fmt in formats))
        if not formats:
            raise InvalidInputError("At least one output format is required")
        unsupported = [fmt for fmt in formats if fmt not in SUPPORTED_FORMATS]
        if unsupported:
            raise InvalidInputError(
                f"Unsupported output format(s): {', '.join(unsupported)}"
            )
        object.__setattr__(self, "output_formats", formats)

    @classmethod
    def from_dict(cls, options: Dict[str, Any]) -> 'ProcessingOptions':
        """Create options from a dictionary, accepting the camelCase keys of the web layer."""
        aliases = {"meshOptimization": "mesh_optimization", "outputFormats": "output_formats"}
        normalized = {aliases.get(k, k): v for k, v in options.items()}
        return cls(**{k: v for k, v in normalized.items()
                      if k in cls.__dataclass_fields__})

    def to_dict(self) -> Dict[str, Any]:
        return {
            'quality': self.quality,
            'mesh_optimization': self.mesh_optimization,
            'output_formats': list(self.output_formats)
        }


@dataclass
class PipelineConfig:
    """Configuration for the reconstruction pipeline."""

    # Output and staging locations
    output_dir: str = "models"
    staging_dir: str = "uploads"
    log_file: str = None
    log_level: str = "INFO"

    # Number of jobs that may run at the same time
    max_workers: int = 2

    # Largest encoded image accepted (bytes)
    max_image_bytes: int = 50 * 1024 * 1024

    # Volume synthesis
    min_depth: int = 32
    max_depth: int = 64
    depth_divisor: int = 20
    depth_falloff: float = 0.05
    spacing: Tuple[float, float, float] = (1.0, 1.0, 2.0)  # x, y, z
    max_voxels: int = 64 * 512 * 512

    # Longest image side kept by preprocessing for each quality level
    quality_max_side: Dict[str, int] = field(default_factory=lambda: {
        'fast': 128,
        'standard': 256,
        'high': 512
    })

    # Enhancement filter
    gaussian_sigma: float = 1.0

    # Surface extraction (boundary between soft and dense tissue classes)
    iso_value: float = 128.0

    # Mesh optimization
    decimation_ratio: float = 0.8
    smoothing_iterations: int = 3
    min_faces_for_decimation: int = 64

    # Export
    mesh_name: str = "scan3d_mesh"

    def __post_init__(self):
        self.spacing = tuple(float(s) for s in self.spacing)
        if self.min_depth < 1 or self.max_depth < self.min_depth:
            raise ValueError(
                f"Invalid depth bounds: min_depth={self.min_depth}, max_depth={self.max_depth}"
            )
        if self.gaussian_sigma <= 0:
            raise ValueError("gaussian_sigma must be positive")
        if not 0.0 < self.decimation_ratio <= 1.0:
            raise ValueError("decimation_ratio must be in (0, 1]")

    def max_side_for(self, quality: str) -> int:
        """Longest in-plane side allowed for a quality level."""
        return self.quality_max_side.get(quality, self.quality_max_side['standard'])

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> 'PipelineConfig':
        """Create config from dictionary."""
        return cls(**{k: v for k, v in config_dict.items()
                     if k in cls.__dataclass_fields__})

    @classmethod
    def from_yaml(cls, config_path: str | Path) -> 'PipelineConfig':
        """
        Load configuration from a YAML file.

        Args:
            config_path: Path to YAML configuration file

        Returns:
            PipelineConfig with the file's values over the defaults

        Raises:
            FileNotFoundError: If config file doesn't exist
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(config_file, 'r') as f:
            config_dict = yaml.safe_load(f) or {}

        return cls.from_dict(config_dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary."""
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data['spacing'] = list(self.spacing)
        data['quality_max_side'] = dict(self.quality_max_side)
        return data
