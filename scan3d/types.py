"""
Core Data Types
================
Volumes, meshes and job records passed between the pipeline stages.

Every stage builds a new object from its input; arrays stored on these
types are marked read-only so a later stage cannot write into an earlier
stage's buffer.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Dict, Optional, Tuple

import numpy as np

if TYPE_CHECKING:
    from .utils.config import ProcessingOptions

# Quantized tissue classes: background, soft tissue, dense tissue, bone-equivalent
TISSUE_LEVELS = (0.0, 85.0, 170.0, 255.0)
TISSUE_NAMES = ("background", "soft_tissue", "dense_tissue", "bone")


def _frozen(array: np.ndarray) -> np.ndarray:
    array.setflags(write=False)
    return array


@dataclass(eq=False)
class MedicalVolume:
    """Regular 3D scalar grid stored as a flat x-fastest array."""

    width: int
    height: int
    depth: int
    voxels: np.ndarray  # float32 [depth * height * width]
    spacing: Tuple[float, float, float] = (1.0, 1.0, 2.0)
    origin: Tuple[float, float, float] = (0.0, 0.0, 0.0)

    def __post_init__(self):
        if min(self.width, self.height, self.depth) <= 0:
            raise ValueError(
                f"Volume dimensions must be positive, got "
                f"{self.width}x{self.height}x{self.depth}"
            )
        voxels = np.array(self.voxels, dtype=np.float32).ravel()
        expected = self.width * self.height * self.depth
        if voxels.size != expected:
            raise ValueError(f"Expected {expected} voxels, got {voxels.size}")
        self.voxels = _frozen(voxels)
        self.spacing = tuple(float(s) for s in self.spacing)
        self.origin = tuple(float(o) for o in self.origin)

    @property
    def shape(self) -> Tuple[int, int, int]:
        """(depth, height, width), the shape of `grid`."""
        return (self.depth, self.height, self.width)

    @property
    def grid(self) -> np.ndarray:
        """Read-only [z, y, x] view of the voxels."""
        return self.voxels.reshape(self.shape)

    def voxel_index(self, x: int, y: int, z: int) -> int:
        return z * self.width * self.height + y * self.width + x

    def is_finite(self) -> bool:
        return bool(np.isfinite(self.voxels).all())

    def with_voxels(self, voxels: np.ndarray) -> "MedicalVolume":
        """New volume with the same geometry and different voxel values."""
        return MedicalVolume(
            width=self.width,
            height=self.height,
            depth=self.depth,
            voxels=voxels,
            spacing=self.spacing,
            origin=self.origin,
        )


@dataclass(eq=False)
class SegmentedVolume(MedicalVolume):
    """Volume whose voxels are quantized to TISSUE_LEVELS."""

    threshold: float = 0.0

    def class_counts(self) -> Dict[str, int]:
        counts = {}
        for name, level in zip(TISSUE_NAMES, TISSUE_LEVELS):
            counts[name] = int(np.count_nonzero(self.voxels == level))
        return counts


@dataclass(eq=False)
class BoundingBox:
    """Axis-aligned box given by its min and max corners."""

    min: np.ndarray
    max: np.ndarray

    def contains(self, points: np.ndarray, tol: float = 1e-9) -> bool:
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        if len(points) == 0:
            return True
        return bool(
            (points >= self.min - tol).all() and (points <= self.max + tol).all()
        )

    @property
    def size(self) -> np.ndarray:
        return self.max - self.min

    def to_dict(self) -> dict:
        return {"min": self.min.tolist(), "max": self.max.tolist()}


def compute_bounding_box(vertices: np.ndarray) -> BoundingBox:
    """Component-wise min/max of the vertices; the origin for an empty set."""
    vertices = np.asarray(vertices, dtype=np.float64).reshape(-1, 3)
    if len(vertices) == 0:
        return BoundingBox(min=np.zeros(3), max=np.zeros(3))
    return BoundingBox(min=vertices.min(axis=0), max=vertices.max(axis=0))


@dataclass(eq=False)
class Mesh:
    """
    Triangulated surface with one unit normal per face.

    Degenerate faces carry the zero vector as their normal.
    """

    vertices: np.ndarray  # float64 [N, 3]
    faces: np.ndarray  # int64 [M, 3]
    normals: np.ndarray  # float64 [M, 3]
    bounding_box: Optional[BoundingBox] = None

    def __post_init__(self):
        vertices = np.array(self.vertices, dtype=np.float64).reshape(-1, 3)
        faces = np.array(self.faces, dtype=np.int64).reshape(-1, 3)
        normals = np.array(self.normals, dtype=np.float64).reshape(-1, 3)

        if len(normals) != len(faces):
            raise ValueError(
                f"Expected one normal per face ({len(faces)}), got {len(normals)}"
            )
        if len(faces) and (faces.min() < 0 or faces.max() >= len(vertices)):
            raise ValueError("Face references a vertex index out of range")

        self.vertices = _frozen(vertices)
        self.faces = _frozen(faces)
        self.normals = _frozen(normals)
        if self.bounding_box is None:
            self.bounding_box = compute_bounding_box(vertices)

    @classmethod
    def empty(cls) -> "Mesh":
        return cls(
            vertices=np.empty((0, 3)),
            faces=np.empty((0, 3), dtype=np.int64),
            normals=np.empty((0, 3)),
        )

    @property
    def vertex_count(self) -> int:
        return len(self.vertices)

    @property
    def face_count(self) -> int:
        return len(self.faces)

    @property
    def is_empty(self) -> bool:
        return self.face_count == 0


class JobStage(str, Enum):
    """Orchestrator states in execution order, each with its progress milestone."""

    INITIALIZING = "initializing"
    VALIDATING = "validating"
    DOWNLOADING = "downloading"
    PREPROCESSING = "preprocessing"
    VOLUME_GENERATION = "volumeGeneration"
    FILTERING = "filtering"
    SEGMENTATION = "segmentation"
    MESH_GENERATION = "meshGeneration"
    OPTIMIZATION = "optimization"
    EXPORT = "export"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def milestone(self) -> int:
        return STAGE_MILESTONES[self]

    @property
    def is_terminal(self) -> bool:
        return self in (JobStage.COMPLETED, JobStage.FAILED)


STAGE_MILESTONES = {
    JobStage.INITIALIZING: 0,
    JobStage.VALIDATING: 5,
    JobStage.DOWNLOADING: 7,
    JobStage.PREPROCESSING: 20,
    JobStage.VOLUME_GENERATION: 35,
    JobStage.FILTERING: 50,
    JobStage.SEGMENTATION: 65,
    JobStage.MESH_GENERATION: 80,
    JobStage.OPTIMIZATION: 90,
    JobStage.EXPORT: 95,
    JobStage.COMPLETED: 100,
    JobStage.FAILED: -1,
}


@dataclass
class ImageMetadata:
    """What the decoder learned about the source image."""

    width: int
    height: int
    mode: str
    format: Optional[str] = None
    mime_type: Optional[str] = None
    modality: str = "MR"


@dataclass
class ReconstructionResult:
    """Artifacts and statistics of a completed job."""

    job_id: str
    exports: Dict[str, Path]
    threshold: float
    volume_shape: Tuple[int, int, int]
    mesh_statistics: dict = field(default_factory=dict)

    @property
    def primary_path(self) -> Path:
        """OBJ when it was requested, otherwise the first requested format."""
        if "obj" in self.exports:
            return self.exports["obj"]
        return next(iter(self.exports.values()))


@dataclass
class ConversionJob:
    """Mutable orchestration state for one reconstruction request."""

    job_id: str
    options: "ProcessingOptions"
    stage: JobStage = JobStage.INITIALIZING
    progress: int = 0
    error_message: Optional[str] = None
    result: Optional[ReconstructionResult] = None

    @property
    def is_terminal(self) -> bool:
        return self.stage.is_terminal

    @property
    def is_failed(self) -> bool:
        return self.stage is JobStage.FAILED
