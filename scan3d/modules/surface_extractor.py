"""
Surface Extraction Module
==========================
Extracts a triangulated iso-surface from a segmented volume.

Uses the marching cubes implementation of scikit-image (Lewiner's variant
with the full 256-case tables), which interpolates every crossing on the
cell edge it lies on. Neighbouring cells share those vertices, so the
surface has no cracks between cells.

A cell contributes triangles only when its eight corners straddle the
iso-value: at least one corner above it and at least one at or below it.
"""

import logging

import numpy as np
from skimage import measure

from ..errors import NumericDegeneracyError
from ..types import Mesh, MedicalVolume

logger = logging.getLogger("scan3d.modules.surface_extractor")

# Faces whose doubled area is below this are treated as degenerate
DEGENERATE_AREA_EPS = 1e-12


def compute_face_normals(vertices: np.ndarray, faces: np.ndarray) -> np.ndarray:
    """
    Unit normal of every face from cross(v1 - v0, v2 - v0).

    Zero-area faces get the zero vector instead of NaN.
    """
    vertices = np.asarray(vertices, dtype=np.float64).reshape(-1, 3)
    faces = np.asarray(faces, dtype=np.int64).reshape(-1, 3)
    if len(faces) == 0:
        return np.empty((0, 3), dtype=np.float64)

    v0 = vertices[faces[:, 0]]
    cross = np.cross(vertices[faces[:, 1]] - v0, vertices[faces[:, 2]] - v0)
    lengths = np.linalg.norm(cross, axis=1)

    normals = np.zeros_like(cross)
    nonzero = lengths > DEGENERATE_AREA_EPS
    normals[nonzero] = cross[nonzero] / lengths[nonzero, np.newaxis]
    return normals


def degenerate_faces(vertices: np.ndarray, faces: np.ndarray) -> np.ndarray:
    """Boolean mask of faces with (numerically) zero area."""
    if len(faces) == 0:
        return np.zeros(0, dtype=bool)
    v0 = vertices[faces[:, 0]]
    cross = np.cross(vertices[faces[:, 1]] - v0, vertices[faces[:, 2]] - v0)
    return np.linalg.norm(cross, axis=1) <= DEGENERATE_AREA_EPS


def compact_mesh(vertices: np.ndarray, faces: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Drop vertices no face references and reindex the faces."""
    if len(faces) == 0:
        return np.empty((0, 3), dtype=np.float64), np.empty((0, 3), dtype=np.int64)
    used, inverse = np.unique(faces, return_inverse=True)
    return vertices[used], inverse.reshape(-1, 3).astype(np.int64)


def count_straddling_cells(grid: np.ndarray, iso_value: float) -> int:
    """
    Number of 2x2x2 cells with corners on both sides of the iso-value.

    Args:
        grid: [z, y, x] scalar field
        iso_value: Corners strictly above it count as inside
    """
    if min(grid.shape) < 2:
        return 0
    above = np.asarray(grid) > iso_value
    d, h, w = above.shape
    inside_corners = np.zeros((d - 1, h - 1, w - 1), dtype=np.uint8)
    for dz in (0, 1):
        for dy in (0, 1):
            for dx in (0, 1):
                inside_corners += above[dz:d - 1 + dz, dy:h - 1 + dy, dx:w - 1 + dx]
    return int(np.count_nonzero((inside_corners > 0) & (inside_corners < 8)))


def _gradient_at(grid: np.ndarray, indices: np.ndarray) -> np.ndarray:
    """
    Central-difference gradient (x, y, z order) at integer voxel indices.

    Args:
        grid: [z, y, x] field
        indices: (K, 3) array of (x, y, z) indices inside the grid
    """
    d, h, w = grid.shape
    x, y, z = indices[:, 0], indices[:, 1], indices[:, 2]
    gx = grid[z, y, np.minimum(x + 1, w - 1)] - grid[z, y, np.maximum(x - 1, 0)]
    gy = grid[z, np.minimum(y + 1, h - 1), x] - grid[z, np.maximum(y - 1, 0), x]
    gz = grid[np.minimum(z + 1, d - 1), y, x] - grid[np.maximum(z - 1, 0), y, x]
    return np.stack([gx, gy, gz], axis=1).astype(np.float64)


class SurfaceExtractor:
    """
    Marching cubes surface extraction producing outward-facing triangles.

    Outward means toward lower intensity: the high-valued tissue is the
    inside of the surface.
    """

    def __init__(self, config):
        """
        Initialize the extractor.

        Args:
            config: PipelineConfig object with settings
        """
        self.config = config

    def extract(self, volume: MedicalVolume, iso_value: float = None) -> Mesh:
        """
        Extract the iso-surface of a (segmented) volume.

        Args:
            volume: Usually the SegmentedVolume from the segmentation stage
            iso_value: Boundary between outside and inside; defaults to
                the configured value

        Returns:
            Mesh in physical coordinates (spacing and origin applied); an
            empty mesh when no cell straddles the iso-value

        Raises:
            NumericDegeneracyError: If the volume or the resulting vertices
                contain non-finite values
        """
        if iso_value is None:
            iso_value = self.config.iso_value

        # marching_cubes needs a writeable float32 buffer
        grid = np.array(volume.grid, dtype=np.float32)
        if not np.isfinite(grid).all():
            raise NumericDegeneracyError(
                "Surface extraction received non-finite voxel values", stage="meshGeneration"
            )

        if min(grid.shape) < 2:
            logger.info(f"Volume {volume.shape} is too thin for surface extraction")
            return Mesh.empty()

        low, high = float(grid.min()), float(grid.max())
        if not (low <= iso_value < high):
            logger.info(
                f"Iso-value {iso_value} outside volume range [{low}, {high}]; empty mesh"
            )
            return Mesh.empty()

        spacing_xyz = np.asarray(volume.spacing, dtype=np.float64)
        origin_xyz = np.asarray(volume.origin, dtype=np.float64)

        verts_zyx, faces, _, _ = measure.marching_cubes(
            grid,
            level=iso_value,
            spacing=tuple(spacing_xyz[::-1]),
            allow_degenerate=False
        )

        vertices = verts_zyx[:, ::-1].astype(np.float64) + origin_xyz
        faces = np.asarray(faces, dtype=np.int64)

        if not np.isfinite(vertices).all():
            raise NumericDegeneracyError(
                "Surface extraction produced non-finite vertices", stage="meshGeneration"
            )

        degenerate = degenerate_faces(vertices, faces)
        if degenerate.any():
            logger.debug(f"Dropping {int(degenerate.sum())} degenerate triangles")
            faces = faces[~degenerate]
        vertices, faces = compact_mesh(vertices, faces)

        faces = self._orient_outward(grid, vertices, faces, spacing_xyz, origin_xyz)
        normals = compute_face_normals(vertices, faces)

        mesh = Mesh(vertices=vertices, faces=faces, normals=normals)
        logger.info(
            f"Extracted mesh at iso-value {iso_value}: "
            f"{mesh.vertex_count} vertices, {mesh.face_count} triangles"
        )
        return mesh

    def _orient_outward(
        self,
        grid: np.ndarray,
        vertices: np.ndarray,
        faces: np.ndarray,
        spacing_xyz: np.ndarray,
        origin_xyz: np.ndarray
    ) -> np.ndarray:
        """
        Flip the winding of every face when the normals point uphill.

        The marching cubes output is consistently wound, so one global
        decision, taken by summing normal . gradient over all faces,
        orients the whole surface.
        """
        if len(faces) == 0:
            return faces

        normals = compute_face_normals(vertices, faces)
        centroids = vertices[faces].mean(axis=1)

        d, h, w = grid.shape
        indices = np.rint((centroids - origin_xyz) / spacing_xyz).astype(np.int64)
        indices = np.clip(indices, 0, [w - 1, h - 1, d - 1])
        gradient = _gradient_at(grid, indices)

        alignment = float(np.einsum("ij,ij->", normals, gradient))
        if alignment > 0:
            return faces[:, [0, 2, 1]]
        return faces
