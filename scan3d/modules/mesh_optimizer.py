"""
Mesh Optimization Module
=========================
Optional clean-up pass run between surface extraction and export.

Steps:
1. Merge duplicate vertices and drop degenerate / duplicate triangles
2. Quadric decimation to a fraction of the original face count
3. Taubin smoothing (shrink-free Laplacian smoothing)
4. Fresh per-face normals and bounding box
"""

import logging

import numpy as np
import trimesh
from trimesh import smoothing

from ..errors import NumericDegeneracyError
from ..types import Mesh
from .surface_extractor import compact_mesh, compute_face_normals, degenerate_faces

logger = logging.getLogger("scan3d.modules.mesh_optimizer")


class MeshOptimizer:
    """
    Decimates and smooths meshes with trimesh.
    """

    def __init__(self, config):
        """
        Initialize the optimizer.

        Args:
            config: PipelineConfig object with settings
        """
        self.config = config

    def optimize(self, mesh: Mesh) -> Mesh:
        """
        Return an optimized copy of the mesh.

        Args:
            mesh: Mesh from surface extraction

        Returns:
            New Mesh; an empty mesh is returned unchanged
        """
        if mesh.is_empty:
            return mesh

        tm = self._post_process_mesh(self._to_trimesh(mesh))

        target_faces = int(len(tm.faces) * self.config.decimation_ratio)
        if (
            self.config.decimation_ratio < 1.0
            and len(tm.faces) >= self.config.min_faces_for_decimation
            and target_faces >= 4
        ):
            tm = self.decimate(tm, target_faces)

        if self.config.smoothing_iterations > 0:
            tm = self.smooth(tm, self.config.smoothing_iterations)

        optimized = self._to_mesh(tm)
        logger.info(
            f"Optimized mesh: {mesh.face_count} -> {optimized.face_count} triangles, "
            f"{mesh.vertex_count} -> {optimized.vertex_count} vertices"
        )
        return optimized

    def _to_trimesh(self, mesh: Mesh) -> trimesh.Trimesh:
        # Copies: trimesh edits its arrays in place, the Mesh arrays are read-only
        return trimesh.Trimesh(
            vertices=np.array(mesh.vertices),
            faces=np.array(mesh.faces),
            process=False
        )

    def _to_mesh(self, tm: trimesh.Trimesh) -> Mesh:
        vertices = np.asarray(tm.vertices, dtype=np.float64)
        faces = np.asarray(tm.faces, dtype=np.int64)

        if not np.isfinite(vertices).all():
            raise NumericDegeneracyError(
                "Mesh optimization produced non-finite vertices", stage="optimization"
            )

        faces = faces[~degenerate_faces(vertices, faces)]
        vertices, faces = compact_mesh(vertices, faces)
        return Mesh(vertices=vertices, faces=faces, normals=compute_face_normals(vertices, faces))

    def _post_process_mesh(self, tm: trimesh.Trimesh) -> trimesh.Trimesh:
        """Remove duplicated vertices and degenerate or duplicated triangles."""
        tm.merge_vertices()
        tm.update_faces(tm.nondegenerate_faces())
        tm.update_faces(tm.unique_faces())
        tm.remove_unreferenced_vertices()
        return tm

    def decimate(self, tm: trimesh.Trimesh, target_faces: int) -> trimesh.Trimesh:
        """
        Reduce mesh complexity while preserving shape.

        Args:
            tm: Mesh to decimate
            target_faces: Target number of faces

        Returns:
            Decimated mesh
        """
        simplified = tm.simplify_quadric_decimation(face_count=target_faces)
        logger.debug(f"Decimated {len(tm.faces)} -> {len(simplified.faces)} triangles")
        return simplified

    def smooth(self, tm: trimesh.Trimesh, iterations: int = 3) -> trimesh.Trimesh:
        """
        Smooth a mesh with Taubin's lambda/mu filter (no volume shrinkage).

        Args:
            tm: Mesh to smooth (modified in place)
            iterations: Number of smoothing iterations

        Returns:
            The smoothed mesh
        """
        smoothing.filter_taubin(tm, iterations=iterations)
        return tm
