"""
Mesh Export Module
===================
Serializes meshes to text interchange formats and reads them back.

Supported formats:
- OBJ (Wavefront) - vertices, per-face normals, 1-based faces
- STL (ASCII) - one facet block per triangle
- PLY (ASCII) - vertex and face elements

Output is deterministic: the same mesh always serializes to the same bytes.
"""

import logging
import os
from pathlib import Path

import numpy as np
import trimesh

from ..errors import InvalidInputError, StagingIOError
from ..types import Mesh
from .surface_extractor import compute_face_normals

logger = logging.getLogger("scan3d.modules.exporter")


def _fmt(values) -> str:
    return " ".join(f"{float(v):.6f}" for v in values)


def _solid_name(name: str) -> str:
    return "_".join(str(name).split()) or "mesh"


def write_obj(mesh: Mesh, name: str = "mesh") -> str:
    """OBJ text with one `vn` per face and `f v//n` references."""
    lines = [
        f"# scan3d OBJ export: {name}",
        f"# Vertices: {mesh.vertex_count}",
        f"# Faces: {mesh.face_count}",
        ""
    ]
    lines.extend(f"v {_fmt(v)}" for v in mesh.vertices)
    lines.append("")
    lines.extend(f"vn {_fmt(n)}" for n in mesh.normals)
    lines.append("")
    # OBJ indices are 1-based; normal k belongs to face k
    for k, face in enumerate(mesh.faces, start=1):
        lines.append(f"f {face[0] + 1}//{k} {face[1] + 1}//{k} {face[2] + 1}//{k}")
    return "\n".join(lines) + "\n"


def write_stl(mesh: Mesh, name: str = "mesh") -> str:
    """ASCII STL text."""
    solid = _solid_name(name)
    lines = [f"solid {solid}"]
    for face, normal in zip(mesh.faces, mesh.normals):
        lines.append(f"  facet normal {_fmt(normal)}")
        lines.append("    outer loop")
        for index in face:
            lines.append(f"      vertex {_fmt(mesh.vertices[index])}")
        lines.append("    endloop")
        lines.append("  endfacet")
    lines.append(f"endsolid {solid}")
    return "\n".join(lines) + "\n"


def write_ply(mesh: Mesh, name: str = "mesh") -> str:
    """ASCII PLY text."""
    lines = [
        "ply",
        "format ascii 1.0",
        f"comment scan3d mesh: {name}",
        f"element vertex {mesh.vertex_count}",
        "property float x",
        "property float y",
        "property float z",
        f"element face {mesh.face_count}",
        "property list uchar int vertex_indices",
        "end_header"
    ]
    lines.extend(_fmt(v) for v in mesh.vertices)
    lines.extend(f"3 {face[0]} {face[1]} {face[2]}" for face in mesh.faces)
    return "\n".join(lines) + "\n"


WRITERS = {
    "obj": write_obj,
    "stl": write_stl,
    "ply": write_ply,
}


def serialize_mesh(mesh: Mesh, fmt: str, name: str = "mesh") -> str:
    """
    Serialize a mesh to one of the supported text formats.

    Raises:
        InvalidInputError: If the format is not supported
    """
    fmt = fmt.lower().lstrip(".")
    if fmt not in WRITERS:
        raise InvalidInputError(f"Unsupported export format: {fmt}")
    return WRITERS[fmt](mesh, name)


def _fan(indices: list) -> list:
    """Triangulate a polygon given as a vertex index list."""
    return [[indices[0], indices[i], indices[i + 1]] for i in range(1, len(indices) - 1)]


def parse_obj(text: str) -> tuple[np.ndarray, np.ndarray]:
    vertices, faces = [], []
    for line in text.splitlines():
        parts = line.split()
        if not parts:
            continue
        if parts[0] == "v":
            vertices.append([float(p) for p in parts[1:4]])
        elif parts[0] == "f":
            indices = []
            for token in parts[1:]:
                index = int(token.split("/")[0])
                # Negative indices count back from the last vertex read
                indices.append(index - 1 if index > 0 else len(vertices) + index)
            faces.extend(_fan(indices))
    return np.array(vertices, dtype=np.float64).reshape(-1, 3), np.array(faces, dtype=np.int64).reshape(-1, 3)


def parse_stl(text: str) -> tuple[np.ndarray, np.ndarray]:
    """
    Read ASCII STL, merging repeated coordinates.

    Vertices are numbered in order of first appearance.
    """
    index_of = {}
    vertices, corners = [], []
    for line in text.splitlines():
        parts = line.split()
        if len(parts) == 4 and parts[0] == "vertex":
            key = tuple(float(p) for p in parts[1:4])
            if key not in index_of:
                index_of[key] = len(vertices)
                vertices.append(key)
            corners.append(index_of[key])
    if len(corners) % 3:
        raise InvalidInputError("STL facet with a vertex count other than 3")
    return np.array(vertices, dtype=np.float64).reshape(-1, 3), np.array(corners, dtype=np.int64).reshape(-1, 3)


def parse_ply(text: str) -> tuple[np.ndarray, np.ndarray]:
    lines = text.splitlines()
    if not lines or lines[0].strip() != "ply":
        raise InvalidInputError("Not a PLY file")

    counts = {}
    body_start = None
    for i, line in enumerate(lines):
        parts = line.split()
        if parts[:1] == ["format"] and parts[1] != "ascii":
            raise InvalidInputError(f"Only ASCII PLY is supported, got {parts[1]}")
        if parts[:1] == ["element"]:
            counts[parts[1]] = int(parts[2])
        if parts[:1] == ["end_header"]:
            body_start = i + 1
            break
    if body_start is None:
        raise InvalidInputError("PLY header has no end_header")

    n_vertices = counts.get("vertex", 0)
    n_faces = counts.get("face", 0)
    body = [line.split() for line in lines[body_start:] if line.strip()]

    vertices = [[float(p) for p in row[:3]] for row in body[:n_vertices]]
    faces = []
    for row in body[n_vertices:n_vertices + n_faces]:
        count = int(row[0])
        faces.extend(_fan([int(p) for p in row[1:1 + count]]))
    return np.array(vertices, dtype=np.float64).reshape(-1, 3), np.array(faces, dtype=np.int64).reshape(-1, 3)


PARSERS = {
    "obj": parse_obj,
    "stl": parse_stl,
    "ply": parse_ply,
}


def parse_mesh(text: str, fmt: str) -> tuple[np.ndarray, np.ndarray]:
    """Read vertices and faces back from serialized text."""
    fmt = fmt.lower().lstrip(".")
    if fmt not in PARSERS:
        raise InvalidInputError(f"Unsupported mesh format: {fmt}")
    return PARSERS[fmt](text)


class MeshExporter:
    """
    Writes meshes to ``<job_id>.<format>`` files.
    """

    def __init__(self, config):
        """
        Initialize the exporter.

        Args:
            config: PipelineConfig object with settings
        """
        self.config = config

    def serialize(self, mesh: Mesh, fmt: str) -> str:
        return serialize_mesh(mesh, fmt, self.config.mesh_name)

    def export(
        self,
        mesh: Mesh,
        output_dir: str | Path,
        job_id: str,
        formats: list[str] = None
    ) -> dict:
        """
        Export the mesh to every requested format.

        Either all files are written or none are: on a write failure the
        files already produced by this call are removed.

        Args:
            mesh: Mesh to export
            output_dir: Directory to save exported files
            job_id: Base name of the files
            formats: Formats to export to (default: obj and stl)

        Returns:
            Dictionary mapping format to exported file path

        Raises:
            StagingIOError: If a file cannot be written
        """
        output_dir = Path(output_dir)
        if formats is None:
            formats = ["obj", "stl"]

        # Serialize everything first so an unsupported format writes nothing
        contents = {fmt: self.serialize(mesh, fmt) for fmt in formats}

        exports = {}
        try:
            output_dir.mkdir(parents=True, exist_ok=True)
            for fmt, content in contents.items():
                export_path = output_dir / f"{job_id}.{fmt}"
                partial_path = export_path.with_name(export_path.name + ".part")
                partial_path.write_text(content)
                os.replace(partial_path, export_path)
                exports[fmt] = export_path
                logger.info(f"Exported: {export_path.name}")
        except OSError as e:
            self.remove(list(exports.values()) + [output_dir / f"{job_id}.{fmt}.part" for fmt in contents])
            raise StagingIOError(f"Error exporting {job_id}: {e}") from e

        return exports

    @staticmethod
    def remove(paths):
        """Delete exported files, ignoring ones that are already gone."""
        for path in paths:
            try:
                Path(path).unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"Failed to remove {path}: {e}")

    def load(self, path: str | Path) -> tuple[np.ndarray, np.ndarray]:
        """Load vertices and faces from an exported file."""
        path = Path(path)
        try:
            text = path.read_text()
        except OSError as e:
            raise StagingIOError(f"Cannot read {path}: {e}") from e
        return parse_mesh(text, path.suffix)


class MeshValidator:
    """
    Checks mesh invariants and gathers surface statistics.
    """

    NORMAL_TOLERANCE = 1e-6

    def validate(self, mesh: Mesh) -> dict:
        """
        Validate a mesh.

        Args:
            mesh: Mesh to check

        Returns:
            Dictionary of validation results
        """
        results = {
            "valid": True,
            "issues": [],
            "statistics": {
                "vertices": mesh.vertex_count,
                "faces": mesh.face_count,
                "bounding_box": mesh.bounding_box.to_dict()
            }
        }

        if mesh.is_empty:
            results["issues"].append("Mesh is empty")
            return results

        if not np.isfinite(mesh.vertices).all() or not np.isfinite(mesh.normals).all():
            results["issues"].append("Mesh has non-finite coordinates")
            results["valid"] = False

        if mesh.faces.min() < 0 or mesh.faces.max() >= mesh.vertex_count:
            results["issues"].append("Face references a missing vertex")
            results["valid"] = False

        lengths = np.linalg.norm(mesh.normals, axis=1)
        unit = np.abs(lengths - 1.0) <= self.NORMAL_TOLERANCE
        zero = lengths == 0.0
        if not (unit | zero).all():
            results["issues"].append("Mesh has normals that are neither unit length nor zero")
            results["valid"] = False
        results["statistics"]["degenerate_faces"] = int(zero.sum())

        if not mesh.bounding_box.contains(mesh.vertices):
            results["issues"].append("Bounding box does not contain every vertex")
            results["valid"] = False

        recomputed = compute_face_normals(mesh.vertices, mesh.faces)
        if not np.allclose(recomputed, mesh.normals, atol=1e-6):
            results["issues"].append("Normals disagree with the face winding")

        tm = trimesh.Trimesh(
            vertices=np.array(mesh.vertices),
            faces=np.array(mesh.faces),
            process=False
        )
        results["statistics"].update({
            "volume": float(tm.volume),
            "surface_area": float(tm.area),
            "is_watertight": bool(tm.is_watertight),
            "euler_number": int(tm.euler_number)
        })

        if not tm.is_watertight:
            results["issues"].append("Mesh is not watertight")

        return results
