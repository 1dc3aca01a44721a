import io

import numpy as np
import pytest
from PIL import Image

from scan3d.modules.surface_extractor import compute_face_normals
from scan3d.types import MedicalVolume, Mesh
from scan3d.utils.config import PipelineConfig, ProcessingOptions


@pytest.fixture
def config(tmp_path):
    return PipelineConfig(
        output_dir=str(tmp_path / "models"),
        staging_dir=str(tmp_path / "uploads")
    )


@pytest.fixture
def fast_options():
    return ProcessingOptions(quality="fast", output_formats=("obj", "stl", "ply"))


@pytest.fixture
def make_png():
    """Encode an array as PNG bytes."""
    def _make(array):
        buffer = io.BytesIO()
        Image.fromarray(np.asarray(array)).save(buffer, format="PNG")
        return buffer.getvalue()
    return _make


def checkerboard(size=64, square=8):
    y, x = np.indices((size, size))
    return (((x // square) + (y // square)) % 2 * 255).astype(np.uint8)


@pytest.fixture
def checkerboard_raster():
    return checkerboard()


@pytest.fixture
def checkerboard_png(make_png):
    return make_png(checkerboard())


@pytest.fixture
def gray_png(make_png):
    return make_png(np.full((64, 64), 128, dtype=np.uint8))


@pytest.fixture
def make_sphere_volume():
    """Volume holding a ball of one intensity inside a field of another."""
    def _make(size=20, radius=6.0, inside=255.0, outside=0.0, spacing=(1.0, 1.0, 1.0), origin=(0.0, 0.0, 0.0)):
        z, y, x = np.indices((size, size, size), dtype=np.float64)
        center = (size - 1) / 2.0
        distance = np.sqrt((x - center) ** 2 + (y - center) ** 2 + (z - center) ** 2)
        grid = np.where(distance <= radius, inside, outside).astype(np.float32)
        return MedicalVolume(
            width=size,
            height=size,
            depth=size,
            voxels=grid.ravel(),
            spacing=spacing,
            origin=origin
        )
    return _make


@pytest.fixture
def tetrahedron():
    """Unit right tetrahedron with outward winding."""
    vertices = np.array([
        [0.0, 0.0, 0.0],
        [1.0, 0.0, 0.0],
        [0.0, 1.0, 0.0],
        [0.0, 0.0, 1.0],
    ])
    faces = np.array([
        [0, 2, 1],
        [0, 1, 3],
        [0, 3, 2],
        [1, 2, 3],
    ])
    return Mesh(vertices=vertices, faces=faces, normals=compute_face_normals(vertices, faces))


def signed_volume(mesh):
    """Volume enclosed by a closed mesh; positive when faces wind outward."""
    v = mesh.vertices[mesh.faces]
    return float(np.einsum("ij,ij->", v[:, 0], np.cross(v[:, 1], v[:, 2])) / 6.0)


@pytest.fixture
def volume_of():
    return signed_volume
