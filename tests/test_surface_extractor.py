import numpy as np
import pytest

from scan3d.errors import NumericDegeneracyError
from scan3d.modules.enhancement import EnhancementFilter
from scan3d.modules.segmentation import SegmentationEngine
from scan3d.modules.surface_extractor import (
    SurfaceExtractor,
    compact_mesh,
    compute_face_normals,
    count_straddling_cells,
)
from scan3d.modules.volume_synthesizer import VolumeSynthesizer
from scan3d.types import MedicalVolume


def assert_valid_mesh(mesh):
    assert mesh.faces.min() >= 0
    assert mesh.faces.max() < mesh.vertex_count
    assert len(mesh.normals) == mesh.face_count
    lengths = np.linalg.norm(mesh.normals, axis=1)
    assert np.all(np.isclose(lengths, 1.0, atol=1e-6) | (lengths == 0.0))
    assert mesh.bounding_box.contains(mesh.vertices)
    assert np.isfinite(mesh.vertices).all()


def test_sphere_surface_faces_outward(config, make_sphere_volume, volume_of):
    volume = make_sphere_volume()
    mesh = SurfaceExtractor(config).extract(volume, iso_value=128.0)

    assert not mesh.is_empty
    assert_valid_mesh(mesh)
    assert 700 < volume_of(mesh) < 1500

    center = np.full(3, 9.5)
    centroids = mesh.vertices[mesh.faces].mean(axis=1)
    outward = np.einsum("ij,ij->i", mesh.normals, centroids - center) > 0
    assert outward.mean() > 0.95


def test_dark_sphere_normals_point_toward_lower_intensity(config, make_sphere_volume, volume_of):
    volume = make_sphere_volume(inside=0.0, outside=255.0)
    mesh = SurfaceExtractor(config).extract(volume, iso_value=128.0)

    assert not mesh.is_empty
    assert volume_of(mesh) < 0


def test_spacing_and_origin_are_applied(config, make_sphere_volume):
    volume = make_sphere_volume(spacing=(1.0, 1.0, 2.0), origin=(10.0, 0.0, 0.0))
    mesh = SurfaceExtractor(config).extract(volume, iso_value=128.0)

    assert mesh.bounding_box.min[0] >= 10.0
    assert mesh.bounding_box.max[2] > 2 * 12
    size = mesh.bounding_box.size
    assert size[2] == pytest.approx(2 * size[0], rel=0.05)


def test_uniform_volume_gives_empty_mesh(config):
    volume = MedicalVolume(width=4, height=4, depth=4, voxels=np.full(64, 200.0))
    mesh = SurfaceExtractor(config).extract(volume)

    assert mesh.is_empty
    assert mesh.vertex_count == 0
    assert np.array_equal(mesh.bounding_box.min, np.zeros(3))
    assert np.array_equal(mesh.bounding_box.max, np.zeros(3))
    assert count_straddling_cells(volume.grid, 128.0) == 0


def test_single_slice_volume_gives_empty_mesh(config):
    voxels = np.tile([0.0, 255.0], 8)
    volume = MedicalVolume(width=4, height=4, depth=1, voxels=voxels)
    assert SurfaceExtractor(config).extract(volume).is_empty


def test_non_empty_iff_a_cell_straddles(config, make_sphere_volume):
    extractor = SurfaceExtractor(config)
    for volume in (make_sphere_volume(), make_sphere_volume(radius=0.5), make_sphere_volume(inside=0.0)):
        mesh = extractor.extract(volume, iso_value=128.0)
        straddling = count_straddling_cells(volume.grid, 128.0)
        assert (straddling > 0) == (not mesh.is_empty)


def test_checkerboard_image_produces_surface(config, checkerboard_raster):
    volume = VolumeSynthesizer(config).synthesize(checkerboard_raster.astype(np.float32))
    filtered = EnhancementFilter(config).apply(volume)
    segmented, _ = SegmentationEngine(config).segment(filtered)

    mesh = SurfaceExtractor(config).extract(segmented)

    assert mesh.face_count > 0
    assert_valid_mesh(mesh)
    assert count_straddling_cells(segmented.grid, config.iso_value) > 0


def test_non_finite_volume_raises(config):
    voxels = np.zeros(8)
    voxels[3] = np.nan
    volume = MedicalVolume(width=2, height=2, depth=2, voxels=voxels)
    with pytest.raises(NumericDegeneracyError):
        SurfaceExtractor(config).extract(volume)


def test_degenerate_face_normal_is_zero_vector():
    vertices = np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [2.0, 0.0, 0.0], [0.0, 1.0, 0.0]])
    faces = np.array([[0, 1, 2], [0, 1, 3]])
    normals = compute_face_normals(vertices, faces)
    assert np.array_equal(normals[0], np.zeros(3))
    assert np.allclose(normals[1], [0.0, 0.0, 1.0])


def test_compact_mesh_drops_unused_vertices():
    vertices = np.arange(15, dtype=np.float64).reshape(5, 3)
    faces = np.array([[4, 2, 3]])
    compacted_vertices, compacted_faces = compact_mesh(vertices, faces)
    assert compacted_vertices.tolist() == vertices[[2, 3, 4]].tolist()
    assert compacted_faces.tolist() == [[2, 0, 1]]
