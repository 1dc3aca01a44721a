import threading
from pathlib import Path

import pytest

from scan3d.errors import (
    AlreadyInProgressError,
    InvalidInputError,
    ReconstructionError,
    StagingIOError,
)
from scan3d.modules.storage import LocalObjectStorage, ObjectInfo
from scan3d.pipeline import ReconstructionPipeline
from scan3d.types import JobStage
from scan3d.utils.config import ProcessingOptions

FULL_RUN = [
    "initializing", "validating", "preprocessing", "volumeGeneration", "filtering",
    "segmentation", "meshGeneration", "optimization", "export", "completed",
]


class Recorder:
    """Progress listener collecting every notification."""

    def __init__(self):
        self.events = []

    def __call__(self, stage, progress, message):
        self.events.append((stage, progress, message))

    @property
    def stages(self):
        return [event[0] for event in self.events]

    @property
    def progress(self):
        return [event[1] for event in self.events]


def leftovers(directory):
    directory = Path(directory)
    return list(directory.iterdir()) if directory.exists() else []


@pytest.fixture
def pipeline(config):
    with ReconstructionPipeline(config) as pipeline:
        yield pipeline


def test_checkerboard_end_to_end(pipeline, config, checkerboard_png, fast_options):
    recorder = Recorder()
    pipeline.register_progress_listener("board", recorder)

    result = pipeline.start_reconstruction(
        checkerboard_png, job_id="board", options=fast_options, mime_type="image/png"
    ).result(timeout=120)

    assert recorder.stages == FULL_RUN
    assert recorder.progress == [0, 5, 20, 35, 50, 65, 80, 90, 95, 100]
    assert result.volume_shape == (64, 64, 32)
    assert 0 <= result.threshold <= 255
    assert result.mesh_statistics["faces"] > 0
    assert result.primary_path == Path(config.output_dir) / "board.obj"
    for fmt in ("obj", "stl", "ply"):
        assert (Path(config.output_dir) / f"board.{fmt}").is_file()

    job = pipeline.get_job("board")
    assert job.stage is JobStage.COMPLETED
    assert job.progress == 100
    assert job.result is not None
    assert job.error_message is None
    assert "board" not in pipeline.listeners


def test_flat_gray_image_completes(pipeline, gray_png):
    result = pipeline.reconstruct(
        gray_png, job_id="gray", options={"quality": "fast", "meshOptimization": False}
    )
    assert 0 <= result.threshold <= 255
    assert pipeline.get_job("gray").stage is JobStage.COMPLETED


def test_optimization_stage_is_optional(pipeline, checkerboard_png):
    recorder = Recorder()
    pipeline.register_progress_listener("plain", recorder)
    options = ProcessingOptions(quality="fast", mesh_optimization=False, output_formats=("stl",))

    result = pipeline.reconstruct(checkerboard_png, job_id="plain", options=options)

    assert "optimization" not in recorder.stages
    assert recorder.stages[-1] == "completed"
    assert result.primary_path.suffix == ".stl"


def test_duplicate_start_is_rejected(pipeline, checkerboard_png, fast_options):
    started, release = threading.Event(), threading.Event()

    def blocking_listener(stage, progress, message):
        if stage == "validating":
            started.set()
            release.wait(timeout=30)

    pipeline.register_progress_listener("dup", blocking_listener)
    future = pipeline.start_reconstruction(checkerboard_png, job_id="dup", options=fast_options)
    assert started.wait(timeout=30)

    with pytest.raises(AlreadyInProgressError):
        pipeline.start_reconstruction(checkerboard_png, job_id="dup")

    release.set()
    result = future.result(timeout=120)
    assert result.job_id == "dup"
    assert pipeline.get_job("dup").stage is JobStage.COMPLETED

    with pytest.raises(AlreadyInProgressError, match="completed"):
        pipeline.start_reconstruction(checkerboard_png, job_id="dup")


def test_invalid_image_fails_job(pipeline, config):
    recorder = Recorder()
    pipeline.register_progress_listener("bad", recorder)

    with pytest.raises(InvalidInputError):
        pipeline.start_reconstruction(b"not an image", job_id="bad").result(timeout=30)

    job = pipeline.get_job("bad")
    assert job.stage is JobStage.FAILED
    assert job.progress == -1
    assert job.error_message
    assert job.result is None
    assert recorder.events[-1][:2] == ("failed", -1)
    assert recorder.stages.count("failed") == 1
    assert "bad" not in pipeline.listeners
    assert leftovers(config.output_dir) == []
    assert leftovers(config.staging_dir) == []


def test_empty_image_fails_before_volume_generation(pipeline):
    recorder = Recorder()
    pipeline.register_progress_listener("empty", recorder)

    with pytest.raises(InvalidInputError):
        pipeline.reconstruct(b"", job_id="empty")

    assert "volumeGeneration" not in recorder.stages


def test_failed_job_can_be_restarted(pipeline, checkerboard_png, fast_options):
    with pytest.raises(InvalidInputError):
        pipeline.reconstruct(b"garbage", job_id="retry")

    result = pipeline.reconstruct(checkerboard_png, job_id="retry", options=fast_options)
    assert result.job_id == "retry"
    assert pipeline.get_job("retry").stage is JobStage.COMPLETED


def test_listener_errors_do_not_fail_the_job(pipeline, checkerboard_png, fast_options):
    def broken(stage, progress, message):
        raise RuntimeError("listener bug")

    pipeline.register_progress_listener("noisy", broken)
    result = pipeline.reconstruct(checkerboard_png, job_id="noisy", options=fast_options)
    assert result.mesh_statistics["faces"] > 0


def test_unexpected_errors_are_wrapped(pipeline, checkerboard_png, monkeypatch):
    def explode(volume):
        raise RuntimeError("boom")

    monkeypatch.setattr(pipeline.segmenter, "segment", explode)

    with pytest.raises(ReconstructionError) as excinfo:
        pipeline.reconstruct(checkerboard_png, job_id="boom")

    assert type(excinfo.value) is ReconstructionError
    assert excinfo.value.stage == "segmentation"
    assert "boom" in pipeline.get_job("boom").error_message


def test_os_errors_become_staging_errors(pipeline, checkerboard_png, monkeypatch):
    def disk_gone(volume):
        raise OSError("disk gone")

    monkeypatch.setattr(pipeline.enhancer, "apply", disk_gone)

    with pytest.raises(StagingIOError):
        pipeline.reconstruct(checkerboard_png, job_id="disk")


def test_export_failure_leaves_no_artifacts(config, checkerboard_png, tmp_path):
    blocked = tmp_path / "blocked"
    blocked.write_text("a file where the output directory should be")

    with ReconstructionPipeline(config, output_dir=blocked) as pipeline:
        with pytest.raises(StagingIOError):
            pipeline.reconstruct(checkerboard_png, job_id="export")
        assert pipeline.get_job("export").stage is JobStage.FAILED

    assert leftovers(config.staging_dir) == []


def test_reconstruction_from_storage(config, checkerboard_png, tmp_path, fast_options):
    bucket = tmp_path / "bucket"
    bucket.mkdir()
    (bucket / "scan.png").write_bytes(checkerboard_png)
    recorder = Recorder()

    with ReconstructionPipeline(config, storage=LocalObjectStorage(bucket)) as pipeline:
        pipeline.register_progress_listener("remote", recorder)
        result = pipeline.start_reconstruction_from_storage(
            "/objects/scan.png", job_id="remote", options=fast_options
        ).result(timeout=120)

    assert recorder.stages[:4] == ["initializing", "validating", "downloading", "preprocessing"]
    assert recorder.progress[2] == 7
    assert result.mesh_statistics["source"]["mime_type"] == "image/png"
    assert leftovers(config.staging_dir) == []


def test_staging_is_released_before_terminal_notification(config, checkerboard_png, tmp_path, monkeypatch):
    bucket = tmp_path / "bucket"
    bucket.mkdir()
    (bucket / "scan.png").write_bytes(checkerboard_png)
    seen = {}

    def watcher(stage, progress, message):
        if stage in ("completed", "failed"):
            seen[stage] = leftovers(config.staging_dir)

    with ReconstructionPipeline(config, storage=LocalObjectStorage(bucket)) as pipeline:
        pipeline.register_progress_listener("ok", watcher)
        pipeline.start_reconstruction_from_storage(
            "scan.png", job_id="ok", options={"quality": "fast"}
        ).result(timeout=120)

        def explode(volume):
            raise RuntimeError("boom")

        monkeypatch.setattr(pipeline.segmenter, "segment", explode)
        pipeline.register_progress_listener("bad", watcher)
        with pytest.raises(ReconstructionError):
            pipeline.start_reconstruction_from_storage("scan.png", job_id="bad").result(timeout=120)

    assert seen == {"completed": [], "failed": []}


def test_restart_from_failed_callback_keeps_new_listener(pipeline, checkerboard_png, fast_options):
    second = Recorder()
    restarted = []

    def first(stage, progress, message):
        if stage == "failed":
            pipeline.register_progress_listener("again", second)
            restarted.append(
                pipeline.start_reconstruction(checkerboard_png, job_id="again", options=fast_options)
            )

    pipeline.register_progress_listener("again", first)
    with pytest.raises(InvalidInputError):
        pipeline.start_reconstruction(b"garbage", job_id="again").result(timeout=30)

    assert len(restarted) == 1
    restarted[0].result(timeout=120)
    assert second.stages == FULL_RUN
    assert "again" not in pipeline.listeners


class BrokenStorage:
    """Storage whose objects exist but cannot be read."""

    def stat(self, key):
        return ObjectInfo(key=key, size=128, content_type="image/png")

    def open(self, key):
        raise OSError("connection reset")


def test_download_failure_cleans_staging(config):
    with ReconstructionPipeline(config, storage=BrokenStorage()) as pipeline:
        with pytest.raises(StagingIOError):
            pipeline.start_reconstruction_from_storage("scan.png", job_id="broken").result(timeout=30)
        assert pipeline.get_job("broken").stage is JobStage.FAILED

    assert leftovers(config.staging_dir) == []


def test_storage_jobs_need_storage(pipeline):
    with pytest.raises(InvalidInputError):
        pipeline.start_reconstruction_from_storage("/objects/scan.png")


@pytest.mark.parametrize("job_id", ["", "..", "a/b", "a\\b"])
def test_job_ids_must_be_file_names(pipeline, checkerboard_png, job_id):
    with pytest.raises(InvalidInputError):
        pipeline.start_reconstruction(checkerboard_png, job_id=job_id)


def test_generated_job_id(pipeline, checkerboard_png, fast_options):
    result = pipeline.reconstruct(checkerboard_png, options=fast_options)
    assert result.job_id.startswith("job_")
    assert pipeline.get_job(result.job_id).stage is JobStage.COMPLETED


def test_unknown_job(pipeline):
    assert pipeline.get_job("nope") is None


def test_pipelines_do_not_share_listeners(config):
    first, second = ReconstructionPipeline(config), ReconstructionPipeline(config)
    try:
        first.register_progress_listener("job", Recorder())
        assert "job" not in second.listeners
    finally:
        first.shutdown()
        second.shutdown()
