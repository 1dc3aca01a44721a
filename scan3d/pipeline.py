"""
Scan to 3D Pipeline
====================
Orchestrates the conversion of a single 2D medical image into exported
3D meshes.

Pipeline Steps:
1. Validate the image (and download it from object storage if needed)
2. Decode and preprocess it to the resolution allowed by the quality level
3. Synthesize a pseudo-3D volume from the image
4. Smooth the volume with a 3x3x3 Gaussian
5. Segment it into tissue classes around an Otsu threshold
6. Extract the iso-surface with marching cubes
7. Optionally decimate and smooth the mesh
8. Export to OBJ / STL / PLY

Jobs run on a thread pool owned by the pipeline. Each job moves strictly
forward through its stages, reporting a fixed progress milestone per
stage to the listener registered for its id, and ends in exactly one of
``completed`` or ``failed``.
"""

import argparse
import dataclasses
import logging
import mimetypes
import shutil
import tempfile
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path

from .errors import (
    AlreadyInProgressError,
    InvalidInputError,
    ReconstructionError,
    StagingIOError,
)
from .modules.enhancement import EnhancementFilter
from .modules.exporter import MeshExporter, MeshValidator
from .modules.image_loader import MedicalImageLoader
from .modules.mesh_optimizer import MeshOptimizer
from .modules.segmentation import SegmentationEngine
from .modules.storage import ObjectStorage, download_to_staging
from .modules.surface_extractor import SurfaceExtractor
from .modules.volume_synthesizer import VolumeSynthesizer
from .types import ConversionJob, JobStage, ReconstructionResult
from .utils.config import PipelineConfig, ProcessingOptions, SUPPORTED_FORMATS
from .utils.logger import ProgressLogger, setup_logger
from .utils.progress import ProgressCallback, ProgressListenerRegistry


class ReconstructionPipeline:
    """
    Main pipeline class that runs reconstruction jobs from image bytes
    (or an object storage key) to exported meshes.
    """

    def __init__(
        self,
        config: PipelineConfig = None,
        output_dir: str | Path = None,
        storage: ObjectStorage = None,
        max_workers: int = None,
        listeners: ProgressListenerRegistry = None
    ):
        """
        Initialize the pipeline with configuration.

        Args:
            config: Pipeline configuration object
            output_dir: Directory receiving ``<job_id>.<format>`` files
                (default: ``config.output_dir``)
            storage: Object storage backend for storage-sourced jobs
            max_workers: Jobs allowed to run at once (default: ``config.max_workers``)
            listeners: Progress listener registry (default: a new one)
        """
        self.config = config or PipelineConfig()
        self.output_dir = Path(output_dir or self.config.output_dir)
        self.staging_root = Path(self.config.staging_dir)
        self.storage = storage
        self.listeners = listeners or ProgressListenerRegistry()
        self.logger = logging.getLogger("scan3d.pipeline")

        self._jobs = {}
        self._jobs_lock = threading.Lock()
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or self.config.max_workers,
            thread_name_prefix="scan3d-job"
        )

        self.loader = MedicalImageLoader(self.config)
        self.synthesizer = VolumeSynthesizer(self.config)
        self.enhancer = EnhancementFilter(self.config)
        self.segmenter = SegmentationEngine(self.config)
        self.extractor = SurfaceExtractor(self.config)
        self.optimizer = MeshOptimizer(self.config)
        self.exporter = MeshExporter(self.config)
        self.validator = MeshValidator()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.shutdown()

    # Listener and job table access

    def register_progress_listener(self, job_id: str, callback: ProgressCallback):
        """Observe a job; the listener is dropped after the job's terminal notification."""
        self.listeners.register(job_id, callback)

    def unregister_progress_listener(self, job_id: str):
        self.listeners.unregister(job_id)

    def get_job(self, job_id: str) -> ConversionJob | None:
        """Snapshot of a job's state, or None for an unknown id."""
        with self._jobs_lock:
            job = self._jobs.get(job_id)
            return dataclasses.replace(job) if job is not None else None

    def shutdown(self, wait: bool = True):
        """Stop accepting jobs and, by default, wait for running ones."""
        self._executor.shutdown(wait=wait)

    # Job submission

    def start_reconstruction(
        self,
        image_bytes: bytes,
        job_id: str = None,
        options: ProcessingOptions | dict = None,
        mime_type: str = None
    ) -> Future:
        """
        Start a job converting encoded image bytes.

        Args:
            image_bytes: Encoded image
            job_id: Job identifier; generated when omitted
            options: ProcessingOptions or a dict of them
            mime_type: Declared content type of the image

        Returns:
            Future resolving to a ReconstructionResult, or raising the
            job's ReconstructionError

        Raises:
            AlreadyInProgressError: If the id belongs to a running or
                completed job
        """
        job = self._create_job(job_id, options)
        return self._submit(job, image_bytes=image_bytes, mime_type=mime_type)

    def start_reconstruction_from_storage(
        self,
        object_key: str,
        job_id: str = None,
        options: ProcessingOptions | dict = None
    ) -> Future:
        """
        Start a job converting an image held in object storage.

        The object is copied into a staging directory owned by the job,
        which is removed when the job ends.
        """
        if self.storage is None:
            raise InvalidInputError("No object storage configured for this pipeline")
        job = self._create_job(job_id, options)
        return self._submit(job, object_key=object_key)

    def reconstruct(
        self,
        image_bytes: bytes,
        job_id: str = None,
        options: ProcessingOptions | dict = None,
        mime_type: str = None
    ) -> ReconstructionResult:
        """Run a job and block until it finishes."""
        return self.start_reconstruction(image_bytes, job_id, options, mime_type).result()

    def _create_job(self, job_id: str, options) -> ConversionJob:
        if job_id is None:
            job_id = f"job_{uuid.uuid4().hex[:12]}"
        job_id = str(job_id)
        # Job ids become file names
        if job_id in ("", ".", "..") or "/" in job_id or "\\" in job_id:
            raise InvalidInputError(f"Invalid job id: {job_id!r}")

        if options is None:
            options = ProcessingOptions()
        elif isinstance(options, dict):
            options = ProcessingOptions.from_dict(options)

        with self._jobs_lock:
            existing = self._jobs.get(job_id)
            if existing is not None and not existing.is_failed:
                stage = "completed" if existing.stage is JobStage.COMPLETED else None
                raise AlreadyInProgressError(job_id, stage)
            job = ConversionJob(job_id=job_id, options=options)
            self._jobs[job_id] = job
        return job

    def _submit(self, job: ConversionJob, **source) -> Future:
        try:
            return self._executor.submit(self._run_job, job, **source)
        except RuntimeError as e:
            with self._jobs_lock:
                self._jobs.pop(job.job_id, None)
            raise ReconstructionError(f"Cannot start job {job.job_id}: {e}") from e

    # Job execution

    def _run_job(
        self,
        job: ConversionJob,
        image_bytes: bytes = None,
        object_key: str = None,
        mime_type: str = None
    ) -> ReconstructionResult:
        """
        Run every stage of a job on the calling (worker) thread.

        Returns:
            ReconstructionResult of the completed job

        Raises:
            ReconstructionError: The typed error that failed the job
        """
        options = job.options
        staging_dir = None
        exports = {}

        try:
            self._advance(job, JobStage.INITIALIZING, "Starting 3D reconstruction")

            self._advance(job, JobStage.VALIDATING, "Validating medical image")
            if object_key is not None:
                info = self.storage.stat(object_key)
                if not info.size:
                    raise InvalidInputError("Medical image file is empty")
                if self.config.max_image_bytes and info.size > self.config.max_image_bytes:
                    raise InvalidInputError(
                        f"Medical image too large for 3D conversion ({info.size} bytes)"
                    )

                self._advance(job, JobStage.DOWNLOADING, "Downloading image from object storage")
                staging_dir = self._make_staging_dir(job.job_id)
                staged_path, info = download_to_staging(
                    self.storage, object_key, staging_dir, job.job_id
                )
                image_bytes = staged_path.read_bytes()
                mime_type = info.content_type
            self.loader.validate(image_bytes, mime_type)

            self._advance(job, JobStage.PREPROCESSING, "Decoding and preprocessing image")
            raster, metadata = self.loader.decode(image_bytes, mime_type)
            raster = self.loader.preprocess(raster, self.config.max_side_for(options.quality))

            self._advance(job, JobStage.VOLUME_GENERATION, "Generating 3D volume from image")
            volume = self.synthesizer.synthesize(raster)

            self._advance(job, JobStage.FILTERING, "Applying 3D enhancement filter")
            volume = self.enhancer.apply(volume)

            self._advance(job, JobStage.SEGMENTATION, "Segmenting tissue classes")
            segmented, threshold = self.segmenter.segment(volume)

            self._advance(job, JobStage.MESH_GENERATION, "Extracting surface with marching cubes")
            mesh = self.extractor.extract(segmented)

            if options.mesh_optimization:
                self._advance(job, JobStage.OPTIMIZATION, "Optimizing mesh")
                mesh = self.optimizer.optimize(mesh)

            self._advance(job, JobStage.EXPORT, "Exporting 3D model")
            validation = self.validator.validate(mesh)
            if not validation["valid"]:
                raise ReconstructionError(
                    "Generated mesh is invalid: " + "; ".join(validation["issues"])
                )
            exports = self.exporter.export(
                mesh, self.output_dir, job.job_id, list(options.output_formats)
            )

            statistics = dict(validation["statistics"])
            statistics["issues"] = validation["issues"]
            statistics["source"] = dataclasses.asdict(metadata)
            result = ReconstructionResult(
                job_id=job.job_id,
                exports=exports,
                threshold=threshold,
                volume_shape=(volume.width, volume.height, volume.depth),
                mesh_statistics=statistics
            )
            self._release(staging_dir)
            self._complete(job, result)
            return result

        except Exception as e:
            error = self._as_reconstruction_error(e, job.stage)
            # Temporary files are gone before anyone sees the failed state
            self._release(staging_dir, exports)
            self._fail(job, error)
            if error is e:
                raise
            raise error from e

    def _advance(self, job: ConversionJob, stage: JobStage, message: str):
        with self._jobs_lock:
            job.stage = stage
            job.progress = stage.milestone
        self.logger.info(f"[{job.job_id}] [{stage.milestone:3d}%] {message}")
        self.listeners.notify(job.job_id, stage.value, stage.milestone, message)

    def _complete(self, job: ConversionJob, result: ReconstructionResult):
        message = f"3D model generated: {result.primary_path.name}"
        with self._jobs_lock:
            job.stage = JobStage.COMPLETED
            job.progress = JobStage.COMPLETED.milestone
            job.result = result
        self.logger.info(f"[{job.job_id}] {message}")
        self.listeners.pop_and_notify(job.job_id, JobStage.COMPLETED.value, job.progress, message)

    def _fail(self, job: ConversionJob, error: ReconstructionError):
        with self._jobs_lock:
            job.stage = JobStage.FAILED
            job.progress = JobStage.FAILED.milestone
            job.error_message = str(error)
        self.logger.error(f"[{job.job_id}] Failed during {error.stage}: {error}")
        self.listeners.pop_and_notify(
            job.job_id, JobStage.FAILED.value, job.progress, f"Conversion failed: {error}"
        )

    @staticmethod
    def _as_reconstruction_error(error: Exception, stage: JobStage) -> ReconstructionError:
        """Map any exception raised by a stage to a typed pipeline error."""
        if isinstance(error, ReconstructionError):
            if error.stage is None:
                error.stage = stage.value
            return error
        if isinstance(error, OSError):
            return StagingIOError(f"I/O failure during {stage.value}: {error}", stage=stage.value)
        return ReconstructionError(
            f"{type(error).__name__} during {stage.value}: {error}", stage=stage.value
        )

    def _make_staging_dir(self, job_id: str) -> Path:
        try:
            self.staging_root.mkdir(parents=True, exist_ok=True)
            return Path(tempfile.mkdtemp(prefix=f"{job_id}_", dir=self.staging_root))
        except OSError as e:
            raise StagingIOError(f"Cannot create staging directory: {e}") from e

    def _release(self, staging_dir: Path = None, exports: dict = None):
        """Remove the job's staging directory and any partial exports."""
        if exports:
            self.exporter.remove(exports.values())
        if staging_dir is not None:
            self._remove_staging_dir(staging_dir)

    def _remove_staging_dir(self, staging_dir: Path):
        try:
            shutil.rmtree(staging_dir)
        except FileNotFoundError:
            pass
        except OSError as e:
            self.logger.warning(f"Failed to remove staging directory {staging_dir}: {e}")


def main():
    """Main entry point for the pipeline."""
    parser = argparse.ArgumentParser(
        description="Reconstruct a 3D mesh from a single 2D medical image"
    )
    parser.add_argument(
        "image",
        type=str,
        help="Path to the input image (PNG, JPEG, ...)"
    )
    parser.add_argument(
        "--job-id",
        type=str,
        default=None,
        help="Job identifier, also the base name of the exported files (default: image name)"
    )
    parser.add_argument(
        "--output-dir",
        type=str,
        default=None,
        help="Directory to save exported meshes (default: from config, 'models')"
    )
    parser.add_argument(
        "--quality",
        type=str,
        default="standard",
        choices=["fast", "standard", "high"],
        help="Processing quality (default: standard)"
    )
    parser.add_argument(
        "--formats",
        nargs="+",
        default=["obj", "stl"],
        choices=list(SUPPORTED_FORMATS),
        help="Export formats (default: obj stl)"
    )
    parser.add_argument(
        "--no-optimize",
        action="store_true",
        help="Skip mesh decimation and smoothing"
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="YAML configuration file"
    )

    args = parser.parse_args()

    # Create configuration
    config = PipelineConfig.from_yaml(args.config) if args.config else PipelineConfig()
    setup_logger(config.log_file, config.log_level)

    image_path = Path(args.image)
    job_id = args.job_id or image_path.stem
    options = ProcessingOptions(
        quality=args.quality,
        mesh_optimization=not args.no_optimize,
        output_formats=tuple(args.formats)
    )

    with ReconstructionPipeline(config=config, output_dir=args.output_dir) as pipeline:
        pipeline.register_progress_listener(job_id, ProgressLogger(job_id))
        result = pipeline.reconstruct(
            image_path.read_bytes(),
            job_id=job_id,
            options=options,
            mime_type=mimetypes.guess_type(image_path.name)[0]
        )

    stats = result.mesh_statistics
    print("\n" + "=" * 50)
    print("Reconstruction Results:")
    print("=" * 50)
    print(f"Job: {result.job_id}")
    print(f"Volume: {result.volume_shape[0]}x{result.volume_shape[1]}x{result.volume_shape[2]}")
    print(f"Otsu threshold: {result.threshold:.0f}")
    print(f"Mesh: {stats['vertices']} vertices, {stats['faces']} faces")
    print("\nExported Files:")
    for fmt, path in result.exports.items():
        print(f"  - {fmt}: {path}")


if __name__ == "__main__":
    main()
