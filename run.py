"""
Simple Run Script
==================
A simplified interface to reconstruct a 3D mesh from a single image.

Usage:
    python run.py scans/knee.png
    python run.py scans/knee.png --quality high --formats obj ply
    python run.py --test
"""

import io
import argparse
import mimetypes
from pathlib import Path

import numpy as np
from PIL import Image


def run_pipeline(
    image_path: str,
    job_id: str = None,
    output_dir: str = None,
    quality: str = "standard",
    formats: list = None,
    optimize: bool = True,
    config_path: str = None
):
    """
    Run the reconstruction pipeline on an image file.

    Args:
        image_path: Path to the input image
        job_id: Job identifier and base name of the exported files
        output_dir: Directory for exported meshes
        quality: fast, standard or high
        formats: Export formats (default: obj and stl)
        optimize: Decimate and smooth the mesh
        config_path: Optional YAML configuration file
    """
    from scan3d.pipeline import ReconstructionPipeline
    from scan3d.utils.config import PipelineConfig, ProcessingOptions
    from scan3d.utils.logger import ProgressLogger, setup_logger

    config = PipelineConfig.from_yaml(config_path) if config_path else PipelineConfig()
    setup_logger(config.log_file, config.log_level)

    image_path = Path(image_path)
    job_id = job_id or image_path.stem
    options = ProcessingOptions(
        quality=quality,
        mesh_optimization=optimize,
        output_formats=tuple(formats or ("obj", "stl"))
    )

    print("\n" + "=" * 60)
    print("Scan to 3D Pipeline")
    print("=" * 60)
    print(f"\nInput image: {image_path}\n")

    with ReconstructionPipeline(config=config, output_dir=output_dir) as pipeline:
        pipeline.register_progress_listener(job_id, ProgressLogger(job_id))
        try:
            result = pipeline.reconstruct(
                image_path.read_bytes(),
                job_id=job_id,
                options=options,
                mime_type=mimetypes.guess_type(image_path.name)[0]
            )
        except Exception as e:
            print(f"\nError: {e}")
            print("\nTroubleshooting tips:")
            print("1. Ensure all dependencies are installed: pip install -e .")
            print("2. Check that the file is a readable PNG or JPEG image")
            print("3. Try --quality fast for very large images")
            raise

    print("\n" + "=" * 60)
    print("Pipeline Complete!")
    print("=" * 60)
    print(f"\nOtsu threshold: {result.threshold:.0f}")
    print(f"Mesh: {result.mesh_statistics['vertices']} vertices, "
          f"{result.mesh_statistics['faces']} faces")
    print("\nGenerated files:")
    for fmt, path in result.exports.items():
        print(f"  - {fmt}: {path}")

    return result


def checkerboard_png(size: int = 64, square: int = 8) -> bytes:
    """Encode a black and white checkerboard as PNG bytes."""
    y, x = np.indices((size, size))
    board = (((x // square) + (y // square)) % 2 * 255).astype(np.uint8)
    buffer = io.BytesIO()
    Image.fromarray(board).save(buffer, format="PNG")
    return buffer.getvalue()


def run_quick_test():
    """Run a quick test on a synthetic checkerboard image."""
    print("Running quick test with a synthetic checkerboard...")

    output_path = Path("output/test")
    output_path.mkdir(parents=True, exist_ok=True)

    image_path = output_path / "checkerboard.png"
    image_path.write_bytes(checkerboard_png())
    print(f"Test image created: {image_path}")

    result = run_pipeline(
        str(image_path),
        job_id="checkerboard",
        output_dir=str(output_path),
        quality="fast",
        formats=["obj", "stl", "ply"]
    )

    if result.mesh_statistics["faces"] == 0:
        raise RuntimeError("Quick test produced an empty mesh")
    print("Quick test passed!")


def main():
    parser = argparse.ArgumentParser(
        description="Reconstruct 3D meshes from single medical images",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python run.py scans/knee.png
  python run.py scans/knee.png --job-id knee_01 --output-dir models
  python run.py scans/knee.png --quality fast --formats stl --no-optimize
  python run.py --test  # Run quick test on a synthetic image
        """
    )

    parser.add_argument(
        "image",
        nargs="?",
        type=str,
        help="Path to the input image"
    )

    parser.add_argument(
        "--job-id", "-j",
        type=str,
        default=None,
        help="Job identifier (default: image file name)"
    )

    parser.add_argument(
        "--output-dir", "-o",
        type=str,
        default=None,
        help="Directory for exported meshes"
    )

    parser.add_argument(
        "--quality", "-q",
        type=str,
        default="standard",
        choices=["fast", "standard", "high"],
        help="Processing quality (default: standard)"
    )

    parser.add_argument(
        "--formats", "-f",
        nargs="+",
        default=["obj", "stl"],
        choices=["obj", "stl", "ply"],
        help="Export formats (default: obj stl)"
    )

    parser.add_argument(
        "--no-optimize",
        action="store_true",
        help="Skip mesh decimation and smoothing"
    )

    parser.add_argument(
        "--config", "-c",
        type=str,
        default=None,
        help="YAML configuration file"
    )

    parser.add_argument(
        "--test", "-t",
        action="store_true",
        help="Run quick test on a synthetic checkerboard"
    )

    args = parser.parse_args()

    if args.test:
        run_quick_test()
    elif args.image:
        run_pipeline(
            args.image,
            job_id=args.job_id,
            output_dir=args.output_dir,
            quality=args.quality,
            formats=args.formats,
            optimize=not args.no_optimize,
            config_path=args.config
        )
    else:
        parser.print_help()
        print("\n\nExamples:")
        print('  python run.py scans/knee.png')
        print('  python run.py --test')


if __name__ == "__main__":
    main()
