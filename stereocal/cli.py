"""
Command-line interface for multi-camera triangulation.

Usage:
    stereocal triangulate config.yaml [--output OUTPUT.csv] [--world]
    stereocal project config.yaml --point X,Y,Z [--point X,Y,Z ...]
"""

import argparse
import logging
import sys
from pathlib import Path

import numpy as np

from .camera import world_to_pixel_coordinates
from .config import Config
from .triangulator import StereoTriangulator


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler(sys.stdout)]
    )


def parse_point(text: str) -> np.ndarray:
    """Parse an 'X,Y,Z' string into a 3-vector."""
    values = [float(v) for v in text.split(',')]
    if len(values) != 3:
        raise argparse.ArgumentTypeError(f"Expected X,Y,Z, got '{text}'")
    return np.array(values)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='stereocal',
        description='Triangulate and project points with a calibrated camera rig',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Examples:
    # Triangulate the observations stored in the configuration
    stereocal triangulate rig.yaml

    # Save world-frame coordinates to a CSV file
    stereocal triangulate rig.yaml --world -o points.csv

    # Project world points to every camera
    stereocal project rig.yaml --point 0,0,1000 --point 10,0,1000
'''
    )

    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose output'
    )

    subparsers = parser.add_subparsers(dest='command', required=True)

    triangulate = subparsers.add_parser('triangulate', help='Triangulate configured observations')
    triangulate.add_argument('config', type=str, help='Path to YAML configuration file')
    triangulate.add_argument(
        '--output', '-o',
        type=str,
        default=None,
        help='Output CSV file (default: print to stdout)'
    )
    triangulate.add_argument(
        '--world',
        action='store_true',
        help='Express points in the world frame instead of the first camera frame'
    )

    project = subparsers.add_parser('project', help='Project world points to pixel coordinates')
    project.add_argument('config', type=str, help='Path to YAML configuration file')
    project.add_argument(
        '--point', '-p',
        type=parse_point,
        action='append',
        required=True,
        help='World point as X,Y,Z (repeatable)'
    )

    return parser


def run_triangulate(args, config: Config, logger: logging.Logger) -> int:
    if not config.observations:
        logger.error("Configuration has no observations to triangulate")
        return 1

    triangulator = StereoTriangulator()
    for camera in config.cameras:
        triangulator.add_camera(camera.intrinsic, camera.extrinsic)

    if args.world:
        points = triangulator.calculate_world_points(config.observations)
    else:
        points = triangulator.calculate_3d_points(config.observations)

    logger.info(f"Triangulated {len(points)} points from {triangulator.camera_count} cameras")

    if args.output:
        output = Path(args.output)
        output.parent.mkdir(parents=True, exist_ok=True)
        np.savetxt(output, points, delimiter=',', header='x,y,z', comments='')
        logger.info(f"Points written to {output}")
    else:
        for row in points:
            print(','.join(f"{v:.6f}" for v in row))
    return 0


def run_project(args, config: Config, logger: logging.Logger) -> int:
    points = np.vstack(args.point)
    for camera in config.cameras:
        pixels = world_to_pixel_coordinates(points, camera.extrinsic, camera.intrinsic)
        print(f"{camera.name}:")
        for world, pixel in zip(points, pixels):
            print(f"  ({world[0]:.3f}, {world[1]:.3f}, {world[2]:.3f}) -> "
                  f"({pixel[0]:.3f}, {pixel[1]:.3f})")
    return 0


def main(argv=None) -> int:
    """Main entry point for CLI."""
    args = build_parser().parse_args(argv)

    setup_logging(args.verbose)
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_yaml(args.config)
        if not config.cameras:
            raise ValueError("No cameras configured")

        if args.command == 'triangulate':
            return run_triangulate(args, config, logger)
        return run_project(args, config, logger)

    except FileNotFoundError as e:
        logger.error(f"File not found: {e}")
        return 1
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        return 1
    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
