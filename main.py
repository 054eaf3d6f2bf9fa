import sys
import argparse
import time
import logging

import numpy as np

from bmp_reader import InputValidationError
from image_surf import image_surf
from surf_config import SurfConfig
from surf_matcher import match_results

logger = logging.getLogger(__name__)


def build_parser():
    parser = argparse.ArgumentParser(description='SURF interest points and descriptors of a .bmp image')
    parser.add_argument('image', type=str, help='Bitmap (bmp3) file to process')
    parser.add_argument('--max-points', type=int, default=1000, help='Maximum number of SURF points to return')
    parser.add_argument('--detection-threshold', type=float, default=30.0,
                        help='Detection threshold, the higher the fewer points are found')
    parser.add_argument('--octaves', type=int, default=4, help='Number of octaves of the response pyramid')
    parser.add_argument('--layers', type=int, default=4, help='Number of layers per octave')
    parser.add_argument('--workers', type=int, default=1, help='Threads used to describe the points')
    parser.add_argument('--output', type=str, help='Save the result arrays to this .npz file')
    parser.add_argument('--match', type=str, help='Second .bmp image to match the descriptors against')
    parser.add_argument('--top', type=int, default=5, help='Number of strongest points to print')
    parser.add_argument('-v', '--verbose', action='store_true', help='Print debug messages')
    return parser


def print_summary(name, result, elapsed_time, top):
    print(f"{name}: {result['points']} SURF points found in {elapsed_time * 1000:.2f} ms")
    for i in range(min(top, result['points'])):
        print(f"  x={result['x'][i]:8.2f}  y={result['y'][i]:8.2f}  scale={result['pyramid_scale'][i]:6.2f}  "
              f"angle={result['angle'][i]:5.2f}  score={result['score'][i]:10.2f}  laplacian={result['laplacian'][i]:+d}")


def main(argv=None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format='%(asctime)s %(name)s %(levelname)s: %(message)s')

    try:
        config = SurfConfig(octaves=args.octaves, layers=args.layers, num_workers=args.workers)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    try:
        start = time.time()
        result = image_surf(args.image, max_points=args.max_points,
                            detection_threshold=args.detection_threshold, config=config)
        elapsed_time = time.time() - start
        print_summary(args.image, result, elapsed_time, args.top)

        if args.output:
            np.savez(args.output, **result)
            print(f"Result written to {args.output}")

        if args.match:
            start = time.time()
            other = image_surf(args.match, max_points=args.max_points,
                               detection_threshold=args.detection_threshold, config=config)
            elapsed_time = time.time() - start
            print_summary(args.match, other, elapsed_time, args.top)
            matches = match_results(result, other)
            print(f"{len(matches)} matches between {args.image} and {args.match}")
    except InputValidationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
