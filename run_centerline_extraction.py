#!/usr/bin/env python3

import os
import argparse
import logging
from tube_centerlines.pipeline import run_centerline_extraction

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Command line options and the parameter they override
RIDGE_OPTIONS = ['t_high', 'd_min', 'm_low', 't_low', 'max_below_t_low',
                 'min_mean_tube', 'tree_min']
GRAPH_OPTIONS = ['tdf_limit', 'theta_limit', 'min_window', 'max_distance',
                 'min_pair_angle', 'min_average_tdf', 'samples', 'min_tree_length']


def main():
    """Main entry point for centerline extraction"""
    parser = argparse.ArgumentParser(
        description="Extract tube centerlines from a vector field, TDF and radius volumes"
    )
    parser.add_argument(
        "--input-folder",
        required=True,
        help="Directory containing vector_field.nrrd, tdf.nrrd and radius.nrrd"
    )
    parser.add_argument(
        "--output-folder",
        help="Directory for output files (default: input_folder/centerlines)"
    )
    parser.add_argument(
        "--method",
        choices=["ridge", "gpu", "graph"],
        default="ridge",
        help="Centerline method: ridge traversal, or the graph method ('gpu' or 'graph') (default: ridge)"
    )

    # Ridge traversal parameters
    parser.add_argument("--t-high", type=float, help="Minimum seed TDF (default: 0.6)")
    parser.add_argument("--d-min", type=int, help="Minimum traversal length in voxels (default: 5)")
    parser.add_argument("--m-low", type=float, help="Minimum M = 1 - |F| along a path (default: 0.2)")
    parser.add_argument("--t-low", type=float, help="TDF of a low confidence step (default: 0.4)")
    parser.add_argument("--max-below-t-low", type=int,
                        help="Consecutive low confidence steps allowed (default: 2)")
    parser.add_argument("--min-mean-tube", type=float,
                        help="Minimum mean TDF of a traversal (default: 0.6)")
    parser.add_argument("--tree-min", type=int,
                        help="Trees longer than this are kept besides the longest (default: 10)")

    # Graph parameters
    parser.add_argument("--tdf-limit", type=float, help="Minimum TDF of a centerpoint (default: 0.5)")
    parser.add_argument("--theta-limit", type=float,
                        help="Cross-section angle tolerance in radians (default: 0.5)")
    parser.add_argument("--min-window", type=int, help="Minimum suppression half-width (default: 3)")
    parser.add_argument("--max-distance", type=float,
                        help="Maximum link length in voxels (default: 40.0)")
    parser.add_argument("--min-pair-angle", type=float,
                        help="Minimum angle between the two links of a point (default: 2.09)")
    parser.add_argument("--min-average-tdf", type=float,
                        help="Minimum mean TDF along a link (default: 0.5)")
    parser.add_argument("--samples", type=int, help="Samples per link (default: 40)")
    parser.add_argument("--min-tree-length", type=int,
                        help="Components larger than this are reported as valid (default: 20)")

    args = parser.parse_args()

    # Set default output folder if not specified
    if args.output_folder is None:
        args.output_folder = os.path.join(args.input_folder, "centerlines")

    logger.info("Step 1: Verifying input folder...")
    if not os.path.isdir(args.input_folder):
        raise NotADirectoryError(f"Input folder does not exist: {args.input_folder}")

    options = RIDGE_OPTIONS if args.method == "ridge" else GRAPH_OPTIONS
    custom_params = {}
    for option in options:
        value = getattr(args, option)
        if value is not None:
            custom_params[option] = value
    if custom_params:
        logger.info(f"Using custom parameters: {custom_params}")

    logger.info("Step 2: Starting centerline extraction using input from: %s", args.input_folder)
    run_centerline_extraction(
        input_dir=args.input_folder,
        output_dir=args.output_folder,
        method=args.method,
        custom_params=custom_params
    )

    logger.info("Step 3: Processing completed. Results saved to: %s", args.output_folder)

if __name__ == "__main__":
    main()
