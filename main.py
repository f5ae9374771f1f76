#!/usr/bin/env python3
"""
Command-line interface for ICP point cloud registration.

Examples:
  # Register two scans
  python main.py standard scan_a.ply scan_b.ply

  # Reject far pairs, keep the best 80% and refine coarse to fine
  python main.py standard scan_a.npy scan_b.npy --max-distance 0.5 --trim-ratio 0.8 --voxel-size 0.4 0.2

  # Compare robust loss functions
  python main.py compare scan_a.ply scan_b.ply

  # Show saved results
  python main.py load --file icp_results.pkl
"""

import argparse
import logging
import sys

import numpy as np

from pcalign import ICPConfig, ICPRegistration, PCAlignError
from pcalign.losses import LOSS_FUNCTIONS


def build_config(args, loss=None):
    return ICPConfig(
        max_iterations=args.max_iterations,
        convergence_threshold=args.threshold,
        max_correspondence_distance=args.max_distance,
        trim_ratio=args.trim_ratio,
        loss=loss or args.loss,
        n_jobs=args.jobs,
    )


def print_result(result):
    print(f"\n{'='*70}")
    print("RESULTS")
    print("="*70)
    print(f"Status:              {result.status.value}")
    print(f"Converged:           {result.converged}")
    print(f"Iterations:          {result.iterations}")
    print(f"Mean squared error:  {result.mean_error:.6g}")
    print(f"Fitness:             {result.fitness:.3f}")
    print("\nTransformation matrix:")
    print(result.transform.as_matrix())


def save_matrix(filepath, matrix):
    if filepath.endswith('.npy'):
        np.save(filepath, matrix)
    else:
        np.savetxt(filepath, matrix)
    print(f"Transformation saved to {filepath}")


def run_standard_icp(args):
    """Run a single registration and report the transform."""
    icp = ICPRegistration(args.source, args.target, config=build_config(args))
    print(f"Source points: {len(icp.source):,}")
    print(f"Target points: {len(icp.target):,}")

    if args.voxel_size:
        result = icp.register_coarse_to_fine(args.voxel_size)
    else:
        result = icp.register()
    print_result(result)

    if args.output:
        save_matrix(args.output, result.transform.as_matrix())
    if args.save:
        icp.save_result(args.save, result)
    return result


def compare_loss_functions(args):
    """Register once per robust loss and print a comparison table."""
    results = []
    for loss_fn in LOSS_FUNCTIONS:
        icp = ICPRegistration(args.source, args.target, config=build_config(args, loss=loss_fn))
        result = icp.register()
        results.append((loss_fn, result))

    print(f"\n{'Loss Function':<15} {'Final Error':<15} {'Iterations':<12} {'Converged':<10}")
    print("-" * 52)
    for loss_fn, result in results:
        print(f"{loss_fn:<15} {result.mean_error:<15.6g} {result.iterations:<12} {str(result.converged):<10}")

    best_loss, best = min(results, key=lambda x: x[1].mean_error)
    print(f"\nBest result: {best_loss} (error: {best.mean_error:.6g})")
    return results


def load_results(args):
    """Print previously saved results."""
    result = ICPRegistration.load_result(args.file)
    if result is None:
        return None
    print(f"Status:             {result['status']}")
    print(f"Iterations:         {result['iterations']}")
    print(f"Mean squared error: {result['mean_error']:.6g}")
    print("\nTransformation matrix:")
    print(result['transformation'])
    return result


def add_registration_arguments(parser):
    parser.add_argument('source', type=str, help='Path to source point cloud')
    parser.add_argument('target', type=str, help='Path to target point cloud')
    parser.add_argument('--max-iterations', type=int, default=50,
                        help='Iteration budget')
    parser.add_argument('--threshold', type=float, default=1e-6,
                        help='Convergence threshold on the mean squared error change')
    parser.add_argument('--max-distance', type=float, default=None,
                        help='Reject correspondences farther apart than this')
    parser.add_argument('--trim-ratio', type=float, default=None,
                        help='Keep only this fraction of the closest correspondences')
    parser.add_argument('--jobs', type=int, default=1,
                        help='Threads for the correspondence search')


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description='ICP Point Cloud Registration',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__.split('\n', 3)[3]
    )
    parser.add_argument('-v', '--verbose', action='count', default=0,
                        help='Increase log verbosity (-v info, -vv debug)')
    subparsers = parser.add_subparsers(dest='mode', required=True, help='Registration mode')

    standard_parser = subparsers.add_parser('standard', help='Standard ICP registration')
    add_registration_arguments(standard_parser)
    standard_parser.add_argument('--loss', type=str, default='none', choices=sorted(LOSS_FUNCTIONS),
                                 help='Robust loss function')
    standard_parser.add_argument('--voxel-size', type=float, nargs='+', default=None,
                                 help='Voxel sizes for coarse-to-fine registration')
    standard_parser.add_argument('--output', type=str, default=None,
                                 help='Save the 4x4 (or 3x3) transform (.npy or text)')
    standard_parser.add_argument('--save', type=str, default=None,
                                 help='Pickle the full result to this file')

    compare_parser = subparsers.add_parser('compare', help='Compare different loss functions')
    add_registration_arguments(compare_parser)

    load_parser = subparsers.add_parser('load', help='Show saved results')
    load_parser.add_argument('--file', type=str, default='icp_results.pkl',
                             help='Path to saved results file')
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    level = {0: logging.WARNING, 1: logging.INFO}.get(args.verbose, logging.DEBUG)
    logging.basicConfig(level=level, format='%(asctime)s %(name)s %(levelname)s: %(message)s')

    try:
        if args.mode == 'standard':
            run_standard_icp(args)
        elif args.mode == 'compare':
            compare_loss_functions(args)
        elif args.mode == 'load':
            if load_results(args) is None:
                return 1
    except PCAlignError as e:
        print(f"Registration failed: {e}", file=sys.stderr)
        return 1
    except (OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
