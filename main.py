#!/usr/bin/env python3
"""
Command line entry point for the ARD network scale-up pipeline
"""

import sys
import os
import logging
import argparse
from pathlib import Path

# Run from a checkout without installing the package
sys.path.insert(0, os.path.join(os.path.dirname(__file__), 'src'))

SUBGRAPH_DESCRIPTIONS = {
    "two_stage": "Closed-form PIMLE / MLE degree and size estimates",
    "overdispersed": "Negative binomial model fitted with the Gibbs-Metropolis sampler",
    "correlated": "Poisson log-normal model with correlated (or uncorrelated) random effects",
}


def print_subgraph_info():
    """Print the subgraphs that --subgraphs accepts."""
    print("NSUM pipeline subgraphs")
    print("-" * 50)
    for name, description in SUBGRAPH_DESCRIPTIONS.items():
        print(f"{name.upper():<15} {description}")
    print()
    print("Examples:")
    print("  python main.py --subgraphs two_stage")
    print("  python main.py --config config/test.yaml --subgraphs overdispersed correlated")
    print("  python main.py --subgraphs correlated --sequential")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Estimate hidden population sizes from ARD")
    parser.add_argument("--config", type=str, default="config/default.yaml",
                        help="YAML config file (default: config/default.yaml)")

    # Overrides for execution.parallel_chains
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--parallel", action="store_true",
                      help="Run MCMC chains in a process pool")
    mode.add_argument("--sequential", action="store_true",
                      help="Run MCMC chains one after another")

    parser.add_argument("--visualize", nargs="?", const="pipeline_dag.png",
                        help="Write the DAG of the selected subgraphs to an image and exit")
    parser.add_argument("--subgraphs", nargs="+", choices=sorted(SUBGRAPH_DESCRIPTIONS),
                        help="Subgraphs to run (default: all)")
    parser.add_argument("--list-subgraphs", action="store_true",
                        help="List available subgraphs and exit")
    return parser


def main(argv=None):
    """Parse arguments, load the config and run (or draw) the pipeline."""
    args = build_parser().parse_args(argv)

    if args.list_subgraphs:
        print_subgraph_info()
        return 0

    from ard_nsum.config import load_config
    try:
        config = load_config(Path(args.config))
    except FileNotFoundError as e:
        print(f"Error: {e}")
        return 1
    except ValueError as e:
        print(f"Error: {e}")
        return 1

    if args.parallel or args.sequential:
        parallel_chains = args.parallel
    else:
        parallel_chains = config.execution.parallel_chains

    logging.basicConfig(
        level=getattr(logging, config.execution.log_level),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler('pipeline.log')
        ]
    )
    logger = logging.getLogger(__name__)
    logger.info(f"Config {args.config}; chains run {'in parallel' if parallel_chains else 'sequentially'}")

    from ard_nsum.hamilton_pipeline import NSUMPipeline
    try:
        pipeline = NSUMPipeline(
            config_dict=config.to_hamilton_inputs(),
            selected_subgraphs=args.subgraphs,
            parallel_chains=parallel_chains,
        )

        if args.visualize:
            image_path = Path(args.visualize)
            if not image_path.suffix:
                image_path = image_path.with_suffix(".png")
            pipeline.visualize_pipeline(str(image_path))
            logger.info(f"DAG written to {image_path}")
            return 0

        results = pipeline.run()
    except Exception as e:
        logger.exception(f"Pipeline failed: {e}")
        return 1

    saved = sorted(name[len('save.'):] for name in results if name.startswith('save.'))
    print(f"\nWrote {len(saved)} summary table(s) to {config.data_paths.output_dir}:")
    for name in saved:
        print(f"  {name}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
