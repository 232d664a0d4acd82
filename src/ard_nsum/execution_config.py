"""
Execution configuration for the ARD estimation engine.

This module holds the process-wide default for how MCMC chains are executed.
It is not part of the Hamilton DAG.
"""

import logging

logger = logging.getLogger(__name__)

# Global default for parallel vs sequential chain execution
# This will be set by the pipeline initialization or the CLI
_parallel_chains = True

def set_parallel_chains(enabled: bool = True) -> None:
    """Set the default chain execution mode for all samplers.
    
    Args:
        enabled: If True, chains run in a process pool when more than one core is configured.
            If False, chains always run one after another in the calling process.
    """
    global _parallel_chains
    _parallel_chains = enabled
    logger.info(f"Chain execution mode set to: {'parallel' if enabled else 'sequential'}")

def parallel_chains_enabled() -> bool:
    """Get the current chain execution mode.
    
    Returns:
        True if chains may run in parallel, False if they always run sequentially.
    """
    return _parallel_chains
