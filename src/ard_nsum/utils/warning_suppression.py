"""
Warning suppression utilities for the ARD estimation engine.
"""

import warnings
import logging

def suppress_upstream_warnings():
    """
    Suppress common upstream warnings that clutter the output.
    """
    # Suppress pandas warnings
    warnings.filterwarnings('ignore', category=FutureWarning, module='pandas')

    # Suppress xarray warnings about coordinate handling changes
    warnings.filterwarnings('ignore', category=FutureWarning, module='xarray')

    # Suppress pandera import-path notices
    warnings.filterwarnings('ignore', category=FutureWarning, module='pandera')

    # Suppress hamilton warnings
    warnings.filterwarnings('ignore', category=UserWarning, module='hamilton')

    # Set logging level to reduce verbosity
    logging.getLogger('hamilton').setLevel(logging.WARNING)
