"""
Hamilton-based ARD Estimation Pipeline

Builds a Hamilton driver over the dataloader and processor modules and runs
one or more estimation subgraphs (two-stage, overdispersed, correlated),
each of which ends in summary tables saved to the output directory.
"""

from hamilton import driver
from hamilton import graph_types
from typing import Dict, Any, Optional, List, Tuple
import logging
from pathlib import Path

from . import hamilton_dataloaders
from . import hamilton_processors
from .execution_config import set_parallel_chains
from .hamilton_dataloaders import INPUT_DATA_CONFIG, OUTPUT_DATA_CONFIG

logger = logging.getLogger(__name__)

# Saved summary nodes per subgraph; each also gets a save.<node> output
SUBGRAPH_SUMMARIES = {
    "two_stage": ("two_stage_estimates", ["two_stage_summary"]),
    "overdispersed": ("overdispersed_fit", [
        "overdispersed_size_summary",
        "overdispersed_degree_summary",
        "overdispersed_omega_summary",
        "overdispersed_acceptance_summary",
    ]),
    "correlated": ("correlated_fit", [
        "correlated_size_summary",
        "correlated_degree_summary",
        "correlated_covariance_summary",
        "correlated_hyperparameter_summary",
        "correlated_acceptance_summary",
    ]),
}


def subgraph_outputs(subgraph: str) -> List[str]:
    """Estimator node, summary nodes and their save.* materializers for one subgraph."""
    estimator, summaries = SUBGRAPH_SUMMARIES[subgraph]
    return [estimator] + summaries + [f"save.{name}" for name in summaries]


def custom_style(
    *, node: graph_types.HamiltonNode, node_class: str
) -> Tuple[dict, Optional[str], Optional[str]]:
    """Custom style function for the DAG visualization.

    :param node: node that Apache Hamilton is styling.
    :param node_class: class used to style the default visualization
    :return: a triple of (style, node_class, legend_name)
    """
    name = node.name

    # Loader, validator and saver plumbing
    if name.endswith(('_raw', '_schema_validator', '.loader')) or name.startswith('save.'):
        return ({"fillcolor": "lightgray", "color": "gray", "style": "filled,rounded"},
                node_class, "Hamilton decorator nodes")

    if name.endswith('_fit') or name == 'two_stage_estimates':
        return ({"fillcolor": "lightsalmon"}, node_class, "estimators")

    if name.endswith('_summary'):
        return ({"fillcolor": "lightblue"}, node_class, "saved summaries")

    if node.type in [float, int]:
        return ({"fillcolor": "aquamarine"}, node_class, "numbers")

    return ({}, node_class, None)


def _driver_config(config_dict: Dict[str, Any], data_dir: str, output_dir: str) -> Dict[str, str]:
    """Absolute input and output file paths, passed to the driver as static config."""
    paths = {}
    for data_type, defaults in INPUT_DATA_CONFIG.items():
        file_name = config_dict.get(f"{data_type}_file", defaults["file_path"])
        # Empty file name: optional input not supplied
        paths[f"{data_type}_file_path"] = str(Path(data_dir) / file_name) if file_name else ""
    for output_key, file_name in OUTPUT_DATA_CONFIG.items():
        paths[output_key] = str(Path(output_dir) / file_name)
    return paths


class NSUMPipeline:
    """
    Network scale-up pipeline on a Hamilton driver.

    The flat config dictionary from ``PipelineConfig.to_hamilton_inputs()``
    is split in two: file locations become driver config, everything else is
    passed to ``execute`` as inputs.
    """

    def __init__(
        self,
        *,
        config_dict: Dict[str, Any],
        selected_subgraphs: Optional[List[str]] = None,
        parallel_chains: bool = True,
    ):
        """
        Args:
            config_dict: Flat dictionary from PipelineConfig.to_hamilton_inputs()
            selected_subgraphs: Subgraphs to run by default (None runs every subgraph)
            parallel_chains: Whether MCMC chains may run in a process pool
        """
        self.config_dict = config_dict
        self.data_dir = config_dict.get('data_dir', 'data')
        self.output_dir = config_dict.get('output_dir', 'outputs')
        self.selected_subgraphs = selected_subgraphs

        unknown = [s for s in (selected_subgraphs or []) if s not in SUBGRAPH_SUMMARIES]
        if unknown:
            raise ValueError(f"Unknown subgraph(s) {unknown}; available: {sorted(SUBGRAPH_SUMMARIES)}")

        Path(self.output_dir).mkdir(parents=True, exist_ok=True)
        set_parallel_chains(enabled=parallel_chains)

        self.driver_config = _driver_config(config_dict, self.data_dir, self.output_dir)
        try:
            self.dr = (
                driver.Builder()
                .with_modules(hamilton_dataloaders, hamilton_processors)
                .with_config(self.driver_config)
                .build()
            )
        except Exception as e:
            logger.error(f"Could not build the Hamilton driver: {e}")
            raise

        logger.info(
            f"NSUM pipeline ready: subgraphs={selected_subgraphs or sorted(SUBGRAPH_SUMMARIES)}, "
            f"chains {'in parallel' if parallel_chains else 'sequentially'}"
        )

    def _execute_inputs(self) -> Dict[str, Any]:
        # Hamilton requires inputs and driver config to be disjoint
        consumed = {'data_dir', 'output_dir'} | {f"{data_type}_file" for data_type in INPUT_DATA_CONFIG}
        return {k: v for k, v in self.config_dict.items() if k not in consumed}

    def _get_default_outputs(self) -> List[str]:
        outputs = []
        for subgraph in self.selected_subgraphs or SUBGRAPH_SUMMARIES:
            outputs.extend(subgraph_outputs(subgraph))
        return outputs

    def run(self, outputs: Optional[List[str]] = None) -> Dict[str, Any]:
        """
        Execute the pipeline.

        Args:
            outputs: Node names to compute; defaults to every output of the
                selected subgraphs

        Returns:
            Mapping from node name to computed value
        """
        outputs = outputs if outputs is not None else self._get_default_outputs()
        if not outputs:
            logger.warning("Nothing to compute")
            return {}

        logger.info(f"Reading inputs from {self.data_dir}, writing summaries to {self.output_dir}")
        logger.debug(f"Requested outputs: {outputs}")
        try:
            results = self.dr.execute(outputs, inputs=self._execute_inputs())
        except Exception as e:
            logger.error(f"NSUM pipeline failed: {e}")
            raise

        saved = [name for name in outputs if name.startswith('save.')]
        logger.info(f"NSUM pipeline finished: {len(results)} outputs, {len(saved)} summary file(s) written")
        return results

    def visualize_pipeline(self, output_path: Optional[str] = None):
        """
        Render the DAG upstream of the selected subgraphs (requires graphviz).

        Args:
            output_path: Image file to write; the graph is only returned when None
        """
        kwargs = {"custom_style_function": custom_style}
        if output_path:
            kwargs["output_file_path"] = output_path
        return self.dr.display_upstream_of(*self._get_default_outputs(), **kwargs)

    def get_available_functions(self) -> List[str]:
        """Names of every node in the driver's graph."""
        return [var.name for var in self.dr.list_available_variables()]


def run_nsum_pipeline(
    config_path: str = "config/default.yaml",
    selected_subgraphs: Optional[List[str]] = None,
    outputs: Optional[List[str]] = None,
    parallel_chains: Optional[bool] = None,
) -> Dict[str, Any]:
    """
    Load a YAML config and run the pipeline once.

    Args:
        config_path: YAML config file
        selected_subgraphs: Subgraphs to run (None runs every subgraph)
        outputs: Explicit node names, overriding ``selected_subgraphs``
        parallel_chains: Override for the config's execution.parallel_chains

    Returns:
        Mapping from node name to computed value
    """
    from .config import load_config

    config = load_config(Path(config_path))
    if parallel_chains is None:
        parallel_chains = config.execution.parallel_chains

    pipeline = NSUMPipeline(
        config_dict=config.to_hamilton_inputs(),
        selected_subgraphs=selected_subgraphs,
        parallel_chains=parallel_chains,
    )
    return pipeline.run(outputs=outputs)
