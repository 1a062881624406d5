"""
krmfn - configuration function runner

Discovers, orders and runs configuration functions (containers, Python
scripts, executables) against packages of Kubernetes-style YAML resources.
"""

__version__ = "0.1.0"


__all__ = ["FunctionPipeline", "PipelineResult", "RunConfig", "load_config"]

from .config import RunConfig, load_config
from .pipeline import FunctionPipeline, PipelineResult
