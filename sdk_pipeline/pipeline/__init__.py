"""Pipeline definition and orchestration.

This module handles:
- Loading and validating the pipeline definition file
- Composing stages from the definition
- Running the stages in sequence for one build ref
"""

from sdk_pipeline.pipeline.io import load_pipeline_definition
from sdk_pipeline.pipeline.orchestrator import PipelineResult, build_stages, run_pipeline
from sdk_pipeline.pipeline.schema import PipelineDefinition

__all__ = [
    "PipelineDefinition",
    "PipelineResult",
    "build_stages",
    "load_pipeline_definition",
    "run_pipeline",
]
