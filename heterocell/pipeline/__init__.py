"""Pipeline orchestration.

Provides the master configuration, the stage executor, stage logging and
the end-to-end ``AnalysisPipeline``.

Example Usage
-------------
>>> from heterocell.pipeline import AnalysisConfig, AnalysisPipeline
>>> config = AnalysisConfig.from_yaml("analysis.yaml")
>>> state = AnalysisPipeline(config).run(counts, annotations)
"""

from .config import AnalysisConfig, SECTIONS
from .executor import InMemoryExecutor, StageSpec
from .logger import ColoredFormatter, PipelineLogger
from .runner import AnalysisPipeline, STAGES

__all__ = [
    # Config
    "AnalysisConfig",
    "SECTIONS",
    # Execution
    "InMemoryExecutor",
    "StageSpec",
    "AnalysisPipeline",
    "STAGES",
    # Logging
    "ColoredFormatter",
    "PipelineLogger",
]
