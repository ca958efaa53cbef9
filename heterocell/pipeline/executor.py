"""In-memory stage executor with dependency ordering."""

from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional
import time

from ..errors import PipelineError
from .logger import PipelineLogger


@dataclass
class StageSpec:
    """A registered stage."""

    stage_id: str
    func: Callable[..., Any]
    depends_on: List[str]
    name: str


class InMemoryExecutor:
    """Runs Python stage functions in dependency order.

    Each stage is called with the run keyword arguments plus
    ``stage_results``, a read-only view of the results of earlier stages.
    A failing stage is logged with its context and re-raised; later stages
    are not run.

    Parameters
    ----------
    logger : PipelineLogger, optional
        Stage event logger

    Example
    -------
    >>> executor = InMemoryExecutor()
    >>> executor.register_stage("qc", run_qc)
    >>> executor.register_stage("normalize", run_norm, depends_on=["qc"])
    >>> results = executor.run(matrix=matrix)
    """

    def __init__(self, logger: Optional[PipelineLogger] = None):
        self.logger = logger
        self.stages: Dict[str, StageSpec] = {}
        self.completed_stages: List[str] = []
        self.timings: Dict[str, float] = {}

    def register_stage(
        self,
        stage_id: str,
        func: Callable[..., Any],
        depends_on: Optional[List[str]] = None,
        name: Optional[str] = None,
    ) -> None:
        """Register ``func`` under ``stage_id``.

        Raises
        ------
        ValueError
            If the stage id is already registered
        """
        if stage_id in self.stages:
            raise ValueError(f"Stage '{stage_id}' is already registered")
        self.stages[stage_id] = StageSpec(
            stage_id=stage_id,
            func=func,
            depends_on=list(depends_on or []),
            name=name or stage_id,
        )

    def execution_order(self) -> List[str]:
        """Topological order; ties keep registration order.

        Raises
        ------
        ValueError
            On unknown dependencies or cycles
        """
        for spec in self.stages.values():
            unknown = [d for d in spec.depends_on if d not in self.stages]
            if unknown:
                raise ValueError(f"Stage '{spec.stage_id}' depends on unknown stages {unknown}")

        in_degree = {sid: len(spec.depends_on) for sid, spec in self.stages.items()}
        queue = deque(sid for sid, degree in in_degree.items() if degree == 0)
        order: List[str] = []
        while queue:
            stage_id = queue.popleft()
            order.append(stage_id)
            for other_id, other in self.stages.items():
                if stage_id in other.depends_on:
                    in_degree[other_id] -= 1
                    if in_degree[other_id] == 0:
                        queue.append(other_id)

        if len(order) != len(self.stages):
            raise ValueError("Circular dependency detected")
        return order

    def run(self, **kwargs) -> Dict[str, Any]:
        """Execute every registered stage.

        Returns
        -------
        Dict[str, Any]
            Map of stage id to stage result
        """
        results: Dict[str, Any] = {}
        for stage_id in self.execution_order():
            spec = self.stages[stage_id]
            if self.logger:
                self.logger.log_stage_start(stage_id, spec.name)

            start_time = time.time()
            try:
                results[stage_id] = spec.func(**kwargs, stage_results=dict(results))
            except PipelineError as e:
                if e.stage is None:
                    e.stage = stage_id
                if self.logger:
                    self.logger.log_stage_error(stage_id, e.message, e.context())
                raise
            except Exception as e:
                if self.logger:
                    self.logger.log_stage_error(stage_id, str(e))
                raise

            self.timings[stage_id] = time.time() - start_time
            self.completed_stages.append(stage_id)
            if self.logger:
                self.logger.log_stage_complete(stage_id, self.timings[stage_id])

        return results
