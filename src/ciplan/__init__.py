from .context import PipelineContext, detect_context
from .dag import Plan, plan_pipeline
from .dsl import (
    JobBuilder,
    build,
    define_pipeline,
    job,
    matrix,
    need,
    rule,
    sh,
    wf,
    workflow,
)
from .errors import PipelineConfigError
from .loader import load_pipeline
from .model import (
    ArtifactSpec,
    CacheSpec,
    Job,
    JobResult,
    Need,
    Pipeline,
    PipelineResult,
    Rule,
    Step,
)
from .retry import RetryPolicy
from .runner import PipelineRun, run_pipeline

__all__ = [
    "job", "sh", "rule", "need", "matrix", "wf", "workflow", "JobBuilder", "build", "define_pipeline",
    "PipelineContext", "detect_context", "Plan", "plan_pipeline", "PipelineRun", "run_pipeline",
    "load_pipeline", "PipelineConfigError", "RetryPolicy",
    "Job", "Step", "Need", "Rule", "Pipeline", "ArtifactSpec", "CacheSpec", "JobResult", "PipelineResult",
]
