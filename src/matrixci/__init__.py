from .config import load_workflow, parse_workflow
from .dsl import JobBuilder, build, cache_step, checkout, job, on_pull_request, on_push, on_schedule, sh, uses, wf, workflow
from .matrix import matrix
from .model import Event, FuzzCampaignSpec, Job, JobSpec, RunResult, Step, WorkflowDefinition
from .runner import exit_code, run_workflow

__all__ = [
    "job",
    "sh",
    "uses",
    "checkout",
    "cache_step",
    "matrix",
    "wf",
    "workflow",
    "on_push",
    "on_pull_request",
    "on_schedule",
    "JobBuilder",
    "build",
    "load_workflow",
    "parse_workflow",
    "run_workflow",
    "exit_code",
    "Event",
    "FuzzCampaignSpec",
    "Job",
    "JobSpec",
    "RunResult",
    "Step",
    "WorkflowDefinition",
]
